"""
SQLAlchemy ORM Models — Departments & Documents

Using SQLAlchemy mapped classes (2.x style) for full async support.

Schema: kb (set via __table_args__)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Department model — kb.departments
# ---------------------------------------------------------------------------

class Department(Base):
    """
    Owning department of a document. Managed by the admin screens; the
    ingestion core only reads it to resolve a display name and the blob
    container that holds the department's files.
    """

    __tablename__ = "departments"
    __table_args__ = ({"schema": "kb"},)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name:                Mapped[str]  = mapped_column(Text, nullable=False)
    blob_container_name: Mapped[str]  = mapped_column(Text, nullable=False)
    is_active:           Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# ---------------------------------------------------------------------------
# Document model — kb.documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from upload → extraction → vector indexing.

    State machine (status column):
        uploaded   — file stored in the department container, pipeline pending
        processing — extraction / embedding / indexing in flight
        completed  — chunks indexed and searchable
        error      — pipeline failed (see error_message)
        blank      — legacy rows with no status; queued for repair

    pages and confidence stay 0 until extraction succeeds.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('uploaded', 'processing', 'completed', 'error', 'blank')",
            name="documents_status_check",
        ),
        CheckConstraint(
            "chat_type IN ('doc', 'data', 'simple', 'web', 'document')",
            name="documents_chat_type_check",
        ),
        Index("idx_documents_status",     "status", "is_deleted"),
        Index("idx_documents_department", "department_id"),
        {"schema": "kb"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # File
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Lower-case extension without the dot, e.g. pdf",
    )
    file_size:   Mapped[int] = mapped_column(BigInteger, nullable=False)
    uploaded_by: Mapped[str] = mapped_column(Text, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Blob location
    container_name: Mapped[str]           = mapped_column(Text, nullable=False)
    blob_name:      Mapped[str]           = mapped_column(Text, nullable=False)
    blob_url:       Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Ownership / index scope
    department_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("kb.departments.id", ondelete="RESTRICT"),
        nullable=False,
    )
    department_name: Mapped[str]           = mapped_column(Text, nullable=False)
    chat_type:       Mapped[str]           = mapped_column(Text, nullable=False, default="doc")
    chat_thread_id:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Ingestion state machine
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="uploaded",
        server_default="uploaded",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='error'",
    )

    # Extraction results
    pages:       Mapped[int]   = mapped_column(Integer, nullable=False, default=0, server_default="0")
    confidence:  Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    chunk_count: Mapped[int]   = mapped_column(Integer, nullable=False, default=0, server_default="0")

    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} dept={self.department_name!r} "
            f"status={self.status} file={self.file_name!r}>"
        )
