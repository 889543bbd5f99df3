"""
SQLAlchemy ORM Models — Chat threads & messages (read side)

The chat service owns these tables. This service only reads them to
resolve citations for a thread.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.documents import Base


class ChatThread(Base):
    __tablename__ = "chat_threads"
    __table_args__ = (
        Index("idx_chat_threads_user", "user_id"),
        {"schema": "kb"},
    )

    id:        Mapped[str]           = mapped_column(Text, primary_key=True)
    user_id:   Mapped[str]           = mapped_column(Text, nullable=False)
    chat_type: Mapped[str]           = mapped_column(Text, nullable=False, default="simple")
    name:      Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class ChatMessage(Base):
    """
    One turn in a thread. `context` holds the serialized JSON the assistant
    answer was generated from; newer rows carry {"citations": [...]}.
    """

    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("idx_chat_messages_thread_created", "thread_id", "created_at"),
        {"schema": "kb"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    thread_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("kb.chat_threads.id", ondelete="CASCADE"),
        nullable=False,
    )
    role:    Mapped[str]           = mapped_column(Text, nullable=False)   # user | assistant | system
    content: Mapped[str]           = mapped_column(Text, nullable=False, default="")
    context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
