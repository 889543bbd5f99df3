"""
Repositories — persistence seams for the ingestion core

Three read/write surfaces, each an ABC with a SQLAlchemy implementation:

  DocumentRepository   kb.documents        (Lifecycle Tracker)
  DepartmentDirectory  kb.departments      (ingestion validation, read-only)
  ChatHistoryStore     kb.chat_threads/messages (Citation Resolver, read-only)

Services only see the plain dataclass records defined here, never ORM
instances, so a pipeline can run long after the session that loaded a row
is closed. Tests swap in the in-memory fakes from tests/conftest.py.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.session import session_scope
from app.models.chat import ChatMessage, ChatThread
from app.models.documents import Department, Document
from app.schemas.documents import DocumentStatus

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class DocumentRecord:
    id:              uuid.UUID
    file_name:       str
    file_type:       str
    file_size:       int
    uploaded_by:     str
    container_name:  str
    blob_name:       str
    department_id:   uuid.UUID
    department_name: str
    status:          DocumentStatus   = DocumentStatus.UPLOADED
    chat_type:       str              = "doc"
    chat_thread_id:  str | None       = None
    blob_url:        str | None       = None
    error_message:   str | None       = None
    pages:           int              = 0
    confidence:      float            = 0.0
    chunk_count:     int              = 0
    is_deleted:      bool             = False
    uploaded_at:     datetime         = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at:      datetime | None  = None

    @classmethod
    def from_orm(cls, row: Document) -> "DocumentRecord":
        values = {f.name: getattr(row, f.name) for f in fields(cls)}
        values["status"] = DocumentStatus.normalize(row.status)
        return cls(**values)


@dataclass(frozen=True)
class DepartmentRecord:
    id:                  uuid.UUID
    name:                str
    blob_container_name: str
    is_active:           bool = True


@dataclass(frozen=True)
class ChatThreadRecord:
    id:        str
    user_id:   str
    chat_type: str


@dataclass(frozen=True)
class ChatMessageRecord:
    role:       str
    content:    str
    context:    str | None
    created_at: datetime


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class DocumentRepository(ABC):

    @abstractmethod
    async def add(self, record: DocumentRecord) -> DocumentRecord: ...

    @abstractmethod
    async def get(self, document_id: uuid.UUID) -> DocumentRecord | None: ...

    @abstractmethod
    async def update(
        self,
        document_id: uuid.UUID,
        *,
        expected_status: Iterable[DocumentStatus] | None = None,
        **values: Any,
    ) -> DocumentRecord | None:
        """
        Apply column updates; returns the fresh record or None if absent.

        With `expected_status` the write is a compare-and-set: it only lands
        on a live (non-deleted) row whose status is one of those, and None
        means another writer got there first.
        """

    @abstractmethod
    async def list_by_status(
        self,
        statuses: Iterable[DocumentStatus],
        *,
        include_deleted: bool = False,
        updated_before: datetime | None = None,
    ) -> list[DocumentRecord]:
        """
        Oldest upload first. BLANK also matches legacy NULL/empty rows.
        `updated_before` keeps rows last written (or uploaded, if never
        written) before that instant.
        """

    @abstractmethod
    async def stats(self) -> dict[str, Any]:
        """{"total", "by_status", "by_type", "total_size"} over non-deleted rows."""


class DepartmentDirectory(ABC):

    @abstractmethod
    async def get_department(self, department_id: uuid.UUID) -> DepartmentRecord | None: ...


class ChatHistoryStore(ABC):

    @abstractmethod
    async def get_thread(self, thread_id: str) -> ChatThreadRecord | None: ...

    @abstractmethod
    async def list_messages(self, thread_id: str) -> list[ChatMessageRecord]:
        """All messages of a thread ordered by created_at ascending."""


# ---------------------------------------------------------------------------
# SQLAlchemy implementations
# ---------------------------------------------------------------------------

def _status_in(statuses: Iterable[DocumentStatus]):
    wanted = [DocumentStatus.normalize(s) for s in statuses]
    clauses = [Document.status.in_([s.value for s in wanted])]
    if DocumentStatus.BLANK in wanted:
        clauses += [Document.status.is_(None), Document.status == ""]
    return or_(*clauses)


class _SqlRepository:

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)


class SqlDocumentRepository(_SqlRepository, DocumentRepository):

    async def add(self, record: DocumentRecord) -> DocumentRecord:
        values = {f.name: getattr(record, f.name) for f in fields(record)}
        values["status"] = DocumentStatus.normalize(record.status).value
        values.pop("updated_at")
        async with self._session() as db:
            db.add(Document(**values))
        logger.debug("Document row inserted | doc=%s", record.id)
        return record

    async def get(self, document_id: uuid.UUID) -> DocumentRecord | None:
        async with self._session() as db:
            row = await db.get(Document, document_id)
            return DocumentRecord.from_orm(row) if row else None

    async def update(
        self,
        document_id: uuid.UUID,
        *,
        expected_status: Iterable[DocumentStatus] | None = None,
        **values: Any,
    ) -> DocumentRecord | None:
        if "status" in values:
            values["status"] = DocumentStatus.normalize(values["status"]).value
        stmt = update(Document).where(Document.id == document_id)
        if expected_status is not None:
            stmt = stmt.where(_status_in(expected_status), Document.is_deleted.is_(False))
        async with self._session() as db:
            result = await db.execute(
                stmt.values(**values, updated_at=func.now()).returning(Document)
            )
            row = result.scalars().first()
            return DocumentRecord.from_orm(row) if row else None

    async def list_by_status(
        self,
        statuses: Iterable[DocumentStatus],
        *,
        include_deleted: bool = False,
        updated_before: datetime | None = None,
    ) -> list[DocumentRecord]:
        stmt = select(Document).where(_status_in(statuses)).order_by(Document.uploaded_at)
        if not include_deleted:
            stmt = stmt.where(Document.is_deleted.is_(False))
        if updated_before is not None:
            stmt = stmt.where(func.coalesce(Document.updated_at, Document.uploaded_at) < updated_before)

        async with self._session() as db:
            result = await db.execute(stmt)
            return [DocumentRecord.from_orm(row) for row in result.scalars().all()]

    async def stats(self) -> dict[str, Any]:
        live = Document.is_deleted.is_(False)
        async with self._session() as db:
            status_rows = (await db.execute(
                select(Document.status, func.count()).where(live).group_by(Document.status)
            )).all()
            type_rows = (await db.execute(
                select(Document.file_type, func.count()).where(live).group_by(Document.file_type)
            )).all()
            total_size = (await db.execute(
                select(func.coalesce(func.sum(Document.file_size), 0)).where(live)
            )).scalar_one()

        by_status: dict[str, int] = {}
        for status, count in status_rows:
            key = DocumentStatus.normalize(status).value
            by_status[key] = by_status.get(key, 0) + count

        return {
            "total":      sum(by_status.values()),
            "by_status":  by_status,
            "by_type":    {file_type: count for file_type, count in type_rows},
            "total_size": int(total_size),
        }


class SqlDepartmentDirectory(_SqlRepository, DepartmentDirectory):

    async def get_department(self, department_id: uuid.UUID) -> DepartmentRecord | None:
        async with self._session() as db:
            row = await db.get(Department, department_id)
            if row is None:
                return None
            return DepartmentRecord(
                id=row.id,
                name=row.name,
                blob_container_name=row.blob_container_name,
                is_active=row.is_active,
            )


class SqlChatHistoryStore(_SqlRepository, ChatHistoryStore):

    async def get_thread(self, thread_id: str) -> ChatThreadRecord | None:
        async with self._session() as db:
            row = await db.get(ChatThread, thread_id)
            if row is None:
                return None
            return ChatThreadRecord(id=row.id, user_id=row.user_id, chat_type=row.chat_type)

    async def list_messages(self, thread_id: str) -> list[ChatMessageRecord]:
        async with self._session() as db:
            result = await db.execute(
                select(ChatMessage)
                .where(ChatMessage.thread_id == thread_id)
                .order_by(ChatMessage.created_at, ChatMessage.id)
            )
            return [
                ChatMessageRecord(
                    role=row.role,
                    content=row.content,
                    context=row.context,
                    created_at=row.created_at,
                )
                for row in result.scalars().all()
            ]
