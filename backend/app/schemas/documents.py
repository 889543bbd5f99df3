"""
Document Ingestion — Pydantic Request/Response Schemas

Covers the document lifecycle endpoints:
  - Upload acknowledgement (202 Accepted)
  - Status inspection and statistics
  - Bulk repair acknowledgement and report
  - All structured error bodies (400, 401, 403, 404, 409, 413, 422, 500)

Design decisions:
  - document_id is always server-generated (UUID4); never client-supplied.
  - Ingestion returns before processing finishes; status is polled.
  - All timestamps are ISO-8601 UTC strings.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Document state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to kb.documents.status.
    Transitions: uploaded → processing → completed | error
    Repair:      blank | error → uploaded
    """
    UPLOADED    = "uploaded"     # stored in blob container, pipeline not started
    PROCESSING  = "processing"   # extract → embed → index in flight
    COMPLETED   = "completed"    # chunks indexed, searchable
    ERROR       = "error"        # pipeline failed, reason stored
    BLANK       = "blank"        # status missing on a legacy row

    @classmethod
    def normalize(cls, value: "str | DocumentStatus | None") -> "DocumentStatus":
        """Absent or empty status values are an explicit BLANK."""
        if isinstance(value, DocumentStatus):
            return value
        if value is None or not str(value).strip():
            return cls.BLANK
        return cls(str(value).strip().lower())


class ChatType(str, Enum):
    """Partition tag carried by every indexed chunk and chat thread."""
    DOC      = "doc"        # curated FAQ corpus
    DATA     = "data"       # files uploaded into a user's thread
    SIMPLE   = "simple"
    WEB      = "web"
    DOCUMENT = "document"


# ---------------------------------------------------------------------------
# Upload success response — 202 Accepted
# ---------------------------------------------------------------------------

class DocumentUploadResponse(BaseModel):
    """
    Returned immediately after a successful upload.
    HTTP 202 — the file is stored but processing is async.
    """
    document_id:     UUID           = Field(..., description="Server-generated document UUID")
    status:          DocumentStatus = Field(DocumentStatus.UPLOADED)
    file_name:       str
    file_size:       int
    department_name: str
    created_at:      datetime


# ---------------------------------------------------------------------------
# Document inspection — GET /documents/{id}
# ---------------------------------------------------------------------------

class DocumentStatusResponse(BaseModel):
    """Polled by clients to track async processing progress."""
    document_id:     UUID
    file_name:       str
    file_type:       str
    status:          DocumentStatus
    pages:           int   = 0
    confidence:      float = Field(0.0, ge=0.0, le=1.0)
    chunk_count:     int   = 0
    department_name: str
    error_message:   str | None = None
    updated_at:      datetime | None = None


class DocumentStatsResponse(BaseModel):
    total:      int
    by_status:  dict[str, int] = Field(default_factory=dict)
    by_type:    dict[str, int] = Field(default_factory=dict)
    total_size: int = 0


# ---------------------------------------------------------------------------
# Bulk repair
# ---------------------------------------------------------------------------

class RepairReport(BaseModel):
    """Aggregate outcome of one repair sweep. Never fails atomically."""
    attempted: int = 0
    succeeded: int = 0
    failed:    int = 0
    skipped:   int = 0   # already handled elsewhere when the sweep reached them


class RepairAcknowledgement(BaseModel):
    """The repair runs detached; this only confirms it was scheduled."""
    accepted:  bool = True
    task_id:   str
    message:   str
    timestamp: datetime


class RepairCandidate(BaseModel):
    document_id:   UUID
    file_name:     str
    status:        DocumentStatus
    error_message: str | None = None


class RepairCandidatesResponse(BaseModel):
    count:     int
    documents: list[RepairCandidate] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str         = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps services and route handlers thin)
# ---------------------------------------------------------------------------

class IngestionErrors:
    """Factories for every input rejection raised before a remote call."""

    @staticmethod
    def empty_file(file_name: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="EMPTY_FILE",
            message="The uploaded file is empty.",
            details=[ErrorDetail(field="file", message=f"'{file_name}' contains 0 bytes.", code="EMPTY_FILE")],
        )

    @staticmethod
    def unsupported_file_type(file_name: str, extension: str, allowed: list[str]) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_FILE_TYPE",
            message=f"File type '{extension or 'unknown'}' is not supported.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{file_name}' has an unsupported type. Allowed: {', '.join(allowed)}.",
                    code="UNSUPPORTED_FILE_TYPE",
                )
            ],
        )

    @staticmethod
    def file_too_large(size_bytes: int, limit_bytes: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_TOO_LARGE",
            message=f"Uploaded file exceeds the {limit_bytes // (1024 * 1024)} MB limit.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"Received {size_bytes:,} bytes; limit is {limit_bytes:,} bytes.",
                    code="FILE_TOO_LARGE",
                )
            ],
        )

    @staticmethod
    def invalid_file_name(file_name: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_FILE_NAME",
            message="The file name is empty or contains invalid characters.",
            details=[
                ErrorDetail(
                    field="file",
                    message=f"'{file_name}' must be 1-255 characters and cannot contain path separators.",
                    code="INVALID_FILE_NAME",
                )
            ],
        )

    @staticmethod
    def missing_department() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_DEPARTMENT",
            message="A department is required to ingest a document.",
            details=[ErrorDetail(field="department_id", message="Field is required.", code="MISSING_DEPARTMENT")],
        )

    @staticmethod
    def missing_chat_thread() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_CHAT_THREAD",
            message="Files uploaded into a data chat must name their chat thread.",
            details=[ErrorDetail(field="chat_thread_id", message="Required when chat_type is 'data'.", code="MISSING_CHAT_THREAD")],
        )

    @staticmethod
    def unknown_department(department_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNKNOWN_DEPARTMENT",
            message=f"Department '{department_id}' does not exist or is inactive.",
            details=[ErrorDetail(field="department_id", message="Unknown department.", code="UNKNOWN_DEPARTMENT")],
        )

    @staticmethod
    def storage_error(detail: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="STORAGE_ERROR",
            message="Failed to store the document. Please retry.",
            details=(
                [ErrorDetail(field=None, message=detail, code="STORAGE_ERROR")]
                if detail
                else []
            ),
        )

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
            details=[],
        )
