"""
Scope filters for index queries.

A ScopeFilter is an immutable conjunction of equality clauses over the
scoping fields stored on every chunk. It renders to:

  • an OData-style string, e.g.
      user eq 'u-1' and chatThreadId eq 't-9' and chatType eq 'data'
    (used in logs, diagnostics and tests)
  • a plain {field: value} dict that each backend converts to its own
    filter object

The gateway passes filters through without interpreting them. Tenant
isolation lives entirely in these predicates, so every search filter must
carry a chat_type clause.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from app.schemas.documents import ChatType

# Stored field name → name used in the rendered filter string
FILTER_FIELDS: dict[str, str] = {
    "chat_type":      "chatType",
    "dept_name":      "deptName",
    "user":           "user",
    "chat_thread_id": "chatThreadId",
    "document_id":    "documentId",
}


@dataclass(frozen=True)
class ScopeFilter:
    clauses: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        for name, value in self.clauses:
            if name not in FILTER_FIELDS:
                raise ValueError(f"Unknown filter field: {name!r}")
            if name == "chat_type":
                ChatType(value)   # raises ValueError for values outside the closed set

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def of(cls, **fields: str | None) -> "ScopeFilter":
        """Build from keyword clauses; None values are dropped, order kept."""
        return cls(tuple((k, str(v)) for k, v in fields.items() if v is not None))

    @classmethod
    def for_doc_corpus(cls, dept_name: str | None = None) -> "ScopeFilter":
        return cls.of(chat_type=ChatType.DOC.value, dept_name=dept_name)

    @classmethod
    def for_thread(cls, user_id: str, chat_thread_id: str) -> "ScopeFilter":
        """User-uploaded files: scoped to the owner AND the thread."""
        return cls.of(
            user=user_id,
            chat_thread_id=chat_thread_id,
            chat_type=ChatType.DATA.value,
        )

    # ------------------------------------------------------------------
    # Accessors / rendering
    # ------------------------------------------------------------------

    @property
    def chat_type(self) -> str | None:
        return self.as_dict().get("chat_type")

    def as_dict(self) -> dict[str, str]:
        return dict(self.clauses)

    def to_odata(self) -> str:
        return " and ".join(
            f"{FILTER_FIELDS[name]} eq '{_escape(value)}'"
            for name, value in self.clauses
        )

    def matches(self, record: dict) -> bool:
        """Evaluate against a stored payload (used by the in-process backend)."""
        return all(str(record.get(name)) == value for name, value in self.clauses)

    def __str__(self) -> str:
        return self.to_odata()


def _escape(value: str) -> str:
    return value.replace("'", "''")
