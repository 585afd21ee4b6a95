"""
Normalized event envelope - the internal format for rows read from any
tenant event source.
"""
import re
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class RawEvent(BaseModel):
    """One source row. Immutable once read - the pipeline never mutates it."""
    model_config = {"frozen": True}

    id: int = Field(..., description="Monotonic source-local id")
    tenant_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def reference(self) -> str:
        return f"{self.tenant_id}:{self.id}"


class ColumnMapping(BaseModel):
    """Maps the envelope fields onto a tenant table's column names."""
    id: str = "id"
    tenant_id: str = "tenant_id"
    event_type: str = "event_type"
    payload: str = "payload"
    created_at: Optional[str] = "created_at"

    @field_validator("id", "tenant_id", "event_type", "payload", "created_at")
    @classmethod
    def _identifier(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not IDENTIFIER_RE.match(v):
            raise ValueError(f"Invalid column name: {v!r}")
        return v


def validate_table_name(name: str) -> str:
    if not TABLE_RE.match(name or ""):
        raise ValueError(f"Invalid table name: {name!r}")
    return name
