"""Pydantic models for attachment inputs and stored attachment records."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NewAttachment(BaseModel):
    """Raw bytes to be stored (or deduplicated) alongside a notification."""

    model_config = ConfigDict(extra="forbid")

    content: bytes
    filename: str = Field(..., min_length=1)
    content_type: str | None = None
    description: str | None = None


class ExistingAttachment(BaseModel):
    """Reference to an attachment file that is already stored."""

    model_config = ConfigDict(extra="forbid")

    file_id: str = Field(..., min_length=1)
    description: str | None = None


AttachmentInput = NewAttachment | ExistingAttachment


class AttachmentFileRecord(BaseModel):
    """Metadata record of one stored blob, keyed by the SHA-256 of its bytes."""

    model_config = ConfigDict(extra="forbid")

    id: str
    filename: str
    content_type: str
    size: int = Field(..., ge=0)
    checksum: str
    binary_id: str
    storage_identifiers: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class AttachmentDescriptor(BaseModel):
    """A resolved attachment input: the file record plus its per-notification description."""

    model_config = ConfigDict(extra="forbid")

    record: AttachmentFileRecord
    description: str | None = None
    reused: bool = False

    @property
    def file_id(self) -> str:
        return self.record.id


class StoredAttachment(BaseModel):
    """An attachment as seen on a hydrated notification."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    id: str
    file_id: str
    filename: str
    content_type: str
    size: int
    checksum: str
    description: str | None = None
    created_at: datetime
    storage_metadata: dict[str, Any] = Field(default_factory=dict)
    # AttachmentFile handle; typed loosely to keep models free of store imports
    file: Any = Field(default=None, exclude=True)
