"""Upload job data model for the background upload queue."""

from enum import Enum
from typing import Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class UploadKind(str, Enum):
    WARDROBE = "wardrobe"
    SCAN = "scan"


class UploadRequest(BaseModel):
    """What a caller hands to the queue: everything except retry bookkeeping."""

    model_config = ConfigDict(populate_by_name=True)

    kind: UploadKind
    id: str
    owner_id: str = Field(validation_alias=AliasChoices("owner_id", "userId"))
    local_path: str = Field(validation_alias=AliasChoices("local_path", "localUri"))
    # Guard value for the reconciliation update; equals local_path at enqueue time
    expected_remote_ref: str = Field(
        validation_alias=AliasChoices("expected_remote_ref", "expectedImageUri")
    )
    bucket: str
    storage_path: str = Field(validation_alias=AliasChoices("storage_path", "storagePath"))

    @property
    def destination(self) -> str:
        return f"{self.bucket}/{self.storage_path}"


class UploadJob(UploadRequest):
    """Tracks one durable upload across attempts and process restarts."""

    attempts: int = 0
    last_error: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("last_error", "lastError")
    )
    created_at: int = Field(validation_alias=AliasChoices("created_at", "createdAt"))
    # Epoch ms; None means ready now
    next_eligible_at: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("next_eligible_at", "nextAttemptAt")
    )


class QueueStatus(BaseModel):
    pending: int
    failed: int
    ready: int
