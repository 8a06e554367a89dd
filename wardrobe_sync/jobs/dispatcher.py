"""Upload dispatcher interface."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Set

from wardrobe_sync.jobs.models import UploadJob, UploadKind, UploadRequest

UploadFn = Callable[[UploadJob], Awaitable[None]]
IdleCallback = Callable[[UploadKind], None]


class UploadDispatcher(ABC):
    """Abstract interface for background upload dispatching."""

    @abstractmethod
    async def initialize(self, upload_fn: UploadFn) -> None:
        """Register the upload function and start processing."""
        ...

    @abstractmethod
    async def enqueue(self, request: UploadRequest) -> None:
        """Queue an upload, replacing any queued job with the same id."""
        ...

    @abstractmethod
    async def cancel(self, job_id: str) -> None:
        ...

    @abstractmethod
    async def retry(self, job_id: str) -> bool:
        """Re-arm an exhausted job. Returns False when there is nothing to retry."""
        ...

    @abstractmethod
    def has_pending(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def pending_uris(self, kind: Optional[UploadKind] = None) -> Set[str]:
        ...

    @abstractmethod
    def has_any_pending(self, kind: Optional[UploadKind] = None) -> bool:
        ...

    @abstractmethod
    def on_idle(self, kind: Optional[UploadKind], callback: IdleCallback) -> Callable[[], None]:
        ...

    @abstractmethod
    def is_failed(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def get_failed_job(self, job_id: str) -> Optional[UploadJob]:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop timers and detach from the host lifecycle."""
        ...
