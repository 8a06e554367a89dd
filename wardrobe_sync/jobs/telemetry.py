"""Upload telemetry events, emitted as structured log lines."""

from typing import Any

from wardrobe_sync.core.logging import get_logger

logger = get_logger("wardrobe_sync.telemetry")

UPLOAD_ENQUEUED = "upload_enqueued"
UPLOAD_SUCCEEDED = "upload_succeeded"
UPLOAD_FAILED_MAX_RETRIES = "upload_failed_max_retries"
UPLOAD_STALE_IGNORED = "upload_stale_ignored"
UPLOAD_RETRY_MANUAL = "upload_retry_manual"

UPLOAD_EVENTS = frozenset({
    UPLOAD_ENQUEUED,
    UPLOAD_SUCCEEDED,
    UPLOAD_FAILED_MAX_RETRIES,
    UPLOAD_STALE_IGNORED,
    UPLOAD_RETRY_MANUAL,
})


def log_upload_event(event: str, job_id: str, **extra: Any) -> None:
    if event not in UPLOAD_EVENTS:
        raise ValueError(f"Unknown upload event '{event}'. Valid: {sorted(UPLOAD_EVENTS)}")
    logger.info(event, telemetry=True, job_id=job_id, **extra)
