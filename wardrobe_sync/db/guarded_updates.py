"""Guarded reconciliation of uploaded image URLs into database rows.

A background upload may finish long after the user has deleted the record,
replaced its image, or un-saved a scan. Every write from the upload path is
therefore conditional on the row still holding the value the job captured
at enqueue time:

    UPDATE <table> SET image_uri = <remote url>
    WHERE id = <job id> AND image_uri = <expected> [AND <status col> = <status>]

Zero updated rows is a normal outcome ("stale, ignored"), never a retryable
failure: a retry would carry the same stale expectation and fail the same way.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

WARDROBE_TABLE = "wardrobe_items"
RECENT_CHECKS_TABLE = "recent_checks"
IMAGE_URI_COLUMN = "image_uri"
OUTCOME_COLUMN = "outcome"
SAVED_OUTCOME = "saved_to_revisit"


class RecordStore(ABC):
    """Relational store restricted to guarded updates."""

    @abstractmethod
    async def update_guarded(
        self,
        table: str,
        row_id: str,
        column: str,
        new_value: str,
        expected_value: str,
        status_column: Optional[str] = None,
        required_status: Optional[str] = None,
    ) -> int:
        """Set ``column`` only where id, current value (and status) match. Returns rows updated."""
        ...


class SupabaseRecordStore(RecordStore):
    """RecordStore over PostgREST. The sync client runs in the default executor."""

    def __init__(self, client: Any):
        self._client = client

    async def update_guarded(
        self,
        table: str,
        row_id: str,
        column: str,
        new_value: str,
        expected_value: str,
        status_column: Optional[str] = None,
        required_status: Optional[str] = None,
    ) -> int:
        if (status_column is None) != (required_status is None):
            raise ValueError("status_column and required_status must be given together")

        def _execute() -> int:
            query = (
                self._client.table(table)
                .update({column: new_value})
                .eq("id", row_id)
                .eq(column, expected_value)
            )
            if status_column is not None:
                query = query.eq(status_column, required_status)
            response = query.execute()
            return len(response.data or [])

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _execute)


async def update_wardrobe_item_image_uri_guarded(
    records: RecordStore, item_id: str, remote_url: str, expected_image_uri: str
) -> int:
    return await records.update_guarded(
        WARDROBE_TABLE, item_id, IMAGE_URI_COLUMN, remote_url, expected_image_uri
    )


async def update_recent_check_image_uri_guarded(
    records: RecordStore, check_id: str, remote_url: str, expected_image_uri: str
) -> int:
    """Scans only sync while saved; an un-saved scan must stay local."""
    return await records.update_guarded(
        RECENT_CHECKS_TABLE, check_id, IMAGE_URI_COLUMN, remote_url, expected_image_uri,
        status_column=OUTCOME_COLUMN, required_status=SAVED_OUTCOME,
    )
