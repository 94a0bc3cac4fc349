"""Bounded wait for server-side blob copies"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from azure.storage.blob import BlobClient

from .errors import CopyCancelledError, CopyFailedError, CopyTimeoutError

logger = logging.getLogger(__name__)

COPY_SUCCESS = 'success'
COPY_PENDING = 'pending'
COPY_FAILED = 'failed'
COPY_ABORTED = 'aborted'


@dataclass
class CopyProgress:
    """Copy state reported by the blob service"""
    status: Optional[str]
    copied_bytes: int = 0
    total_bytes: int = 0
    description: Optional[str] = None

    @property
    def percent(self) -> float:
        if not self.total_bytes:
            return 0.0
        return 100.0 * self.copied_bytes / self.total_bytes


def get_copy_progress(blob_client: BlobClient) -> CopyProgress:
    """Read the copy properties of a destination blob"""
    copy = blob_client.get_blob_properties().copy
    copied, total = 0, 0
    if copy.progress:
        copied_str, _, total_str = copy.progress.partition('/')
        copied, total = int(copied_str), int(total_str or 0)
    return CopyProgress(
        status=copy.status,
        copied_bytes=copied,
        total_bytes=total,
        description=copy.status_description,
    )


def wait_for_copy_completion(blob_client: BlobClient, timeout: float,
                             interval: float = 30, backoff: float = 1.0,
                             max_interval: float = 300,
                             cancel_event: Optional[threading.Event] = None) -> CopyProgress:
    """
    Poll a destination blob until its copy succeeds.

    Args:
        blob_client: destination of a start_copy_from_url call
        timeout: seconds to wait before giving up
        interval: seconds between the first polls
        backoff: factor applied to the interval after each poll
        max_interval: upper bound for the interval
        cancel_event: set by the caller to abandon the wait

    Returns:
        The final copy progress, with status 'success'

    Raises:
        CopyFailedError: the copy failed, was aborted, or was never started
        CopyTimeoutError: the deadline passed while the copy was pending
        CopyCancelledError: cancel_event was set
    """
    cancel_event = cancel_event or threading.Event()
    start_time = time.monotonic()
    deadline = start_time + timeout
    attempts = 0

    logger.info(f"🔄 Waiting for copy to {blob_client.blob_name} (timeout {timeout:.0f}s)...")

    while True:
        attempts += 1
        progress = get_copy_progress(blob_client)

        if progress.status == COPY_SUCCESS:
            elapsed = time.monotonic() - start_time
            logger.info(f"🎉 Copy to {blob_client.blob_name} completed after {elapsed:.1f} seconds ({attempts} checks)")
            return progress

        if progress.status in (COPY_FAILED, COPY_ABORTED):
            raise CopyFailedError(
                f"Copy to {blob_client.blob_name} {progress.status}: {progress.description or 'no description'}"
            )

        if progress.status is None:
            raise CopyFailedError(f"Blob {blob_client.blob_name} has no copy operation recorded")

        if progress.status != COPY_PENDING:
            logger.warning(f"⚠️  Unexpected copy status '{progress.status}' on {blob_client.blob_name}, still waiting")

        logger.info(f"⏳ Copy to {blob_client.blob_name}: {progress.percent:.1f}% "
                    f"({progress.copied_bytes}/{progress.total_bytes} bytes, attempt {attempts})")

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise CopyTimeoutError(
                f"Copy to {blob_client.blob_name} still {progress.status} after {timeout:.0f} seconds"
            )

        if cancel_event.wait(min(interval, remaining)):
            raise CopyCancelledError(f"Wait for copy to {blob_client.blob_name} was cancelled")

        interval = min(interval * backoff, max_interval)
