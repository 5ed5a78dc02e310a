"""Per-feed sync status tracking."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from processor.models import (
    SYNC_ERROR_PREFIX,
    SYNC_RUNNING,
    SYNC_SUCCESS,
    FeedRegistration,
    SyncState,
)
from storage.feed_repository import FeedRepository

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500


class SyncStatusTracker:
    """
    Record idle -> running -> success | error: <message> for one feed.

    ``running`` must be written before the feed is fetched; ``track()``
    guarantees a terminal state even when the run raises.
    """

    def __init__(self, repository: FeedRepository, feed: FeedRegistration):
        self.repository = repository
        self.feed = feed

    def mark_running(self) -> None:
        self._save(SYNC_RUNNING)

    def mark_success(self) -> None:
        self._save(SYNC_SUCCESS)

    def mark_error(self, message: str) -> None:
        message = (message or 'unknown error').strip()[:MAX_ERROR_MESSAGE_LENGTH]
        self._save(f"{SYNC_ERROR_PREFIX}{message}")

    @contextmanager
    def track(self):
        """
        Mark the feed running for the duration of the block.

        Exceptions mark the feed as errored and propagate; a clean exit
        marks it successful. A failure to write the success state is
        recorded as an error too.
        """
        self.mark_running()
        try:
            yield self
        except BaseException as e:
            self._record_failure(e)
            raise

        try:
            self.mark_success()
        except Exception as e:
            self._record_failure(e)
            raise

    def _record_failure(self, error: BaseException) -> None:
        try:
            self.mark_error(str(error) or type(error).__name__)
        except Exception:
            logger.exception(f"Could not record error state for feed {self.feed.id}")

    def _save(self, status: str) -> None:
        state = SyncState(
            last_sync_at=datetime.now(timezone.utc).isoformat(),
            last_sync_status=status,
        )
        self.repository.save_sync_state(self.feed, state)
        logger.info(f"Feed {self.feed.id} sync status: {status}")
