"""Reconcile parsed calendar events against the calendar block store."""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from processor.event_processor import EventProcessor, EventValidationError
from processor.models import CalendarBlock, RawCalendarEvent, SyncReport
from storage.block_store import (
    NO_UNIQUE_CONSTRAINT,
    UNIQUE_VIOLATION,
    BlockStore,
    StoreError,
)

logger = logging.getLogger(__name__)

FALLBACK_CODES = (NO_UNIQUE_CONSTRAINT, UNIQUE_VIOLATION)


class WriteOutcome(str, Enum):
    INSERTED = 'inserted'
    UPDATED = 'updated'
    FAILED = 'failed'
    # Intermediate state: the atomic upsert was refused, use the fallback path
    FALLBACK = 'fallback'


@dataclass
class WriteResult:
    outcome: WriteOutcome
    reason: Optional[str] = None


def db_error_reason(error: StoreError) -> str:
    return f"db_error_{error.code}"


class BlockWriter:
    """
    Write a block with upsert semantics.

    States: UPSERT -> INSERTED | UPDATED | FAILED | FALLBACK;
    FALLBACK -> INSERTED | UPDATED | FAILED. The fallback looks the row up
    by key and issues a targeted update or insert.
    """

    def __init__(self, store: BlockStore):
        self.store = store

    def write(self, block: CalendarBlock) -> WriteResult:
        result = self.try_upsert(block)
        if result.outcome is WriteOutcome.FALLBACK:
            logger.info(
                f"Upsert unavailable ({result.reason}) for {block.external_id}, "
                f"using lookup-then-write"
            )
            result = self.fallback_write(block)
        return result

    def try_upsert(self, block: CalendarBlock) -> WriteResult:
        try:
            existed = self.store.upsert_block(block)
        except StoreError as e:
            if e.code in FALLBACK_CODES:
                return WriteResult(WriteOutcome.FALLBACK, e.code)
            logger.error(f"Upsert failed for {block.external_id}: {e}")
            return WriteResult(WriteOutcome.FAILED, db_error_reason(e))
        return WriteResult(WriteOutcome.UPDATED if existed else WriteOutcome.INSERTED)

    def fallback_write(self, block: CalendarBlock) -> WriteResult:
        try:
            existing = self.store.find_block(*block.key)
            if existing is not None:
                self.store.update_block(existing, block.mutable_fields())
                return WriteResult(WriteOutcome.UPDATED)
            self.store.insert_block(block)
            return WriteResult(WriteOutcome.INSERTED)
        except StoreError as e:
            logger.error(f"Fallback write failed for {block.external_id}: {e}")
            return WriteResult(WriteOutcome.FAILED, db_error_reason(e))


class ReconciliationEngine:
    """Upsert the events of one feed as calendar blocks."""

    def __init__(self, store: BlockStore, today: Optional[date] = None):
        """
        Args:
            store: Calendar block store
            today: Cutoff for past events (defaults to the current UTC date)
        """
        self.store = store
        self.today = today or datetime.now(timezone.utc).date()
        self.processor = EventProcessor(today=self.today)
        self.writer = BlockWriter(store)

    def reconcile(
        self,
        events: List[RawCalendarEvent],
        property_id: str,
        host_id: Optional[str],
        channel: str,
        created_by: Optional[str] = None,
    ) -> SyncReport:
        """
        Process events sequentially; a failing event never aborts the run.

        Args:
            events: Parsed events of one feed
            property_id: Property the feed belongs to
            host_id: Owner of the property
            channel: Channel name of the feed
            created_by: Actor recorded on new rows

        Returns:
            SyncReport with created/updated/skipped counts
        """
        report = SyncReport()
        if not events:
            logger.info(f"No events to reconcile for property {property_id}")
            return report

        for event in events:
            try:
                block = self.processor.build_block(
                    event, property_id, host_id, channel, created_by
                )
            except EventValidationError as e:
                logger.warning(f"Skipping event {event.uid or event.summary!r}: {e.reason} ({e})")
                report.record_skip(e.reason)
                continue

            result = self.writer.write(block)
            if result.outcome is WriteOutcome.INSERTED:
                report.created += 1
            elif result.outcome is WriteOutcome.UPDATED:
                report.updated += 1
            else:
                report.record_skip(result.reason)

        report.processed = report.created + report.updated
        logger.info(
            f"Reconciled {len(events)} events for property {property_id}: "
            f"{report.created} created, {report.updated} updated, "
            f"{report.skipped} skipped"
        )
        return report
