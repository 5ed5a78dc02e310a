"""Storage interface for calendar blocks."""
from abc import ABC, abstractmethod
from typing import Optional

from processor.models import CalendarBlock

# Store cannot perform an atomic upsert on (property_id, source, external_id)
NO_UNIQUE_CONSTRAINT = 'no_unique_constraint'
# A concurrent writer created the same block first
UNIQUE_VIOLATION = 'unique_violation'


class StoreError(Exception):
    """Persistence failure carrying a machine-readable code."""

    def __init__(self, code: str, message: str = ''):
        super().__init__(message or code)
        self.code = code


class BlockStore(ABC):
    """Persisted calendar blocks keyed by (property_id, source, external_id)."""

    @abstractmethod
    def upsert_block(self, block: CalendarBlock) -> bool:
        """
        Atomically insert the block or update its mutable fields.

        Returns:
            True if a block with the same key already existed

        Raises:
            StoreError: NO_UNIQUE_CONSTRAINT if the store cannot upsert on
                the key, UNIQUE_VIOLATION on a lost race, or any other code
        """

    @abstractmethod
    def find_block(self, property_id: str, source: str, external_id: str) -> Optional[CalendarBlock]:
        """Return the block stored under the key, if any."""

    @abstractmethod
    def update_block(self, existing: CalendarBlock, changes: dict) -> None:
        """Overwrite the given fields of a block returned by find_block."""

    @abstractmethod
    def insert_block(self, block: CalendarBlock) -> CalendarBlock:
        """Insert a new block and return it with its id assigned."""
