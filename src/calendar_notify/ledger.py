"""
Notification ledger: per (user, instance, channel) sequence numbers and
last-sent times, advanced at most once per content change.
"""

import logging
from datetime import datetime
from typing import Protocol

from calendar_notify.models import BatchError
from calendar_notify.models import Channel
from calendar_notify.models import LedgerAdvance
from calendar_notify.models import LedgerEntry
from calendar_notify.models import LedgerError
from calendar_notify.models import LedgerKey
from calendar_notify.models import as_utc


class LedgerStore(Protocol):
    """Persistence operations the ledger needs from its backing store."""

    def read(self, key: LedgerKey, channel: Channel) -> LedgerEntry | None: ...

    def write_sequence(self, key: LedgerKey, channel: Channel, sequence_number: int) -> None:
        """Persist ``sequence_number`` and stamp the entry from the store's clock."""
        ...

    def read_authoritative_sent_time(self, key: LedgerKey, channel: Channel) -> datetime: ...

    def begin(self) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


def is_stale(entry: LedgerEntry, watermark: datetime | None) -> bool:
    """True when the last delivery predates the newest contributing change."""
    if entry.last_sent_at is None:
        return True
    if watermark is None:
        return False
    return as_utc(entry.last_sent_at) < as_utc(watermark)


class NotificationLedger:
    """Advance-if-stale over a LedgerStore."""

    def __init__(self, store: LedgerStore):
        self.store = store
        self.logger = logging.getLogger(__name__)

    def advance_if_stale(
        self, key: LedgerKey, channel: Channel, watermark: datetime | None
    ) -> LedgerAdvance:
        """Bump the sequence number when the entry is stale relative to ``watermark``.

        Callers run this inside a store transaction (see :meth:`batch`);
        store failures surface as LedgerError with the key and channel
        attached.
        """
        try:
            entry = self.store.read(key, channel) or LedgerEntry()
            if not is_stale(entry, watermark):
                return LedgerAdvance(entry.sequence_number, entry.last_sent_at, False)

            sequence_number = entry.sequence_number + 1
            self.store.write_sequence(key, channel, sequence_number)
            sent_at = self.store.read_authoritative_sent_time(key, channel)
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"Ledger update failed: {e}", key, channel) from e

        self.logger.debug(
            "Advanced %s ledger for user %d instance %d to sequence %d",
            channel.value,
            key.user_id,
            key.instance_id,
            sequence_number,
        )
        return LedgerAdvance(sequence_number, sent_at, True)

    def batch(self, dry_run: bool = False) -> "Batch":
        return Batch(self, dry_run=dry_run)


class Batch:
    """One all-or-nothing unit of ledger writes.

    Used as a context manager: every advance made through the batch is
    committed together on a clean exit and rolled back together if the block
    raises.  A dry-run batch always rolls back.
    """

    def __init__(self, ledger: NotificationLedger, dry_run: bool = False):
        self.ledger = ledger
        self.dry_run = dry_run
        self.advances: list[tuple[LedgerKey, Channel, LedgerAdvance]] = []
        self.committed = False
        self._open = False

    def __enter__(self):
        if self._open:
            raise RuntimeError("batch already open")
        try:
            self.ledger.store.begin()
        except Exception as e:
            raise BatchError(f"Cannot open ledger batch: {e}") from e
        self._open = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._open = False
        logger = self.ledger.logger
        if exc_type is not None:
            self.ledger.store.rollback()
            logger.warning(
                "Rolled back ledger batch (%d check(s) discarded): %s",
                len(self.advances),
                exc_val,
            )
            return False

        if self.dry_run:
            self.ledger.store.rollback()
            logger.info("[DRY RUN] Would advance %d ledger entry(ies)", self.advanced_count)
            return False

        try:
            self.ledger.store.commit()
        except Exception as e:
            self.ledger.store.rollback()
            logger.error("Ledger commit failed, batch rolled back: %s", e)
            raise BatchError(f"Cannot commit ledger batch: {e}") from e
        self.committed = True
        logger.info(
            "Committed %d ledger advance(s) out of %d check(s)",
            self.advanced_count,
            len(self.advances),
        )
        return False

    @property
    def advanced_count(self) -> int:
        return sum(1 for _, _, result in self.advances if result.advanced)

    def advance_if_stale(
        self, key: LedgerKey, channel: Channel, watermark: datetime | None
    ) -> LedgerAdvance:
        if not self._open:
            raise RuntimeError("ledger batch used outside its 'with' block")
        result = self.ledger.advance_if_stale(key, channel, watermark)
        self.advances.append((key, channel, result))
        return result
