"""
In-memory fake ledger store for testing.

Duck-type-compatible stand-in for LedgerDatabase.  Entries live in a plain
dict; transactions snapshot the dict on begin() and restore it on rollback().
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone

from calendar_notify.models import Channel
from calendar_notify.models import LedgerEntry
from calendar_notify.models import LedgerKey

STORE_EPOCH = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class StepClock:
    """Store clock that advances one second per reading."""

    def __init__(self, start: datetime = STORE_EPOCH):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now += timedelta(seconds=1)
        return current


class FakeLedgerStore:
    """In-memory stub that satisfies the LedgerStore contract."""

    def __init__(self, entries: dict | None = None, clock=None):
        # (key, channel) → LedgerEntry
        self._entries: dict[tuple[LedgerKey, Channel], LedgerEntry] = dict(entries or {})
        self._snapshot: dict | None = None
        self.clock = clock or StepClock()
        self.fail_on_write: LedgerKey | None = None
        self.fail_on_begin = False
        self.fail_on_commit = False
        self.writes: list[tuple[LedgerKey, Channel, int]] = []
        self.commits = 0
        self.rollbacks = 0

    # ------------------------------------------------------------------ #
    # LedgerStore interface                                                #
    # ------------------------------------------------------------------ #

    def read(self, key: LedgerKey, channel: Channel) -> LedgerEntry | None:
        return self._entries.get((key, channel))

    def write_sequence(self, key: LedgerKey, channel: Channel, sequence_number: int):
        if self.fail_on_write == key:
            raise RuntimeError("simulated store failure")
        self._entries[(key, channel)] = LedgerEntry(sequence_number, self.clock())
        self.writes.append((key, channel, sequence_number))

    def read_authoritative_sent_time(self, key: LedgerKey, channel: Channel) -> datetime:
        return self._entries[(key, channel)].last_sent_at

    def begin(self):
        if self.fail_on_begin:
            raise RuntimeError("simulated lock timeout")
        self._snapshot = dict(self._entries)

    def commit(self):
        if self.fail_on_commit:
            raise RuntimeError("simulated commit failure")
        self._snapshot = None
        self.commits += 1

    def rollback(self):
        if self._snapshot is not None:
            self._entries = self._snapshot
            self._snapshot = None
        self.rollbacks += 1

    # ------------------------------------------------------------------ #
    # Test helpers                                                          #
    # ------------------------------------------------------------------ #

    def entry(self, key: LedgerKey, channel: Channel) -> LedgerEntry | None:
        return self._entries.get((key, channel))

    def seed(self, key: LedgerKey, channel: Channel, sequence_number: int, sent_at: datetime):
        self._entries[(key, channel)] = LedgerEntry(sequence_number, sent_at)
