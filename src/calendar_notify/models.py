"""
Pure data models, free of sqlite and icalendar imports.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta
from datetime import timezone
from datetime import tzinfo
from enum import Enum
from pathlib import Path
from typing import NamedTuple

DEFAULT_STATE_DB = Path.home() / ".local/share/calendar-notify-ledger.db"
DEFAULT_CONFIG = Path.home() / ".config/calendar-notify.conf"


class CalendarNotifyError(Exception):
    """Base exception for calendar notification errors."""

    pass


class ValidationError(CalendarNotifyError):
    """Malformed or empty occurrence/rule input."""

    def __init__(self, message: str, key: "LedgerKey | None" = None):
        if key is not None:
            message = f"{message} (user {key.user_id}, instance {key.instance_id})"
        super().__init__(message)
        self.key = key


class LedgerError(CalendarNotifyError):
    """A ledger read/write failed; the whole batch has been rolled back."""

    def __init__(self, message: str, key: "LedgerKey", channel: "Channel"):
        super().__init__(
            f"{message} (user {key.user_id}, instance {key.instance_id}, "
            f"channel {channel.value})"
        )
        self.key = key
        self.channel = channel


class BatchError(CalendarNotifyError):
    """A ledger batch could not be opened, delivered or committed; nothing was saved."""

    pass


class Channel(str, Enum):
    EMAIL = "email"
    PHONE = "phone"


class DayType(str, Enum):
    WEEKDAY = "weekday"
    WEEKEND = "weekend"

    @classmethod
    def for_date(cls, day: date) -> "DayType":
        return cls.WEEKEND if day.weekday() >= 5 else cls.WEEKDAY


class AlarmKind(str, Enum):
    DISPLAY = "DISPLAY"
    AUDIO = "AUDIO"

    @classmethod
    def for_channel(cls, channel: Channel) -> "AlarmKind":
        return cls.DISPLAY if channel is Channel.EMAIL else cls.AUDIO


def as_utc(ts: datetime, tz: tzinfo | None = None) -> datetime:
    """Normalise a timestamp to aware UTC.

    Naive values are read as wall-clock time in ``tz`` (UTC when omitted).
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=tz or timezone.utc)
    return ts.astimezone(timezone.utc)


class LedgerKey(NamedTuple):
    user_id: int
    instance_id: int


class AlarmScope(NamedTuple):
    user_id: int
    owner_id: int
    location_id: int
    day_type: DayType


@dataclass(frozen=True)
class ModificationTimes:
    """Last-modified timestamps of the records that contributed to an occurrence."""

    owner: datetime | None = None
    location: datetime | None = None
    event: datetime | None = None
    instance: datetime | None = None
    attendance: datetime | None = None

    def latest(self, tz: tzinfo | None = None) -> datetime | None:
        present = [
            as_utc(ts, tz)
            for ts in (self.owner, self.location, self.event, self.instance, self.attendance)
            if ts is not None
        ]
        return max(present) if present else None


@dataclass(frozen=True)
class Occurrence:
    """One event instance as experienced by one attendee.

    ``start_at``/``end_at`` are naive wall-clock times in the configured
    timezone.  ``created_at`` becomes the artifact's DTSTAMP.
    """

    user_id: int
    owner_id: int
    location_id: int
    instance_id: int
    summary: str
    start_at: datetime
    end_at: datetime | None = None
    description: str = ""
    location_text: str = ""
    pre_event_type: str | None = None
    pre_event_offset_minutes: int = 0
    attending_pre_event: bool = False
    modified: ModificationTimes = field(default_factory=ModificationTimes)
    owner_domain: str = "localhost"
    created_at: datetime | None = None

    @property
    def ledger_key(self) -> LedgerKey:
        return LedgerKey(self.user_id, self.instance_id)

    @property
    def day_type(self) -> DayType:
        return DayType.for_date(self.start_at.date())

    @property
    def scope(self) -> AlarmScope:
        return AlarmScope(self.user_id, self.owner_id, self.location_id, self.day_type)

    @property
    def pre_event_offset(self) -> int:
        # Negative offsets from the store are treated as "no pre-event lead time"
        return max(self.pre_event_offset_minutes or 0, 0)

    @property
    def effective_start(self) -> datetime:
        """Start time, moved earlier by the pre-event offset when attending it."""
        if self.attending_pre_event:
            return self.start_at - timedelta(minutes=self.pre_event_offset)
        return self.start_at


@dataclass(frozen=True)
class AlarmCalibrationRule:
    """Maps an event time-of-day to an alarm time-of-day for one scope."""

    event_time: time
    alarm_time: time
    for_email: bool = False
    for_phone: bool = False
    last_modified_at: datetime | None = None


@dataclass(frozen=True)
class SecondAlarmRule:
    offset_minutes: int
    for_email: bool = False
    for_phone: bool = False
    last_modified_at: datetime | None = None


@dataclass(frozen=True)
class ResolvedAlarm:
    at: datetime
    for_email: bool
    for_phone: bool

    def applies_to(self, channel: Channel) -> bool:
        return self.for_email if channel is Channel.EMAIL else self.for_phone


@dataclass(frozen=True)
class LedgerEntry:
    sequence_number: int = 0
    last_sent_at: datetime | None = None


@dataclass(frozen=True)
class LedgerAdvance:
    """Outcome of one advance-if-stale check."""

    sequence_number: int
    last_sent_at: datetime | None
    advanced: bool


@dataclass(frozen=True)
class Alarm:
    trigger_offset_minutes: int
    kind: AlarmKind


@dataclass
class CalendarArtifact:
    """A single-event calendar object ready for RFC 5545 encoding."""

    uid: str
    sequence_number: int
    created_at: datetime
    dtstart: datetime
    dtend: datetime | None
    summary: str
    description: str
    location: str
    channel: Channel
    user_id: int
    instance_id: int
    last_sent_at: datetime | None = None
    alarms: list[Alarm] = field(default_factory=list)
    status: str = "CONFIRMED"
    method: str = "PUBLISH"

    def to_ical(self) -> bytes:
        from calendar_notify.ical import encode_calendar

        return encode_calendar(self)


@dataclass
class UserCalendars:
    """Artifacts produced for one user, handed to the message layer."""

    user_id: int
    channel: Channel
    occurrences: list[Occurrence] = field(default_factory=list)
    calendars: list[bytes] = field(default_factory=list)


@dataclass
class ProcessingResult:
    artifacts: list[CalendarArtifact] = field(default_factory=list)
    by_user: dict[int, UserCalendars] = field(default_factory=dict)


@dataclass
class ProcessingStats:
    """Statistics for one engine run."""

    produced: int = 0
    advanced: int = 0
    unchanged: int = 0


@dataclass
class NotifyConfig:
    """Configuration for one engine run."""

    state_db_path: Path
    channel: Channel = Channel.EMAIL
    timezone: str = "UTC"
    time_format: str = "%H:%M"
    output_dir: Path | None = None
    dry_run: bool = False
    verbose: bool = False
    yes: bool = False  # Auto-confirm without prompting
