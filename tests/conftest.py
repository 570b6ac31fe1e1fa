"""
Shared pytest fixtures and occurrence/rule factories.
"""

from datetime import datetime
from datetime import time
from datetime import timezone

import pytest

from calendar_notify.db import LedgerDatabase
from calendar_notify.ledger import NotificationLedger
from calendar_notify.models import AlarmCalibrationRule
from calendar_notify.models import Channel
from calendar_notify.models import ModificationTimes
from calendar_notify.models import NotifyConfig
from calendar_notify.models import Occurrence
from tests.fake_store import FakeLedgerStore

# 2026-03-02 is a Monday, 2026-03-07 a Saturday.
MONDAY = datetime(2026, 3, 2)
SATURDAY = datetime(2026, 3, 7)

T0 = datetime(2026, 2, 20, 9, 0, tzinfo=timezone.utc)


def at(hhmm: str, day: datetime = MONDAY) -> datetime:
    """Wall-clock datetime on ``day`` for an "HH:MM" string."""
    return datetime.combine(day.date(), time.fromisoformat(hhmm))


def make_rule(
    event: str,
    alarm: str,
    email: bool = True,
    phone: bool = False,
    modified: datetime | None = None,
) -> AlarmCalibrationRule:
    return AlarmCalibrationRule(
        event_time=time.fromisoformat(event),
        alarm_time=time.fromisoformat(alarm),
        for_email=email,
        for_phone=phone,
        last_modified_at=modified,
    )


def make_occurrence(
    user_id: int = 1,
    instance_id: int = 100,
    start: str = "11:00",
    end: str | None = "12:00",
    day: datetime = MONDAY,
    summary: str = "Choir rehearsal",
    modified_at: datetime = T0,
    **kwargs,
) -> Occurrence:
    """Return a valid occurrence owned by owner 10 at location 20."""
    fields = dict(
        user_id=user_id,
        owner_id=10,
        location_id=20,
        instance_id=instance_id,
        summary=summary,
        description="Bring your music folder.",
        location_text="Town Hall",
        start_at=at(start, day),
        end_at=at(end, day) if end else None,
        modified=ModificationTimes(
            owner=modified_at, location=modified_at, event=modified_at, instance=modified_at
        ),
        owner_domain="choir.example.org",
        created_at=T0,
    )
    fields.update(kwargs)
    return Occurrence(**fields)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_ledger.db"


@pytest.fixture
def ledger_db(db_path):
    with LedgerDatabase(db_path) as db:
        yield db


@pytest.fixture
def fake_store():
    return FakeLedgerStore()


@pytest.fixture
def ledger(fake_store):
    return NotificationLedger(fake_store)


@pytest.fixture
def notify_config(db_path):
    return NotifyConfig(
        state_db_path=db_path,
        channel=Channel.EMAIL,
        timezone="Europe/Amsterdam",
        dry_run=False,
        verbose=False,
    )
