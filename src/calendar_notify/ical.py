"""
Calendar artifact construction and RFC 5545 encoding.
"""

import base64
import hashlib
from datetime import datetime
from datetime import timedelta
from datetime import tzinfo

from icalendar import Alarm as iAlarm
from icalendar import Calendar as iCalendar
from icalendar import Event as iEvent

from calendar_notify.alarms import minutes_between
from calendar_notify.models import Alarm
from calendar_notify.models import AlarmKind
from calendar_notify.models import CalendarArtifact
from calendar_notify.models import Channel
from calendar_notify.models import LedgerAdvance
from calendar_notify.models import Occurrence
from calendar_notify.models import ResolvedAlarm
from calendar_notify.models import as_utc

PRODID = "-//calendar-notify//Appointment Notifications//EN"
DEFAULT_PRE_EVENT_TYPE = "pre-event activity"


def derive_uid(
    user_id: int, owner_id: int, instance_id: int, summary: str, owner_domain: str
) -> str:
    """Stable calendar identity for one attendee's view of one instance.

    The summary text is part of the digest, so renaming an event yields a
    new UID rather than an update of the old one.
    """
    digest = hashlib.sha256()
    digest.update(f"{user_id}-{owner_id}-{instance_id}-".encode("utf-8"))
    digest.update(summary.encode("utf-8"))
    return base64.b64encode(digest.digest()).decode("ascii") + "@" + owner_domain


def describe(occurrence: Occurrence, time_format: str = "%H:%M") -> str:
    """Trimmed description, annotated with the pre-event activity when attended."""
    description = (occurrence.description or "").strip()
    if occurrence.attending_pre_event and occurrence.pre_event_offset > 0:
        pre_event_type = (occurrence.pre_event_type or "").strip() or DEFAULT_PRE_EVENT_TYPE
        when = occurrence.effective_start.strftime(time_format)
        description = f"{description} ({pre_event_type} at {when})"
    return description


def _alarm_for(
    resolved: ResolvedAlarm | None, start_at: datetime, channel: Channel
) -> Alarm | None:
    if resolved is None or not resolved.applies_to(channel):
        return None
    return Alarm(
        trigger_offset_minutes=-minutes_between(resolved.at, start_at),
        kind=AlarmKind.for_channel(channel),
    )


def build_artifact(
    occurrence: Occurrence,
    first: ResolvedAlarm | None,
    second: ResolvedAlarm | None,
    ledger: LedgerAdvance,
    channel: Channel,
    tz: tzinfo,
    time_format: str = "%H:%M",
) -> CalendarArtifact:
    """Combine an occurrence, its resolved alarms and ledger state into an artifact.

    Alarm triggers are relative to the occurrence's actual start, not the
    effective (pre-event) start the alarm times were resolved against.
    """
    alarms = [
        alarm
        for alarm in (
            _alarm_for(first, occurrence.start_at, channel),
            _alarm_for(second, occurrence.start_at, channel),
        )
        if alarm is not None
    ]
    created_at = occurrence.created_at or ledger.last_sent_at
    summary = occurrence.summary.strip()
    return CalendarArtifact(
        uid=derive_uid(
            occurrence.user_id,
            occurrence.owner_id,
            occurrence.instance_id,
            occurrence.summary,
            occurrence.owner_domain,
        ),
        sequence_number=ledger.sequence_number,
        created_at=as_utc(created_at, tz),
        dtstart=occurrence.start_at.replace(tzinfo=tz),
        dtend=occurrence.end_at.replace(tzinfo=tz) if occurrence.end_at else None,
        summary=summary,
        description=describe(occurrence, time_format),
        location=(occurrence.location_text or "").strip(),
        channel=channel,
        user_id=occurrence.user_id,
        instance_id=occurrence.instance_id,
        last_sent_at=ledger.last_sent_at,
        alarms=alarms,
    )


def encode_calendar(artifact: CalendarArtifact) -> bytes:
    """Encode an artifact as a single-event VCALENDAR."""
    cal = iCalendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    cal.add("method", artifact.method)

    event = iEvent()
    event.add("uid", artifact.uid)
    event.add("sequence", artifact.sequence_number)
    event.add("dtstamp", as_utc(artifact.created_at))
    if artifact.last_sent_at is not None:
        event.add("last-modified", as_utc(artifact.last_sent_at))
    event.add("dtstart", artifact.dtstart)
    if artifact.dtend is not None:
        event.add("dtend", artifact.dtend)
    event.add("summary", artifact.summary)
    if artifact.description:
        event.add("description", artifact.description)
    if artifact.location:
        event.add("location", artifact.location)
    event.add("status", artifact.status)

    for alarm in artifact.alarms:
        valarm = iAlarm()
        valarm.add("action", alarm.kind.value)
        valarm.add("trigger", timedelta(minutes=alarm.trigger_offset_minutes))
        if alarm.kind is AlarmKind.DISPLAY:
            # DISPLAY alarms must carry a DESCRIPTION (RFC 5545 §3.6.6)
            valarm.add("description", artifact.summary or "Reminder")
        event.add_component(valarm)

    cal.add_component(event)
    return cal.to_ical()
