"""
Stateless alarm-time resolution.

First alarms are interpolated from a per-scope calibration table; second
alarms are a fixed offset before the effective start.
"""

import logging
import math
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta

from calendar_notify.models import AlarmCalibrationRule
from calendar_notify.models import ResolvedAlarm
from calendar_notify.models import SecondAlarmRule
from calendar_notify.models import ValidationError

_logger = logging.getLogger(__name__)

_MINUTE = timedelta(minutes=1)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from ``start`` to ``end``, truncated toward zero."""
    return int((end - start) / _MINUTE)


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def anchor_rule(rule: AlarmCalibrationRule, day: date) -> tuple[datetime, datetime]:
    """Anchor a rule's event and alarm time-of-day to ``day``.

    An alarm time-of-day later than the event time-of-day belongs to the
    previous day (e.g. event 00:30, alarm 23:00).
    """
    event_at = datetime.combine(day, rule.event_time)
    alarm_at = datetime.combine(day, rule.alarm_time)
    if alarm_at > event_at:
        alarm_at -= timedelta(days=1)
    return event_at, alarm_at


def validate_rules(rules: list[AlarmCalibrationRule]) -> None:
    """Reject rule lists that are malformed or not strictly increasing in event time."""
    previous: time | None = None
    for index, rule in enumerate(rules):
        if not isinstance(rule, AlarmCalibrationRule):
            raise ValidationError(f"calibration rule {index} is not an AlarmCalibrationRule")
        if not isinstance(rule.event_time, time) or not isinstance(rule.alarm_time, time):
            raise ValidationError(f"calibration rule {index} needs time-of-day values")
        if previous is not None and rule.event_time <= previous:
            raise ValidationError(
                f"calibration rules must be sorted by event time: rule {index} "
                f"({rule.event_time:%H:%M}) does not follow {previous:%H:%M}"
            )
        previous = rule.event_time


def resolve_first_alarm(
    rules: list[AlarmCalibrationRule], effective_start: datetime, day: date | None = None
) -> ResolvedAlarm | None:
    """Resolve the first alarm for an occurrence starting at ``effective_start``.

    ``rules`` is the calibration table for the occurrence's scope, ordered by
    event time, and ``day`` is the occurrence date the table is anchored to
    (defaults to the date of ``effective_start``).  Between two calibration
    points the alarm time is linearly interpolated; outside the table the
    nearest boundary rule's fixed offset applies.  Returns None when the
    table is empty.
    """
    if not isinstance(effective_start, datetime):
        raise ValidationError("effective start must be a datetime")
    validate_rules(rules)
    if not rules:
        return None

    day = day or effective_start.date()
    anchors = [anchor_rule(rule, day) for rule in rules]
    last = len(rules) - 1

    def fixed_offset(index: int) -> ResolvedAlarm:
        event_at, alarm_at = anchors[index]
        rule = rules[index]
        return ResolvedAlarm(
            at=effective_start - timedelta(minutes=minutes_between(alarm_at, event_at)),
            for_email=rule.for_email,
            for_phone=rule.for_phone,
        )

    if last == 0 or effective_start <= anchors[0][0]:
        return fixed_offset(0)
    if effective_start >= anchors[last][0]:
        return fixed_offset(last)

    for i in range(last):
        event_at, alarm_at = anchors[i]
        if effective_start == event_at:
            return ResolvedAlarm(alarm_at, rules[i].for_email, rules[i].for_phone)
        next_event_at, next_alarm_at = anchors[i + 1]
        if event_at < effective_start < next_event_at:
            u = minutes_between(event_at, effective_start) / minutes_between(
                event_at, next_event_at
            )
            shift = _round_half_up(u * minutes_between(alarm_at, next_alarm_at))
            _logger.debug(
                "Interpolating between %s and %s (u=%.3f, shift=%d min)",
                event_at.time(),
                next_event_at.time(),
                u,
                shift,
            )
            return ResolvedAlarm(
                at=alarm_at + timedelta(minutes=shift),
                for_email=rules[i].for_email or rules[i + 1].for_email,
                for_phone=rules[i].for_phone or rules[i + 1].for_phone,
            )

    # Unreachable for a validated table: the boundary checks above cover the rest.
    raise ValidationError(f"no calibration bracket for {effective_start:%H:%M}")


def resolve_second_alarm(
    rule: SecondAlarmRule | None, effective_start: datetime
) -> ResolvedAlarm | None:
    """Second alarm: a fixed offset before the effective start, if configured."""
    if rule is None:
        return None
    if rule.offset_minutes is None or rule.offset_minutes < 0:
        raise ValidationError(f"second-alarm offset must be >= 0, got {rule.offset_minutes}")
    return ResolvedAlarm(
        at=effective_start - timedelta(minutes=rule.offset_minutes),
        for_email=rule.for_email,
        for_phone=rule.for_phone,
    )
