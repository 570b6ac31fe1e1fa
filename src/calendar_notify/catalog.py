"""
In-memory upstream collaborator: scoped alarm rules and batch loading.

The catalog answers only scoped lookups; it never selects or filters which
occurrences get processed.
"""

import json
import logging
from datetime import datetime
from datetime import time
from pathlib import Path

from calendar_notify.models import AlarmCalibrationRule
from calendar_notify.models import AlarmScope
from calendar_notify.models import DayType
from calendar_notify.models import ModificationTimes
from calendar_notify.models import Occurrence
from calendar_notify.models import SecondAlarmRule
from calendar_notify.models import ValidationError

_logger = logging.getLogger(__name__)


class RuleCatalog:
    """Alarm rules keyed by scope.

    First-alarm tables are scoped by (user, owner, location, day type) and
    returned sorted by event time.  Second-alarm rules are scoped by
    (user, owner, location); the day type of the lookup scope is ignored.
    """

    def __init__(self):
        self._first: dict[AlarmScope, list[AlarmCalibrationRule]] = {}
        self._second: dict[tuple[int, int, int], SecondAlarmRule] = {}

    def add_first_alarm(self, scope: AlarmScope, rule: AlarmCalibrationRule):
        self._first.setdefault(scope, []).append(rule)

    def set_second_alarm(
        self, user_id: int, owner_id: int, location_id: int, rule: SecondAlarmRule
    ):
        self._second[(user_id, owner_id, location_id)] = rule

    def first_alarm_rules(self, scope: AlarmScope) -> list[AlarmCalibrationRule]:
        return sorted(self._first.get(scope, []), key=lambda rule: rule.event_time)

    def second_alarm_rule(self, scope: AlarmScope) -> SecondAlarmRule | None:
        return self._second.get((scope.user_id, scope.owner_id, scope.location_id))


# ---------------------------------------------------------------------- #
# JSON batch export                                                        #
# ---------------------------------------------------------------------- #


def _timestamp(value) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _time_of_day(value: str) -> time:
    return time.fromisoformat(value)


def _flag(data: dict, key: str, default: bool = False) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValidationError(f"Field {key!r} must be true or false, got {value!r}")
    return value


def _occurrence_from_dict(data: dict) -> Occurrence:
    modified = data.get("modified") or {}
    return Occurrence(
        user_id=int(data["user_id"]),
        owner_id=int(data["owner_id"]),
        location_id=int(data["location_id"]),
        instance_id=int(data["instance_id"]),
        summary=data["summary"],
        description=data.get("description") or "",
        location_text=data.get("location") or "",
        start_at=datetime.fromisoformat(data["start"]),
        end_at=_timestamp(data.get("end")),
        pre_event_type=data.get("pre_event_type"),
        pre_event_offset_minutes=int(data.get("pre_event_offset") or 0),
        attending_pre_event=_flag(data, "attending_pre_event"),
        modified=ModificationTimes(
            owner=_timestamp(modified.get("owner")),
            location=_timestamp(modified.get("location")),
            event=_timestamp(modified.get("event")),
            instance=_timestamp(modified.get("instance")),
            attendance=_timestamp(modified.get("attendance")),
        ),
        owner_domain=data.get("owner_domain") or "localhost",
        created_at=_timestamp(data.get("created_at")),
    )


def load_batch(path: Path) -> tuple[list[Occurrence], RuleCatalog]:
    """
    Read a JSON export of occurrences and alarm rules.

    Expected top-level keys: ``occurrences``, ``first_alarms`` and
    ``second_alarms`` (the latter two optional).  First-alarm entries carry
    ``weekday`` (bool) to select the day type.  Timestamps without a UTC
    offset are later read in the run's configured timezone.

    Raises ValidationError for unreadable files or malformed entries.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Cannot read batch file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"Batch file {path} must contain a JSON object")

    catalog = RuleCatalog()
    try:
        occurrences = [_occurrence_from_dict(item) for item in data.get("occurrences", [])]
        for item in data.get("first_alarms", []):
            scope = AlarmScope(
                int(item["user_id"]),
                int(item["owner_id"]),
                int(item["location_id"]),
                DayType.WEEKDAY if _flag(item, "weekday", True) else DayType.WEEKEND,
            )
            catalog.add_first_alarm(
                scope,
                AlarmCalibrationRule(
                    event_time=_time_of_day(item["event_time"]),
                    alarm_time=_time_of_day(item["alarm_time"]),
                    for_email=_flag(item, "for_email"),
                    for_phone=_flag(item, "for_phone"),
                    last_modified_at=_timestamp(item.get("modified_at")),
                ),
            )
        for item in data.get("second_alarms", []):
            catalog.set_second_alarm(
                int(item["user_id"]),
                int(item["owner_id"]),
                int(item["location_id"]),
                SecondAlarmRule(
                    offset_minutes=int(item["offset"]),
                    for_email=_flag(item, "for_email"),
                    for_phone=_flag(item, "for_phone"),
                    last_modified_at=_timestamp(item.get("modified_at")),
                ),
            )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed entry in batch file {path}: {e!r}") from e

    _logger.debug("Loaded %d occurrence(s) from %s", len(occurrences), path)
    return occurrences, catalog
