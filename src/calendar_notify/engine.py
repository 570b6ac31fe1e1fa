"""
OccurrenceProcessor: orchestrates alarm resolution, ledger sequencing and
artifact building for one batch of occurrences and one delivery channel.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from datetime import tzinfo
from typing import Callable
from typing import Protocol
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from calendar_notify.alarms import resolve_first_alarm
from calendar_notify.alarms import resolve_second_alarm
from calendar_notify.ical import build_artifact
from calendar_notify.ledger import NotificationLedger
from calendar_notify.models import AlarmCalibrationRule
from calendar_notify.models import AlarmScope
from calendar_notify.models import BatchError
from calendar_notify.models import CalendarNotifyError
from calendar_notify.models import Channel
from calendar_notify.models import NotifyConfig
from calendar_notify.models import Occurrence
from calendar_notify.models import ProcessingResult
from calendar_notify.models import ProcessingStats
from calendar_notify.models import ResolvedAlarm
from calendar_notify.models import SecondAlarmRule
from calendar_notify.models import UserCalendars
from calendar_notify.models import ValidationError
from calendar_notify.models import as_utc


class RuleSource(Protocol):
    """Scoped rule lookups supplied by the upstream query layer."""

    def first_alarm_rules(self, scope: AlarmScope) -> list[AlarmCalibrationRule]: ...

    def second_alarm_rule(self, scope: AlarmScope) -> SecondAlarmRule | None: ...


@dataclass(frozen=True)
class _Prepared:
    occurrence: Occurrence
    first: ResolvedAlarm | None
    second: ResolvedAlarm | None
    watermark: datetime | None


def validate_occurrence(occurrence: Occurrence) -> None:
    """Reject occurrences the engine cannot turn into a calendar artifact."""
    if not isinstance(occurrence, Occurrence):
        raise ValidationError(f"expected an Occurrence, got {type(occurrence).__name__}")
    key = occurrence.ledger_key
    if not isinstance(occurrence.start_at, datetime):
        raise ValidationError("occurrence has no start date/time", key)
    if occurrence.start_at.tzinfo is not None:
        raise ValidationError("start time must be a wall-clock (naive) datetime", key)
    if occurrence.end_at is not None:
        if not isinstance(occurrence.end_at, datetime) or occurrence.end_at.tzinfo is not None:
            raise ValidationError("end time must be a wall-clock (naive) datetime", key)
        if occurrence.end_at < occurrence.start_at:
            raise ValidationError("occurrence ends before it starts", key)
    if not (occurrence.summary or "").strip():
        raise ValidationError("occurrence has an empty summary", key)
    if not (occurrence.owner_domain or "").strip():
        raise ValidationError("occurrence has no owner domain for its UID", key)


def staleness_watermark(
    occurrence: Occurrence,
    first_rules: list[AlarmCalibrationRule],
    second_rule: SecondAlarmRule | None,
    tz: tzinfo | None = None,
) -> datetime | None:
    """Latest modification among everything that contributes to the artifact.

    Naive timestamps are read as wall-clock time in ``tz``, the zone the
    occurrence times are expressed in.
    """
    candidates = [occurrence.modified.latest(tz)]
    candidates.extend(rule.last_modified_at for rule in first_rules)
    if second_rule is not None:
        candidates.append(second_rule.last_modified_at)
    present = [as_utc(ts, tz) for ts in candidates if ts is not None]
    return max(present) if present else None


def load_timezone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone {name!r}") from e


class OccurrenceProcessor:
    """Main notification engine."""

    def __init__(self, rules: RuleSource, ledger: NotificationLedger, config: NotifyConfig):
        self.rules = rules
        self.ledger = ledger
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.stats = ProcessingStats()

    def _prepare(self, occurrence: Occurrence, tz: tzinfo) -> _Prepared:
        validate_occurrence(occurrence)
        scope = occurrence.scope
        first_rules = self.rules.first_alarm_rules(scope)
        second_rule = self.rules.second_alarm_rule(scope)
        start = occurrence.effective_start
        try:
            first = resolve_first_alarm(first_rules, start, occurrence.start_at.date())
            second = resolve_second_alarm(second_rule, start)
        except ValidationError as e:
            raise ValidationError(str(e), occurrence.ledger_key) from e
        return _Prepared(
            occurrence=occurrence,
            first=first,
            second=second,
            watermark=staleness_watermark(occurrence, first_rules, second_rule, tz),
        )

    def process(
        self,
        occurrences: list[Occurrence],
        channel: Channel | None = None,
        deliver: Callable[[ProcessingResult], None] | None = None,
    ) -> ProcessingResult:
        """Produce one calendar artifact per occurrence for a single channel.

        Every occurrence is validated and its alarms resolved before the ledger
        is touched.  Ledger checks for the whole batch share one transaction:
        a LedgerError rolls all of them back and propagates, and no artifacts
        are returned.

        ``deliver`` receives the finished result while the transaction is
        still open; the ledger is committed only if it returns normally.
        """
        channel = channel or self.config.channel
        tz = load_timezone(self.config.timezone)
        prepared = [self._prepare(occurrence, tz) for occurrence in occurrences]
        self.logger.info(
            "Processing %d occurrence(s) for %s delivery", len(prepared), channel.value
        )

        result = ProcessingResult()
        with self.ledger.batch(dry_run=self.config.dry_run) as batch:
            for item in prepared:
                occurrence = item.occurrence
                advance = batch.advance_if_stale(occurrence.ledger_key, channel, item.watermark)
                if not advance.advanced:
                    self.logger.debug(
                        "Instance %d for user %d unchanged since %s (sequence %d)",
                        occurrence.instance_id,
                        occurrence.user_id,
                        advance.last_sent_at,
                        advance.sequence_number,
                    )
                artifact = build_artifact(
                    occurrence,
                    item.first,
                    item.second,
                    advance,
                    channel,
                    tz,
                    self.config.time_format,
                )
                result.artifacts.append(artifact)

                bundle = result.by_user.get(occurrence.user_id)
                if bundle is None:
                    bundle = UserCalendars(user_id=occurrence.user_id, channel=channel)
                    result.by_user[occurrence.user_id] = bundle
                bundle.occurrences.append(occurrence)
                bundle.calendars.append(artifact.to_ical())

            if deliver is not None:
                try:
                    deliver(result)
                except CalendarNotifyError:
                    raise
                except Exception as e:
                    raise BatchError(f"Delivery failed, ledger not advanced: {e}") from e

        self.stats.advanced += batch.advanced_count
        self.stats.unchanged += len(batch.advances) - batch.advanced_count
        self.stats.produced += len(result.artifacts)
        return result
