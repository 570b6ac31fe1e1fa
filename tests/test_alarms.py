"""
Unit tests for first/second alarm resolution in calendar_notify.alarms.
"""

from datetime import date

import pytest

from calendar_notify.alarms import anchor_rule
from calendar_notify.alarms import minutes_between
from calendar_notify.alarms import resolve_first_alarm
from calendar_notify.alarms import resolve_second_alarm
from calendar_notify.models import SecondAlarmRule
from calendar_notify.models import ValidationError
from tests.conftest import MONDAY
from tests.conftest import at
from tests.conftest import make_rule

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _three_rules():
    """Morning, midday and evening calibration points with mixed channels."""
    return [
        make_rule("08:00", "07:00", email=True, phone=False),
        make_rule("12:00", "11:10", email=False, phone=True),
        make_rule("18:00", "17:30", email=True, phone=False),
    ]


# ---------------------------------------------------------------------------
# Anchoring
# ---------------------------------------------------------------------------


class TestAnchoring:
    def test_same_day_anchor(self):
        event_at, alarm_at = anchor_rule(make_rule("09:00", "08:00"), date(2026, 3, 2))
        assert event_at == at("09:00")
        assert alarm_at == at("08:00")

    def test_alarm_later_than_event_rolls_back_one_day(self):
        """An alarm at 23:45 for an event at 00:30 belongs to the evening before."""
        event_at, alarm_at = anchor_rule(make_rule("00:30", "23:45"), date(2026, 3, 2))
        assert event_at == at("00:30")
        assert alarm_at == at("23:45", MONDAY.replace(day=1))
        assert minutes_between(alarm_at, event_at) == 45

    def test_minutes_between_truncates_toward_zero(self):
        assert minutes_between(at("10:00"), at("10:01").replace(second=59)) == 1
        assert minutes_between(at("10:01").replace(second=59), at("10:00")) == -1


# ---------------------------------------------------------------------------
# First alarm
# ---------------------------------------------------------------------------


class TestFirstAlarm:
    def test_no_rules_means_no_alarm(self):
        assert resolve_first_alarm([], at("11:00")) is None

    @pytest.mark.parametrize("start", ["00:05", "06:30", "09:00", "13:40", "23:59"])
    def test_single_rule_is_a_fixed_offset(self, start):
        """One rule: alarm = S minus the rule's event-to-alarm offset, for any S."""
        rule = make_rule("09:00", "08:15", email=False, phone=True)
        resolved = resolve_first_alarm([rule], at(start))
        assert minutes_between(resolved.at, at(start)) == 45
        assert (resolved.for_email, resolved.for_phone) == (False, True)

    def test_single_rule_across_midnight(self):
        resolved = resolve_first_alarm([make_rule("00:30", "23:45")], at("10:00"))
        assert resolved.at == at("09:15")

    def test_interpolates_between_two_rules(self):
        """u = 120/300 = 0.4 of the 08:00→13:30 alarm span (330 min) → +132 min."""
        rules = [make_rule("09:00", "08:00"), make_rule("14:00", "13:30")]
        resolved = resolve_first_alarm(rules, at("11:00"))
        assert resolved.at == at("10:12")
        assert resolved.for_email is True
        assert resolved.for_phone is False

    def test_interpolation_matches_interpolated_lead_time(self):
        """Lead time moves linearly from 60 min at 09:00 to 30 min at 14:00."""
        rules = [make_rule("09:00", "08:00"), make_rule("14:00", "13:30")]
        resolved = resolve_first_alarm(rules, at("11:00"))
        assert minutes_between(resolved.at, at("11:00")) == 48

    def test_before_first_rule_uses_first_offset_and_flags(self):
        rules = [
            make_rule("09:00", "08:00", email=False, phone=True),
            make_rule("14:00", "13:30", email=True, phone=False),
        ]
        resolved = resolve_first_alarm(rules, at("07:00"))
        assert resolved.at == at("06:00")
        assert (resolved.for_email, resolved.for_phone) == (False, True)

    def test_at_first_rule_event_time_uses_its_alarm_time(self):
        rules = _three_rules()
        resolved = resolve_first_alarm(rules, at("08:00"))
        assert resolved.at == at("07:00")

    def test_after_last_rule_uses_last_offset_and_flags_only(self):
        rules = _three_rules()
        resolved = resolve_first_alarm(rules, at("21:00"))
        assert resolved.at == at("20:30")
        assert (resolved.for_email, resolved.for_phone) == (True, False)

    def test_exact_hit_on_inner_rule_is_not_interpolated(self):
        rules = _three_rules()
        resolved = resolve_first_alarm(rules, at("12:00"))
        assert resolved.at == at("11:10")
        # Flags of the hit rule alone, not OR-ed with a neighbour
        assert (resolved.for_email, resolved.for_phone) == (False, True)

    def test_interpolates_in_the_enclosing_bracket(self):
        """15:00 lies between 12:00 and 18:00: u = 0.5 of 11:10→17:30 (380 min)."""
        rules = _three_rules()
        resolved = resolve_first_alarm(rules, at("15:00"))
        assert resolved.at == at("14:20")
        assert (resolved.for_email, resolved.for_phone) == (True, True)

    def test_interpolation_rounds_half_up(self):
        """u × span = 0.5 min rounds up to 1 min, not to the even 0."""
        rules = [make_rule("10:00", "09:00"), make_rule("10:02", "09:01")]
        resolved = resolve_first_alarm(rules, at("10:01"))
        assert resolved.at == at("09:01")

    def test_anchor_day_is_the_occurrence_date(self):
        """A pre-event start on the previous evening still anchors to the event's date."""
        rules = [make_rule("09:00", "08:00"), make_rule("14:00", "13:30")]
        previous_evening = at("23:30", MONDAY.replace(day=1))
        resolved = resolve_first_alarm(rules, previous_evening, MONDAY.date())
        # Before the first anchor (Monday 09:00): first rule's 60 minute offset
        assert resolved.at == at("22:30", MONDAY.replace(day=1))

    def test_unsorted_rules_are_rejected(self):
        rules = [make_rule("14:00", "13:30"), make_rule("09:00", "08:00")]
        with pytest.raises(ValidationError, match="sorted by event time"):
            resolve_first_alarm(rules, at("11:00"))

    def test_duplicate_event_times_are_rejected(self):
        rules = [make_rule("09:00", "08:00"), make_rule("09:00", "08:30")]
        with pytest.raises(ValidationError):
            resolve_first_alarm(rules, at("11:00"))

    def test_non_datetime_start_is_rejected(self):
        with pytest.raises(ValidationError):
            resolve_first_alarm([make_rule("09:00", "08:00")], "11:00")


# ---------------------------------------------------------------------------
# Second alarm
# ---------------------------------------------------------------------------


class TestSecondAlarm:
    def test_no_rule_means_no_alarm(self):
        assert resolve_second_alarm(None, at("11:00")) is None

    def test_fixed_offset_before_start(self):
        rule = SecondAlarmRule(offset_minutes=15, for_email=False, for_phone=True)
        resolved = resolve_second_alarm(rule, at("11:00"))
        assert resolved.at == at("10:45")
        assert (resolved.for_email, resolved.for_phone) == (False, True)

    def test_negative_offset_is_rejected(self):
        with pytest.raises(ValidationError):
            resolve_second_alarm(SecondAlarmRule(offset_minutes=-5), at("11:00"))
