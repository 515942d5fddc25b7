from __future__ import annotations

from datetime import date, datetime, time
from itertools import islice
from typing import Any

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, rrule
from icalendar import vRecur

from cadence.errors import InvalidRuleError
from cadence.models import END_CONDITION_TYPES, FREQUENCIES, RecurrenceRule


DEFAULT_MAX_OCCURRENCES = 730
# Dates are anchored at midday so that day arithmetic never crosses midnight.
ANCHOR_TIME = time(12, 0)

_FREQUENCY_MAP = {"daily": DAILY, "weekly": WEEKLY, "monthly": MONTHLY}
_WEEKDAY_MAP = {0: SU, 1: MO, 2: TU, 3: WE, 4: TH, 5: FR, 6: SA}
_ICAL_DAY_NAMES = {0: "SU", 1: "MO", 2: "TU", 3: "WE", 4: "TH", 5: "FR", 6: "SA"}


def _check_shape(rule: RecurrenceRule, start_date: date | None) -> None:
    if start_date is None:
        raise InvalidRuleError("a recurring event needs a start date", field="startDate")
    if rule.frequency not in FREQUENCIES:
        raise InvalidRuleError(f"unsupported frequency: {rule.frequency!r}", field="frequency")
    if rule.interval < 1:
        raise InvalidRuleError("interval must be a positive integer", field="interval")
    if rule.frequency == "weekly":
        if not rule.days_of_week:
            raise InvalidRuleError("weekly rules need at least one weekday", field="daysOfWeek")
        invalid_days = [day for day in rule.days_of_week if day not in _WEEKDAY_MAP]
        if invalid_days:
            raise InvalidRuleError(f"weekday indices must be 0..6, got {invalid_days}", field="daysOfWeek")
    end = rule.end_condition
    if end is None or end.type not in END_CONDITION_TYPES:
        raise InvalidRuleError("rule needs an end date or an occurrence count", field="endCondition")
    if end.type == "count":
        if not isinstance(end.value, int) or end.value < 1:
            raise InvalidRuleError("occurrence count must be a positive integer", field="endCondition.value")
    elif not isinstance(end.value, date):
        raise InvalidRuleError("end date must be a calendar date", field="endCondition.value")
    elif end.value < start_date:
        raise InvalidRuleError("end date is before the start date", field="endCondition.value")


def _build_rrule(rule: RecurrenceRule, start_date: date) -> rrule:
    end = rule.end_condition
    byweekday = None
    if rule.frequency == "weekly":
        byweekday = [_WEEKDAY_MAP[day] for day in sorted(set(rule.days_of_week or []))]
    until = None
    count = None
    if end.type == "date":
        until = datetime.combine(end.value, time.max)
    else:
        count = int(end.value)
    return rrule(
        _FREQUENCY_MAP[rule.frequency],
        dtstart=datetime.combine(start_date, ANCHOR_TIME),
        interval=rule.interval,
        byweekday=byweekday,
        until=until,
        count=count,
    )


def expand(
    rule: RecurrenceRule,
    start_date: date,
    *,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> list[date]:
    """Return every calendar date the rule matches, oldest first.

    Raises InvalidRuleError for malformed rules and for rules that would
    produce more than ``max_occurrences`` dates.
    """
    _check_shape(rule, start_date)
    end = rule.end_condition
    if end.type == "count" and int(end.value) > max_occurrences:
        raise InvalidRuleError(
            f"rule asks for {end.value} occurrences, limit is {max_occurrences}",
            field="endCondition.value",
        )

    dates: list[date] = []
    seen: set[date] = set()
    for occurrence in islice(_build_rrule(rule, start_date), max_occurrences + 1):
        day = occurrence.date()
        if day in seen:
            continue
        seen.add(day)
        dates.append(day)
    if len(dates) > max_occurrences:
        raise InvalidRuleError(
            f"rule produces more than {max_occurrences} occurrences",
            field="endCondition",
        )
    return dates


def validate_rule(
    rule: RecurrenceRule,
    start_date: date | None,
    *,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> None:
    expand(rule, start_date, max_occurrences=max_occurrences)


def to_ical_recur(rule: RecurrenceRule) -> vRecur:
    recur: dict[str, Any] = {"FREQ": rule.frequency.upper(), "INTERVAL": rule.interval}
    if rule.frequency == "weekly" and rule.days_of_week:
        recur["BYDAY"] = [_ICAL_DAY_NAMES[day] for day in sorted(set(rule.days_of_week))]
    end = rule.end_condition
    if end is not None and end.type == "count":
        recur["COUNT"] = int(end.value)
    elif end is not None and end.type == "date":
        recur["UNTIL"] = end.value
    return vRecur(recur)


def rrule_text(rule: RecurrenceRule) -> str:
    return to_ical_recur(rule).to_ical().decode("utf-8")


def describe_rule(
    rule: RecurrenceRule,
    start_date: date,
    *,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> dict[str, Any]:
    dates = expand(rule, start_date, max_occurrences=max_occurrences)
    last = dates[-1] if dates else None
    summary = f"This will create {len(dates)} events"
    if last is not None:
        summary += f", ending on {last.isoformat()}"
    return {
        "count": len(dates),
        "first_date": dates[0].isoformat() if dates else None,
        "last_date": last.isoformat() if last else None,
        "dates": [day.isoformat() for day in dates],
        "rrule": rrule_text(rule),
        "summary": summary + ".",
    }
