"""
Special Session Triggers

Calendar-driven ad-hoc sessions ("every Monday", "2026-03-15",
"last day of month", OpEx, NFP, ...). Matching is a pure function of the
fund config and a local date, so it can be evaluated any number of times
for the same minute with the same answer.
"""
import calendar
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, List, Optional

from core.config import FundConfig, SpecialSessionConfig

logger = logging.getLogger(__name__)

_WEEKDAY_NAMES = {name.lower(): idx for idx, name in enumerate(calendar.day_name)}
_ISO_DATE = re.compile(r"^\s*(\d{4}-\d{2}-\d{2})\s*$")


@dataclass(frozen=True)
class KnownEvent:
    name: str
    trigger: str
    default_time: str
    default_focus: str
    recurring: str  # yearly / monthly / quarterly / ad-hoc


KNOWN_EVENTS: List[KnownEvent] = [
    KnownEvent(
        name="FOMC Meeting",
        trigger="FOMC meeting day",
        default_time="14:00",
        default_focus="Analyze FOMC decision and press conference. Adjust rate-sensitive positions.",
        recurring="ad-hoc",
    ),
    KnownEvent(
        name="Monthly OpEx",
        trigger="Monthly options expiration (OpEx)",
        default_time="09:00",
        default_focus="Review positions ahead of options expiration. Watch for pinning and volatility.",
        recurring="monthly",
    ),
    KnownEvent(
        name="Non-Farm Payrolls",
        trigger="Non-Farm Payrolls release",
        default_time="08:15",
        default_focus="Assess the jobs report and its read-through to rates and equities.",
        recurring="monthly",
    ),
    KnownEvent(
        name="Quarter Start",
        trigger="first trading day of quarter",
        default_time="09:00",
        default_focus="Quarterly rebalance. Review allocation against objective.",
        recurring="quarterly",
    ),
    KnownEvent(
        name="Month End",
        trigger="last day of month",
        default_time="16:00",
        default_focus="End-of-month review. Record performance against objective.",
        recurring="monthly",
    ),
    KnownEvent(
        name="Year End",
        trigger="12-31",
        default_time="10:00",
        default_focus="Year-end review. Tax-loss harvesting candidates. Plan next year.",
        recurring="yearly",
    ),
]


def _nth_weekday(d: date, weekday: int) -> int:
    """1-based occurrence index of d's weekday within its month (0 if wrong weekday)."""
    if d.weekday() != weekday:
        return 0
    return (d.day - 1) // 7 + 1


def _is_last_day_of_month(d: date) -> bool:
    return d.day == calendar.monthrange(d.year, d.month)[1]


def _is_first_weekday_of_quarter(d: date) -> bool:
    if d.month not in (1, 4, 7, 10) or d.weekday() >= 5:
        return False
    first = d.replace(day=1)
    while first.weekday() >= 5:
        first = first.replace(day=first.day + 1)
    return d == first


def _matcher_for(trigger: str) -> Optional[Callable[[date], bool]]:
    text = trigger.strip().lower()

    iso = _ISO_DATE.match(text)
    if iso:
        target = date.fromisoformat(iso.group(1))
        return lambda d: d == target

    if re.fullmatch(r"\d{2}-\d{2}", text):
        month, day = (int(x) for x in text.split("-"))
        return lambda d: d.month == month and d.day == day

    every = re.fullmatch(r"every\s+(\w+)", text)
    if every and every.group(1) in _WEEKDAY_NAMES:
        weekday = _WEEKDAY_NAMES[every.group(1)]
        return lambda d: d.weekday() == weekday

    if "first trading day of quarter" in text or "quarter start" in text:
        return _is_first_weekday_of_quarter
    if "first day of month" in text:
        return lambda d: d.day == 1
    if "last day of month" in text:
        return _is_last_day_of_month
    if "opex" in text or "options expiration" in text:
        return lambda d: _nth_weekday(d, calendar.FRIDAY) == 3
    if "nfp" in text or "non-farm payroll" in text:
        return lambda d: _nth_weekday(d, calendar.FRIDAY) == 1

    return None


def trigger_matches(trigger: str, local_date: date) -> bool:
    matcher = _matcher_for(trigger)
    if matcher is None:
        return False
    return matcher(local_date)


def check_special_sessions(config: FundConfig, local_now: datetime) -> List[SpecialSessionConfig]:
    """Enabled special sessions whose trigger matches the fund-local date."""
    local_date = local_now.date()
    matches = []
    for special in config.schedule.special_sessions:
        if not special.enabled:
            continue
        if _matcher_for(special.trigger) is None:
            logger.debug(f"Unrecognized special-session trigger {special.trigger!r} in fund '{config.fund.name}'")
            continue
        if trigger_matches(special.trigger, local_date):
            matches.append(special)
    return matches


def special_session_type(trigger: str) -> str:
    """Session-type slug: "Every Monday" -> "special_every_monday"."""
    return "special_" + re.sub(r"\s+", "_", trigger.strip()).lower()
