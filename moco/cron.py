"""Parser for standard five-field cron specifications and descriptors."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from fractions import Fraction
from typing import Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class CronError(ValueError):
    """Raised when a cron specification cannot be parsed."""


_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}
_DAY_NAMES = {
    name: number
    for number, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])
}


@dataclass(frozen=True)
class _Bounds:
    low: int
    high: int
    names: Mapping[str, int] = field(default_factory=dict)


_MINUTES = _Bounds(0, 59)
_HOURS = _Bounds(0, 23)
_DOM = _Bounds(1, 31)
_MONTHS = _Bounds(1, 12, _MONTH_NAMES)
_DOW = _Bounds(0, 6, _DAY_NAMES)

_DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_NS_PER_UNIT = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}
_NUMBER = re.compile(r"(\d*)(?:\.(\d*))?")
_UNIT = re.compile(r"[^\d.]+")
_INTEGER = re.compile(r"[+-]?\d+")


@dataclass(frozen=True)
class CronSchedule:
    """A parsed schedule: either a set of calendar fields or a fixed interval."""

    minutes: frozenset[int] = frozenset()
    hours: frozenset[int] = frozenset()
    days_of_month: frozenset[int] = frozenset()
    months: frozenset[int] = frozenset()
    days_of_week: frozenset[int] = frozenset()
    dom_star: bool = False
    dow_star: bool = False
    interval: timedelta | None = None
    location: tzinfo | None = None

    def matches(self, moment: datetime) -> bool:
        """Tell whether the schedule fires at the given moment.

        Interval schedules match moments that are whole multiples of the
        interval since the epoch.
        """
        if self.location is not None and moment.tzinfo is not None:
            moment = moment.astimezone(self.location)
        if self.interval is not None:
            seconds = int(self.interval.total_seconds())
            return moment.microsecond == 0 and int(moment.timestamp()) % seconds == 0
        if moment.second or moment.microsecond:
            return False
        if moment.minute not in self.minutes or moment.hour not in self.hours:
            return False
        if moment.month not in self.months:
            return False
        dom_match = moment.day in self.days_of_month
        dow_match = (moment.weekday() + 1) % 7 in self.days_of_week
        if self.dom_star or self.dow_star:
            return dom_match and dow_match
        return dom_match or dow_match


def _parse_int(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise CronError(f"failed to parse int from {text}: invalid syntax")
    number = int(text)
    if number < 0:
        raise CronError(f"negative number ({number}) not allowed: {text}")
    return number


def _parse_int_or_name(text: str, names: Mapping[str, int]) -> int:
    named = names.get(text.lower())
    if named is not None:
        return named
    return _parse_int(text)


def _get_range(expr: str, bounds: _Bounds) -> tuple[set[int], bool]:
    range_and_step = expr.split("/")
    low_and_high = range_and_step[0].split("-")
    single = len(low_and_high) == 1
    star = False

    if low_and_high[0] in ("*", "?"):
        start, end = bounds.low, bounds.high
        star = True
    else:
        start = _parse_int_or_name(low_and_high[0], bounds.names)
        if len(low_and_high) == 1:
            end = start
        elif len(low_and_high) == 2:
            end = _parse_int_or_name(low_and_high[1], bounds.names)
        else:
            raise CronError(f"too many hyphens: {expr}")

    if len(range_and_step) == 1:
        step = 1
    elif len(range_and_step) == 2:
        step = _parse_int(range_and_step[1])
        if single:
            end = bounds.high
        if step > 1:
            star = False
    else:
        raise CronError(f"too many slashes: {expr}")

    if start < bounds.low:
        raise CronError(f"beginning of range ({start}) below minimum ({bounds.low}): {expr}")
    if end > bounds.high:
        raise CronError(f"end of range ({end}) above maximum ({bounds.high}): {expr}")
    if start > end:
        raise CronError(f"beginning of range ({start}) beyond end of range ({end}): {expr}")
    if step == 0:
        raise CronError(f"step of range should be a positive number: {expr}")
    return set(range(start, end + 1, step)), star


def _get_field(text: str, bounds: _Bounds) -> tuple[frozenset[int], bool]:
    values: set[int] = set()
    star = False
    for expr in text.split(","):
        found, starred = _get_range(expr, bounds)
        values |= found
        star = star or starred
    return frozenset(values), star


def _parse_fields(fields: list[str], location: tzinfo | None) -> CronSchedule:
    if len(fields) != 5:
        raise CronError(f"expected exactly 5 fields, found {len(fields)}: [{' '.join(fields)}]")
    minutes, _ = _get_field(fields[0], _MINUTES)
    hours, _ = _get_field(fields[1], _HOURS)
    dom, dom_star = _get_field(fields[2], _DOM)
    months, _ = _get_field(fields[3], _MONTHS)
    dow, dow_star = _get_field(fields[4], _DOW)
    return CronSchedule(
        minutes=minutes,
        hours=hours,
        days_of_month=dom,
        months=months,
        days_of_week=dow,
        dom_star=dom_star,
        dow_star=dow_star,
        location=location,
    )


def _parse_duration(text: str) -> timedelta:
    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise CronError(f'time: invalid duration "{text}"')
    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        number = _NUMBER.match(rest, pos)
        whole, frac = number.group(1), number.group(2)
        if not whole and not frac:
            raise CronError(f'time: invalid duration "{text}"')
        pos = number.end()
        unit_match = _UNIT.match(rest, pos)
        if unit_match is None:
            raise CronError(f'time: missing unit in duration "{text}"')
        unit = unit_match.group()
        if unit not in _NS_PER_UNIT:
            raise CronError(f'time: unknown unit "{unit}" in duration "{text}"')
        pos = unit_match.end()
        value = Fraction(int(whole or "0"))
        if frac:
            value += Fraction(int(frac), 10 ** len(frac))
        total += value * _NS_PER_UNIT[unit]
    nanoseconds = int(total)
    if negative:
        nanoseconds = -nanoseconds
    return timedelta(microseconds=nanoseconds / 1000)


def _every(delay: timedelta) -> timedelta:
    if delay < timedelta(seconds=1):
        return timedelta(seconds=1)
    return timedelta(seconds=int(delay.total_seconds()))


def _parse_descriptor(spec: str, location: tzinfo | None) -> CronSchedule:
    expansion = _DESCRIPTORS.get(spec)
    if expansion is not None:
        return _parse_fields(expansion.split(), location)
    prefix = "@every "
    if spec.startswith(prefix):
        try:
            delay = _parse_duration(spec[len(prefix):])
        except CronError as exc:
            raise CronError(f"failed to parse duration {spec}: {exc}") from exc
        return CronSchedule(interval=_every(delay), location=location)
    raise CronError(f"unrecognized descriptor: {spec}")


def _load_location(name: str) -> tzinfo | None:
    if name in ("", "UTC"):
        return timezone.utc
    if name == "Local":
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise CronError(f"provided bad location {name}: {exc}") from exc


def parse_standard(spec: str) -> CronSchedule:
    """Parse a five-field cron spec, a descriptor such as @daily, or @every <duration>."""
    if not spec:
        raise CronError("empty spec string")
    location: tzinfo | None = None
    if spec.startswith("TZ=") or spec.startswith("CRON_TZ="):
        space = spec.find(" ")
        equals = spec.find("=")
        if space == -1:
            name, spec = spec[equals + 1:], ""
        else:
            name, spec = spec[equals + 1:space], spec[space:].strip()
        location = _load_location(name)
    if spec.startswith("@"):
        return _parse_descriptor(spec, location)
    return _parse_fields(spec.split(), location)