from __future__ import annotations

import math
import re

_MINUTE = 60.0
_HOUR = 60 * _MINUTE
_DAY = 24 * _HOUR

# humantime-style unit spellings ("30 min", "2 hours", "1M" for a month).
_UNIT_SECONDS: dict[str, float] = {
    's': 1.0,
    'sec': 1.0,
    'secs': 1.0,
    'second': 1.0,
    'seconds': 1.0,
    'm': _MINUTE,
    'min': _MINUTE,
    'mins': _MINUTE,
    'minute': _MINUTE,
    'minutes': _MINUTE,
    'h': _HOUR,
    'hr': _HOUR,
    'hrs': _HOUR,
    'hour': _HOUR,
    'hours': _HOUR,
    'd': _DAY,
    'day': _DAY,
    'days': _DAY,
    'w': 7 * _DAY,
    'week': 7 * _DAY,
    'weeks': 7 * _DAY,
    'M': 30.44 * _DAY,
    'month': 30.44 * _DAY,
    'months': 30.44 * _DAY,
    'y': 365.25 * _DAY,
    'year': 365.25 * _DAY,
    'years': 365.25 * _DAY,
}

_GROUP_RE = re.compile(r'\s*(\d+)\s*([A-Za-z]+)\s*')


def _unit_seconds(unit: str) -> float | None:
    # "m" is minutes and "M" is months; everything else is case-insensitive.
    if unit in {'m', 'M'}:
        return _UNIT_SECONDS[unit]
    return _UNIT_SECONDS.get(unit.lower())


def parse_duration(raw: str) -> float | None:
    """Parse '2 hours', '3days', '1h 30min' into seconds.

    None if the text is not a duration or the total does not fit in a float.
    """
    s = (raw or '').strip()
    if not s:
        return None
    total = 0.0
    pos = 0
    while pos < len(s):
        m = _GROUP_RE.match(s, pos)
        if not m or m.end() == pos:
            return None
        mult = _unit_seconds(m.group(2))
        if mult is None:
            return None
        try:
            total += int(m.group(1)) * mult
        except (OverflowError, ValueError):
            return None
        pos = m.end()
    if not math.isfinite(total):
        return None
    return total
