# ops_engine/holidays.py
"""
Coarse US holiday calendar used as a seasonality feature.

Fixed rules: New Year's Day, Independence Day, Thanksgiving (4th Thursday
of November) and Christmas. Additional "MM-DD" dates come from
`settings.extra_holidays`.
"""
from datetime import date, datetime
from functools import lru_cache
from typing import Iterable

import pandas as pd

FIXED_HOLIDAYS = {
    (1, 1): "new_years_day",
    (7, 4): "independence_day",
    (12, 25): "christmas",
}


@lru_cache(maxsize=32)
def _parse_extra(extra: tuple) -> dict:
    parsed = {}
    for entry in extra:
        month, day = entry.split("-")
        parsed[(int(month), int(day))] = f"custom_{entry}"
    return parsed


def holiday_name(day: date | datetime, extra: Iterable[str] = ()) -> str | None:
    """Returns the holiday name for a date, or None."""
    key = (day.month, day.day)
    if key in FIXED_HOLIDAYS:
        return FIXED_HOLIDAYS[key]
    # Thanksgiving: the Thursday falling on the 22nd..28th of November
    if day.month == 11 and day.weekday() == 3 and 22 <= day.day <= 28:
        return "thanksgiving"
    return _parse_extra(tuple(extra)).get(key)


def is_holiday(day: date | datetime, extra: Iterable[str] = ()) -> bool:
    return holiday_name(day, extra) is not None


def holidays_frame(start: datetime, end: datetime, extra: Iterable[str] = ()) -> pd.DataFrame:
    """
    Lists the holidays between `start` and `end` in Prophet's
    'holidays' format: one row per day with 'holiday' and 'ds' columns.
    """
    extra = list(extra)
    rows = []
    for day in pd.date_range(pd.Timestamp(start).normalize(), pd.Timestamp(end).normalize(), freq='D'):
        name = holiday_name(day, extra)
        if name:
            rows.append({'holiday': name, 'ds': day})
    return pd.DataFrame(rows, columns=['holiday', 'ds'])
