"""
Holiday Calendar - seasonal windows used to boost clients in the nudge engine.
Pure data plus date arithmetic; no database access.

To add a holiday, append one entry per year. Ids follow '<base>_<year>' so the
previous year's edition can be found for lookback comparisons.
"""

import logging
import re
from datetime import date, timedelta
from typing import Iterable, Optional, Tuple

from smsnudge.models import Holiday

logger = logging.getLogger(__name__)

_YEAR_SUFFIX = re.compile(r'_(\d{4})$')


HOLIDAYS: Tuple[Holiday, ...] = (
    # Spring Break Season covers Reading Week (universities) and March Break (K-12)
    Holiday(
        id='spring_break_2025',
        name='Spring Break Season',
        year=2025,
        start_date=date(2025, 2, 17),
        end_date=date(2025, 3, 14),
        activation_days_before=0,
    ),
    Holiday(
        id='spring_break_2026',
        name='Spring Break Season',
        year=2026,
        start_date=date(2026, 2, 16),
        end_date=date(2026, 3, 20),
        activation_days_before=0,
    ),
    Holiday(
        id='black_friday_2023',
        name='Black Friday',
        year=2023,
        start_date=date(2023, 11, 17),
        end_date=date(2023, 11, 24),
        activation_days_before=7,
    ),
    Holiday(
        id='black_friday_2024',
        name='Black Friday',
        year=2024,
        start_date=date(2024, 11, 22),
        end_date=date(2024, 11, 29),
        activation_days_before=7,
    ),
    Holiday(
        id='black_friday_2025',
        name='Black Friday',
        year=2025,
        start_date=date(2025, 11, 21),
        end_date=date(2025, 11, 28),
        activation_days_before=7,
    ),
    # Holiday party season; activation opens in early December
    Holiday(
        id='holiday_season_2024',
        name='Holiday Season',
        year=2024,
        start_date=date(2024, 12, 15),
        end_date=date(2024, 12, 31),
        activation_days_before=10,
    ),
    Holiday(
        id='holiday_season_2025',
        name='Holiday Season',
        year=2025,
        start_date=date(2025, 12, 15),
        end_date=date(2025, 12, 31),
        activation_days_before=10,
    ),
)


def get_holiday(holiday_id: str, holidays: Iterable[Holiday] = HOLIDAYS) -> Optional[Holiday]:
    """Look up a holiday by id. Unknown ids return None."""
    for holiday in holidays:
        if holiday.id == holiday_id:
            return holiday
    logger.debug(f"get_holiday: holiday_id={holiday_id} not found")
    return None


def activation_start(holiday: Holiday) -> date:
    return holiday.start_date - timedelta(days=holiday.activation_days_before)


def get_active_holiday_for_boosting(
    today: date,
    holidays: Iterable[Holiday] = HOLIDAYS,
) -> Optional[Holiday]:
    """
    Return the holiday whose boosting window contains today, or None.

    A window runs from start_date - activation_days_before through end_date.
    When windows overlap, the holiday starting nearest to today wins; ties go
    to the smaller activation_days_before.
    """
    active = [h for h in holidays if activation_start(h) <= today <= h.end_date]
    if not active:
        return None

    active.sort(key=lambda h: (abs((h.start_date - today).days), h.activation_days_before))
    if len(active) > 1:
        logger.debug(f"Overlapping holiday windows on {today}: {[h.id for h in active]}, using {active[0].id}")
    return active[0]


def is_date_in_holiday_window(day: date, holiday: Holiday, buffer_days: int = 0) -> bool:
    """True if day falls within [start_date - buffer, end_date + buffer]."""
    start, end = get_holiday_date_range(holiday, buffer_days)
    return start <= day <= end


def get_previous_year_holiday(
    holiday: Holiday,
    holidays: Iterable[Holiday] = HOLIDAYS,
) -> Optional[Holiday]:
    """
    Return last year's edition of a holiday, e.g. spring_break_2025 for
    spring_break_2026. None for the first year of a new holiday.
    """
    base = _YEAR_SUFFIX.sub('', holiday.id)
    return get_holiday(f"{base}_{holiday.year - 1}", holidays)


def get_holiday_date_range(holiday: Holiday, buffer_days: int = 0) -> Tuple[date, date]:
    """Date range used to query visits around a holiday, widened by buffer_days."""
    return (
        holiday.start_date - timedelta(days=buffer_days),
        holiday.end_date + timedelta(days=buffer_days),
    )
