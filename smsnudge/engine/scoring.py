"""
Scoring Engine - turns a client's visit history into a priority score.

Two base scores:
  recency  : MAX_RECENCY_SCORE minus days since the last visit (mass broadcast)
  overdue  : points per day past the client's expected visit interval (campaigns)

Holiday boosting adds a flat amount for clients who visited around the same
holiday last year. Higher score = contact sooner.
"""

import logging
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Union

from smsnudge.config import config
from smsnudge.engine import clients as client_repo
from smsnudge.engine.holidays import get_previous_year_holiday, get_holiday_date_range
from smsnudge.errors import UnknownVisitingType
from smsnudge.models import Client, ScoredClient, Holiday, HolidaySensitivity, VisitingType

logger = logging.getLogger(__name__)

HOLIDAY_BOOST_AMOUNT = config.HOLIDAY_BOOST_AMOUNT
DEFAULT_BUFFER_DAYS = config.HOLIDAY_BUFFER_DAYS

# Missing visiting_type is scored like an easy-going client
DEFAULT_VISITING_TYPE = VisitingType.EASY_GOING


def as_date(value: Union[date, datetime, str, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00')).date()


def days_between(today: date, earlier: Union[date, datetime, str, None]) -> int:
    """Whole days from earlier to today, never negative. 0 when earlier is missing."""
    earlier_date = as_date(earlier)
    if earlier_date is None:
        return 0
    return max(0, (today - earlier_date).days)


def visiting_type_of(label: Optional[str]) -> VisitingType:
    """Map a stored label to VisitingType. Unknown labels are a configuration error."""
    if label is None or label == '':
        return DEFAULT_VISITING_TYPE
    try:
        return VisitingType(label)
    except ValueError:
        raise UnknownVisitingType(label)


def expected_visit_interval(label: Optional[str]) -> int:
    """Typical days between visits for a visiting_type label."""
    return visiting_type_of(label).expected_interval_days


# =============================================================================
# BASE SCORES
# =============================================================================

def score_recency(client: Client, today: date, max_score: Optional[int] = None) -> ScoredClient:
    """
    score = max(0, max_score - days_since_last_visit)

    A future or same-day last_appt counts as "just visited". Clients with no
    last_appt score zero with zeroed day counts; they are not excluded here.
    """
    ceiling = config.MAX_RECENCY_SCORE if max_score is None else max_score

    if as_date(client.last_appt) is None:
        return ScoredClient.from_client(client)

    days_since = days_between(today, client.last_appt)
    return ScoredClient.from_client(
        client,
        score=max(0, ceiling - days_since),
        days_since_last_visit=days_since,
    )


def score_overdue(
    client: Client,
    today: date,
    points_per_day: Optional[float] = None,
) -> ScoredClient:
    """
    days_overdue = days_since_last_visit - expected_visit_interval_days
    score        = max(0, days_overdue) * points_per_day

    days_overdue stays negative for clients who are not due yet; their score
    sits at the floor of zero.
    """
    rate = config.OVERDUE_POINTS_PER_DAY if points_per_day is None else points_per_day
    interval = expected_visit_interval(client.visiting_type)

    if as_date(client.last_appt) is None:
        return ScoredClient.from_client(client)

    days_since = days_between(today, client.last_appt)
    days_overdue = days_since - interval
    return ScoredClient.from_client(
        client,
        score=max(0, days_overdue) * rate,
        days_since_last_visit=days_since,
        expected_visit_interval_days=interval,
        days_overdue=days_overdue,
    )


# =============================================================================
# HOLIDAY BOOST
# =============================================================================

def calculate_holiday_sensitivity_batch(
    account_id: str,
    client_ids: Iterable[str],
    holiday: Holiday,
    buffer_days: int = DEFAULT_BUFFER_DAYS,
    boost_amount: int = HOLIDAY_BOOST_AMOUNT,
) -> Dict[str, HolidaySensitivity]:
    """
    Check which clients visited (or booked) around last year's edition of
    holiday. One repository query for the whole batch, then in-memory matching.
    Every requested id is present in the result; unmatched ids get boost 0.
    """
    ids = list(dict.fromkeys(cid for cid in client_ids if cid))
    results = {cid: HolidaySensitivity() for cid in ids}
    if not ids:
        return results

    previous = get_previous_year_holiday(holiday)
    if not previous:
        logger.info(f"No previous year holiday found for {holiday.id}, skipping boost")
        return results

    start, end = get_holiday_date_range(previous, buffer_days)
    logger.debug(f"Checking {len(ids)} clients for visits during {previous.id} ({start} to {end})")

    visitors = client_repo.fetch_holiday_visitors(account_id, ids, start, end)

    for cid in visitors:
        if cid in results:
            results[cid] = HolidaySensitivity(
                boost=boost_amount,
                matched_last_year=True,
                holiday_cohort=holiday.id,
            )

    boosted = sum(1 for r in results.values() if r.matched_last_year)
    logger.info(f"Applied +{boost_amount} boost to {boosted}/{len(ids)} clients with {previous.name} {previous.year} activity")
    return results


def apply_holiday_boost(
    scored: List[ScoredClient],
    sensitivity: Dict[str, HolidaySensitivity],
) -> List[ScoredClient]:
    """Add each client's boost to its score once. Mutates and returns scored."""
    for client in scored:
        result = sensitivity.get(client.client_id)
        if not result or client.matched_last_year:
            continue
        client.boost = result.boost
        client.matched_last_year = result.matched_last_year
        client.holiday_cohort = result.holiday_cohort
        client.score += result.boost
    return scored
