"""
Selection Engine - decides who receives a marketing SMS batch.

All three algorithms run through one pipeline so the opt-out and phone
filters can never drift between them:

    fetch candidates → filter → score → (holiday boost) → dedupe by phone
        → apply manual picks → rank → truncate

A SelectionStrategy supplies the parts that differ: scorer, ranking key and
direction, batch size rule and the extra eligibility filters.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo

from smsnudge.bus.events import bus, EVENT_RECIPIENTS_PREVIEWED
from smsnudge.config import config
from smsnudge.engine import clients as client_repo
from smsnudge.engine import scoring
from smsnudge.engine.holidays import get_active_holiday_for_boosting
from smsnudge.errors import UnknownVisitingType, ValidationError
from smsnudge.logging_config import log_call
from smsnudge.models import Client, ScoredClient, SelectionResult, PreviewResult, MessageOverrides

logger = logging.getLogger(__name__)

ALGORITHM_MASS = 'mass'
ALGORITHM_CAMPAIGN = 'campaign'
ALGORITHM_AUTO_NUDGE = 'auto-nudge'
ALGORITHMS = (ALGORITHM_MASS, ALGORITHM_CAMPAIGN, ALGORITHM_AUTO_NUDGE)

# Rejection reasons
REASON_UNSUBSCRIBED = 'unsubscribed'
REASON_MISSING_PHONE = 'missing_phone'
REASON_MISSING_LAST_VISIT = 'missing_last_visit'
REASON_NO_APPOINTMENTS = 'not_enough_appointments'
REASON_OUTSIDE_LOOKBACK = 'outside_lookback'
REASON_VISITING_TYPE = 'visiting_type_mismatch'
REASON_COOLDOWN = 'recently_messaged'
REASON_NOT_OVERDUE = 'not_overdue_enough'
REASON_TOO_LONG_AGO = 'last_visit_too_long_ago'
REASON_DUPLICATE_PHONE = 'duplicate_phone'
REASON_OVER_LIMIT = 'over_limit'
REASON_MANUALLY_DESELECTED = 'manually_deselected'


def local_today() -> date:
    """Today's date in the configured business timezone."""
    return datetime.now(ZoneInfo(config.TIMEZONE)).date()


def months_ago(today: date, months: int) -> date:
    """Same day of month, `months` earlier, clamped to the month's last day."""
    month_index = today.year * 12 + (today.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(today.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


# =============================================================================
# BATCH SIZE RULES
# =============================================================================

def mondays_in_month(year: int, month: int) -> int:
    weeks = calendar.monthcalendar(year, month)
    return sum(1 for week in weeks if week[calendar.MONDAY] != 0)


def weekly_batch_size(today: date) -> int:
    """Auto-nudge sends fewer per week in five-Monday months to hold the monthly total."""
    if mondays_in_month(today.year, today.month) == 5:
        return config.AUTO_NUDGE_REDUCED_BATCH_SIZE
    return config.AUTO_NUDGE_BATCH_SIZE


def requested_or_default(today: date, requested: Optional[int]) -> int:
    return requested if requested is not None else config.DEFAULT_PREVIEW_LIMIT


def requested_or_weekly(today: date, requested: Optional[int]) -> int:
    return requested if requested is not None else weekly_batch_size(today)


# =============================================================================
# STRATEGIES
# =============================================================================

def _by_name(client: ScoredClient) -> str:
    return client.full_name.lower()


def _by_score(client: ScoredClient) -> float:
    return client.score


@dataclass(frozen=True)
class SelectionStrategy:
    name: str
    scorer: Callable[[Client, date], ScoredClient]
    ranking_key: Callable[[ScoredClient], Any]
    descending: bool
    batch_size_rule: Callable[[date, Optional[int]], int]
    require_last_appt: bool = True
    min_total_appointments: int = 1
    lookback_months: Optional[int] = None
    respect_cooldown: bool = False
    holiday_boost: bool = False
    min_days_overdue: Optional[int] = None
    enforce_recency_ceiling: bool = False
    priority_share: Optional[float] = None


MASS = SelectionStrategy(
    name=ALGORITHM_MASS,
    scorer=scoring.score_recency,
    ranking_key=_by_name,
    descending=False,
    batch_size_rule=requested_or_default,
    lookback_months=config.MASS_LOOKBACK_MONTHS,
)

CAMPAIGN = SelectionStrategy(
    name=ALGORITHM_CAMPAIGN,
    scorer=scoring.score_overdue,
    ranking_key=_by_score,
    descending=True,
    batch_size_rule=requested_or_default,
    respect_cooldown=True,
)

AUTO_NUDGE = SelectionStrategy(
    name=ALGORITHM_AUTO_NUDGE,
    scorer=scoring.score_overdue,
    ranking_key=_by_score,
    descending=True,
    batch_size_rule=requested_or_weekly,
    min_total_appointments=2,
    respect_cooldown=True,
    holiday_boost=True,
    min_days_overdue=config.AUTO_NUDGE_MIN_DAYS_OVERDUE,
    enforce_recency_ceiling=True,
    priority_share=config.AUTO_NUDGE_PRIORITY_SHARE,
)

STRATEGIES: Dict[str, SelectionStrategy] = {s.name: s for s in (MASS, CAMPAIGN, AUTO_NUDGE)}


def get_strategy(algorithm: Optional[str]) -> SelectionStrategy:
    """Resolve an algorithm name; None means campaign."""
    name = algorithm or ALGORITHM_CAMPAIGN
    if name not in STRATEGIES:
        raise ValidationError(f"Unknown algorithm '{algorithm}'. Choose from: {', '.join(ALGORITHMS)}")
    return STRATEGIES[name]


# =============================================================================
# PIPELINE STEPS
# =============================================================================

def _reject(client: Client, reason: str) -> ScoredClient:
    scored = client if isinstance(client, ScoredClient) else ScoredClient.from_client(client)
    scored.rejection_reason = reason
    return scored


def _eligibility_reason(
    client: Client,
    strategy: SelectionStrategy,
    today: date,
    visiting_type: Optional[str],
) -> Optional[str]:
    """Why a candidate is excluded before scoring, or None if eligible."""
    if client.sms_subscribed is False:
        return REASON_UNSUBSCRIBED
    if not client.phone_normalized:
        return REASON_MISSING_PHONE
    if strategy.require_last_appt and client.last_appt is None:
        return REASON_MISSING_LAST_VISIT
    if (client.total_appointments or 0) < strategy.min_total_appointments:
        return REASON_NO_APPOINTMENTS
    if visiting_type and client.visiting_type != visiting_type:
        return REASON_VISITING_TYPE
    if strategy.lookback_months is not None:
        cutoff = months_ago(today, strategy.lookback_months)
        if scoring.as_date(client.last_appt) < cutoff:
            return REASON_OUTSIDE_LOOKBACK
    if strategy.respect_cooldown and client.date_last_sms_sent is not None:
        if scoring.days_between(today, client.date_last_sms_sent) < config.SMS_COOLDOWN_DAYS:
            return REASON_COOLDOWN
    return None


def _score_reason(client: ScoredClient, strategy: SelectionStrategy) -> Optional[str]:
    """Why a scored client is excluded, or None if it stays in the pool."""
    if strategy.min_days_overdue is not None and client.days_overdue < strategy.min_days_overdue:
        return REASON_NOT_OVERDUE
    if strategy.enforce_recency_ceiling:
        ceiling = scoring.visiting_type_of(client.visiting_type).max_days_since_visit
        if client.days_since_last_visit >= ceiling:
            return REASON_TOO_LONG_AGO
    return None


def deduplicate_by_phone(clients: List[ScoredClient]) -> Tuple[List[ScoredClient], List[ScoredClient]]:
    """
    Keep one client per phone: the higher score, then the more recent visit.
    Returns (unique, duplicates) with unique in first-seen order.
    """
    best: Dict[str, ScoredClient] = {}
    for client in clients:
        existing = best.get(client.phone_normalized)
        if (
            existing is None
            or client.score > existing.score
            or (client.score == existing.score
                and client.days_since_last_visit < existing.days_since_last_visit)
        ):
            best[client.phone_normalized] = client

    keep = {id(c) for c in best.values()}
    unique = [c for c in clients if id(c) in keep]
    duplicates = [_reject(c, REASON_DUPLICATE_PHONE) for c in clients if id(c) not in keep]
    return unique, duplicates


def _client_from_payload(payload: Dict[str, Any]) -> ScoredClient:
    """Rebuild a pre-selected client saved as JSON on a scheduled message."""
    fields = ScoredClient.__dataclass_fields__
    client = ScoredClient(**{k: v for k, v in payload.items() if k in fields})
    if not client.phone_normalized:
        client.phone_normalized = payload.get('phone')
    return client


def _pinned_phones(overrides: Optional[MessageOverrides]) -> Set[str]:
    if overrides is None:
        return set()
    phones = (_client_from_payload(p).phone_normalized for p in overrides.selected_clients)
    return {p for p in phones if p}


def _apply_overrides(
    pool: List[ScoredClient],
    overrides: Optional[MessageOverrides],
    opted_out: Set[str] = frozenset(),
) -> Tuple[List[ScoredClient], List[ScoredClient], List[ScoredClient], List[ScoredClient]]:
    """
    Split the pool into (pinned, remaining, manually deselected, refused pins).

    A pin found in the pool uses the freshly scored copy. A pin outside the
    pool is rebuilt from its saved payload and refused when it has no phone or
    the client has opted out since the message was saved.
    """
    if overrides is None:
        return [], pool, [], []

    deselected_phones = set(overrides.deselected_phones)
    by_phone = {c.phone_normalized: c for c in pool}

    pinned: List[ScoredClient] = []
    refused: List[ScoredClient] = []
    pinned_phones = set()
    for payload in overrides.selected_clients:
        client = _client_from_payload(payload)
        phone = client.phone_normalized
        if not phone:
            refused.append(_reject(client, REASON_MISSING_PHONE))
            continue
        if phone in pinned_phones or phone in deselected_phones:
            continue
        fresh = by_phone.get(phone)
        if fresh is None and (client.sms_subscribed is False or phone in opted_out):
            refused.append(_reject(client, REASON_UNSUBSCRIBED))
            continue
        pinned.append(fresh or client)
        pinned_phones.add(phone)

    remaining, manual = [], []
    for client in pool:
        if client.phone_normalized in pinned_phones:
            continue
        if client.phone_normalized in deselected_phones:
            manual.append(_reject(client, REASON_MANUALLY_DESELECTED))
        else:
            remaining.append(client)
    return pinned, remaining, manual, refused


def _priority_mix(ranked: List[ScoredClient], slots: int, share: float) -> List[ScoredClient]:
    """
    Reorder ranked so the first `slots` entries hold up to share*slots priority
    cadence clients, then others, then more priority clients if still short.
    """
    priority = [c for c in ranked if scoring.visiting_type_of(c.visiting_type).is_priority]
    others = [c for c in ranked if not scoring.visiting_type_of(c.visiting_type).is_priority]

    target = int(slots * share)
    chosen = priority[:target]
    chosen += others[:slots - len(chosen)]
    if len(chosen) < slots:
        chosen += priority[target:target + slots - len(chosen)]

    chosen_ids = {id(c) for c in chosen}
    chosen.sort(key=_by_score, reverse=True)
    return chosen + [c for c in ranked if id(c) not in chosen_ids]


# =============================================================================
# PUBLIC API
# =============================================================================

def _validate(account_id: Optional[str], limit: Optional[int]) -> None:
    if not account_id:
        raise ValidationError("account_id is required")
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
        raise ValidationError(f"limit must be a positive integer, got {limit!r}")


@log_call
def select_clients(
    account_id: str,
    strategy: SelectionStrategy,
    limit: Optional[int] = None,
    visiting_type: Optional[str] = None,
    message_id: Optional[str] = None,
    today: Optional[date] = None,
) -> SelectionResult:
    """
    Run the selection pipeline for one account.
    Zero eligible candidates is a normal, empty result.
    """
    _validate(account_id, limit)
    if visiting_type:
        scoring.visiting_type_of(visiting_type)

    today = today or local_today()
    batch_size = strategy.batch_size_rule(today, limit)

    overrides = client_repo.get_message_overrides(message_id) if message_id else None

    lookback_cutoff = None
    if strategy.lookback_months is not None:
        lookback_cutoff = months_ago(today, strategy.lookback_months)

    candidates = client_repo.fetch_candidates(
        account_id,
        visiting_type=visiting_type,
        require_last_appt=strategy.require_last_appt,
        last_appt_after=lookback_cutoff,
        min_total_appointments=strategy.min_total_appointments,
    )

    rejected: List[ScoredClient] = []
    scored: List[ScoredClient] = []
    for client in candidates:
        reason = _eligibility_reason(client, strategy, today, visiting_type)
        if reason:
            rejected.append(_reject(client, reason))
            continue
        try:
            result = strategy.scorer(client, today)
            reason = _score_reason(result, strategy)
        except UnknownVisitingType:
            logger.error(
                f"Client {client.client_id} of {account_id} has unknown visiting_type "
                f"{client.visiting_type!r}, fix the row or the visiting type table"
            )
            raise
        if reason:
            rejected.append(_reject(result, reason))
        else:
            scored.append(result)

    if strategy.holiday_boost and scored:
        holiday = get_active_holiday_for_boosting(today)
        if holiday:
            sensitivity = scoring.calculate_holiday_sensitivity_batch(
                account_id, [c.client_id for c in scored], holiday
            )
            scoring.apply_holiday_boost(scored, sensitivity)

    unique, duplicates = deduplicate_by_phone(scored)
    rejected.extend(duplicates)

    # Pins outside the fresh pool were never re-checked by fetch_candidates
    off_pool = _pinned_phones(overrides) - {c.phone_normalized for c in unique}
    opted_out = client_repo.fetch_opted_out_phones(account_id, off_pool) if off_pool else set()

    pinned, pool, manual, refused = _apply_overrides(unique, overrides, opted_out)
    rejected.extend(refused)
    slots = max(0, batch_size - len(pinned))

    ranked = sorted(pool, key=strategy.ranking_key, reverse=strategy.descending)
    if strategy.priority_share is not None:
        ranked = _priority_mix(ranked, slots, strategy.priority_share)

    chosen = pinned[:batch_size] + ranked[:slots]
    over_limit = [_reject(c, REASON_OVER_LIMIT) for c in pinned[batch_size:] + ranked[slots:]]

    logger.info(
        f"{strategy.name} selection for {account_id}: {len(chosen)} selected, "
        f"{len(over_limit) + len(manual)} deselected, {len(rejected)} rejected"
    )
    return SelectionResult(
        clients=chosen,
        deselected_clients=over_limit + manual,
        rejected=rejected,
    )


def compute_stats(clients: List[ScoredClient]) -> Dict[str, Any]:
    """Aggregate figures shown next to a preview."""
    breakdown: Dict[str, int] = {}
    for client in clients:
        key = client.visiting_type or 'unknown'
        breakdown[key] = breakdown.get(key, 0) + 1

    def _avg(attr: str) -> float:
        if not clients:
            return 0.0
        return round(sum(getattr(c, attr) or 0 for c in clients) / len(clients), 2)

    return {
        'total_selected': len(clients),
        'breakdown': breakdown,
        'avg_score': _avg('score'),
        'avg_days_overdue': _avg('days_overdue'),
        'avg_days_since_last_visit': _avg('days_since_last_visit'),
    }


@log_call
def preview_recipients(
    account_id: str,
    algorithm: Optional[str] = ALGORITHM_CAMPAIGN,
    limit: Optional[int] = None,
    visiting_type: Optional[str] = None,
    message_id: Optional[str] = None,
    today: Optional[date] = None,
) -> PreviewResult:
    """
    Preview who an SMS batch would go to.
    Raises ValidationError for bad input and UpstreamUnavailable when the
    database is down; "nobody qualifies" is a successful empty preview.
    """
    strategy = get_strategy(algorithm)
    result = select_clients(
        account_id,
        strategy,
        limit=limit,
        visiting_type=visiting_type,
        message_id=message_id,
        today=today,
    )

    preview = PreviewResult(
        success=True,
        algorithm=strategy.name,
        clients=result.clients,
        deselected_clients=result.deselected_clients,
        total_available_clients=result.total_available_clients,
        stats=compute_stats(result.clients),
    )
    if not result.clients:
        preview.message = 'No eligible clients found'

    bus.emit(EVENT_RECIPIENTS_PREVIEWED, {
        'account_id': account_id,
        'algorithm': strategy.name,
        'total_selected': len(result.clients),
    })
    return preview
