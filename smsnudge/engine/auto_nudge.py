"""
Auto-Nudge - weekly "smart bucket" of overdue clients per account.

At most one bucket per account per ISO week. The unique constraint on
(account_id, iso_week) is what guarantees that; the point read before
selection only saves the selection work on a repeat run.
"""

import json
import logging
from datetime import date, datetime, timedelta
from typing import Optional, List, Dict, Any
from zoneinfo import ZoneInfo

from smsnudge.bus.events import bus, EVENT_BUCKET_CREATED
from smsnudge.config import config
from smsnudge.db.connection import get_db_cursor
from smsnudge.engine.selection import (
    AUTO_NUDGE, select_clients, mondays_in_month, weekly_batch_size,
)
from smsnudge.errors import ValidationError
from smsnudge.logging_config import log_call
from smsnudge.models import BucketResult, ScoredClient

logger = logging.getLogger(__name__)

__all__ = [
    'iso_week_label', 'mondays_in_month', 'weekly_batch_size', 'campaign_end',
    'find_weekly_bucket', 'create_weekly_bucket',
]

WEDNESDAY = 2


def iso_week_label(day: date) -> str:
    """ISO-8601 week label, e.g. 2025-W01 for 2024-12-30."""
    year, week, _ = day.isocalendar()
    return f"{year}-W{week:02d}"


def campaign_end(start: datetime) -> datetime:
    """The coming Wednesday at 23:59:59; a Wednesday start runs a full week."""
    days_ahead = (WEDNESDAY - start.weekday()) % 7 or 7
    end = start + timedelta(days=days_ahead)
    return end.replace(hour=23, minute=59, second=59, microsecond=0)


def _capitalize(name: Optional[str]) -> str:
    return name[:1].upper() + name[1:].lower() if name else ''


def _bucket_client(client: ScoredClient) -> Dict[str, Any]:
    return {
        'client_id': client.client_id,
        'phone': client.phone_normalized,
        'full_name': f"{_capitalize(client.first_name)} {_capitalize(client.last_name)}".strip(),
    }


def find_weekly_bucket(account_id: str, iso_week: str) -> Optional[int]:
    """Existing bucket id for this account and week, or None."""
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT bucket_id FROM sms_smart_buckets
            WHERE account_id = %s AND iso_week = %s
        """, (account_id, iso_week))
        row = cur.fetchone()
    return row['bucket_id'] if row else None


def _insert_bucket(
    account_id: str,
    iso_week: str,
    start: datetime,
    clients: List[Dict[str, Any]],
) -> Optional[int]:
    """Insert the bucket; None when another run already created this week's."""
    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO sms_smart_buckets (
                account_id, iso_week, status, campaign_start, campaign_end,
                clients, total_clients, messages_failed, created_at
            ) VALUES (
                %(account_id)s, %(iso_week)s, 'active', %(campaign_start)s, %(campaign_end)s,
                %(clients)s::jsonb, %(total_clients)s, '[]'::jsonb, NOW()
            )
            ON CONFLICT (account_id, iso_week) DO NOTHING
            RETURNING bucket_id
        """, {
            'account_id': account_id,
            'iso_week': iso_week,
            'campaign_start': start,
            'campaign_end': campaign_end(start),
            'clients': json.dumps(clients),
            'total_clients': len(clients),
        })
        row = cur.fetchone()
    return row['bucket_id'] if row else None


@log_call
def create_weekly_bucket(account_id: str, now: Optional[datetime] = None) -> BucketResult:
    """
    Build this week's auto-nudge bucket for an account.

    Returns the existing bucket when one is already there (created=False).
    No eligible clients is a success without a bucket.
    """
    if not account_id:
        raise ValidationError("account_id is required")

    now = now or datetime.now(ZoneInfo(config.TIMEZONE))
    today = now.date()
    iso_week = iso_week_label(today)

    existing = find_weekly_bucket(account_id, iso_week)
    if existing is not None:
        logger.info(f"Bucket already exists for {account_id} week {iso_week} (bucket_id: {existing}). Skipping.")
        return BucketResult(iso_week=iso_week, bucket_id=existing, created=False)

    batch_size = weekly_batch_size(today)
    selection = select_clients(account_id, AUTO_NUDGE, limit=batch_size, today=today)

    if not selection.clients:
        logger.info(f"No auto-nudge recipients for {account_id} week {iso_week}. No bucket created.")
        return BucketResult(iso_week=iso_week)

    clients = [_bucket_client(c) for c in selection.clients]
    bucket_id = _insert_bucket(account_id, iso_week, now, clients)

    if bucket_id is None:
        # Lost the race to a concurrent run; report the winner's bucket
        winner = find_weekly_bucket(account_id, iso_week)
        logger.info(f"Concurrent bucket creation for {account_id} week {iso_week}, using bucket_id {winner}")
        return BucketResult(iso_week=iso_week, bucket_id=winner, created=False)

    logger.info(f"Created bucket {bucket_id} for {account_id} week {iso_week} with {len(clients)} clients")
    bus.emit(EVENT_BUCKET_CREATED, {
        'account_id': account_id,
        'bucket_id': bucket_id,
        'iso_week': iso_week,
        'total_clients': len(clients),
    })
    return BucketResult(iso_week=iso_week, bucket_id=bucket_id, created=True, total_clients=len(clients))
