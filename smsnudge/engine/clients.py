"""
Client Repository - read access to synced clients and appointments.
Selection reads candidates through here; delivery callbacks write the two
messaging columns (date_last_sms_sent, sms_subscribed) and nothing else.
"""

import json
import logging
import re
from contextlib import contextmanager
from datetime import date
from typing import Iterable, List, Optional, Dict, Any, Set

import psycopg2

from smsnudge.db.connection import get_db_cursor
from smsnudge.errors import UpstreamUnavailable
from smsnudge.models import Client, MessageOverrides

logger = logging.getLogger(__name__)

_CLIENT_COLUMNS = (
    'client_id', 'account_id', 'first_name', 'last_name', 'phone_normalized',
    'first_appt', 'last_appt', 'total_appointments', 'visiting_type',
    'avg_weekly_visits', 'sms_subscribed', 'date_last_sms_sent',
)
_SELECT_CLIENT = ', '.join(_CLIENT_COLUMNS)


@contextmanager
def _upstream(operation: str):
    """Translate driver errors into UpstreamUnavailable for callers."""
    try:
        yield
    except psycopg2.Error as e:
        logger.error(f"Database error while trying to {operation}: {e}")
        raise UpstreamUnavailable(f"Failed to {operation}: {e}", cause=e)


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """
    Canonical North American form used as the phone_normalized key:
    '+1' plus the last ten digits. None when fewer than ten digits remain.
    """
    if not raw:
        return None
    digits = re.sub(r'\D', '', str(raw))
    if len(digits) < 10:
        return None
    return f"+1{digits[-10:]}"


def _row_to_client(row: Dict[str, Any]) -> Client:
    client = Client(**{k: row.get(k) for k in _CLIENT_COLUMNS})
    if client.total_appointments is None:
        client.total_appointments = 0
    if client.sms_subscribed is None:
        client.sms_subscribed = True
    if client.avg_weekly_visits is not None:
        client.avg_weekly_visits = float(client.avg_weekly_visits)
    return client


# =============================================================================
# CANDIDATES
# =============================================================================

def fetch_candidates(
    account_id: str,
    visiting_type: Optional[str] = None,
    require_last_appt: bool = False,
    last_appt_after: Optional[date] = None,
    min_total_appointments: int = 0,
    exclude_unsubscribed: bool = True,
    exclude_missing_phone: bool = True,
    limit: Optional[int] = None,
) -> List[Client]:
    """
    Fetch candidate clients for an account.
    Order is irrelevant; callers rank the result themselves.
    """
    conditions = ["account_id = %(account_id)s"]
    params: Dict[str, Any] = {'account_id': account_id}

    if exclude_unsubscribed:
        conditions.append("sms_subscribed IS DISTINCT FROM FALSE")

    if exclude_missing_phone:
        conditions.append("phone_normalized IS NOT NULL")

    if require_last_appt:
        conditions.append("last_appt IS NOT NULL")

    if last_appt_after:
        conditions.append("last_appt >= %(last_appt_after)s")
        params['last_appt_after'] = last_appt_after

    if min_total_appointments:
        conditions.append("total_appointments >= %(min_total)s")
        params['min_total'] = min_total_appointments

    if visiting_type:
        conditions.append("visiting_type = %(visiting_type)s")
        params['visiting_type'] = visiting_type

    where_clause = " AND ".join(conditions)
    limit_clause = ""
    if limit:
        limit_clause = "LIMIT %(limit)s"
        params['limit'] = limit

    with _upstream("fetch clients"):
        with get_db_cursor() as cur:
            cur.execute(f"""
                SELECT {_SELECT_CLIENT} FROM clients
                WHERE {where_clause}
                {limit_clause}
            """, params)
            rows = cur.fetchall()

    logger.debug(f"fetch_candidates: account={account_id} → {len(rows)} clients (visiting_type={visiting_type})")
    return [_row_to_client(row) for row in rows]


def fetch_opted_out_phones(account_id: str, phones: Iterable[str]) -> Set[str]:
    """Return the subset of phones that belong to an opted-out client of the account."""
    phones = [p for p in phones if p]
    if not phones:
        return set()

    with _upstream("check opted-out phones"):
        with get_db_cursor() as cur:
            cur.execute("""
                SELECT DISTINCT phone_normalized FROM clients
                WHERE account_id = %(account_id)s
                  AND phone_normalized = ANY(%(phones)s)
                  AND sms_subscribed = FALSE
            """, {'account_id': account_id, 'phones': phones})
            rows = cur.fetchall()

    return {row['phone_normalized'] for row in rows}


def fetch_holiday_visitors(
    account_id: str,
    client_ids: List[str],
    start: date,
    end: date,
) -> Set[str]:
    """
    Return the subset of client_ids with an appointment in [start, end], either
    held or booked in that range. One grouped query for the whole batch.
    """
    if not client_ids:
        return set()

    with _upstream("fetch holiday appointments"):
        with get_db_cursor() as cur:
            cur.execute("""
                SELECT DISTINCT client_id FROM appointments
                WHERE account_id = %(account_id)s
                  AND client_id = ANY(%(client_ids)s)
                  AND (
                        appointment_date BETWEEN %(start)s AND %(end)s
                     OR created_at::date BETWEEN %(start)s AND %(end)s
                  )
            """, {
                'account_id': account_id,
                'client_ids': list(client_ids),
                'start': start,
                'end': end,
            })
            rows = cur.fetchall()

    return {row['client_id'] for row in rows if row.get('client_id')}


# =============================================================================
# PHONE LOOKUPS (delivery callbacks)
# =============================================================================

def find_client_by_phone(phone_normalized: str) -> Optional[Dict[str, Any]]:
    """Resolve a phone number to {'client_id', 'account_id'}, or None."""
    with _upstream("look up client by phone"):
        with get_db_cursor() as cur:
            cur.execute("""
                SELECT client_id, account_id FROM clients
                WHERE phone_normalized = %s
                ORDER BY updated_at DESC
                LIMIT 1
            """, (phone_normalized,))
            row = cur.fetchone()

    if row:
        return dict(row)
    logger.debug(f"find_client_by_phone: {phone_normalized} not found")
    return None


def mark_phone_messaged(phone_normalized: str) -> int:
    """Stamp date_last_sms_sent for every client with this phone. Returns rows touched."""
    with _upstream("update date_last_sms_sent"):
        with get_db_cursor() as cur:
            cur.execute("""
                UPDATE clients
                SET date_last_sms_sent = NOW(), updated_at = NOW()
                WHERE phone_normalized = %s
            """, (phone_normalized,))
            return cur.rowcount


def unsubscribe_phone(phone_normalized: str) -> int:
    """Permanently opt a phone number out of marketing SMS. Returns rows touched."""
    with _upstream("unsubscribe client"):
        with get_db_cursor() as cur:
            cur.execute("""
                UPDATE clients
                SET sms_subscribed = FALSE, updated_at = NOW()
                WHERE phone_normalized = %s
            """, (phone_normalized,))
            count = cur.rowcount

    logger.info(f"Unsubscribed {count} client record(s) for {phone_normalized}")
    return count


# =============================================================================
# SCHEDULED MESSAGE OVERRIDES
# =============================================================================

def _load_json_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return json.loads(value)
    return list(value)


def get_message_overrides(message_id: str) -> Optional[MessageOverrides]:
    """Manual selections saved on a scheduled message, or None if it doesn't exist."""
    with _upstream("load scheduled message"):
        with get_db_cursor() as cur:
            cur.execute("""
                SELECT selected_clients, deselected_clients
                FROM sms_scheduled_messages
                WHERE id = %s
            """, (message_id,))
            row = cur.fetchone()

    if not row:
        logger.warning(f"get_message_overrides: message_id={message_id} not found")
        return None

    return MessageOverrides(
        selected_clients=_load_json_list(row.get('selected_clients')),
        deselected_phones=[p for p in _load_json_list(row.get('deselected_clients')) if p],
    )
