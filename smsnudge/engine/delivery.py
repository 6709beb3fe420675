"""
Delivery Callbacks - SMS transport status webhooks.

The transport posts MessageStatus / To / ErrorCode for every message. Each
final status settles one reserved credit and leaves a row in sms_sent.
Callbacks must always be acknowledged, so nothing in here raises: failures
are logged and left for reconciliation.
"""

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from smsnudge.bus.events import bus, EVENT_CLIENT_UNSUBSCRIBED, EVENT_SMS_DELIVERED, EVENT_SMS_FAILED
from smsnudge.db.connection import get_db_cursor
from smsnudge.engine import clients as client_repo
from smsnudge.engine import credits
from smsnudge.engine.clients import normalize_phone

logger = logging.getLogger(__name__)

__all__ = ['TWILIO_ERROR_CODES', 'normalize_phone', 'describe_error', 'handle_status_callback']

STATUS_DELIVERED = 'delivered'
STATUS_FAILED = 'failed'
STATUS_UNDELIVERED = 'undelivered'

ERROR_UNSUBSCRIBED = 21610

DEFAULT_PURPOSE = 'client_sms_barber_nudge'

TWILIO_ERROR_CODES: Dict[int, str] = {
    21210: 'Invalid phone number format',
    21211: 'Invalid "To" phone number',
    21408: 'Permission to send SMS not enabled',
    21610: 'Unsubscribed from SMS',
    21611: 'Message filtered (spam)',
    21612: 'Unreachable destination',
    21614: 'Not a valid mobile number',
    21617: 'Message flagged as spam',
    30001: 'Queue overflow (rate limiting)',
    30002: 'Account suspended',
    30003: 'Unreachable destination handset',
    30004: 'Message blocked by carrier',
    30005: 'Unknown destination handset',
    30006: 'Landline or unreachable carrier',
    30007: 'Message filtered (carrier)',
    30008: 'Unknown error',
    30009: 'Missing segment',
    30010: 'Message price exceeds max price',
    63016: 'Geo-permissions configuration error',
    63017: 'To number is not registered',
}


def _parse_error_code(value: Any) -> Optional[int]:
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric ErrorCode {value!r}")
        return None


def describe_error(code: Optional[int]) -> str:
    """Human-readable failure reason for a transport error code."""
    if code is None:
        return 'Unknown error'
    return TWILIO_ERROR_CODES.get(code, f"Unknown error (code: {code})")


def _attempt(step: str, func: Callable, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except Exception as e:
        logger.error(f"Status callback step '{step}' failed: {type(e).__name__}: {e}")
        return None


def log_sms_sent(
    phone_normalized: str,
    is_sent: bool,
    owner: Optional[Dict[str, Any]] = None,
    message_id: Optional[str] = None,
    purpose: Optional[str] = None,
    reason: Optional[str] = None,
) -> None:
    """Append one row to the sms_sent delivery log."""
    owner = owner or {}
    with get_db_cursor() as cur:
        cur.execute("""
            INSERT INTO sms_sent (
                message_id, account_id, client_id, phone_normalized,
                purpose, is_sent, reason, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, NOW())
        """, (
            message_id, owner.get('account_id'), owner.get('client_id'), phone_normalized,
            purpose or DEFAULT_PURPOSE, is_sent, reason,
        ))


def handle_status_callback(
    form: Mapping[str, Any],
    message_id: Optional[str] = None,
    purpose: Optional[str] = None,
) -> Dict[str, bool]:
    """
    Process one status webhook. Always returns {'ok': True}.

    delivered            : settle success, stamp date_last_sms_sent, log sent
    undelivered + 21610  : unsubscribe the phone, settle failed, log
    failed / undelivered : settle failed, log with the carrier reason
    anything else        : ignored (queued, sent, ...)
    """
    try:
        status = (form.get('MessageStatus') or '').strip().lower()
        phone = normalize_phone(form.get('To'))
        if not phone:
            logger.debug(f"Status callback without a usable 'To' ({form.get('To')!r}), ignoring")
            return {'ok': True}

        if status not in (STATUS_DELIVERED, STATUS_FAILED, STATUS_UNDELIVERED):
            logger.debug(f"Ignoring intermediate status '{status}' for {phone}")
            return {'ok': True}

        owner = _attempt('lookup', client_repo.find_client_by_phone, phone)

        if status == STATUS_DELIVERED:
            credits.settle(phone, 'success', reference_id=message_id)
            _attempt('mark messaged', client_repo.mark_phone_messaged, phone)
            _attempt('log', log_sms_sent, phone, True, owner, message_id, purpose)
            bus.emit(EVENT_SMS_DELIVERED, {'phone_normalized': phone, 'message_id': message_id})
            return {'ok': True}

        error_code = _parse_error_code(form.get('ErrorCode'))
        reason = describe_error(error_code)

        if status == STATUS_UNDELIVERED and error_code == ERROR_UNSUBSCRIBED:
            _attempt('unsubscribe', client_repo.unsubscribe_phone, phone)
            bus.emit(EVENT_CLIENT_UNSUBSCRIBED, {'phone_normalized': phone, 'owner': owner})

        credits.settle(phone, 'failed', reference_id=message_id)
        _attempt('log', log_sms_sent, phone, False, owner, message_id, purpose, reason)
        logger.info(f"SMS to {phone} {status}: {reason}")
        bus.emit(EVENT_SMS_FAILED, {
            'phone_normalized': phone,
            'message_id': message_id,
            'error_code': error_code,
            'reason': reason,
        })
    except Exception as e:
        logger.error(f"Status callback error: {type(e).__name__}: {e}")

    return {'ok': True}
