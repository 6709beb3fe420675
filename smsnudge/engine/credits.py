"""
Credit Ledger - per-account SMS credit balances.

One credit = one SMS. Credits move between two columns:

    available --reserve--> reserved --delivered--> (spent)
                                    --failed-----> available (refund)

The balance row is only ever written by single SQL statements whose WHERE /
CASE clauses encode the rules, so concurrent reservations can never push
available_credits below zero. Every mutation leaves an audit row in
credit_transactions inside the same transaction.
"""

import logging
from typing import Optional, Dict, Any

from smsnudge.bus.events import bus, EVENT_CREDITS_RESERVED, EVENT_CREDITS_SETTLED, EVENT_CREDITS_GRANTED
from smsnudge.db.connection import get_db_cursor
from smsnudge.engine import clients as client_repo
from smsnudge.engine.clients import normalize_phone
from smsnudge.errors import ValidationError, InsufficientCredits, AccountNotFound
from smsnudge.logging_config import log_call
from smsnudge.models import CreditAccount

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = 'success'
OUTCOME_FAILED = 'failed'

_OUTCOMES = {
    'success': OUTCOME_SUCCESS,
    'delivered': OUTCOME_SUCCESS,
    'failed': OUTCOME_FAILED,
    'undelivered': OUTCOME_FAILED,
}

# Purchasable packs; anything else is a manual adjustment
CREDIT_PACKS = (100, 250, 500, 1000)

ACTION_RESERVE = 'reserve'
ACTION_SETTLE_SUCCESS = 'settle_success'
ACTION_SETTLE_FAILED = 'settle_failed'
ACTION_PURCHASE = 'purchase'
ACTION_TRIAL_BONUS = 'trial_bonus'
ACTION_ADJUSTMENT = 'adjustment'
GRANT_ACTIONS = (ACTION_PURCHASE, ACTION_TRIAL_BONUS, ACTION_ADJUSTMENT)


def _log_transaction(
    cur,
    account_id: str,
    action: str,
    old: Dict[str, Any],
    new: Dict[str, Any],
    reference_id: Optional[str] = None,
) -> None:
    cur.execute("""
        INSERT INTO credit_transactions (
            account_id, action,
            old_available, new_available, old_reserved, new_reserved,
            reference_id, created_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, NOW())
    """, (
        account_id, action,
        old['available_credits'], new['available_credits'],
        old['reserved_credits'], new['reserved_credits'],
        reference_id,
    ))


def _require_account_id(account_id: Optional[str]) -> None:
    if not account_id:
        raise ValidationError("account_id is required")


def _require_positive(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{name} must be a positive integer, got {value!r}")


# =============================================================================
# READ
# =============================================================================

def get_balance(account_id: str) -> Optional[CreditAccount]:
    """Current balance, or None if the account has never had credits."""
    _require_account_id(account_id)
    with get_db_cursor() as cur:
        cur.execute("""
            SELECT account_id, available_credits, reserved_credits, updated_at
            FROM credit_accounts
            WHERE account_id = %s
        """, (account_id,))
        row = cur.fetchone()

    if row:
        return CreditAccount(**row)
    logger.debug(f"get_balance: account_id={account_id} not found")
    return None


# =============================================================================
# RESERVE
# =============================================================================

@log_call
def reserve(account_id: str, count: int, reference_id: Optional[str] = None) -> CreditAccount:
    """
    Move `count` credits from available to reserved in one conditional UPDATE.
    Raises InsufficientCredits (carrying the current balance) when the row
    doesn't have enough, AccountNotFound when there is no row at all.
    """
    _require_account_id(account_id)
    _require_positive('count', count)

    with get_db_cursor() as cur:
        cur.execute("""
            UPDATE credit_accounts
            SET available_credits = available_credits - %(count)s,
                reserved_credits = reserved_credits + %(count)s,
                updated_at = NOW()
            WHERE account_id = %(account_id)s
              AND available_credits >= %(count)s
            RETURNING account_id, available_credits, reserved_credits, updated_at
        """, {'account_id': account_id, 'count': count})
        row = cur.fetchone()

        if not row:
            cur.execute("""
                SELECT available_credits FROM credit_accounts
                WHERE account_id = %s
            """, (account_id,))
            current = cur.fetchone()
            if not current:
                raise AccountNotFound(account_id)
            logger.warning(
                f"Reservation declined for {account_id}: "
                f"{count} requested, {current['available_credits']} available"
            )
            raise InsufficientCredits(account_id, count, current['available_credits'])

        old = {
            'available_credits': row['available_credits'] + count,
            'reserved_credits': row['reserved_credits'] - count,
        }
        _log_transaction(cur, account_id, ACTION_RESERVE, old, row, reference_id)

    account = CreditAccount(**row)
    logger.info(f"Reserved {count} credits for {account_id} (available={account.available_credits}, reserved={account.reserved_credits})")
    bus.emit(EVENT_CREDITS_RESERVED, {'account_id': account_id, 'count': count, 'account': account})
    return account


# =============================================================================
# SETTLE
# =============================================================================

def _normalize_outcome(outcome: str) -> str:
    key = (outcome or '').strip().lower()
    if key not in _OUTCOMES:
        raise ValidationError(f"Unknown settlement outcome '{outcome}'")
    return _OUTCOMES[key]


@log_call
def settle_account(account_id: str, outcome: str, reference_id: Optional[str] = None) -> CreditAccount:
    """
    Settle one reserved credit.

    success: reserved - 1 (never below zero), the credit is spent.
    failed:  reserved - 1 and available + 1, but the refund only happens when
             a reservation was outstanding. A duplicate failure webhook on an
             already-settled account leaves the balance unchanged.
    """
    _require_account_id(account_id)
    result = _normalize_outcome(outcome)
    refund = 1 if result == OUTCOME_FAILED else 0

    with get_db_cursor() as cur:
        cur.execute("""
            SELECT available_credits, reserved_credits FROM credit_accounts
            WHERE account_id = %s
            FOR UPDATE
        """, (account_id,))
        old = cur.fetchone()
        if not old:
            raise AccountNotFound(account_id)

        # Right-hand side expressions read the pre-update row
        cur.execute("""
            UPDATE credit_accounts
            SET available_credits = available_credits
                    + CASE WHEN reserved_credits > 0 THEN %(refund)s ELSE 0 END,
                reserved_credits = GREATEST(reserved_credits - 1, 0),
                updated_at = NOW()
            WHERE account_id = %(account_id)s
            RETURNING account_id, available_credits, reserved_credits, updated_at
        """, {'account_id': account_id, 'refund': refund})
        row = cur.fetchone()

        action = ACTION_SETTLE_FAILED if refund else ACTION_SETTLE_SUCCESS
        _log_transaction(cur, account_id, action, old, row, reference_id)

    if old['reserved_credits'] == 0:
        logger.warning(f"settle_account: {account_id} had no reserved credits ({result}), balance unchanged")

    account = CreditAccount(**row)
    logger.info(f"Settled 1 credit for {account_id} as {result} (available={account.available_credits}, reserved={account.reserved_credits})")
    bus.emit(EVENT_CREDITS_SETTLED, {'account_id': account_id, 'outcome': result, 'account': account})
    return account


def settle(phone: str, outcome: str, reference_id: Optional[str] = None) -> Optional[CreditAccount]:
    """
    Settle a credit for the account that owns phone. Called from delivery
    callbacks, so it never raises: misses and failures are logged and None is
    returned for later reconciliation.
    """
    try:
        phone_normalized = normalize_phone(phone)
        if not phone_normalized:
            logger.warning(f"settle: unusable phone number {phone!r}, skipping")
            return None

        owner = client_repo.find_client_by_phone(phone_normalized)
        if not owner or not owner.get('account_id'):
            logger.warning(f"settle: no client found for {phone_normalized}, skipping")
            return None

        return settle_account(owner['account_id'], outcome, reference_id)
    except Exception as e:
        logger.error(f"settle: failed to settle credit for {phone!r} ({outcome}): {type(e).__name__}: {e}")
        return None


# =============================================================================
# GRANT
# =============================================================================

@log_call
def grant(
    account_id: str,
    amount: int,
    action: str = ACTION_PURCHASE,
    reference_id: Optional[str] = None,
) -> CreditAccount:
    """
    Add credits to available_credits (pack purchase, trial bonus, manual fix).
    Creates the account row on first grant.
    """
    _require_account_id(account_id)
    _require_positive('amount', amount)
    if action not in GRANT_ACTIONS:
        raise ValidationError(f"Unknown grant action '{action}'. Choose from: {', '.join(GRANT_ACTIONS)}")
    if action == ACTION_PURCHASE and amount not in CREDIT_PACKS:
        raise ValidationError(f"No credit pack of {amount}. Available packs: {', '.join(map(str, CREDIT_PACKS))}")

    with get_db_cursor() as cur:
        cur.execute("""
            SELECT available_credits, reserved_credits FROM credit_accounts
            WHERE account_id = %s
            FOR UPDATE
        """, (account_id,))
        old = cur.fetchone() or {'available_credits': 0, 'reserved_credits': 0}

        cur.execute("""
            INSERT INTO credit_accounts (account_id, available_credits, reserved_credits, updated_at)
            VALUES (%(account_id)s, %(amount)s, 0, NOW())
            ON CONFLICT (account_id) DO UPDATE
            SET available_credits = credit_accounts.available_credits + EXCLUDED.available_credits,
                updated_at = NOW()
            RETURNING account_id, available_credits, reserved_credits, updated_at
        """, {'account_id': account_id, 'amount': amount})
        row = cur.fetchone()

        _log_transaction(cur, account_id, action, old, row, reference_id)

    account = CreditAccount(**row)
    logger.info(f"Granted {amount} credits to {account_id} ({action}), available={account.available_credits}")
    bus.emit(EVENT_CREDITS_GRANTED, {'account_id': account_id, 'amount': amount, 'action': action, 'account': account})
    return account
