"""
Shared fixtures and step definitions for BDD tests.

Scenarios drive the real CLI and engines; only the database is replaced:
- client_pool: candidates served to the selection engine (patched repository)
- ledger: one in-memory credit_accounts row whose UPDATEs apply atomically
- bucket_store: sms_smart_buckets honouring the (account_id, iso_week) key
- no_logging: autouse, prevents log file creation during tests
- 'the output contains' step: shared across all feature files
"""

import threading
import pytest
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import patch
from click.testing import CliRunner
from pytest_bdd import given, then, parsers

from smsnudge.models import Client


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def context():
    """Mutable dict shared between Given/When/Then steps within a scenario."""
    return {}


@pytest.fixture(autouse=True)
def no_logging():
    with patch("smsnudge.cli.main.configure_logging"):
        yield


# ---------------------------------------------------------------------------
# Client pool
# ---------------------------------------------------------------------------

class ClientPool:
    def __init__(self):
        self.clients = []
        self.holiday_visitors = set()


@pytest.fixture
def client_pool():
    pool = ClientPool()
    with patch("smsnudge.engine.selection.client_repo") as repo, \
         patch("smsnudge.engine.scoring.client_repo") as scoring_repo:
        repo.fetch_candidates.side_effect = lambda *args, **kwargs: list(pool.clients)
        repo.get_message_overrides.return_value = None
        scoring_repo.fetch_holiday_visitors.side_effect = lambda *args, **kwargs: set(pool.holiday_visitors)
        yield pool


# ---------------------------------------------------------------------------
# Credit ledger
# ---------------------------------------------------------------------------

class Ledger:
    """One credit_accounts row. Each statement is applied under a lock."""

    def __init__(self):
        self.exists = False
        self.available = 0
        self.reserved = 0
        self.lock = threading.Lock()

    def _row(self):
        return {'account_id': 'acct-1', 'available_credits': self.available,
                'reserved_credits': self.reserved, 'updated_at': None}

    def execute(self, sql, params):
        sql = ' '.join(sql.split())
        with self.lock:
            if not sql.startswith(('SELECT', 'UPDATE', 'INSERT INTO credit_accounts')):
                return None
            if sql.startswith('INSERT'):
                self.exists = True
                self.available += params['amount']
                return self._row()
            if not self.exists:
                return None
            if sql.startswith('SELECT'):
                return self._row()
            if 'available_credits >=' in sql:
                if self.available < params['count']:
                    return None
                self.available -= params['count']
                self.reserved += params['count']
                return self._row()
            refund = params['refund'] if self.reserved > 0 else 0
            self.available += refund
            self.reserved = max(self.reserved - 1, 0)
            return self._row()


class _LedgerCursor:
    def __init__(self, ledger):
        self.ledger = ledger
        self._row = None

    def execute(self, sql, params=None):
        self._row = self.ledger.execute(sql, params)

    def fetchone(self):
        return self._row


@pytest.fixture
def ledger():
    state = Ledger()

    @contextmanager
    def _cursor(*args, **kwargs):
        yield _LedgerCursor(state)

    with patch("smsnudge.engine.credits.get_db_cursor", _cursor):
        yield state


# ---------------------------------------------------------------------------
# Weekly buckets
# ---------------------------------------------------------------------------

class _BucketCursor:
    def __init__(self, store):
        self.store = store
        self._row = None

    def execute(self, sql, params=None):
        if 'INSERT INTO sms_smart_buckets' in sql:
            key = (params['account_id'], params['iso_week'])
            if key in self.store:
                self._row = None
            else:
                self.store[key] = len(self.store) + 1
                self._row = {'bucket_id': self.store[key]}
        else:
            bucket_id = self.store.get(tuple(params))
            self._row = {'bucket_id': bucket_id} if bucket_id else None

    def fetchone(self):
        return self._row


@pytest.fixture
def bucket_store():
    store = {}

    @contextmanager
    def _cursor(*args, **kwargs):
        yield _BucketCursor(store)

    with patch("smsnudge.engine.auto_nudge.get_db_cursor", _cursor):
        yield store


# ---------------------------------------------------------------------------
# Shared steps
# ---------------------------------------------------------------------------

def _add_client_spec(context, name, visiting_type, days, subscribed=True):
    specs = context.setdefault("client_specs", [])
    first, _, last = name.partition(" ")
    specs.append({
        'client_id': f"c{len(specs) + 1}",
        'first_name': first,
        'last_name': last or None,
        'visiting_type': visiting_type,
        'days_ago': days,
        'sms_subscribed': subscribed,
    })


def _build_clients(context, client_pool, today):
    client_pool.clients = [
        Client(
            client_id=spec['client_id'],
            account_id='acct-1',
            first_name=spec['first_name'],
            last_name=spec['last_name'],
            phone_normalized=f"+1416555{i + 1:04d}",
            last_appt=today - timedelta(days=spec['days_ago']),
            total_appointments=5,
            visiting_type=spec['visiting_type'],
            sms_subscribed=spec['sms_subscribed'],
        )
        for i, spec in enumerate(context.get("client_specs", []))
    ]


@pytest.fixture
def load_clients(context, client_pool):
    """Turn the Given specs into Client rows dated relative to the given day."""
    return lambda today: _build_clients(context, client_pool, today)


@given(parsers.parse('a {visiting_type} client "{name}" last seen {days:d} days ago'))
def a_client(context, client_pool, visiting_type, name, days):
    _add_client_spec(context, name, visiting_type, days)


@given(parsers.parse('an opted-out {visiting_type} client "{name}" last seen {days:d} days ago'))
def an_opted_out_client(context, client_pool, visiting_type, name, days):
    _add_client_spec(context, name, visiting_type, days, subscribed=False)


@then(parsers.parse('the output contains "{text}"'))
def output_contains(context, text):
    assert text in context["result"].output, (
        f"Expected {text!r} in output:\n{context['result'].output}"
    )


@then(parsers.parse('the output does not contain "{text}"'))
def output_does_not_contain(context, text):
    assert text not in context["result"].output, (
        f"Did not expect {text!r} in output:\n{context['result'].output}"
    )
