"""
Unit tests for the Client Repository (smsnudge/engine/clients.py).

Strategy: patch smsnudge.engine.clients.get_db_cursor with a contextmanager that
yields a MagicMock cursor, then assert on the SQL and parameters it received.
"""

import json
import pytest
from contextlib import contextmanager
from datetime import date
from unittest.mock import MagicMock, patch

import psycopg2

from smsnudge.engine import clients as repo
from smsnudge.errors import UpstreamUnavailable
from smsnudge.models import Client, MessageOverrides


CLIENT_ROW = {
    'client_id': 'c1', 'account_id': 'acct-1', 'first_name': 'Marcus', 'last_name': 'Lee',
    'phone_normalized': '+14165550101', 'first_appt': date(2023, 1, 5),
    'last_appt': date(2025, 5, 1), 'total_appointments': 12, 'visiting_type': 'regular',
    'avg_weekly_visits': None, 'sms_subscribed': True, 'date_last_sms_sent': None,
}


def make_cursor(fetchone=None, fetchall=None, rowcount=1):
    """Build a MagicMock cursor with preset return values."""
    cur = MagicMock()
    cur.fetchone.return_value = fetchone
    cur.fetchall.return_value = fetchall if fetchall is not None else []
    cur.rowcount = rowcount
    return cur


def cursor_patch(cur):
    """Return a patch replacing get_db_cursor with one yielding cur."""
    @contextmanager
    def _mock_ctx(*args, **kwargs):
        yield cur
    return patch('smsnudge.engine.clients.get_db_cursor', _mock_ctx)


def _sql(cur):
    return cur.execute.call_args[0][0]


def _params(cur):
    return cur.execute.call_args[0][1]


# ---------------------------------------------------------------------------
# normalize_phone
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw,expected", [
    ('(416) 555-0101', '+14165550101'),
    ('+1 416 555 0101', '+14165550101'),
    ('14165550101', '+14165550101'),
    ('4165550101', '+14165550101'),
    ('555-0101', None),
    ('', None),
    (None, None),
])
def test_normalize_phone(raw, expected):
    assert repo.normalize_phone(raw) == expected


def test_normalize_phone_keeps_last_ten_digits():
    assert repo.normalize_phone('0014165550101') == '+14165550101'


# ---------------------------------------------------------------------------
# fetch_candidates
# ---------------------------------------------------------------------------

def test_fetch_candidates_returns_clients():
    cur = make_cursor(fetchall=[CLIENT_ROW])
    with cursor_patch(cur):
        result = repo.fetch_candidates('acct-1')

    assert len(result) == 1
    assert isinstance(result[0], Client)
    assert result[0].full_name == 'Marcus Lee'


def test_fetch_candidates_default_filters():
    cur = make_cursor(fetchall=[])
    with cursor_patch(cur):
        repo.fetch_candidates('acct-1')

    sql = _sql(cur)
    assert 'account_id = %(account_id)s' in sql
    assert 'sms_subscribed IS DISTINCT FROM FALSE' in sql
    assert 'phone_normalized IS NOT NULL' in sql
    assert 'last_appt IS NOT NULL' not in sql
    assert 'LIMIT' not in sql
    assert _params(cur) == {'account_id': 'acct-1'}


def test_fetch_candidates_optional_filters():
    cur = make_cursor(fetchall=[])
    with cursor_patch(cur):
        repo.fetch_candidates(
            'acct-1',
            visiting_type='rare',
            require_last_appt=True,
            last_appt_after=date(2024, 1, 1),
            min_total_appointments=2,
            limit=5,
        )

    sql = _sql(cur)
    assert 'last_appt IS NOT NULL' in sql
    assert 'last_appt >= %(last_appt_after)s' in sql
    assert 'total_appointments >= %(min_total)s' in sql
    assert 'visiting_type = %(visiting_type)s' in sql
    assert 'LIMIT %(limit)s' in sql
    assert _params(cur) == {
        'account_id': 'acct-1', 'visiting_type': 'rare', 'last_appt_after': date(2024, 1, 1),
        'min_total': 2, 'limit': 5,
    }


def test_fetch_candidates_fills_null_defaults():
    row = dict(CLIENT_ROW, total_appointments=None, sms_subscribed=None, avg_weekly_visits='0.5')
    cur = make_cursor(fetchall=[row])
    with cursor_patch(cur):
        client = repo.fetch_candidates('acct-1')[0]

    assert client.total_appointments == 0
    assert client.sms_subscribed is True
    assert client.avg_weekly_visits == 0.5


def test_fetch_candidates_wraps_driver_errors():
    cur = make_cursor()
    cur.execute.side_effect = psycopg2.OperationalError("connection refused")
    with cursor_patch(cur):
        with pytest.raises(UpstreamUnavailable) as exc:
            repo.fetch_candidates('acct-1')
    assert isinstance(exc.value.cause, psycopg2.OperationalError)


# ---------------------------------------------------------------------------
# fetch_holiday_visitors
# ---------------------------------------------------------------------------

def test_holiday_visitors_single_query():
    cur = make_cursor(fetchall=[{'client_id': 'c1'}, {'client_id': 'c3'}])
    with cursor_patch(cur):
        result = repo.fetch_holiday_visitors('acct-1', ['c1', 'c2', 'c3'], date(2023, 11, 3), date(2023, 12, 8))

    assert result == {'c1', 'c3'}
    assert cur.execute.call_count == 1
    sql = _sql(cur)
    assert 'ANY(%(client_ids)s)' in sql
    assert 'created_at::date BETWEEN' in sql
    assert _params(cur)['client_ids'] == ['c1', 'c2', 'c3']


def test_holiday_visitors_empty_ids_skip_query():
    cur = make_cursor()
    with cursor_patch(cur):
        assert repo.fetch_holiday_visitors('acct-1', [], date(2023, 1, 1), date(2023, 1, 2)) == set()
    cur.execute.assert_not_called()


# ---------------------------------------------------------------------------
# fetch_opted_out_phones
# ---------------------------------------------------------------------------

def test_opted_out_phones_filters_by_account_and_flag():
    cur = make_cursor(fetchall=[{'phone_normalized': '+14165559999'}])
    with cursor_patch(cur):
        result = repo.fetch_opted_out_phones('acct-1', {'+14165559999', '+14165550101'})

    assert result == {'+14165559999'}
    assert 'sms_subscribed = FALSE' in _sql(cur)
    params = _params(cur)
    assert params['account_id'] == 'acct-1'
    assert sorted(params['phones']) == ['+14165550101', '+14165559999']


def test_opted_out_phones_empty_input_skips_query():
    cur = make_cursor()
    with cursor_patch(cur):
        assert repo.fetch_opted_out_phones('acct-1', [None, '']) == set()
    cur.execute.assert_not_called()


# ---------------------------------------------------------------------------
# Phone lookups
# ---------------------------------------------------------------------------

def test_find_client_by_phone_found():
    cur = make_cursor(fetchone={'client_id': 'c1', 'account_id': 'acct-1'})
    with cursor_patch(cur):
        assert repo.find_client_by_phone('+14165550101') == {'client_id': 'c1', 'account_id': 'acct-1'}


def test_find_client_by_phone_missing():
    cur = make_cursor(fetchone=None)
    with cursor_patch(cur):
        assert repo.find_client_by_phone('+14165550101') is None


def test_unsubscribe_phone_sets_flag():
    cur = make_cursor(rowcount=2)
    with cursor_patch(cur):
        assert repo.unsubscribe_phone('+14165550101') == 2
    assert 'sms_subscribed = FALSE' in _sql(cur)
    assert _params(cur) == ('+14165550101',)


def test_mark_phone_messaged_stamps_timestamp():
    cur = make_cursor(rowcount=1)
    with cursor_patch(cur):
        assert repo.mark_phone_messaged('+14165550101') == 1
    assert 'date_last_sms_sent = NOW()' in _sql(cur)


# ---------------------------------------------------------------------------
# Message overrides
# ---------------------------------------------------------------------------

def test_message_overrides_from_jsonb_lists():
    row = {
        'selected_clients': [{'client_id': 'c9', 'phone_normalized': '+14165550109'}],
        'deselected_clients': ['+14165550102', None],
    }
    cur = make_cursor(fetchone=row)
    with cursor_patch(cur):
        result = repo.get_message_overrides('msg-1')

    assert result == MessageOverrides(
        selected_clients=[{'client_id': 'c9', 'phone_normalized': '+14165550109'}],
        deselected_phones=['+14165550102'],
    )


def test_message_overrides_from_json_strings():
    row = {'selected_clients': json.dumps([]), 'deselected_clients': json.dumps(['+14165550102'])}
    cur = make_cursor(fetchone=row)
    with cursor_patch(cur):
        result = repo.get_message_overrides('msg-1')
    assert result.deselected_phones == ['+14165550102']


def test_message_overrides_missing_message():
    cur = make_cursor(fetchone=None)
    with cursor_patch(cur):
        assert repo.get_message_overrides('nope') is None
