"""
Unit tests for smsnudge/db/connection.py.

psycopg2.connect is patched; the tests check the transaction boundary the
credit ledger depends on.
"""

import pytest
from unittest.mock import MagicMock, patch

from psycopg2.extras import RealDictCursor

from smsnudge.db.connection import get_db_cursor


@pytest.fixture
def conn():
    connection = MagicMock()
    with patch('smsnudge.db.connection.psycopg2.connect', return_value=connection):
        yield connection


def test_cursor_block_commits_once(conn):
    with get_db_cursor() as cur:
        cur.execute("UPDATE credit_accounts SET reserved_credits = 1")
        cur.execute("INSERT INTO credit_transactions DEFAULT VALUES")

    conn.cursor.assert_called_once_with(cursor_factory=RealDictCursor)
    conn.commit.assert_called_once()
    conn.rollback.assert_not_called()
    conn.close.assert_called_once()


def test_error_rolls_back_and_propagates(conn):
    with pytest.raises(RuntimeError):
        with get_db_cursor():
            raise RuntimeError("audit insert failed")

    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()
    conn.close.assert_called_once()


def test_plain_cursor(conn):
    with get_db_cursor(dict_cursor=False):
        pass
    conn.cursor.assert_called_once_with(cursor_factory=None)
