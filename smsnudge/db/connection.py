"""
Database access for the SMS Nudge engines.

One connection per call, one transaction per connection. The credit ledger
relies on this: its SELECT ... FOR UPDATE, balance UPDATE and audit INSERT
all go through a single get_db_cursor() block, so they commit or roll back
together.
"""

import psycopg2
from psycopg2.extras import RealDictCursor
from contextlib import contextmanager
import logging

from smsnudge.config import config

logger = logging.getLogger(__name__)


@contextmanager
def get_db_connection():
    """
    Open a PostgreSQL connection for one unit of work.
    Commits when the block exits cleanly, rolls back and re-raises otherwise.

    Usage:
        with get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT count(*) FROM clients WHERE account_id = %s", (account_id,))
    """
    conn = None
    try:
        conn = psycopg2.connect(config.DATABASE_URL)
        logger.debug("Connected to the SMS Nudge database")
        yield conn
        conn.commit()
        logger.debug("Committed")
    except Exception as e:
        if conn:
            conn.rollback()
            logger.error(f"Rolled back: {e}")
        raise
    finally:
        if conn:
            conn.close()


@contextmanager
def get_db_cursor(dict_cursor=True):
    """
    Cursor inside its own transaction. Rows come back as dicts keyed by
    column name (RealDictCursor) unless dict_cursor is False.

    Usage:
        with get_db_cursor() as cur:
            cur.execute("SELECT available_credits FROM credit_accounts WHERE account_id = %s", (account_id,))
            row = cur.fetchone()  # {'available_credits': 12}
    """
    with get_db_connection() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor if dict_cursor else None)
        try:
            yield cur
        finally:
            cur.close()
