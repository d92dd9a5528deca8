from contextlib import contextmanager
import os

from dotenv import load_dotenv
import psycopg2
from psycopg2.extras import DictCursor

load_dotenv()


def database_url():
    """Return the PostgreSQL URL from the environment."""
    url = (os.getenv("DATABASE_URL") or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    if not url.startswith(('postgres://', 'postgresql://')):
        raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
    return url


def _adapt_query(query):
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)


def get_db():
    """Create a PostgreSQL DB connection."""
    return psycopg2.connect(database_url(), cursor_factory=DictCursor, connect_timeout=10)


@contextmanager
def db_connection(commit=False):
    """Context manager for PostgreSQL connections with optional commit.

    Leaving the block through an exception rolls the transaction back.
    """
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
