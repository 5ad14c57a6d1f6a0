"""
Database helpers for engine creation and explicit transactions
Automatically handles commit/rollback and dialect differences
"""

from contextlib import contextmanager

from sqlalchemy import create_engine


def create_db_engine(database_url, **kwargs):
    """
    Create a SQLAlchemy engine from a database URL

    Args:
        database_url: PostgreSQL (or SQLite) connection string
        **kwargs: Extra create_engine() options

    Returns:
        Engine
    """
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    kwargs.setdefault("pool_pre_ping", True)
    return create_engine(database_url, **kwargs)


@contextmanager
def db_transaction(engine):
    """
    Context manager for explicit transactions with commit/rollback control

    Commits on normal exit unless the caller already rolled back; any
    exception rolls back and is re-raised.

    Usage:
        with db_transaction(engine) as (conn, trans):
            conn.execute(text("UPDATE users SET ..."))
            if business_rule_failed:
                trans.rollback()
                return result

    Yields:
        tuple: (connection, transaction) objects
    """
    with engine.connect() as conn:
        trans = conn.begin()
        try:
            yield conn, trans
            if trans.is_active:
                trans.commit()
        except Exception:
            if trans.is_active:
                trans.rollback()
            raise


def for_update_clause(conn):
    """Row-lock suffix for SELECTs; SQLite serialises writers and has no FOR UPDATE"""
    return "" if conn.dialect.name == "sqlite" else " FOR UPDATE"
