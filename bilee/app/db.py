from contextlib import contextmanager

from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import Settings


def create_pool(cfg: Settings, *, open: bool = True) -> ConnectionPool:
    # Every connection gets the same timeout so a stuck store call surfaces as an error
    # instead of blocking a handler forever.
    timeout_ms = int(cfg.store_timeout_seconds) * 1000
    return ConnectionPool(
        conninfo=cfg.db_url,
        min_size=cfg.pool_min_size,
        max_size=cfg.pool_max_size,
        timeout=float(cfg.store_timeout_seconds),
        open=open,
        kwargs={
            "row_factory": dict_row,
            "connect_timeout": int(cfg.store_timeout_seconds),
            "options": f"-c statement_timeout={timeout_ms}",
        },
    )


@contextmanager
def pooled_conn(pool: ConnectionPool):
    # pool.connection() already gives the `with get_conn() as conn:` semantics:
    # - commit on success
    # - rollback on exception
    # - return connection to pool
    with pool.connection() as conn:
        yield conn


def close_pool(pool: ConnectionPool | None) -> None:
    # Best-effort shutdown hook (e.g. uvicorn shutdown).
    if pool is None:
        return
    try:
        pool.close()
    except Exception:
        pass
