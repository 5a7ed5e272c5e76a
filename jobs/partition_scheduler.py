# jobs/partition_scheduler.py
from __future__ import annotations

import asyncio
import logging
import os

from sqlalchemy import text

from services.app_bootstrap import build_runtime
from services.db import create_db_engine

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s"
)
logger = logging.getLogger("partitions.scheduler")

_DEFAULT_LOCK_KEY = 0x0A57A11C


def _lock_key() -> int:
    raw = (os.getenv("PARTITION_SCHEDULER_LOCK_KEY") or "").strip()
    return int(raw, 0) if raw else _DEFAULT_LOCK_KEY


def _acquire_lock(conn, key: int) -> bool:
    got = conn.execute(text("select pg_try_advisory_lock(:k)"), {"k": key}).scalar()
    return bool(got)


def _release_lock(conn, key: int) -> None:
    try:
        conn.execute(text("select pg_advisory_unlock(:k)"), {"k": key})
    except Exception:
        logger.exception("partition_scheduler: unlock_failed")


def main() -> int:
    """One partition tick for cron deployments; exit 0 on success or when another instance holds the lock."""
    key = _lock_key()
    e = create_db_engine()
    try:
        with e.connect() as c:
            if not _acquire_lock(c, key):
                logger.info("partition_scheduler: lock_not_acquired (another instance running)")
                return 0

            try:
                runtime = build_runtime(engine=e)
                results = asyncio.run(runtime.partition_manager.tick())
                failed = [r for r in results if r.error]
                for r in results:
                    logger.info(
                        "partition_scheduler: table=%s transitions=%s error=%s",
                        r.table_name,
                        len(r.transitions),
                        r.error,
                    )
                return 1 if failed else 0
            except Exception as exc:
                logger.exception("partition_scheduler: failed: %s", exc)
                return 2
            finally:
                _release_lock(c, key)
    finally:
        e.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
