from __future__ import annotations

import logging
import time
from typing import Callable, Iterable

from cardsync.core.models import Card, SyncDirection, SyncTimestamp
from cardsync.sync.db import get_conn, init_db

DEFAULT_MAX_AGE_SEC = 90 * 24 * 3600
LAST_FULL_SYNC_KEY = "last_full_sync"

logger = logging.getLogger("tracker")


class IncrementalSyncTracker:
    """Per-record last-sync times kept apart from the mapping table.

    Rows live in the `sync_timestamps` table so a run can load every
    timestamp with one query and diff the whole store in memory.
    """

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.clock = clock
        init_db(db_path)

    def _db(self):
        return get_conn(self.db_path)

    @staticmethod
    def _row_to_ts(row) -> SyncTimestamp:
        return SyncTimestamp(
            record_id=row["record_id"],
            last_sync_time=float(row["last_sync_time"]),
            direction=row["direction"],
            remote_id=row["remote_id"],
        )

    def get(self, record_id: str) -> SyncTimestamp | None:
        conn = self._db()
        row = conn.execute("SELECT * FROM sync_timestamps WHERE record_id=?", (record_id,)).fetchone()
        conn.close()
        return self._row_to_ts(row) if row else None

    def load_all(self) -> dict[str, SyncTimestamp]:
        conn = self._db()
        rows = conn.execute("SELECT * FROM sync_timestamps").fetchall()
        conn.close()
        return {row["record_id"]: self._row_to_ts(row) for row in rows}

    @staticmethod
    def _needs_sync(known: SyncTimestamp | None, record: Card, remote_mod_time: float | None) -> bool:
        if known is None:
            return True
        if record.modified_at > known.last_sync_time:
            return True
        return remote_mod_time is not None and remote_mod_time > known.last_sync_time

    def should_sync(self, record: Card, remote_mod_time: float | None = None) -> bool:
        return self._needs_sync(self.get(record.id), record, remote_mod_time)

    def get_changed_records(
        self,
        records: Iterable[Card],
        remote_mod_times: dict[str, float] | None = None,
        *,
        full_resync: bool = False,
    ) -> list[Card]:
        records = list(records)
        if full_resync:
            return records
        remote_mod_times = remote_mod_times or {}
        known = self.load_all()
        changed = [r for r in records if self._needs_sync(known.get(r.id), r, remote_mod_times.get(r.id))]
        logger.debug("changed_records total=%s changed=%s", len(records), len(changed))
        return changed

    def update_sync_timestamp(
        self,
        record_id: str,
        direction: SyncDirection,
        sync_time: float | None = None,
        remote_id: int | None = None,
    ) -> SyncTimestamp:
        ts = SyncTimestamp(
            record_id=record_id,
            last_sync_time=self.clock() if sync_time is None else sync_time,
            direction=direction,
            remote_id=remote_id,
        )
        conn = self._db()
        conn.execute(
            """
            INSERT INTO sync_timestamps(record_id,last_sync_time,direction,remote_id,updated_at)
            VALUES (?,?,?,?,CURRENT_TIMESTAMP)
            ON CONFLICT(record_id) DO UPDATE SET
              last_sync_time=excluded.last_sync_time,
              direction=excluded.direction,
              remote_id=COALESCE(excluded.remote_id, sync_timestamps.remote_id),
              updated_at=CURRENT_TIMESTAMP
            """,
            (ts.record_id, ts.last_sync_time, ts.direction, ts.remote_id),
        )
        conn.commit()
        conn.close()
        return ts

    def update_batch(self, record_ids: Iterable[str], direction: SyncDirection, sync_time: float | None = None) -> int:
        when = self.clock() if sync_time is None else sync_time
        rows = [(rid, when, direction) for rid in record_ids]
        if not rows:
            return 0
        conn = self._db()
        conn.executemany(
            """
            INSERT INTO sync_timestamps(record_id,last_sync_time,direction,updated_at)
            VALUES (?,?,?,CURRENT_TIMESTAMP)
            ON CONFLICT(record_id) DO UPDATE SET
              last_sync_time=excluded.last_sync_time,
              direction=excluded.direction,
              updated_at=CURRENT_TIMESTAMP
            """,
            rows,
        )
        conn.commit()
        conn.close()
        return len(rows)

    def snapshot(self, record_ids: Iterable[str]) -> dict[str, SyncTimestamp | None]:
        known = self.load_all()
        return {rid: known.get(rid) for rid in record_ids}

    def restore(self, snapshot: dict[str, SyncTimestamp | None]) -> None:
        if not snapshot:
            return
        conn = self._db()
        for rid, ts in snapshot.items():
            if ts is None:
                conn.execute("DELETE FROM sync_timestamps WHERE record_id=?", (rid,))
            else:
                conn.execute(
                    "INSERT OR REPLACE INTO sync_timestamps(record_id,last_sync_time,direction,remote_id) VALUES (?,?,?,?)",
                    (ts.record_id, ts.last_sync_time, ts.direction, ts.remote_id),
                )
        conn.commit()
        conn.close()

    def mark_full_sync(self, sync_time: float | None = None) -> None:
        when = self.clock() if sync_time is None else sync_time
        conn = self._db()
        conn.execute(
            "INSERT OR REPLACE INTO settings(key,value,updated_at) VALUES (?,?,CURRENT_TIMESTAMP)",
            (LAST_FULL_SYNC_KEY, repr(when)),
        )
        conn.commit()
        conn.close()

    def last_full_sync(self) -> float | None:
        conn = self._db()
        row = conn.execute("SELECT value FROM settings WHERE key=?", (LAST_FULL_SYNC_KEY,)).fetchone()
        conn.close()
        return float(row["value"]) if row else None

    def cleanup_old_records(self, max_age_sec: float = DEFAULT_MAX_AGE_SEC) -> int:
        cutoff = self.clock() - max_age_sec
        conn = self._db()
        cur = conn.execute("DELETE FROM sync_timestamps WHERE last_sync_time < ?", (cutoff,))
        removed = cur.rowcount
        conn.commit()
        conn.close()
        if removed:
            logger.info("sync_timestamps_cleaned removed=%s", removed)
        return removed

    def reset(self) -> None:
        conn = self._db()
        conn.execute("DELETE FROM sync_timestamps")
        conn.execute("DELETE FROM settings WHERE key=?", (LAST_FULL_SYNC_KEY,))
        conn.commit()
        conn.close()
        logger.warning("sync_tracker_reset")

    def stats(self) -> dict[str, object]:
        conn = self._db()
        rows = conn.execute(
            "SELECT direction, COUNT(1) AS n, MIN(last_sync_time) AS oldest, MAX(last_sync_time) AS newest "
            "FROM sync_timestamps GROUP BY direction"
        ).fetchall()
        conn.close()
        by_direction = {row["direction"]: int(row["n"]) for row in rows}
        oldest = [row["oldest"] for row in rows if row["oldest"] is not None]
        newest = [row["newest"] for row in rows if row["newest"] is not None]
        return {
            "total": sum(by_direction.values()),
            "by_direction": by_direction,
            "oldest_sync": min(oldest) if oldest else None,
            "newest_sync": max(newest) if newest else None,
            "last_full_sync": self.last_full_sync(),
        }
