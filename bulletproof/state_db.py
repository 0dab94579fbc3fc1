from __future__ import annotations

from pathlib import Path

import aiosqlite

from bulletproof.models import SnapshotInfo, parse_timestamp


INDEX_LOG_CAP = 1000

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS snapshot_log (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    op TEXT NOT NULL CHECK (op IN ('save', 'delete')),
    snapshot_id TEXT NOT NULL,
    timestamp TEXT,
    message TEXT,
    file_count INTEGER,
    logged_at INTEGER NOT NULL
);
"""


async def ensure_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(SCHEMA_SQL)
        await db.commit()


async def _append(
    db_path: Path,
    op: str,
    snapshot_id: str,
    *,
    timestamp: str | None = None,
    message: str | None = None,
    file_count: int | None = None,
    cap: int = INDEX_LOG_CAP,
) -> None:
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO snapshot_log (op, snapshot_id, timestamp, message, file_count, logged_at)
            VALUES (?, ?, ?, ?, ?, strftime('%s','now'))
            """,
            (op, snapshot_id, timestamp, message, file_count),
        )
        cursor = await db.execute("SELECT COUNT(*) FROM snapshot_log")
        row = await cursor.fetchone()
        await cursor.close()
        if row and int(row[0]) > cap:
            await _compact(db)
        await db.commit()


async def _compact(db: aiosqlite.Connection) -> None:
    # Only the newest row per snapshot matters, and a trailing delete means the
    # snapshot is gone. The save row of every live snapshot is always kept.
    await db.execute(
        """
        DELETE FROM snapshot_log
        WHERE seq NOT IN (SELECT MAX(seq) FROM snapshot_log GROUP BY snapshot_id)
        """
    )
    await db.execute("DELETE FROM snapshot_log WHERE op = 'delete'")


async def append_saved(db_path: Path, info: SnapshotInfo, *, cap: int = INDEX_LOG_CAP) -> None:
    await _append(
        db_path,
        "save",
        info.id,
        timestamp=info.timestamp.isoformat(),
        message=info.message,
        file_count=info.file_count,
        cap=cap,
    )


async def append_deleted(db_path: Path, snapshot_id: str, *, cap: int = INDEX_LOG_CAP) -> None:
    await _append(db_path, "delete", snapshot_id, cap=cap)


async def load_snapshot_infos(db_path: Path) -> list[SnapshotInfo]:
    """Replay the log into the set of snapshots that currently exist."""
    if not db_path.exists():
        return []
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            "SELECT op, snapshot_id, timestamp, message, file_count FROM snapshot_log ORDER BY seq"
        )
        rows = await cursor.fetchall()
        await cursor.close()

    live: dict[str, SnapshotInfo] = {}
    for row in rows:
        snapshot_id = str(row["snapshot_id"])
        if row["op"] == "delete":
            live.pop(snapshot_id, None)
            continue
        live[snapshot_id] = SnapshotInfo(
            id=snapshot_id,
            timestamp=parse_timestamp(str(row["timestamp"])),
            message=str(row["message"] or ""),
            file_count=int(row["file_count"] or 0),
        )
    return list(live.values())


async def log_length(db_path: Path) -> int:
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute("SELECT COUNT(*) FROM snapshot_log")
        row = await cursor.fetchone()
        await cursor.close()
    return int(row[0]) if row else 0
