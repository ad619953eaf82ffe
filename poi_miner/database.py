"""aiosqlite database setup: local (advisory) solution and claim log."""
import time

import aiosqlite

from poi_miner.config import settings
from poi_miner.models.epoch import Solution

_db: aiosqlite.Connection | None = None


async def get_db() -> aiosqlite.Connection:
    global _db
    if _db is None:
        _db = await aiosqlite.connect(settings.database_url)
        _db.row_factory = aiosqlite.Row
        await _create_tables(_db)
    return _db


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _create_tables(db: aiosqlite.Connection) -> None:
    await db.execute("""
        CREATE TABLE IF NOT EXISTS solutions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            epoch INTEGER NOT NULL,
            nonce TEXT NOT NULL,
            difficulty INTEGER NOT NULL,
            text TEXT NOT NULL,
            digest TEXT NOT NULL,
            signature TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            elapsed_s REAL NOT NULL DEFAULT 0,
            duplicate INTEGER NOT NULL DEFAULT 0,
            timestamp REAL NOT NULL
        )
    """)
    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_solutions_epoch
        ON solutions(epoch)
    """)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS claims (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            epoch INTEGER NOT NULL,
            ok INTEGER NOT NULL,
            signature TEXT,
            detail TEXT,
            timestamp REAL NOT NULL
        )
    """)
    await db.commit()


async def insert_solution(
    solution: Solution,
    difficulty: int,
    signature: str,
    attempts: int,
    elapsed_s: float,
    duplicate: bool = False,
) -> int:
    db = await get_db()
    cursor = await db.execute(
        """INSERT INTO solutions
           (epoch, nonce, difficulty, text, digest, signature, attempts, elapsed_s, duplicate, timestamp)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            solution.epoch,
            # u64 nonces can exceed SQLite's signed 64-bit integer range.
            str(solution.nonce),
            difficulty,
            solution.text,
            solution.digest.hex(),
            signature,
            attempts,
            elapsed_s,
            int(duplicate),
            time.time(),
        ),
    )
    await db.commit()
    return cursor.lastrowid


async def insert_claim(epoch: int, ok: bool, signature: str, detail: str) -> int:
    db = await get_db()
    cursor = await db.execute(
        "INSERT INTO claims (epoch, ok, signature, detail, timestamp) VALUES (?, ?, ?, ?, ?)",
        (epoch, int(ok), signature, detail, time.time()),
    )
    await db.commit()
    return cursor.lastrowid


async def fetch_solutions(limit: int = 100) -> list[dict]:
    db = await get_db()
    cursor = await db.execute(
        "SELECT * FROM solutions ORDER BY epoch DESC, id DESC LIMIT ?",
        (limit,),
    )
    rows = await cursor.fetchall()
    return [dict(r) for r in rows]


async def fetch_solution(epoch: int) -> dict | None:
    db = await get_db()
    cursor = await db.execute(
        "SELECT * FROM solutions WHERE epoch = ? ORDER BY id DESC LIMIT 1",
        (epoch,),
    )
    row = await cursor.fetchone()
    return dict(row) if row is not None else None


async def fetch_claims(epoch: int) -> list[dict]:
    db = await get_db()
    cursor = await db.execute(
        "SELECT * FROM claims WHERE epoch = ? ORDER BY id ASC",
        (epoch,),
    )
    rows = await cursor.fetchall()
    return [dict(r) for r in rows]


class SolutionLog:
    """Recorder the coordinator writes to; nothing reads it back to make decisions."""

    async def record_solution(self, solution, difficulty, signature, attempts, elapsed_s, duplicate=False):
        await insert_solution(solution, difficulty, signature, attempts, elapsed_s, duplicate)

    async def record_claim(self, epoch, ok, signature, detail):
        await insert_claim(epoch, ok, signature, detail)
