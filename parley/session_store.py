import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class SessionStore:
    """Flat named snapshots of engine state (``Engine.export_state``)."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS sessions(
                    name TEXT PRIMARY KEY,
                    snapshot_json TEXT,
                    updated_at TEXT
                );
                """
            )
            await db.commit()

    async def save(self, name: str, snapshot: Dict[str, Any]) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO sessions(name, snapshot_json, updated_at) VALUES (?,?,?)",
                (name, json.dumps(snapshot, ensure_ascii=True), utc_now()),
            )
            await db.commit()

    async def load(self, name: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT snapshot_json FROM sessions WHERE name=?",
                (name,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if not row:
            return None
        try:
            return json.loads(row["snapshot_json"] or "{}")
        except json.JSONDecodeError:
            return None

    async def list(self) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT name, updated_at FROM sessions ORDER BY updated_at DESC")
            rows = await cursor.fetchall()
            await cursor.close()
        return [{"name": row["name"], "updated_at": row["updated_at"]} for row in rows]

    async def delete(self, name: str) -> bool:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("DELETE FROM sessions WHERE name=?", (name,))
            deleted = cursor.rowcount
            await cursor.close()
            await db.commit()
        return bool(deleted)
