import json
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(timespec="microseconds") + "Z"


def utc_after(seconds: int) -> str:
    moment = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=seconds)
    return moment.isoformat(timespec="microseconds") + "Z"


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS contexts(
                    session_id TEXT,
                    team_id TEXT,
                    payload_json TEXT,
                    updated_at TEXT,
                    PRIMARY KEY(session_id, team_id)
                );
                CREATE TABLE IF NOT EXISTS statuses(
                    id TEXT PRIMARY KEY,
                    session_id TEXT,
                    organization_id TEXT,
                    type TEXT,
                    status TEXT,
                    message TEXT,
                    progress INTEGER,
                    data_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS analysis_previews(
                    session_id TEXT,
                    file_key TEXT,
                    payload_json TEXT,
                    created_at TEXT,
                    expires_at TEXT,
                    PRIMARY KEY(session_id, file_key)
                );
                CREATE TABLE IF NOT EXISTS files(
                    key TEXT PRIMARY KEY,
                    session_id TEXT,
                    organization_id TEXT,
                    original_name TEXT,
                    mime TEXT,
                    size_bytes INTEGER,
                    storage_path TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS matters(
                    id TEXT PRIMARY KEY,
                    session_id TEXT,
                    team_id TEXT,
                    matter_type TEXT,
                    description TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_statuses_session ON statuses(session_id);
                CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id, seq);
                """
            )

            async def column_exists(table: str, column: str) -> bool:
                cursor = await db.execute(f"PRAGMA table_info({table})")
                rows = await cursor.fetchall()
                await cursor.close()
                return any(row[1] == column for row in rows)

            async def ensure_column(table: str, column: str, decl: str) -> None:
                if not await column_exists(table, column):
                    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")

            await ensure_column("statuses", "expires_at", "TEXT")
            await ensure_column("contexts", "version", "INTEGER DEFAULT 0")
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    # Conversation contexts

    async def get_context(self, session_id: str, team_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT payload_json FROM contexts WHERE session_id=? AND team_id=?",
            (session_id, team_id),
        )
        if not row:
            return None
        return _json_loads(row["payload_json"], None)

    async def put_context(self, session_id: str, team_id: str, payload: dict) -> None:
        await self.execute(
            "INSERT INTO contexts(session_id, team_id, payload_json, updated_at, version) VALUES (?,?,?,?,1) "
            "ON CONFLICT(session_id, team_id) DO UPDATE SET payload_json=excluded.payload_json, "
            "updated_at=excluded.updated_at, version=contexts.version + 1",
            (session_id, team_id, json.dumps(payload), utc_now()),
        )

    # Status records

    def _status_row(self, row: aiosqlite.Row) -> dict:
        return {
            "id": row["id"],
            "session_id": row["session_id"],
            "organization_id": row["organization_id"],
            "type": row["type"],
            "status": row["status"],
            "message": row["message"] or "",
            "progress": row["progress"] or 0,
            "data": _json_loads(row["data_json"], {}),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "expires_at": row["expires_at"],
        }

    async def get_status(self, status_id: str) -> Optional[dict]:
        row = await self.fetchone("SELECT * FROM statuses WHERE id=?", (status_id,))
        return self._status_row(row) if row else None

    async def put_status(self, record: dict) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO statuses(id, session_id, organization_id, type, status, message, progress, "
            "data_json, created_at, updated_at, expires_at) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
            (
                record["id"],
                record["session_id"],
                record["organization_id"],
                record.get("type") or "file_processing",
                record["status"],
                record.get("message") or "",
                int(record.get("progress") or 0),
                json.dumps(record.get("data") or {}),
                record["created_at"],
                record.get("updated_at") or utc_now(),
                record.get("expires_at"),
            ),
        )

    async def list_statuses(self, session_id: str, now: Optional[str] = None) -> List[dict]:
        cutoff = now or utc_now()
        rows = await self.fetchall(
            "SELECT * FROM statuses WHERE session_id=? AND (expires_at IS NULL OR expires_at > ?) "
            "ORDER BY created_at DESC, updated_at DESC",
            (session_id, cutoff),
        )
        return [self._status_row(row) for row in rows]

    async def delete_expired_statuses(self, now: Optional[str] = None) -> None:
        await self.execute(
            "DELETE FROM statuses WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (now or utc_now(),),
        )

    # Session events

    async def next_event_seq(self, session_id: str) -> int:
        row = await self.fetchone("SELECT MAX(seq) as max_seq FROM events WHERE session_id=?", (session_id,))
        max_seq = row["max_seq"] if row and row["max_seq"] is not None else 0
        return int(max_seq) + 1

    async def add_event(self, session_id: str, event_type: str, payload: dict) -> dict:
        seq = await self.next_event_seq(session_id)
        created_at = utc_now()
        await self.execute(
            "INSERT INTO events(session_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
            (session_id, seq, event_type, json.dumps(payload), created_at),
        )
        return {
            "session_id": session_id,
            "seq": seq,
            "event_type": event_type,
            "payload": payload,
            "created_at": created_at,
        }

    async def list_events(self, session_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT session_id, seq, event_type, payload_json, created_at FROM events "
            "WHERE session_id=? AND seq>? ORDER BY seq ASC",
            (session_id, after_seq),
        )
        return [
            {
                "session_id": row["session_id"],
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": _json_loads(row["payload_json"], {}),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    # Analysis previews

    async def put_preview(self, session_id: str, file_key: str, payload: dict, ttl_s: int) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO analysis_previews(session_id, file_key, payload_json, created_at, expires_at) "
            "VALUES (?,?,?,?,?)",
            (session_id, file_key, json.dumps(payload), utc_now(), utc_after(ttl_s)),
        )

    async def get_preview(self, session_id: str, file_key: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT payload_json FROM analysis_previews WHERE session_id=? AND file_key=? AND expires_at > ?",
            (session_id, file_key, utc_now()),
        )
        if not row:
            return None
        return _json_loads(row["payload_json"], None)

    async def list_previews(self, session_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT file_key, payload_json FROM analysis_previews WHERE session_id=? AND expires_at > ? "
            "ORDER BY created_at ASC",
            (session_id, utc_now()),
        )
        return [{"key": row["file_key"], **_json_loads(row["payload_json"], {})} for row in rows]

    # Uploaded files

    async def add_file(
        self,
        key: str,
        session_id: str,
        organization_id: str,
        original_name: str,
        mime: str,
        size_bytes: int,
        storage_path: str,
    ) -> None:
        await self.execute(
            "INSERT OR REPLACE INTO files(key, session_id, organization_id, original_name, mime, size_bytes, "
            "storage_path, created_at) VALUES (?,?,?,?,?,?,?,?)",
            (key, session_id, organization_id, original_name, mime, size_bytes, storage_path, utc_now()),
        )

    async def get_file(self, key: str) -> Optional[dict]:
        row = await self.fetchone("SELECT * FROM files WHERE key=?", (key,))
        if not row:
            return None
        return {
            "key": row["key"],
            "session_id": row["session_id"],
            "organization_id": row["organization_id"],
            "original_name": row["original_name"],
            "mime": row["mime"],
            "size_bytes": row["size_bytes"],
            "storage_path": row["storage_path"],
            "created_at": row["created_at"],
        }

    # Matters

    async def add_matter(
        self,
        matter_id: str,
        session_id: str,
        team_id: str,
        matter_type: str,
        description: str,
        payload: dict,
    ) -> dict:
        created_at = utc_now()
        await self.execute(
            "INSERT INTO matters(id, session_id, team_id, matter_type, description, payload_json, created_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (matter_id, session_id, team_id, matter_type, description, json.dumps(payload), created_at),
        )
        return {
            "id": matter_id,
            "session_id": session_id,
            "team_id": team_id,
            "matter_type": matter_type,
            "description": description,
            "payload": payload,
            "created_at": created_at,
        }

    async def list_matters(self, session_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT * FROM matters WHERE session_id=? ORDER BY created_at ASC",
            (session_id,),
        )
        return [
            {
                "id": row["id"],
                "session_id": row["session_id"],
                "team_id": row["team_id"],
                "matter_type": row["matter_type"],
                "description": row["description"],
                "payload": _json_loads(row["payload_json"], {}),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
