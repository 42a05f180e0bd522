"""
Control Plane Store

SQLite persistence for ban events, the managed host registry and the
settings blob. All access is serialized with one re-entrant lock; sqlite
errors surface as ``PersistenceError``.
"""

import json
import logging
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.exceptions import ConfigurationError, PersistenceError
from ..core.models import BanEvent, EventKind, ManagedHost, utcnow

logger = logging.getLogger(__name__)


class ControlPlaneStore:
    """
    Persistent store for the control plane.

    Uses SQLite; pass ``None`` as the path for an in-memory database.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

    @property
    def is_initialized(self) -> bool:
        return self._connection is not None

    def initialize(self) -> None:
        """
        Open the database and create tables.

        Raises:
            ConfigurationError: the database cannot be opened
        """
        try:
            if self.db_path:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            db_str = str(self.db_path) if self.db_path else ":memory:"
            self._connection = sqlite3.connect(db_str, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            if self.db_path:
                self._connection.execute("PRAGMA journal_mode=WAL")
            self._create_tables()
        except (OSError, sqlite3.Error) as e:
            self._connection = None
            raise ConfigurationError(f"cannot open database {self.db_path}: {e}") from e
        logger.info(f"Control plane store initialized: {db_str}")

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def _conn(self) -> sqlite3.Connection:
        if self._connection is None:
            raise PersistenceError("store not initialized")
        return self._connection

    def _create_tables(self) -> None:
        cursor = self._conn().cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS ban_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                server_id TEXT NOT NULL,
                server_name TEXT,
                ip TEXT NOT NULL,
                jail TEXT NOT NULL,
                hostname TEXT,
                failures INTEGER DEFAULT 0,
                logs TEXT,
                kind TEXT NOT NULL,
                received_at TEXT NOT NULL
            )
        """
        )
        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_ban_events_server_time
            ON ban_events(server_id, received_at)
        """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS servers (
                id TEXT PRIMARY KEY,
                position INTEGER NOT NULL,
                data_json TEXT NOT NULL
            )
        """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS app_settings (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                data_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """
        )
        self._conn().commit()

    # =========================================================================
    # Ban Events
    # =========================================================================

    def save_ban_event(self, event: BanEvent) -> BanEvent:
        """Insert ``event`` and return it with its assigned id."""
        with self._lock:
            try:
                cursor = self._conn().cursor()
                cursor.execute(
                    """
                    INSERT INTO ban_events
                        (server_id, server_name, ip, jail, hostname, failures, logs, kind, received_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        event.server_id,
                        event.server_name,
                        event.ip,
                        event.jail,
                        event.hostname,
                        event.failures,
                        event.log_excerpt,
                        event.kind.value,
                        event.received_at.isoformat(),
                    ),
                )
                self._conn().commit()
            except sqlite3.Error as e:
                raise PersistenceError(f"failed to store {event.kind.value} event: {e}", e) from e
            event_id = cursor.lastrowid

        logger.debug(f"Stored {event.kind.value} event {event_id} for {event.ip} in {event.jail}")
        return replace(event, id=event_id)

    def list_ban_events(
        self,
        server_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[BanEvent]:
        """Most recent events first."""
        sql = "SELECT * FROM ban_events WHERE 1=1"
        params: List[Any] = []
        if server_id:
            sql += " AND server_id = ?"
            params.append(server_id)
        if since:
            sql += " AND received_at >= ?"
            params.append(since.isoformat())
        sql += " ORDER BY received_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._lock:
            try:
                rows = self._conn().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"failed to list ban events: {e}", e) from e
        return [self._row_to_event(row) for row in rows]

    def ban_event_stats(self, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts of ban events per server and per jail."""
        since = since or (utcnow() - timedelta(hours=24))
        with self._lock:
            try:
                conn = self._conn()
                total = conn.execute(
                    "SELECT COUNT(*) FROM ban_events WHERE kind = ?", (EventKind.BAN.value,)
                ).fetchone()[0]
                recent = conn.execute(
                    "SELECT COUNT(*) FROM ban_events WHERE kind = ? AND received_at >= ?",
                    (EventKind.BAN.value, since.isoformat()),
                ).fetchone()[0]
                by_server = conn.execute(
                    """
                    SELECT server_id, MAX(server_name) AS server_name, COUNT(*) AS total,
                           SUM(CASE WHEN received_at >= ? THEN 1 ELSE 0 END) AS recent
                    FROM ban_events WHERE kind = ?
                    GROUP BY server_id
                """,
                    (since.isoformat(), EventKind.BAN.value),
                ).fetchall()
                by_jail = conn.execute(
                    """
                    SELECT jail, COUNT(*) FROM ban_events WHERE kind = ?
                    GROUP BY jail ORDER BY COUNT(*) DESC
                """,
                    (EventKind.BAN.value,),
                ).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"failed to compute ban statistics: {e}", e) from e

        return {
            "total_bans": total,
            "recent_bans": recent,
            "since": since.isoformat(),
            "by_server": {
                row["server_id"]: {
                    "server_name": row["server_name"] or "",
                    "total": row["total"],
                    "recent": row["recent"] or 0,
                }
                for row in by_server
            },
            "by_jail": {row[0]: row[1] for row in by_jail},
        }

    def delete_ban_events(self, server_id: Optional[str] = None) -> int:
        """Delete all events, or those of one server. Returns count deleted."""
        with self._lock:
            try:
                cursor = self._conn().cursor()
                if server_id:
                    cursor.execute("DELETE FROM ban_events WHERE server_id = ?", (server_id,))
                else:
                    cursor.execute("DELETE FROM ban_events")
                self._conn().commit()
            except sqlite3.Error as e:
                raise PersistenceError(f"failed to delete ban events: {e}", e) from e
            count = cursor.rowcount
        logger.info(f"Deleted {count} ban events")
        return count

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> BanEvent:
        return BanEvent.from_dict(
            {
                "id": row["id"],
                "server_id": row["server_id"],
                "server_name": row["server_name"],
                "ip": row["ip"],
                "jail": row["jail"],
                "hostname": row["hostname"],
                "failures": row["failures"],
                "logs": row["logs"],
                "kind": row["kind"],
                "received_at": row["received_at"],
            }
        )

    # =========================================================================
    # Servers and Settings
    # =========================================================================

    def save_servers(self, hosts: List[ManagedHost]) -> None:
        """Replace the stored host registry with ``hosts``."""
        with self._lock:
            conn = self._conn()
            try:
                with conn:
                    conn.execute("DELETE FROM servers")
                    conn.executemany(
                        "INSERT INTO servers (id, position, data_json) VALUES (?, ?, ?)",
                        [(h.id, i, json.dumps(h.to_dict())) for i, h in enumerate(hosts)],
                    )
            except sqlite3.Error as e:
                raise PersistenceError(f"failed to store servers: {e}", e) from e

    def list_servers(self) -> List[ManagedHost]:
        with self._lock:
            try:
                rows = self._conn().execute(
                    "SELECT data_json FROM servers ORDER BY position"
                ).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"failed to load servers: {e}", e) from e
        return [ManagedHost.from_dict(json.loads(row["data_json"])) for row in rows]

    def save_settings(self, data: Dict[str, Any]) -> None:
        with self._lock:
            conn = self._conn()
            try:
                with conn:
                    conn.execute(
                        """
                        INSERT INTO app_settings (id, data_json, updated_at) VALUES (1, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            data_json = excluded.data_json, updated_at = excluded.updated_at
                    """,
                        (json.dumps(data), utcnow().isoformat()),
                    )
            except sqlite3.Error as e:
                raise PersistenceError(f"failed to store settings: {e}", e) from e

    def load_settings(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            try:
                row = self._conn().execute(
                    "SELECT data_json FROM app_settings WHERE id = 1"
                ).fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"failed to load settings: {e}", e) from e
        return json.loads(row["data_json"]) if row else None
