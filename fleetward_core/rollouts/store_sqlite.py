from __future__ import annotations

import sqlite3
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path

from fleetward_core.errors import RecoverableError
from fleetward_core.logging import get_logger
from fleetward_core.rollouts.serialization import (
    format_timestamp,
    rollout_from_dict,
)
from fleetward_core.rollouts.stages import encode_stage_percentages
from fleetward_core.rollouts.types import RolloutRecord

logger = get_logger(__name__)

_ROLLOUT_COLUMNS = (
    "id",
    "version",
    "stage_percentages",
    "current_stage",
    "status",
    "total_devices",
    "updated_devices",
    "failed_devices",
    "auto_expand",
    "expand_after_minutes",
    "failure_threshold",
    "last_expanded",
    "created_at",
    "updated_at",
    "pause_reason",
    "failure_reason",
)


@dataclass(frozen=True)
class SqliteRolloutStore:
    path: str

    def __post_init__(self) -> None:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=30)

    def _init_db(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rollouts (
                    id TEXT PRIMARY KEY,
                    version TEXT NOT NULL,
                    stage_percentages TEXT,
                    current_stage INTEGER,
                    status TEXT,
                    total_devices INTEGER,
                    updated_devices INTEGER,
                    failed_devices INTEGER,
                    auto_expand INTEGER,
                    expand_after_minutes INTEGER,
                    failure_threshold INTEGER,
                    last_expanded TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    pause_reason TEXT,
                    failure_reason TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_rollouts_status ON rollouts (status)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rollout_targets (
                    rollout_id TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    pending INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (rollout_id, device_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rollout_outcomes (
                    rollout_id TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    PRIMARY KEY (rollout_id, device_id)
                )
                """
            )

    def save_rollout(self, rollout: RolloutRecord) -> RolloutRecord:
        values = (
            rollout.id,
            rollout.version,
            encode_stage_percentages(rollout.stage_percentages),
            rollout.current_stage,
            rollout.status,
            rollout.total_devices,
            rollout.updated_devices,
            rollout.failed_devices,
            1 if rollout.auto_expand else 0,
            rollout.expand_after_minutes,
            rollout.failure_threshold,
            format_timestamp(rollout.last_expanded),
            format_timestamp(rollout.created_at),
            format_timestamp(rollout.updated_at),
            rollout.pause_reason,
            rollout.failure_reason,
        )
        placeholders = ", ".join("?" for _ in _ROLLOUT_COLUMNS)
        assignments = ", ".join(
            f"{column} = excluded.{column}" for column in _ROLLOUT_COLUMNS[1:]
        )
        pending = set(rollout.pending_device_ids)
        try:
            with closing(self._connect()) as conn, conn:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    f"INSERT INTO rollouts ({', '.join(_ROLLOUT_COLUMNS)}) "
                    f"VALUES ({placeholders}) "
                    f"ON CONFLICT(id) DO UPDATE SET {assignments}",
                    values,
                )
                conn.executemany(
                    """
                    INSERT INTO rollout_targets (rollout_id, device_id, position, pending)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(rollout_id, device_id)
                    DO UPDATE SET pending = excluded.pending
                    """,
                    [
                        (rollout.id, device_id, position, 1 if device_id in pending else 0)
                        for position, device_id in enumerate(rollout.targeted_device_ids)
                    ],
                )
                conn.executemany(
                    """
                    INSERT OR IGNORE INTO rollout_outcomes (rollout_id, device_id, outcome)
                    VALUES (?, ?, ?)
                    """,
                    [
                        (rollout.id, device_id, outcome)
                        for device_id, outcome in rollout.outcomes.items()
                    ],
                )
        except sqlite3.Error as exc:  # pragma: no cover - infrastructure errors
            raise RecoverableError(f"SQLite rollout save failed: {exc}") from exc
        return rollout

    def get_rollout(self, rollout_id: str) -> RolloutRecord | None:
        try:
            with closing(self._connect()) as conn:
                return self._load(conn, rollout_id)
        except sqlite3.Error as exc:  # pragma: no cover - infrastructure errors
            raise RecoverableError(f"SQLite rollout read failed: {exc}") from exc

    def list_rollouts(self, *, status: str | None = None) -> list[RolloutRecord]:
        query = "SELECT id FROM rollouts"
        params: tuple[str, ...] = ()
        if status:
            query += " WHERE status = ?"
            params = (status,)
        query += " ORDER BY created_at DESC, rowid DESC"
        results: list[RolloutRecord] = []
        try:
            with closing(self._connect()) as conn:
                ids = [row[0] for row in conn.execute(query, params).fetchall()]
                for rollout_id in ids:
                    try:
                        rollout = self._load(conn, rollout_id)
                    except ValueError as exc:
                        logger.error(
                            "Skipping unreadable rollout record",
                            extra={"rollout_id": rollout_id, "error_message": str(exc)},
                        )
                        continue
                    if rollout is not None:
                        results.append(rollout)
        except sqlite3.Error as exc:  # pragma: no cover - infrastructure errors
            raise RecoverableError(f"SQLite rollout list failed: {exc}") from exc
        return results

    def _load(self, conn: sqlite3.Connection, rollout_id: str) -> RolloutRecord | None:
        row = conn.execute(
            f"SELECT {', '.join(_ROLLOUT_COLUMNS)} FROM rollouts WHERE id = ?",
            (rollout_id,),
        ).fetchone()
        if row is None:
            return None
        payload: dict[str, object] = dict(zip(_ROLLOUT_COLUMNS, row))
        payload["auto_expand"] = bool(payload["auto_expand"])
        targets = conn.execute(
            "SELECT device_id, pending FROM rollout_targets "
            "WHERE rollout_id = ? ORDER BY position",
            (rollout_id,),
        ).fetchall()
        payload["targeted_device_ids"] = [device_id for device_id, _ in targets]
        payload["pending_device_ids"] = [
            device_id for device_id, pending in targets if pending
        ]
        outcomes = conn.execute(
            "SELECT device_id, outcome FROM rollout_outcomes WHERE rollout_id = ?",
            (rollout_id,),
        ).fetchall()
        payload["outcomes"] = {device_id: outcome for device_id, outcome in outcomes}
        return rollout_from_dict(payload)
