from __future__ import annotations

from pathlib import Path
import sqlite3
from typing import Any

from .models import UpgradeResult


class UpgradeHistoryStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS upgrade_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    volume TEXT NOT NULL,
                    pv_name TEXT,
                    namespace TEXT,
                    pvc_name TEXT,
                    status TEXT NOT NULL,
                    failed_stage TEXT,
                    message TEXT,
                    started_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_upgrade_history_lookup
                ON upgrade_history(volume, status, created_at)
                """
            )
            connection.commit()

    def record_result(self, result: UpgradeResult) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO upgrade_history (
                    volume,
                    pv_name,
                    namespace,
                    pvc_name,
                    status,
                    failed_stage,
                    message,
                    started_at,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.volume,
                    result.pv_name,
                    result.namespace,
                    result.pvc_name,
                    result.status,
                    result.failed_stage,
                    result.message,
                    result.started_at,
                    result.finished_at,
                ),
            )
            connection.commit()

    def get_last_success_map(self) -> dict[str, str]:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT volume, MAX(created_at)
                FROM upgrade_history
                WHERE status = 'success'
                GROUP BY volume
                """
            )
            rows = cursor.fetchall()

        return {volume: last_success for volume, last_success in rows}

    def get_recent_results(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT volume, namespace, pvc_name, status, failed_stage, message, created_at
                FROM upgrade_history
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()

        return [
            {
                "volume": row[0],
                "namespace": row[1],
                "pvc_name": row[2],
                "status": row[3],
                "failed_stage": row[4],
                "message": row[5],
                "created_at": row[6],
            }
            for row in rows
        ]

    def count_results(self) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute("SELECT COUNT(*) FROM upgrade_history")
            row = cursor.fetchone()

        return int(row[0]) if row else 0
