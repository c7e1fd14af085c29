"""
Repository pattern for data access.

Persists cost tracker snapshots so totals survive process restarts.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..core.cost_tracker import UsageRecord
from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageSnapshot

_SNAPSHOT_COLUMNS = "captured_at, provider_id, subject_id, period, tokens, cost, requests"


class UsageRepository:
    """Read access to persisted usage snapshots."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def get_provider_totals(self, subject_id: Optional[str] = None) -> Dict[str, Dict[str, float]]:
        """Totals per provider from the latest snapshot of each bucket.

        Args:
            subject_id: Optional filter for one subject

        Returns:
            Provider id -> {"tokens", "cost", "requests"}
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT provider_id, SUM(tokens), SUM(cost), SUM(requests)
                FROM usage_snapshot s
                WHERE captured_at = (
                    SELECT MAX(captured_at) FROM usage_snapshot t
                    WHERE t.provider_id = s.provider_id
                      AND t.period = s.period
                      AND t.subject_id IS s.subject_id
                )
            """
            params = []
            if subject_id is not None:
                query += " AND subject_id = ?"
                params.append(subject_id)
            query += " GROUP BY provider_id ORDER BY provider_id"

            cursor = conn.execute(query, params)
            return {
                row[0]: {
                    "tokens": row[1] or 0,
                    "cost": float(row[2] or 0),
                    "requests": row[3] or 0,
                }
                for row in cursor.fetchall()
            }
        finally:
            conn.close()


def get_repository(db_path: str = DEFAULT_DB_PATH) -> UsageRepository:
    """Get a repository instance for a database file."""
    return UsageRepository(db_path)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the usage_snapshot table if it doesn't exist.

    Snapshots are append-only; rows are never updated or deleted.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS usage_snapshot (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                captured_at TEXT NOT NULL,
                provider_id TEXT NOT NULL,
                subject_id TEXT,
                period TEXT NOT NULL,
                tokens INTEGER NOT NULL,
                cost REAL NOT NULL,
                requests INTEGER NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


def snapshots_from_records(
    records: Iterable[UsageRecord],
    captured_at: Optional[datetime] = None,
) -> List[UsageSnapshot]:
    """Freeze cost tracker buckets into snapshots sharing one timestamp."""
    captured_at = captured_at or datetime.now()
    return [
        UsageSnapshot(
            captured_at=captured_at,
            provider_id=r.provider_id,
            subject_id=r.subject_id,
            period=r.timestamp_bucket,
            tokens=r.tokens,
            cost=float(r.cost),
            requests=r.requests,
        )
        for r in records
    ]


def insert_usage_snapshots(snapshots: List[UsageSnapshot], db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert snapshots atomically.

    All snapshots are inserted in a single transaction so a partial snapshot
    never becomes the latest one for a bucket.

    Args:
        snapshots: Snapshots to record
        db_path: Path to SQLite database file
    """
    if not snapshots:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        conn.executemany(
            f"INSERT INTO usage_snapshot ({_SNAPSHOT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    s.captured_at.isoformat(),
                    s.provider_id,
                    s.subject_id,
                    s.period,
                    s.tokens,
                    s.cost,
                    s.requests,
                )
                for s in snapshots
            ],
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_recent_snapshots(
    provider_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageSnapshot]:
    """Fetch recent snapshots, newest first.

    Args:
        provider_id: Optional filter for one provider
        limit: Maximum number of snapshots to return
        db_path: Path to SQLite database file

    Returns:
        List of snapshots ordered by capture time (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_SNAPSHOT_COLUMNS} FROM usage_snapshot"
        params = []
        if provider_id:
            query += " WHERE provider_id = ?"
            params.append(provider_id)
        query += " ORDER BY captured_at DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [
            UsageSnapshot(
                captured_at=datetime.fromisoformat(row[0]),
                provider_id=row[1],
                subject_id=row[2],
                period=row[3],
                tokens=row[4],
                cost=row[5],
                requests=row[6],
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()
