"""
Repository pattern for data access.

SQL for the quota table and the usage ledger. Every mutation runs inside
a write transaction, which is the atomic primitive the engine relies on:
read-modify-write sequences (increment, conditional increment,
find-or-create-then-add) cannot lose updates under concurrent writers.

Amounts are stored as decimal text and parsed back exactly, so neither
rounding nor float arithmetic touches them.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from ..core.errors import StorageFailure
from .db import DEFAULT_DB_PATH, get_connection, write_transaction
from .models import Quota, UsageRecord, UsageStatistic

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")

_QUOTA_COLUMNS = (
    "id, subject_type, subject_id, feature, limit_value, used, "
    "reset_at, created_at, updated_at"
)
_USAGE_COLUMNS = (
    "id, subject_type, subject_id, feature, used, period_start, "
    "period_end, created_at, updated_at, metadata"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _quota_from_row(row: Tuple) -> Quota:
    return Quota(
        id=row[0],
        subject_type=row[1],
        subject_id=row[2],
        feature=row[3],
        limit=_decimal(row[4]),
        used=_decimal(row[5]),
        reset_at=_parse_ts(row[6]),
        created_at=_parse_ts(row[7]),
        updated_at=_parse_ts(row[8])
    )


def _usage_from_row(row: Tuple) -> UsageRecord:
    return UsageRecord(
        id=row[0],
        subject_type=row[1],
        subject_id=row[2],
        feature=row[3],
        used=_decimal(row[4]),
        period_start=_parse_ts(row[5]),
        period_end=_parse_ts(row[6]),
        created_at=_parse_ts(row[7]),
        updated_at=_parse_ts(row[8]),
        metadata=json.loads(row[9]) if row[9] else {}
    )


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        logger.error("Storage failure while trying to %s: %s", action, e)
        raise StorageFailure(f"Failed to {action}: {e}") from e


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the quota and usage tables if they don't exist.

    Quotas are unique per (subject_type, subject_id, feature). Usage rows
    are not unique per period: only aggregating features keep a single
    row per period, enforced by the write lock rather than a constraint.

    Args:
        db_path: Path to SQLite database file
    """
    with _storage_errors("initialize schema"):
        conn = get_connection(db_path)
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS quotas (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subject_type TEXT NOT NULL,
                    subject_id TEXT NOT NULL,
                    feature TEXT NOT NULL,
                    limit_value TEXT,
                    used TEXT NOT NULL DEFAULT '0',
                    reset_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (subject_type, subject_id, feature)
                );

                CREATE TABLE IF NOT EXISTS usages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    subject_type TEXT NOT NULL,
                    subject_id TEXT NOT NULL,
                    feature TEXT NOT NULL,
                    used TEXT NOT NULL DEFAULT '0',
                    period_start TEXT NOT NULL,
                    period_end TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    metadata TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_usages_subject_feature_period
                    ON usages (subject_type, subject_id, feature, period_start);
            """)
            conn.commit()
        finally:
            conn.close()


class QuotaRepository:
    """Persistence for per-(subject, feature) quota rows."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def _select(self, conn: sqlite3.Connection, where: str, params: Tuple) -> List[Quota]:
        cursor = conn.execute(f"SELECT {_QUOTA_COLUMNS} FROM quotas WHERE {where}", params)
        return [_quota_from_row(row) for row in cursor.fetchall()]

    def _by_id(self, conn: sqlite3.Connection, quota_id: int) -> Quota:
        rows = self._select(conn, "id = ?", (quota_id,))
        if not rows:
            raise StorageFailure(f"Quota {quota_id} disappeared during update")
        return rows[0]

    def find(self, subject_type: str, subject_id: str, feature: str) -> Optional[Quota]:
        with _storage_errors("read quota"):
            conn = get_connection(self.db_path)
            try:
                rows = self._select(
                    conn,
                    "subject_type = ? AND subject_id = ? AND feature = ?",
                    (subject_type, subject_id, feature)
                )
                return rows[0] if rows else None
            finally:
                conn.close()

    def for_subject(self, subject_type: str, subject_id: str) -> List[Quota]:
        with _storage_errors("read quotas"):
            conn = get_connection(self.db_path)
            try:
                return self._select(
                    conn,
                    "subject_type = ? AND subject_id = ? ORDER BY feature",
                    (subject_type, subject_id)
                )
            finally:
                conn.close()

    def find_or_create(
        self,
        subject_type: str,
        subject_id: str,
        feature: str,
        limit: Optional[Decimal],
        reset_at: Optional[datetime],
        now: datetime
    ) -> Quota:
        """Return the quota row, inserting it with ``used = 0`` if absent."""
        with _storage_errors("create quota"), write_transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO quotas
                (subject_type, subject_id, feature, limit_value, used,
                 reset_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (subject_type, subject_id, feature, limit, _ts(reset_at), _ts(now), _ts(now))
            )
            return self._select(
                conn,
                "subject_type = ? AND subject_id = ? AND feature = ?",
                (subject_type, subject_id, feature)
            )[0]

    def increment(self, quota_id: int, amount: Decimal, now: datetime) -> Quota:
        with _storage_errors("increment quota"), write_transaction(self.db_path) as conn:
            quota = self._by_id(conn, quota_id)
            conn.execute(
                "UPDATE quotas SET used = ?, updated_at = ? WHERE id = ?",
                (quota.used + amount, _ts(now), quota_id)
            )
            return self._by_id(conn, quota_id)

    def increment_within(
        self,
        quota_id: int,
        amount: Decimal,
        ceiling: Optional[Decimal],
        now: datetime
    ) -> Optional[Quota]:
        """Add ``amount`` only if the result stays at or below ``ceiling``.

        A ceiling of None means unlimited.

        Returns:
            The updated quota, or None if the increment was refused
        """
        with _storage_errors("increment quota"), write_transaction(self.db_path) as conn:
            quota = self._by_id(conn, quota_id)
            if ceiling is not None and quota.used + amount > ceiling:
                return None
            conn.execute(
                "UPDATE quotas SET used = ?, updated_at = ? WHERE id = ?",
                (quota.used + amount, _ts(now), quota_id)
            )
            return self._by_id(conn, quota_id)

    def decrement(self, quota_id: int, amount: Decimal, now: datetime) -> Quota:
        """Subtract ``amount``, clamping ``used`` at zero."""
        with _storage_errors("decrement quota"), write_transaction(self.db_path) as conn:
            quota = self._by_id(conn, quota_id)
            conn.execute(
                "UPDATE quotas SET used = ?, updated_at = ? WHERE id = ?",
                (max(_ZERO, quota.used - amount), _ts(now), quota_id)
            )
            return self._by_id(conn, quota_id)

    def reset(self, quota_id: int, reset_at: Optional[datetime], now: datetime) -> Quota:
        with _storage_errors("reset quota"), write_transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE quotas SET used = 0, reset_at = ?, updated_at = ? WHERE id = ?",
                (_ts(reset_at), _ts(now), quota_id)
            )
            return self._by_id(conn, quota_id)

    def reset_if_due(
        self,
        quota_id: int,
        due_at: datetime,
        reset_at: Optional[datetime],
        now: datetime
    ) -> Quota:
        """Reset the row only if its ``reset_at`` still equals ``due_at``.

        Concurrent lazy resets of the same row therefore apply once.
        """
        with _storage_errors("reset quota"), write_transaction(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE quotas SET used = 0, reset_at = ?, updated_at = ?
                WHERE id = ? AND reset_at = ?
                """,
                (_ts(reset_at), _ts(now), quota_id, _ts(due_at))
            )
            if cursor.rowcount:
                logger.info("Quota %s reset, next reset at %s", quota_id, reset_at)
            return self._by_id(conn, quota_id)

    def reset_many(self, resets: List[Tuple[int, Optional[datetime]]], now: datetime) -> int:
        """Reset several rows in one transaction.

        Args:
            resets: (quota id, new reset_at) pairs

        Returns:
            Number of rows reset
        """
        if not resets:
            return 0
        with _storage_errors("reset quotas"), write_transaction(self.db_path) as conn:
            for quota_id, reset_at in resets:
                conn.execute(
                    "UPDATE quotas SET used = 0, reset_at = ?, updated_at = ? WHERE id = ?",
                    (_ts(reset_at), _ts(now), quota_id)
                )
            return len(resets)

    def set_limit(self, quota_id: int, limit: Optional[Decimal], now: datetime) -> Quota:
        with _storage_errors("update quota limit"), write_transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE quotas SET limit_value = ?, updated_at = ? WHERE id = ?",
                (limit, _ts(now), quota_id)
            )
            return self._by_id(conn, quota_id)

    def increase_limit(self, quota_id: int, amount: Decimal, now: datetime) -> Quota:
        """Raise a finite limit by ``amount``; unlimited rows are left as they are."""
        with _storage_errors("increase quota limit"), write_transaction(self.db_path) as conn:
            quota = self._by_id(conn, quota_id)
            if quota.limit is None:
                return quota
            conn.execute(
                "UPDATE quotas SET limit_value = ?, updated_at = ? WHERE id = ?",
                (quota.limit + amount, _ts(now), quota_id)
            )
            return self._by_id(conn, quota_id)

    def delete(self, subject_type: str, subject_id: str, feature: str) -> bool:
        with _storage_errors("delete quota"), write_transaction(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM quotas WHERE subject_type = ? AND subject_id = ? AND feature = ?",
                (subject_type, subject_id, feature)
            )
            return cursor.rowcount > 0


class UsageRepository:
    """Persistence for the usage ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(
        self,
        subject_type: str,
        subject_id: str,
        feature: str,
        amount: Decimal,
        period_start: datetime,
        period_end: datetime,
        metadata: Optional[Dict[str, Any]],
        at: datetime
    ) -> UsageRecord:
        """Append a new ledger row."""
        with _storage_errors("record usage"), write_transaction(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO usages
                (subject_type, subject_id, feature, used, period_start,
                 period_end, created_at, updated_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    subject_type, subject_id, feature, amount,
                    _ts(period_start), _ts(period_end), _ts(at), _ts(at),
                    json.dumps(metadata) if metadata else None
                )
            )
            return self._by_id(conn, cursor.lastrowid)

    def add_to_period(
        self,
        subject_type: str,
        subject_id: str,
        feature: str,
        amount: Decimal,
        period_start: datetime,
        period_end: datetime,
        metadata: Optional[Dict[str, Any]],
        merge_metadata: bool,
        at: datetime
    ) -> UsageRecord:
        """Add ``amount`` to the period's row, creating it if needed.

        The lookup and the write share one write transaction, so two
        concurrent calls for the same period neither duplicate the row nor
        lose an increment.
        """
        with _storage_errors("aggregate usage"), write_transaction(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT id, used, metadata FROM usages
                WHERE subject_type = ? AND subject_id = ? AND feature = ?
                  AND period_start = ? AND period_end = ?
                ORDER BY id LIMIT 1
                """,
                (subject_type, subject_id, feature, _ts(period_start), _ts(period_end))
            ).fetchone()

            if row is None:
                cursor = conn.execute(
                    """
                    INSERT INTO usages
                    (subject_type, subject_id, feature, used, period_start,
                     period_end, created_at, updated_at, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        subject_type, subject_id, feature, amount,
                        _ts(period_start), _ts(period_end), _ts(at), _ts(at),
                        json.dumps(metadata) if metadata else None
                    )
                )
                return self._by_id(conn, cursor.lastrowid)

            usage_id, used, stored = row
            merged = json.loads(stored) if stored else {}
            if metadata and merge_metadata:
                merged.update(metadata)
            conn.execute(
                "UPDATE usages SET used = ?, metadata = ?, updated_at = ? WHERE id = ?",
                (
                    _decimal(used) + amount,
                    json.dumps(merged) if merged else None,
                    _ts(at),
                    usage_id
                )
            )
            return self._by_id(conn, usage_id)

    def _by_id(self, conn: sqlite3.Connection, usage_id: int) -> UsageRecord:
        row = conn.execute(
            f"SELECT {_USAGE_COLUMNS} FROM usages WHERE id = ?", (usage_id,)
        ).fetchone()
        return _usage_from_row(row)

    def total(
        self,
        subject_type: str,
        subject_id: str,
        feature: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Decimal:
        """Sum ``used`` over rows whose period overlaps [start, end].

        Amounts are summed as Decimal; SQL ``SUM`` would coerce the stored
        text to floating point.
        """
        query = """
            SELECT used FROM usages
            WHERE subject_type = ? AND subject_id = ? AND feature = ?
        """
        params: List[Any] = [subject_type, subject_id, feature]
        if start is not None:
            query += " AND period_end >= ?"
            params.append(_ts(start))
        if end is not None:
            query += " AND period_start <= ?"
            params.append(_ts(end))

        with _storage_errors("sum usage"):
            conn = get_connection(self.db_path)
            try:
                return sum((_decimal(row[0]) for row in conn.execute(query, params)), _ZERO)
            finally:
                conn.close()

    def history(
        self,
        subject_type: str,
        subject_id: str,
        feature: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[UsageRecord]:
        """Ledger rows for a subject, newest first."""
        query = f"SELECT {_USAGE_COLUMNS} FROM usages WHERE subject_type = ? AND subject_id = ?"
        params: List[Any] = [subject_type, subject_id]
        if feature:
            query += " AND feature = ?"
            params.append(feature)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with _storage_errors("read usage history"):
            conn = get_connection(self.db_path)
            try:
                return [_usage_from_row(row) for row in conn.execute(query, params).fetchall()]
            finally:
                conn.close()

    def delete(
        self,
        subject_type: str,
        subject_id: str,
        feature: str,
        period_start: Optional[datetime] = None
    ) -> int:
        query = "DELETE FROM usages WHERE subject_type = ? AND subject_id = ? AND feature = ?"
        params: List[Any] = [subject_type, subject_id, feature]
        if period_start is not None:
            query += " AND period_start = ?"
            params.append(_ts(period_start))

        with _storage_errors("delete usage"), write_transaction(self.db_path) as conn:
            return conn.execute(query, params).rowcount

    def statistics(
        self,
        subject_type: str,
        subject_id: str,
        feature: str,
        start: datetime,
        end: datetime,
        bucket_label: Callable[[datetime], str]
    ) -> List[UsageStatistic]:
        """Aggregate rows created within [start, end] per bucket.

        Args:
            bucket_label: Maps a row's ``created_at`` to its bucket label

        Returns:
            One UsageStatistic per bucket, ordered by label
        """
        query = """
            SELECT created_at, used FROM usages
            WHERE subject_type = ? AND subject_id = ? AND feature = ?
              AND created_at BETWEEN ? AND ?
            ORDER BY created_at
        """
        params = (subject_type, subject_id, feature, _ts(start), _ts(end))

        with _storage_errors("compute usage statistics"):
            conn = get_connection(self.db_path)
            try:
                rows = conn.execute(query, params).fetchall()
            finally:
                conn.close()

        buckets: Dict[str, List[Decimal]] = {}
        for created_at, used in rows:
            buckets.setdefault(bucket_label(_parse_ts(created_at)), []).append(_decimal(used))

        return [
            UsageStatistic(
                period=label,
                total=sum(amounts, _ZERO),
                count=len(amounts),
                average=sum(amounts, _ZERO) / len(amounts),
                maximum=max(amounts),
                minimum=min(amounts)
            )
            for label, amounts in sorted(buckets.items())
        ]
