"""
Repository pattern for data access.

Handles the append-only usage ledger, per-user quota state and the
registered-user mirror used by analytics.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, DEFAULT_TIMEOUT_SECONDS, check_db_path, get_connection
from .models import CoachType, QuotaState, RegisteredUser, UsageEvent, to_utc

SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS usage_event (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        coach_type TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL,
        completion_tokens INTEGER NOT NULL,
        total_tokens INTEGER NOT NULL,
        cost_cents INTEGER NOT NULL DEFAULT 0,
        model TEXT NOT NULL,
        conversation_id INTEGER,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_usage_event_user_created
        ON usage_event(user_id, created_at);

    CREATE TRIGGER IF NOT EXISTS usage_event_no_update
        BEFORE UPDATE ON usage_event
    BEGIN
        SELECT RAISE(ABORT, 'usage_event is append-only');
    END;

    CREATE TRIGGER IF NOT EXISTS usage_event_no_delete
        BEFORE DELETE ON usage_event
    BEGIN
        SELECT RAISE(ABORT, 'usage_event is append-only');
    END;

    CREATE TABLE IF NOT EXISTS quota_state (
        user_id INTEGER PRIMARY KEY,
        monthly_quota INTEGER NOT NULL,
        current_usage INTEGER NOT NULL DEFAULT 0,
        last_reset_date TEXT NOT NULL,
        quota_reset_day INTEGER NOT NULL DEFAULT 1,
        is_active INTEGER NOT NULL DEFAULT 1,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS registered_user (
        user_id INTEGER PRIMARY KEY,
        username TEXT NOT NULL,
        created_at TEXT NOT NULL
    );
"""

# strftime patterns keyed by period name; zero-padded so labels sort chronologically
PERIOD_FORMATS = {
    "day": "%Y-%m-%d",
    "week": "%Y-W%W",
    "month": "%Y-%m",
}

_EVENT_COLUMNS = """
    id, user_id, coach_type, prompt_tokens, completion_tokens,
    total_tokens, cost_cents, model, conversation_id, created_at
"""


def _ts(value: datetime) -> str:
    """Serialize a timestamp so stored values compare correctly as text."""
    return to_utc(value).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return to_utc(datetime.fromisoformat(value)) if value else None


def initialize_schema(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> None:
    """Create the metering tables if they don't exist.

    The usage_event table is an append-only ledger: triggers abort any
    UPDATE or DELETE against it.

    Args:
        db_path: Path to SQLite database file
        timeout: Busy timeout in seconds
    """
    conn = get_connection(db_path, timeout)
    try:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    finally:
        conn.close()


class UsageRepository:
    """Repository for the usage ledger and quota state.

    Every call opens its own connection, so one instance can be shared by
    concurrent request handlers. Storage errors surface as ``sqlite3.Error``.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        timeout: float = DEFAULT_TIMEOUT_SECONDS
    ):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Busy timeout in seconds
        """
        self.db_path = check_db_path(db_path)
        self.timeout = timeout

    def _connect(self):
        return get_connection(self.db_path, self.timeout)

    def initialize_schema(self) -> None:
        initialize_schema(self.db_path, self.timeout)

    # Ledger

    def append_event(self, event: UsageEvent) -> UsageEvent:
        """Insert a single usage event into the append-only ledger.

        Args:
            event: The usage event to record

        Returns:
            The same event carrying its assigned ledger id
        """
        conn = self._connect()
        try:
            cursor = conn.execute("""
                INSERT INTO usage_event
                (user_id, coach_type, prompt_tokens, completion_tokens,
                 total_tokens, cost_cents, model, conversation_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                event.user_id,
                event.coach_type.value,
                event.prompt_tokens,
                event.completion_tokens,
                event.total_tokens,
                event.cost_cents,
                event.model,
                event.conversation_id,
                _ts(event.created_at)
            ))
            conn.commit()
            event_id = cursor.lastrowid
        finally:
            conn.close()

        return UsageEvent(
            user_id=event.user_id,
            coach_type=event.coach_type,
            prompt_tokens=event.prompt_tokens,
            completion_tokens=event.completion_tokens,
            total_tokens=event.total_tokens,
            cost_cents=event.cost_cents,
            model=event.model,
            created_at=event.created_at,
            conversation_id=event.conversation_id,
            id=event_id
        )

    def fetch_events(
        self,
        user_id: Optional[int] = None,
        limit: int = 100
    ) -> List[UsageEvent]:
        """Fetch recent usage events, newest first.

        Args:
            user_id: Optional filter for a single user
            limit: Maximum number of events to return

        Returns:
            List of usage events ordered by created_at (newest first)
        """
        conn = self._connect()
        try:
            query = f"SELECT {_EVENT_COLUMNS} FROM usage_event"
            params: List[Any] = []
            if user_id is not None:
                query += " WHERE user_id = ?"
                params.append(user_id)
            query += " ORDER BY created_at DESC, id DESC LIMIT ?"
            params.append(limit)

            return [self._row_to_event(row) for row in conn.execute(query, params)]
        finally:
            conn.close()

    def sum_tokens_between(self, user_id: int, start: datetime, end: datetime) -> int:
        """Sum total_tokens for a user with created_at in [start, end)."""
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT COALESCE(SUM(total_tokens), 0)
                FROM usage_event
                WHERE user_id = ? AND created_at >= ? AND created_at < ?
            """, (user_id, _ts(start), _ts(end))).fetchone()
            return int(row[0])
        finally:
            conn.close()

    @staticmethod
    def _row_to_event(row) -> UsageEvent:
        return UsageEvent(
            id=row[0],
            user_id=row[1],
            coach_type=CoachType.parse(row[2]),
            prompt_tokens=row[3],
            completion_tokens=row[4],
            total_tokens=row[5],
            cost_cents=row[6],
            model=row[7],
            conversation_id=row[8],
            created_at=_parse_ts(row[9])
        )

    # Quota state

    def get_quota_state(self, user_id: int) -> Optional[QuotaState]:
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT user_id, monthly_quota, current_usage, last_reset_date,
                       quota_reset_day, is_active, updated_at
                FROM quota_state
                WHERE user_id = ?
            """, (user_id,)).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return QuotaState(
            user_id=row[0],
            monthly_quota=row[1],
            current_usage=row[2],
            last_reset_date=_parse_ts(row[3]),
            quota_reset_day=row[4],
            is_active=bool(row[5]),
            updated_at=_parse_ts(row[6])
        )

    def ensure_quota_state(
        self,
        user_id: int,
        monthly_quota: int,
        quota_reset_day: int,
        now: datetime
    ) -> QuotaState:
        """Return the user's quota state, creating it with defaults if absent.

        Concurrent creators are safe: the first insert wins and the rest
        are ignored.
        """
        conn = self._connect()
        try:
            conn.execute("""
                INSERT OR IGNORE INTO quota_state
                (user_id, monthly_quota, current_usage, last_reset_date,
                 quota_reset_day, is_active, updated_at)
                VALUES (?, ?, 0, ?, ?, 1, ?)
            """, (user_id, monthly_quota, _ts(now), quota_reset_day, _ts(now)))
            conn.commit()
        finally:
            conn.close()

        return self.get_quota_state(user_id)

    def increment_usage(self, user_id: int, tokens: int, now: datetime) -> None:
        """Atomically add tokens to the user's running usage."""
        conn = self._connect()
        try:
            conn.execute("""
                UPDATE quota_state
                SET current_usage = current_usage + ?, updated_at = ?
                WHERE user_id = ?
            """, (tokens, _ts(now), user_id))
            conn.commit()
        finally:
            conn.close()

    def reset_usage_if_unchanged(
        self,
        user_id: int,
        tokens: int,
        observed_reset_date: datetime,
        now: datetime
    ) -> bool:
        """Start a new quota cycle at ``tokens``.

        The update only applies while last_reset_date still holds the value
        the caller read, so only one concurrent writer can reset a cycle.

        Returns:
            True if this call performed the reset
        """
        conn = self._connect()
        try:
            cursor = conn.execute("""
                UPDATE quota_state
                SET current_usage = ?, last_reset_date = ?, updated_at = ?
                WHERE user_id = ? AND last_reset_date = ?
            """, (tokens, _ts(now), _ts(now), user_id, _ts(observed_reset_date)))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def set_monthly_quota(
        self,
        user_id: int,
        monthly_quota: int,
        quota_reset_day: int,
        now: datetime
    ) -> None:
        """Overwrite the user's monthly quota, creating the row if absent."""
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO quota_state
                (user_id, monthly_quota, current_usage, last_reset_date,
                 quota_reset_day, is_active, updated_at)
                VALUES (?, ?, 0, ?, ?, 1, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    monthly_quota = excluded.monthly_quota,
                    updated_at = excluded.updated_at
            """, (user_id, monthly_quota, _ts(now), quota_reset_day, _ts(now)))
            conn.commit()
        finally:
            conn.close()

    # Registered users

    def register_user(self, user_id: int, username: str, now: datetime) -> RegisteredUser:
        """Insert or rename a user in the registered-user mirror."""
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO registered_user (user_id, username, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET username = excluded.username
            """, (user_id, username, _ts(now)))
            conn.commit()
            row = conn.execute(
                "SELECT user_id, username, created_at FROM registered_user WHERE user_id = ?",
                (user_id,)
            ).fetchone()
        finally:
            conn.close()

        return RegisteredUser(user_id=row[0], username=row[1], created_at=_parse_ts(row[2]))

    def count_registered_users(self) -> int:
        conn = self._connect()
        try:
            return int(conn.execute("SELECT COUNT(*) FROM registered_user").fetchone()[0])
        finally:
            conn.close()

    # Aggregates

    def get_user_aggregates(
        self,
        day_start: datetime,
        day_end: datetime,
        month_start: datetime,
        month_end: datetime,
        user_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Per-user ledger totals joined with quota state.

        Known users are registered users plus anyone with ledger events or a
        quota row. ``monthly_quota`` and ``current_usage`` are None when the
        user has no quota row yet.

        Returns:
            One dictionary per user, ordered by user_id
        """
        query = """
            WITH known AS (
                SELECT user_id FROM registered_user
                UNION SELECT user_id FROM usage_event
                UNION SELECT user_id FROM quota_state
            )
            SELECT
                k.user_id,
                r.username,
                COALESCE(SUM(e.total_tokens), 0),
                COALESCE(SUM(CASE WHEN e.created_at >= ? AND e.created_at < ?
                                  THEN e.total_tokens ELSE 0 END), 0),
                COALESCE(SUM(CASE WHEN e.created_at >= ? AND e.created_at < ?
                                  THEN e.total_tokens ELSE 0 END), 0),
                COALESCE(SUM(e.cost_cents), 0),
                q.monthly_quota,
                q.current_usage,
                MAX(e.created_at)
            FROM known k
            LEFT JOIN registered_user r ON r.user_id = k.user_id
            LEFT JOIN quota_state q ON q.user_id = k.user_id
            LEFT JOIN usage_event e ON e.user_id = k.user_id
        """
        params: List[Any] = [_ts(day_start), _ts(day_end), _ts(month_start), _ts(month_end)]
        if user_id is not None:
            query += " WHERE k.user_id = ?"
            params.append(user_id)
        query += """
            GROUP BY k.user_id, r.username, q.monthly_quota, q.current_usage
            ORDER BY k.user_id
        """

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        return [
            {
                "user_id": row[0],
                "username": row[1],
                "total_tokens": int(row[2]),
                "tokens_today": int(row[3]),
                "tokens_this_month": int(row[4]),
                "total_cost_cents": int(row[5]),
                "monthly_quota": row[6],
                "current_usage": row[7],
                "last_usage": _parse_ts(row[8]),
            }
            for row in rows
        ]

    def get_usage_by_period(
        self,
        period: str,
        user_id: Optional[int] = None,
        since: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Ledger totals bucketed by UTC day, week or month.

        Args:
            period: One of the keys of PERIOD_FORMATS
            user_id: Optional filter for a single user
            since: Only count events created at or after this time

        Returns:
            One dictionary per non-empty bucket, oldest bucket first
        """
        if period not in PERIOD_FORMATS:
            raise ValueError(f"Unsupported period: {period}")
        bucket = f"strftime('{PERIOD_FORMATS[period]}', created_at)"

        query = f"""
            SELECT {bucket} AS bucket, SUM(total_tokens), SUM(cost_cents)
            FROM usage_event
        """
        conditions = []
        params: List[Any] = []
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(_ts(since))
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " GROUP BY bucket ORDER BY bucket"

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        return [
            {"date": row[0], "tokens": int(row[1]), "cost_cents": int(row[2])}
            for row in rows
        ]

    def get_ledger_totals(self) -> Dict[str, int]:
        """Global token and cost sums plus distinct users in the ledger."""
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT
                    COALESCE(SUM(total_tokens), 0),
                    COALESCE(SUM(cost_cents), 0),
                    COUNT(DISTINCT user_id)
                FROM usage_event
            """).fetchone()
        finally:
            conn.close()

        return {
            "total_tokens": int(row[0]),
            "total_cost_cents": int(row[1]),
            "active_users": int(row[2]),
        }
