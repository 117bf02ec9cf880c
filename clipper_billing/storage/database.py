"""
Billing store: subscriptions, usage counters and the usage audit trail.

SQLite (WAL mode) implementation of the storage contract the quota and
reconciliation services rely on. The same contract can be met by Postgres
functions or a separate service; what matters is:

- Counter updates are single SQL statements (counter = counter + ?), never a
  read-modify-write in Python, so concurrent increments cannot be lost
- The quota ceiling is checked in the same UPDATE that increments
- Every mutating operation is one BEGIN IMMEDIATE transaction, so the
  counter, its audit event and its idempotency key commit together
- Reads never create rows

Connections are per thread. Writers are serialized by SQLite itself.
"""

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from clipper_billing.errors import (
    IdempotencyConflict,
    StorageUnavailableError,
    UnknownSubscriptionReference,
)
from clipper_billing.models.billing_event import BillingEventFailure, ReconcileOutcome
from clipper_billing.models.subscription import (
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)
from clipper_billing.models.usage import (
    CHARGE_EVENT_TYPES,
    UsageEvent,
    UsageEventCreate,
    UsageEventType,
    UsageFeature,
    UsageRecord,
    period_bounds,
    period_for,
)

logger = logging.getLogger(__name__)


def _in(values) -> str:
    """SQL IN list for a closed enum (constants only, never user input)."""
    return ", ".join(f"'{v.value}'" for v in values)


def _iso(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO 8601 so stored timestamps sort lexicographically."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


_SUBSCRIPTION_COLUMNS = (
    "id",
    "user_id",
    "tier",
    "status",
    "stripe_customer_id",
    "stripe_subscription_id",
    "stripe_price_id",
    "current_period_start",
    "current_period_end",
    "trial_end",
    "cancel_at_period_end",
    "cancel_at",
    "canceled_at",
    "is_grace_period",
    "grace_period_ends_at",
    "last_billing_event_at",
    "created_at",
    "updated_at",
)

# Columns an upsert may overwrite (identity and creation time are fixed)
_SUBSCRIPTION_MUTABLE = tuple(
    c for c in _SUBSCRIPTION_COLUMNS if c not in {"id", "user_id", "created_at"}
)


@dataclass
class ChargeApplication:
    """Outcome of BillingDatabase.charge_usage."""

    allowed: bool
    replayed: bool = False
    record: UsageRecord | None = None
    event: UsageEvent | None = None
    stored_result: dict[str, Any] | None = None


@dataclass
class BillingEventApplication:
    """Outcome of BillingDatabase.apply_billing_event."""

    outcome: ReconcileOutcome
    previous: Subscription | None = None
    current: Subscription | None = None
    usage_event: UsageEvent | None = None


# transition(current) -> (new state, optional audit event), or None to ignore the event
SubscriptionTransition = Callable[
    [Subscription], tuple[Subscription, UsageEventCreate | None] | None
]


class BillingDatabase:
    """
    Transactional billing store.

    One instance is created at application startup and injected into every
    service; close() is called at shutdown.
    """

    def __init__(self, db_path: str = "./data/billing.db", busy_timeout_seconds: float = 5.0):
        """
        Initialize billing database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_seconds: How long a writer waits for the lock
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_seconds = busy_timeout_seconds

        # One connection per thread, created lazily
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._registry_lock = threading.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing billing database at {self.db_path}")

        with self._storage_errors("initialize"):
            conn = self._get_connection()
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL UNIQUE,
                    tier TEXT NOT NULL DEFAULT 'FREE',
                    status TEXT NOT NULL DEFAULT 'active',
                    stripe_customer_id TEXT,
                    stripe_subscription_id TEXT,
                    stripe_price_id TEXT,
                    current_period_start TEXT,
                    current_period_end TEXT,
                    trial_end TEXT,
                    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
                    cancel_at TEXT,
                    canceled_at TEXT,
                    is_grace_period INTEGER NOT NULL DEFAULT 0,
                    grace_period_ends_at TEXT,
                    last_billing_event_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    CHECK (tier IN ({_in(SubscriptionTier)})),
                    CHECK (status IN ({_in(SubscriptionStatus)})),
                    CHECK (cancel_at_period_end IN (0, 1)),
                    CHECK (is_grace_period IN (0, 1)),
                    CHECK (tier != 'PREMIUM' OR stripe_subscription_id IS NOT NULL),
                    CHECK (
                        tier != 'GRACE_PERIOD'
                        OR (is_grace_period = 1 AND grace_period_ends_at IS NOT NULL)
                    )
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS usage_records (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    year INTEGER NOT NULL,
                    month INTEGER NOT NULL,
                    period_start TEXT NOT NULL,
                    period_end TEXT NOT NULL,
                    clips_count INTEGER NOT NULL DEFAULT 0,
                    files_count INTEGER NOT NULL DEFAULT 0,
                    focus_mode_minutes INTEGER NOT NULL DEFAULT 0,
                    compact_mode_minutes INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    UNIQUE (user_id, year, month),
                    CHECK (month BETWEEN 1 AND 12),
                    CHECK (clips_count >= 0),
                    CHECK (files_count >= 0),
                    CHECK (focus_mode_minutes >= 0),
                    CHECK (compact_mode_minutes >= 0)
                )
                """
            )

            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS usage_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    usage_record_id TEXT,
                    subscription_id TEXT,
                    event_type TEXT NOT NULL,
                    feature TEXT,
                    metadata TEXT NOT NULL DEFAULT '{{}}',
                    created_at TEXT NOT NULL,

                    CHECK (event_type IN ({_in(UsageEventType)})),
                    CHECK (feature IS NULL OR feature IN ({_in(UsageFeature)}))
                )
                """
            )

            # Audit trail is append-only
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS usage_events_no_update
                BEFORE UPDATE ON usage_events
                BEGIN
                    SELECT RAISE(ABORT, 'usage_events is append-only');
                END
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS usage_events_no_delete
                BEFORE DELETE ON usage_events
                BEGIN
                    SELECT RAISE(ABORT, 'usage_events is append-only');
                END
                """
            )

            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS processed_billing_events (
                    event_id TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    user_id TEXT,
                    processed_at TEXT NOT NULL,

                    CHECK (outcome IN ({_in(ReconcileOutcome)}))
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS billing_event_failures (
                    event_id TEXT PRIMARY KEY,
                    event_type TEXT NOT NULL,
                    error_type TEXT NOT NULL,
                    error_message TEXT NOT NULL,
                    user_id TEXT,
                    customer_id TEXT,
                    subscription_id TEXT,
                    attempt_count INTEGER NOT NULL DEFAULT 1,
                    payload TEXT NOT NULL DEFAULT '{}',
                    first_seen_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL,
                    resolved_at TEXT
                )
                """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS charge_idempotency_keys (
                    user_id TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    feature TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    result TEXT NOT NULL,
                    created_at TEXT NOT NULL,

                    PRIMARY KEY (user_id, idempotency_key)
                )
                """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_customer "
                "ON subscriptions(stripe_customer_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_stripe_sub "
                "ON subscriptions(stripe_subscription_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_grace "
                "ON subscriptions(tier, grace_period_ends_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_usage_events_user_created "
                "ON usage_events(user_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_failures_unresolved "
                "ON billing_event_failures(resolved_at)"
            )

        logger.info("Billing database initialized successfully")
        self._initialized = True

    # ------------------------------------------------------------------
    # Connection and transaction plumbing
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Get this thread's connection (creates if needed)."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_seconds,
                isolation_level=None,  # Explicit BEGIN/COMMIT only
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_seconds * 1000)}")
            self._local.conn = conn
            with self._registry_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _storage_errors(self, operation: str) -> Iterator[None]:
        """Translate sqlite errors into the billing error taxonomy."""
        try:
            yield
        except sqlite3.IntegrityError as e:
            logger.error(
                "Billing store rejected write",
                extra={"operation": operation, "error": str(e)},
            )
            raise ValueError(f"{operation} rejected by storage constraints: {e}") from e
        except sqlite3.Error as e:
            logger.error(
                "Billing store unavailable",
                extra={"operation": operation, "error": str(e)},
            )
            raise StorageUnavailableError(f"Billing store unavailable during {operation}") from e

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception."""
        with self._storage_errors(operation):
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    @contextmanager
    def _reading(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._storage_errors(operation):
            yield self._get_connection()

    async def ping(self) -> bool:
        """Check the store answers a trivial query."""
        with self._reading("ping") as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # ------------------------------------------------------------------
    # Usage records
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_usage_record(row: sqlite3.Row) -> UsageRecord:
        return UsageRecord(
            id=row["id"],
            user_id=row["user_id"],
            year=row["year"],
            month=row["month"],
            clips_count=row["clips_count"],
            files_count=row["files_count"],
            focus_mode_minutes=row["focus_mode_minutes"],
            compact_mode_minutes=row["compact_mode_minutes"],
            period_start=_parse(row["period_start"]),
            period_end=_parse(row["period_end"]),
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
        )

    def _fetch_usage_record(
        self, conn: sqlite3.Connection, user_id: str, year: int, month: int
    ) -> UsageRecord | None:
        row = conn.execute(
            "SELECT * FROM usage_records WHERE user_id = ? AND year = ? AND month = ?",
            (user_id, year, month),
        ).fetchone()
        return self._row_to_usage_record(row) if row else None

    def _ensure_usage_record(
        self, conn: sqlite3.Connection, user_id: str, year: int, month: int, now: datetime
    ) -> None:
        """Create the period row with zero counters if it does not exist yet."""
        period_start, period_end = period_bounds(year, month)
        conn.execute(
            """
            INSERT INTO usage_records (
                id, user_id, year, month, period_start, period_end, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id, year, month) DO NOTHING
            """,
            (
                str(uuid.uuid4()),
                user_id,
                year,
                month,
                _iso(period_start),
                _iso(period_end),
                _iso(now),
                _iso(now),
            ),
        )

    async def get_usage_record(self, user_id: str, year: int, month: int) -> UsageRecord | None:
        """
        Get usage counters for one period.

        Returns:
            UsageRecord or None if nothing was used in the period (no row is created)
        """
        with self._reading("get_usage_record") as conn:
            return self._fetch_usage_record(conn, user_id, year, month)

    async def increment_usage(
        self,
        user_id: str,
        feature: UsageFeature,
        amount: int,
        year: int,
        month: int,
        now: datetime | None = None,
    ) -> UsageRecord:
        """
        Add amount to a feature counter (atomic operation).

        Creates the period row if absent. Unconditional - no limit check.

        Returns:
            UsageRecord: Counters after the increment
        """
        column = UsageFeature(feature).counter_column
        now = now or datetime.now(UTC)

        with self._transaction("increment_usage") as conn:
            self._ensure_usage_record(conn, user_id, year, month, now)
            conn.execute(
                f"""
                UPDATE usage_records
                SET {column} = {column} + ?,
                    updated_at = ?
                WHERE user_id = ? AND year = ? AND month = ?
                """,
                (amount, _iso(now), user_id, year, month),
            )
            return self._fetch_usage_record(conn, user_id, year, month)

    async def charge_usage(
        self,
        user_id: str,
        feature: UsageFeature,
        amount: int,
        year: int,
        month: int,
        limit: int | None,
        *,
        tier: SubscriptionTier,
        subscription_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> ChargeApplication:
        """
        Charge usage against a ceiling in one transaction.

        Steps (all or nothing):
        1. Replay the stored result if idempotency_key was already used
        2. Create the period row if absent
        3. counter = counter + amount, only if the result stays <= limit
           (limit None = unlimited)
        4. Append the feature event on success or quota_exceeded on denial
        5. Store the idempotency key on success

        Raises:
            IdempotencyConflict: Key reused with a different feature or amount
            StorageUnavailableError: Store failed; nothing was charged
        """
        feature = UsageFeature(feature)
        column = feature.counter_column
        now = now or datetime.now(UTC)

        with self._transaction("charge_usage") as conn:
            if idempotency_key:
                existing = conn.execute(
                    """
                    SELECT feature, amount, result FROM charge_idempotency_keys
                    WHERE user_id = ? AND idempotency_key = ?
                    """,
                    (user_id, idempotency_key),
                ).fetchone()
                if existing:
                    if existing["feature"] != feature.value or existing["amount"] != amount:
                        raise IdempotencyConflict(
                            f"Idempotency key already used for {existing['amount']} "
                            f"{existing['feature']}"
                        )
                    return ChargeApplication(
                        allowed=True, replayed=True, stored_result=json.loads(existing["result"])
                    )

            self._ensure_usage_record(conn, user_id, year, month, now)

            cursor = conn.execute(
                f"""
                UPDATE usage_records
                SET {column} = {column} + ?,
                    updated_at = ?
                WHERE user_id = ? AND year = ? AND month = ?
                  AND (? IS NULL OR {column} + ? <= ?)
                """,
                (amount, _iso(now), user_id, year, month, limit, amount, limit),
            )
            allowed = cursor.rowcount == 1

            record = self._fetch_usage_record(conn, user_id, year, month)
            current_usage = record.count_for(feature)

            event = self._insert_usage_event(
                conn,
                UsageEventCreate(
                    user_id=user_id,
                    event_type=(
                        CHARGE_EVENT_TYPES[feature] if allowed else UsageEventType.QUOTA_EXCEEDED
                    ),
                    feature=feature,
                    usage_record_id=record.id,
                    subscription_id=subscription_id,
                    metadata={
                        **(metadata or {}),
                        "amount": amount,
                        "limit": limit,
                        "current_usage": current_usage,
                        "tier": SubscriptionTier(tier).value,
                    },
                ),
                now,
            )

            stored_result = None
            if allowed:
                stored_result = {
                    "feature": feature.value,
                    "tier": SubscriptionTier(tier).value,
                    "amount": amount,
                    "current_usage": current_usage,
                    "limit": limit,
                    "year": year,
                    "month": month,
                    "usage_record_id": record.id,
                }
                if idempotency_key:
                    conn.execute(
                        """
                        INSERT INTO charge_idempotency_keys (
                            user_id, idempotency_key, feature, amount, result, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            user_id,
                            idempotency_key,
                            feature.value,
                            amount,
                            json.dumps(stored_result),
                            _iso(now),
                        ),
                    )

            return ChargeApplication(
                allowed=allowed, record=record, event=event, stored_result=stored_result
            )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            user_id=row["user_id"],
            tier=row["tier"],
            status=row["status"],
            stripe_customer_id=row["stripe_customer_id"],
            stripe_subscription_id=row["stripe_subscription_id"],
            stripe_price_id=row["stripe_price_id"],
            current_period_start=_parse(row["current_period_start"]),
            current_period_end=_parse(row["current_period_end"]),
            trial_end=_parse(row["trial_end"]),
            cancel_at_period_end=bool(row["cancel_at_period_end"]),
            cancel_at=_parse(row["cancel_at"]),
            canceled_at=_parse(row["canceled_at"]),
            is_grace_period=bool(row["is_grace_period"]),
            grace_period_ends_at=_parse(row["grace_period_ends_at"]),
            last_billing_event_at=_parse(row["last_billing_event_at"]),
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
        )

    @staticmethod
    def _subscription_values(subscription: Subscription) -> dict[str, Any]:
        return {
            "id": subscription.id,
            "user_id": subscription.user_id,
            "tier": subscription.tier.value,
            "status": subscription.status.value,
            "stripe_customer_id": subscription.stripe_customer_id,
            "stripe_subscription_id": subscription.stripe_subscription_id,
            "stripe_price_id": subscription.stripe_price_id,
            "current_period_start": _iso(subscription.current_period_start),
            "current_period_end": _iso(subscription.current_period_end),
            "trial_end": _iso(subscription.trial_end),
            "cancel_at_period_end": 1 if subscription.cancel_at_period_end else 0,
            "cancel_at": _iso(subscription.cancel_at),
            "canceled_at": _iso(subscription.canceled_at),
            "is_grace_period": 1 if subscription.is_grace_period else 0,
            "grace_period_ends_at": _iso(subscription.grace_period_ends_at),
            "last_billing_event_at": _iso(subscription.last_billing_event_at),
            "created_at": _iso(subscription.created_at),
            "updated_at": _iso(subscription.updated_at),
        }

    def _fetch_subscription(self, conn: sqlite3.Connection, user_id: str) -> Subscription | None:
        row = conn.execute("SELECT * FROM subscriptions WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_subscription(row) if row else None

    def _find_subscription(
        self,
        conn: sqlite3.Connection,
        user_id: str | None,
        stripe_subscription_id: str | None,
        stripe_customer_id: str | None,
    ) -> Subscription | None:
        """Resolve by user_id, then provider subscription ID, then provider customer ID."""
        if user_id:
            found = self._fetch_subscription(conn, user_id)
            if found:
                return found

        if stripe_subscription_id:
            row = conn.execute(
                "SELECT * FROM subscriptions WHERE stripe_subscription_id = ?",
                (stripe_subscription_id,),
            ).fetchone()
            if row:
                return self._row_to_subscription(row)

        if stripe_customer_id:
            row = conn.execute(
                "SELECT * FROM subscriptions WHERE stripe_customer_id = ? "
                "ORDER BY updated_at DESC LIMIT 1",
                (stripe_customer_id,),
            ).fetchone()
            if row:
                return self._row_to_subscription(row)

        return None

    def _save_subscription(
        self, conn: sqlite3.Connection, subscription: Subscription, now: datetime
    ) -> Subscription:
        """Upsert keyed on user_id. Always sets updated_at."""
        if subscription.id is None:
            subscription = subscription.model_copy(
                update={"id": str(uuid.uuid4()), "created_at": now}
            )
        subscription = subscription.model_copy(update={"updated_at": now})

        values = self._subscription_values(subscription)
        columns = ", ".join(_SUBSCRIPTION_COLUMNS)
        placeholders = ", ".join("?" for _ in _SUBSCRIPTION_COLUMNS)
        assignments = ", ".join(f"{c} = excluded.{c}" for c in _SUBSCRIPTION_MUTABLE)

        conn.execute(
            f"""
            INSERT INTO subscriptions ({columns}) VALUES ({placeholders})
            ON CONFLICT (user_id) DO UPDATE SET {assignments}
            """,
            tuple(values[c] for c in _SUBSCRIPTION_COLUMNS),
        )
        return self._fetch_subscription(conn, subscription.user_id)

    async def get_subscription(self, user_id: str) -> Subscription | None:
        """Get the stored subscription for a user (None if no row)."""
        with self._reading("get_subscription") as conn:
            return self._fetch_subscription(conn, user_id)

    async def find_subscription(
        self,
        user_id: str | None = None,
        stripe_subscription_id: str | None = None,
        stripe_customer_id: str | None = None,
    ) -> Subscription | None:
        """Find a subscription by any of its stable identifiers."""
        with self._reading("find_subscription") as conn:
            return self._find_subscription(
                conn, user_id, stripe_subscription_id, stripe_customer_id
            )

    async def insert_default_subscription(
        self, user_id: str, now: datetime | None = None
    ) -> Subscription:
        """Create a FREE row for the user if none exists. Returns the stored row."""
        now = now or datetime.now(UTC)
        with self._transaction("insert_default_subscription") as conn:
            existing = self._fetch_subscription(conn, user_id)
            if existing:
                return existing
            return self._save_subscription(conn, Subscription.free_default(user_id), now)

    async def update_subscription(
        self,
        user_id: str,
        mutate: Callable[[Subscription], Subscription],
        now: datetime | None = None,
    ) -> Subscription:
        """
        Read, mutate and write a subscription in one transaction.

        mutate receives the stored row, or the FREE default when absent, and
        may raise to abort without writing.
        """
        now = now or datetime.now(UTC)
        with self._transaction("update_subscription") as conn:
            current = self._fetch_subscription(conn, user_id) or Subscription.free_default(
                user_id
            )
            return self._save_subscription(conn, mutate(current), now)

    async def set_cancel_at_period_end(
        self, user_id: str, cancel_at_period_end: bool, now: datetime | None = None
    ) -> Subscription | None:
        """
        Set only the cancel_at_period_end flag.

        Returns:
            Updated subscription, or None if the user has no stored row
        """
        now = now or datetime.now(UTC)
        with self._transaction("set_cancel_at_period_end") as conn:
            cursor = conn.execute(
                """
                UPDATE subscriptions
                SET cancel_at_period_end = ?,
                    updated_at = ?
                WHERE user_id = ?
                """,
                (1 if cancel_at_period_end else 0, _iso(now), user_id),
            )
            if cursor.rowcount == 0:
                return None
            return self._fetch_subscription(conn, user_id)

    async def list_expired_grace_periods(self, now: datetime) -> list[Subscription]:
        """Subscriptions still in GRACE_PERIOD whose window ended at or before now."""
        with self._reading("list_expired_grace_periods") as conn:
            rows = conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE tier = ? AND grace_period_ends_at <= ?
                ORDER BY grace_period_ends_at
                """,
                (SubscriptionTier.GRACE_PERIOD.value, _iso(now)),
            ).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    # ------------------------------------------------------------------
    # Billing events
    # ------------------------------------------------------------------

    def _mark_processed(
        self,
        conn: sqlite3.Connection,
        event_id: str,
        event_type: str,
        outcome: ReconcileOutcome,
        user_id: str | None,
        now: datetime,
    ) -> bool:
        cursor = conn.execute(
            """
            INSERT INTO processed_billing_events (event_id, event_type, outcome, user_id, processed_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (event_id) DO NOTHING
            """,
            (event_id, event_type, outcome.value, user_id, _iso(now)),
        )
        conn.execute(
            "UPDATE billing_event_failures SET resolved_at = ? "
            "WHERE event_id = ? AND resolved_at IS NULL",
            (_iso(now), event_id),
        )
        return cursor.rowcount == 1

    async def is_billing_event_processed(self, event_id: str) -> bool:
        with self._reading("is_billing_event_processed") as conn:
            row = conn.execute(
                "SELECT 1 FROM processed_billing_events WHERE event_id = ?", (event_id,)
            ).fetchone()
        return row is not None

    async def record_billing_event_outcome(
        self,
        event_id: str,
        event_type: str,
        outcome: ReconcileOutcome,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Mark an event processed without a state change (e.g. ignored types).

        Returns:
            bool: False if the event ID was already processed
        """
        now = now or datetime.now(UTC)
        with self._transaction("record_billing_event_outcome") as conn:
            return self._mark_processed(conn, event_id, event_type, outcome, user_id, now)

    async def apply_billing_event(
        self,
        event_id: str,
        event_type: str,
        occurred_at: datetime | None,
        transition: SubscriptionTransition,
        *,
        user_id: str | None = None,
        stripe_subscription_id: str | None = None,
        stripe_customer_id: str | None = None,
        advance_watermark: bool = True,
        now: datetime | None = None,
    ) -> BillingEventApplication:
        """
        Apply one billing event to a subscription in one transaction.

        - Already processed event ID: nothing written, DUPLICATE
        - Older than the last applied provider timestamp: marked STALE
        - transition(current) returns None: nothing written, marked IGNORED
        - Otherwise transition(current) is written with its audit event and
          the event ID is marked APPLIED

        A user_id with no row starts from the FREE default (first checkout).
        occurred_at None skips the ordering check and leaves
        last_billing_event_at untouched (locally generated transitions).
        advance_watermark False keeps the ordering check but leaves
        last_billing_event_at untouched (events carrying only references).

        Raises:
            UnknownSubscriptionReference: No row matches and no user_id given
            InvalidStateTransition: Raised by transition; nothing written
        """
        now = now or datetime.now(UTC)

        with self._transaction("apply_billing_event") as conn:
            already = conn.execute(
                "SELECT 1 FROM processed_billing_events WHERE event_id = ?", (event_id,)
            ).fetchone()
            if already:
                return BillingEventApplication(outcome=ReconcileOutcome.DUPLICATE)

            current = self._find_subscription(
                conn, user_id, stripe_subscription_id, stripe_customer_id
            )
            if current is None:
                if not user_id:
                    raise UnknownSubscriptionReference(
                        "No subscription matches billing event references",
                        customer_id=stripe_customer_id,
                        subscription_id=stripe_subscription_id,
                    )
                current = Subscription.free_default(user_id)

            if (
                occurred_at is not None
                and current.last_billing_event_at is not None
                and occurred_at < current.last_billing_event_at
            ):
                self._mark_processed(
                    conn, event_id, event_type, ReconcileOutcome.STALE, current.user_id, now
                )
                return BillingEventApplication(
                    outcome=ReconcileOutcome.STALE, previous=current, current=current
                )

            transitioned = transition(current)
            if transitioned is None:
                self._mark_processed(
                    conn, event_id, event_type, ReconcileOutcome.IGNORED, current.user_id, now
                )
                return BillingEventApplication(
                    outcome=ReconcileOutcome.IGNORED, previous=current, current=current
                )

            new_state, usage_event = transitioned
            if occurred_at is not None and advance_watermark:
                new_state = new_state.model_copy(update={"last_billing_event_at": occurred_at})
            saved = self._save_subscription(conn, new_state, now)

            written_event = None
            if usage_event is not None:
                year, month = period_for(now)
                record = self._fetch_usage_record(conn, saved.user_id, year, month)
                usage_event = usage_event.model_copy(
                    update={
                        "subscription_id": usage_event.subscription_id or saved.id,
                        "usage_record_id": usage_event.usage_record_id
                        or (record.id if record else None),
                    }
                )
                written_event = self._insert_usage_event(conn, usage_event, now)

            self._mark_processed(
                conn, event_id, event_type, ReconcileOutcome.APPLIED, saved.user_id, now
            )

            return BillingEventApplication(
                outcome=ReconcileOutcome.APPLIED,
                previous=current,
                current=saved,
                usage_event=written_event,
            )

    async def record_billing_event_failure(
        self, failure: BillingEventFailure
    ) -> BillingEventFailure:
        """
        Durably record an event that could not be applied.

        Redelivery of the same event ID increments attempt_count.
        """
        with self._transaction("record_billing_event_failure") as conn:
            conn.execute(
                """
                INSERT INTO billing_event_failures (
                    event_id, event_type, error_type, error_message, user_id,
                    customer_id, subscription_id, attempt_count, payload,
                    first_seen_at, last_seen_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (event_id) DO UPDATE SET
                    attempt_count = billing_event_failures.attempt_count + excluded.attempt_count,
                    error_type = excluded.error_type,
                    error_message = excluded.error_message,
                    last_seen_at = excluded.last_seen_at,
                    resolved_at = NULL
                """,
                (
                    failure.event_id,
                    failure.event_type,
                    failure.error_type,
                    failure.error_message,
                    failure.user_id,
                    failure.customer_id,
                    failure.subscription_id,
                    failure.attempt_count,
                    json.dumps(failure.payload, default=str),
                    _iso(failure.first_seen_at),
                    _iso(failure.last_seen_at),
                ),
            )
            row = conn.execute(
                "SELECT * FROM billing_event_failures WHERE event_id = ?", (failure.event_id,)
            ).fetchone()
        return self._row_to_failure(row)

    @staticmethod
    def _row_to_failure(row: sqlite3.Row) -> BillingEventFailure:
        return BillingEventFailure(
            event_id=row["event_id"],
            event_type=row["event_type"],
            error_type=row["error_type"],
            error_message=row["error_message"],
            user_id=row["user_id"],
            customer_id=row["customer_id"],
            subscription_id=row["subscription_id"],
            attempt_count=row["attempt_count"],
            payload=json.loads(row["payload"]),
            first_seen_at=_parse(row["first_seen_at"]),
            last_seen_at=_parse(row["last_seen_at"]),
        )

    async def list_billing_event_failures(
        self, limit: int = 50, offset: int = 0, include_resolved: bool = False
    ) -> list[BillingEventFailure]:
        """Failed events awaiting manual replay, most recent first."""
        query = "SELECT * FROM billing_event_failures"
        if not include_resolved:
            query += " WHERE resolved_at IS NULL"
        query += " ORDER BY last_seen_at DESC LIMIT ? OFFSET ?"

        with self._reading("list_billing_event_failures") as conn:
            rows = conn.execute(query, (limit, offset)).fetchall()
        return [self._row_to_failure(row) for row in rows]

    # ------------------------------------------------------------------
    # Usage events (append-only)
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_usage_event(row: sqlite3.Row) -> UsageEvent:
        return UsageEvent(
            id=row["id"],
            user_id=row["user_id"],
            usage_record_id=row["usage_record_id"],
            subscription_id=row["subscription_id"],
            event_type=row["event_type"],
            feature=row["feature"],
            metadata=json.loads(row["metadata"]),
            created_at=_parse(row["created_at"]),
        )

    def _insert_usage_event(
        self, conn: sqlite3.Connection, event: UsageEventCreate, now: datetime
    ) -> UsageEvent:
        written = UsageEvent(id=str(uuid.uuid4()), created_at=now, **event.model_dump())
        conn.execute(
            """
            INSERT INTO usage_events (
                id, user_id, usage_record_id, subscription_id,
                event_type, feature, metadata, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                written.id,
                written.user_id,
                written.usage_record_id,
                written.subscription_id,
                written.event_type.value,
                written.feature.value if written.feature else None,
                json.dumps(written.metadata, default=str),
                _iso(written.created_at),
            ),
        )
        return written

    async def insert_usage_event(
        self, event: UsageEventCreate, now: datetime | None = None
    ) -> UsageEvent:
        """Append one event to the audit trail."""
        now = now or datetime.now(UTC)
        with self._transaction("insert_usage_event") as conn:
            return self._insert_usage_event(conn, event, now)

    @staticmethod
    def _usage_event_filters(
        user_id: str,
        event_type: UsageEventType | None,
        start: datetime | None,
        end: datetime | None,
    ) -> tuple[str, list[Any]]:
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(UsageEventType(event_type).value)
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(_iso(start))
        if end is not None:
            clauses.append("created_at < ?")
            params.append(_iso(end))
        return " AND ".join(clauses), params

    async def list_usage_events(
        self,
        user_id: str,
        event_type: UsageEventType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[UsageEvent]:
        """Events for a user, newest first. end is exclusive."""
        where, params = self._usage_event_filters(user_id, event_type, start, end)
        with self._reading("list_usage_events") as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM usage_events WHERE {where}
                ORDER BY created_at DESC, seq DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_usage_event(row) for row in rows]

    async def count_usage_events(
        self,
        user_id: str,
        event_type: UsageEventType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        where, params = self._usage_event_filters(user_id, event_type, start, end)
        with self._reading("count_usage_events") as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM usage_events WHERE {where}", params
            ).fetchone()
        return row["n"]

    def close(self) -> None:
        """Close all database connections."""
        with self._registry_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()
