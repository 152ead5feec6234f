import logging
import os
import sqlite3
from contextlib import closing, contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple
from uuid import uuid4

from timeswap.errors import (
    ExchangeConflictError,
    ExchangeForbiddenError,
    ExchangeNotFoundError,
    ExchangeStateConflictError,
    ExchangeValidationError,
)
from timeswap.models import (
    AvailabilityCheck,
    BlockedPeriod,
    BlockedPeriodCreate,
    BlockedPeriodUpdate,
    Booking,
    BookingRequest,
    BookingStatusUpdateRequest,
    CommittedInterval,
    ConflictResult,
    DateOverride,
    DateOverrideUpsert,
    DayAvailability,
    Dispute,
    DisputeCreateRequest,
    DisputeResolveRequest,
    Exchange,
    ExchangeHistoryEntry,
    ExchangeRequestCreate,
    ExchangeStatus,
    Interval,
    Property,
    WeeklyRule,
    WeeklyRuleCreate,
    WeeklyRuleUpdate,
)
from timeswap.services import intervals
from timeswap.services.availability import AvailabilityResolver
from timeswap.services.conflicts import ConflictDetector
from timeswap.services.dispute_ledger import DisputeLedger
from timeswap.services.lifecycle import ExchangeLifecycle, party_role
from timeswap.services.subject_locks import SubjectLocks

logger = logging.getLogger(__name__)


EXCHANGE_OCCUPYING_STATUSES = {ExchangeStatus.ACCEPTED.value, ExchangeStatus.ACTIVE.value}
BOOKING_OCCUPYING_STATUSES = {"pending", "confirmed"}
BOOKING_TERMINAL_STATUSES = {"declined", "cancelled", "completed"}

# status -> next status -> roles allowed to apply it
BOOKING_TRANSITIONS: Dict[str, Dict[str, Set[str]]] = {
    "pending": {"confirmed": {"host"}, "declined": {"host"}, "cancelled": {"guest"}},
    "confirmed": {"cancelled": {"guest", "host"}, "completed": {"host"}},
}

DEFAULT_ADMIN_USERS = {"admin"}


def _env_float(name: str, default: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


BUSY_TIMEOUT_SECONDS = _env_float("SQLITE_BUSY_TIMEOUT_SECONDS", 10.0)


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ExchangeStore:
    db_path: str
    admin_user_ids: Optional[Set[str]] = None
    enforce_availability: bool = False
    resolver: AvailabilityResolver = field(default_factory=AvailabilityResolver)

    def __post_init__(self) -> None:
        self._subject_locks = SubjectLocks()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        if self.admin_user_ids is None:
            configured = {value.strip() for value in os.getenv("ADMIN_USER_IDS", "").split(",") if value.strip()}
            self.admin_user_ids = configured or set(DEFAULT_ADMIN_USERS)
        self.detector = ConflictDetector()
        self.lifecycle = ExchangeLifecycle(self.detector)
        self.disputes = DisputeLedger(self.admin_user_ids)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly in _transaction.
        conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=BUSY_TIMEOUT_SECONDS,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with closing(self._connect()) as conn:
            yield conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing write. BEGIN IMMEDIATE takes the database write lock up front."""
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS properties (
                    id TEXT PRIMARY KEY,
                    host_user_id TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS weekly_rules (
                    id TEXT PRIMARY KEY,
                    subject_id TEXT NOT NULL,
                    day_of_week INTEGER NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS date_overrides (
                    subject_id TEXT NOT NULL,
                    override_date TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    is_available INTEGER NOT NULL DEFAULT 1,
                    note TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (subject_id, override_date)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS blocked_periods (
                    id TEXT PRIMARY KEY,
                    subject_id TEXT NOT NULL,
                    start_at TEXT NOT NULL,
                    end_at TEXT NOT NULL,
                    reason TEXT,
                    is_recurring INTEGER NOT NULL DEFAULT 0,
                    recurring_pattern TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS exchanges (
                    id TEXT PRIMARY KEY,
                    requestor_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    start_at TEXT NOT NULL,
                    end_at TEXT NOT NULL,
                    duration_minutes INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    requestor_confirmed INTEGER NOT NULL DEFAULT 0,
                    provider_confirmed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS exchange_status_history (
                    id TEXT PRIMARY KEY,
                    exchange_id TEXT NOT NULL,
                    actor_user_id TEXT NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    note TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bookings (
                    id TEXT PRIMARY KEY,
                    property_id TEXT NOT NULL,
                    guest_user_id TEXT NOT NULL,
                    host_user_id TEXT NOT NULL,
                    start_at TEXT NOT NULL,
                    end_at TEXT NOT NULL,
                    guest_count INTEGER NOT NULL DEFAULT 1,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_weekly_rules_subject ON weekly_rules (subject_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_blocked_subject ON blocked_periods (subject_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_exchanges_provider ON exchanges (provider_id, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_exchanges_requestor ON exchanges (requestor_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_property ON bookings (property_id, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_history_exchange ON exchange_status_history (exchange_id)")
            self.disputes.init_schema(conn)

    # ------------------------------------------------------------------
    # Subjects and ownership

    def _load_property(self, conn: sqlite3.Connection, property_id: str) -> Optional[Property]:
        row = conn.execute("SELECT * FROM properties WHERE id = ?", (property_id,)).fetchone()
        if not row:
            return None
        return Property(id=row["id"], host_user_id=row["host_user_id"], name=row["name"])

    def _assert_subject_owner(self, conn: sqlite3.Connection, subject_id: str, actor_user_id: str) -> None:
        if not actor_user_id:
            raise ExchangeValidationError("actor_user_id is required")
        if actor_user_id == subject_id:
            return
        prop = self._load_property(conn, subject_id)
        if prop and prop.host_user_id == actor_user_id:
            return
        raise ExchangeForbiddenError("Only the subject or its host can change its availability")

    def register_property(self, property_id: str, host_user_id: str, name: str = "") -> Property:
        property_id = property_id.strip()
        host_user_id = host_user_id.strip()
        if not property_id or not host_user_id:
            raise ExchangeValidationError("property_id and host_user_id are required")
        with self._subject_locks.hold(property_id):
            with self._transaction() as conn:
                existing = self._load_property(conn, property_id)
                if existing:
                    if existing.host_user_id != host_user_id:
                        raise ExchangeConflictError("Property is already registered to another host")
                    return existing
                conn.execute(
                    "INSERT INTO properties (id, host_user_id, name, created_at) VALUES (?, ?, ?, ?)",
                    (property_id, host_user_id, name.strip(), _now_iso()),
                )
        return Property(id=property_id, host_user_id=host_user_id, name=name.strip())

    # ------------------------------------------------------------------
    # Availability configuration

    def _row_to_weekly_rule(self, row: sqlite3.Row) -> WeeklyRule:
        return WeeklyRule(
            id=row["id"],
            subject_id=row["subject_id"],
            day_of_week=row["day_of_week"],
            start_time=time.fromisoformat(row["start_time"]),
            end_time=time.fromisoformat(row["end_time"]),
            is_active=bool(row["is_active"]),
        )

    def _row_to_override(self, row: sqlite3.Row) -> DateOverride:
        return DateOverride(
            subject_id=row["subject_id"],
            date=date.fromisoformat(row["override_date"]),
            start_time=time.fromisoformat(row["start_time"]),
            end_time=time.fromisoformat(row["end_time"]),
            is_available=bool(row["is_available"]),
            note=row["note"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_blocked_period(self, row: sqlite3.Row) -> BlockedPeriod:
        return BlockedPeriod(
            id=row["id"],
            subject_id=row["subject_id"],
            start=datetime.fromisoformat(row["start_at"]),
            end=datetime.fromisoformat(row["end_at"]),
            reason=row["reason"],
            is_recurring=bool(row["is_recurring"]),
            recurring_pattern=row["recurring_pattern"],
        )

    def add_weekly_rule(self, subject_id: str, request: WeeklyRuleCreate) -> WeeklyRule:
        intervals.require_valid_wall_clock(request.start_time, request.end_time)
        rule = WeeklyRule(
            id=f"wr_{uuid4().hex[:10]}",
            subject_id=subject_id,
            day_of_week=request.day_of_week,
            start_time=request.start_time,
            end_time=request.end_time,
            is_active=request.is_active,
        )
        with self._subject_locks.hold(subject_id):
            with self._transaction() as conn:
                self._assert_subject_owner(conn, subject_id, request.actor_user_id)
                conn.execute(
                    """
                    INSERT INTO weekly_rules (id, subject_id, day_of_week, start_time, end_time, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        rule.id,
                        rule.subject_id,
                        rule.day_of_week,
                        rule.start_time.isoformat(),
                        rule.end_time.isoformat(),
                        int(rule.is_active),
                        _now_iso(),
                    ),
                )
        return rule

    def update_weekly_rule(self, subject_id: str, rule_id: str, request: WeeklyRuleUpdate) -> WeeklyRule:
        with self._subject_locks.hold(subject_id):
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT * FROM weekly_rules WHERE id = ? AND subject_id = ?",
                    (rule_id, subject_id),
                ).fetchone()
                if not row:
                    raise ExchangeNotFoundError("Weekly rule not found")
                current = self._row_to_weekly_rule(row)
                updated = current.model_copy(
                    update={
                        "start_time": request.start_time if request.start_time is not None else current.start_time,
                        "end_time": request.end_time if request.end_time is not None else current.end_time,
                        "is_active": request.is_active if request.is_active is not None else current.is_active,
                    }
                )
                intervals.require_valid_wall_clock(updated.start_time, updated.end_time)
                self._assert_subject_owner(conn, subject_id, request.actor_user_id)
                conn.execute(
                    "UPDATE weekly_rules SET start_time = ?, end_time = ?, is_active = ? WHERE id = ?",
                    (updated.start_time.isoformat(), updated.end_time.isoformat(), int(updated.is_active), rule_id),
                )
        return updated

    def delete_weekly_rule(self, subject_id: str, rule_id: str, actor_user_id: str) -> None:
        with self._subject_locks.hold(subject_id):
            with self._transaction() as conn:
                self._assert_subject_owner(conn, subject_id, actor_user_id)
                deleted = conn.execute(
                    "DELETE FROM weekly_rules WHERE id = ? AND subject_id = ?",
                    (rule_id, subject_id),
                ).rowcount
                if not deleted:
                    raise ExchangeNotFoundError("Weekly rule not found")

    def list_weekly_rules(self, subject_id: str) -> List[WeeklyRule]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM weekly_rules WHERE subject_id = ? ORDER BY day_of_week, start_time",
                (subject_id,),
            ).fetchall()
        return [self._row_to_weekly_rule(row) for row in rows]

    def set_date_override(self, subject_id: str, request: DateOverrideUpsert) -> DateOverride:
        intervals.require_valid_wall_clock(request.start_time, request.end_time)
        override = DateOverride(
            subject_id=subject_id,
            date=request.date,
            start_time=request.start_time,
            end_time=request.end_time,
            is_available=request.is_available,
            note=request.note,
            updated_at=datetime.now(timezone.utc).replace(tzinfo=None),
        )
        with self._subject_locks.hold(subject_id):
            with self._transaction() as conn:
                self._assert_subject_owner(conn, subject_id, request.actor_user_id)
                conn.execute(
                    """
                    INSERT INTO date_overrides (subject_id, override_date, start_time, end_time, is_available, note, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (subject_id, override_date) DO UPDATE SET
                        start_time = excluded.start_time,
                        end_time = excluded.end_time,
                        is_available = excluded.is_available,
                        note = excluded.note,
                        updated_at = excluded.updated_at
                    """,
                    (
                        subject_id,
                        override.date.isoformat(),
                        override.start_time.isoformat(),
                        override.end_time.isoformat(),
                        int(override.is_available),
                        override.note,
                        _ts(override.updated_at),
                    ),
                )
        return override

    def delete_date_override(self, subject_id: str, override_date: date, actor_user_id: str) -> None:
        with self._subject_locks.hold(subject_id):
            with self._transaction() as conn:
                self._assert_subject_owner(conn, subject_id, actor_user_id)
                deleted = conn.execute(
                    "DELETE FROM date_overrides WHERE subject_id = ? AND override_date = ?",
                    (subject_id, override_date.isoformat()),
                ).rowcount
                if not deleted:
                    raise ExchangeNotFoundError("Date override not found")

    def list_date_overrides(
        self,
        subject_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> List[DateOverride]:
        query = "SELECT * FROM date_overrides WHERE subject_id = ?"
        params: List[Any] = [subject_id]
        if date_from:
            query += " AND override_date >= ?"
            params.append(date_from.isoformat())
        if date_to:
            query += " AND override_date <= ?"
            params.append(date_to.isoformat())
        query += " ORDER BY override_date"
        with self._read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_override(row) for row in rows]

    @staticmethod
    def _validate_blocked_period(block: BlockedPeriod) -> None:
        intervals.require_valid(Interval(start=block.start, end=block.end), field="blocked period")
        if block.is_recurring and block.recurring_pattern is None:
            raise ExchangeValidationError("recurring_pattern is required for recurring blocked periods")
        if not block.is_recurring and block.recurring_pattern is not None:
            raise ExchangeValidationError("recurring_pattern is only allowed on recurring blocked periods")

    def add_blocked_period(self, subject_id: str, request: BlockedPeriodCreate) -> BlockedPeriod:
        block = BlockedPeriod(
            id=f"blk_{uuid4().hex[:8]}",
            subject_id=subject_id,
            start=request.start,
            end=request.end,
            reason=request.reason,
            is_recurring=request.is_recurring,
            recurring_pattern=request.recurring_pattern,
        )
        self._validate_blocked_period(block)
        with self._subject_locks.hold(subject_id):
            with self._transaction() as conn:
                self._assert_subject_owner(conn, subject_id, request.actor_user_id)
                conn.execute(
                    """
                    INSERT INTO blocked_periods (id, subject_id, start_at, end_at, reason, is_recurring, recurring_pattern, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        block.id,
                        block.subject_id,
                        _ts(block.start),
                        _ts(block.end),
                        block.reason,
                        int(block.is_recurring),
                        block.recurring_pattern.value if block.recurring_pattern else None,
                        _now_iso(),
                    ),
                )
        return block

    def update_blocked_period(self, subject_id: str, block_id: str, request: BlockedPeriodUpdate) -> BlockedPeriod:
        """Apply the fields set on ``request``; turning recurrence off drops the pattern."""
        with self._subject_locks.hold(subject_id):
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT * FROM blocked_periods WHERE id = ? AND subject_id = ?",
                    (block_id, subject_id),
                ).fetchone()
                if not row:
                    raise ExchangeNotFoundError("Blocked period not found")
                current = self._row_to_blocked_period(row)
                is_recurring = request.is_recurring if request.is_recurring is not None else current.is_recurring
                if request.recurring_pattern is not None:
                    pattern = request.recurring_pattern
                else:
                    pattern = current.recurring_pattern if is_recurring else None
                updated = current.model_copy(
                    update={
                        "start": request.start if request.start is not None else current.start,
                        "end": request.end if request.end is not None else current.end,
                        "reason": request.reason if request.reason is not None else current.reason,
                        "is_recurring": is_recurring,
                        "recurring_pattern": pattern,
                    }
                )
                self._validate_blocked_period(updated)
                self._assert_subject_owner(conn, subject_id, request.actor_user_id)
                conn.execute(
                    """
                    UPDATE blocked_periods
                    SET start_at = ?, end_at = ?, reason = ?, is_recurring = ?, recurring_pattern = ?
                    WHERE id = ?
                    """,
                    (
                        _ts(updated.start),
                        _ts(updated.end),
                        updated.reason,
                        int(updated.is_recurring),
                        updated.recurring_pattern.value if updated.recurring_pattern else None,
                        block_id,
                    ),
                )
        return updated

    def delete_blocked_period(self, subject_id: str, block_id: str, actor_user_id: str) -> None:
        with self._subject_locks.hold(subject_id):
            with self._transaction() as conn:
                self._assert_subject_owner(conn, subject_id, actor_user_id)
                deleted = conn.execute(
                    "DELETE FROM blocked_periods WHERE id = ? AND subject_id = ?",
                    (block_id, subject_id),
                ).rowcount
                if not deleted:
                    raise ExchangeNotFoundError("Blocked period not found")

    def list_blocked_periods(self, subject_id: str) -> List[BlockedPeriod]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM blocked_periods WHERE subject_id = ? ORDER BY start_at",
                (subject_id,),
            ).fetchall()
        return [self._row_to_blocked_period(row) for row in rows]

    def _availability_inputs(
        self,
        conn: sqlite3.Connection,
        subject_id: str,
        date_from: date,
        date_to: date,
    ) -> Tuple[List[WeeklyRule], List[DateOverride], List[BlockedPeriod]]:
        rules = [
            self._row_to_weekly_rule(row)
            for row in conn.execute(
                "SELECT * FROM weekly_rules WHERE subject_id = ? AND is_active = 1",
                (subject_id,),
            ).fetchall()
        ]
        overrides = [
            self._row_to_override(row)
            for row in conn.execute(
                """
                SELECT * FROM date_overrides
                WHERE subject_id = ? AND override_date >= ? AND override_date <= ?
                ORDER BY updated_at
                """,
                (subject_id, date_from.isoformat(), date_to.isoformat()),
            ).fetchall()
        ]
        window_start = _ts(datetime.combine(date_from, time.min))
        window_end = _ts(datetime.combine(date_to + timedelta(days=1), time.min))
        # One-off blocks must intersect the window; recurring ones only need to start before it ends.
        blocks = [
            self._row_to_blocked_period(row)
            for row in conn.execute(
                """
                SELECT * FROM blocked_periods
                WHERE subject_id = ? AND start_at < ? AND (is_recurring = 1 OR end_at > ?)
                """,
                (subject_id, window_end, window_start),
            ).fetchall()
        ]
        return rules, overrides, blocks

    def resolve_availability(self, subject_id: str, date_from: date, date_to: date) -> List[DayAvailability]:
        with self._read() as conn:
            rules, overrides, blocks = self._availability_inputs(conn, subject_id, date_from, date_to)
        return self.resolver.resolve(subject_id, date_from, date_to, rules, overrides, blocks)

    def _is_available(self, conn: sqlite3.Connection, subject_id: str, interval: Interval) -> bool:
        first_day = interval.start.date()
        last_day = (interval.end - timedelta(microseconds=1)).date()
        rules, overrides, blocks = self._availability_inputs(conn, subject_id, first_day, last_day)
        return self.resolver.is_available(subject_id, interval, rules, overrides, blocks)

    def check_availability(self, subject_id: str, interval: Interval) -> AvailabilityCheck:
        intervals.require_valid(interval)
        with self._read() as conn:
            available = self._is_available(conn, subject_id, interval)
        return AvailabilityCheck(subject_id=subject_id, interval=interval, available=available)

    # ------------------------------------------------------------------
    # Committed intervals and conflicts

    def _committed_intervals(
        self,
        conn: sqlite3.Connection,
        subject_id: str,
        window: Optional[Interval] = None,
        include_released: bool = False,
    ) -> List[CommittedInterval]:
        exchange_query = "SELECT id, provider_id, start_at, end_at, status FROM exchanges WHERE provider_id = ?"
        booking_query = "SELECT id, property_id, start_at, end_at, status FROM bookings WHERE property_id = ?"
        exchange_params: List[Any] = [subject_id]
        booking_params: List[Any] = [subject_id]
        if include_released:
            exchange_query += " AND status != ?"
            exchange_params.append(ExchangeStatus.REQUESTED.value)
        else:
            exchange_query += " AND status IN (?, ?)"
            exchange_params.extend(sorted(EXCHANGE_OCCUPYING_STATUSES))
            booking_query += " AND status IN (?, ?)"
            booking_params.extend(sorted(BOOKING_OCCUPYING_STATUSES))
        if window is not None:
            exchange_query += " AND start_at < ? AND end_at > ?"
            booking_query += " AND start_at < ? AND end_at > ?"
            exchange_params.extend([_ts(window.end), _ts(window.start)])
            booking_params.extend([_ts(window.end), _ts(window.start)])

        committed: List[CommittedInterval] = []
        for row in conn.execute(exchange_query, tuple(exchange_params)).fetchall():
            committed.append(
                CommittedInterval(
                    id=row["id"],
                    kind="exchange",
                    subject_id=row["provider_id"],
                    interval=Interval(start=datetime.fromisoformat(row["start_at"]), end=datetime.fromisoformat(row["end_at"])),
                    status=row["status"],
                )
            )
        for row in conn.execute(booking_query, tuple(booking_params)).fetchall():
            committed.append(
                CommittedInterval(
                    id=row["id"],
                    kind="booking",
                    subject_id=row["property_id"],
                    interval=Interval(start=datetime.fromisoformat(row["start_at"]), end=datetime.fromisoformat(row["end_at"])),
                    status=row["status"],
                )
            )
        committed.sort(key=lambda item: (item.interval.start, item.id))
        return committed

    def list_committed_intervals(self, subject_id: str, include_released: bool = False) -> List[CommittedInterval]:
        with self._read() as conn:
            return self._committed_intervals(conn, subject_id, include_released=include_released)

    def check_conflict(self, subject_id: str, interval: Interval) -> ConflictResult:
        intervals.require_valid(interval)
        with self._read() as conn:
            committed = self._committed_intervals(conn, subject_id, window=interval)
        return self.detector.check(subject_id, interval, committed)

    # ------------------------------------------------------------------
    # Exchanges

    def _row_to_exchange(self, row: sqlite3.Row, disputed: bool = False) -> Exchange:
        return Exchange(
            id=row["id"],
            requestor_id=row["requestor_id"],
            provider_id=row["provider_id"],
            title=row["title"],
            description=row["description"],
            interval=Interval(start=datetime.fromisoformat(row["start_at"]), end=datetime.fromisoformat(row["end_at"])),
            duration_minutes=row["duration_minutes"],
            status=row["status"],
            requestor_confirmed=bool(row["requestor_confirmed"]),
            provider_confirmed=bool(row["provider_confirmed"]),
            disputed=disputed,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _load_exchange(self, conn: sqlite3.Connection, exchange_id: str) -> Exchange:
        row = conn.execute("SELECT * FROM exchanges WHERE id = ?", (exchange_id,)).fetchone()
        if not row:
            raise ExchangeNotFoundError("Exchange not found")
        return self._row_to_exchange(row, disputed=self.disputes.has_open(conn, exchange_id))

    def _exchange_subject(self, exchange_id: str) -> str:
        # provider_id never changes after creation, so it is safe to read before locking.
        with self._read() as conn:
            row = conn.execute("SELECT provider_id FROM exchanges WHERE id = ?", (exchange_id,)).fetchone()
        if not row:
            raise ExchangeNotFoundError("Exchange not found")
        return str(row["provider_id"])

    def _record_history(
        self,
        conn: sqlite3.Connection,
        exchange_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: str = "",
    ) -> None:
        conn.execute(
            """
            INSERT INTO exchange_status_history (id, exchange_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"xsh_{uuid4().hex[:10]}", exchange_id, actor_user_id, from_status, to_status, note, _now_iso()),
        )

    def _save_exchange(
        self,
        conn: sqlite3.Connection,
        before: Exchange,
        after: Exchange,
        actor_user_id: str,
        note: str = "",
    ) -> Exchange:
        updated_at = _now_iso()
        changed = conn.execute(
            """
            UPDATE exchanges
            SET status = ?, requestor_confirmed = ?, provider_confirmed = ?, updated_at = ?
            WHERE id = ? AND status = ? AND requestor_confirmed = ? AND provider_confirmed = ?
            """,
            (
                after.status.value,
                int(after.requestor_confirmed),
                int(after.provider_confirmed),
                updated_at,
                before.id,
                before.status.value,
                int(before.requestor_confirmed),
                int(before.provider_confirmed),
            ),
        ).rowcount
        if changed != 1:
            raise ExchangeStateConflictError("Exchange changed concurrently; reload and retry")
        self._record_history(conn, before.id, actor_user_id, before.status.value, after.status.value, note)
        if before.status != after.status:
            logger.info(
                "Exchange %s moved %s -> %s by %s",
                before.id,
                before.status.value,
                after.status.value,
                actor_user_id,
            )
        return after.model_copy(update={"updated_at": updated_at})

    def request_exchange(self, request: ExchangeRequestCreate) -> Exchange:
        interval = intervals.require_valid(request.interval)
        requestor_id = request.requestor_id.strip()
        provider_id = request.provider_id.strip()
        if not requestor_id or not provider_id:
            raise ExchangeValidationError("requestor_id and provider_id are required")
        if requestor_id == provider_id:
            raise ExchangeValidationError("Cannot request an exchange with yourself")
        if not request.title.strip():
            raise ExchangeValidationError("title is required")
        span_minutes = intervals.duration_minutes(interval)
        duration = request.duration_minutes if request.duration_minutes is not None else span_minutes
        if duration <= 0 or duration > span_minutes:
            raise ExchangeValidationError("duration_minutes must be positive and fit inside the interval")

        now_iso = _now_iso()
        exchange = Exchange(
            id=f"ex_{uuid4().hex[:10]}",
            requestor_id=requestor_id,
            provider_id=provider_id,
            title=request.title.strip(),
            description=request.description,
            interval=interval,
            duration_minutes=duration,
            status=ExchangeStatus.REQUESTED,
            created_at=now_iso,
            updated_at=now_iso,
        )
        with self._transaction() as conn:
            if self.enforce_availability and not self._is_available(conn, provider_id, interval):
                raise ExchangeConflictError("Requested interval is outside the provider's availability")
            conn.execute(
                """
                INSERT INTO exchanges (
                    id, requestor_id, provider_id, title, description, start_at, end_at,
                    duration_minutes, status, requestor_confirmed, provider_confirmed, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
                """,
                (
                    exchange.id,
                    exchange.requestor_id,
                    exchange.provider_id,
                    exchange.title,
                    exchange.description,
                    _ts(interval.start),
                    _ts(interval.end),
                    exchange.duration_minutes,
                    exchange.status.value,
                    now_iso,
                    now_iso,
                ),
            )
            self._record_history(conn, exchange.id, requestor_id, "none", exchange.status.value, "exchange requested")
        logger.info("Exchange %s requested by %s from %s", exchange.id, requestor_id, provider_id)
        return exchange

    @contextmanager
    def _exchange_transaction(self, exchange_id: str) -> Iterator[Tuple[sqlite3.Connection, Exchange]]:
        """Serialize on the provider's subject lock, then open a write transaction."""
        provider_id = self._exchange_subject(exchange_id)
        with self._subject_locks.hold(provider_id):
            with self._transaction() as conn:
                exchange = self._load_exchange(conn, exchange_id)
                try:
                    yield conn, exchange
                except (ExchangeConflictError, ExchangeStateConflictError) as exc:
                    logger.warning("Exchange %s change rejected: %s", exchange_id, exc)
                    raise

    def respond_to_exchange(self, exchange_id: str, actor_user_id: str, decision: str) -> Exchange:
        if decision not in {"accept", "decline"}:
            raise ExchangeValidationError("decision must be 'accept' or 'decline'")
        with self._exchange_transaction(exchange_id) as (conn, exchange):
            if decision == "accept":
                committed = self._committed_intervals(conn, exchange.provider_id, window=exchange.interval)
                updated = self.lifecycle.accept(exchange, actor_user_id, committed)
            else:
                updated = self.lifecycle.decline(exchange, actor_user_id)
            return self._save_exchange(conn, exchange, updated, actor_user_id, f"provider {decision}ed")

    def start_exchange(self, exchange_id: str, actor_user_id: str) -> Exchange:
        with self._exchange_transaction(exchange_id) as (conn, exchange):
            updated = self.lifecycle.start(exchange, actor_user_id)
            return self._save_exchange(conn, exchange, updated, actor_user_id, "exchange started")

    def cancel_exchange(self, exchange_id: str, actor_user_id: str, note: str = "") -> Exchange:
        with self._exchange_transaction(exchange_id) as (conn, exchange):
            updated = self.lifecycle.cancel(exchange, actor_user_id)
            return self._save_exchange(conn, exchange, updated, actor_user_id, note or "exchange cancelled")

    def confirm_completion(self, exchange_id: str, actor_user_id: str) -> Tuple[Exchange, bool]:
        """Set the actor's completion flag; the bool is False for a repeat confirmation."""
        with self._exchange_transaction(exchange_id) as (conn, exchange):
            updated, changed = self.lifecycle.confirm(exchange, actor_user_id)
            if not changed:
                return exchange, False
            role = party_role(exchange, actor_user_id)
            return self._save_exchange(conn, exchange, updated, actor_user_id, f"{role} confirmed completion"), True

    def get_exchange(self, exchange_id: str, actor_user_id: Optional[str] = None) -> Exchange:
        with self._read() as conn:
            exchange = self._load_exchange(conn, exchange_id)
        if actor_user_id is not None and not self.disputes.is_admin(actor_user_id):
            party_role(exchange, actor_user_id)
        return exchange

    def list_exchanges(
        self,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Exchange]:
        normalized_role = role.strip().lower() if role else None
        if normalized_role not in {None, "all", "requestor", "provider"}:
            raise ExchangeValidationError("Invalid role value. Allowed: all, requestor, provider")

        query = "SELECT * FROM exchanges WHERE 1 = 1"
        params: List[Any] = []
        if user_id and normalized_role == "requestor":
            query += " AND requestor_id = ?"
            params.append(user_id)
        elif user_id and normalized_role == "provider":
            query += " AND provider_id = ?"
            params.append(user_id)
        elif user_id:
            query += " AND (requestor_id = ? OR provider_id = ?)"
            params.extend([user_id, user_id])
        if status:
            try:
                params.append(ExchangeStatus(status).value)
            except ValueError as exc:
                allowed = ", ".join(s.value for s in ExchangeStatus)
                raise ExchangeValidationError(f"Invalid status value. Allowed: {allowed}") from exc
            query += " AND status = ?"
        query += " ORDER BY created_at DESC"

        with self._read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
            disputed = self.disputes.open_exchange_ids(conn, [row["id"] for row in rows])
        return [self._row_to_exchange(row, disputed=row["id"] in disputed) for row in rows]

    def list_exchange_history(self, exchange_id: str, actor_user_id: Optional[str] = None) -> List[ExchangeHistoryEntry]:
        self.get_exchange(exchange_id, actor_user_id=actor_user_id)
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM exchange_status_history WHERE exchange_id = ? ORDER BY created_at, rowid",
                (exchange_id,),
            ).fetchall()
        return [
            ExchangeHistoryEntry(
                id=row["id"],
                exchange_id=row["exchange_id"],
                actor_user_id=row["actor_user_id"],
                from_status=row["from_status"],
                to_status=row["to_status"],
                note=row["note"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Disputes

    def file_dispute(self, exchange_id: str, request: DisputeCreateRequest) -> Dispute:
        if not request.reporter_id:
            raise ExchangeValidationError("reporter_id is required")
        with self._exchange_transaction(exchange_id) as (conn, exchange):
            return self.disputes.file(
                conn,
                exchange,
                reporter_id=request.reporter_id,
                reason=request.reason,
                details=request.details,
                mediation_required=request.mediation_required,
            )

    def resolve_dispute(self, dispute_id: str, request: DisputeResolveRequest) -> Dispute:
        with self._read() as conn:
            dispute = self.disputes.get(conn, dispute_id)
        with self._exchange_transaction(dispute.exchange_id) as (conn, _exchange):
            return self.disputes.resolve(
                conn,
                dispute_id,
                admin_user_id=request.admin_user_id,
                admin_notes=request.admin_notes,
                status=request.status,
            )

    def get_dispute(self, dispute_id: str, actor_user_id: str) -> Dispute:
        with self._read() as conn:
            dispute = self.disputes.get(conn, dispute_id)
        if not self.disputes.is_admin(actor_user_id) and actor_user_id != dispute.reporter_id:
            raise ExchangeForbiddenError("Only admins or the reporter can view this dispute")
        return dispute

    def list_disputes(
        self,
        actor_user_id: str,
        status: Optional[str] = None,
        exchange_id: Optional[str] = None,
    ) -> List[Dispute]:
        if not self.disputes.is_admin(actor_user_id):
            raise ExchangeForbiddenError("Only admins can list disputes")
        with self._read() as conn:
            return self.disputes.list(conn, status=status, exchange_id=exchange_id)

    # ------------------------------------------------------------------
    # Property bookings

    def _row_to_booking(self, row: sqlite3.Row) -> Booking:
        return Booking(
            id=row["id"],
            property_id=row["property_id"],
            guest_user_id=row["guest_user_id"],
            host_user_id=row["host_user_id"],
            interval=Interval(start=datetime.fromisoformat(row["start_at"]), end=datetime.fromisoformat(row["end_at"])),
            guest_count=row["guest_count"],
            status=row["status"],
            created_at=row["created_at"],
        )

    def create_booking(self, request: BookingRequest) -> Booking:
        interval = intervals.require_valid(request.interval)
        if not request.guest_user_id:
            raise ExchangeValidationError("guest_user_id is required")
        with self._subject_locks.hold(request.property_id):
            with self._transaction() as conn:
                prop = self._load_property(conn, request.property_id)
                if not prop:
                    raise ExchangeNotFoundError("Property not found")
                if prop.host_user_id == request.guest_user_id:
                    raise ExchangeValidationError("Hosts cannot book their own property")
                committed = self._committed_intervals(conn, prop.id, window=interval)
                result = self.detector.check(prop.id, interval, committed)
                if result.conflict:
                    logger.warning("Booking on %s rejected; overlaps %s", prop.id, result.conflicting_ids)
                    raise ExchangeConflictError(
                        "Requested dates overlap an existing booking",
                        conflicting_ids=tuple(result.conflicting_ids),
                    )
                now_iso = _now_iso()
                booking = Booking(
                    id=f"bk_{uuid4().hex[:8]}",
                    property_id=prop.id,
                    guest_user_id=request.guest_user_id,
                    host_user_id=prop.host_user_id,
                    interval=interval,
                    guest_count=request.guest_count,
                    status="pending",
                    created_at=now_iso,
                )
                conn.execute(
                    """
                    INSERT INTO bookings (id, property_id, guest_user_id, host_user_id, start_at, end_at, guest_count, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        booking.id,
                        booking.property_id,
                        booking.guest_user_id,
                        booking.host_user_id,
                        _ts(interval.start),
                        _ts(interval.end),
                        booking.guest_count,
                        booking.status,
                        now_iso,
                        now_iso,
                    ),
                )
        logger.info("Booking %s created on %s by %s", booking.id, booking.property_id, booking.guest_user_id)
        return booking

    def update_booking_status(self, booking_id: str, update: BookingStatusUpdateRequest) -> Booking:
        with self._read() as conn:
            row = conn.execute("SELECT property_id FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise ExchangeNotFoundError("Booking not found")

        with self._subject_locks.hold(row["property_id"]):
            with self._transaction() as conn:
                booking = self._row_to_booking(conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone())
                if update.actor_user_id == booking.host_user_id:
                    role = "host"
                elif update.actor_user_id == booking.guest_user_id:
                    role = "guest"
                else:
                    raise ExchangeForbiddenError("Actor is not a party to this booking")

                if booking.status in BOOKING_TERMINAL_STATUSES:
                    raise ExchangeStateConflictError(f"Booking is already {booking.status}")
                allowed_roles = BOOKING_TRANSITIONS.get(booking.status, {}).get(update.status)
                if allowed_roles is None:
                    raise ExchangeStateConflictError(f"Invalid status transition: {booking.status} -> {update.status}")
                if role not in allowed_roles:
                    raise ExchangeForbiddenError(f"Only the {' or '.join(sorted(allowed_roles))} can apply this status")

                conn.execute(
                    "UPDATE bookings SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                    (update.status, _now_iso(), booking_id, booking.status),
                )
        logger.info("Booking %s moved %s -> %s by %s", booking_id, booking.status, update.status, update.actor_user_id)
        return booking.model_copy(update={"status": update.status})

    def list_bookings(self, user_id: Optional[str] = None, role: Optional[str] = None) -> List[Booking]:
        normalized_role = role.strip().lower() if role else None
        if normalized_role not in {None, "all", "guest", "host"}:
            raise ExchangeValidationError("Invalid role value. Allowed: all, guest, host")

        query = "SELECT * FROM bookings"
        params: List[Any] = []
        if user_id and normalized_role == "guest":
            query += " WHERE guest_user_id = ?"
            params.append(user_id)
        elif user_id and normalized_role == "host":
            query += " WHERE host_user_id = ?"
            params.append(user_id)
        elif user_id:
            query += " WHERE guest_user_id = ? OR host_user_id = ?"
            params.extend([user_id, user_id])
        query += " ORDER BY created_at DESC"
        with self._read() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_booking(row) for row in rows]


default_db = str(Path(__file__).resolve().parents[2] / "data" / "exchanges.sqlite3")
exchange_store = ExchangeStore(
    db_path=os.getenv("EXCHANGE_DB_PATH", default_db),
    enforce_availability=os.getenv("EXCHANGE_ENFORCE_AVAILABILITY", "false").lower() in {"1", "true", "yes"},
)
