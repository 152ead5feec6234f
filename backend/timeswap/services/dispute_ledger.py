import logging
import sqlite3
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set
from uuid import uuid4

from timeswap.errors import (
    ExchangeConflictError,
    ExchangeForbiddenError,
    ExchangeNotFoundError,
    ExchangeStateConflictError,
    ExchangeValidationError,
)
from timeswap.models import Dispute, DisputeStatus, Exchange
from timeswap.services.lifecycle import is_terminal, party_role

logger = logging.getLogger(__name__)


class DisputeLedger:
    """Side table of disputes keyed by exchange id.

    Filing or resolving a dispute never touches the exchange row. Callers
    pass in an open connection so ledger writes join their transaction.
    """

    def __init__(self, admin_user_ids: Iterable[str]) -> None:
        self.admin_user_ids: Set[str] = set(admin_user_ids)

    def is_admin(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and user_id in self.admin_user_ids

    def init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS disputes (
                id TEXT PRIMARY KEY,
                exchange_id TEXT NOT NULL,
                reporter_id TEXT NOT NULL,
                reason TEXT NOT NULL,
                details TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'pending',
                admin_notes TEXT,
                mediation_required INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                resolved_at TEXT,
                resolved_by TEXT
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_disputes_exchange ON disputes (exchange_id)")
        # Storage-level guard for the one-open-dispute-per-exchange rule.
        conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_disputes_one_pending
            ON disputes (exchange_id) WHERE status = 'pending'
            """
        )

    def _row_to_dispute(self, row: sqlite3.Row) -> Dispute:
        return Dispute(
            id=row["id"],
            exchange_id=row["exchange_id"],
            reporter_id=row["reporter_id"],
            reason=row["reason"],
            details=row["details"],
            status=row["status"],
            admin_notes=row["admin_notes"],
            mediation_required=bool(row["mediation_required"]),
            created_at=row["created_at"],
            resolved_at=row["resolved_at"],
            resolved_by=row["resolved_by"],
        )

    def has_open(self, conn: sqlite3.Connection, exchange_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM disputes WHERE exchange_id = ? AND status = 'pending' LIMIT 1",
            (exchange_id,),
        ).fetchone()
        return row is not None

    def open_exchange_ids(self, conn: sqlite3.Connection, exchange_ids: List[str]) -> Set[str]:
        if not exchange_ids:
            return set()
        placeholders = ",".join("?" for _ in exchange_ids)
        rows = conn.execute(
            f"SELECT DISTINCT exchange_id FROM disputes WHERE status = 'pending' AND exchange_id IN ({placeholders})",
            tuple(exchange_ids),
        ).fetchall()
        return {row["exchange_id"] for row in rows}

    def get(self, conn: sqlite3.Connection, dispute_id: str) -> Dispute:
        row = conn.execute("SELECT * FROM disputes WHERE id = ?", (dispute_id,)).fetchone()
        if not row:
            raise ExchangeNotFoundError("Dispute not found")
        return self._row_to_dispute(row)

    def list(
        self,
        conn: sqlite3.Connection,
        status: Optional[str] = None,
        exchange_id: Optional[str] = None,
    ) -> List[Dispute]:
        query = "SELECT * FROM disputes WHERE 1 = 1"
        params: List[str] = []
        if status:
            try:
                params.append(DisputeStatus(status).value)
            except ValueError as exc:
                raise ExchangeValidationError("Invalid status value. Allowed: pending, resolved") from exc
            query += " AND status = ?"
        if exchange_id:
            query += " AND exchange_id = ?"
            params.append(exchange_id)
        query += " ORDER BY created_at DESC"
        return [self._row_to_dispute(row) for row in conn.execute(query, tuple(params)).fetchall()]

    def file(
        self,
        conn: sqlite3.Connection,
        exchange: Exchange,
        reporter_id: str,
        reason: str,
        details: str = "",
        mediation_required: bool = False,
    ) -> Dispute:
        if not reason or not reason.strip():
            raise ExchangeValidationError("reason is required")
        party_role(exchange, reporter_id)
        if is_terminal(exchange.status):
            raise ExchangeStateConflictError(f"Cannot dispute an exchange that is {exchange.status.value}")
        if self.has_open(conn, exchange.id):
            raise ExchangeConflictError("An open dispute already exists for this exchange")

        dispute = Dispute(
            id=f"dsp_{uuid4().hex[:10]}",
            exchange_id=exchange.id,
            reporter_id=reporter_id,
            reason=reason.strip(),
            details=details or "",
            status=DisputeStatus.PENDING,
            mediation_required=mediation_required,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        try:
            conn.execute(
                """
                INSERT INTO disputes (id, exchange_id, reporter_id, reason, details, status, mediation_required, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    dispute.id,
                    dispute.exchange_id,
                    dispute.reporter_id,
                    dispute.reason,
                    dispute.details,
                    dispute.status.value,
                    int(dispute.mediation_required),
                    dispute.created_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ExchangeConflictError("An open dispute already exists for this exchange") from exc
        logger.info("Dispute %s filed on exchange %s by %s", dispute.id, exchange.id, reporter_id)
        return dispute

    def resolve(
        self,
        conn: sqlite3.Connection,
        dispute_id: str,
        admin_user_id: str,
        admin_notes: str,
        status: str,
    ) -> Dispute:
        if not self.is_admin(admin_user_id):
            raise ExchangeForbiddenError("Only admins can resolve disputes")
        if not admin_notes or not admin_notes.strip():
            raise ExchangeValidationError("admin_notes is required to resolve a dispute")
        if status != DisputeStatus.RESOLVED.value:
            raise ExchangeValidationError("Dispute resolution status must be 'resolved'")

        dispute = self.get(conn, dispute_id)
        if dispute.status == DisputeStatus.RESOLVED:
            raise ExchangeStateConflictError("Dispute is already resolved")

        resolved_at = datetime.now(timezone.utc).isoformat()
        conn.execute(
            """
            UPDATE disputes SET status = ?, admin_notes = ?, resolved_at = ?, resolved_by = ?
            WHERE id = ? AND status = 'pending'
            """,
            (DisputeStatus.RESOLVED.value, admin_notes.strip(), resolved_at, admin_user_id, dispute_id),
        )
        logger.info("Dispute %s resolved by %s", dispute_id, admin_user_id)
        return dispute.model_copy(
            update={
                "status": DisputeStatus.RESOLVED,
                "admin_notes": admin_notes.strip(),
                "resolved_at": resolved_at,
                "resolved_by": admin_user_id,
            }
        )
