import json
import logging
import math
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import uuid4

from quoteflow.models import Quotation, QuotationRequest, QuotationTransition, Quote
from quoteflow.services.directory_store import DB_PATH, REQUESTER_CAPABLE_ROLES, DirectoryStore, directory_store
from quoteflow.services.errors import ConflictRetryError, InvalidInputError, InvalidStateError, NotFoundError
from quoteflow.services.state_machine import (
    ACCEPTED,
    ACTIVE_STATUSES,
    PENDING,
    PROVIDER_DECLINE,
    QUOTED,
    REJECTED,
    REQUESTER_ACCEPT,
    REQUESTER_DECLINE,
    SIBLING_ACCEPTED,
    SUBMIT_QUOTE,
    resolve_transition,
)

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
REQUEST_LOCK_STRIPES = 64


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class QuotationStore:
    db_path: str
    directory: DirectoryStore

    def __post_init__(self) -> None:
        self._request_locks = [Lock() for _ in range(REQUEST_LOCK_STRIPES)]
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as exc:
            self._rollback(conn)
            raise ConflictRetryError("Concurrent update detected; re-read and retry") from exc
        except sqlite3.OperationalError as exc:
            self._rollback(conn)
            if "locked" in str(exc).lower() or "busy" in str(exc).lower():
                raise ConflictRetryError("Storage is busy; re-read and retry") from exc
            raise
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    def _rollback(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def _request_lock(self, request_id: str) -> Lock:
        # Requests sharing a stripe serialize against each other; the pool never grows.
        return self._request_locks[hash(request_id) % REQUEST_LOCK_STRIPES]

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quotation_requests (
                    id TEXT PRIMARY KEY,
                    requester_id TEXT NOT NULL,
                    details TEXT NOT NULL,
                    provider_ids_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quotations (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    price REAL,
                    currency TEXT,
                    timeline TEXT,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (request_id, provider_id)
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_quotations_single_accepted
                ON quotations (request_id)
                WHERE status = 'accepted'
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quotation_transitions (
                    id TEXT PRIMARY KEY,
                    quotation_id TEXT NOT NULL,
                    request_id TEXT NOT NULL,
                    actor_user_id TEXT NOT NULL,
                    from_status TEXT NOT NULL,
                    to_status TEXT NOT NULL,
                    event TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quotation_reminders (
                    quotation_id TEXT NOT NULL,
                    tier_minutes INTEGER NOT NULL,
                    sent_at TEXT NOT NULL,
                    PRIMARY KEY (quotation_id, tier_minutes)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_quotations_request ON quotations (request_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_quotations_provider ON quotations (provider_id, status)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_quotation_transitions_quotation ON quotation_transitions (quotation_id)"
            )
            conn.commit()

    def _row_to_request(self, row: sqlite3.Row) -> QuotationRequest:
        return QuotationRequest(
            id=row["id"],
            requester_id=row["requester_id"],
            details=row["details"],
            provider_ids=json.loads(row["provider_ids_json"]),
            created_at=row["created_at"],
        )

    def _row_to_quotation(self, row: sqlite3.Row) -> Quotation:
        quote: Optional[Quote] = None
        if row["price"] is not None:
            quote = Quote(
                price=float(row["price"]),
                currency=row["currency"] or DEFAULT_CURRENCY,
                timeline=row["timeline"] or "",
                description=row["description"] or "",
            )
        return Quotation(
            id=row["id"],
            request_id=row["request_id"],
            provider_id=row["provider_id"],
            quote=quote,
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _record_transition(
        self,
        conn: sqlite3.Connection,
        *,
        quotation_id: str,
        request_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        event: str,
        now_iso: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO quotation_transitions (
                id, quotation_id, request_id, actor_user_id, from_status, to_status, event, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                f"qtr_{uuid4().hex[:12]}",
                quotation_id,
                request_id,
                actor_user_id,
                from_status,
                to_status,
                event,
                now_iso,
            ),
        )

    def create_request(
        self,
        *,
        requester_id: str,
        details: str,
        provider_ids: Sequence[str],
    ) -> Tuple[QuotationRequest, List[Quotation]]:
        cleaned_details = details.strip()
        cleaned_ids = [str(pid).strip() for pid in provider_ids]
        if not cleaned_ids:
            raise InvalidInputError("At least one provider must be targeted")
        if any(not pid for pid in cleaned_ids):
            raise InvalidInputError("Provider ids must be non-empty")
        if len(set(cleaned_ids)) != len(cleaned_ids):
            raise InvalidInputError("Duplicate provider targets are not allowed")
        if not cleaned_details:
            raise InvalidInputError("Requirement details are required")

        try:
            requester = self.directory.resolve_user(requester_id)
        except NotFoundError as exc:
            raise InvalidInputError("Requester not found") from exc
        if requester.role not in REQUESTER_CAPABLE_ROLES:
            raise InvalidInputError("User is not allowed to request quotations")

        for provider_id in cleaned_ids:
            try:
                provider = self.directory.resolve_provider(provider_id)
            except NotFoundError as exc:
                raise InvalidInputError(f"Unknown provider: {provider_id}") from exc
            if provider.status != "active":
                raise InvalidInputError(f"Provider is not accepting requests: {provider_id}")

        request_id = f"qr_{uuid4().hex[:10]}"
        now_iso = _now_iso()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO quotation_requests (id, requester_id, details, provider_ids_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (request_id, requester_id, cleaned_details, json.dumps(cleaned_ids), now_iso),
            )
            for position, provider_id in enumerate(cleaned_ids):
                conn.execute(
                    """
                    INSERT INTO quotations (
                        id, request_id, provider_id, position, status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 'pending', ?, ?)
                    """,
                    (f"qt_{uuid4().hex[:12]}", request_id, provider_id, position, now_iso, now_iso),
                )

        logger.info(
            "quotation_request_created request_id=%s requester_id=%s providers=%d",
            request_id,
            requester_id,
            len(cleaned_ids),
        )
        return self.get_request(request_id), self.list_quotations(request_id)

    def get_request(self, request_id: str) -> QuotationRequest:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM quotation_requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            raise NotFoundError("Quotation request not found")
        return self._row_to_request(row)

    def get_quotation(self, quotation_id: str) -> Quotation:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM quotations WHERE id = ?", (quotation_id,)).fetchone()
        if not row:
            raise NotFoundError("Quotation not found")
        return self._row_to_quotation(row)

    def list_quotations(self, request_id: str) -> List[Quotation]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM quotations WHERE request_id = ? ORDER BY position ASC",
                (request_id,),
            ).fetchall()
        return [self._row_to_quotation(row) for row in rows]

    def list_requests_for_requester(self, requester_id: str, limit: int = 100) -> List[QuotationRequest]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM quotation_requests
                WHERE requester_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (requester_id, limit),
            ).fetchall()
        return [self._row_to_request(row) for row in rows]

    def list_quotations_for_provider(self, provider_id: str, status: Optional[str] = None) -> List[Quotation]:
        if status is not None and status not in ACTIVE_STATUSES | {ACCEPTED, REJECTED}:
            raise InvalidInputError("Invalid status. Allowed: pending, quoted, accepted, rejected")
        query = "SELECT * FROM quotations WHERE provider_id = ?"
        params: List[str] = [provider_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_quotation(row) for row in rows]

    def list_transitions(self, quotation_id: str) -> List[QuotationTransition]:
        self.get_quotation(quotation_id)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM quotation_transitions
                WHERE quotation_id = ?
                ORDER BY created_at ASC, rowid ASC
                """,
                (quotation_id,),
            ).fetchall()
        return [QuotationTransition(**dict(row)) for row in rows]

    def get_request_status(self, request_id: str) -> str:
        with self._connect() as conn:
            exists = conn.execute("SELECT 1 FROM quotation_requests WHERE id = ?", (request_id,)).fetchone()
            if not exists:
                raise NotFoundError("Quotation request not found")
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM quotations WHERE request_id = ? GROUP BY status",
                (request_id,),
            ).fetchall()
        counts = {row["status"]: int(row["n"]) for row in rows}
        if counts.get(PENDING, 0) or counts.get(QUOTED, 0):
            return "open"
        if counts.get(ACCEPTED, 0) == 1:
            return "fulfilled"
        return "closed"

    def _load_for_update(self, conn: sqlite3.Connection, quotation_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM quotations WHERE id = ?", (quotation_id,)).fetchone()
        if not row:
            raise NotFoundError("Quotation not found")
        return row

    def _compare_and_set(
        self,
        conn: sqlite3.Connection,
        *,
        quotation_id: str,
        expected_status: str,
        next_status: str,
        now_iso: str,
        quote: Optional[Quote] = None,
    ) -> None:
        if quote is not None:
            cursor = conn.execute(
                """
                UPDATE quotations
                SET status = ?, price = ?, currency = ?, timeline = ?, description = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    next_status,
                    quote.price,
                    quote.currency,
                    quote.timeline,
                    quote.description,
                    now_iso,
                    quotation_id,
                    expected_status,
                ),
            )
        else:
            cursor = conn.execute(
                "UPDATE quotations SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (next_status, now_iso, quotation_id, expected_status),
            )
        if cursor.rowcount != 1:
            raise ConflictRetryError("Quotation changed concurrently; re-read and retry")

    def _apply_single_transition(
        self,
        quotation_id: str,
        event: str,
        *,
        actor_user_id: str,
        quote: Optional[Quote] = None,
    ) -> Quotation:
        request_id = self.get_quotation(quotation_id).request_id
        with self._request_lock(request_id):
            with self._transaction() as conn:
                row = self._load_for_update(conn, quotation_id)
                transition = resolve_transition(str(row["status"]), event)
                now_iso = _now_iso()
                self._compare_and_set(
                    conn,
                    quotation_id=quotation_id,
                    expected_status=transition.from_status,
                    next_status=transition.to_status,
                    now_iso=now_iso,
                    quote=quote,
                )
                self._record_transition(
                    conn,
                    quotation_id=quotation_id,
                    request_id=request_id,
                    actor_user_id=actor_user_id,
                    from_status=transition.from_status,
                    to_status=transition.to_status,
                    event=event,
                    now_iso=now_iso,
                )
        logger.info(
            "quotation_transition quotation_id=%s request_id=%s event=%s from=%s to=%s actor=%s",
            quotation_id,
            request_id,
            event,
            transition.from_status,
            transition.to_status,
            actor_user_id,
        )
        return self.get_quotation(quotation_id)

    def submit_quote(
        self,
        quotation_id: str,
        *,
        price: float,
        timeline: str,
        description: str = "",
        currency: Optional[str] = None,
        actor_user_id: str,
    ) -> Quotation:
        try:
            price_value = float(price)
        except (TypeError, ValueError) as exc:
            raise InvalidInputError("price must be a number") from exc
        if not math.isfinite(price_value) or price_value <= 0:
            raise InvalidInputError("price must be greater than 0")
        cleaned_timeline = timeline.strip()
        if not cleaned_timeline:
            raise InvalidInputError("timeline is required")
        cleaned_currency = (currency or DEFAULT_CURRENCY).strip().upper()
        if len(cleaned_currency) != 3 or not cleaned_currency.isalpha():
            raise InvalidInputError("currency must be a 3-letter ISO code")

        quote = Quote(
            price=round(price_value, 2),
            currency=cleaned_currency,
            timeline=cleaned_timeline,
            description=description.strip(),
        )
        return self._apply_single_transition(quotation_id, SUBMIT_QUOTE, actor_user_id=actor_user_id, quote=quote)

    def reject_quotation(self, quotation_id: str, *, by: str = "provider", actor_user_id: str) -> Quotation:
        if by == "provider":
            event = PROVIDER_DECLINE
        elif by == "requester":
            event = REQUESTER_DECLINE
        else:
            raise InvalidInputError("Invalid party. Allowed: provider, requester")
        return self._apply_single_transition(quotation_id, event, actor_user_id=actor_user_id)

    def accept_quotation(self, quotation_id: str, *, actor_user_id: str) -> Tuple[Quotation, List[Quotation]]:
        """Accept one quoted quotation and reject its open siblings in one transaction.

        Returns the accepted quotation and the siblings rejected by this call.
        """
        request_id = self.get_quotation(quotation_id).request_id
        with self._request_lock(request_id):
            with self._transaction() as conn:
                row = self._load_for_update(conn, quotation_id)
                already_accepted = conn.execute(
                    "SELECT id FROM quotations WHERE request_id = ? AND status = 'accepted'",
                    (request_id,),
                ).fetchone()
                transition = resolve_transition(str(row["status"]), REQUESTER_ACCEPT)
                if already_accepted:
                    raise InvalidStateError("Quotation request is already fulfilled")
                now_iso = _now_iso()
                cursor = conn.execute(
                    """
                    UPDATE quotations
                    SET status = 'accepted', updated_at = ?
                    WHERE id = ?
                      AND status = 'quoted'
                      AND NOT EXISTS (
                          SELECT 1 FROM quotations s
                          WHERE s.request_id = ? AND s.status = 'accepted'
                      )
                    """,
                    (now_iso, quotation_id, request_id),
                )
                if cursor.rowcount != 1:
                    raise ConflictRetryError("Quotation changed concurrently; re-read and retry")
                self._record_transition(
                    conn,
                    quotation_id=quotation_id,
                    request_id=request_id,
                    actor_user_id=actor_user_id,
                    from_status=transition.from_status,
                    to_status=transition.to_status,
                    event=REQUESTER_ACCEPT,
                    now_iso=now_iso,
                )

                siblings = conn.execute(
                    """
                    SELECT id, status FROM quotations
                    WHERE request_id = ? AND id != ? AND status IN ('pending', 'quoted')
                    """,
                    (request_id, quotation_id),
                ).fetchall()
                conn.execute(
                    """
                    UPDATE quotations
                    SET status = 'rejected', updated_at = ?
                    WHERE request_id = ? AND id != ? AND status IN ('pending', 'quoted')
                    """,
                    (now_iso, request_id, quotation_id),
                )
                for sibling in siblings:
                    self._record_transition(
                        conn,
                        quotation_id=sibling["id"],
                        request_id=request_id,
                        actor_user_id=actor_user_id,
                        from_status=sibling["status"],
                        to_status=REJECTED,
                        event=SIBLING_ACCEPTED,
                        now_iso=now_iso,
                    )
                rejected_ids = [str(sibling["id"]) for sibling in siblings]

        logger.info(
            "quotation_accepted quotation_id=%s request_id=%s siblings_rejected=%d actor=%s",
            quotation_id,
            request_id,
            len(rejected_ids),
            actor_user_id,
        )
        return self.get_quotation(quotation_id), [self.get_quotation(qid) for qid in rejected_ids]

    def find_stale_pending(self, older_than_minutes: int, now: Optional[datetime] = None) -> List[Dict[str, object]]:
        """Pending quotations older than the given age, with reminder tiers already sent."""
        current = now or datetime.now(timezone.utc)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT q.id, q.request_id, q.provider_id, q.created_at
                FROM quotations q
                WHERE q.status = 'pending'
                ORDER BY q.created_at ASC
                """
            ).fetchall()
            sent_rows = conn.execute("SELECT quotation_id, tier_minutes FROM quotation_reminders").fetchall()
        sent: Dict[str, set[int]] = {}
        for row in sent_rows:
            sent.setdefault(str(row["quotation_id"]), set()).add(int(row["tier_minutes"]))

        stale: List[Dict[str, object]] = []
        for row in rows:
            try:
                created_at = datetime.fromisoformat(str(row["created_at"]))
            except ValueError:
                continue
            if created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            elapsed_minutes = int(max(0, (current - created_at).total_seconds() // 60))
            if elapsed_minutes < older_than_minutes:
                continue
            stale.append(
                {
                    "quotation_id": row["id"],
                    "request_id": row["request_id"],
                    "provider_id": row["provider_id"],
                    "elapsed_minutes": elapsed_minutes,
                    "tiers_sent": sent.get(str(row["id"]), set()),
                }
            )
        return stale

    def mark_reminded(self, quotation_id: str, tiers: Sequence[int]) -> None:
        now_iso = _now_iso()
        with self._transaction() as conn:
            for tier in tiers:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO quotation_reminders (quotation_id, tier_minutes, sent_at)
                    VALUES (?, ?, ?)
                    """,
                    (quotation_id, int(tier), now_iso),
                )


quotation_store = QuotationStore(db_path=DB_PATH, directory=directory_store)
