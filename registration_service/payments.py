"""
Pending-payment reconciliation for out-of-band membership payments.

An entry is created pending, flipped to verified by a webhook, a manual
verification or a bus event, and consumed by the first client poll that sees
it verified: the poll persists the membership and then removes the entry.
"""
import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from registration_service import config, models, notifications

logger = logging.getLogger("registration-service.payments")

POLL_NOT_FOUND = "not_found"
POLL_PENDING = "pending"
POLL_VERIFIED = "verified"


@dataclass
class PendingPayment:
    transaction_id: str
    amount: Optional[Decimal]
    payload: Dict[str, Any]
    status: str = models.PAYMENT_PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    verified_at: Optional[datetime] = None
    gateway_ref: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.status == models.PAYMENT_VERIFIED


@dataclass
class PollResult:
    status: str
    registration_id: Optional[int] = None

    @property
    def verified(self) -> bool:
        return self.status == POLL_VERIFIED


Persist = Callable[[Session, PendingPayment], int]


class PaymentStore:
    def create(self, transaction_id: str, amount, payload: Dict[str, Any]) -> PendingPayment:
        raise NotImplementedError

    def confirm(self, transaction_id: str, gateway_ref: Optional[str] = None) -> bool:
        raise NotImplementedError

    def get(self, transaction_id: str) -> Optional[PendingPayment]:
        raise NotImplementedError

    def poll(self, db: Session, transaction_id: str, persist: Persist) -> PollResult:
        """Consume a verified entry: persist(db, entry) then remove it, committing db."""
        raise NotImplementedError


class InMemoryPaymentStore(PaymentStore):
    """Process-local store. Entries are lost on restart and not shared between instances."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, PendingPayment] = {}
        self._consuming = set()

    def create(self, transaction_id, amount, payload):
        entry = PendingPayment(transaction_id=transaction_id, amount=amount, payload=dict(payload or {}))
        with self._lock:
            if transaction_id in self._entries:
                logger.warning("Pending payment %s replaced by a new request", transaction_id)
            self._entries[transaction_id] = entry
        return copy.deepcopy(entry)

    def confirm(self, transaction_id, gateway_ref=None):
        with self._lock:
            entry = self._entries.get(transaction_id)
            if entry is None:
                return False
            entry.status = models.PAYMENT_VERIFIED
            entry.verified_at = datetime.now(timezone.utc)
            if gateway_ref:
                entry.gateway_ref = gateway_ref
            return True

    def get(self, transaction_id):
        with self._lock:
            entry = self._entries.get(transaction_id)
            return copy.deepcopy(entry) if entry is not None else None

    def poll(self, db, transaction_id, persist):
        with self._lock:
            entry = self._entries.get(transaction_id)
            if entry is None:
                return PollResult(POLL_NOT_FOUND)
            if not entry.verified or transaction_id in self._consuming:
                return PollResult(POLL_PENDING)
            self._consuming.add(transaction_id)
            snapshot = copy.deepcopy(entry)

        try:
            registration_id = persist(db, snapshot)
            db.commit()
        except Exception:
            db.rollback()
            with self._lock:
                self._consuming.discard(transaction_id)
            raise

        with self._lock:
            self._consuming.discard(transaction_id)
            # a create() during persist replaced the entry; leave the new one alone
            if self._entries.get(transaction_id) is entry:
                del self._entries[transaction_id]
        return PollResult(POLL_VERIFIED, registration_id)

    def __len__(self):
        with self._lock:
            return len(self._entries)


class DatabasePaymentStore(PaymentStore):
    """pending_payments table backend; survives restarts and works across instances."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    @staticmethod
    def _to_entry(row: models.PendingPaymentRecord) -> PendingPayment:
        return PendingPayment(
            transaction_id=row.transaction_id,
            amount=row.amount,
            payload=dict(row.payload or {}),
            status=row.status,
            created_at=row.created_at,
            verified_at=row.verified_at,
            gateway_ref=row.gateway_ref,
        )

    def create(self, transaction_id, amount, payload):
        db = self.session_factory()
        try:
            row = db.get(models.PendingPaymentRecord, transaction_id, with_for_update=True)
            if row is None:
                row = models.PendingPaymentRecord(transaction_id=transaction_id)
                db.add(row)
            else:
                logger.warning("Pending payment %s replaced by a new request", transaction_id)
            row.amount = amount
            row.payload = dict(payload or {})
            row.status = models.PAYMENT_PENDING
            row.gateway_ref = None
            row.created_at = datetime.now(timezone.utc)
            row.verified_at = None
            entry = self._to_entry(row)
            db.commit()
            return entry
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def confirm(self, transaction_id, gateway_ref=None):
        db = self.session_factory()
        try:
            row = db.get(models.PendingPaymentRecord, transaction_id, with_for_update=True)
            if row is None:
                return False
            row.status = models.PAYMENT_VERIFIED
            row.verified_at = datetime.now(timezone.utc)
            if gateway_ref:
                row.gateway_ref = gateway_ref
            db.commit()
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get(self, transaction_id):
        db = self.session_factory()
        try:
            row = db.get(models.PendingPaymentRecord, transaction_id)
            return self._to_entry(row) if row is not None else None
        finally:
            db.close()

    def poll(self, db, transaction_id, persist):
        # insert and delete commit together; the row lock keeps a second poller waiting
        try:
            row = db.get(models.PendingPaymentRecord, transaction_id, with_for_update=True, populate_existing=True)
            if row is None:
                return PollResult(POLL_NOT_FOUND)
            if row.status != models.PAYMENT_VERIFIED:
                return PollResult(POLL_PENDING)
            registration_id = persist(db, self._to_entry(row))
            db.delete(row)
            db.commit()
            return PollResult(POLL_VERIFIED, registration_id)
        except Exception:
            db.rollback()
            raise


MEMBERSHIP_FIELDS = (
    "name", "father_name", "qualification", "year_passing", "dob", "institution",
    "working_place", "sex", "age", "address", "mobile", "email", "membership_type",
)


def _membership_summary(row: models.MembershipRegistration) -> Dict[str, Any]:
    summary = {f: getattr(row, f) for f in MEMBERSHIP_FIELDS}
    summary.update(id=row.id, transaction_id=row.transaction_id, amount=str(row.amount) if row.amount is not None else None)
    return summary


def _existing_membership(db: Session, transaction_id: str) -> Optional[models.MembershipRegistration]:
    return db.query(models.MembershipRegistration).filter(
        models.MembershipRegistration.transaction_id == transaction_id
    ).first()


def _parse_age(value) -> Optional[int]:
    # a paid application must not fail on an unreadable age; the raw value stays in raw_payload
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        if value not in (None, ""):
            logger.warning("Ignoring non-numeric age %r in membership application", value)
        return None


def persist_membership(db: Session, entry: PendingPayment):
    """
    Add the confirmed membership application to db's transaction (no commit).
    Returns (membership row, outbox entry). Keyed by the unique transaction id:
    a retry after an earlier insert committed gets the existing row and no
    new notification.
    """
    existing = _existing_membership(db, entry.transaction_id)
    if existing is not None:
        logger.info("Membership for %s already persisted as id=%s", entry.transaction_id, existing.id)
        return existing, None

    data = entry.payload
    row = models.MembershipRegistration(
        **{f: data.get(f) for f in MEMBERSHIP_FIELDS if f != "age"},
        age=_parse_age(data.get("age")),
        transaction_id=entry.transaction_id,
        gateway_ref=entry.gateway_ref,
        amount=entry.amount,
        payment_status="completed",
        raw_payload=data,
    )
    try:
        with db.begin_nested():
            db.add(row)
    except IntegrityError:
        existing = _existing_membership(db, entry.transaction_id)
        if existing is None:
            raise
        logger.info("Membership for %s inserted concurrently as id=%s", entry.transaction_id, existing.id)
        return existing, None

    note = notifications.enqueue(db, notifications.EVENT_MEMBERSHIP_CONFIRMED, {"membership": _membership_summary(row)})
    logger.info("Persisted membership id=%s for transaction %s", row.id, entry.transaction_id)
    return row, note


def build_store(backend: str = config.PAYMENT_STORE_BACKEND, session_factory=None) -> PaymentStore:
    if backend == "database":
        if session_factory is None:
            raise ValueError("database payment store needs a session factory")
        return DatabasePaymentStore(session_factory)
    if backend != "memory":
        raise ValueError(f"Unknown PAYMENT_STORE_BACKEND: {backend}")
    return InMemoryPaymentStore()
