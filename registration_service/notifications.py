"""
Post-commit notifications.

Ledger writes enqueue an outbox row in the same transaction; delivery happens
afterwards (a background task right after the request, plus a polling worker
for retries). A delivery failure is logged and rescheduled, never raised into
the request that created the row.
"""
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from registration_service import config, database, events, models

logger = logging.getLogger("registration-service.notifications")

EVENT_REGISTRATION_CONFIRMED = "registration.confirmed"
EVENT_PAYMENT_RECEIVED = "payment.received"
EVENT_MEMBERSHIP_CONFIRMED = "membership.confirmed"

ACTIVITY_NEW_REGISTRATION = "new_registration"
ACTIVITY_PAYMENT_RECEIVED = "payment_received"
ACTIVITY_NEW_MEMBERSHIP = "new_membership"


class NotificationSender:
    """Side effects the ledger asks for once a write has committed."""

    def send_registration_confirmation(self, user: Dict[str, Any], seminar: Dict[str, Any], amount) -> None:
        raise NotImplementedError

    def send_membership_confirmation(self, membership: Dict[str, Any]) -> None:
        raise NotImplementedError

    def log_admin_activity(self, activity_type: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LedgerNotificationSender(NotificationSender):
    """Admin activity goes to the activity_notifications table; emails are
    published on the bus for the mail service to render and send."""

    def __init__(self, db: Session, rabbitmq_url: str = config.RABBITMQ_URL, publish=None):
        self.db = db
        self.rabbitmq_url = rabbitmq_url
        self.publish = publish or events.publish_event

    def _email(self, template: str, payload: Dict[str, Any]) -> None:
        if not config.NOTIFY_EVENTS_ENABLED:
            logger.info("NOTIFY_EVENTS_ENABLED is off; skipping %s email", template)
            return
        event = {"type": "EmailRequested", "template": template, "payload": payload}
        self.publish(self.rabbitmq_url, f"notifications.email.{template}", event)

    def send_registration_confirmation(self, user, seminar, amount):
        self._email("registration_confirmed", {"user": user, "seminar": seminar, "amount": str(amount)})

    def send_membership_confirmation(self, membership):
        self._email("membership_confirmed", {"membership": membership})

    def log_admin_activity(self, activity_type, payload):
        title, message = _activity_text(activity_type, payload)
        self.db.add(models.ActivityNotification(
            activity_type=activity_type,
            title=title,
            message=message,
            seminar_id=payload.get("seminar_id"),
        ))
        self.db.flush()


def _activity_text(activity_type: str, payload: Dict[str, Any]):
    name = payload.get("name") or "User"
    if activity_type == ACTIVITY_NEW_REGISTRATION:
        return "New Registration", f"{name} registered for {payload.get('seminar_name') or 'Seminar'}"
    if activity_type == ACTIVITY_PAYMENT_RECEIVED:
        return "Payment Received", f"{name} paid Rs {payload.get('amount')} for {payload.get('seminar_name') or 'Seminar'}"
    if activity_type == ACTIVITY_NEW_MEMBERSHIP:
        return "New Membership", f"{name} applied for {payload.get('membership_type') or 'membership'}"
    return activity_type.replace("_", " ").title(), None


SenderFactory = Callable[[Session], NotificationSender]


def default_sender_factory(db: Session) -> NotificationSender:
    return LedgerNotificationSender(db)


def enqueue(db: Session, event_type: str, payload: Dict[str, Any]) -> models.NotificationOutbox:
    """Add an outbox row to the caller's transaction. Does not commit."""
    entry = models.NotificationOutbox(event_type=event_type, payload=payload, status=models.OUTBOX_PENDING)
    db.add(entry)
    db.flush()
    return entry


def dispatch(entry: models.NotificationOutbox, sender: NotificationSender) -> None:
    payload = entry.payload or {}
    if entry.event_type == EVENT_REGISTRATION_CONFIRMED:
        user, seminar = payload.get("user", {}), payload.get("seminar", {})
        sender.log_admin_activity(ACTIVITY_NEW_REGISTRATION, {
            "name": user.get("full_name"),
            "seminar_name": seminar.get("name"),
            "seminar_id": seminar.get("id"),
        })
        sender.send_registration_confirmation(user, seminar, payload.get("amount"))
    elif entry.event_type == EVENT_PAYMENT_RECEIVED:
        sender.log_admin_activity(ACTIVITY_PAYMENT_RECEIVED, {
            "name": payload.get("full_name"),
            "amount": payload.get("amount"),
            "seminar_name": payload.get("seminar_name"),
            "seminar_id": payload.get("seminar_id"),
        })
    elif entry.event_type == EVENT_MEMBERSHIP_CONFIRMED:
        membership = payload.get("membership", {})
        sender.log_admin_activity(ACTIVITY_NEW_MEMBERSHIP, {
            "name": membership.get("name"),
            "membership_type": membership.get("membership_type"),
        })
        sender.send_membership_confirmation(membership)
    else:
        raise ValueError(f"Unknown notification event type: {entry.event_type}")


def _backoff(attempts: int) -> timedelta:
    return timedelta(seconds=config.OUTBOX_BACKOFF_SECONDS * (2 ** (attempts - 1)))


def deliver_pending(
    db: Session,
    sender: NotificationSender,
    entry_ids: Optional[Iterable[int]] = None,
    now: Optional[datetime] = None,
    limit: int = 50,
) -> int:
    """Deliver due outbox rows. Returns how many were sent."""
    now = now or datetime.now(timezone.utc)
    q = db.query(models.NotificationOutbox).filter(models.NotificationOutbox.status == models.OUTBOX_PENDING)
    if entry_ids is not None:
        q = q.filter(models.NotificationOutbox.id.in_(list(entry_ids)))
    else:
        q = q.filter(
            (models.NotificationOutbox.next_attempt_at.is_(None))
            | (models.NotificationOutbox.next_attempt_at <= now)
        )
    entries = q.order_by(models.NotificationOutbox.id).limit(limit).with_for_update(skip_locked=True).all()

    sent = 0
    for entry in entries:
        entry.attempts += 1
        try:
            with db.begin_nested():
                dispatch(entry, sender)
        except Exception as e:
            logger.exception("Notification %s (%s) failed on attempt %s", entry.id, entry.event_type, entry.attempts)
            entry.last_error = str(e)
            if entry.attempts >= config.OUTBOX_MAX_ATTEMPTS:
                entry.status = models.OUTBOX_FAILED
            else:
                entry.next_attempt_at = now + _backoff(entry.attempts)
        else:
            entry.status = models.OUTBOX_SENT
            entry.sent_at = now
            entry.last_error = None
            sent += 1
    db.commit()
    return sent


def deliver_after_commit(entry_ids, sender_factory: SenderFactory = default_sender_factory):
    """Background task run after the response; never raises."""
    entry_ids = [i for i in entry_ids if i is not None]
    if not entry_ids:
        return
    db = database.SessionLocal()
    try:
        sent = deliver_pending(db, sender_factory(db), entry_ids=entry_ids)
        logger.info("Delivered %s/%s notifications after commit", sent, len(entry_ids))
    except Exception:
        db.rollback()
        logger.exception("Post-commit notification delivery failed for %s; the outbox worker will retry", entry_ids)
    finally:
        db.close()


def _outbox_runloop(interval: float, sender_factory: SenderFactory):
    while True:
        db = database.SessionLocal()
        try:
            sent = deliver_pending(db, sender_factory(db))
            if sent:
                logger.info("Outbox worker delivered %s notifications", sent)
        except Exception:
            db.rollback()
            logger.exception("Outbox worker pass failed")
        finally:
            db.close()
        time.sleep(interval)


_worker = None
def start_outbox_worker(interval: float = config.OUTBOX_POLL_SECONDS, sender_factory: SenderFactory = default_sender_factory):
    global _worker
    if _worker is None:
        _worker = threading.Thread(target=_outbox_runloop, args=(interval, sender_factory), daemon=True)
        _worker.start()
