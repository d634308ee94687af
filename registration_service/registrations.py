"""
Seminar registration ledger.

create_registration writes the registration, its additional persons, the
user's first membership number and any confirmation notice in a single
transaction; nothing from a failed call is left behind.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from registration_service import models, notifications, sequences
from registration_service.errors import (
    InvalidAmount,
    InvalidDelegateType,
    RegistrationNotFound,
    UserNotFound,
    ValidationError,
)

logger = logging.getLogger("registration-service.registrations")

GATEWAY_PAYMENT_METHOD = "razorpay"

_WS_RE = re.compile(r"\s+")


@dataclass
class RegistrationOutcome:
    id: int
    registration_no: str
    membership_no: Optional[str]
    amount: Decimal
    status: str
    already_registered: bool = False
    outbox_ids: List[int] = field(default_factory=list)


@dataclass
class PaymentUpdateOutcome:
    registration_id: int
    status: str
    outbox_ids: List[int] = field(default_factory=list)


def normalize_delegate_type(value: Optional[str]) -> str:
    """'BOA Member' -> 'boa-member', 'Non BOA Member' -> 'non-boa-member'."""
    if not value or not value.strip():
        raise InvalidDelegateType("delegate_type is required")
    token = _WS_RE.sub("-", value.strip().lower())
    # spelled-out abbreviations ("B O A Member") must not end up as b-o-a
    token = token.replace("b-o-a", "boa")
    if token not in models.DELEGATE_TYPES:
        raise InvalidDelegateType(f"Unknown delegate type: {value!r}")
    return token


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidAmount(f"Invalid amount: {value!r}") from None
    if not amount.is_finite() or amount < 0:
        raise InvalidAmount(f"Invalid amount: {value!r}")
    # amount columns hold whole paise; sub-paise values would round row by row
    if amount.normalize().as_tuple().exponent < -2:
        raise InvalidAmount(f"Amount has more than two decimal places: {value!r}")
    return amount


def total_amount(base_amount: Any, additional_persons: Iterable[Any] = ()) -> Decimal:
    total = to_decimal(base_amount)
    for person in additional_persons:
        total += to_decimal(person.amount)
    return total


def _existing_registration(db: Session, user_id: int, seminar_id: int) -> Optional[models.Registration]:
    return db.query(models.Registration).filter(
        models.Registration.user_id == user_id,
        models.Registration.seminar_id == seminar_id,
    ).first()


def _already_registered(db: Session, existing: models.Registration) -> RegistrationOutcome:
    user = db.get(models.User, existing.user_id)
    return RegistrationOutcome(
        id=existing.id,
        registration_no=existing.registration_no,
        membership_no=user.membership_no if user else None,
        amount=existing.amount,
        status=existing.status,
        already_registered=True,
    )


def _user_info(user: models.User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "title": user.title,
        "full_name": user.full_name,
        "first_name": user.first_name,
        "surname": user.surname,
        "email": user.email,
        "mobile": user.mobile,
        "membership_no": user.membership_no,
    }


def _seminar_info(seminar: Optional[models.Seminar], seminar_id: int) -> Dict[str, Any]:
    if seminar is None:
        return {"id": seminar_id, "name": None}
    return {
        "id": seminar.id,
        "name": seminar.name,
        "venue": seminar.venue,
        "location": seminar.location,
        "start_date": seminar.start_date.isoformat() if seminar.start_date else None,
        "end_date": seminar.end_date.isoformat() if seminar.end_date else None,
    }


def _insert_additional_persons(db: Session, registration_id: int, persons, amounts) -> None:
    if not persons:
        return
    rows = [
        {
            "registration_id": registration_id,
            "name": person.name,
            "category_id": person.category_id,
            "slab_id": person.slab_id,
            "amount": amount,
        }
        for person, amount in zip(persons, amounts)
    ]
    db.execute(insert(models.AdditionalPerson), rows)


def create_registration(
    db: Session,
    user_id: int,
    seminar_id: int,
    category_id: int,
    slab_id: int,
    delegate_type: str,
    base_amount: Any,
    additional_persons: Iterable[Any] = (),
    gateway_order_id: Optional[str] = None,
    gateway_payment_id: Optional[str] = None,
) -> RegistrationOutcome:
    persons = list(additional_persons or [])
    normalized_type = normalize_delegate_type(delegate_type)
    person_amounts = [to_decimal(p.amount) for p in persons]
    amount = total_amount(base_amount, persons)

    try:
        existing = _existing_registration(db, user_id, seminar_id)
        if existing is not None:
            logger.info("User %s already registered for seminar %s as %s", user_id, seminar_id, existing.registration_no)
            outcome = _already_registered(db, existing)
            db.rollback()
            return outcome

        user = db.get(models.User, user_id, with_for_update=True)
        if user is None:
            raise UserNotFound(f"User {user_id} not found")

        registration_no = sequences.next_registration_no(db)

        membership_no = user.membership_no
        if not membership_no:
            membership_no = sequences.next_membership_no(db, user.membership_type)
            user.membership_no = membership_no
            user.is_boa_member = True

        confirmed = bool(gateway_payment_id)
        status = models.REGISTRATION_CONFIRMED if confirmed else models.REGISTRATION_PENDING

        registration = models.Registration(
            registration_no=registration_no,
            user_id=user_id,
            seminar_id=seminar_id,
            category_id=category_id,
            slab_id=slab_id,
            delegate_type=normalized_type,
            amount=amount,
            status=status,
            payment_method=GATEWAY_PAYMENT_METHOD if confirmed else None,
            payment_date=datetime.now(timezone.utc) if confirmed else None,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
        )
        db.add(registration)
        db.flush()

        _insert_additional_persons(db, registration.id, persons, person_amounts)

        outcome = RegistrationOutcome(
            id=registration.id,
            registration_no=registration_no,
            membership_no=membership_no,
            amount=amount,
            status=status,
        )
        if confirmed:
            note = notifications.enqueue(db, notifications.EVENT_REGISTRATION_CONFIRMED, {
                "registration_id": registration.id,
                "registration_no": registration_no,
                "user": _user_info(user),
                "seminar": _seminar_info(db.get(models.Seminar, seminar_id), seminar_id),
                "amount": str(amount),
            })
            outcome.outbox_ids.append(note.id)

        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _existing_registration(db, user_id, seminar_id)
        if existing is not None:
            logger.warning("Concurrent duplicate registration for user %s seminar %s", user_id, seminar_id)
            outcome = _already_registered(db, existing)
            db.rollback()
            return outcome
        raise
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Created registration id=%s no=%s user=%s seminar=%s amount=%s status=%s",
        outcome.id, outcome.registration_no, user_id, seminar_id, outcome.amount, outcome.status,
    )
    return outcome


def update_payment_status(
    db: Session,
    registration_id: int,
    status: str,
    transaction_ref: Optional[str] = None,
    payment_method: Optional[str] = None,
) -> PaymentUpdateOutcome:
    if status not in models.REGISTRATION_STATUSES:
        raise ValidationError(f"Invalid payment status: {status!r}")

    try:
        registration = db.get(models.Registration, registration_id, with_for_update=True)
        if registration is None:
            raise RegistrationNotFound(f"Registration {registration_id} not found")

        registration.status = status
        registration.transaction_ref = transaction_ref
        registration.payment_method = payment_method
        registration.payment_date = datetime.now(timezone.utc)
        db.flush()

        outcome = PaymentUpdateOutcome(registration_id=registration_id, status=status)
        if status == models.REGISTRATION_CONFIRMED:
            details = (
                db.query(models.Registration.amount, models.User, models.Seminar)
                .join(models.User, models.Registration.user_id == models.User.id)
                .join(models.Seminar, models.Registration.seminar_id == models.Seminar.id)
                .filter(models.Registration.id == registration_id)
                .first()
            )
            if details is not None:
                amount, user, seminar = details
                note = notifications.enqueue(db, notifications.EVENT_PAYMENT_RECEIVED, {
                    "registration_id": registration_id,
                    "full_name": user.full_name,
                    "amount": str(amount),
                    "seminar_name": seminar.name,
                    "seminar_id": seminar.id,
                })
                outcome.outbox_ids.append(note.id)

        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Registration %s payment status -> %s (ref=%s)", registration_id, status, transaction_ref)
    return outcome


def list_user_registrations(db: Session, user_id: int) -> List[models.Registration]:
    return (
        db.query(models.Registration)
        .options(
            joinedload(models.Registration.seminar),
            joinedload(models.Registration.category),
            joinedload(models.Registration.slab),
            selectinload(models.Registration.additional_persons).joinedload(models.AdditionalPerson.category),
            selectinload(models.Registration.additional_persons).joinedload(models.AdditionalPerson.slab),
        )
        .filter(models.Registration.user_id == user_id)
        .order_by(models.Registration.created_at.desc(), models.Registration.id.desc())
        .all()
    )
