"""
Registration and membership number allocation.

Registration numbers are random per call (REG-<year>-NNNN). Membership numbers
are <prefix><serial:03d> where the prefix comes from the membership type and
the serial is taken from a row-locked per-prefix counter, seeded from the
highest number already issued for that prefix.
"""
import logging
import random
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from registration_service import config, models
from registration_service.errors import SequenceExhausted

logger = logging.getLogger("registration-service.sequences")

# Order matters: "5-YEARLY" must win over "YEARLY", "LIFETIME" over "LIFE".
MEMBERSHIP_PREFIX_RULES = (
    (("LIFETIME", "LIFE"), "LM"),
    (("5-YEARLY", "5 YEARLY", "5YEARLY"), "5YL"),
    (("YEARLY", "ANNUAL"), "YL"),
    (("STUDENT",), "ST"),
    (("HONORARY",), "HN"),
)
DEFAULT_MEMBERSHIP_PREFIX = "STD"


def generate_registration_no(year: Optional[int] = None, rng: Optional[random.Random] = None) -> str:
    year = year or datetime.now(timezone.utc).year
    draw = (rng or random).randint(0, 9999)
    return f"REG-{year}-{draw:04d}"


def next_registration_no(db: Session, attempts: Optional[int] = None) -> str:
    """Draw registration numbers until one is not already taken."""
    attempts = attempts or config.REGISTRATION_NO_ATTEMPTS
    for _ in range(attempts):
        candidate = generate_registration_no()
        taken = db.query(models.Registration.id).filter(
            models.Registration.registration_no == candidate
        ).first()
        if not taken:
            return candidate
        logger.warning("Registration number %s already taken, drawing again", candidate)
    raise SequenceExhausted(f"No free registration number after {attempts} attempts")


def membership_prefix(membership_type: Optional[str]) -> str:
    text = (membership_type or "").upper()
    for needles, prefix in MEMBERSHIP_PREFIX_RULES:
        if any(n in text for n in needles):
            return prefix
    return DEFAULT_MEMBERSHIP_PREFIX


def format_membership_no(prefix: str, serial: int) -> str:
    return f"{prefix}{serial:03d}"


def parse_serial(membership_no: Optional[str], prefix: str) -> Optional[int]:
    """Numeric suffix of membership_no after prefix, or None.

    STD001 is not an ST serial: the remainder must be all digits.
    """
    if not membership_no or not membership_no.startswith(prefix):
        return None
    rest = membership_no[len(prefix):]
    if not rest.isdigit():
        return None
    return int(rest)


def max_existing_serial(db: Session, prefix: str) -> int:
    rows = db.query(models.User.membership_no).filter(
        models.User.membership_no.like(f"{prefix}%")
    ).all()
    highest = 0
    for (membership_no,) in rows:
        serial = parse_serial(membership_no, prefix)
        if serial is not None and serial > highest:
            highest = serial
    return highest


def _locked_counter(db: Session, prefix: str) -> models.MembershipSequence:
    counter = (
        db.query(models.MembershipSequence)
        .filter(models.MembershipSequence.prefix == prefix)
        .with_for_update()
        .first()
    )
    if counter is not None:
        return counter

    # First use of this prefix: seed from what is already issued.
    try:
        with db.begin_nested():
            db.add(models.MembershipSequence(prefix=prefix, last_serial=max_existing_serial(db, prefix)))
    except IntegrityError:
        logger.info("Membership sequence %s seeded concurrently, re-reading", prefix)

    return (
        db.query(models.MembershipSequence)
        .filter(models.MembershipSequence.prefix == prefix)
        .with_for_update()
        .one()
    )


def next_membership_no(db: Session, membership_type: Optional[str]) -> str:
    """Allocate the next membership number inside the caller's transaction."""
    prefix = membership_prefix(membership_type)
    counter = _locked_counter(db, prefix)
    # Numbers assigned by hand (admin edits, bulk import) can run ahead of the counter.
    serial = max(counter.last_serial, max_existing_serial(db, prefix)) + 1
    counter.last_serial = serial
    db.flush()
    membership_no = format_membership_no(prefix, serial)
    logger.info("Allocated membership number %s (type=%r)", membership_no, membership_type)
    return membership_no
