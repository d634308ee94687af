from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from registration_service.database import Base

DELEGATE_TYPES = ("boa-member", "non-boa-member", "accompanying-person")

REGISTRATION_PENDING = "pending"
REGISTRATION_CONFIRMED = "confirmed"
REGISTRATION_STATUSES = (REGISTRATION_PENDING, REGISTRATION_CONFIRMED)

PAYMENT_PENDING = "pending"
PAYMENT_VERIFIED = "verified"

OUTBOX_PENDING = "pending"
OUTBOX_SENT = "sent"
OUTBOX_FAILED = "failed"


def _in(column, values):
    return "{} IN ({})".format(column, ", ".join("'{}'".format(v) for v in values))


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(20), nullable=True)
    first_name = Column(String(100), nullable=False)
    surname = Column(String(100), nullable=True)
    email = Column(String(255), nullable=False, index=True)
    mobile = Column(String(20), nullable=True)
    membership_type = Column(String(100), nullable=True)
    membership_no = Column(String(32), nullable=True, unique=True, index=True)
    is_boa_member = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    registrations = relationship("Registration", back_populates="user")

    @property
    def full_name(self):
        return " ".join(p for p in (self.first_name, self.surname) if p)


class Seminar(Base):
    __tablename__ = "seminars"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    location = Column(String(255), nullable=True)
    venue = Column(String(255), nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)


class FeeCategory(Base):
    __tablename__ = "fee_categories"
    id = Column(Integer, primary_key=True, index=True)
    seminar_id = Column(Integer, ForeignKey("seminars.id"), nullable=True, index=True)
    name = Column(String(150), nullable=False)


class FeeSlab(Base):
    __tablename__ = "fee_slabs"
    id = Column(Integer, primary_key=True, index=True)
    seminar_id = Column(Integer, ForeignKey("seminars.id"), nullable=True, index=True)
    label = Column(String(150), nullable=False)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)


class Registration(Base):
    __tablename__ = "registrations"
    id = Column(Integer, primary_key=True, index=True)
    registration_no = Column(String(20), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    seminar_id = Column(Integer, ForeignKey("seminars.id"), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("fee_categories.id"), nullable=False)
    slab_id = Column(Integer, ForeignKey("fee_slabs.id"), nullable=False)
    delegate_type = Column(String(30), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=REGISTRATION_PENDING)
    transaction_ref = Column(String(128), nullable=True)
    payment_method = Column(String(50), nullable=True)
    payment_date = Column(DateTime(timezone=True), nullable=True)
    gateway_order_id = Column(String(128), nullable=True)
    gateway_payment_id = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="registrations")
    seminar = relationship("Seminar")
    category = relationship("FeeCategory")
    slab = relationship("FeeSlab")
    additional_persons = relationship(
        "AdditionalPerson", back_populates="registration", order_by="AdditionalPerson.id"
    )

    @property
    def seminar_name(self):
        return self.seminar.name if self.seminar else None

    @property
    def location(self):
        return self.seminar.location if self.seminar else None

    @property
    def start_date(self):
        return self.seminar.start_date if self.seminar else None

    @property
    def end_date(self):
        return self.seminar.end_date if self.seminar else None

    @property
    def category_name(self):
        return self.category.name if self.category else None

    @property
    def slab_label(self):
        return self.slab.label if self.slab else None

    __table_args__ = (
        UniqueConstraint("user_id", "seminar_id", name="uq_registration_user_seminar"),
        CheckConstraint(_in("delegate_type", DELEGATE_TYPES), name="check_registration_delegate_type"),
        CheckConstraint(_in("status", REGISTRATION_STATUSES), name="check_registration_status"),
    )


class AdditionalPerson(Base):
    __tablename__ = "additional_persons"
    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(Integer, ForeignKey("registrations.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    category_id = Column(Integer, ForeignKey("fee_categories.id"), nullable=False)
    slab_id = Column(Integer, ForeignKey("fee_slabs.id"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)

    registration = relationship("Registration", back_populates="additional_persons")
    category = relationship("FeeCategory")
    slab = relationship("FeeSlab")

    @property
    def category_name(self):
        return self.category.name if self.category else None

    @property
    def slab_label(self):
        return self.slab.label if self.slab else None


class MembershipSequence(Base):
    __tablename__ = "membership_sequences"
    prefix = Column(String(8), primary_key=True)
    last_serial = Column(Integer, nullable=False, default=0)


class MembershipRegistration(Base):
    __tablename__ = "membership_registrations"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=True)
    father_name = Column(String(200), nullable=True)
    qualification = Column(String(200), nullable=True)
    year_passing = Column(String(10), nullable=True)
    dob = Column(String(20), nullable=True)
    institution = Column(String(255), nullable=True)
    working_place = Column(String(255), nullable=True)
    sex = Column(String(20), nullable=True)
    age = Column(Integer, nullable=True)
    address = Column(Text, nullable=True)
    mobile = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)
    membership_type = Column(String(100), nullable=True)
    transaction_id = Column(String(128), nullable=False, unique=True)
    gateway_ref = Column(String(128), nullable=True)
    amount = Column(Numeric(10, 2), nullable=True)
    payment_status = Column(String(20), nullable=False, default="completed")
    raw_payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PendingPaymentRecord(Base):
    __tablename__ = "pending_payments"
    transaction_id = Column(String(128), primary_key=True)
    amount = Column(Numeric(10, 2), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=PAYMENT_PENDING)
    gateway_ref = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(_in("status", (PAYMENT_PENDING, PAYMENT_VERIFIED)), name="check_pending_payment_status"),
    )


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"
    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=OUTBOX_PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    sent_at = Column(DateTime(timezone=True), nullable=True)


class ActivityNotification(Base):
    __tablename__ = "activity_notifications"
    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(20), nullable=False, default="activity")
    activity_type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=True)
    seminar_id = Column(Integer, ForeignKey("seminars.id"), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
