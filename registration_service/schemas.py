from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from registration_service.errors import InvalidDelegateType
from registration_service.registrations import normalize_delegate_type


class DelegateType(str, Enum):
    BOA_MEMBER = "boa-member"
    NON_BOA_MEMBER = "non-boa-member"
    ACCOMPANYING_PERSON = "accompanying-person"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class AdditionalPersonIn(BaseModel):
    name: str = Field(min_length=1)
    category_id: int
    slab_id: int
    amount: Decimal = Field(ge=0, decimal_places=2)


class RegistrationCreate(BaseModel):
    seminar_id: int
    category_id: int
    slab_id: int
    delegate_type: DelegateType
    amount: Decimal = Field(ge=0, decimal_places=2)
    additional_persons: List[AdditionalPersonIn] = []
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None

    @field_validator("delegate_type", mode="before")
    @classmethod
    def _normalize_delegate_type(cls, value):
        # accept display labels such as "BOA Member" as well as enum tokens
        if isinstance(value, str):
            try:
                return normalize_delegate_type(value)
            except InvalidDelegateType as e:
                raise ValueError(str(e)) from None
        return value


class RegistrationSummary(BaseModel):
    id: int
    registration_no: str
    membership_no: Optional[str] = None
    amount: Decimal
    status: str


class RegistrationResult(BaseModel):
    success: bool
    message: str
    already_registered: bool = False
    registration: RegistrationSummary


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus
    transaction_id: Optional[str] = None
    payment_method: Optional[str] = None


class AdditionalPersonOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    category_id: int
    slab_id: int
    amount: Decimal
    category_name: Optional[str] = None
    slab_label: Optional[str] = None


class RegistrationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    registration_no: str
    user_id: int
    seminar_id: int
    category_id: int
    slab_id: int
    delegate_type: str
    amount: Decimal
    status: str
    transaction_ref: Optional[str] = None
    payment_method: Optional[str] = None
    payment_date: Optional[datetime] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    created_at: Optional[datetime] = None
    seminar_name: Optional[str] = None
    location: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    category_name: Optional[str] = None
    slab_label: Optional[str] = None
    additional_persons: List[AdditionalPersonOut] = []


class RegistrationList(BaseModel):
    success: bool = True
    count: int
    registrations: List[RegistrationOut]


class MembershipApplication(BaseModel):
    """Membership form carried by a pending payment. Unknown keys are kept."""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    name: Optional[str] = Field(default=None, max_length=200)
    father_name: Optional[str] = Field(default=None, max_length=200)
    qualification: Optional[str] = Field(default=None, max_length=200)
    year_passing: Optional[str] = Field(default=None, max_length=10)
    dob: Optional[str] = Field(default=None, max_length=20)
    institution: Optional[str] = Field(default=None, max_length=255)
    working_place: Optional[str] = Field(default=None, max_length=255)
    sex: Optional[str] = Field(default=None, max_length=20)
    age: Optional[int] = Field(default=None, ge=0)
    address: Optional[str] = None
    mobile: Optional[str] = Field(default=None, max_length=20)
    email: Optional[str] = Field(default=None, max_length=255)
    membership_type: Optional[str] = Field(default=None, max_length=100)

    @field_validator("age", mode="before")
    @classmethod
    def _blank_age(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class PaymentCreate(BaseModel):
    transaction_id: str = Field(min_length=1)
    amount: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    user_data: Dict[str, Any] = {}


class PaymentCheck(BaseModel):
    transaction_id: str = Field(min_length=1)


class PaymentWebhook(BaseModel):
    transaction_id: str = Field(min_length=1)
    amount: Optional[Decimal] = None
    upi_ref: Optional[str] = None


class PaymentCheckResult(BaseModel):
    success: bool
    payment_verified: bool
    registration_id: Optional[int] = None
    message: str
