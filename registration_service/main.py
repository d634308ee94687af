# registration_service/main.py
from typing import Optional
import hmac
import logging

from fastapi import FastAPI, HTTPException, BackgroundTasks, Depends, Header, Response
from fastapi.middleware.cors import CORSMiddleware
import pydantic
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from registration_service import config, database, events, notifications, payments, registrations, schemas
from registration_service.database import get_db
from registration_service.errors import (
    RegistrationNotFound,
    SequenceExhausted,
    UserNotFound,
    ValidationError,
)

# logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger("registration-service")

app = FastAPI(title="Registration Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

payment_store: Optional[payments.PaymentStore] = None

# Startup: initialize DB, the pending-payment store and the background workers
@app.on_event("startup")
def startup():
    global payment_store
    logger.info("Initializing DB and payment store (%s)...", config.PAYMENT_STORE_BACKEND)
    database.init_db(config.DATABASE_URL)
    payment_store = payments.build_store(config.PAYMENT_STORE_BACKEND, session_factory=lambda: database.SessionLocal())
    if config.START_BACKGROUND_WORKERS:
        events.start_consumer(config.RABBITMQ_URL, payment_store, config.PAYMENT_QUEUE)
        notifications.start_outbox_worker()
    logger.info("Startup complete.")

def get_payment_store() -> payments.PaymentStore:
    global payment_store
    if payment_store is None:
        payment_store = payments.build_store(config.PAYMENT_STORE_BACKEND, session_factory=lambda: database.SessionLocal())
    return payment_store

def get_sender_factory() -> notifications.SenderFactory:
    return notifications.default_sender_factory

# Identity comes from the upstream auth gateway
def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return int(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user identity")

def require_admin_token(x_admin_token: Optional[str] = Header(None)):
    if config.ADMIN_API_TOKEN and not hmac.compare_digest(x_admin_token or "", config.ADMIN_API_TOKEN):
        raise HTTPException(status_code=403, detail="Admin token required")

def _db_error(message: str, exc: SQLAlchemyError):
    # surface the driver message for operators
    orig = getattr(exc, "orig", None)
    return HTTPException(status_code=500, detail={"message": message, "error": str(orig or exc)})

# Root and health endpoints
@app.get("/")
def root():
    return {
        "service": "Registration Service",
        "status": "running",
        "endpoints": ["/registrations", "/payments", "/docs", "/openapi.json"],
    }

@app.get("/health")
def health():
    try:
        database.ping()
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}

# Create a seminar registration
@app.post("/registrations", response_model=schemas.RegistrationResult, status_code=201)
def create_registration(
    body: schemas.RegistrationCreate,
    background_tasks: BackgroundTasks,
    response: Response,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    sender_factory=Depends(get_sender_factory),
):
    try:
        outcome = registrations.create_registration(
            db,
            user_id=user_id,
            seminar_id=body.seminar_id,
            category_id=body.category_id,
            slab_id=body.slab_id,
            delegate_type=body.delegate_type.value,
            base_amount=body.amount,
            additional_persons=body.additional_persons,
            gateway_order_id=body.razorpay_order_id,
            gateway_payment_id=body.razorpay_payment_id,
        )
    except UserNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SequenceExhausted as e:
        logger.error("Registration number allocation failed for user=%s: %s", user_id, e)
        raise HTTPException(status_code=503, detail=str(e))
    except SQLAlchemyError as e:
        logger.exception("Create registration failed for user=%s body=%s", user_id, body.model_dump(mode="json"))
        raise _db_error("Failed to create registration", e)

    summary = schemas.RegistrationSummary(
        id=outcome.id,
        registration_no=outcome.registration_no,
        membership_no=outcome.membership_no,
        amount=outcome.amount,
        status=outcome.status,
    )
    if outcome.already_registered:
        response.status_code = 409
        return schemas.RegistrationResult(
            success=False,
            already_registered=True,
            message="You are already registered for this seminar",
            registration=summary,
        )

    if outcome.outbox_ids:
        background_tasks.add_task(notifications.deliver_after_commit, outcome.outbox_ids, sender_factory)
    return schemas.RegistrationResult(success=True, message="Registration created successfully", registration=summary)

# List the caller's registrations with nested additional persons
@app.get("/registrations/my-registrations", response_model=schemas.RegistrationList)
def my_registrations(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    try:
        results = registrations.list_user_registrations(db, user_id)
        items = [schemas.RegistrationOut.model_validate(r) for r in results]
    except SQLAlchemyError as e:
        logger.exception("Fetching registrations failed for user=%s", user_id)
        raise _db_error("Failed to fetch registrations", e)
    return schemas.RegistrationList(count=len(items), registrations=items)

# Update payment status of a registration (admin / gateway callback)
@app.put("/registrations/{registration_id}/payment", dependencies=[Depends(require_admin_token)])
def update_payment(
    registration_id: int,
    body: schemas.PaymentStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    sender_factory=Depends(get_sender_factory),
):
    try:
        outcome = registrations.update_payment_status(
            db, registration_id, body.status.value, body.transaction_id, body.payment_method
        )
    except RegistrationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError as e:
        logger.exception("Update payment failed for registration=%s", registration_id)
        raise _db_error("Failed to update payment status", e)

    if outcome.outbox_ids:
        background_tasks.add_task(notifications.deliver_after_commit, outcome.outbox_ids, sender_factory)
    return {"success": True, "message": "Payment status updated successfully"}

# Out-of-band membership payments
@app.post("/payments/create-payment")
def create_payment(body: schemas.PaymentCreate, store: payments.PaymentStore = Depends(get_payment_store)):
    # the form is persisted only after payment, so reject what the table cannot hold now
    try:
        application = schemas.MembershipApplication.model_validate(body.user_data)
    except pydantic.ValidationError as e:
        errors = [{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in e.errors()]
        raise HTTPException(status_code=400, detail={"message": "Invalid membership application", "errors": errors})
    try:
        store.create(body.transaction_id, body.amount, {**body.user_data, **application.model_dump(exclude_unset=True)})
    except SQLAlchemyError as e:
        logger.exception("Create payment failed for transaction=%s", body.transaction_id)
        raise _db_error("Failed to create payment request", e)
    logger.info("Created pending payment transaction=%s amount=%s", body.transaction_id, body.amount)
    return {"success": True, "transaction_id": body.transaction_id, "message": "Payment request created"}

@app.post("/payments/check-payment", response_model=schemas.PaymentCheckResult)
def check_payment(
    body: schemas.PaymentCheck,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    store: payments.PaymentStore = Depends(get_payment_store),
    sender_factory=Depends(get_sender_factory),
):
    outbox_ids = []

    def persist(session, entry):
        membership, note = payments.persist_membership(session, entry)
        if note is not None:
            outbox_ids.append(note.id)
        return membership.id

    try:
        result = store.poll(db, body.transaction_id, persist)
    except SQLAlchemyError as e:
        logger.exception("Check payment failed for transaction=%s", body.transaction_id)
        raise _db_error("Failed to check payment status", e)

    if result.status == payments.POLL_NOT_FOUND:
        return schemas.PaymentCheckResult(success=False, payment_verified=False, message="Payment not found")
    if result.status == payments.POLL_PENDING:
        return schemas.PaymentCheckResult(success=True, payment_verified=False, message="Payment pending")

    if outbox_ids:
        background_tasks.add_task(notifications.deliver_after_commit, outbox_ids, sender_factory)
    logger.info("Transaction %s verified, membership id=%s", body.transaction_id, result.registration_id)
    return schemas.PaymentCheckResult(
        success=True,
        payment_verified=True,
        registration_id=result.registration_id,
        message="Payment verified and membership registered",
    )

# Gateway webhook: acknowledged whether or not the transaction is known
@app.post("/payments/webhook/payment-success")
def payment_webhook(body: schemas.PaymentWebhook, store: payments.PaymentStore = Depends(get_payment_store)):
    if store.confirm(body.transaction_id, body.upi_ref):
        logger.info("Webhook verified transaction=%s ref=%s", body.transaction_id, body.upi_ref)
    else:
        logger.info("Webhook for unknown transaction=%s ignored", body.transaction_id)
    return {"success": True}

@app.post("/payments/verify-manual")
def verify_manual(body: schemas.PaymentCheck, store: payments.PaymentStore = Depends(get_payment_store)):
    if not store.confirm(body.transaction_id):
        raise HTTPException(status_code=404, detail="Payment not found")
    logger.info("Manually verified transaction=%s", body.transaction_id)
    return {"success": True, "message": "Payment manually verified"}
