from datetime import date
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from registration_service import database, main, models, notifications, payments


class RecordingSender(notifications.NotificationSender):
    def __init__(self):
        self.calls = []

    def send_registration_confirmation(self, user, seminar, amount):
        self.calls.append(("registration_email", user, seminar, amount))

    def send_membership_confirmation(self, membership):
        self.calls.append(("membership_email", membership))

    def log_admin_activity(self, activity_type, payload):
        self.calls.append(("activity", activity_type, payload))

    def of_kind(self, kind):
        return [c for c in self.calls if c[0] == kind]


@pytest.fixture(autouse=True)
def db_engine():
    database.dispose_db()
    database.init_db("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    yield database.engine
    database.Base.metadata.drop_all(bind=database.engine)
    database.dispose_db()


@pytest.fixture
def db(db_engine):
    session = database.SessionLocal()
    yield session
    session.close()


@pytest.fixture
def seed(db_engine):
    session = database.SessionLocal()
    seminar = models.Seminar(
        name="BOA Annual Conference 2026",
        location="Patna",
        venue="Gyan Bhawan",
        start_date=date(2026, 11, 20),
        end_date=date(2026, 11, 22),
    )
    session.add(seminar)
    session.flush()
    member_category = models.FeeCategory(seminar_id=seminar.id, name="BOA Member")
    accompanying_category = models.FeeCategory(seminar_id=seminar.id, name="Accompanying Person")
    slab = models.FeeSlab(seminar_id=seminar.id, label="Early Bird")
    applicant = models.User(
        title="Dr.", first_name="Anita", surname="Kumari", email="anita@example.org",
        mobile="9000000001", membership_type="Life Membership",
    )
    member = models.User(
        title="Dr.", first_name="Ravi", surname="Shankar", email="ravi@example.org",
        membership_type="Annual", membership_no="YL007", is_boa_member=True,
    )
    session.add_all([member_category, accompanying_category, slab, applicant, member])
    session.commit()
    ids = SimpleNamespace(
        seminar_id=seminar.id,
        category_id=member_category.id,
        accompanying_category_id=accompanying_category.id,
        slab_id=slab.id,
        user_id=applicant.id,
        member_id=member.id,
    )
    session.close()
    return ids


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def store():
    return payments.InMemoryPaymentStore()


@pytest.fixture
def client(store, sender):
    main.app.dependency_overrides[main.get_payment_store] = lambda: store
    main.app.dependency_overrides[main.get_sender_factory] = lambda: (lambda db: sender)
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
