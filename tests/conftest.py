"""Shared test fixtures for the billing API test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- seed_data: two users, a paid course, a free course
- login: helper that signs a user in through /auth/login
- stripe_event / post_webhook: build and deliver a (pre-verified) webhook
"""

import json
from unittest.mock import patch

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from app.extensions import db as _db
from app.models.course import Course
from app.models.user import User
from app.services import activation_service

PASSWORD = "correct-horse-battery"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture(autouse=True)
def fresh_guard():
    """The activation guard is process-wide; start every test without it."""
    activation_service._guard = None
    yield
    activation_service._guard = None


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def seed_data(app, db_session):
    """Seed the database with two learners and two courses.

    Returns plain IDs so tests can use them even when objects are
    detached from the session.
    """
    with app.app_context():
        learner = User(
            email="learner@example.com",
            password_hash=generate_password_hash(PASSWORD),
            full_name="Lena Learner",
        )
        other = User(
            email="other@example.com",
            password_hash=generate_password_hash(PASSWORD),
            full_name="Otto Other",
        )
        inactive = User(
            email="gone@example.com",
            password_hash=generate_password_hash(PASSWORD),
            full_name="Gone User",
            is_active=False,
        )
        paid_course = Course(title="Watercolour Basics", price_cents=4900, days_of_access=30)
        free_course = Course(title="Welcome Tour", price_cents=0)
        draft_course = Course(title="Unreleased", price_cents=9900, is_published=False)
        _db.session.add_all([learner, other, inactive, paid_course, free_course, draft_course])
        _db.session.commit()

        return {
            "user_id": learner.id,
            "user_email": learner.email,
            "other_id": other.id,
            "other_email": other.email,
            "inactive_email": inactive.email,
            "course_id": paid_course.id,
            "free_course_id": free_course.id,
            "draft_course_id": draft_course.id,
        }


@pytest.fixture
def login(client):
    """Return a function that logs a user in via the JSON login route."""

    def _login(email="learner@example.com", password=PASSWORD):
        resp = client.post("/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.get_json()
        return resp

    return _login


@pytest.fixture
def stripe_event():
    """Build a verified Stripe event as construct_event returns it."""

    def _make(event_id, event_type, obj):
        return {
            "id": event_id,
            "type": event_type,
            "data": {"object": obj},
            "created": 1798761600,
            "livemode": False,
        }

    return _make


@pytest.fixture
def post_webhook(client):
    """Deliver an event through /stripe/webhooks with signature checks patched."""

    def _post(event):
        with patch(
            "app.services.stripe_service.stripe.Webhook.construct_event",
            return_value=event,
        ):
            return client.post(
                "/stripe/webhooks",
                data=json.dumps(event),
                content_type="application/json",
                headers={"Stripe-Signature": "t=1,v1=valid"},
            )

    return _post
