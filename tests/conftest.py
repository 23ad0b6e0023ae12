"""
Shared fixtures for the BundleHub test suite.

Every test gets its own in-memory SQLite database (StaticPool, so the app's
sessions and the test's session see the same data), a recording mailer and
an in-memory blob store, all wired through an AppContext.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ["BREVO_API_KEY"] = ""

from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from bundlehub.core.context import build_context
from bundlehub.core.database import Base, utcnow
from bundlehub.core.email import EmailDeliveryError
from bundlehub.core.rate_limit import RateLimiter
from bundlehub.core.security import create_user_token
from bundlehub.core.storage import StorageError
from bundlehub.main import create_app
from bundlehub.models.bundle import Bundle
from bundlehub.models.order import Order, OrderItem, OrderStatus
from bundlehub.models.otp import OTPType, OTPVerification
from bundlehub.models.user import Role, User


class RecordingMailer:
    """Collects outgoing mail; set ``fail = True`` to simulate a provider outage."""

    def __init__(self):
        self.sent: List[dict] = []
        self.fail = False

    async def send(self, to, subject, html_body, text_body=None, attachments=None):
        if self.fail:
            raise EmailDeliveryError("provider unavailable")
        self.sent.append({
            "to": to, "subject": subject, "html": html_body, "text": text_body, "attachments": list(attachments or []),
        })
        return f"msg-{len(self.sent)}"

    def to(self, email: str) -> List[dict]:
        return [m for m in self.sent if m["to"] == email]


class MemoryBlobStore:
    def __init__(self):
        self.objects = {}
        self.presigned = []
        self.fail = False

    def presign_get(self, object_key: str, ttl_seconds: int) -> str:
        if self.fail:
            raise StorageError("presign failed")
        self.presigned.append((object_key, ttl_seconds))
        return f"https://blobs.test/{object_key}?X-Amz-Expires={ttl_seconds}"

    def put(self, object_key: str, data: bytes, content_type=None) -> str:
        self.objects[object_key] = (data, content_type)
        return object_key


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def context(engine, mailer, blob_store):
    return build_context(
        engine=engine,
        mailer=mailer,
        blob_store=blob_store,
        rate_limiters={
            "auth": RateLimiter(1000, 900),
            "general": RateLimiter(1000, 900),
            "upload": RateLimiter(1000, 3600),
        },
    )


@pytest.fixture
def db(context):
    session = context.session_factory()
    yield session
    session.close()


@pytest.fixture
def app(context):
    return create_app(context)


@pytest.fixture
def client(app):
    return TestClient(app)


# ==================== Factories ====================

@pytest.fixture
def make_user(db):
    def factory(email="buyer@x.com", role=Role.CUSTOMER, is_active=True, name="Buyer", password_hash=None):
        user = User(email=email, name=name, role=role, is_active=is_active, password_hash=password_hash)
        db.add(user)
        db.commit()
        return user
    return factory


@pytest.fixture
def make_bundle(db):
    def factory(bundle_id="B1", name="UI Kit", download_url="s3://bundles/ui-kit/ui-kit.zip", is_active=True, price="499.00"):
        bundle = Bundle(
            id=bundle_id,
            name=name,
            slug=f"{bundle_id.lower()}-{name.lower().replace(' ', '-')}",
            price=Decimal(price),
            download_url=download_url,
            is_active=is_active,
        )
        db.add(bundle)
        db.commit()
        return bundle
    return factory


@pytest.fixture
def make_order(db):
    def factory(bundle, email="buyer@x.com", status=OrderStatus.PENDING, user=None, name="Buyer", **fields):
        order = Order(
            email=email,
            customer_name=name,
            user_id=user.id if user else None,
            total_amount=bundle.price,
            status=status,
            email_verified=status != OrderStatus.PENDING,
            items=[OrderItem(bundle_id=bundle.id, quantity=1, price=bundle.price)],
            **fields,
        )
        if status in (OrderStatus.APPROVED, OrderStatus.COMPLETED):
            order.approved_at = order.approved_at or utcnow()
        db.add(order)
        db.commit()
        return order
    return factory


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@bundlehub.test", role=Role.ADMIN, name="Admin")


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_user_token(user)}"}


def latest_otp(db, email: str, otp_type: Optional[OTPType] = None, order_id: Optional[str] = None) -> OTPVerification:
    db.expire_all()
    query = db.query(OTPVerification).filter(OTPVerification.email == email)
    if otp_type is not None:
        query = query.filter(OTPVerification.type == otp_type)
    if order_id is not None:
        query = query.filter(OTPVerification.order_id == order_id)
    return query.order_by(OTPVerification.id.desc()).first()


def expire(db, record, minutes: int = 1):
    record.expires_at = utcnow() - timedelta(minutes=minutes)
    db.commit()
