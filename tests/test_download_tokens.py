from datetime import timedelta

import jwt
import pytest

from bundlehub.core.config import settings
from bundlehub.core.database import utcnow
from bundlehub.core.errors import ForbiddenError
from bundlehub.core.security import create_user_token
from bundlehub.models.download_token import DownloadToken
from bundlehub.models.order import OrderStatus
from bundlehub.services import download_tokens

S = OrderStatus


@pytest.fixture
def buyer(make_user):
    return make_user(email="buyer@x.com")


@pytest.fixture
def bundle(make_bundle):
    return make_bundle()


def test_issue_for_approved_order(db, buyer, bundle, make_order):
    order = make_order(bundle, status=S.APPROVED, user=buyer)

    record = download_tokens.issue_token(db, buyer.id, bundle.id, order.id, ip_address="10.0.0.1")

    assert record.order_id == order.id
    assert record.is_used is False
    assert record.ip_address == "10.0.0.1"
    ttl = timedelta(hours=settings.DOWNLOAD_TOKEN_TTL_HOURS)
    assert ttl - timedelta(minutes=1) < record.expires_at - utcnow() <= ttl

    claims = jwt.decode(record.token, settings.DOWNLOAD_TOKEN_SECRET, algorithms=["HS256"])
    assert claims["userId"] == buyer.id
    assert claims["bundleId"] == bundle.id
    assert claims["orderId"] == order.id
    assert claims["purpose"] == "download"


def test_completed_order_still_grants_access(db, buyer, bundle, make_order):
    order = make_order(bundle, status=S.COMPLETED, user=buyer)

    record = download_tokens.issue_token(db, buyer.id, bundle.id, order.id)

    assert download_tokens.verify_token(db, record.token) is not None


def test_issue_reuses_live_token(db, buyer, bundle, make_order):
    order = make_order(bundle, status=S.APPROVED, user=buyer)

    first = download_tokens.issue_token(db, buyer.id, bundle.id, order.id)
    second = download_tokens.issue_token(db, buyer.id, bundle.id, order.id)

    assert first.token == second.token
    assert db.query(DownloadToken).count() == 1


def test_issue_mints_new_token_once_used(db, buyer, bundle, make_order):
    order = make_order(bundle, status=S.APPROVED, user=buyer)
    first = download_tokens.issue_token(db, buyer.id, bundle.id, order.id)
    first_token = first.token
    assert download_tokens.mark_used(db, first_token)
    db.commit()

    second = download_tokens.issue_token(db, buyer.id, bundle.id, order.id)

    assert second.token != first_token


def test_issue_removes_expired_tokens(db, buyer, bundle, make_order):
    order = make_order(bundle, status=S.APPROVED, user=buyer)
    stale = download_tokens.issue_token(db, buyer.id, bundle.id, order.id)
    stale.expires_at = utcnow() - timedelta(minutes=5)
    db.commit()

    fresh = download_tokens.issue_token(db, buyer.id, bundle.id, order.id)

    db.expire_all()
    assert [t.token for t in db.query(DownloadToken).all()] == [fresh.token]


@pytest.mark.parametrize("status", [S.PENDING, S.PAYMENT_UPLOADED, S.REJECTED, S.FAILED])
def test_issue_refused_without_entitlement(db, buyer, bundle, make_order, status):
    order = make_order(bundle, status=status, user=buyer)

    with pytest.raises(ForbiddenError):
        download_tokens.issue_token(db, buyer.id, bundle.id, order.id)
    assert db.query(DownloadToken).count() == 0


def test_issue_refused_for_someone_elses_order(db, buyer, bundle, make_order, make_user):
    other = make_user(email="other@x.com")
    order = make_order(bundle, email="other@x.com", status=S.APPROVED, user=other)

    with pytest.raises(ForbiddenError):
        download_tokens.issue_token(db, buyer.id, bundle.id, order.id)


def test_guest_order_matched_by_email(db, buyer, bundle, make_order):
    order = make_order(bundle, email="buyer@x.com", status=S.APPROVED)

    found = download_tokens.find_entitled_order(db, buyer, bundle.id)

    assert found.id == order.id


def test_find_entitled_order_guidance(db, buyer, bundle, make_order):
    make_order(bundle, status=S.PAYMENT_UPLOADED, user=buyer)

    with pytest.raises(ForbiddenError) as exc:
        download_tokens.find_entitled_order(db, buyer, bundle.id)

    assert exc.value.code == "ORDER_NOT_APPROVED"
    assert "under review" in exc.value.message
    assert exc.value.details["orderStatus"] == "PAYMENT_UPLOADED"


def test_find_entitled_order_wrong_account(db, buyer, bundle, make_order, make_user):
    other = make_user(email="bob@x.com")
    order = make_order(bundle, email="bob@x.com", status=S.APPROVED, user=other)

    with pytest.raises(ForbiddenError) as exc:
        download_tokens.find_entitled_order(db, buyer, bundle.id, order.id)

    assert exc.value.code == "WRONG_ACCOUNT"
    assert "b***@x.com" in exc.value.message


def test_find_entitled_order_never_purchased(db, buyer, bundle):
    with pytest.raises(ForbiddenError) as exc:
        download_tokens.find_entitled_order(db, buyer, bundle.id)
    assert "purchase it first" in exc.value.message


def test_verify_requires_stored_row(db, buyer, bundle, make_order):
    order = make_order(bundle, status=S.APPROVED, user=buyer)
    record = download_tokens.issue_token(db, buyer.id, bundle.id, order.id)
    token = record.token

    claims = download_tokens.verify_token(db, token)
    assert claims.user_id == buyer.id
    assert claims.bundle_id == bundle.id

    # Revoking the row invalidates the token even though the signature is fine
    db.delete(record)
    db.commit()
    assert download_tokens.decode_token(token) is not None
    assert download_tokens.verify_token(db, token) is None


def test_verify_refuses_expired_row(db, buyer, bundle, make_order):
    order = make_order(bundle, status=S.APPROVED, user=buyer)
    record = download_tokens.issue_token(db, buyer.id, bundle.id, order.id)
    record.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()

    assert download_tokens.verify_token(db, record.token) is None


def test_verify_refuses_foreign_signatures(db, buyer, bundle, make_order):
    order = make_order(bundle, status=S.APPROVED, user=buyer)
    record = download_tokens.issue_token(db, buyer.id, bundle.id, order.id)
    payload = jwt.decode(record.token, settings.DOWNLOAD_TOKEN_SECRET, algorithms=["HS256"])

    forged = jwt.encode(payload, "not-the-secret", algorithm="HS256")

    assert download_tokens.verify_token(db, forged) is None
    assert download_tokens.verify_token(db, "") is None
    assert download_tokens.verify_token(db, "garbage") is None


def test_access_token_is_not_a_download_token(db, buyer):
    assert download_tokens.decode_token(create_user_token(buyer)) is None


def test_mark_used_burns_once(db, buyer, bundle, make_order):
    order = make_order(bundle, status=S.APPROVED, user=buyer)
    record = download_tokens.issue_token(db, buyer.id, bundle.id, order.id)

    assert download_tokens.mark_used(db, record.token) is True
    assert download_tokens.mark_used(db, record.token) is False
    db.commit()

    assert download_tokens.verify_token(db, record.token) is None


def test_mask_email():
    assert download_tokens.mask_email("bob@x.com") == "b***@x.com"
    assert download_tokens.mask_email("nobody") == "***"
