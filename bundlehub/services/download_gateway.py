"""Single authorization point for bundle downloads.

Token and legacy order/email credentials are both checked here, then the
same mint step produces the retrieval URL, writes the audit row and bumps the
bundle's download counter.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from ..core.storage import parse_object_reference
from ..models.bundle import Bundle
from ..models.download_token import Download
from ..models.order import Order, OrderItem
from . import download_tokens
from .order_state import ENTITLED_STATUSES, status_guidance
from .otp_service import normalize_email

logger = logging.getLogger(__name__)


@dataclass
class TokenCredentials:
    token: str


@dataclass
class OrderCredentials:
    order_id: str
    email: str


@dataclass
class DownloadGrant:
    url: str
    expires_in: Optional[int]
    bundle_id: str
    bundle_name: str
    order_id: Optional[str] = None
    customer_name: Optional[str] = None

    @property
    def is_presigned(self) -> bool:
        return self.expires_in is not None


def _load_bundle(db: Session, bundle_id: str) -> Bundle:
    bundle = db.get(Bundle, bundle_id)
    if bundle is None or not bundle.is_active:
        raise NotFoundError("Bundle not found or inactive")
    if not bundle.download_url:
        raise ValidationError("Bundle has no downloadable file")
    return bundle


def _authorize_legacy(db: Session, bundle_id: str, credentials: OrderCredentials) -> Order:
    email = normalize_email(credentials.email)
    order = (
        db.query(Order)
        .filter(
            Order.id == credentials.order_id,
            Order.email == email,
            Order.items.any(OrderItem.bundle_id == bundle_id),
        )
        .first()
    )
    if order is None:
        raise ForbiddenError("Invalid order ID, email, or you don't have access to this bundle.")
    if order.status not in ENTITLED_STATUSES:
        raise ForbiddenError(
            f"Download not available. {status_guidance(order.status)}",
            code="ORDER_NOT_APPROVED",
            orderStatus=order.status.value,
        )
    return order


def resolve(
    db: Session,
    blob_store,
    bundle_id: str,
    credentials,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> DownloadGrant:
    """Authorize ``credentials`` for ``bundle_id`` and mint a retrieval URL."""
    user_id = None
    order = None
    token = None

    if isinstance(credentials, TokenCredentials):
        claims = download_tokens.verify_token(db, credentials.token)
        if claims is None:
            raise UnauthorizedError("Invalid or expired download token. Please request a new download link.")
        if claims.bundle_id != bundle_id:
            raise ForbiddenError("Token is not valid for this bundle.")
        token = credentials.token
        user_id = claims.user_id
        order = db.get(Order, claims.order_id)
    elif isinstance(credentials, OrderCredentials):
        order = _authorize_legacy(db, bundle_id, credentials)
        user_id = order.user_id
    else:
        raise ValidationError(
            "Order ID and email are required. Use ?orderId=xxx&email=customer@example.com "
            "or token-based download: ?token=xxx"
        )

    bundle = _load_bundle(db, bundle_id)

    object_key = parse_object_reference(bundle.download_url)
    if object_key:
        url = blob_store.presign_get(object_key, settings.DOWNLOAD_URL_TTL_SECONDS)
        expires_in = settings.DOWNLOAD_URL_TTL_SECONDS
    else:
        url = bundle.download_url
        expires_in = None

    try:
        if token is not None and not download_tokens.mark_used(db, token):
            raise UnauthorizedError("Invalid or expired download token. Please request a new download link.")
        db.add(Download(
            user_id=user_id,
            bundle_id=bundle.id,
            order_id=order.id if order else None,
            ip_address=ip_address,
            user_agent=user_agent,
        ))
        db.execute(
            update(Bundle)
            .where(Bundle.id == bundle.id)
            .values(download_count=Bundle.download_count + 1)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Download granted for bundle %s (%s) via %s",
        bundle.id, bundle.name, "token" if token else f"order {order.id}",
    )
    return DownloadGrant(
        url=url,
        expires_in=expires_in,
        bundle_id=bundle.id,
        bundle_name=bundle.name,
        order_id=order.id if order else None,
        customer_name=order.customer_name if order else None,
    )
