import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.errors import NotFoundError, ValidationError
from ..core.storage import payment_screenshot_key
from ..models.bundle import Bundle
from ..models.order import Order, OrderItem, OrderStatus
from ..models.otp import OTPType
from ..models.user import User
from . import order_state, otp_service

logger = logging.getLogger(__name__)

S = OrderStatus

# Statuses from which a payment screenshot may be (re)submitted
UPLOAD_SOURCES = (S.EMAIL_VERIFIED, S.PAYMENT_PENDING, S.PAYMENT_UPLOADED, S.REJECTED)


@dataclass
class PaymentInstructions:
    order_id: str
    amount: str
    qr_image_url: str
    upi_link: str


def payment_instructions(order: Order) -> PaymentInstructions:
    amount = f"{order.total_amount:.2f}"
    upi_link = "upi://pay?" + urlencode({
        "pa": settings.UPI_PAYEE_ADDRESS,
        "pn": settings.UPI_PAYEE_NAME,
        "am": amount,
        "cu": "INR",
        "tn": f"Order {order.id}",
    })
    return PaymentInstructions(
        order_id=order.id,
        amount=amount,
        qr_image_url=settings.PAYMENT_QR_URL,
        upi_link=upi_link,
    )


def _get_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def create_order(
    db: Session,
    mailer,
    bundle_id: str,
    name: str,
    email: str,
    user: Optional[User] = None,
) -> Order:
    """Create a PENDING order for one bundle and send the checkout code."""
    bundle = db.query(Bundle).filter(Bundle.id == bundle_id, Bundle.is_active == True).first()  # noqa: E712
    if bundle is None:
        raise NotFoundError("Bundle not found or inactive")

    email = otp_service.normalize_email(email)
    order = Order(
        user_id=user.id if user else None,
        email=email,
        customer_name=name.strip(),
        total_amount=bundle.price,
        status=S.PENDING,
        items=[OrderItem(bundle_id=bundle.id, quantity=1, price=bundle.price)],
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    logger.info("Order %s created for %s (bundle %s)", order.id, email, bundle.id)

    await otp_service.issue_otp(db, mailer, email, OTPType.CHECKOUT, order.customer_name, order_id=order.id)
    return order


async def resend_checkout_otp(db: Session, mailer, order_id: str) -> Order:
    order = _get_order(db, order_id)
    if order.email_verified:
        raise ValidationError("Email already verified")
    await otp_service.issue_otp(db, mailer, order.email, OTPType.CHECKOUT, order.customer_name, order_id=order.id)
    return order


def verify_checkout_email(db: Session, order_id: str, code: str) -> PaymentInstructions:
    """Confirm the buyer's email and move the order on to payment."""
    order = _get_order(db, order_id)
    if order.status != S.PENDING:
        raise ValidationError("Email already verified" if order.email_verified else "Order is not awaiting verification")

    otp_service.verify_otp(db, order.email, code, OTPType.CHECKOUT, order_id=order.id)
    try:
        order_state.transition(db, order.id, S.EMAIL_VERIFIED, expected=[S.PENDING], email_verified=True)
        # Showing the QR code is what puts the order into PAYMENT_PENDING
        order = order_state.transition(db, order.id, S.PAYMENT_PENDING, expected=[S.EMAIL_VERIFIED])
        db.commit()
    except Exception:
        db.rollback()
        raise
    return payment_instructions(order)


def upload_payment(
    db: Session,
    blob_store,
    order_id: str,
    filename: str,
    content_type: Optional[str],
    data: bytes,
) -> Order:
    order = _get_order(db, order_id)
    if not order.email_verified:
        raise ValidationError("Email not verified")
    if not (content_type or "").startswith("image/"):
        raise ValidationError("File must be an image")
    if not data:
        raise ValidationError("Screenshot is empty")
    if len(data) > settings.PAYMENT_SCREENSHOT_MAX_BYTES:
        limit_mb = settings.PAYMENT_SCREENSHOT_MAX_BYTES // (1024 * 1024)
        raise ValidationError(f"File size must be less than {limit_mb}MB")
    if order.status not in UPLOAD_SOURCES:
        raise ValidationError(f"Payment cannot be uploaded. {order_state.status_guidance(order.status)}")

    key = blob_store.put(payment_screenshot_key(order.id, filename), data, content_type)
    try:
        order = order_state.transition(
            db,
            order.id,
            S.PAYMENT_UPLOADED,
            expected=UPLOAD_SOURCES,
            payment_screenshot=f"s3://{key}",
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Payment proof uploaded for order %s", order.id)
    return order
