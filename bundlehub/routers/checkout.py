from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from ..core.context import get_blob_store, get_mailer
from ..core.database import get_db
from ..core.rate_limit import rate_limited
from ..core.security import get_current_user_optional
from ..models.user import User
from ..schemas.checkout import (
    CreateOrderRequest,
    CreateOrderResponse,
    PaymentInstructionsResponse,
    ResendOTPRequest,
    UploadPaymentResponse,
    VerifyEmailRequest,
)
from ..services import checkout

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("/create", response_model=CreateOrderResponse)
async def create_order(
    payload: CreateOrderRequest,
    db: Session = Depends(get_db),
    mailer=Depends(get_mailer),
    user: Optional[User] = Depends(get_current_user_optional),
):
    """Start checkout: create a PENDING order and email a confirmation code."""
    order = await checkout.create_order(db, mailer, payload.bundleId, payload.name, payload.email, user)
    return CreateOrderResponse(orderId=order.id)


@router.post("/verify-email", response_model=PaymentInstructionsResponse)
def verify_email(payload: VerifyEmailRequest, db: Session = Depends(get_db)):
    instructions = checkout.verify_checkout_email(db, payload.orderId, payload.otp)
    return PaymentInstructionsResponse(
        orderId=instructions.order_id,
        amount=instructions.amount,
        paymentQr=instructions.qr_image_url,
        upiLink=instructions.upi_link,
    )


@router.post("/resend-otp", dependencies=[Depends(rate_limited("auth"))])
async def resend_otp(payload: ResendOTPRequest, db: Session = Depends(get_db), mailer=Depends(get_mailer)):
    await checkout.resend_checkout_otp(db, mailer, payload.orderId)
    return {"success": True, "message": "New OTP sent to your email"}


@router.post(
    "/upload-payment",
    response_model=UploadPaymentResponse,
    dependencies=[Depends(rate_limited("upload"))],
)
def upload_payment(
    orderId: str = Form(...),
    screenshot: UploadFile = File(...),
    db: Session = Depends(get_db),
    blob_store=Depends(get_blob_store),
):
    data = screenshot.file.read()
    order = checkout.upload_payment(
        db, blob_store, orderId, screenshot.filename or "screenshot", screenshot.content_type, data
    )
    return UploadPaymentResponse(orderId=order.id, status=order.status.value)
