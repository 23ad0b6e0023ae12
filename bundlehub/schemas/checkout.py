from typing import Optional

from pydantic import BaseModel, EmailStr, Field

class CreateOrderRequest(BaseModel):
    bundleId: str
    name: str = Field(..., min_length=1)
    email: EmailStr

class CreateOrderResponse(BaseModel):
    success: bool = True
    orderId: str
    message: str = "OTP sent to your email"

class VerifyEmailRequest(BaseModel):
    orderId: str
    otp: str = Field(..., min_length=6, max_length=6)

class ResendOTPRequest(BaseModel):
    orderId: str

class PaymentInstructionsResponse(BaseModel):
    success: bool = True
    orderId: str
    amount: str
    paymentQr: str
    upiLink: str
    message: str = "Email verified successfully"

class UploadPaymentResponse(BaseModel):
    success: bool = True
    orderId: str
    status: str
    message: str = "Payment proof uploaded successfully"
