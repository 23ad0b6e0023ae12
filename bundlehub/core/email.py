import asyncio
import base64
import logging
import secrets
from dataclasses import dataclass
from decimal import Decimal
from html import escape
from typing import List, Optional, Sequence, Tuple

import aiohttp
from .config import settings

logger = logging.getLogger(__name__)

BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"


class EmailDeliveryError(Exception):
    """Raised when the mail provider refuses or fails to accept a message."""


@dataclass
class Attachment:
    name: str
    content: bytes


def generate_otp() -> str:
    """Generate a 6-digit OTP code."""
    return str(100000 + secrets.randbelow(900000))


class BrevoMailer:
    """Send transactional email through the Brevo HTTP API.

    Without an API key the mailer runs in dev mode: messages are logged and
    considered delivered.
    """

    def __init__(self, api_key: str, from_address: str, from_name: str, timeout: float = 15.0):
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls):
        return cls(settings.BREVO_API_KEY, settings.EMAIL_FROM_ADDRESS, settings.EMAIL_FROM_NAME)

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> str:
        """Send one message and return the provider message id."""
        if not self.api_key:
            logger.info("[DEV MODE] Email to %s: %s", to, subject)
            if text_body:
                logger.info("[DEV MODE] %s", text_body.strip())
            return "dev-mode"

        headers = {
            "api-key": self.api_key,
            "Content-Type": "application/json"
        }

        payload = {
            "sender": {
                "name": self.from_name,
                "email": self.from_address
            },
            "to": [{"email": to}],
            "subject": subject,
            "htmlContent": html_body,
        }
        if text_body:
            payload["textContent"] = text_body
        if attachments:
            payload["attachment"] = [
                {"name": a.name, "content": base64.b64encode(a.content).decode("ascii")}
                for a in attachments
            ]

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(BREVO_SEND_URL, json=payload, headers=headers) as response:
                    result = await response.json(content_type=None)
                    if response.status != 201:
                        raise EmailDeliveryError(f"Brevo API error ({response.status}): {result}")
        except aiohttp.ClientError as e:
            raise EmailDeliveryError(f"Brevo request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise EmailDeliveryError(f"Brevo request timed out after {self.timeout}s") from e
        except ValueError as e:
            # Gateway error pages come back as HTML
            raise EmailDeliveryError(f"Brevo returned an unreadable response: {e}") from e

        message_id = (result or {}).get("messageId", "unknown")
        logger.info("[EMAIL SENT] %s to %s, message_id=%s", subject, to, message_id)
        return message_id


# ==================== Templates ====================

_STYLE = """
    body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
    .container { max-width: 600px; margin: 0 auto; padding: 20px; }
    .header { background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); color: white; padding: 30px; text-align: center; border-radius: 10px 10px 0 0; }
    .content { background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px; }
    .otp-box { background: white; border: 2px dashed #667eea; padding: 20px; text-align: center; margin: 20px 0; border-radius: 8px; }
    .otp-code { font-size: 32px; font-weight: bold; color: #667eea; letter-spacing: 5px; font-family: 'Courier New', monospace; }
    .notice { background: #f8d7da; color: #721c24; padding: 15px; border-radius: 8px; margin: 20px 0; }
    .bundle { margin: 15px 0; padding: 20px; background-color: #e8f5e8; border-left: 5px solid #28a745; border-radius: 8px; }
    .button { background-color: #007bff; color: white; padding: 12px 24px; text-decoration: none; border-radius: 6px; font-weight: bold; display: inline-block; }
    .warning { color: #e74c3c; font-size: 14px; margin-top: 20px; }
    .footer { text-align: center; color: #888; font-size: 12px; margin-top: 20px; }
"""


def _layout(title: str, inner: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html>
    <head><style>{_STYLE}</style></head>
    <body>
        <div class="container">
            <div class="header"><h1>{title}</h1></div>
            <div class="content">
                {inner}
                <div class="footer">
                    <p>---</p>
                    <p>{escape(settings.EMAIL_FROM_NAME)}</p>
                </div>
            </div>
        </div>
    </body>
    </html>
    """


_OTP_PURPOSE = {
    "login": ("Your login code", "Use this code to sign in to your account."),
    "signup": ("Verify your email", "Use this code to finish creating your account."),
    "checkout": ("Confirm your order", "Use this code to confirm the email address for your order."),
}


def build_otp_email(otp_code: str, purpose: str, customer_name: Optional[str] = None):
    """Return (subject, html, text) for an OTP message."""
    title, line = _OTP_PURPOSE.get(purpose, _OTP_PURPOSE["login"])
    greeting = f"Hello {escape(customer_name)}," if customer_name else "Hello,"
    minutes = settings.OTP_EXPIRE_MINUTES
    html_body = _layout(title, f"""
                <p>{greeting}</p>
                <p>{line}</p>
                <div class="otp-box"><div class="otp-code">{otp_code}</div></div>
                <p><strong>This code will expire in {minutes} minutes.</strong></p>
                <p class="warning">If you did not request this code, please ignore this email.</p>
    """)
    text_body = f"""
{title}

Your OTP code is: {otp_code}

This code will expire in {minutes} minutes.

If you did not request this, please ignore this email.
    """
    return f"{title}: {otp_code}", html_body, text_body


def build_access_email(customer_name: str, order_id: str, bundle_names: List[str]):
    """Access instructions sent once an order is approved."""
    login_url = f"{settings.PUBLIC_BASE_URL}/auth/user-login"
    profile_url = f"{settings.PUBLIC_BASE_URL}/profile"
    hours = settings.DOWNLOAD_TOKEN_TTL_HOURS
    items = "".join(
        f'<div class="bundle"><strong>{escape(name)}</strong><br>Ready for secure download</div>'
        for name in bundle_names
    )
    html_body = _layout("Your bundles are ready", f"""
                <p>Hi {escape(customer_name)},</p>
                <p>Your payment for order <strong>#{order_id}</strong> has been approved.</p>
                {items}
                <ol>
                    <li>Log in to your account using this email address</li>
                    <li>Open your profile</li>
                    <li>Click "Generate Secure Download" for the bundle</li>
                    <li>Your download link stays valid for {hours} hours</li>
                </ol>
                <p><a class="button" href="{login_url}">Login to Download</a></p>
                <p>Or go straight to your profile: {profile_url}</p>
                <p>Your order receipt is attached.</p>
    """)
    text_body = (
        f"Your payment for order #{order_id} has been approved.\n\n"
        + "\n".join(f"- {name}" for name in bundle_names)
        + f"\n\nLog in at {login_url} and generate a secure download from {profile_url}.\n"
        "Your order receipt is attached.\n"
    )
    return f"Your order #{order_id} is approved", html_body, text_body


def build_order_receipt(order_id: str, customer_name: str, lines: Sequence[Tuple[str, int, Decimal]], total: Decimal) -> Attachment:
    """Plain-text order summary attached to the access email."""
    rows = [f"{name} x{quantity}  {price:.2f}" for name, quantity, price in lines]
    content = "\n".join([
        f"{settings.EMAIL_FROM_NAME} order receipt",
        f"Order: #{order_id}",
        f"Customer: {customer_name}",
        "",
        *rows,
        "",
        f"Total: {total:.2f} INR",
        "",
    ])
    return Attachment(name=f"order-{order_id}.txt", content=content.encode("utf-8"))


def build_rejection_email(customer_name: str, order_id: str, reason: str):
    html_body = _layout("Payment Rejected", f"""
                <p>Hi {escape(customer_name)},</p>
                <p>We regret to inform you that your payment for order <strong>#{order_id}</strong> has been rejected.</p>
                <div class="notice">
                    <h4>Reason for Rejection:</h4>
                    <p>{escape(reason)}</p>
                </div>
                <ol>
                    <li>Please review the rejection reason above</li>
                    <li>If you believe this is an error, contact our support team</li>
                    <li>You can submit a new payment screenshot for the same order</li>
                </ol>
                <p><strong>Order ID:</strong> {order_id}</p>
    """)
    text_body = f"Your payment for order #{order_id} was rejected.\n\nReason: {reason}\n"
    return "Order Payment Rejected", html_body, text_body
