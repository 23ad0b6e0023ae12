import os
from datetime import timedelta
from dotenv import load_dotenv

load_dotenv()

class Settings:
    APP_NAME: str = "BundleHub Backend"
    SQLALCHEMY_DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./bundlehub.db")
    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "change_this_secret")
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

    # Download tokens are signed separately from access tokens when a key is given
    DOWNLOAD_TOKEN_SECRET: str = os.getenv("DOWNLOAD_TOKEN_SECRET", "") or JWT_SECRET_KEY
    DOWNLOAD_TOKEN_TTL_HOURS: int = int(os.getenv("DOWNLOAD_TOKEN_TTL_HOURS", "24"))
    DOWNLOAD_URL_TTL_SECONDS: int = int(os.getenv("DOWNLOAD_URL_TTL_SECONDS", "3600"))

    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")
    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Brevo Email API
    BREVO_API_KEY: str = os.getenv("BREVO_API_KEY", "")
    EMAIL_FROM_ADDRESS: str = os.getenv("EMAIL_FROM_ADDRESS", "noreply@example.com")
    EMAIL_FROM_NAME: str = os.getenv("EMAIL_FROM_NAME", "BundleHub")

    OTP_EXPIRE_MINUTES: int = int(os.getenv("OTP_EXPIRE_MINUTES", "10"))
    OTP_MAX_ATTEMPTS: int = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))

    FULFILLMENT_MAX_ATTEMPTS: int = int(os.getenv("FULFILLMENT_MAX_ATTEMPTS", "3"))
    # Outbox sweeper: how often it runs and how long a failed job waits before a retry
    FULFILLMENT_SWEEP_INTERVAL_SECONDS: float = float(os.getenv("FULFILLMENT_SWEEP_INTERVAL_SECONDS", "60"))
    FULFILLMENT_RETRY_DELAY_SECONDS: float = float(os.getenv("FULFILLMENT_RETRY_DELAY_SECONDS", "60"))

    # S3 object storage for bundle files and payment screenshots
    AWS_REGION: str = os.getenv("AWS_REGION", "")
    AWS_S3_BUCKET_NAME: str = os.getenv("AWS_S3_BUCKET_NAME", "")

    # Offline UPI payment
    PAYMENT_QR_URL: str = os.getenv("PAYMENT_QR_URL", "")
    UPI_PAYEE_ADDRESS: str = os.getenv("UPI_PAYEE_ADDRESS", "merchant@upi")
    UPI_PAYEE_NAME: str = os.getenv("UPI_PAYEE_NAME", "BundleHub")
    PAYMENT_SCREENSHOT_MAX_BYTES: int = int(os.getenv("PAYMENT_SCREENSHOT_MAX_BYTES", str(10 * 1024 * 1024)))

    # Fixed-window rate limits, "<requests>/<seconds>"
    RATE_LIMIT_AUTH: str = os.getenv("RATE_LIMIT_AUTH", "5/900")
    RATE_LIMIT_GENERAL: str = os.getenv("RATE_LIMIT_GENERAL", "100/900")
    RATE_LIMIT_UPLOAD: str = os.getenv("RATE_LIMIT_UPLOAD", "20/3600")

    # Initial admin account, created at startup when both are set
    ADMIN_EMAIL: str = os.getenv("ADMIN_EMAIL", "")
    ADMIN_PASSWORD: str = os.getenv("ADMIN_PASSWORD", "")

settings = Settings()

def access_token_expires():
    return timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

def otp_expires():
    return timedelta(minutes=settings.OTP_EXPIRE_MINUTES)

def download_token_expires():
    return timedelta(hours=settings.DOWNLOAD_TOKEN_TTL_HOURS)
