from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "FMS Payments API"
    # Comma-separated origins for CORS. If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""

    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    REDIS_URL: str = "redis://localhost:6379/0"

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = "payments@fms.local"

    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = ""
    # Passenger payment notifications; disable for local runs without a mail server
    PAYMENT_EMAILS_ENABLED: bool = True

    # Confirmation codes: PREFIX-YYYYMMDD-XXXX
    CONFIRMATION_CODE_PREFIX: str = "FMS"

    # VNPay (payment gateway, API 2.1.0)
    VNP_PAY_URL: str = "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html"
    VNP_API_URL: str = "https://sandbox.vnpayment.vn/merchant_webapi/api/transaction"
    VNP_RETURN_URL: str = "http://localhost:5173/payment/return"
    VNP_TMN_CODE: str = ""
    VNP_HASH_SECRET: str = ""
    VNP_VERSION: str = "2.1.0"
    VNP_TIMEZONE: str = "Asia/Ho_Chi_Minh"  # gateway expects GMT+7 timestamps
    VNP_TIMEOUT: int = 25
    VNP_EXPIRE_MINUTES: int = 15
    VNP_TXN_REF_MAX_LENGTH: int = 100  # vnp_TxnRef field limit imposed by the gateway

    # Guest bookings (client-side cache) and the storefront API it falls back to
    GUEST_BOOKINGS_FILE: str = "./data/guest_bookings.json"
    GUEST_BOOKINGS_LIMIT: int = 10
    STOREFRONT_API_URL: str = "http://localhost:8000/api/v1"
    STOREFRONT_TIMEOUT: int = 10

    # Unpaid tickets are released this many hours before departure
    BOOKING_HOLD_HOURS: int = 24


settings = Settings()
