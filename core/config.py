from pydantic_settings import BaseSettings
from pydantic import ConfigDict

class Settings(BaseSettings):
    model_config = ConfigDict(env_file=".env", extra="ignore")

    ENV: str = "development"

    DATABASE_URL: str = "sqlite:///./pharmacy.db"

    # Tokens are issued by the managed auth platform, we only verify them
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str | None = None

    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    CORS_ORIGINS: list[str] = ["http://localhost:5173"]

    # Public URL the gateways call back into
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    FRONTEND_BASE_URL: str = "http://localhost:5173"

    # Notifications
    MAIL_USERNAME: str = ""
    MAIL_PASSWORD: str = ""
    MAIL_FROM: str = "orders@example.com"
    MAIL_SERVER: str = "localhost"
    MAIL_PORT: int = 587
    BREVO_API_KEY: str = ""
    BREVO_BASE_URL: str = "https://api.brevo.com/v3"
    SMS_SENDER: str = "Pharmacy"
    NOTIFICATION_SEND_ATTEMPTS: int = 3
    NOTIFICATION_RETRY_BACKOFF_SECONDS: float = 1.0

    # Gateway HTTP behaviour
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    GATEWAY_INITIATE_ATTEMPTS: int = 3
    GATEWAY_RETRY_BACKOFF_SECONDS: float = 0.5

    # M-PESA (Daraja)
    MPESA_BASE_URL: str = "https://sandbox.safaricom.co.ke"
    MPESA_CONSUMER_KEY: str = ""
    MPESA_CONSUMER_SECRET: str = ""
    MPESA_SHORTCODE: str = "174379"
    MPESA_PASSKEY: str = ""
    MPESA_POLL_MAX_ATTEMPTS: int = 60
    MPESA_POLL_INTERVAL_SECONDS: float = 2.0

    # Pesapal v3
    PESAPAL_BASE_URL: str = "https://pay.pesapal.com/v3"
    PESAPAL_CONSUMER_KEY: str = ""
    PESAPAL_CONSUMER_SECRET: str = ""
    PESAPAL_IPN_ID: str = ""

    # PayPal
    PAYPAL_BASE_URL: str = "https://api-m.sandbox.paypal.com"
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""

    # Flutterwave
    FLUTTERWAVE_BASE_URL: str = "https://api.flutterwave.com/v3"
    FLUTTERWAVE_SECRET_KEY: str = ""
    FLUTTERWAVE_WEBHOOK_HASH: str = ""


settings = Settings()
