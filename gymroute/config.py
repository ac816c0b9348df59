import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
DB_PATH = os.path.join(BASE_DIR, "gymroute.db")


class Config:
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # --- gateway ---
    GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://api.razorpay.com")
    GATEWAY_KEY_ID = os.getenv("GATEWAY_KEY_ID", "")
    GATEWAY_KEY_SECRET = os.getenv("GATEWAY_KEY_SECRET", "")
    GATEWAY_WEBHOOK_SECRET = os.getenv("GATEWAY_WEBHOOK_SECRET", "")
    GATEWAY_TIMEOUT = int(os.getenv("GATEWAY_TIMEOUT", "10"))
    # callable(config) -> gateway client; None means GatewayClient
    GATEWAY_CLIENT_FACTORY = None
    ONBOARDING_DASHBOARD_URL = os.getenv(
        "ONBOARDING_DASHBOARD_URL", "https://dashboard.razorpay.com/app/route/account"
    )
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "INR")

    # --- auth ---
    AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
    AUTH_JWT_ALGORITHM = "HS256"
    AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    RECONCILE_GRACE_MINUTES = int(os.getenv("RECONCILE_GRACE_MINUTES", "10"))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    GATEWAY_BASE_URL = "https://gateway.test"
    GATEWAY_KEY_ID = "rzp_test_key"
    GATEWAY_KEY_SECRET = "test-key-secret"
    GATEWAY_WEBHOOK_SECRET = "test-webhook-secret"
    GATEWAY_TIMEOUT = 2
    AUTH_JWT_SECRET = "test-jwt-secret-0123456789abcdef0123"
    LOG_LEVEL = "DEBUG"
