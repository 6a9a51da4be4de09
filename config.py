"""
PDF2MD Configuration
Supports AWS Parameter Store for production secrets
"""
import logging
import os

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

# Settings without which the service must refuse to start
REQUIRED_SETTINGS = (
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "PUBLIC_BASE_URL",
    "FIREBASE_PROJECT_ID",
)


def get_parameter(name: str, default: str = "") -> str:
    """Get parameter from AWS Parameter Store or environment"""
    # Environment variable takes precedence
    env_key = name.upper().replace("-", "_").replace("/", "_")
    if env_key in os.environ:
        return os.environ[env_key]

    if os.environ.get("USE_PARAMETER_STORE"):
        try:
            ssm = boto3.client("ssm", region_name=os.environ.get("AWS_REGION", "us-west-2"))
            path = os.environ.get("PARAMETER_STORE_PATH", "/pdf2md/prod/")
            response = ssm.get_parameter(Name=f"{path}{name}", WithDecryption=True)
            return response["Parameter"]["Value"]
        except (BotoCoreError, ClientError) as e:
            logger.warning("Could not load %s from Parameter Store: %s", name, e)

    return default


def env_flag(name: str, default: str = "1") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration"""
    # Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-in-production")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///pdf2md.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Fix Render's postgres:// URL
    if SQLALCHEMY_DATABASE_URI.startswith("postgres://"):
        SQLALCHEMY_DATABASE_URI = SQLALCHEMY_DATABASE_URI.replace("postgres://", "postgresql://", 1)

    # Uploads
    MAX_CONTENT_LENGTH = 50 * 1024 * 1024  # 50MB

    # Security
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = 3600

    # Public URL used for checkout redirects
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "")

    # Firebase Auth (identity tokens)
    FIREBASE_PROJECT_ID = os.environ.get("FIREBASE_PROJECT_ID", "")

    # Stripe
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

    # Stripe price ids (credit packages)
    STRIPE_PRICE_CREDITS_BASIC = os.environ.get("STRIPE_PRICE_CREDITS_BASIC", "price_1R93cTJaIfn3rsWTQqvkWxXm")
    STRIPE_PRICE_CREDITS_PRO = os.environ.get("STRIPE_PRICE_CREDITS_PRO", "price_1R93cUJaIfn3rsWT9GlefBov")
    STRIPE_PRICE_CREDITS_ENTERPRISE = os.environ.get("STRIPE_PRICE_CREDITS_ENTERPRISE", "price_1R93cUJaIfn3rsWT1bz66dAl")

    # Stripe price ids (subscription tiers)
    STRIPE_PRICE_STANDARD = os.environ.get("STRIPE_PRICE_STANDARD", "price_standard_monthly")
    STRIPE_PRICE_PREMIUM = os.environ.get("STRIPE_PRICE_PREMIUM", "price_premium_monthly")
    STRIPE_PRICE_ENTERPRISE = os.environ.get("STRIPE_PRICE_ENTERPRISE", "price_enterprise_monthly")

    # Exactly-once settlement keyed by Stripe event id
    WEBHOOK_DEDUPLICATION = env_flag("WEBHOOK_DEDUPLICATION", "1")

    # OCR engine
    OCR_API_URL = os.environ.get("OCR_API_URL", "https://api.mistral.ai/v1/ocr")
    OCR_API_KEY = os.environ.get("OCR_API_KEY", os.environ.get("MISTRAL_API_KEY", ""))
    OCR_MODEL = os.environ.get("OCR_MODEL", "mistral-ocr-latest")
    OCR_TIMEOUT = int(os.environ.get("OCR_TIMEOUT", "120"))
    OCR_MAX_RETRIES = int(os.environ.get("OCR_MAX_RETRIES", "2"))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Override with Parameter Store in production
    SECRET_KEY = get_parameter("secret-key", Config.SECRET_KEY)
    STRIPE_SECRET_KEY = get_parameter("stripe-secret-key", Config.STRIPE_SECRET_KEY)
    STRIPE_WEBHOOK_SECRET = get_parameter("stripe-webhook-secret", Config.STRIPE_WEBHOOK_SECRET)
    OCR_API_KEY = get_parameter("ocr-api-key", Config.OCR_API_KEY)


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    WTF_CSRF_ENABLED = False

    PUBLIC_BASE_URL = "http://localhost:3000"
    FIREBASE_PROJECT_ID = "pdf2md-test"
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
    OCR_API_KEY = ""
    WEBHOOK_DEDUPLICATION = True


config = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
    "default": DevelopmentConfig,
}
