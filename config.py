import os
import logging
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "dev-secret-change"


def _csv(value):
    return [item.strip() for item in (value or "").split(",") if item.strip()]


class Config:
    """Base configuration."""
    ENV = "base"
    DEBUG = False
    TESTING = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Server
    PORT = int(os.environ.get("PORT", 8000))
    CORS_ORIGINS = _csv(os.environ.get("CORS_ORIGINS", "*"))

    # Database
    DATABASE_URL = os.environ.get("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME = os.environ.get("DATABASE_NAME", "saukstas_meiles")

    # Auth
    JWT_SECRET = os.environ.get("JWT_SECRET", DEFAULT_JWT_SECRET)
    JWT_ALGORITHM = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
    ADMIN_SETUP_KEY = os.environ.get("ADMIN_SETUP_KEY")
    MAX_LOGIN_ATTEMPTS = int(os.environ.get("MAX_LOGIN_ATTEMPTS", 5))
    LOCKOUT_MINUTES = int(os.environ.get("LOCKOUT_MINUTES", 15))

    # slowapi limit strings, one shared limit per group of routes
    RATE_LIMITS = {
        "auth": "20 per 15 minutes",
        "api": "100 per minute",
        "upload": "30 per 5 minutes",
    }
    RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "memory://")

    # Media
    UPLOAD_DIR = os.environ.get("UPLOAD_DIR", "uploads")
    MEDIA_BASE_URL = os.environ.get("MEDIA_BASE_URL", "/media")

    # Links placed in outgoing emails
    SITE_URL = os.environ.get("SITE_URL", "http://localhost:3000").rstrip("/")

    # Mail
    EMAIL_HOST = os.environ.get("EMAIL_HOST", "smtp.gmail.com")
    EMAIL_PORT = int(os.environ.get("EMAIL_PORT", 587))
    EMAIL_USER = os.environ.get("EMAIL_USER")
    EMAIL_PASS = os.environ.get("EMAIL_PASS")
    EMAIL_FROM = os.environ.get("EMAIL_FROM")
    EMAIL_TIMEOUT = 30
    NEWSLETTER_SEND_DELAY = float(os.environ.get("NEWSLETTER_SEND_DELAY", 0.1))

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown configuration option: {key}")
            setattr(self, key, value)

    @property
    def mail_enabled(self):
        return bool(self.EMAIL_USER and self.EMAIL_PASS)

    def init_app(self):
        """Prepare directories and report missing settings."""
        os.makedirs(self.UPLOAD_DIR, exist_ok=True)

        if not self.ADMIN_SETUP_KEY:
            logger.warning("ADMIN_SETUP_KEY not set, admin setup is disabled")

        if not self.mail_enabled:
            logger.warning("Email credentials not set, newsletter sending is disabled")


class DevelopmentConfig(Config):
    """Development configuration."""
    ENV = "development"
    DEBUG = True


class TestingConfig(Config):
    """Testing configuration."""
    ENV = "testing"
    TESTING = True
    DATABASE_NAME = "saukstas_meiles_test"
    JWT_SECRET = "testing-secret"
    ADMIN_SETUP_KEY = "testing-setup-key"
    NEWSLETTER_SEND_DELAY = 0.0


class ProductionConfig(Config):
    """Production configuration."""
    ENV = "production"

    def init_app(self):
        Config.init_app(self)

        if self.JWT_SECRET == DEFAULT_JWT_SECRET:
            logger.error("JWT_SECRET not set!")

        if "*" in self.CORS_ORIGINS:
            logger.warning("CORS allows every origin in production")


# Configuration mapping
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(env=None, **overrides):
    env = env or os.environ.get("APP_ENV", "default")
    return config.get(env, config["default"])(**overrides)
