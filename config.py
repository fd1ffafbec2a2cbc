"""Environment-aware configuration for the CivicWatch service."""
import os
from datetime import timedelta


def _sqlite_uri(path: str) -> str:
    return f"sqlite:///{path}"


class BaseConfig:
    def __init__(self) -> None:
        # Local defaults: SQLite file under ./instance and a throwaway secret. Override via env in production.
        self.SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
        db_url = os.getenv("DATABASE_URL")
        if db_url and "db_host" not in db_url:
            # Some hosts still hand out the deprecated postgres:// scheme.
            if db_url.startswith("postgres://"):
                db_url = db_url.replace("postgres://", "postgresql://", 1)
            self.SQLALCHEMY_DATABASE_URI = db_url
        else:
            self.SQLALCHEMY_DATABASE_URI = os.getenv(
                "SQLITE_URL",
                _sqlite_uri(os.path.join(os.getcwd(), "instance", "civicwatch.db")),
            )
        self.SQLALCHEMY_TRACK_MODIFICATIONS = False
        self.SQLALCHEMY_ENGINE_OPTIONS = {}
        if not self.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
            self.SQLALCHEMY_ENGINE_OPTIONS = {
                "pool_size": int(os.getenv("DB_POOL_SIZE", 10)),
                "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", 20)),
                "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", 30)),
                "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", 1800)),
                "pool_pre_ping": True,
            }
        self.SESSION_COOKIE_HTTPONLY = True
        self.REMEMBER_COOKIE_HTTPONLY = True
        self.SESSION_COOKIE_SAMESITE = "Lax"
        self.PERMANENT_SESSION_LIFETIME = timedelta(days=30)
        self.REMEMBER_COOKIE_DURATION = timedelta(days=30)
        self.PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
        self.WTF_CSRF_TIME_LIMIT = 3600
        self.WTF_CSRF_ENABLED = True
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))
        self.DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@civicwatch.org")
        self.DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "Admin@12345!")

        # Evidence object storage
        self.EVIDENCE_STORAGE_ROOT = os.getenv(
            "EVIDENCE_STORAGE_ROOT",
            os.path.join(os.getcwd(), "instance", "object_storage"),
        )
        self.EVIDENCE_BUCKET = os.getenv("EVIDENCE_BUCKET", "evidence")
        self.EVIDENCE_PUBLIC_BASE_URL = os.getenv("EVIDENCE_PUBLIC_BASE_URL", "")
        self.MAX_EVIDENCE_FILES = int(os.getenv("MAX_EVIDENCE_FILES", 5))
        self.MAX_EVIDENCE_BYTES = int(os.getenv("MAX_EVIDENCE_BYTES", 20 * 1024 * 1024))
        self.MAX_CONTENT_LENGTH = int(os.getenv("MAX_REQUEST_BYTES", 110 * 1024 * 1024))

        # Complaint store
        self.DEFAULT_URGENCY_SCORE = int(os.getenv("DEFAULT_URGENCY_SCORE", 5))
        self.TRACKING_CODE_MAX_ATTEMPTS = int(os.getenv("TRACKING_CODE_MAX_ATTEMPTS", 10))
        self.COMPLAINTS_PER_PAGE = int(os.getenv("COMPLAINTS_PER_PAGE", 20))
        self.ANONYMOUS_SUBMISSION_LIMIT = int(os.getenv("ANONYMOUS_SUBMISSION_LIMIT", 20))
        self.LOGIN_ATTEMPT_LIMIT = int(os.getenv("LOGIN_ATTEMPT_LIMIT", 50))

        # AI gateway
        self.AI_PROVIDER = os.getenv("AI_PROVIDER", "gateway").lower()
        self.AI_GATEWAY_URL = os.getenv("AI_GATEWAY_URL", "https://ai.gateway.lovable.dev/v1/chat/completions")
        self.AI_GATEWAY_API_KEY = os.getenv("AI_GATEWAY_API_KEY", "")
        self.AI_GATEWAY_MODEL = os.getenv("AI_GATEWAY_MODEL", "google/gemini-2.5-flash")
        self.AI_GATEWAY_TIMEOUT = int(os.getenv("AI_GATEWAY_TIMEOUT", 60))
        self.AI_TEMPERATURE = float(os.getenv("AI_TEMPERATURE", 0.7))
        self.GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
        self.GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")

        # Realtime change feed
        self.CHANGE_FEED_KEEPALIVE_SECONDS = int(os.getenv("CHANGE_FEED_KEEPALIVE_SECONDS", 15))
        self.CHANGE_FEED_QUEUE_SIZE = int(os.getenv("CHANGE_FEED_QUEUE_SIZE", 256))


class DevelopmentConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = True
        self.ENV = "development"
        self.SESSION_COOKIE_SECURE = False
        self.REMEMBER_COOKIE_SECURE = False
        self.PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "http")


class ProductionConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = False
        self.ENV = "production"
        self.SESSION_COOKIE_SECURE = True
        self.REMEMBER_COOKIE_SECURE = True


class TestingConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.TESTING = True
        self.DEBUG = False
        self.ENV = "testing"
        self.SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite://")
        self.SQLALCHEMY_ENGINE_OPTIONS = {}
        self.WTF_CSRF_ENABLED = False
        self.SESSION_COOKIE_SECURE = False
        self.REMEMBER_COOKIE_SECURE = False
        self.PREFERRED_URL_SCHEME = "http"
        self.DEFAULT_ADMIN_EMAIL = ""
        self.AI_GATEWAY_API_KEY = "test-key"
        self.AI_PROVIDER = "gateway"
        self.CHANGE_FEED_KEEPALIVE_SECONDS = 1
        # FlaskLoginClient sessions carry no identifier for strong protection to match.
        self.SESSION_PROTECTION = None
