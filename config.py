# ==========================================================================================================
# -------------- Configuration file for the accrual engine Flask application -------------------------------
# ==========================================================================================================
import os
import tempfile
from dotenv import load_dotenv


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name, default="False"):
    return os.getenv(name, default).lower() in ("true", "1", "t")


class Config:

    SECRET_KEY = os.getenv("SECRET_KEY", "dev_key_change_me")

    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = _env_bool("DEBUG")
    TESTING = False

    _database_url = os.getenv("DATABASE_URL")
    if not _database_url:
        _database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'accrual.db')}"

    if _database_url.startswith("postgres://"):
        _database_url = _database_url.replace("postgres://", "postgresql+pg8000://", 1)

    SQLALCHEMY_DATABASE_URI = _database_url
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    LOG_DIR = os.getenv("LOG_DIR", "logs")

    # Platform switches
    MAINTENANCE_MODE = _env_bool("MAINTENANCE_MODE")
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "True")

    # Accrual engine
    ACCRUAL_INTERVAL_SECONDS = int(os.getenv("ACCRUAL_INTERVAL_SECONDS", "3600"))
    ACCRUAL_LOCK_TTL_SECONDS = int(os.getenv("ACCRUAL_LOCK_TTL_SECONDS", "900"))
    EARLY_WITHDRAWAL_PENALTY_RATE = os.getenv("EARLY_WITHDRAWAL_PENALTY_RATE", "0.10")

    WITHDRAWAL_MIN = os.getenv("WITHDRAWAL_MIN", "20")
    WITHDRAWAL_MAX = os.getenv("WITHDRAWAL_MAX", "50000")

    # Referral programme
    REFERRAL_REWARD_PERCENT = os.getenv("REFERRAL_REWARD_PERCENT", "3")
    REFERRAL_MAX_REWARD = os.getenv("REFERRAL_MAX_REWARD", "100")
    REFERRAL_MAX_REFERRALS_LIFETIME = int(os.getenv("REFERRAL_MAX_REFERRALS_LIFETIME", "50"))
    REFERRAL_MAX_EARNINGS_LIFETIME = os.getenv("REFERRAL_MAX_EARNINGS_LIFETIME", "10000")
    REFERRAL_UNLOCK_DAYS = int(os.getenv("REFERRAL_UNLOCK_DAYS", "14"))


class TestConfig(Config):
    """In-memory database, scheduler off."""

    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SCHEDULER_ENABLED = False
    MAINTENANCE_MODE = False
    LOG_DIR = os.path.join(tempfile.gettempdir(), "accrual-test-logs")
