import os

from dotenv import load_dotenv

# Load .env locally; deployed environments inject the variables directly.
load_dotenv()


def _env_list(name, default):
    raw = os.getenv(name)
    if not raw:
        return tuple(default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_int(name, default):
    raw = os.getenv(name)
    return int(raw) if raw else default


def _env_bool(name, default):
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "change-this-secret-in-production")

    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///wellness.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Seeded on first start if no admin account exists
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@ust-legazpi.edu.ph")
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

    ALLOWED_EMAIL_DOMAINS = _env_list(
        "ALLOWED_EMAIL_DOMAINS",
        ("ust-legazpi.edu.ph", "ustl.edu.ph"),
    )

    # Simulated counselor timings (milliseconds)
    COUNSELOR_MATCH_DELAY_MS = _env_int("COUNSELOR_MATCH_DELAY_MS", 2000)
    COUNSELOR_REPLY_MIN_MS = _env_int("COUNSELOR_REPLY_MIN_MS", 1000)
    COUNSELOR_REPLY_MAX_MS = _env_int("COUNSELOR_REPLY_MAX_MS", 3000)
    CRISIS_PROMPT_DELAY_MS = _env_int("CRISIS_PROMPT_DELAY_MS", 500)
    DEFAULT_COUNSELOR_ID = os.getenv("DEFAULT_COUNSELOR_ID", "peer-counselor-001")

    TASK_POLL_INTERVAL_MS = _env_int("TASK_POLL_INTERVAL_MS", 250)
    START_TASK_RUNNER = _env_bool("START_TASK_RUNNER", True)

    # Policy lists. These have not been clinically reviewed; override per deployment.
    CRISIS_KEYWORDS = _env_list(
        "CRISIS_KEYWORDS",
        ("suicide", "kill myself", "end it all", "hurt myself", "can't go on", "want to die"),
    )
    NEEDS_SUPPORT_MOODS = _env_list("NEEDS_SUPPORT_MOODS", ("difficult", "struggling"))


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "testing"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    START_TASK_RUNNER = False
    ADMIN_EMAIL = "admin@ust-legazpi.edu.ph"
    ADMIN_PASSWORD = "admin123"
    ALLOWED_EMAIL_DOMAINS = ("ust-legazpi.edu.ph", "ustl.edu.ph")
