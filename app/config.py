import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "default-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", f"sqlite:///{BASE_DIR / 'bookmind.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "1") == "1"

    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o")
    AI_REQUEST_TIMEOUT = float(os.environ.get("AI_REQUEST_TIMEOUT", "60"))
    AI_REQUEST_MAX_RETRIES = int(os.environ.get("AI_REQUEST_MAX_RETRIES", "0"))

    AI_BATCH_SIZE = int(os.environ.get("AI_BATCH_SIZE", "5"))
    AI_MAX_CONCURRENCY = int(os.environ.get("AI_MAX_CONCURRENCY", "3"))
    AI_RATE_LIMIT_THRESHOLD = int(os.environ.get("AI_RATE_LIMIT_THRESHOLD", "2"))
    AI_RATE_LIMIT_COOLDOWN_SECONDS = float(
        os.environ.get("AI_RATE_LIMIT_COOLDOWN_SECONDS", "60")
    )
    AI_INSIGHT_DEPTH = int(os.environ.get("AI_INSIGHT_DEPTH", "1"))
    AI_PROCESSING_CRON = os.environ.get("AI_PROCESSING_CRON", "*/15 * * * *")
    AI_STARTUP_DELAY_SECONDS = int(os.environ.get("AI_STARTUP_DELAY_SECONDS", "30"))
    EXTERNAL_SYNC_CRON = os.environ.get("EXTERNAL_SYNC_CRON", "0 0,12 * * *")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SCHEDULER_ENABLED = False
    OPENAI_API_KEY = ""
    AI_RATE_LIMIT_COOLDOWN_SECONDS = 0
