import logging
import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "portal")
PORT = int(os.getenv("PORT", 8000))
FRONTEND_URL = os.getenv("FRONTEND_URL", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Store policy: no retries unless asked for
STORE_TIMEOUT_MS = int(os.getenv("STORE_TIMEOUT_MS", 5000))
STORE_RETRIES = int(os.getenv("STORE_RETRIES", 0))

SESSION_TTL_DAYS = int(os.getenv("SESSION_TTL_DAYS", 7))
LOGIN_MAX_ATTEMPTS = int(os.getenv("LOGIN_MAX_ATTEMPTS", 5))
LOGIN_WINDOW_SECONDS = int(os.getenv("LOGIN_WINDOW_SECONDS", 300))

AI_REPLY_DELAY_SECONDS = float(os.getenv("AI_REPLY_DELAY_SECONDS", 1.0))
PRESENCE_WINDOW_SECONDS = int(os.getenv("PRESENCE_WINDOW_SECONDS", 300))


def configure_logging(level: str = LOG_LEVEL):
    logging.basicConfig(
        level=level.upper(),
        format="%(levelname)s | %(name)s | %(message)s",
        handlers=[logging.StreamHandler()],
    )
