# opd_agents/config.py
import os
from dotenv import load_dotenv
from pathlib import Path

_here = Path(__file__).resolve()
# Prefer repo-root .env (shared with the frontend), then allow Backend/.env overrides if present.
load_dotenv(dotenv_path=_here.parents[3] / ".env")
load_dotenv(dotenv_path=_here.parents[2] / ".env")

DB_HOST = os.getenv("DB_HOST", "127.0.0.1")
DB_PORT = int(os.getenv("DB_PORT", "3306"))
DB_USER = os.getenv("DB_USER", "root")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_NAME = os.getenv("DB_NAME", "opd_clinic")
DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
# session offset for NOW(); must match the naive local datetimes the worker writes
DB_TIME_ZONE = os.getenv("DB_TIME_ZONE", "+05:30")

WORKER_ID = os.getenv("WORKER_ID", "worker-1")

# whatsapp queue
QUEUE_POLL_SECONDS = int(os.getenv("QUEUE_POLL_SECONDS", "120"))
QUEUE_BATCH_SIZE = int(os.getenv("QUEUE_BATCH_SIZE", "50"))
QUEUE_MAX_RETRIES = int(os.getenv("QUEUE_MAX_RETRIES", "3"))
QUEUE_RETRY_DELAY_SEC = int(os.getenv("QUEUE_RETRY_DELAY_SEC", "60"))
QUEUE_LOCK_TTL_SECONDS = int(os.getenv("QUEUE_LOCK_TTL_SECONDS", "300"))

DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "91")

WHATSAPP_API_BASE = os.getenv("WHATSAPP_API_BASE", "http://127.0.0.1:8888/.netlify/functions")
WHATSAPP_API_KEY = os.getenv("WHATSAPP_API_KEY", "")
WHATSAPP_TIMEOUT_SEC = int(os.getenv("WHATSAPP_TIMEOUT_SEC", "25"))
# user the worker sends on behalf of when no clinic user is attached
WHATSAPP_SENDER_USER_ID = os.getenv("WHATSAPP_SENDER_USER_ID", "")

# pharmacy
PHARMACY_SWEEP_INTERVAL_MIN = int(os.getenv("PHARMACY_SWEEP_INTERVAL_MIN", "60"))
EXPIRY_HORIZON_DAYS = int(os.getenv("EXPIRY_HORIZON_DAYS", "30"))

# api
JWT_SECRET = os.getenv("JWT_SECRET", "")
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8010"))
