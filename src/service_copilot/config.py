"""
Configuration constants for the Service Copilot application.

Values are read from the environment once at import time, after loading a
local ``.env`` file.
"""

import os

from service_copilot.utils.env import load_env

load_env()

DEFAULT_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("SERVER_PORT", "8080"))

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

BUSINESS_API_URL = os.getenv("BUSINESS_API_URL", "")
KB_API_URL = os.getenv("KB_API_URL", "")
CONVERSATION_STORE_DIR = os.getenv("CONVERSATION_STORE_DIR", "")

HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "10"))
IDEMPOTENCY_TTL_HOURS = int(os.getenv("IDEMPOTENCY_TTL_HOURS", "24"))
PREVIEW_TTL_MINUTES = int(os.getenv("PREVIEW_TTL_MINUTES", "5"))
IDEMPOTENCY_SWEEP_SECONDS = int(os.getenv("IDEMPOTENCY_SWEEP_SECONDS", "300"))
MAX_REQUESTS_PER_MINUTE = int(os.getenv("MAX_REQUESTS_PER_MINUTE", "30"))
