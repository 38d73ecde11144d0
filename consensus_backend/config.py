"""Shared environment configuration constants for the consensus backend."""
import os


def _to_bool(value) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./consensus.db")

# --- Quality gate thresholds (0-10 rubric scale) ---
MIN_QUALITY_SCORE = float(os.getenv("MIN_QUALITY_SCORE", "4.0"))
MIN_CRITICAL_SCORE = float(os.getenv("MIN_CRITICAL_SCORE", "3.0"))
MIN_VIEWPOINT_SCORE = float(os.getenv("MIN_VIEWPOINT_SCORE", "2.0"))
BASIC_DIMENSION_SCORE = float(os.getenv("BASIC_DIMENSION_SCORE", "4.0"))

# --- Similarity ---
SIMILARITY_CACHE_TTL_SECONDS = int(os.getenv("SIMILARITY_CACHE_TTL_SECONDS", str(24 * 60 * 60)))
SIMILARITY_CACHE_MAX_ENTRIES = int(os.getenv("SIMILARITY_CACHE_MAX_ENTRIES", "10000"))
SIMILARITY_BATCH_SIZE = int(os.getenv("SIMILARITY_BATCH_SIZE", "5"))

# --- Snapshots / trend ---
SNAPSHOT_RETENTION = int(os.getenv("SNAPSHOT_RETENTION", "50"))
TREND_WINDOW = int(os.getenv("TREND_WINDOW", "5"))
TREND_THRESHOLD = float(os.getenv("TREND_THRESHOLD", "0.05"))

# --- AI provider ---
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "60"))
DEFAULT_AI_PROVIDER = os.getenv("DEFAULT_AI_PROVIDER", "siliconflow")
DEFAULT_CHAT_MODEL = os.getenv("DEFAULT_CHAT_MODEL", "deepseek-chat")
SESSION_SECRET = os.getenv("SESSION_SECRET", "dev")
TRACE_API_CALLS = _to_bool(os.getenv("TRACE_API_CALLS", "true"))
API_LOG_PREVIEW_CHARS = int(os.getenv("API_LOG_PREVIEW_CHARS", "280"))
