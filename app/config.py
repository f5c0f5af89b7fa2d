import os

from dotenv import load_dotenv

load_dotenv()


def _parse_delays(raw: str) -> list[float]:
    """Parse a comma-separated list of retry delays (seconds)."""
    delays: list[float] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        value = float(part)
        if value < 0:
            raise ValueError(f"Retry delay must be non-negative, got {value}")
        delays.append(value)
    return delays


OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")

# LLM configuration
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "auto")
LLM_DEFAULT_TIER = os.getenv("LLM_DEFAULT_TIER", "fast")
LLM_MODEL_FAST = os.getenv("LLM_MODEL_FAST", "")
LLM_MODEL_STANDARD = os.getenv("LLM_MODEL_STANDARD", "")
LLM_MODEL_HIGH = os.getenv("LLM_MODEL_HIGH", "")

DATABASE_PATH = os.getenv("DATABASE_PATH", "diagcode.db")

# Retry schedules: N delays allow N + 1 attempts
INGESTION_RETRY_DELAYS = _parse_delays(os.getenv("INGESTION_RETRY_DELAYS", "2,4,8"))
SUGGESTION_RETRY_DELAYS = _parse_delays(os.getenv("SUGGESTION_RETRY_DELAYS", "2,4,8"))

# Document ingestion
DEFAULT_DOCUMENT_STRATEGY = os.getenv("DEFAULT_DOCUMENT_STRATEGY", "standard")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))

# Sessions idle longer than this (seconds) are dropped from memory
SESSION_IDLE_TIMEOUT = float(os.getenv("SESSION_IDLE_TIMEOUT", "3600"))

# Clinical input form
MIN_CLINICAL_TEXT_LENGTH = int(os.getenv("MIN_CLINICAL_TEXT_LENGTH", "20"))

# Clinical summary output language (empty: same language as the notes)
SUMMARY_LANGUAGE = os.getenv("SUMMARY_LANGUAGE", "Spanish")
