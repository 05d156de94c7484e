"""
Settings for the mall assistant, read once at import time.

APP_ENV picks the dotenv file (production -> .env.production, sit -> .env.sit,
test -> .env.test, anything else -> .env). Values already present in the
process environment win over the file.
"""
import os
from typing import List

from dotenv import load_dotenv

ENV_FILES = {
    'production': '.env.production',
    'sit': '.env.sit',
    'test': '.env.test',
}


def load_environment_config() -> str:
    """
    Load the dotenv file for the current APP_ENV.

    Returns:
        The file that was requested (it may not exist)
    """
    env = os.getenv('APP_ENV', 'development').lower()
    env_file = ENV_FILES.get(env, '.env')

    if os.path.exists(env_file):
        load_dotenv(env_file)
        print(f"🔧 Mall assistant settings loaded from {env_file}")
    else:
        load_dotenv()
        if env in ENV_FILES and env != 'test':
            print(f"⚠️  {env_file} missing for APP_ENV={env}, falling back to .env")
    return env_file


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _csv(name: str, default: str = "") -> List[str]:
    """Comma-separated setting; a bare '*' stays a wildcard."""
    raw = os.getenv(name, default)
    if raw.strip() == "*":
        return ["*"]
    return [item.strip() for item in raw.split(",") if item.strip()]


load_environment_config()

APP_ENV = os.getenv('APP_ENV', 'development').lower()
APP_PORT = int(os.getenv("APP_PORT", "8092"))

# Only the response composer talks to a model; recognition and planning are rule-based
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.3"))
USE_LLM = bool(OPENAI_API_KEY)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
ENABLE_PII_REDACTION = _flag("ENABLE_PII_REDACTION", "true")

# Aggregation result side-table
QUERY_CACHE_ENABLED = _flag("QUERY_CACHE_ENABLED", "true")
QUERY_CACHE_TTL_SECONDS = int(os.getenv("QUERY_CACHE_TTL_SECONDS", "300"))
QUERY_CACHE_MAX_SIZE = int(os.getenv("QUERY_CACHE_MAX_SIZE", "500"))

# Unset: simulated prior periods vary per process. Integer: reproducible baselines.
_history_seed = os.getenv("HISTORY_RANDOM_SEED")
HISTORY_RANDOM_SEED = int(_history_seed) if _history_seed else None

CONVERSATION_MAX_MESSAGES = int(os.getenv("CONVERSATION_MAX_MESSAGES", "10"))
# Idle conversations and unanswered clarifications are forgotten after these
CONVERSATION_CONTEXT_TTL_HOURS = float(os.getenv("CONVERSATION_CONTEXT_TTL_HOURS", "24"))
PENDING_CLARIFICATION_TTL_HOURS = float(os.getenv("PENDING_CLARIFICATION_TTL_HOURS", "1"))

# CORS for the dashboard front end
CORS_ORIGINS = _csv("CORS_ORIGINS")
CORS_ALLOW_CREDENTIALS = _flag("CORS_ALLOW_CREDENTIALS", "true")
CORS_ALLOW_METHODS = _csv("CORS_ALLOW_METHODS", "*")
CORS_ALLOW_HEADERS = _csv("CORS_ALLOW_HEADERS", "*")
CORS_MAX_AGE = int(os.getenv("CORS_MAX_AGE", "600"))
