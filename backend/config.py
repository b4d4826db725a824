"""
NutriLog Backend Configuration
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Base paths
BASE_DIR = Path(__file__).parent
DATA_DIR = BASE_DIR / "data"
DB_PATH = Path(os.getenv("NUTRILOG_DB_PATH", str(DATA_DIR / "nutrilog.db")))

# Ensure data directory exists
DATA_DIR.mkdir(exist_ok=True)

# Session store backend: "sqlite" or "memory"
SESSION_STORE = os.getenv("NUTRILOG_SESSION_STORE", "sqlite").lower()

# OpenRouter Configuration
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1/chat/completions"
INTENT_MODEL = os.getenv("INTENT_MODEL", "openai/gpt-4o-mini")          # fast classifier
REASONING_MODEL = os.getenv("REASONING_MODEL", "openai/gpt-4o")         # tool-calling fallback
CHAT_MODEL = os.getenv("CHAT_MODEL", "openai/gpt-4o-mini")              # reply wording
PARSER_MODEL = os.getenv("PARSER_MODEL", REASONING_MODEL)                # recipe parsing + estimates

# LLM Settings
LLM_TEMPERATURE = 0.3
LLM_MAX_TOKENS = 1000
LLM_TIMEOUT = 30
LLM_MAX_RETRIES = 3

# Conversation Settings
MAX_MESSAGE_CHARS = 2000
TRUNCATION_MARKER = "... [Truncated]"
INTENT_HISTORY_WINDOW = 5
REASONING_HISTORY_WINDOW = 6
REASONING_MAX_ITERATIONS = 5

# Spoonacular API Configuration (nutrition lookup)
SPOONACULAR_API_KEY = os.getenv("SPOONACULAR_API_KEY", "")
SPOONACULAR_BASE_URL = "https://api.spoonacular.com"

# CORS - Frontend URLs
CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    os.getenv("FRONTEND_URL", ""),  # Production frontend URL
]
# Filter empty strings
CORS_ORIGINS = [origin for origin in CORS_ORIGINS if origin]

# Nutrients logged when the user has no goals yet
DEFAULT_TRACKED_NUTRIENTS = ["calories", "protein_g", "carbs_g", "fat_total_g"]
