"""Configuration for SMADR."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")

# Provider credentials (defaults for the settings store)
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "")
GROQ_API_KEY = os.getenv("GROQ_API_KEY", "")
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")

DEFAULT_PROVIDER = os.getenv("SMADR_PROVIDER", "google")
DEFAULT_MODEL_NAME = os.getenv("SMADR_MODEL", "gemini-2.5-flash")

# OpenAI-compatible chat-completion endpoints
GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"
OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
OPENROUTER_SITE_URL = os.getenv("OPENROUTER_SITE_URL", "http://localhost")
OPENROUTER_APP_TITLE = os.getenv("OPENROUTER_APP_TITLE", "(SMADR) Strategic Multi-Agent Deep Research")

REQUEST_TIMEOUT = float(os.getenv("SMADR_REQUEST_TIMEOUT", "120"))

# Number of agent slots in the initial and refinement stages
AGENT_COUNT = 4

TITLE_MAX_CHARS = 60

LOG_LEVEL = os.getenv("SMADR_LOG_LEVEL", "INFO")

# Data directory for conversation and settings storage
DATA_DIR = os.getenv("SMADR_DATA_DIR", "data/conversations")
SETTINGS_PATH = os.getenv("SMADR_SETTINGS_PATH", "data/settings.json")

CORS_ORIGINS = ["http://localhost:5173", "http://localhost:3000"]
