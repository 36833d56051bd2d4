# centralized configuration loader
# runs load_dotenv() to read .env
# decouples code from environment so hosts, storage and defaults change without code change

import os
from dotenv import load_dotenv

load_dotenv()

# Providers
LOCAL_API_URL = os.getenv("LOCAL_API_URL", "http://localhost:1234/v1")
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
DISCOVERY_TIMEOUT = float(os.getenv("DISCOVERY_TIMEOUT", "60"))

# Generation defaults
DEFAULT_TEMPERATURE = float(os.getenv("DEFAULT_TEMPERATURE", "1.0"))
DEFAULT_MAX_TOKENS = int(os.getenv("DEFAULT_MAX_TOKENS", "2048"))

# Settings persistence
# SETTINGS_API_URL wins when set; otherwise settings live in a local JSON file
SETTINGS_PATH = os.getenv("SETTINGS_PATH", "data/ai_settings.json")
SETTINGS_API_URL = os.getenv("SETTINGS_API_URL", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
