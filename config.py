"""
config.py — Loads preferences.yaml and environment variables.
Provides typed access to all configuration.
"""

import os
from pathlib import Path

import yaml
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent

# Load preferences.yaml
PREFERENCES_PATH = PROJECT_ROOT / "preferences.yaml"
with open(PREFERENCES_PATH, "r", encoding="utf-8") as f:
    _prefs = yaml.safe_load(f)


# --- Auto-Check Scheduler ---
AUTO_CHECK = _prefs["auto_check"]
DAILY_CHECK_CAP = AUTO_CHECK["daily_cap"]
QUOTA_TIMEZONE = AUTO_CHECK["timezone"]

# --- Schedule ---
SCHEDULE = _prefs["schedule"]

# --- Jobs ---
JOB_CLEANUP_RETENTION_MINUTES = _prefs["jobs"]["cleanup_retention_minutes"]

# --- Dispatch / Callbacks / Queue ---
DISPATCH = _prefs["dispatch"]
CALLBACKS = _prefs["callbacks"]
QUEUE = _prefs["queue"]

# --- LLM ---
LLM = _prefs["llm"]
LLM_MODEL = LLM["model"]
DAILY_LIMIT_MARKERS = [m.lower() for m in LLM["daily_limit_markers"]]
QUOTA_HEADERS = LLM["quota_headers"]

# --- HTTP server ---
SERVER = _prefs["server"]

# --- Search ---
SEARCH = _prefs["search"]
SEARCH_SITES = SEARCH["sites"]
DIRECT_URL_RULES = _prefs.get("direct_urls", [])

# --- API Keys & Service URLs (from .env) ---
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
SERPAPI_KEY = os.getenv("SERPAPI_KEY", "")
SCRAPING_SERVICE_URL = os.getenv("SCRAPING_SERVICE_URL", "http://localhost:3000").rstrip("/")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
IDEC_JP_PROXY = os.getenv("IDEC_JP_PROXY", "")
IDEC_US_PROXY = os.getenv("IDEC_US_PROXY", "")

# --- Database ---
DB_PATH = Path(os.getenv("EOL_DB_PATH", str(PROJECT_ROOT / "data" / "eol_checker.db")))

# --- Logging ---
LOG_DIR = PROJECT_ROOT / "logs"
LOG_FILE = LOG_DIR / "eol_checker.log"


def callback_url() -> str:
    """Address the scraping service posts results back to."""
    return f"{PUBLIC_BASE_URL}/callbacks/scrape"


def validate_config():
    """Check that critical configuration is present."""
    warnings = []

    if not ANTHROPIC_API_KEY:
        warnings.append("ANTHROPIC_API_KEY is not set — analysis will not work")
    if not SERPAPI_KEY:
        warnings.append("SERPAPI_KEY is not set — only direct-URL makers can be checked")
    if not os.getenv("SCRAPING_SERVICE_URL"):
        warnings.append(f"SCRAPING_SERVICE_URL is not set — using {SCRAPING_SERVICE_URL}")
    if not os.getenv("PUBLIC_BASE_URL"):
        warnings.append(f"PUBLIC_BASE_URL is not set — scraper callbacks go to {callback_url()}")
    if not IDEC_JP_PROXY or not IDEC_US_PROXY:
        warnings.append("IDEC_JP_PROXY / IDEC_US_PROXY not set — IDEC dual-site scraping will fail")

    return warnings
