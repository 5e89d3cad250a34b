"""
InvoLex Billing Engine - Configuration

Environment driven defaults for the triage engine. Values are read once at import;
`server.py` loads `.env` before anything from this package is imported.
"""

import os
import logging
from typing import Any

logger = logging.getLogger(__name__)

# Threshold bounds enforced by the settings slider
MIN_AUTO_SYNC_THRESHOLD = 0.7
MAX_AUTO_SYNC_THRESHOLD = 1.0
DEFAULT_AUTO_SYNC_THRESHOLD = 0.95


def clamp_threshold(value: Any, default: float = DEFAULT_AUTO_SYNC_THRESHOLD) -> float:
    """
    Force a confidence threshold into [0.7, 1.0].

    Non-numeric input falls back to the default.
    """
    try:
        threshold = float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid auto-sync threshold %r, using %s", value, default)
        return default
    if threshold != threshold:  # NaN
        return default
    return max(MIN_AUTO_SYNC_THRESHOLD, min(MAX_AUTO_SYNC_THRESHOLD, threshold))


# Auto-pilot
AUTOPILOT_ENABLED = os.environ.get("AUTOPILOT_ENABLED", "false").lower() in ("true", "1", "yes")
AUTOPILOT_INTERVAL_SECONDS = float(os.environ.get("AUTOPILOT_INTERVAL_SECONDS", "30"))
AUTO_SYNC_THRESHOLD = clamp_threshold(os.environ.get("AUTO_SYNC_THRESHOLD", str(DEFAULT_AUTO_SYNC_THRESHOLD)))

# Drafting
LIVE_PREVIEW_DEBOUNCE_MS = int(os.environ.get("LIVE_PREVIEW_DEBOUNCE_MS", "750"))
PERSONALIZATION_ENABLED = os.environ.get("PERSONALIZATION_ENABLED", "true").lower() in ("true", "1", "yes")

# Billing defaults
DEFAULT_HOURLY_RATE = float(os.environ.get("DEFAULT_HOURLY_RATE", "350"))
DEFAULT_PRACTICE_TOOL = os.environ.get("DEFAULT_PRACTICE_TOOL", "Clio")
UNCATEGORIZED_MATTER = "Uncategorized"
SCAN_FALLBACK_HOURS = 0.3
TRIAGE_FALLBACK_HOURS = 0.2

# Personalization
MAX_CORRECTION_EXAMPLES = 5
MAX_STORED_CORRECTIONS = 10
RULE_SUGGESTION_MIN_CORRECTIONS = 3
GROUPING_BODY_CHARS = 400

# AI collaborator
GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY", "")
BILLING_AI_MODEL = os.environ.get("BILLING_AI_MODEL", "gemini-2.5-flash")

# Practice management sync
PRACTICE_SYNC_API_URL = os.environ.get("PRACTICE_SYNC_API_URL", "")
PRACTICE_SYNC_API_TOKEN = os.environ.get("PRACTICE_SYNC_API_TOKEN", "")
PRACTICE_SYNC_TIMEOUT = float(os.environ.get("PRACTICE_SYNC_TIMEOUT", "30"))
