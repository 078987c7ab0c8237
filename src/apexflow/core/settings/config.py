"""
Centralized application configuration.

Edit the variables below to configure development settings.
"""

import logging
import os

# =============================================================================
# DEVELOPMENT SETTINGS - Edit these for local development
# =============================================================================
LOG_LEVEL = os.environ.get("APEXFLOW_LOG_LEVEL", "INFO")
LOG_TO_CONSOLE = True  # Set to True to output logs to terminal
# =============================================================================

# =============================================================================
# HISTORY SETTINGS
# =============================================================================
MAX_HISTORY_ENTRIES = 20  # Number of transcription history records to keep
# =============================================================================

# =============================================================================
# PIPELINE LIMITS
# =============================================================================
MAX_AUDIO_QUEUE_DEPTH = 50  # Undelivered audio segments before Overrun
CANCEL_GRACE_PERIOD_SECONDS = 2.0
MAX_FALLBACK_BUFFER_SECONDS = 300.0  # Streamed audio kept for a batch re-transcription
# =============================================================================


def get_log_level() -> int:
    """Get the logging level as an integer."""
    return getattr(logging, LOG_LEVEL.upper(), logging.INFO)
