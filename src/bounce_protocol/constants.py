"""Constants for the Bounce Protocol engine.

This module defines all configuration constants used throughout the package,
including directory paths, session file conventions, watcher timing, lock
behavior, and adapter reliability settings.

Selected values can be overridden through environment variables; unparsable
values silently fall back to the defaults below.
"""

import os
from pathlib import Path


def _get_float_env(name: str, default: float) -> float:
    """Parse float env var with safe fallback."""
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def _get_int_env(name: str, default: int) -> int:
    """Parse int env var with safe fallback."""
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


# =============================================================================
# Protocol Configuration
# =============================================================================
# Version written into the header of newly created session files
PROTOCOL_VERSION = "0.1"

# Session files are markdown; lock sidecars share the base name plus a suffix
SESSION_FILE_EXTENSION = ".md"
LOCK_FILE_SUFFIX = ".lock"

# Upper bound accepted for the max-rounds rule
MAX_ROUNDS_LIMIT = 100

# =============================================================================
# Application Directory Structure
# =============================================================================
# Base directory for engine data (~/.bounce)
BOUNCE_HOME_DIR = Path(os.getenv("BOUNCE_HOME", str(Path.home() / ".bounce")))

# Default directory for session files when the CLI is not given one
SESSIONS_DIR = BOUNCE_HOME_DIR / "sessions"

# Log file directory
LOG_DIR = BOUNCE_HOME_DIR / "logs"
LOG_FILE = LOG_DIR / "bounce.log"

# =============================================================================
# Session Watcher Configuration
# =============================================================================
# Polling interval of the filesystem observer (seconds)
# Lower values = faster detection, higher CPU usage
WATCHER_DEBOUNCE_SECONDS = _get_float_env("BOUNCE_WATCHER_DEBOUNCE_SECONDS", 0.2)

# A file must be quiet for this long before it is read, so a multi-part
# append is never observed half-written
WATCHER_STABILITY_SECONDS = _get_float_env("BOUNCE_WATCHER_STABILITY_SECONDS", 0.3)

# =============================================================================
# File Lock Configuration
# =============================================================================
LOCK_RETRIES = _get_int_env("BOUNCE_LOCK_RETRIES", 3)
LOCK_RETRY_DELAY_SECONDS = _get_float_env("BOUNCE_LOCK_RETRY_DELAY_SECONDS", 0.2)
LOCK_RETRY_FACTOR = 2
# Backoff cap, mirrors four times the base delay
LOCK_MAX_RETRY_DELAY_SECONDS = LOCK_RETRY_DELAY_SECONDS * 4
LOCK_STALE_SECONDS = _get_float_env("BOUNCE_LOCK_STALE_SECONDS", 10.0)
LOCK_TIMEOUT_SECONDS = _get_float_env("BOUNCE_LOCK_TIMEOUT_SECONDS", 5.0)

# =============================================================================
# Adapter Configuration
# =============================================================================
# Grace period between SIGTERM and SIGKILL when killing an agent process
ADAPTER_KILL_GRACE_SECONDS = _get_float_env("BOUNCE_ADAPTER_KILL_GRACE_SECONDS", 5.0)

# Default simulated latency for the mock adapter
MOCK_RESPONSE_DELAY_SECONDS = 0.1

# =============================================================================
# Reliability Configuration
# =============================================================================
CIRCUIT_BREAKER_FAILURE_THRESHOLD = _get_int_env("BOUNCE_CIRCUIT_FAILURE_THRESHOLD", 3)
CIRCUIT_BREAKER_COOLDOWN_SECONDS = _get_float_env("BOUNCE_CIRCUIT_COOLDOWN_SECONDS", 45.0)

# Agent manager limits
MAX_CONCURRENT_AGENTS = _get_int_env("BOUNCE_MAX_CONCURRENT_AGENTS", 5)

# Seconds between background agent health checks
HEALTH_CHECK_INTERVAL_SECONDS = _get_float_env("BOUNCE_HEALTH_CHECK_INTERVAL_SECONDS", 10.0)

# =============================================================================
# Defaults for newly created sessions
# =============================================================================
DEFAULT_TURN_ORDER = "round-robin"
DEFAULT_MAX_TURNS_PER_ROUND = 1
DEFAULT_TURN_TIMEOUT_SECONDS = 300
DEFAULT_CONSENSUS_THRESHOLD = 0.7
DEFAULT_CONSENSUS_MODE = "majority"
DEFAULT_ESCALATION = "human"
DEFAULT_MAX_ROUNDS = 10
DEFAULT_OUTPUT_FORMAT = "structured"
