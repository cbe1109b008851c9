"""
Configuration module for vaasubmit.

Library defaults read from environment variables at import time.
"""

import os


# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("VAASUBMIT_ENV", "dev")  # dev|stage|prod

# Resolver
MAX_RESOLVER_ITERATIONS = int(os.getenv("VAASUBMIT_MAX_RESOLVER_ITERATIONS", "10"))

# Guardian set used when callers do not pass one explicitly
GUARDIAN_SET_INDEX = int(os.getenv("VAASUBMIT_GUARDIAN_SET_INDEX", "0"))

# Logging
LOG_LEVEL = os.getenv("VAASUBMIT_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("VAASUBMIT_LOG_JSON", "1").lower() in ("1", "true", "yes")
LOG_FILE = os.getenv("VAASUBMIT_LOG_FILE") or None


# ============================================================
# Feature Flags
# ============================================================

def is_production() -> bool:
    """Check if running in production mode."""
    return ENV == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("VAASUBMIT_DEBUG", "").lower() in ("1", "true", "yes")
