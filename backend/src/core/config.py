"""
Application configuration using python-dotenv.

This module loads environment variables from .env file into os.environ
for use throughout the application.
"""

import os
import pathlib
from dotenv import load_dotenv


# Determine if we're running in a test environment
# Don't load .env file during testing to ensure predictable test behavior
is_testing = os.getenv("PYTEST_VERSION") is not None or any("pytest" in str(frame) for frame in __import__('inspect').stack(0))

# Load .env file into os.environ (only outside of testing)
if not is_testing:
    # Try multiple possible locations for .env file
    possible_paths = [
        pathlib.Path(__file__).parent.parent.parent / ".env",  # backend/.env (when run from backend/src)
        pathlib.Path(__file__).parent.parent.parent.parent / ".env",  # .env (repository root)
        pathlib.Path.cwd() / ".env",  # .env in current directory
    ]

    for env_path in possible_paths:
        if env_path.exists():
            load_dotenv(env_path)
            break


# Configuration constants with defaults
# These match the environment variables defined in .env.example
def get_database_url():
    """Get the database URL from environment."""
    return os.getenv(
        "DATABASE_URL",
        "postgresql://localhost/core_facility_dev"
    )

DATABASE_URL = get_database_url()

# Timezone in which all stored (naive) datetimes are interpreted
FACILITY_TIMEZONE = os.getenv("FACILITY_TIMEZONE", "America/Chicago")

# Scheduling
MAX_SCHEDULE_HORIZON_DAYS = int(os.getenv("MAX_SCHEDULE_HORIZON_DAYS", "366"))
DEFAULT_CANCELLATION_CUTOFF_HOURS = int(os.getenv("DEFAULT_CANCELLATION_CUTOFF_HOURS", "24"))
DEFAULT_MISSED_GRACE_MINUTES = int(os.getenv("DEFAULT_MISSED_GRACE_MINUTES", "15"))

# Concurrency
LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))
BUSY_RETRY_COUNT = int(os.getenv("BUSY_RETRY_COUNT", "3"))

# Billing background work
BILLING_TASK_WORKERS = int(os.getenv("BILLING_TASK_WORKERS", "2"))
BILLING_TASK_MAX_ATTEMPTS = int(os.getenv("BILLING_TASK_MAX_ATTEMPTS", "5"))
ENABLE_BILLING_SCHEDULER = os.getenv("ENABLE_BILLING_SCHEDULER", "true").lower() == "true"

# HTTP
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if origin.strip()]
