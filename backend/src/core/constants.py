"""Application constants and configuration values."""

# Database field lengths
MAX_STRING_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 1000

# Database connection settings
DB_POOL_RECYCLE_SECONDS = 300  # 5 minutes

# Money
BASIS_POINTS_PER_WHOLE = 10000  # 10000 bp = 100%

# Statement numbering: {YYYY}-{NNNNN}
STATEMENT_NUMBER_MAX_SERIAL = 99999

# Billing scheduler settings (facility time)
MISSED_SWEEP_INTERVAL_MINUTES = 15  # No-show sweep cadence
JOURNAL_BATCH_HOUR = 1  # Nightly journal run at 1 AM
STATEMENT_RUN_DAY = 1  # Monthly statements on the 1st...
STATEMENT_RUN_HOUR = 4  # ...at 4 AM, after the journal run
BILLING_SCHEDULER_MAX_INSTANCES = 1  # Prevent overlapping scheduler runs
BILLING_SCHEDULER_MISFIRE_GRACE_SECONDS = 3600  # Allow 1 hour grace time if server was down

# Task queue retry backoff (seconds), indexed by attempt number
BILLING_TASK_RETRY_DELAYS = [0.5, 2, 5, 15, 60]
