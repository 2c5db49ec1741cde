"""
Centralized application constants.

Single point of truth for the business constants shared by the source
client, carrier providers, ingestion, reconciliation and the scheduler.
"""

# ==============================================================================
# SOURCE (STOREFRONT) INGESTION
# ==============================================================================

SOURCE_NAME = "ecomanager"

# Orders per source page
SOURCE_PAGE_SIZE = 20

# Pages re-scanned on each side of the persisted cursor page
RESCAN_WINDOW_PAGES = 50

# Consecutive empty pages that end a scan
MAX_EMPTY_PAGES = 3

# Upper bound for the galloping page search
MAX_SEARCH_PAGE = 100

# Source state admitted during incremental scans ("ready to ship")
ELIGIBLE_SOURCE_STATES = ["En dispatch"]

# Source native state -> canonical lifecycle status
SOURCE_STATUS_MAPPING = {
    "En dispatch": "PENDING",
    "Confirmé": "CONFIRMED",
    "En cours": "IN_PROGRESS",
    "Expédié": "SHIPPED",
    "Livré": "DELIVERED",
    "Annulé": "CANCELLED",
    "Retourné": "RETURNED",
}
DEFAULT_LIFECYCLE_STATUS = "PENDING"

# Pause between stores in a sequential ingestion run (seconds)
STORE_DELAY_SECONDS = 2.0

# ==============================================================================
# RATE LIMITING & RETRIES
# ==============================================================================

SOURCE_MIN_DELAY_SECONDS = 0.25
CARRIER_MIN_DELAY_SECONDS = 0.1
YALIDINE_MIN_DELAY_SECONDS = 0.2

# Rate-limiter timestamps only need to outlive the longest delay
RATE_LIMIT_KEY_TTL_SECONDS = 60

# 429 handling: retries after the first attempt, and base backoff
MAX_RATE_LIMIT_RETRIES = 1
RATE_LIMIT_BACKOFF_SECONDS = 2.0
MAX_RETRY_AFTER_SECONDS = 60.0

# How long a store stays flagged after sustained 429s
RATE_LIMIT_COOLDOWN_SECONDS = 900

HTTP_TIMEOUT_SECONDS = 30.0

# ==============================================================================
# CARRIER RECONCILIATION
# ==============================================================================

CARRIER_BULK_PAGE_SIZE = 250
CARRIER_BULK_MAX_RESULTS = 7000
CARRIER_BULK_FAN_OUT = 10

# Per-reference fallback lookups in flight at once
FALLBACK_CONCURRENCY = 10

# Status writes are grouped in batches of this size
RECONCILE_WRITE_BATCH_SIZE = 100

# Orders considered per "all needing refresh" run
RECONCILE_MAX_ORDERS = 5000

CARRIER_NOT_FOUND_MESSAGE = "Order not found in carrier"

# ==============================================================================
# CACHE KEYS & TTLS
# ==============================================================================

REDIS_CURSOR_KEY = "ordersync:cursor:{store}"
REDIS_LAST_ID_KEY = "ordersync:last_id:{store}"
REDIS_RATE_LIMIT_KEY = "ordersync:ratelimit:{key}"
REDIS_RATE_LIMIT_FLAG_KEY = "ordersync:ratelimit_flag:{store}"
REDIS_CARRIER_KEY_STATS = "ordersync:carrier_key:{credential}"
REDIS_JOB_RECORD_KEY = "ordersync:scheduler:{job}"
REDIS_JOB_HISTORY_KEY = "ordersync:scheduler:{job}:history"

CURSOR_TTL_SECONDS = 7 * 24 * 60 * 60
JOB_HISTORY_LENGTH = 10

# ==============================================================================
# SCHEDULER
# ==============================================================================

INGESTION_JOB = "ingestion"
RECONCILIATION_JOB = "reconciliation"

# Cron hour expressions (wall clock)
INGESTION_TRIGGER_HOURS = "8-20"
RECONCILIATION_TRIGGER_HOURS = "0,6,12,18"

# Maximum time for a single run in seconds
RUN_TIMEOUT_SECONDS = 1800
