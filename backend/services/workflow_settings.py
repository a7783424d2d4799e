"""
Procurement Workflow Hub - Runtime Settings

All environment-driven switches for the workflow core live here so that the
engine, the notification layer and the cascade tooling read the same values.

Feature Flags:
- ENABLE_WORKFLOW_NOTIFICATIONS: master switch for notification dispatch
- DEMO_MODE: resolve recipients and log, but never hand off to a sender
- CASCADE_DELETE_UNBACKED_DELIVERIES: operator opt-in for deleting PRs that
  claim delivery without any shipment (irreversible, off by default)
"""

import os


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


# =============================================================================
# DATABASE
# =============================================================================

MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "procurement_workflow")


# =============================================================================
# NOTIFICATIONS
# =============================================================================

ENABLE_WORKFLOW_NOTIFICATIONS = _env_flag("ENABLE_WORKFLOW_NOTIFICATIONS", "true")

DEMO_MODE = _env_flag("DEMO_MODE")

# Bounded retry for a single dispatch (fixed backoff)
NOTIFICATION_MAX_ATTEMPTS = int(os.environ.get("NOTIFICATION_MAX_ATTEMPTS", "3"))
NOTIFICATION_RETRY_DELAY_SECONDS = float(os.environ.get("NOTIFICATION_RETRY_DELAY_SECONDS", "2.0"))

# Mapping configuration is read-mostly; stale reads only affect who is notified
NOTIFICATION_MAPPING_CACHE_TTL_SECONDS = float(
    os.environ.get("NOTIFICATION_MAPPING_CACHE_TTL_SECONDS", "60")
)


# =============================================================================
# CASCADE INTEGRITY
# =============================================================================

# Tenant-scoped reference IDs are numeric strings unless overridden
CANONICAL_ID_PATTERN = os.environ.get("CANONICAL_ID_PATTERN", r"^\d+$")

CASCADE_REPORT_DIR = os.environ.get("CASCADE_REPORT_DIR", "./reports")
CASCADE_LOCK_FILE = os.environ.get("CASCADE_LOCK_FILE", "/tmp/cascade_integrity.lock")

CASCADE_DELETE_UNBACKED_DELIVERIES = _env_flag("CASCADE_DELETE_UNBACKED_DELIVERIES")

# Sample size per report section
CASCADE_SAMPLE_LIMIT = int(os.environ.get("CASCADE_SAMPLE_LIMIT", "20"))
