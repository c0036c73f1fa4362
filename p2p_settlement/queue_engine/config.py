"""
Queue engine configuration constants.

Defines score weights, lock keys, and the maintenance defaults
used by the matcher and the engine.
"""

from datetime import timedelta
from decimal import Decimal

from p2p_settlement.config import settings

# Redis key for the maintenance-cycle lock (re-scan + cleanup)
MAINTENANCE_LOCK_KEY = "queue:maintenance:lock"
MAINTENANCE_LOCK_TIMEOUT_SECONDS = 300

# Match score — audit/ranking only, never affects candidate selection
SCORE_BASE = Decimal("100")
SCORE_PAYMENT_METHOD_BONUS = Decimal("20")
SCORE_WAIT_CAP = Decimal("20")             # 1 point per combined minute waited
SCORE_WAIT_SECONDS_PER_POINT = Decimal("60")

# Default item priority when the caller does not supply one
DEFAULT_PRIORITY = 1

# Persistence I/O bound; a timed-out write counts as failed
PERSISTENCE_TIMEOUT_SECONDS = settings.QUEUE_PERSISTENCE_TIMEOUT_SECONDS

# Terminal records older than this leave the in-memory working set
CLEANUP_MAX_AGE = timedelta(hours=settings.QUEUE_CLEANUP_MAX_AGE_HOURS)

# Trailing window for the success-rate statistic
STATS_WINDOW = timedelta(hours=settings.QUEUE_STATS_WINDOW_HOURS)

REJECTION_DEFAULT_REASON = "Rejected by admin"
CANCELLATION_DEFAULT_REASON = "Cancelled by admin"
CANCELLATION_MATCH_NOTE = "Cancelled due to item cancellation"
# Match notes of a failed settlement start with this; the reconciliation view keys on it
SETTLEMENT_FAILURE_NOTE_PREFIX = "Settlement failed"

# Amounts are stored as Numeric(18, 2); anything at or above this cannot be
MAX_AMOUNT = Decimal("1E16")
