"""
Coherence Sync: Configuration

Central config for the engine, the sync triggers and the recovery channel.
Reads from environment with sensible defaults.
"""

import os
from datetime import timedelta
from pathlib import Path


# ── Decay ─────────────────────────────────────────────────
DECAY_WINDOW = timedelta(
    hours=float(os.environ.get("COHERENCE_DECAY_WINDOW_HOURS", "6"))
)
DEFAULT_DECAY_RATE = int(os.environ.get("COHERENCE_DEFAULT_DECAY", "5"))
ANCHORED_DECAY_RATE = int(os.environ.get("COHERENCE_ANCHORED_DECAY", "3"))
ADMIN_DECAY_RATE = 0

# ── Passive recovery ──────────────────────────────────────
# 0.1 per 3s tick is +1 per 30s; anchored identities recover 4x faster.
RECOVERY_TICK_S = float(os.environ.get("COHERENCE_RECOVERY_TICK", "3"))
DEFAULT_RECOVERY = 0.1
ANCHORED_RECOVERY = 0.4

# ── Score bounds and labels ───────────────────────────────
MIN_SCORE = 0.0
MAX_SCORE = 100.0
INITIAL_SCORE = 100.0

# Lower edge inclusive, checked top-down.
STATE_THRESHOLDS = [
    (90.0, "FEED_STABLE"),
    (70.0, "SYNC_RECOVERING"),
    (45.0, "COHERENCE_FRAYING"),
    (20.0, "SIGNAL_FRAGMENTED"),
    (0.0, "CRITICAL_INTERFERENCE"),
]

# ── Day progress ──────────────────────────────────────────
UNANCHORED_DAY_CAP = int(os.environ.get("COHERENCE_UNANCHORED_DAY_CAP", "30"))
ADMIN_CLEAN_SLATE = os.environ.get("COHERENCE_ADMIN_CLEAN_SLATE", "1") == "1"

# ── Rollover ──────────────────────────────────────────────
ROLLOVER_BONUS = float(os.environ.get("COHERENCE_ROLLOVER_BONUS", "10"))
# A rollover timer waking this early still counts as the new calendar day
ROLLOVER_GRACE = timedelta(seconds=float(os.environ.get("COHERENCE_ROLLOVER_GRACE", "60")))
TRANSITION_SIGNAL_S = float(os.environ.get("COHERENCE_TRANSITION_SIGNAL", "4"))

# ── Sync triggers ─────────────────────────────────────────
STATE_POLL_S = float(os.environ.get("COHERENCE_STATE_POLL", "10"))
BACKUP_POLL_S = float(os.environ.get("COHERENCE_BACKUP_POLL", "30"))
BACKUP_MIN_INTERVAL = timedelta(
    seconds=float(os.environ.get("COHERENCE_BACKUP_MIN_INTERVAL", "120"))
)
BACKUP_SCORE_DELTA = float(os.environ.get("COHERENCE_BACKUP_SCORE_DELTA", "5"))
INITIAL_SYNC_DELAY_S = float(os.environ.get("COHERENCE_INITIAL_SYNC_DELAY", "2"))

# After sign-out, wait this long before signing a fresh anonymous principal in.
REINDUCTION_DELAY_S = 0.5

# ── Identity ──────────────────────────────────────────────
# Credential kinds that make a principal durable (anchored).
DURABLE_CREDENTIAL_KINDS = frozenset(
    k.strip()
    for k in os.environ.get(
        "COHERENCE_DURABLE_KINDS", "password,google.com"
    ).split(",")
    if k.strip()
)
ADMIN_EMAILS = frozenset(
    e.strip().lower()
    for e in os.environ.get("COHERENCE_ADMIN_EMAILS", "").split(",")
    if e.strip()
)

# ── Collections ───────────────────────────────────────────
ADMIN_COLLECTION = "users"
OBSERVER_COLLECTION = "observers"
MAPPING_COLLECTION = "principal_mappings"
ACCESS_CODE_COLLECTION = "access_codes"

# ── Local state ───────────────────────────────────────────
STATE_DIR = Path(
    os.environ.get("COHERENCE_STATE_DIR", str(Path.home() / ".coherence_sync"))
)
LOCAL_STATE_FILE = STATE_DIR / "local_state.json"
IDENTITY_KEY = "observer_session"
GHOST_KEY = "logout_ghost"

# ── Remote store ──────────────────────────────────────────
STORE_BACKEND = os.environ.get("COHERENCE_STORE", "sqlite")
SQLITE_PATH = Path(
    os.environ.get("COHERENCE_SQLITE_PATH", str(STATE_DIR / "progress.db"))
)
PG_DSN = os.environ.get(
    "COHERENCE_DATABASE_URL",
    "postgresql://localhost:5432/coherence_sync",
)
PG_MIN_POOL = int(os.environ.get("COHERENCE_PG_MIN_POOL", "1"))
PG_MAX_POOL = int(os.environ.get("COHERENCE_PG_MAX_POOL", "5"))

# ── Recovery channel ──────────────────────────────────────
# No I/L/O/0/1: codes are read aloud and typed by hand.
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CODE_GROUP_LENGTH = 3
CODE_ATTEMPTS = 5
RECOVERY_URL = os.environ.get("COHERENCE_RECOVERY_URL", "http://127.0.0.1:3850")
RECOVERY_TIMEOUT_S = 10.0
TOKEN_SECRET = os.environ.get("COHERENCE_TOKEN_SECRET", "")
TOKEN_TTL = timedelta(seconds=int(os.environ.get("COHERENCE_TOKEN_TTL", "3600")))

# ── API server ────────────────────────────────────────────
API_HOST = os.environ.get("COHERENCE_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("COHERENCE_API_PORT", "3850"))
# Principals allowed to inspect any progress document or erase any identity
API_ADMIN_UIDS = frozenset(
    u.strip()
    for u in os.environ.get("COHERENCE_API_ADMIN_UIDS", "").split(",")
    if u.strip()
)

# ── Logs ──────────────────────────────────────────────────
LOG_DIR = Path(os.environ.get("COHERENCE_LOG_DIR", str(STATE_DIR / "logs")))
LOG_FILE = os.environ.get("COHERENCE_LOG_FILE", "coherence.log")
LOG_LEVEL = os.environ.get("COHERENCE_LOG_LEVEL", "INFO").upper()
LOG_MAX_BYTES = 10_000_000
LOG_BACKUPS = 5
