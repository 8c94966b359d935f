"""Constants for Gmail Triage."""

from pathlib import Path

# --- Config paths ---
CONFIG_DIR = Path.home() / ".gmail-triage"
STORE_DB_PATH = CONFIG_DIR / "store.db"

# --- Gmail API ---
SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.labels",
    "https://www.googleapis.com/auth/userinfo.email",
]
USER_ID = "me"
TOKEN_URI = "https://oauth2.googleapis.com/token"
AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"
HISTORY_PAGE_SIZE = 500  # history records per list page
LIST_PAGE_SIZE = 100  # messages per list page
WATCH_LABEL_IDS = ["INBOX"]
RETRYABLE_STATUSES = (429, 500, 503)
RETRY_ATTEMPTS = 5
RETRY_DELAY_FACTOR = 3  # retry budget per call, in multiples of the request timeout

# --- Labels ---
LABEL_URGENT = "URGENT"
LABEL_HIGH_RISK = "HIGH_RISK"
LABEL_MODERATE_RISK = "MODERATE_RISK"
RISK_LABELS = (LABEL_HIGH_RISK, LABEL_MODERATE_RISK)

# --- Credentials ---
REFRESH_SKEW_SECONDS = 300  # refresh this long before expiry

# --- Reconciliation ---
DEFAULT_LOOKBACK = 10  # history ids replayed on first contact
DEFAULT_MAX_WORKERS = 4
DEFAULT_TIMEOUT_SECONDS = 10

# --- Classifier ---
DEFAULT_MODEL_NAME = "gpt-4o-mini"
AZURE_API_VERSION = "2024-06-01"
UNPARSEABLE_RISK_POLICIES = ("review", "ignore")

# --- Store keys ---
TOKEN_KEY_PREFIX = "tokens/"
HISTORY_KEY_PREFIX = "history/"
VERDICT_KEY_PREFIX = "verdicts/"
