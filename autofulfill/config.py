"""
Runtime configuration read from environment variables.
"""

import os
import socket
from dataclasses import dataclass
from pathlib import Path

# =============================================================================
# STORE
# =============================================================================

STORE_BASE_URL = os.getenv("STORE_BASE_URL", "https://www.amazon.co.jp").rstrip("/")
SIGN_IN_URL = os.getenv("SIGN_IN_URL", f"{STORE_BASE_URL}/ap/signin")
CART_URL = os.getenv("CART_URL", f"{STORE_BASE_URL}/gp/cart/view.html")

HEADLESS = os.getenv("HEADLESS", "true").lower() == "true"

# =============================================================================
# STORAGE
# =============================================================================

DATA_DIR = Path(os.getenv("DATA_DIR", "/data"))
ARTIFACTS_DIR = Path(os.getenv("ARTIFACTS_DIR", str(DATA_DIR / "artifacts")))
SESSIONS_DIR = Path(os.getenv("SESSIONS_DIR", str(DATA_DIR / "sessions")))
JOBS_FILE = Path(os.getenv("JOBS_FILE", str(DATA_DIR / "jobs.json")))

CREDENTIALS_FILE = Path(os.getenv("CREDENTIALS_FILE", str(DATA_DIR / "credentials.json")))
AES_SECRET_KEY = os.getenv("AES_SECRET_KEY", "")

# =============================================================================
# TIMING
# =============================================================================

# TIMEOUT_* = max wait, proceeds immediately when ready
# WAIT_* = fixed sleep, always waits the full duration

TIMEOUT_MS_PAGE_LOAD = int(os.getenv("TIMEOUT_MS_PAGE_LOAD", "30000"))
TIMEOUT_MS_SELECTOR_CHECK = int(os.getenv("TIMEOUT_MS_SELECTOR_CHECK", "150"))
TIMEOUT_MS_ELEMENT_VISIBLE = int(os.getenv("TIMEOUT_MS_ELEMENT_VISIBLE", "8000"))
TIMEOUT_MS_ADDRESS_LIST = int(os.getenv("TIMEOUT_MS_ADDRESS_LIST", "10000"))
TIMEOUT_MS_CHECKOUT_LOAD = int(os.getenv("TIMEOUT_MS_CHECKOUT_LOAD", "30000"))
TIMEOUT_MS_ORDER_CONFIRM = int(os.getenv("TIMEOUT_MS_ORDER_CONFIRM", "30000"))

TIMEOUT_SECONDS_STATE = float(os.getenv("TIMEOUT_SECONDS_STATE", "90"))
TIMEOUT_SECONDS_JOB = float(os.getenv("TIMEOUT_SECONDS_JOB", "600"))

WAIT_SECONDS_SETTLE = float(os.getenv("WAIT_SECONDS_SETTLE", "1.2"))
WAIT_SECONDS_CONFIRM_SETTLE = float(os.getenv("WAIT_SECONDS_CONFIRM_SETTLE", "2.5"))
WAIT_SECONDS_POLL = float(os.getenv("WAIT_SECONDS_POLL", "0.3"))

# =============================================================================
# SESSIONS, ADDRESSES, JOBS
# =============================================================================

SESSION_IDLE_SECONDS = float(os.getenv("SESSION_IDLE_SECONDS", "600"))
SESSION_ACQUIRE_TIMEOUT_SECONDS = float(os.getenv("SESSION_ACQUIRE_TIMEOUT_SECONDS", "120"))

ADDRESS_MATCH_MAX_DELTA = int(os.getenv("ADDRESS_MATCH_MAX_DELTA", "5"))
SHIPPING_ADDRESS_LABEL = os.getenv("SHIPPING_ADDRESS_LABEL", "Shopee Warehouse")

JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))
RETRY_BACKOFF_SECONDS = float(os.getenv("RETRY_BACKOFF_SECONDS", "5"))
JOB_LEASE_SECONDS = float(os.getenv("JOB_LEASE_SECONDS", "1800"))
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5.0"))

WORKER_ID = os.getenv("WORKER_ID", f"{socket.gethostname()}:{os.getpid()}")

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))


@dataclass
class Timeouts:
    """Wait budgets shared by the authentication, verification and checkout flows."""

    page_load_ms: int = TIMEOUT_MS_PAGE_LOAD
    selector_check_ms: int = TIMEOUT_MS_SELECTOR_CHECK
    element_visible_ms: int = TIMEOUT_MS_ELEMENT_VISIBLE
    address_list_ms: int = TIMEOUT_MS_ADDRESS_LIST
    checkout_load_ms: int = TIMEOUT_MS_CHECKOUT_LOAD
    order_confirm_ms: int = TIMEOUT_MS_ORDER_CONFIRM
    state_seconds: float = TIMEOUT_SECONDS_STATE
    job_seconds: float = TIMEOUT_SECONDS_JOB
    settle_seconds: float = WAIT_SECONDS_SETTLE
    confirm_settle_seconds: float = WAIT_SECONDS_CONFIRM_SETTLE
    poll_seconds: float = WAIT_SECONDS_POLL

    @classmethod
    def from_env(cls) -> "Timeouts":
        return cls()
