"""
Pytest configuration for autofulfill tests.
Points storage at a temp directory and the store at the fixture site.
"""

import os
import tempfile

# Must be set before any autofulfill imports; config is read at import time
_test_data_dir = tempfile.mkdtemp(prefix="autofulfill_test_")
os.environ.setdefault("DATA_DIR", _test_data_dir)
os.environ["STORE_BASE_URL"] = "https://store.test"
os.environ["RUN_WORKER"] = "false"
os.environ["AES_SECRET_KEY"] = bytes(range(32)).hex()
os.environ["CREDENTIALS_FILE"] = os.path.join(_test_data_dir, "credentials.json")

import json

import pytest

from autofulfill.config import Timeouts
from autofulfill.credentials import FileCredentialResolver, encrypt_secret
from autofulfill.diagnostics import Diagnostics
from autofulfill.session_pool import SessionPool

from fakes import FakeBrowserManager, FakeStore

TEST_KEY = os.environ["AES_SECRET_KEY"]
ACCOUNT = "acct-1"
LOGIN = "buyer@example.com"
PASSWORD = "hunter2"


@pytest.fixture
def fast_timeouts():
    """Wait budgets small enough that a missing element fails in milliseconds."""
    return Timeouts(
        page_load_ms=100,
        selector_check_ms=10,
        element_visible_ms=60,
        address_list_ms=60,
        checkout_load_ms=60,
        order_confirm_ms=60,
        state_seconds=5,
        job_seconds=10,
        settle_seconds=0,
        confirm_settle_seconds=0,
        poll_seconds=0.01,
    )


@pytest.fixture
def store():
    return FakeStore(login=LOGIN, password=PASSWORD)


@pytest.fixture
def browser_manager(store):
    return FakeBrowserManager(store)


@pytest.fixture
def pool(browser_manager, tmp_path):
    return SessionPool(
        browser_manager,
        state_dir=tmp_path / "sessions",
        acquire_timeout=2,
        poll_seconds=0.01,
    )


@pytest.fixture
def diagnostics(tmp_path):
    return Diagnostics(tmp_path / "artifacts")


@pytest.fixture
def resolver(tmp_path):
    path = tmp_path / "credentials.json"
    entry = {"login": LOGIN, **encrypt_secret(PASSWORD, TEST_KEY, iv=b"\x01" * 12)}
    path.write_text(json.dumps({ACCOUNT: entry}))
    return FileCredentialResolver(path, TEST_KEY)
