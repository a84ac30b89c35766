"""Configure test paths and reset process-wide state between tests."""
import sys
from pathlib import Path

import pytest

# Add src/ to path so tests can import the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bsky_thread_miner import client as client_module  # noqa: E402
from bsky_thread_miner import rate_limiter as rate_limiter_module  # noqa: E402


@pytest.fixture(autouse=True)
def reset_global_state(monkeypatch):
    """Each test starts with no rate-limit snapshot and no shared limiter."""
    monkeypatch.setattr(client_module, "_last_rate_limit_info", None)
    monkeypatch.setattr(rate_limiter_module, "_global_limiter", None)
