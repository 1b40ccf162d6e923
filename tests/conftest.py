import sys
from pathlib import Path


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

import pytest

from engine.sessions import SessionRegistry


@pytest.fixture
def registry(tmp_path):
    reg = SessionRegistry(tmp_path / "sessions", grace_seconds=0.5, watchdog_interval=0.1)
    yield reg
    reg.shutdown()
