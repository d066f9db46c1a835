import os as _os
import sys

# Ensure project root is importable (so `import sgr` and `import main` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

import pytest

from sgr import db
from sgr.compute import InMemoryCompute
from sgr.reconciler import Reconciler
from sgr.runtime import RuntimeState
from sgr.settings import Settings


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def tmp_db(tmp_path, monkeypatch):
    """Point the sqlite layer at a throwaway file."""
    cfg = Settings(db_path=str(tmp_path / "sgr.db"))
    monkeypatch.setattr(db, "settings", cfg)
    db.init_db()
    return cfg


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def compute(clock):
    return InMemoryCompute(clock=clock, op_latency_s=10)


@pytest.fixture
def runtime():
    return RuntimeState()


@pytest.fixture
def reconciler(tmp_db, runtime, compute, clock):
    return Reconciler(runtime, compute, clock=clock)
