import pytest

import agent_common
from checkpoint import Checkpoint
from sync_errors import PersistenceError, StoreUnavailable


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path, monkeypatch):
    monkeypatch.setattr(agent_common, "AUDIT_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setattr(agent_common, "SERVICE_MODE", False)
    monkeypatch.setattr(agent_common, "SERVICE_LOG_PATH", None)
    return tmp_path / "audit.jsonl"


class FakeStore:
    def __init__(self, document=None, get_error=None, set_error=None):
        self.document = dict(document or {})
        self.get_error = get_error
        self.set_error = set_error
        self.gets = 0
        self.sets = []

    def get(self):
        self.gets += 1
        if self.get_error:
            raise self.get_error
        return dict(self.document)

    def set(self, document):
        if self.set_error:
            raise self.set_error
        self.sets.append(dict(document))
        self.document = dict(document)


class FakeController:
    """Records calls; `failures` maps (kind, address) to the exception to raise."""

    def __init__(self, failures=None, on_call=None):
        self.calls = []
        self.failures = dict(failures or {})
        self.on_call = on_call
        self.rules = set()

    def _hit(self, kind, address, port):
        self.calls.append((kind, address, port))
        if self.on_call:
            self.on_call(kind, address)
        exc = self.failures.get((kind, address))
        if exc:
            raise exc

    def add(self, address, port):
        self._hit("add", address, port)
        self.rules.add(address)

    def remove(self, address, port):
        self._hit("remove", address, port)
        self.rules.discard(address)

    def list(self, port):
        return sorted(self.rules)


class FakeObserver:
    def __init__(self, address="203.0.113.7", error=None):
        self.address = address
        self.error = error
        self.calls = 0

    def observe(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.address


class MemoryCheckpoints:
    def __init__(self, initial=None, fail=False):
        self.stored = initial or Checkpoint()
        self.fail = fail
        self.saves = []

    def load(self):
        return self.stored

    def save(self, document, applied_at=None):
        if self.fail:
            raise PersistenceError("disk full")
        self.stored = Checkpoint(document, applied_at or "2026-10-18T00:00:00Z")
        self.saves.append(dict(document))
        return self.stored


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def checkpoints():
    return MemoryCheckpoints()


@pytest.fixture
def unavailable():
    return StoreUnavailable("connection refused")
