import threading

from conftest import FakeController, FakeStore, MemoryCheckpoints
from test_gist_store import FakeResponse, FakeSession

from checkpoint import Checkpoint
from gist_store import GistStore
from reconcile import Add, Remove, Replace, ServerEngine, build_plan, format_plan, plan_steps
from sync_errors import (
    FetchError,
    OperationError,
    PermissionDenied,
    PersistenceError,
    StoreMalformed,
    StoreUnavailable,
    ToolRejected,
)

PORT = 2222


def make_engine(store, controller, checkpoints, **kw):
    kw.setdefault("op_delay", 0)
    return ServerEngine(store, controller, checkpoints, PORT, **kw)


# =========================
# build_plan
# =========================

def test_plan_for_changed_and_new_identifiers():
    checkpoint = {"a": "1.1.1.1", "b": "2.2.2.2"}
    desired = {"a": "1.1.1.1", "b": "3.3.3.3", "c": "4.4.4.4"}

    plan = build_plan(checkpoint, desired)

    assert plan == (Replace("b", "2.2.2.2", "3.3.3.3"), Add("c", "4.4.4.4"))
    assert plan_steps(plan) == [
        Remove("b", "2.2.2.2"),
        Add("b", "3.3.3.3"),
        Add("c", "4.4.4.4"),
    ]


def test_plan_removal_only():
    assert build_plan({"a": "1.1.1.1"}, {}) == (Remove("a", "1.1.1.1"),)


def test_plan_unchanged_is_empty():
    doc = {"a": "1.1.1.1", "b": "2001:db8::1"}
    assert build_plan(doc, dict(doc)) == ()


def test_plan_compares_text_not_addresses():
    # no canonicalization: equivalent IPv6 spellings are a change
    plan = build_plan({"a": "2001:db8::1"}, {"a": "2001:0db8::1"})
    assert plan == (Replace("a", "2001:db8::1", "2001:0db8::1"),)


def test_plan_never_adds_and_removes_unrelated_for_same_identifier():
    plan = build_plan({"a": "1.1.1.1", "x": "9.9.9.9"}, {"a": "5.5.5.5", "y": "8.8.8.8"})
    per_ident = {}
    for op in plan:
        per_ident.setdefault(op.identifier, []).append(op)
    assert all(len(ops) == 1 for ops in per_ident.values())
    assert plan[-1] == Remove("x", "9.9.9.9")


def test_format_plan_lists_replace_steps():
    lines = format_plan(build_plan({"b": "2.2.2.2"}, {"b": "3.3.3.3"}), PORT)
    assert lines[0].startswith("REPLACE")
    assert "remove 2.2.2.2 port 2222" in lines[1]
    assert "add 3.3.3.3 port 2222" in lines[2]
    assert format_plan(()) == ["(no changes)"]


# =========================
# reconcile
# =========================

def test_reconcile_applies_in_order_and_advances_checkpoint(controller, checkpoints):
    store = FakeStore({"a": "1.1.1.1", "b": "3.3.3.3", "c": "4.4.4.4"})
    engine = make_engine(store, controller, checkpoints)
    start = Checkpoint({"a": "1.1.1.1", "b": "2.2.2.2"}, "2026-10-17T00:00:00Z")

    new_cp, report = engine.reconcile(start)

    assert controller.calls == [
        ("remove", "2.2.2.2", PORT),
        ("add", "3.3.3.3", PORT),
        ("add", "4.4.4.4", PORT),
    ]
    assert report.ok
    assert report.checkpoint_written
    assert new_cp.document == store.document
    assert checkpoints.saves == [store.document]


def test_reconcile_twice_is_idempotent(controller, checkpoints):
    store = FakeStore({"a": "1.1.1.1", "b": "2.2.2.2"})
    engine = make_engine(store, controller, checkpoints)

    cp, _ = engine.reconcile(Checkpoint())
    calls_after_first = list(controller.calls)
    cp, report = engine.reconcile(cp)

    assert report.plan == ()
    assert controller.calls == calls_after_first
    assert cp.document == store.document


def test_reconcile_removal_only(controller, checkpoints):
    engine = make_engine(FakeStore({}), controller, checkpoints)

    new_cp, report = engine.reconcile(Checkpoint({"a": "1.1.1.1"}))

    assert report.plan == (Remove("a", "1.1.1.1"),)
    assert controller.calls == [("remove", "1.1.1.1", PORT)]
    assert new_cp.document == {}


def test_partial_failure_still_advances_to_fetched_document(checkpoints):
    desired = {"a": "1.1.1.1", "b": "3.3.3.3", "c": "4.4.4.4"}
    controller = FakeController(failures={("add", "4.4.4.4"): ToolRejected("bad address")})
    engine = make_engine(FakeStore(desired), controller, checkpoints)

    new_cp, report = engine.reconcile(Checkpoint({"a": "1.1.1.1", "b": "2.2.2.2"}))

    assert not report.ok
    assert report.error is None
    assert len(report.failures) == 1
    failure = report.failures[0]
    assert isinstance(failure, OperationError)
    assert (failure.identifier, failure.address) == ("c", "4.4.4.4")
    assert isinstance(failure.cause, ToolRejected)
    assert new_cp.document == desired
    assert report.checkpoint_written


def test_failed_remove_still_attempts_paired_add(checkpoints):
    controller = FakeController(failures={("remove", "2.2.2.2"): PermissionDenied("sudo password required")})
    engine = make_engine(FakeStore({"b": "3.3.3.3"}), controller, checkpoints)

    new_cp, report = engine.reconcile(Checkpoint({"b": "2.2.2.2"}))

    assert [c[:2] for c in controller.calls] == [("remove", "2.2.2.2"), ("add", "3.3.3.3")]
    assert report.applied == [Add("b", "3.3.3.3")]
    assert [f.step for f in report.failures] == [Remove("b", "2.2.2.2")]
    assert new_cp.document == {"b": "3.3.3.3"}


def test_fetch_failure_is_a_full_noop(controller, checkpoints, unavailable):
    engine = make_engine(FakeStore(get_error=unavailable), controller, checkpoints)
    start = Checkpoint({"a": "1.1.1.1"}, "2026-10-17T00:00:00Z")

    new_cp, report = engine.reconcile(start)

    assert new_cp is start
    assert controller.calls == []
    assert checkpoints.saves == []
    assert isinstance(report.error, FetchError)
    assert report.error.cause is unavailable


def test_malformed_document_aborts_pass(controller, checkpoints):
    engine = make_engine(FakeStore(get_error=StoreMalformed("not json")), controller, checkpoints)

    new_cp, report = engine.reconcile(Checkpoint())

    assert isinstance(report.error, FetchError)
    assert controller.calls == []
    assert new_cp == Checkpoint()


def test_persistence_failure_keeps_previous_checkpoint(controller):
    checkpoints = MemoryCheckpoints(fail=True)
    engine = make_engine(FakeStore({"a": "1.1.1.1"}), controller, checkpoints)
    start = Checkpoint({}, "2026-10-17T00:00:00Z")

    new_cp, report = engine.reconcile(start)

    assert new_cp is start
    assert isinstance(report.error, PersistenceError)
    assert not report.checkpoint_written
    # the rule was attempted; only the record of it was lost
    assert controller.calls == [("add", "1.1.1.1", PORT)]


def test_stop_between_steps_abandons_without_checkpoint(checkpoints):
    stop = threading.Event()
    controller = FakeController(on_call=lambda kind, address: stop.set())
    engine = make_engine(FakeStore({"a": "1.1.1.1", "b": "2.2.2.2"}), controller, checkpoints, stop_event=stop)
    start = Checkpoint()

    new_cp, report = engine.reconcile(start)

    assert report.abandoned
    assert len(controller.calls) == 1
    assert new_cp is start
    assert checkpoints.saves == []


class RecordingEvent:
    def __init__(self):
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        return False

    def is_set(self):
        return False


def test_delay_between_tool_invocations(controller, checkpoints):
    event = RecordingEvent()
    engine = ServerEngine(
        FakeStore({"a": "1.1.1.1", "b": "2.2.2.2", "c": "3.3.3.3"}),
        controller,
        checkpoints,
        PORT,
        op_delay=0.25,
        stop_event=event,
    )

    engine.reconcile(Checkpoint())

    assert event.waits == [0.25, 0.25]


def test_preview_uses_same_plan_without_side_effects(controller, checkpoints):
    engine = make_engine(FakeStore({"a": "1.1.1.1", "b": "3.3.3.3"}), controller, checkpoints)
    cp = Checkpoint({"b": "2.2.2.2", "z": "9.9.9.9"})

    plan = engine.preview(cp)

    assert plan == build_plan(cp.document, {"a": "1.1.1.1", "b": "3.3.3.3"})
    assert controller.calls == []
    assert checkpoints.saves == []


def test_report_summary_counts_steps(checkpoints):
    controller = FakeController(failures={("add", "4.4.4.4"): ToolRejected("nope")})
    engine = make_engine(FakeStore({"b": "3.3.3.3", "c": "4.4.4.4"}), controller, checkpoints)

    _, report = engine.reconcile(Checkpoint({"b": "2.2.2.2"}))
    summary = report.summary()

    assert summary["planned"] == 3
    assert summary["applied"] == 2
    assert summary["failed"] == 1
    assert summary["checkpointWritten"] is True
    assert "error" not in summary


def test_store_unavailable_is_wrapped():
    engine = make_engine(FakeStore(get_error=StoreUnavailable("timeout")), FakeController(), MemoryCheckpoints())
    _, report = engine.reconcile(Checkpoint())
    assert "timeout" in str(report.error)


def test_gist_without_document_file_revokes_nothing(controller, checkpoints):
    session = FakeSession(FakeResponse(200, {"id": "abc123", "files": {"notes.md": {"content": "hi"}}}))
    store = GistStore("ghp_token", "abc123", api_base="https://api.example.test", session=session)
    engine = make_engine(store, controller, checkpoints)
    start = Checkpoint({"laptop": "198.51.100.1", "office": "192.0.2.10"}, "2026-10-17T00:00:00Z")

    new_cp, report = engine.reconcile(start)

    assert isinstance(report.error, FetchError)
    assert isinstance(report.error.cause, StoreMalformed)
    assert controller.calls == []
    assert checkpoints.saves == []
    assert new_cp is start
