# reconcile.py
# ============================================================
# ssh-whitelist-sync - ReconciliationEngine
#
#  Plan = 닫힌 집합의 operation들: Add / Remove / Replace
#   - Replace는 적용 시 항상 Remove(old) -> Add(new) 순서로 펼쳐진다
#
#  Server pass:  Idle -> Fetching -> Diffing -> Applying(1..n) -> Checkpointing -> Idle
#   - Fetching 실패: 아무것도 안 건드리고 Idle
#   - Applying: step 단위 실패 격리 (report.failures), pass 안에서 재시도 없음
#   - Checkpointing: forward-only (desired로 무조건 전진), 저장 실패 시 이전 checkpoint 유지
#   - stop 요청이 step 사이에 보이면 pass 포기, checkpoint 안 씀
#
#  Connector pass: 관측 IP가 마지막 publish 값과 다를 때만 전체 문서 read-modify-write
# ============================================================
import threading
from dataclasses import dataclass, field

from agent_common import env_float, log_local, now_iso, safe_str
from sync_errors import (
    FetchError,
    ObserveError,
    ObserveUnavailable,
    OperationError,
    PersistenceError,
    StoreMalformed,
    StoreRejected,
    StoreUnavailable,
    StoreWriteError,
    ToolError,
)

# UFW 연속 호출 사이 대기 (초)
OP_DELAY_SEC = env_float("OP_DELAY_SEC", "1.0")


# ============================================================
# Plan
# ============================================================

@dataclass(frozen=True)
class Add:
    identifier: str
    address: str
    kind = "add"

    def steps(self):
        return (self,)

    def describe(self):
        return f"add {self.identifier} ({self.address})"


@dataclass(frozen=True)
class Remove:
    identifier: str
    address: str
    kind = "remove"

    def steps(self):
        return (self,)

    def describe(self):
        return f"remove {self.identifier} ({self.address})"


@dataclass(frozen=True)
class Replace:
    identifier: str
    old_address: str
    new_address: str
    kind = "replace"

    def steps(self):
        return (Remove(self.identifier, self.old_address), Add(self.identifier, self.new_address))

    def describe(self):
        return f"replace {self.identifier} ({self.old_address} -> {self.new_address})"


def build_plan(checkpoint_doc, desired):
    """
    checkpoint 문서 vs 새로 가져온 desired 문서 -> plan (tuple)
    - desired 순서대로 신규(Add) / 변경(Replace), 그 다음 checkpoint 순서대로 삭제(Remove)
    - 주소가 같으면 아무것도 안 나온다
    """
    plan = []
    for ident, addr in desired.items():
        if ident not in checkpoint_doc:
            plan.append(Add(ident, addr))
        elif checkpoint_doc[ident] != addr:
            plan.append(Replace(ident, checkpoint_doc[ident], addr))
    for ident, old in checkpoint_doc.items():
        if ident not in desired:
            plan.append(Remove(ident, old))
    return tuple(plan)


def plan_steps(plan):
    """Flatten a plan into the exact add/remove sequence that will hit the firewall."""
    return [step for op in plan for step in op.steps()]


def format_plan(plan, port=None):
    if not plan:
        return ["(no changes)"]
    lines = []
    suffix = f" port {port}" if port is not None else ""
    for op in plan:
        lines.append(f"{op.kind.upper():8} {op.describe()}")
        if isinstance(op, Replace):
            for step in op.steps():
                lines.append(f"    -> {step.kind} {step.address}{suffix}")
    return lines


# ============================================================
# Report
# ============================================================

@dataclass
class PassReport:
    started_at: str = field(default_factory=now_iso)
    finished_at: str = None
    plan: tuple = ()
    applied: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    error: Exception = None
    abandoned: bool = False
    checkpoint_written: bool = False

    @property
    def ok(self):
        return self.error is None and not self.failures and not self.abandoned

    def summary(self):
        d = {
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "planned": len(plan_steps(self.plan)),
            "applied": len(self.applied),
            "failed": len(self.failures),
            "abandoned": self.abandoned,
            "checkpointWritten": self.checkpoint_written,
        }
        if self.error is not None:
            d["error"] = f"{type(self.error).__name__}: {safe_str(self.error)}"
        return d


# ============================================================
# Server role
# ============================================================

class ServerEngine:
    def __init__(self, store, controller, checkpoints, port, op_delay=None, stop_event=None):
        self.store = store
        self.controller = controller
        self.checkpoints = checkpoints
        self.port = port
        self.op_delay = OP_DELAY_SEC if op_delay is None else op_delay
        self.stop_event = stop_event or threading.Event()

    def fetch(self):
        try:
            return self.store.get()
        except (StoreUnavailable, StoreMalformed) as e:
            raise FetchError(f"could not fetch desired state: {e}", e) from e

    def preview(self, checkpoint):
        """Dry run: same fetch + build_plan, no firewall calls, no checkpoint write."""
        desired = self.fetch()
        return build_plan(checkpoint.document, desired)

    def reconcile(self, checkpoint):
        report = PassReport()

        # ---------- Fetching ----------
        try:
            desired = self.fetch()
        except FetchError as e:
            report.error = e
            report.finished_at = now_iso()
            log_local("pass_fetch_fail", {"error": safe_str(e)})
            return checkpoint, report

        # ---------- Diffing ----------
        report.plan = build_plan(checkpoint.document, desired)
        steps = plan_steps(report.plan)
        log_local("pass_plan", {"port": self.port, "steps": [s.describe() for s in steps]})

        # ---------- Applying ----------
        for i, step in enumerate(steps):
            if i > 0 and self.op_delay > 0:
                self.stop_event.wait(self.op_delay)
            if self.stop_event.is_set():
                report.abandoned = True
                report.finished_at = now_iso()
                log_local("pass_abandoned", {"remaining": [s.describe() for s in steps[i:]]})
                return checkpoint, report
            self._apply(step, report)

        # ---------- Checkpointing (forward-only) ----------
        try:
            new_checkpoint = self.checkpoints.save(desired)
        except PersistenceError as e:
            report.error = e
            report.finished_at = now_iso()
            log_local("pass_checkpoint_fail", {"error": safe_str(e)})
            return checkpoint, report

        report.checkpoint_written = True
        report.finished_at = now_iso()
        log_local("pass_done", report.summary())
        return new_checkpoint, report

    def _apply(self, step, report):
        try:
            if isinstance(step, Add):
                self.controller.add(step.address, self.port)
            else:
                self.controller.remove(step.address, self.port)
        except ToolError as e:
            failure = OperationError(step, e)
            report.failures.append(failure)
            log_local("step_fail", {
                "kind": step.kind,
                "identifier": step.identifier,
                "address": step.address,
                "error": f"{type(e).__name__}: {safe_str(e)}",
            })
            return
        report.applied.append(step)
        log_local("step_ok", {"kind": step.kind, "identifier": step.identifier, "address": step.address})


# ============================================================
# Connector role
# ============================================================

class ConnectorEngine:
    def __init__(self, observer, store, identifier, last_published=None):
        self.observer = observer
        self.store = store
        self.identifier = identifier
        self.last_published = last_published
        self.last_check = None

    def publish_if_changed(self, identifier, last_published):
        """
        returns (address, published)
        - ObserveError / FetchError / StoreWriteError면 store는 그대로
        """
        try:
            address = self.observer.observe()
        except ObserveUnavailable as e:
            raise ObserveError(f"could not observe public address: {e}", e) from e

        if address == last_published:
            return address, False

        try:
            document = self.store.get()
        except (StoreUnavailable, StoreMalformed) as e:
            raise FetchError(f"could not read shared document: {e}", e) from e

        # 읽은 시점의 다른 key들은 그대로 싣고 내 key만 바꾼다 (CAS 아님)
        document = dict(document)
        document[identifier] = address
        try:
            self.store.set(document)
        except (StoreUnavailable, StoreRejected) as e:
            raise StoreWriteError(f"could not write shared document: {e}", e) from e

        log_local("address_published", {"identifier": identifier, "address": address, "previous": last_published})
        return address, True

    def tick(self):
        self.last_check = now_iso()
        address, published = self.publish_if_changed(self.identifier, self.last_published)
        if published:
            self.last_published = address
        return address, published
