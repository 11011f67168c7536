import os
import sys

from agent_common import (
    CONFIG_DIR,
    SETTINGS_PATH,
    SYNC_INTERVAL_SEC,
    configure_logging,
    env_str,
    load_settings,
    log_local,
    mask_secret,
    now_iso,
    out_print,
    resolve_gist_id,
    resolve_ssh_port,
    safe_str,
    save_settings,
    service_log,
)
from checkpoint import CHECKPOINT_PATH, CheckpointFile
from gist_store import GistStore
from reconcile import OP_DELAY_SEC, ServerEngine, format_plan
from scheduler import Ticker
from sync_errors import FetchError, PassAborted, SyncError
from ufw_firewall import DRY_RUN, UfwController

# ============================================================
# ssh-whitelist-sync - server_agent.py
# Server node: gist whitelist -> UFW allow rules for the SSH port
#
#  규칙
# - pass 하나 = fetch -> diff(checkpoint) -> apply(순서대로) -> checkpoint 저장
# - checkpoint는 forward-only: step 실패가 있어도 fetch한 문서로 전진
# - fetch 실패면 아무것도 안 건드린다
# - GITHUB_TOKEN은 환경변수로만 받는다 (config.json에 저장 안 함)
#
#  실행
#   python server_agent.py                 : interval 루프 (SYNC_INTERVAL_SEC)
#   python server_agent.py --once          : 1회 pass 후 종료
#   python server_agent.py --dry-run       : plan만 출력 (UFW/checkpoint 안 건드림)
#   python server_agent.py --service       : 루프 + 파일 로그만, 에러로 종료하지 않음
#   python server_agent.py --status        : 설정 + checkpoint 요약
#   python server_agent.py --list-rules    : 현재 UFW ALLOW 룰 (SSH 포트)
#   python server_agent.py --show-whitelist: gist 문서 출력
#
#  수동 트리거: kill -USR1 <pid>  (pass 진행 중이면 버려짐)
# ============================================================

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_PASS_FAILED = 3


def parse_args(argv):
    flags = {
        "once": False,
        "dry_run": False,
        "service": False,
        "status": False,
        "list_rules": False,
        "show_whitelist": False,
    }
    for a in (argv or []):
        t = str(a).strip().lower()
        if t == "--once":
            flags["once"] = True
        elif t == "--dry-run":
            flags["dry_run"] = True
        elif t == "--service":
            flags["service"] = True
        elif t == "--status":
            flags["status"] = True
        elif t == "--list-rules":
            flags["list_rules"] = True
        elif t == "--show-whitelist":
            flags["show_whitelist"] = True
    return flags


def print_banner(gist_id, port, token):
    out_print("\n============================================================")
    out_print(" ssh-whitelist-sync - server_agent.py (UFW Manager)")
    out_print("============================================================")
    out_print(f"  GIST_ID            = {gist_id}")
    out_print(f"  GITHUB_TOKEN       = {mask_secret(token)}")
    out_print(f"  SSH_PORT           = {port}")
    out_print(f"  SYNC_INTERVAL_SEC  = {SYNC_INTERVAL_SEC}")
    out_print(f"  OP_DELAY_SEC       = {OP_DELAY_SEC}")
    out_print(f"  DRY_RUN            = {DRY_RUN}")
    out_print(f"  CONFIG_DIR         = {CONFIG_DIR}")
    out_print(f"  CHECKPOINT_PATH    = {CHECKPOINT_PATH}")
    out_print("============================================================\n")


class ServerRunner:
    """
    checkpoint는 프로세스 시작 시 1회 읽고, 이후엔 pass 결과로만 갱신한다.
    """

    def __init__(self, engine, checkpoints, settings_path=None):
        self.engine = engine
        self.checkpoints = checkpoints
        self.checkpoint = checkpoints.load()
        self.settings_path = settings_path
        self.last_report = None

    def tick(self):
        out_print(f"[{now_iso()}] Fetching whitelist...")
        self.checkpoint, report = self.engine.reconcile(self.checkpoint)
        self.last_report = report
        print_report(report, self.engine.port)
        if report.checkpoint_written:
            save_settings({"lastRun": report.finished_at}, self.settings_path)
        if not report.ok:
            service_log("WARN", "pass_incomplete", report.summary())
        return report


def print_report(report, port):
    if isinstance(report.error, PassAborted):
        out_print(f"✗ Pass aborted: {safe_str(report.error)}")
        return
    if not report.plan:
        out_print("✓ No change (whitelist matches last applied state)")
    for step in report.applied:
        verb = "Added" if step.kind == "add" else "Removed"
        out_print(f"  ✓ {verb} rule for {step.identifier} ({step.address}) port {port}")
    for failure in report.failures:
        out_print(f"  ✗ {safe_str(failure)}")
    if report.abandoned:
        out_print("⚠ Pass abandoned on shutdown; checkpoint not advanced")
    elif report.error is not None:
        out_print(f"✗ Checkpoint not saved: {safe_str(report.error)}")
    elif report.failures:
        out_print(f"⚠ {len(report.failures)} rule change(s) failed; will be re-diffed next pass")
    else:
        out_print("✓ Firewall rules updated successfully")


def build_engine(settings, stop_event=None):
    """returns (engine, checkpoints, error_message)"""
    token = env_str("GITHUB_TOKEN")
    gist_id = resolve_gist_id(settings)
    if not token:
        return None, None, "GITHUB_TOKEN is not set"
    if not gist_id:
        return None, None, "GIST_ID is not set (run run/init_gist.py first)"
    port = resolve_ssh_port(settings)
    checkpoints = CheckpointFile()
    engine = ServerEngine(
        store=GistStore(token, gist_id),
        controller=UfwController(),
        checkpoints=checkpoints,
        port=port,
        stop_event=stop_event,
    )
    return engine, checkpoints, None


# ============================================================
# One-shot commands
# ============================================================

def cmd_status(settings):
    cp = CheckpointFile().load()
    out_print("Node Type   : Server")
    out_print(f"Settings    : {SETTINGS_PATH}")
    out_print(f"Gist ID     : {resolve_gist_id(settings) or '(not set)'}")
    out_print(f"SSH Port    : {resolve_ssh_port(settings)}")
    out_print(f"Last Run    : {settings.get('lastRun') or 'Never'}")
    out_print(f"Checkpoint  : {CHECKPOINT_PATH}")
    out_print(f"Applied At  : {cp.applied_at or 'unknown'}")
    out_print(f"Entries     : {len(cp.document)}")
    for ident, addr in sorted(cp.document.items()):
        out_print(f"  - {ident}: {addr}")
    return EXIT_OK


def cmd_list_rules(engine):
    try:
        addrs = engine.controller.list(engine.port)
    except SyncError as e:
        out_print(f"✗ Failed to list UFW rules: {safe_str(e)}")
        return EXIT_PASS_FAILED
    out_print(f"Current UFW ALLOW rules for port {engine.port}:")
    if not addrs:
        out_print("  (none)")
    for a in addrs:
        out_print(f"  - {a}")
    return EXIT_OK


def cmd_show_whitelist(engine):
    try:
        doc = engine.fetch()
    except FetchError as e:
        out_print(f"✗ {safe_str(e)}")
        return EXIT_PASS_FAILED
    out_print(f"Whitelist ({len(doc)} entries):")
    for ident, addr in doc.items():
        out_print(f"  - {ident}: {addr}")
    return EXIT_OK


def cmd_dry_run(engine, checkpoints):
    checkpoint = checkpoints.load()
    try:
        plan = engine.preview(checkpoint)
    except FetchError as e:
        out_print(f"✗ {safe_str(e)}")
        log_local("dry_run_fetch_fail", {"error": safe_str(e)})
        return EXIT_PASS_FAILED
    out_print(f"Plan against checkpoint ({checkpoint.applied_at or 'empty'}):")
    for line in format_plan(plan, engine.port):
        out_print(f"  {line}")
    log_local("dry_run", {"operations": [op.describe() for op in plan]})
    return EXIT_OK


# ============================================================
# Main Flow
# ============================================================

def main(argv=None):
    flags = parse_args(sys.argv[1:] if argv is None else argv)
    service = bool(flags.get("service"))
    configure_logging("server", service=service)

    settings = load_settings()
    if flags.get("status"):
        return cmd_status(settings)

    ticker = Ticker(tick=None, interval=SYNC_INTERVAL_SEC)
    engine, checkpoints, err = build_engine(settings, stop_event=ticker.stop_event)
    if err:
        out_print(f"ERROR: {err}")
        log_local("config_error", {"error": err})
        service_log("ERROR", "config_error", {"error": err})
        return EXIT_CONFIG

    if flags.get("list_rules"):
        return cmd_list_rules(engine)
    if flags.get("show_whitelist"):
        return cmd_show_whitelist(engine)
    if flags.get("dry_run"):
        return cmd_dry_run(engine, checkpoints)

    print_banner(engine.store.gist_id, engine.port, engine.store.token)
    save_settings({"gistId": engine.store.gist_id, "sshPort": engine.port})
    runner = ServerRunner(engine, checkpoints)
    log_local("server_start", {
        "pid": os.getpid(),
        "port": engine.port,
        "checkpointEntries": len(runner.checkpoint.document),
        "service": service,
    })

    if flags.get("once"):
        report = runner.tick()
        return EXIT_OK if report.ok else EXIT_PASS_FAILED

    # ========================================================
    # LOOP: stop signal 전까지 pass 반복 (에러로 종료하지 않음)
    # ========================================================
    ticker.tick = runner.tick
    ticker.install_signal_handlers()
    service_log("INFO", "server_loop_enter", {"interval": SYNC_INTERVAL_SEC})
    out_print("Monitoring whitelist. Ctrl+C to exit, `kill -USR1 <pid>` to refresh now.\n")
    ticker.run_forever()
    out_print("\nShutting down gracefully...")
    service_log("INFO", "server_loop_exit", {})
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
