# connector_agent.py
import os
import sys

from agent_common import (
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
    resolve_identifier,
    safe_str,
    save_settings,
    service_log,
)
from gist_store import GistStore
from ip_observer import IpifyObserver
from reconcile import ConnectorEngine
from scheduler import Ticker
from sync_errors import PassAborted

# =========================
# Connector node (IP tracker)
# - 공인 IP가 바뀌었을 때만 gist 문서의 내 identifier 항목을 갱신
# - IP 조회 실패면 publish 안 함 (stale IP가 빈 IP보다 낫다)
# - 같은 IP면 gist를 읽지도 쓰지도 않는다
#
#   python connector_agent.py           : interval 루프
#   python connector_agent.py --once    : 1회 확인 후 종료
#   python connector_agent.py --service : 루프 + 파일 로그만
#   python connector_agent.py --status  : 설정 출력
# =========================

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_PASS_FAILED = 3


def parse_args(argv):
    flags = {"once": False, "service": False, "status": False}
    for a in (argv or []):
        t = str(a).strip().lower()
        if t == "--once":
            flags["once"] = True
        elif t == "--service":
            flags["service"] = True
        elif t == "--status":
            flags["status"] = True
    return flags


def build_engine(settings):
    """returns (engine, error_message)"""
    token = env_str("GITHUB_TOKEN")
    gist_id = resolve_gist_id(settings)
    identifier = resolve_identifier(settings)
    if not token:
        return None, "GITHUB_TOKEN is not set"
    if not gist_id:
        return None, "GIST_ID is not set (run run/init_gist.py first)"
    if not identifier:
        return None, "NODE_IDENTIFIER is not set (e.g. home-laptop, office-desktop)"
    engine = ConnectorEngine(
        observer=IpifyObserver(),
        store=GistStore(token, gist_id),
        identifier=identifier,
    )
    return engine, None


def run_tick(engine, settings_path=None):
    """
    1회 확인. 결과를 출력하고 (address, published) 리턴.
    pass-level 에러는 출력/로그 후 다시 올린다.
    """
    out_print(f"[{now_iso()}] Checking current IP...")
    try:
        address, published = engine.tick()
    except PassAborted as e:
        out_print(f"✗ Error: {safe_str(e)}")
        log_local("publish_aborted", {"kind": type(e).__name__, "error": safe_str(e)})
        service_log("ERROR", "publish_aborted", {"kind": type(e).__name__, "error": safe_str(e)})
        raise

    if published:
        out_print(f"✓ IP updated successfully to: {address}")
        save_settings({"lastRun": now_iso()}, settings_path)
    else:
        out_print(f"✓ IP unchanged ({address})")
    return address, published


def cmd_status(settings):
    out_print("Node Type   : Connector")
    out_print(f"Settings    : {SETTINGS_PATH}")
    out_print(f"Identifier  : {resolve_identifier(settings) or '(not set)'}")
    out_print(f"Gist ID     : {resolve_gist_id(settings) or '(not set)'}")
    out_print(f"Last Run    : {settings.get('lastRun') or 'Never'}")
    return EXIT_OK


def main(argv=None):
    flags = parse_args(sys.argv[1:] if argv is None else argv)
    service = bool(flags.get("service"))
    configure_logging("connector", service=service)

    settings = load_settings()
    if flags.get("status"):
        return cmd_status(settings)

    engine, err = build_engine(settings)
    if err:
        out_print(f"ERROR: {err}")
        log_local("config_error", {"error": err})
        service_log("ERROR", "config_error", {"error": err})
        return EXIT_CONFIG

    out_print("\n==============================================")
    out_print(" ssh-whitelist-sync Connector Node ")
    out_print("==============================================")
    out_print(f"Identifier : {engine.identifier}")
    out_print(f"Gist ID    : {engine.store.gist_id}")
    out_print(f"Token      : {mask_secret(engine.store.token)}")
    out_print(f"Interval   : {SYNC_INTERVAL_SEC}s\n")
    save_settings({"gistId": engine.store.gist_id, "identifier": engine.identifier})
    log_local("connector_start", {"pid": os.getpid(), "identifier": engine.identifier, "service": service})

    if flags.get("once"):
        try:
            run_tick(engine)
        except PassAborted:
            return EXIT_PASS_FAILED
        return EXIT_OK

    def tick():
        try:
            return run_tick(engine)
        except PassAborted:
            # 다음 tick에서 재시도
            return None

    ticker = Ticker(tick=tick, interval=SYNC_INTERVAL_SEC)
    ticker.install_signal_handlers()
    service_log("INFO", "connector_loop_enter", {"interval": SYNC_INTERVAL_SEC})
    out_print("Monitoring IP changes. Ctrl+C to exit, `kill -USR1 <pid>` to refresh now.\n")
    ticker.run_forever()
    out_print("\nShutting down gracefully...")
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
