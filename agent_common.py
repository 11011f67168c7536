# agent_common.py
# ============================================================
# ssh-whitelist-sync - shared agent plumbing
#
#  - ENV 기반 설정 (환경변수 우선, 저장된 config.json은 비밀이 아닌 값만 fallback)
#  - 로컬 audit jsonl 이벤트 로그 (log_local)
#  - --service 모드 파일 로그 (service_log) + 콘솔 라우팅 (out_print)
#  - GitHub token은 절대 디스크에 저장하지 않는다
# ============================================================
import json
import os
import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path

TRUTHY = ["1", "true", "yes", "on"]


def env_str(name, default=""):
    return os.environ.get(name, default).strip()


def env_bool(name, default="0"):
    return os.environ.get(name, default).strip().lower() in TRUTHY


def env_int(name, default):
    try:
        return int(os.environ.get(name, str(default)).strip())
    except ValueError:
        return int(default)


def env_float(name, default):
    try:
        return float(os.environ.get(name, str(default)).strip())
    except ValueError:
        return float(default)


# =========================
# ENV (stable)
# =========================
CONFIG_DIR = env_str("CONFIG_DIR") or os.path.join(str(Path.home()), ".config", "ssh-whitelist")
SETTINGS_PATH = env_str("SETTINGS_PATH") or os.path.join(CONFIG_DIR, "config.json")

# connector/server 주기 (기본 5분)
SYNC_INTERVAL_SEC = env_float("SYNC_INTERVAL_SEC", "300")
HTTP_TIMEOUT_SEC = env_float("HTTP_TIMEOUT_SEC", "10")

# =========================
# TLS (requests)
# - 사내 프록시/self-signed 환경이면 TLS_CA_BUNDLE 지정
# =========================
TLS_CA_BUNDLE = env_str("TLS_CA_BUNDLE")
INSECURE_SKIP_VERIFY = env_bool("INSECURE_SKIP_VERIFY")

# =========================
# Logging state (role별로 configure_logging에서 결정)
# =========================
AUDIT_PATH = None
SERVICE_MODE = False
SERVICE_LOG_PATH = None


def configure_logging(role, service=False):
    """
    role: "server" | "connector" | "init"
    - AUDIT_PATH env가 있으면 그걸 사용, 없으면 CONFIG_DIR/<role>.audit.jsonl
    - service=True면 콘솔 출력 대신 CONFIG_DIR/logs/<role>_agent.log
    """
    global AUDIT_PATH, SERVICE_MODE, SERVICE_LOG_PATH
    AUDIT_PATH = env_str("AUDIT_PATH") or os.path.join(CONFIG_DIR, f"{role}.audit.jsonl")
    SERVICE_MODE = bool(service)
    SERVICE_LOG_PATH = os.path.join(CONFIG_DIR, "logs", f"{role}_agent.log") if SERVICE_MODE else None


# ============================================================
# Utils
# ============================================================

def now_iso():
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def safe_str(s, limit=500):
    t = str(s) if s is not None else ""
    if len(t) > limit:
        return t[:limit] + "..."
    return t


def mask_secret(s, head=6, tail=4):
    if not s:
        return ""
    t = str(s)
    if len(t) <= head + tail:
        return "*" * len(t)
    return t[:head] + "..." + t[-tail:]


def ensure_dir_for_file(path):
    d = os.path.dirname(path)
    if d and not os.path.exists(d):
        os.makedirs(d, exist_ok=True)


def requests_kwargs():
    kw = {"timeout": HTTP_TIMEOUT_SEC}
    if INSECURE_SKIP_VERIFY:
        kw["verify"] = False
    elif TLS_CA_BUNDLE:
        kw["verify"] = TLS_CA_BUNDLE
    return kw


def run_cmd(args):
    """
    외부 도구 실행. shell=False
    - 도구 자체가 없으면 FileNotFoundError를 그대로 올린다 (호출자가 ToolUnavailable로 분류)
    """
    proc = subprocess.run(args, capture_output=True, text=True, shell=False)
    out = (proc.stdout or "").strip()
    err = (proc.stderr or "").strip()
    return proc.returncode == 0, out, err, proc.returncode


# ============================================================
# Event log
# ============================================================

def log_local(event, data=None):
    """
    로컬 audit jsonl 기록. 로그 실패가 동기화를 막으면 안 되므로 OSError만 삼킨다.
    """
    if not AUDIT_PATH:
        return
    try:
        ensure_dir_for_file(AUDIT_PATH)
        rec = {
            "ts": now_iso(),
            "event": event,
            "data": data or {}
        }
        with open(AUDIT_PATH, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False) + "\n")
    except OSError:
        pass


def service_log(level, msg, data=None):
    if not SERVICE_LOG_PATH:
        return
    try:
        ensure_dir_for_file(SERVICE_LOG_PATH)
        rec = {
            "ts": now_iso(),
            "level": str(level or "INFO"),
            "msg": str(msg or ""),
        }
        if data is not None:
            rec["data"] = data
        with open(SERVICE_LOG_PATH, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False) + "\n")
    except OSError:
        pass


def out_print(*args, **kwargs):
    """
    출력 라우팅:
    - Service 모드: 파일 로그로만 기록
    - 일반 모드: print
    """
    if SERVICE_MODE:
        service_log("INFO", " ".join(str(a) for a in args))
        return
    print(*args, **kwargs)


# ============================================================
# Saved settings (비밀 아닌 값만)
# ============================================================
SETTINGS_KEYS = ("gistId", "identifier", "sshPort", "lastRun")


def load_settings(path=None):
    path = path or SETTINGS_PATH
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except (OSError, ValueError) as e:
        log_local("settings_load_fail", {"path": path, "error": safe_str(e)})
        return {}
    if not isinstance(obj, dict):
        return {}
    return {k: obj[k] for k in SETTINGS_KEYS if obj.get(k) is not None}


def save_settings(updates, path=None):
    """Merge updates into the settings file. Secrets are dropped on the floor."""
    path = path or SETTINGS_PATH
    current = load_settings(path)
    for k, v in updates.items():
        if k in SETTINGS_KEYS:
            current[k] = v
    try:
        ensure_dir_for_file(path)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(current, f, ensure_ascii=False, indent=2)
        log_local("settings_saved", {"path": path, "keys": sorted(current)})
        return True
    except OSError as e:
        log_local("settings_save_fail", {"path": path, "error": safe_str(e)})
        return False


def resolve_gist_id(settings):
    return env_str("GIST_ID") or str(settings.get("gistId") or "").strip()


def resolve_identifier(settings):
    return env_str("NODE_IDENTIFIER") or str(settings.get("identifier") or "").strip()


_PORT_RE = re.compile(r"^\s*Port\s+(\d+)", re.MULTILINE)


def detect_ssh_port(sshd_config="/etc/ssh/sshd_config"):
    """Read the first Port directive from sshd_config. None if absent/unreadable."""
    try:
        with open(sshd_config, "r", encoding="utf-8", errors="ignore") as f:
            m = _PORT_RE.search(f.read())
    except OSError:
        return None
    if not m:
        return None
    port = int(m.group(1))
    return port if 0 < port < 65536 else None


def resolve_ssh_port(settings, sshd_config="/etc/ssh/sshd_config"):
    """SSH_PORT env -> saved sshPort -> sshd_config -> 22"""
    for raw in (env_str("SSH_PORT"), settings.get("sshPort")):
        try:
            port = int(raw)
        except (TypeError, ValueError):
            continue
        if 0 < port < 65536:
            return port
    return detect_ssh_port(sshd_config) or 22
