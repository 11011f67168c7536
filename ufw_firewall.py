# ufw_firewall.py
# ============================================================
# ssh-whitelist-sync - AccessController (Linux UFW)
#
#  add    : ufw allow from <ip> to any port <port>
#  remove : ufw delete allow from <ip> to any port <port>
#  list   : ufw status -> ALLOW 행 중 To 컬럼이 <port>인 From 주소들
#
#  - 단일 IP만 허용 (CIDR/공백/여러개는 ToolRejected, ufw 호출 안 함)
#  - 주소 텍스트는 검증만 하고 절대 바꾸지 않는다
#  - 없는 룰 삭제 / 이미 있는 룰 추가는 성공으로 본다 (idempotent)
# ============================================================
import ipaddress
import re

from agent_common import env_bool, env_str, log_local, run_cmd, safe_str
from sync_errors import PermissionDenied, ToolRejected, ToolUnavailable

# DRY_RUN=1이면 방화벽 명령 실제 실행 안함
DRY_RUN = env_bool("DRY_RUN")

# 기본은 sudo 경유 (-n: 비밀번호 프롬프트로 멈추지 않게)
FIREWALL_SUDO = env_bool("FIREWALL_SUDO", "1")
UFW_BIN = env_str("UFW_BIN") or "ufw"

_PERMISSION_MARKERS = (
    "need to be root",
    "permission denied",
    "a password is required",
    "not in the sudoers",
)
_MISSING_RULE_MARKERS = (
    "could not delete non-existent rule",
    "non-existent rule",
)

# "22                         ALLOW       203.0.113.7"
# "22/tcp                     ALLOW IN    2001:db8::7"
_STATUS_ROW_RE = re.compile(r"^(?P<to>\S+)(?:\s+\(v6\))?\s+ALLOW(?:\s+IN)?\s+(?P<src>\S+)")


def validate_address(address):
    """Single address only. Returns the text unchanged or raises ToolRejected."""
    t = address if isinstance(address, str) else ""
    if not t or t != t.strip() or "," in t or "/" in t:
        raise ToolRejected(f"invalid address {safe_str(address, 100)!r}")
    try:
        ipaddress.ip_address(t)
    except ValueError as e:
        raise ToolRejected(f"invalid address {safe_str(address, 100)!r}") from e
    return t


def classify_failure(action, out, err, rc):
    msg = f"{action} failed (rc={rc}): {safe_str(err or out, 300)}"
    low = (out + " " + err).lower()
    if any(m in low for m in _PERMISSION_MARKERS):
        return PermissionDenied(msg, rc, out, err)
    return ToolRejected(msg, rc, out, err)


def parse_status(text, port):
    """`ufw status` 출력에서 port에 걸린 ALLOW 출발지 주소 목록"""
    port = str(port)
    found = []
    for line in (text or "").splitlines():
        m = _STATUS_ROW_RE.match(line.strip())
        if not m:
            continue
        to = m.group("to")
        if to != port and not to.startswith(port + "/"):
            continue
        src = m.group("src")
        if src.lower() == "anywhere":
            continue
        if src not in found:
            found.append(src)
    return found


class UfwController:
    def __init__(self, dry_run=None, use_sudo=None, ufw_bin=None):
        self.dry_run = DRY_RUN if dry_run is None else dry_run
        self.use_sudo = FIREWALL_SUDO if use_sudo is None else use_sudo
        self.ufw_bin = ufw_bin or UFW_BIN

    def _cmd(self, *args):
        base = ["sudo", "-n", self.ufw_bin] if self.use_sudo else [self.ufw_bin]
        return base + [str(a) for a in args]

    def _run(self, action, cmd):
        try:
            ok, out, err, rc = run_cmd(cmd)
        except FileNotFoundError as e:
            log_local("firewall_tool_missing", {"action": action, "cmd": cmd})
            raise ToolUnavailable(f"{cmd[0]} not found", None, "", str(e)) from e
        except PermissionError as e:
            raise PermissionDenied(f"{action}: {e}", None, "", str(e)) from e
        except OSError as e:
            log_local("firewall_exec_fail", {"action": action, "cmd": cmd, "error": safe_str(e)})
            raise ToolUnavailable(f"{action}: could not run {cmd[0]}: {e}", None, "", str(e)) from e
        log_local(f"firewall_{action}", {"ok": ok, "rc": rc, "out": safe_str(out), "err": safe_str(err), "cmd": cmd})
        return ok, out, err, rc

    def add(self, address, port):
        ip = validate_address(address)
        cmd = self._cmd("allow", "from", ip, "to", "any", "port", port)
        if self.dry_run:
            log_local("dryrun_firewall_add", {"cmd": cmd})
            return
        ok, out, err, rc = self._run("add", cmd)
        if not ok:
            raise classify_failure("add", out, err, rc)

    def remove(self, address, port):
        ip = validate_address(address)
        cmd = self._cmd("delete", "allow", "from", ip, "to", "any", "port", port)
        if self.dry_run:
            log_local("dryrun_firewall_delete", {"cmd": cmd})
            return
        ok, out, err, rc = self._run("delete", cmd)
        if ok:
            return
        low = (out + " " + err).lower()
        if any(m in low for m in _MISSING_RULE_MARKERS):
            return
        raise classify_failure("delete", out, err, rc)

    def list(self, port):
        cmd = self._cmd("status")
        ok, out, err, rc = self._run("status", cmd)
        if not ok:
            raise classify_failure("status", out, err, rc)
        return parse_status(out, port)
