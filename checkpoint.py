# checkpoint.py
# ============================================================
# ssh-whitelist-sync - LocalCheckpoint
#
#  파일 형식: {"appliedAt": "...Z", "document": {identifier: address}}
#  - 파일 없음 = 빈 checkpoint (첫 실행), 에러 아님
#  - 구버전 ufw-state.json (flat mapping)도 그대로 읽는다 (appliedAt 없음)
#  - 쓰기는 temp file + os.replace (전체 파일 교체, 반쯤 쓴 파일이 남지 않게)
# ============================================================
import json
import os
import tempfile

from agent_common import CONFIG_DIR, env_str, log_local, now_iso, safe_str
from sync_errors import PersistenceError

CHECKPOINT_PATH = env_str("CHECKPOINT_PATH") or os.path.join(CONFIG_DIR, "ufw-state.json")


class Checkpoint:
    __slots__ = ("document", "applied_at")

    def __init__(self, document=None, applied_at=None):
        self.document = dict(document or {})
        self.applied_at = applied_at

    def __eq__(self, other):
        if not isinstance(other, Checkpoint):
            return NotImplemented
        return self.document == other.document and self.applied_at == other.applied_at

    def __repr__(self):
        return f"Checkpoint(entries={len(self.document)}, applied_at={self.applied_at!r})"

    def is_empty(self):
        return not self.document


def _document_from(obj):
    if not isinstance(obj, dict):
        return None
    if all(isinstance(k, str) and isinstance(v, str) for k, v in obj.items()):
        return dict(obj)
    return None


class CheckpointFile:
    def __init__(self, path=None):
        self.path = path or CHECKPOINT_PATH

    def load(self):
        if not os.path.exists(self.path):
            return Checkpoint()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                obj = json.load(f)
        except (OSError, ValueError) as e:
            # 읽을 수 없으면 경고 후 전부 신규로 취급
            log_local("checkpoint_unreadable", {"path": self.path, "error": safe_str(e)})
            return Checkpoint()

        if isinstance(obj, dict) and isinstance(obj.get("document"), dict):
            doc = _document_from(obj["document"])
            if doc is not None:
                applied_at = obj.get("appliedAt")
                return Checkpoint(doc, applied_at if isinstance(applied_at, str) else None)
        else:
            legacy = _document_from(obj)
            if legacy is not None:
                log_local("checkpoint_legacy_format", {"path": self.path, "entries": len(legacy)})
                return Checkpoint(legacy, None)

        log_local("checkpoint_unreadable", {"path": self.path, "error": "unexpected structure"})
        return Checkpoint()

    def save(self, document, applied_at=None):
        """Write atomically and return the Checkpoint that is now on disk."""
        cp = Checkpoint(document, applied_at or now_iso())
        body = json.dumps({"appliedAt": cp.applied_at, "document": cp.document}, ensure_ascii=False, indent=2)
        d = os.path.dirname(os.path.abspath(self.path))
        tmp = None
        try:
            os.makedirs(d, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".ufw-state.", suffix=".tmp", dir=d)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
            tmp = None
        except OSError as e:
            log_local("checkpoint_write_fail", {"path": self.path, "error": safe_str(e)})
            raise PersistenceError(f"could not write checkpoint {self.path}: {e}") from e
        finally:
            if tmp and os.path.exists(tmp):
                os.remove(tmp)
        log_local("checkpoint_written", {"path": self.path, "entries": len(cp.document), "appliedAt": cp.applied_at})
        return cp
