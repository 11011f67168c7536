# sync_errors.py
# ============================================================
# ssh-whitelist-sync - error taxonomy
#
#  Collaborator errors (raised by gist_store / ip_observer / ufw_firewall)
#  Pass errors (raised or recorded by reconcile)
#   - ObserveError / FetchError / StoreWriteError : whole pass aborted, nothing mutated
#   - OperationError : one plan step failed, siblings continue
#   - PersistenceError : checkpoint not written, previous checkpoint stays authoritative
# ============================================================


class SyncError(Exception):
    pass


# =========================
# RemoteStateStore
# =========================
class StoreUnavailable(SyncError):
    pass


class StoreMalformed(SyncError):
    pass


class StoreRejected(SyncError):
    pass


# =========================
# AddressObserver
# =========================
class ObserveUnavailable(SyncError):
    pass


# =========================
# AccessController
# =========================
class ToolError(SyncError):
    def __init__(self, message, rc=None, out="", err=""):
        super().__init__(message)
        self.rc = rc
        self.out = out
        self.err = err


class ToolUnavailable(ToolError):
    pass


class PermissionDenied(ToolError):
    pass


class ToolRejected(ToolError):
    pass


# =========================
# Pass level
# =========================
class PassAborted(SyncError):
    """Whole pass skipped. `cause` is the collaborator error behind it."""

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


class ObserveError(PassAborted):
    pass


class FetchError(PassAborted):
    pass


class StoreWriteError(PassAborted):
    pass


class OperationError(SyncError):
    def __init__(self, step, cause):
        super().__init__(f"{step.describe()} failed: {cause}")
        self.step = step
        self.cause = cause

    @property
    def identifier(self):
        return self.step.identifier

    @property
    def address(self):
        return self.step.address


class PersistenceError(SyncError):
    pass
