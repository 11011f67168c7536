# scheduler.py
# ============================================================
# ssh-whitelist-sync - tick driver
#
#  - 한 번에 pass 하나 (PassGuard.in_flight)
#  - 수동 트리거(SIGUSR1)가 pass 도중에 오면 버린다 (큐잉 안 함)
#  - SIGINT/SIGTERM -> stop_event. 다음 suspension point에서 종료
# ============================================================
import signal
import threading

from agent_common import log_local, out_print, safe_str, service_log


class PassGuard:
    """Single in-flight flag shared by the timer and the manual trigger."""

    def __init__(self):
        self.in_flight = False
        self.dropped = 0

    def run(self, fn, *args, **kwargs):
        """returns (ran, result). An overlapping call is dropped, not queued."""
        if self.in_flight:
            self.dropped += 1
            log_local("pass_trigger_dropped", {"dropped": self.dropped})
            return False, None
        self.in_flight = True
        try:
            return True, fn(*args, **kwargs)
        finally:
            self.in_flight = False


class Ticker:
    def __init__(self, tick, interval, guard=None, stop_event=None):
        self.tick = tick
        self.interval = interval
        self.guard = guard or PassGuard()
        self.stop_event = stop_event or threading.Event()
        self.trigger_event = threading.Event()

    def request_pass(self):
        """Manual trigger. Ignored while a pass is running."""
        if self.guard.in_flight:
            self.guard.dropped += 1
            log_local("manual_trigger_dropped", {"dropped": self.guard.dropped})
            return False
        self.trigger_event.set()
        return True

    def request_stop(self):
        self.stop_event.set()
        # interval 대기 중이면 바로 깨운다
        self.trigger_event.set()

    def run_forever(self):
        """
        tick 예외가 나도 루프는 죽지 않는다 (로그 후 다음 tick)
        - tick은 보고용 결과를 리턴하거나 pass-level 에러를 raise
        """
        passes = 0
        while not self.stop_event.is_set():
            self.trigger_event.clear()
            try:
                ran, _ = self.guard.run(self.tick)
                if ran:
                    passes += 1
            except Exception as e:
                out_print(f"[tick] unexpected error: {safe_str(e)}")
                log_local("tick_exception", {"error": f"{type(e).__name__}: {safe_str(e)}"})
                service_log("ERROR", "tick_exception", {"error": safe_str(e)})
            if self.stop_event.is_set():
                break
            self.trigger_event.wait(self.interval)
        log_local("ticker_stopped", {"passes": passes})
        return passes

    def install_signal_handlers(self):
        def _stop(signum, frame):
            log_local("stop_signal", {"signal": signum})
            self.request_stop()

        def _trigger(signum, frame):
            self.request_pass()

        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)
        if hasattr(signal, "SIGUSR1"):
            signal.signal(signal.SIGUSR1, _trigger)
