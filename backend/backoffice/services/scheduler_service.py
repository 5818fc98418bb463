# Overview: Background sweep scheduler with explicit init()/shutdown() lifecycle.

from __future__ import annotations

import threading
from typing import Callable, Optional

from ..extensions import db
from ..time_utils import utcnow
from .maintenance_service import run_sweeps


class SweepScheduler:
    """
    Runs the periodic sweeps (order reaper, bot reactivation, OTP purge) on a daemon
    thread inside an app context. tick() runs one pass synchronously for tests and CLI.
    """

    def __init__(
        self,
        app,
        *,
        interval_seconds: float | None = None,
        clock: Callable = utcnow,
        otp_service=None,
    ):
        self.app = app
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None
            else float(app.config.get("SWEEP_INTERVAL_SECONDS", 300))
        )
        self.clock = clock
        self.otp_service = otp_service
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_result: Optional[dict] = None

    def tick(self) -> dict:
        with self.app.app_context():
            try:
                result = run_sweeps(self.clock())
                if self.otp_service is not None and self.otp_service.running:
                    result["otp_purged"] = self.otp_service.purge_expired()
            finally:
                db.session.remove()
        self.last_result = result
        return result

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.tick()
            except Exception:
                self.app.logger.exception("Sweep pass failed")

    def init(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="backoffice-sweeps", daemon=True)
        self._thread.start()

    def shutdown(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
