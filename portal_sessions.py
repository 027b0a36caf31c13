# ============================================================
# portal_sessions.py  -  per-user state held by the portal process
# ============================================================
#
# Opened on sign-in, closed on sign-out and at shutdown. A session
# owns the user's redemption flows, the QR capture session and any
# countdown clocks streaming to the browser; closing it stops them.
# ============================================================

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

from portal_backend import Backend
from qr_capture import CaptureSession, OpenCVFrameScanner, QRScanner
from redemption import ExpiryClock, RedemptionFlow

logger = logging.getLogger(__name__)


class UserSession:
    def __init__(
        self,
        user_id: str,
        role: str,
        backend: Backend,
        scanner: Optional[QRScanner] = None,
        full_name: str = "",
        email: str = "",
    ):
        self.user_id   = user_id
        self.role      = role
        self.full_name = full_name
        self.email     = email
        self.otp_flow  = RedemptionFlow(user_id, backend.mark_via_otp, backend.get_today_attendance)
        self.qr_flow   = RedemptionFlow(user_id, backend.mark_via_qr, backend.get_recent_attendance)
        self.capture   = CaptureSession(scanner or OpenCVFrameScanner(), self.qr_flow.redeem)
        self._clocks: Dict[int, ExpiryClock] = {}
        self._lock     = threading.Lock()
        self.closed    = False

    def track_clock(self, clock: ExpiryClock) -> None:
        with self._lock:
            if not self.closed:
                self._clocks[id(clock)] = clock
                return
        clock.stop()

    def release_clock(self, clock: ExpiryClock) -> None:
        clock.stop()
        with self._lock:
            self._clocks.pop(id(clock), None)

    @property
    def clock_count(self) -> int:
        return len(self._clocks)

    def close(self) -> None:
        with self._lock:
            clocks, self._clocks = list(self._clocks.values()), {}
            self.closed = True
        for clock in clocks:
            clock.stop()
        self.capture.stop()


class SessionRegistry:
    def __init__(
        self,
        backend_factory: Callable[[], Backend],
        scanner_factory: Callable[[], QRScanner] = OpenCVFrameScanner,
    ):
        self._backend_factory = backend_factory
        self._scanner_factory = scanner_factory
        self._sessions: Dict[str, UserSession] = {}
        self._lock = threading.Lock()

    def open(self, user_id: str, role: str, full_name: str = "", email: str = "") -> UserSession:
        session = UserSession(
            user_id, role, self._backend_factory(), self._scanner_factory(),
            full_name=full_name, email=email,
        )
        with self._lock:
            previous = self._sessions.get(user_id)
            self._sessions[user_id] = session
        if previous is not None:
            previous.close()
        logger.info("Session opened for %s (%s)", user_id, role)
        return session

    def get(self, user_id: str) -> Optional[UserSession]:
        with self._lock:
            return self._sessions.get(user_id)

    def get_or_open(self, user_id: str, role: str) -> UserSession:
        # tokens outlive a restart; the session is rebuilt on first use
        session = self.get(user_id)
        if session is None or session.role != role:
            session = self.open(user_id, role)
        return session

    def close(self, user_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is None:
            return False
        session.close()
        logger.info("Session closed for %s", user_id)
        return True

    def close_all(self) -> None:
        with self._lock:
            sessions, self._sessions = list(self._sessions.values()), {}
        for session in sessions:
            session.close()

    def __len__(self) -> int:
        return len(self._sessions)
