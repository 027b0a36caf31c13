# ============================================================
# redemption.py  -  time-boxed code redemption flow
# ============================================================
#
# Shared by OTP entry and QR scanning:
#
#   ExpiryClock         - countdown from a backend-issued expiry
#   DigitCapture        - six-cell digit entry (type / paste / backspace)
#   extract_token       - QR payload or shared link -> redemption token
#   RedemptionSubmitter - one in-flight backend call per submission
#   Presenter           - idle -> submitting -> success|failure -> idle
#   RedemptionFlow      - the above wired together for one caller
#
# The backend owns validity windows, single-use redemption and the
# one-record-per-day rule. Nothing here decides those; the countdown is
# display only.
# ============================================================

from __future__ import annotations

import asyncio
import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import parse_qs, urlsplit

from portal_backend import BackendError

logger = logging.getLogger(__name__)

EXPIRING_SOON_SECONDS = 30
OTP_LENGTH            = 6
GENERIC_FAILURE       = "Failed to mark attendance"
INVALID_RESPONSE      = "Invalid response from server"

Timestamp = Union[float, int, str, datetime]

_FRACTION = re.compile(r"\.(\d+)")


# ================================================================
# EXPIRY CLOCK
# ================================================================

class ClockState(str, Enum):
    ACTIVE        = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED       = "expired"


def to_epoch(value: Timestamp) -> float:
    """Epoch seconds from a number, an aware datetime or an ISO-8601 string."""
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        # PostgREST may send a trailing Z and trims zeros off microseconds;
        # fromisoformat before 3.11 wants exactly 3 or 6 fraction digits
        text  = value.strip().replace("Z", "+00:00")
        text  = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
        value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def seconds_remaining(expires_at: Timestamp, now: float) -> int:
    return max(0, math.floor(to_epoch(expires_at) - now))


def classify(seconds: int) -> ClockState:
    if seconds <= 0:
        return ClockState.EXPIRED
    if seconds <= EXPIRING_SOON_SECONDS:
        return ClockState.EXPIRING_SOON
    return ClockState.ACTIVE


def format_remaining(seconds: int) -> str:
    """m:ss, the way the countdown is shown next to a code."""
    return f"{seconds // 60}:{seconds % 60:02d}"


@dataclass(frozen=True)
class ClockSnapshot:
    seconds_remaining: int
    state: ClockState

    def as_dict(self) -> Dict[str, Any]:
        return {
            "seconds_remaining": self.seconds_remaining,
            "state":             self.state.value,
            "display":           format_remaining(self.seconds_remaining),
        }


class ExpiryClock:
    """
    Ticking countdown towards one expiry timestamp.

    ``clock`` and ``sleep`` are injectable so tests can drive time by hand.
    ``on_expire`` fires once when the remaining time first reaches zero,
    after which the loop halts. ``stop()`` is teardown: nothing fires after
    it, even if a tick was already scheduled, except ``on_stop`` which runs
    once on the first ``stop()``. ``stop()`` may be called from any thread.
    """

    def __init__(
        self,
        expires_at: Timestamp,
        on_expire: Optional[Callable[[], None]] = None,
        on_tick: Optional[Callable[[ClockSnapshot], None]] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
        interval: float = 1.0,
        on_stop: Optional[Callable[[], None]] = None,
    ):
        self._expires_at = to_epoch(expires_at)
        self._on_expire  = on_expire
        self._on_tick    = on_tick
        self._on_stop    = on_stop
        self._clock      = clock
        self._sleep      = sleep
        self._interval   = interval
        self._task: Optional[asyncio.Task] = None
        self._fired      = False
        self._halted     = False
        self._torn_down  = False

    @property
    def expires_at(self) -> float:
        return self._expires_at

    @property
    def seconds_remaining(self) -> int:
        return seconds_remaining(self._expires_at, self._clock())

    @property
    def state(self) -> ClockState:
        return classify(self.seconds_remaining)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def expired_fired(self) -> bool:
        return self._fired

    def snapshot(self) -> ClockSnapshot:
        remaining = self.seconds_remaining
        return ClockSnapshot(remaining, classify(remaining))

    def tick(self) -> Optional[ClockSnapshot]:
        if self._torn_down or self._halted:
            return None
        snap = self.snapshot()
        if self._on_tick:
            self._on_tick(snap)
        if snap.state is ClockState.EXPIRED and not self._fired:
            self._fired  = True
            self._halted = True
            if self._on_expire:
                self._on_expire()
        return snap

    async def _run(self) -> None:
        while not self._halted and not self._torn_down:
            await self._sleep(self._interval)
            self.tick()

    def start(self) -> ClockSnapshot:
        """Classify immediately, then keep ticking on the running loop."""
        if self._torn_down:
            raise RuntimeError("ExpiryClock was stopped; create a new one")
        self._cancel_task()
        snap = self.tick() or self.snapshot()
        if not self._halted:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return snap

    def reanchor(self, expires_at: Timestamp) -> ClockSnapshot:
        """Point the clock at a new expiry; stale state is dropped."""
        if self._torn_down:
            raise RuntimeError("ExpiryClock was stopped; create a new one")
        was_running = self.running
        self._cancel_task()
        self._expires_at = to_epoch(expires_at)
        self._fired  = False
        self._halted = False
        if was_running:
            return self.start()
        return self.tick() or self.snapshot()

    def stop(self) -> None:
        first = not self._torn_down
        self._torn_down = True
        self._halted    = True
        self._cancel_task()
        if first and self._on_stop:
            self._on_stop()

    @property
    def stopped(self) -> bool:
        return self._torn_down

    def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        loop = task.get_loop()
        try:
            same_loop = asyncio.get_running_loop() is loop
        except RuntimeError:
            same_loop = False
        if same_loop:
            task.cancel()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(task.cancel)


# ================================================================
# CODE CAPTURE
# ================================================================

_DIGIT = re.compile(r"\d")


class DigitCapture:
    """Fixed-length numeric entry split over single-digit cells."""

    def __init__(self, length: int = OTP_LENGTH):
        self.length = length
        self.cells: List[str] = [""] * length
        self.focus = 0
        self._full = re.compile(r"\d{%d}" % length)

    @classmethod
    def from_cells(cls, values: List[str], length: int = OTP_LENGTH) -> "DigitCapture":
        capture = cls(length)
        for index, value in enumerate(values[:length]):
            capture.enter(index, (value or "").strip())
        return capture

    def enter(self, index: int, value: str) -> bool:
        if not 0 <= index < self.length:
            return False
        if value and not _DIGIT.fullmatch(value):
            return False
        self.cells[index] = value
        if value and index < self.length - 1:
            self.focus = index + 1
        else:
            self.focus = index
        return True

    def backspace(self, index: int) -> None:
        if not 0 <= index < self.length:
            return
        if self.cells[index]:
            self.cells[index] = ""
            self.focus = index
        elif index > 0:
            self.focus = index - 1

    def paste(self, text: str) -> bool:
        text = (text or "").strip()
        if not self._full.fullmatch(text):
            return False
        self.cells = list(text)
        self.focus = self.length - 1
        return True

    def clear(self) -> None:
        self.cells = [""] * self.length
        self.focus = 0

    @property
    def is_complete(self) -> bool:
        return all(self.cells)

    @property
    def has_input(self) -> bool:
        return any(self.cells)

    @property
    def code(self) -> str:
        return "".join(self.cells)

    def can_submit(self, in_flight: bool) -> bool:
        return self.is_complete and not in_flight


def extract_token(scanned: str) -> str:
    """Token from a QR payload: a bare token, a query string or a full link."""
    scanned = (scanned or "").strip()
    if "token=" not in scanned:
        return scanned
    query = urlsplit(scanned).query or scanned
    values = parse_qs(query).get("token")
    return values[0] if values and values[0] else scanned


# ================================================================
# REDEMPTION SUBMITTER
# ================================================================

@dataclass
class RedemptionResult:
    success: bool
    subject: Optional[str] = None
    error_message: Optional[str] = None


# (caller_id, token) -> raw backend response
RedeemCall = Callable[[str, str], Any]


class RedemptionSubmitter:
    def __init__(self, call: RedeemCall, on_success: Optional[Callable[[], None]] = None):
        self._call       = call
        self._on_success = on_success
        self._lock       = threading.Lock()

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def submit(
        self,
        token: str,
        caller_id: str,
        on_begin: Optional[Callable[[], None]] = None,
    ) -> Optional[RedemptionResult]:
        """
        Send one redemption. Returns None without calling the backend when
        another submission from this instance is still pending.
        """
        if not self._lock.acquire(blocking=False):
            logger.info("Submission from %s ignored: previous one still pending", caller_id)
            return None
        try:
            if on_begin:
                on_begin()
            result = self._interpret(self._send(token, caller_id))
            if result.success and self._on_success:
                try:
                    self._on_success()
                except BackendError as e:
                    logger.warning("Attendance refresh failed for %s: %s", caller_id, e)
            return result
        finally:
            self._lock.release()

    def _send(self, token: str, caller_id: str) -> Any:
        try:
            return self._call(caller_id, token)
        except BackendError as e:
            logger.warning("Redemption call failed for %s: %s", caller_id, e)
            return RedemptionResult(False, error_message=e.message or GENERIC_FAILURE)

    @staticmethod
    def _interpret(response: Any) -> RedemptionResult:
        if isinstance(response, RedemptionResult):
            return response
        if not isinstance(response, dict):
            return RedemptionResult(False, error_message=INVALID_RESPONSE)
        if not response.get("success"):
            return RedemptionResult(False, error_message=response.get("error") or GENERIC_FAILURE)
        return RedemptionResult(True, subject=response.get("subject"))


# ================================================================
# PRESENTER
# ================================================================

class FlowState(str, Enum):
    IDLE       = "idle"
    SUBMITTING = "submitting"
    SUCCESS    = "success"
    FAILURE    = "failure"


class Presenter:
    def __init__(self):
        self.state   = FlowState.IDLE
        self.message: Optional[str] = None
        self.subject: Optional[str] = None

    def begin(self) -> None:
        self.state   = FlowState.SUBMITTING
        self.message = None
        self.subject = None

    def finish(self, result: RedemptionResult) -> None:
        if result.success:
            self.state   = FlowState.SUCCESS
            self.subject = result.subject
            self.message = f"Attendance marked successfully for {result.subject}!"
        else:
            self.state   = FlowState.FAILURE
            self.subject = None
            self.message = result.error_message or GENERIC_FAILURE

    def fail(self, message: str) -> None:
        self.finish(RedemptionResult(False, error_message=message))

    def reset(self) -> None:
        self.state   = FlowState.IDLE
        self.message = None
        self.subject = None

    def as_dict(self) -> Dict[str, Any]:
        return {"state": self.state.value, "message": self.message, "subject": self.subject}


# ================================================================
# FLOW
# ================================================================

class RedemptionFlow:
    """
    One caller, one modality. ``redeem`` is the backend call, ``load_summary``
    re-reads the attendance list shown under the form after a success.
    """

    def __init__(
        self,
        caller_id: str,
        redeem: RedeemCall,
        load_summary: Callable[[str], List[dict]],
    ):
        self.caller_id     = caller_id
        self.capture       = DigitCapture()
        self.presenter     = Presenter()
        self.summary: List[dict] = []
        self._load_summary = load_summary
        self.submitter     = RedemptionSubmitter(redeem, on_success=self.refresh_summary)

    @property
    def in_flight(self) -> bool:
        return self.submitter.in_flight

    def refresh_summary(self) -> List[dict]:
        self.summary = list(self._load_summary(self.caller_id) or [])
        return self.summary

    # -- OTP input ---------------------------------------------------

    def enter_digit(self, index: int, value: str) -> bool:
        accepted = self.capture.enter(index, value)
        if accepted:
            self.presenter.reset()
        return accepted

    def paste(self, text: str) -> bool:
        accepted = self.capture.paste(text)
        if accepted:
            self.presenter.reset()
        return accepted

    def load_cells(self, values: List[str]) -> bool:
        """Replace the whole entry (a form post of all six cells)."""
        capture = DigitCapture.from_cells(values, self.capture.length)
        if capture.code != "".join(v.strip() for v in values if v):
            return False
        self.capture = capture
        self.presenter.reset()
        return True

    def submit_code(self) -> Optional[RedemptionResult]:
        if not self.capture.can_submit(self.in_flight):
            return None
        result = self._submit(self.capture.code)
        if result is not None and result.success:
            self.capture.clear()
        return result

    # -- QR ----------------------------------------------------------

    def redeem(self, scanned: str) -> Optional[RedemptionResult]:
        token = extract_token(scanned)
        if not token:
            return None
        if not self.in_flight:
            self.presenter.reset()
        return self._submit(token)

    def _submit(self, token: str) -> Optional[RedemptionResult]:
        result = self.submitter.submit(token, self.caller_id, on_begin=self.presenter.begin)
        if result is not None:
            self.presenter.finish(result)
        return result

    def as_dict(self) -> Dict[str, Any]:
        data = self.presenter.as_dict()
        data["summary"] = self.summary
        return data
