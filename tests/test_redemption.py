import asyncio
import threading
from datetime import datetime, timezone

import pytest

from portal_backend import BackendError
from redemption import (
    GENERIC_FAILURE,
    INVALID_RESPONSE,
    ClockState,
    DigitCapture,
    ExpiryClock,
    FlowState,
    RedemptionFlow,
    RedemptionSubmitter,
    classify,
    extract_token,
    format_remaining,
    seconds_remaining,
    to_epoch,
)


class FakeTime:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    async def sleep(self, interval):
        self.now += interval


# ----------------------------------------------------------------
# clock arithmetic
# ----------------------------------------------------------------

@pytest.mark.parametrize("now, remaining, state", [
    (0,     100, ClockState.ACTIVE),
    (69,    31,  ClockState.ACTIVE),
    (70,    30,  ClockState.EXPIRING_SOON),
    (99,    1,   ClockState.EXPIRING_SOON),
    (99.5,  0,   ClockState.EXPIRED),
    (100,   0,   ClockState.EXPIRED),
    (500,   0,   ClockState.EXPIRED),
])
def test_remaining_and_state(now, remaining, state):
    assert seconds_remaining(100, now) == remaining
    assert classify(seconds_remaining(100, now)) is state


def test_iso_timestamps():
    dt = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert to_epoch("2026-03-01T09:00:00Z") == dt.timestamp()
    assert to_epoch("2026-03-01T09:00:00+00:00") == dt.timestamp()
    assert to_epoch(dt.replace(tzinfo=None)) == dt.timestamp()


@pytest.mark.parametrize("text, micro", [
    ("2026-03-01T09:00:00.12345+00:00", 123450),
    ("2026-03-01T09:00:00.5Z", 500000),
    ("2026-03-01T09:00:00.1234567+00:00", 123456),
])
def test_trimmed_fractional_seconds(text, micro):
    base = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc).timestamp()
    assert to_epoch(text) == pytest.approx(base + micro / 1_000_000)


def test_format_remaining():
    assert format_remaining(119) == "1:59"
    assert format_remaining(5) == "0:05"


# ----------------------------------------------------------------
# ExpiryClock
# ----------------------------------------------------------------

def test_expiry_fires_once():
    t = FakeTime(0)
    fired = []
    clock = ExpiryClock(100, on_expire=lambda: fired.append(t.now), clock=t)

    assert clock.tick().state is ClockState.ACTIVE
    t.now = 80
    assert clock.tick().state is ClockState.EXPIRING_SOON
    t.now = 100
    assert clock.tick().state is ClockState.EXPIRED
    t.now = 101
    assert clock.tick() is None
    assert fired == [100]
    assert clock.expired_fired


def test_clock_runs_until_expiry_on_the_loop():
    t = FakeTime(0)
    fired = []
    ticks = []

    async def scenario():
        clock = ExpiryClock(3, on_expire=lambda: fired.append(t.now), on_tick=ticks.append,
                            clock=t, sleep=t.sleep)
        clock.start()
        for _ in range(10):
            await asyncio.sleep(0)
        return clock

    clock = asyncio.run(scenario())
    assert fired == [3]
    assert [s.seconds_remaining for s in ticks] == [3, 2, 1, 0]
    assert not clock.running


def test_already_expired_reports_on_start():
    t = FakeTime(50)
    fired = []

    async def scenario():
        clock = ExpiryClock(10, on_expire=lambda: fired.append(True), clock=t, sleep=t.sleep)
        return clock, clock.start()

    clock, snap = asyncio.run(scenario())
    assert snap.state is ClockState.EXPIRED
    assert fired == [True]
    assert not clock.running


def test_stop_silences_pending_tick():
    t = FakeTime(0)
    fired = []

    async def scenario():
        clock = ExpiryClock(1, on_expire=lambda: fired.append(True), clock=t, sleep=t.sleep)
        clock.start()
        clock.stop()
        for _ in range(5):
            await asyncio.sleep(0)
        return clock

    clock = asyncio.run(scenario())
    assert fired == []
    t.now = 10
    assert clock.tick() is None
    with pytest.raises(RuntimeError):
        clock.reanchor(20)


def test_stop_notifies_once():
    stops = []
    clock = ExpiryClock(100, on_stop=lambda: stops.append(True), clock=FakeTime(0))
    clock.stop()
    clock.stop()
    assert stops == [True]
    assert clock.stopped


def test_stop_from_another_thread_cancels_the_loop():
    t = FakeTime(0)
    stops = []

    async def scenario():
        loop = asyncio.get_running_loop()
        woke = asyncio.Event()
        clock = ExpiryClock(
            600, clock=t,
            on_stop=lambda: loop.call_soon_threadsafe(woke.set),
        )
        clock.start()
        assert clock.running
        await asyncio.to_thread(clock.stop)
        await asyncio.wait_for(woke.wait(), 3)
        for _ in range(5):
            await asyncio.sleep(0)
        stops.append(clock.running)

    asyncio.run(scenario())
    assert stops == [False]


def test_reanchor_rearms_expiry():
    t = FakeTime(5)
    fired = []
    clock = ExpiryClock(3, on_expire=lambda: fired.append(t.now), clock=t)
    clock.tick()
    assert fired == [5]

    snap = clock.reanchor(65)
    assert snap.state is ClockState.ACTIVE
    assert not clock.expired_fired
    t.now = 65
    clock.tick()
    assert fired == [5, 65]


# ----------------------------------------------------------------
# digit capture
# ----------------------------------------------------------------

def test_typing_advances_focus_and_rejects_non_digits():
    cap = DigitCapture()
    assert cap.enter(0, "4")
    assert cap.focus == 1
    assert not cap.enter(1, "a")
    assert not cap.enter(1, "12")
    assert cap.cells[1] == ""
    assert cap.has_input and not cap.is_complete


def test_backspace_on_empty_cell_moves_left():
    cap = DigitCapture()
    cap.enter(0, "1")
    cap.enter(1, "2")
    cap.backspace(2)
    assert cap.focus == 1
    assert cap.cells[:2] == ["1", "2"]
    cap.backspace(1)
    assert cap.cells[1] == ""
    cap.backspace(0)
    assert cap.cells[0] == ""
    cap.backspace(0)
    assert cap.focus == 0


def test_paste_needs_exactly_six_digits():
    cap = DigitCapture()
    assert not cap.paste("12345")
    assert not cap.paste("1234567")
    assert not cap.paste("12a456")
    assert cap.code == ""
    assert cap.paste(" 654321 ")
    assert cap.code == "654321"
    assert cap.focus == 5
    assert cap.can_submit(in_flight=False)
    assert not cap.can_submit(in_flight=True)


@pytest.mark.parametrize("scanned, token", [
    ("abc123", "abc123"),
    ("  abc123\n", "abc123"),
    ("https://portal.example/student/scan-attendance?token=abc123", "abc123"),
    ("https://portal.example/student/scan-attendance?token=a%2Fb&x=1", "a/b"),
    ("token=xyz", "xyz"),
])
def test_extract_token(scanned, token):
    assert extract_token(scanned) == token


# ----------------------------------------------------------------
# submitter
# ----------------------------------------------------------------

def test_second_submit_while_pending_is_dropped():
    started = threading.Event()
    release = threading.Event()
    calls = []

    def call(caller_id, token):
        calls.append(token)
        started.set()
        release.wait(5)
        return {"success": True, "subject": "Maths"}

    submitter = RedemptionSubmitter(call)
    results = []
    worker = threading.Thread(target=lambda: results.append(submitter.submit("123456", "s1")))
    worker.start()
    assert started.wait(5)

    assert submitter.in_flight
    assert submitter.submit("123456", "s1") is None

    release.set()
    worker.join(5)
    assert results[0].success and results[0].subject == "Maths"
    assert calls == ["123456"]
    assert not submitter.in_flight


@pytest.mark.parametrize("response, message", [
    ({"success": False, "error": "Invalid or expired OTP code"}, "Invalid or expired OTP code"),
    ({"success": False}, GENERIC_FAILURE),
    (None, INVALID_RESPONSE),
    ("ok", INVALID_RESPONSE),
])
def test_failed_redemptions(response, message):
    result = RedemptionSubmitter(lambda c, t: response).submit("123456", "s1")
    assert not result.success
    assert result.error_message == message


def test_transport_error_message():
    def call(caller_id, token):
        raise BackendError("Network request failed")

    result = RedemptionSubmitter(call).submit("123456", "s1")
    assert result.error_message == "Network request failed"


def test_refresh_failure_keeps_success():
    def refresh():
        raise BackendError("timeout")

    submitter = RedemptionSubmitter(lambda c, t: {"success": True, "subject": "Maths"}, on_success=refresh)
    assert submitter.submit("123456", "s1").success


# ----------------------------------------------------------------
# flow
# ----------------------------------------------------------------

def _flow(response):
    summary = [{"subject": "Maths", "status": "present"}]
    return RedemptionFlow("s1", lambda c, t: response, lambda caller: summary)


def test_flow_success_clears_entry_and_refreshes():
    flow = _flow({"success": True, "subject": "Maths"})
    flow.paste("123456")
    result = flow.submit_code()

    assert result.success
    assert flow.capture.code == ""
    assert flow.presenter.state is FlowState.SUCCESS
    assert flow.presenter.message == "Attendance marked successfully for Maths!"
    assert flow.as_dict()["summary"] == [{"subject": "Maths", "status": "present"}]


def test_flow_failure_keeps_entry():
    flow = _flow({"success": False, "error": "Invalid or expired OTP code"})
    flow.paste("123456")
    flow.submit_code()

    assert flow.capture.code == "123456"
    assert flow.presenter.state is FlowState.FAILURE
    assert flow.summary == []

    # editing the entry clears the old message
    flow.enter_digit(5, "7")
    assert flow.presenter.state is FlowState.IDLE


def test_incomplete_code_is_not_submitted():
    calls = []
    flow = RedemptionFlow("s1", lambda c, t: calls.append(t), lambda caller: [])
    flow.enter_digit(0, "1")
    assert flow.submit_code() is None
    assert calls == []


def test_load_cells_rejects_bad_shape():
    flow = _flow({"success": True, "subject": "Maths"})
    assert not flow.load_cells(["1", "2", "x", "4", "5", "6"])
    assert flow.load_cells(["1", "2", "3", "4", "5", "6"])
    assert flow.capture.is_complete


def test_redeem_scanned_link():
    seen = []

    def call(caller_id, token):
        seen.append((caller_id, token))
        return {"success": True, "subject": "Physics"}

    flow = RedemptionFlow("s9", call, lambda caller: [])
    flow.redeem("https://portal.example/student/scan-attendance?token=t0k")
    assert seen == [("s9", "t0k")]
    assert flow.presenter.subject == "Physics"
    assert flow.redeem("   ") is None
