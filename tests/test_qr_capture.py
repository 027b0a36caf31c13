import pytest

from conftest import FakeScanner
from qr_capture import (
    NO_CAMERA_MESSAGE,
    PERMISSION_DENIED_MESSAGE,
    START_FAILED_MESSAGE,
    CameraPermissionError,
    CaptureSession,
    OpenCVFrameScanner,
    QRScanner,
    ScanError,
    ScanHandle,
    decode_frame,
    render_qr_png,
    share_url,
)
from redemption import extract_token


def test_only_one_live_handle():
    scanner = FakeScanner()
    session = CaptureSession(scanner, on_token=lambda t: t)
    session.start()
    session.start()
    assert len(scanner.started) == 2
    assert len(scanner.live) == 1
    assert scanner.stopped == [scanner.started[0]]


def test_handle_released_before_token_is_delivered():
    scanner = FakeScanner()
    live_at_delivery = []

    def on_token(text):
        live_at_delivery.append(len(scanner.live))
        return f"redeemed:{text}"

    session = CaptureSession(scanner, on_token=on_token)
    session.start()
    assert session.feed(b"") is None
    assert session.scanning

    assert session.feed(b"tok123") == "redeemed:tok123"
    assert live_at_delivery == [0]
    assert not session.scanning
    # a stray frame after decode goes nowhere
    assert session.feed(b"tok123") is None


class StoppedMidFeed(CaptureSession):
    """Releases the handle right after feed() has looked at it, like a concurrent stop."""

    interrupt = False

    @property
    def last_result(self):
        return self._last

    @last_result.setter
    def last_result(self, value):
        self._last = value
        if self.interrupt:
            self.interrupt = False
            self.stop()


def test_feed_survives_concurrent_stop():
    scanner = FakeScanner()
    session = StoppedMidFeed(scanner, on_token=lambda t: t)
    session.start()
    session.interrupt = True

    assert session.feed(b"tok123") is None
    assert scanner.live == []
    assert not session.scanning


def test_scanner_interface_is_abstract():
    with pytest.raises(TypeError):
        QRScanner()

    class NoPush(ScanHandle):
        pass

    with pytest.raises(TypeError):
        NoPush({}, lambda t: None, lambda e: None)


def test_device_error_releases_handle():
    scanner = FakeScanner()
    errors = []
    session = CaptureSession(scanner, on_token=lambda t: t, on_error=errors.append)
    session.start()
    session.feed(b"!lost")
    assert scanner.live == []
    assert session.error == "Camera disconnected"
    assert [e.message for e in errors] == ["Camera disconnected"]


def test_permission_denial_blocks_until_granted():
    scanner = FakeScanner(fail=CameraPermissionError(PERMISSION_DENIED_MESSAGE))
    session = CaptureSession(scanner, on_token=lambda t: t)
    assert not session.start()
    assert session.permission == "denied"
    assert session.error == PERMISSION_DENIED_MESSAGE

    scanner.fail = None
    assert not session.start()
    assert scanner.started == []

    session.grant_permission()
    assert session.error is None
    assert session.start()
    assert session.scanning


@pytest.mark.parametrize("name, message, expected", [
    ("NotAllowedError", "", PERMISSION_DENIED_MESSAGE),
    ("NotFoundError", "", NO_CAMERA_MESSAGE),
    ("NotReadableError", "Could not start video source", "Could not start video source"),
    ("AbortError", "", START_FAILED_MESSAGE),
])
def test_browser_errors(name, message, expected):
    session = CaptureSession(FakeScanner(), on_token=lambda t: t)
    assert session.report_client_error(name, message).message == expected
    assert session.as_dict()["error"] == expected


def test_scope_always_releases():
    scanner = FakeScanner()
    session = CaptureSession(scanner, on_token=lambda t: t)
    with pytest.raises(ValueError):
        with session.scanning_scope():
            assert session.scanning
            raise ValueError("boom")
    assert scanner.live == []

    denied = CaptureSession(FakeScanner(fail=CameraPermissionError(PERMISSION_DENIED_MESSAGE)), lambda t: t)
    with pytest.raises(ScanError):
        with denied.scanning_scope():
            pass


def test_share_url_quotes_token():
    assert share_url("https://h.example/", "a b/c") == \
        "https://h.example/student/scan-attendance?token=a%20b%2Fc"


def test_opencv_decodes_rendered_code():
    url = share_url("https://portal.example", "tok0abc")
    png = render_qr_png(url)
    assert decode_frame(png) == url

    session = CaptureSession(OpenCVFrameScanner(), on_token=extract_token)
    session.start()
    assert session.feed(png) == "tok0abc"
    assert not session.scanning


def test_undecodable_bytes():
    assert decode_frame(b"not an image") is None
