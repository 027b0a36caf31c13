#!/usr/bin/env python3
# ============================================================
# run_server.py  -  Attendance Portal launcher with pyngrok tunnel
# ============================================================
#
# Phones only allow camera access (QR scanning) over HTTPS, so the
# portal is exposed through an ngrok tunnel. The public URL is also
# what the teacher's QR codes link to.
#
# Usage:
#   python run_server.py
#
# With your ngrok authtoken (free at https://dashboard.ngrok.com):
#   NGROK_AUTHTOKEN=your_token python run_server.py
#
# Local only (no tunnel):
#   NGROK_DISABLED=1 python run_server.py
# ============================================================

import logging
import os
import threading
import time

import uvicorn
from pyngrok import conf, ngrok

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

NGROK_AUTHTOKEN = os.getenv("NGROK_AUTHTOKEN", "")
NGROK_DISABLED  = os.getenv("NGROK_DISABLED", "0") == "1"
PORT            = int(os.getenv("PORT", "8000"))


def https_url(public_url: str) -> str:
    # ngrok may hand back http:// but QR links and the camera need https
    if public_url.startswith("http://"):
        return public_url.replace("http://", "https://", 1)
    return public_url


def open_tunnel(port: int) -> str:
    if NGROK_AUTHTOKEN:
        conf.get_default().auth_token = NGROK_AUTHTOKEN
        logger.info("ngrok authtoken set from environment")
    else:
        logger.warning("No NGROK_AUTHTOKEN set — using anonymous tunnel (limited)")
    logger.info("Opening ngrok tunnel on port %d…", port)
    tunnel = ngrok.connect(port, "http")
    return https_url(tunnel.public_url)


def run_uvicorn():
    uvicorn.run(
        "attendance_portal:app",   # module:app
        host="0.0.0.0",
        port=PORT,
        log_level="info",
    )


def main():
    public_url = None if NGROK_DISABLED else open_tunnel(PORT)
    if public_url and not os.getenv("APP_BASE_URL"):
        # read by attendance_portal at import time
        os.environ["APP_BASE_URL"] = public_url

    print()
    print("=" * 60)
    if public_url:
        print(f"  🌐  Public URL  :  {public_url}")
    print(f"  🏠  Local URL   :  http://localhost:{PORT}")
    print("=" * 60)
    print()
    print("Share the Public URL with students for code entry and QR scanning.")
    print("Press Ctrl+C to stop.\n")

    server_thread = threading.Thread(target=run_uvicorn, daemon=True)
    server_thread.start()

    try:
        while server_thread.is_alive():
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nShutting down…")
    finally:
        if public_url:
            ngrok.kill()
            print("Tunnel closed. Bye!")


if __name__ == "__main__":
    main()
