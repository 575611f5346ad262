"""Gather bot — web entry point.

Builds the bot engine, serves the Flask dashboard on the configured port
and waits for Ctrl+C. Phone access via ``http://<LAN-IP>:<port>`` works
the same way.
"""

import sys
import time
import atexit
import signal
import socket
import threading

from startup import initialize, build_engine, shutdown
from botlog import get_logger


def main():
    settings = initialize()
    log = get_logger("run_web")
    engine = build_engine(settings)

    # ------------------------------------------------------------------
    # Flask server (background thread)
    # ------------------------------------------------------------------
    from web.dashboard import create_app, get_local_ip
    from werkzeug.serving import make_server

    app = create_app(engine)
    port = settings.web_port

    def _run_flask():
        srv = make_server("0.0.0.0", port, app, threaded=True)
        srv.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        srv.serve_forever()

    threading.Thread(target=_run_flask, daemon=True).start()
    log.info("Web dashboard: http://%s:%d", get_local_ip(), port)

    # ------------------------------------------------------------------
    # Graceful shutdown
    # ------------------------------------------------------------------
    _shutting_down = threading.Event()

    def _on_exit():
        if not _shutting_down.is_set():
            _shutting_down.set()
            shutdown(engine)

    atexit.register(_on_exit)

    def _signal_handler(sig, frame):
        _on_exit()
        sys.exit(0)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    print(f"\n  Dashboard: http://{get_local_ip()}:{port}\n")
    try:
        print("Press Ctrl+C to stop the bot.\n")
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass

    _on_exit()


if __name__ == "__main__":
    main()
