"""Gather bot web dashboard — mobile-friendly remote control via Flask.

Runs in a background thread of the same process as the bot engine, so it
reads engine snapshots directly and never touches bot state except through
the engine's start/stop/check/settings calls.

Access at ``http://<your-ip>:8080`` from any browser.
"""

import socket

from flask import Flask, render_template_string, request, jsonify

from config import validate_settings
from settings import DEFAULTS, settings_from_dict, settings_to_dict, save_settings
from botlog import get_logger, log_stream

_log = get_logger("web")

DEFAULT_LOG_LINES = 150

INDEX_HTML = """<!doctype html>
<html>
<head>
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Gather Bot</title>
<style>
body { font-family: sans-serif; margin: 1em; }
#status { font-weight: bold; }
pre { background: #111; color: #ddd; padding: .5em; height: 60vh; overflow-y: scroll; }
button { margin-right: .5em; }
</style>
</head>
<body>
<h2>Gather Bot</h2>
<p>Status: <span id="status">{{ status }}</span></p>
<p>
  Max army: <input id="max_army" type="number" min="1" max="9" value="{{ max_army }}">
  <button onclick="post('/api/start', {max_active_marches: document.getElementById('max_army').value})">Start</button>
  <button onclick="post('/api/stop')">Stop</button>
  <button onclick="post('/api/check-army')">Check army</button>
</p>
<pre id="logs"></pre>
<script>
function post(url, body) {
  fetch(url, {method: 'POST', headers: {'Content-Type': 'application/json'},
              body: JSON.stringify(body || {})}).then(refresh);
}
function refresh() {
  fetch('/api/status').then(r => r.json()).then(s => {
    document.getElementById('status').textContent = s.status;
  });
  fetch('/api/logs').then(r => r.json()).then(l => {
    var el = document.getElementById('logs');
    el.textContent = l.lines.join('\\n');
    el.scrollTop = el.scrollHeight;
  });
}
setInterval(refresh, 2000);
refresh();
</script>
</body>
</html>
"""


# ---------------------------------------------------------------------------
# Utility
# ---------------------------------------------------------------------------

def get_local_ip():
    """Best-effort detection of the machine's LAN IP address."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


def _parse_max_army(value):
    """Form/JSON value -> int when it looks like one; anything else passes through."""
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return value


# ---------------------------------------------------------------------------
# Flask app factory
# ---------------------------------------------------------------------------

def create_app(engine, persist=save_settings, stream=log_stream):
    app = Flask(__name__)

    # --- Page routes ---

    @app.route("/")
    def index():
        return render_template_string(INDEX_HTML,
                                      status=engine.status_text(),
                                      max_army=engine.settings.current.max_active_marches)

    # --- API routes ---

    @app.route("/api/status")
    def api_status():
        return jsonify(engine.snapshot())

    @app.route("/api/start", methods=["POST"])
    def api_start():
        payload = request.get_json(silent=True) or {}
        max_army = payload.get("max_active_marches", request.form.get("max_active_marches"))
        if max_army is not None:
            max_army = _parse_max_army(max_army)
        started = engine.start(max_army)
        _log.info("Start requested via web dashboard (started=%s)", started)
        return jsonify({"ok": started, "status": engine.status_text()})

    @app.route("/api/stop", methods=["POST"])
    def api_stop():
        _log.info("Stop requested via web dashboard")
        engine.stop()
        return jsonify({"ok": True, "status": engine.status_text()})

    @app.route("/api/check-army", methods=["POST"])
    def api_check_army():
        engine.request_immediate_army_check()
        return jsonify({"ok": True, "status": engine.status_text()})

    @app.route("/api/settings")
    def api_settings():
        return jsonify(settings_to_dict(engine.settings.current))

    @app.route("/api/settings", methods=["POST"])
    def api_save_settings():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({"ok": False, "error": "expected a JSON object"}), 400
        unknown = sorted(set(payload) - set(DEFAULTS))
        if unknown:
            return jsonify({"ok": False, "error": f"unknown keys: {', '.join(unknown)}"}), 400

        merged = {**settings_to_dict(engine.settings.current), **payload}
        merged, warnings = validate_settings(merged, DEFAULTS)
        for w in warnings:
            _log.warning("Settings (web save): %s", w)
        current = engine.update_settings(settings_from_dict(merged))
        persist(settings_to_dict(current))
        return jsonify({"ok": True, "settings": settings_to_dict(current),
                        "warnings": warnings})

    @app.route("/api/logs")
    def api_logs():
        limit = request.args.get("limit", DEFAULT_LOG_LINES, type=int)
        return jsonify({"lines": stream.snapshot(max(1, limit))})

    return app
