"""
Broker fronts — how page contexts reach the broker.

  create_app(broker)      Flask HTTP front: POST /message, GET /health, GET /pending
  expose_broker(...)      Playwright binding: pages call `await window.sheetRelay({...})`

HTTP callers identify themselves with a "sender" field in the body or an
X-Context-Id header. Pages inside the Playwright browser are identified
automatically by the page that made the call.
"""

import logging
import time

from flask import Flask, jsonify, request as flask_request

logger = logging.getLogger("sheet_relay")

BINDING_NAME = "sheetRelay"


def create_app(broker) -> Flask:
    """Build the Flask front for a broker."""
    app = Flask(__name__)
    start_time = time.time()

    @app.route("/health", methods=["GET"])
    def health():
        """Health check — verifies the server is running."""
        return jsonify({"status": "ok", "uptime": int(time.time() - start_time)})

    @app.route("/message", methods=["POST"])
    def message():
        """
        Deliver one broker message.

        Body: {"type": "submitRecord", "label": "...", ..., "sender": "<context id>"}
        Returns: whatever the broker answers, always HTTP 200.
        """
        body = flask_request.get_json(silent=True)
        if not isinstance(body, dict):
            return jsonify({"ok": False, "error": "expected a JSON object"}), 400
        if not body.get("type"):
            return jsonify({"ok": False, "error": "missing type"}), 400

        sender = body.pop("sender", None) or flask_request.headers.get("X-Context-Id")
        logger.debug(f"  [http] {body['type']} from {sender or 'anonymous'}")
        return jsonify(broker.handle(body, sender))

    @app.route("/pending", methods=["GET"])
    def pending():
        """Return the worker → origin map of workers still open."""
        return jsonify(broker.coordinator.pending())

    return app


def expose_broker(context, broker, transport, name: str = BINDING_NAME) -> None:
    """
    Make the broker callable from every page in a Playwright BrowserContext.

    The calling page is registered with the transport so it can later be
    notified (as an origin) or closed (as a worker) by id.
    """

    def _on_message(source, message):
        sender = transport.register(source["page"])
        return broker.handle(message, sender)

    context.expose_binding(name, _on_message)
    logger.info(f"Broker exposed to pages as window.{name}()")
