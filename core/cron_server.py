"""
Cron Web Server for the Giveaway Tick
Exposes the settlement tick to external schedulers behind a bearer secret

Endpoints:
- GET|POST /api/cron/giveaways-tick  (Authorization: Bearer <CRON_SECRET>)
- GET /health
"""

import hmac
import logging
import re

from flask import Flask, jsonify, request

from giveaway_system import config
from giveaway_system.exceptions import TickAborted
from giveaway_system.service import build_scheduler
from utils.error_helpers import api_error_handler, json_error

logger = logging.getLogger(__name__)

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def get_bearer_token(auth_header):
    """Extract the token from an Authorization header, or '' if absent"""
    match = _BEARER_RE.match(str(auth_header or "").strip())
    return match.group(1).strip() if match else ""


def create_app(scheduler_factory=None):
    """
    Create the cron Flask app

    Args:
        scheduler_factory: Callable returning a GiveawayScheduler; defaults to
            building one from environment config on first use
    """
    app = Flask(__name__)
    factory = scheduler_factory or build_scheduler
    state = {}

    def get_scheduler():
        if "scheduler" not in state:
            state["scheduler"] = factory()
        return state["scheduler"]

    @app.errorhandler(404)
    def handle_404(e):
        logger.info(f"ℹ️ 404: {request.method} {request.path}")
        return json_error("not_found", 404)

    @app.errorhandler(405)
    def handle_405(e):
        logger.info(f"ℹ️ 405 Method Not Allowed: {request.method} {request.path}")
        return json_error("method_not_allowed", 405)

    @app.route("/health")
    def health():
        """Health check endpoint"""
        return jsonify({"status": "healthy", "cron_configured": bool(config.CRON_SECRET)}), 200

    @app.route("/api/cron/giveaways-tick", methods=["GET", "POST"])
    @api_error_handler
    def giveaways_tick():
        """
        Run one giveaway tick

        Vercel-style cron services call with GET; POST is accepted for manual runs.
        """
        secret = str(config.CRON_SECRET or "")
        if not secret:
            return json_error("cron_secret_missing", 500)

        token = get_bearer_token(request.headers.get("Authorization"))
        if not token or not hmac.compare_digest(token.encode(), secret.encode()):
            logger.warning(f"⚠️ Unauthorized cron call from {request.remote_addr}")
            return json_error("unauthorized", 401)

        try:
            result = get_scheduler().run_tick()
        except TickAborted as e:
            return json_error("internal_error", 500, phase=e.phase, **e.result.to_dict())

        return jsonify({"ok": True, **result.to_dict()}), 200

    return app


if __name__ == '__main__':
    import os

    from utils.logging_config import setup_service_logging

    setup_service_logging(config.LOG_LEVEL, config.LOG_FILE)
    port = int(os.getenv('PORT', 8000))
    logger.info(f"🚀 Starting cron server on port {port}")
    create_app().run(host='0.0.0.0', port=port, debug=False)
