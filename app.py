import os, logging
from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

import config
from config import ConfigError
from merchants_api import bp_merchants
from payments_api import bp_payments
from receipts_api import bp_receipts
from rewards_api import bp_rewards

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
log = logging.getLogger("droppay")

CORS_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


def create_app() -> Flask:
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = 1 * 1024 * 1024  # JSON bodies only

    # ----------------- CORS -----------------
    origin = config.allow_origin()
    CORS(app,
         resources={r"/functions/*": {"origins": origin}},
         methods=["POST", "OPTIONS"],
         allow_headers=CORS_HEADERS,
         send_wildcard=(origin == "*"),
         max_age=86400)

    # ----------------- BLUEPRINTS -----------------
    app.register_blueprint(bp_payments)
    app.register_blueprint(bp_rewards)
    app.register_blueprint(bp_merchants)
    app.register_blueprint(bp_receipts)

    # ----------------- ERRORS -----------------
    @app.errorhandler(ConfigError)
    def _config_error(e):
        log.error("CONFIG_MISSING %s", e)
        return jsonify(error=str(e)), 500

    @app.errorhandler(HTTPException)
    def _http_error(e):
        msg = "Method not allowed" if e.code == 405 else (e.description or e.name)
        return jsonify(error=msg), e.code

    @app.errorhandler(Exception)
    def _unhandled(e):
        log.exception("UNHANDLED %s", type(e).__name__)
        return jsonify(error="Internal server error", details=str(e)), 500

    @app.get("/healthz")
    def healthz():
        return jsonify(ok=True)

    return app


app = create_app()

# ----------------- MAIN -----------------
if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    app.run(host="0.0.0.0", port=port, debug=False)
