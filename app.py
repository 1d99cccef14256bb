from dotenv import load_dotenv
load_dotenv()

import logging
import os
from datetime import timedelta

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.middleware.proxy_fix import ProxyFix

from extensions import db, limiter

app = Flask(__name__)

# --- Ensure SECRET_KEY for sessions (admin proof review login) ---
secret_key = os.getenv('SECRET_KEY') or os.getenv('FLASK_SECRET_KEY')
if not secret_key:
    # Safe dev fallback to prevent 500s locally. Set SECRET_KEY in production.
    secret_key = 'dev-secret-key-change-me'
app.config['SECRET_KEY'] = secret_key
app.secret_key = secret_key

# Enforce a strong SECRET_KEY in production (do not allow dev fallbacks).
if (os.getenv("RENDER") or os.getenv("FLASK_ENV") == "production") and secret_key.startswith("dev-secret-key-change"):
    raise RuntimeError("SECRET_KEY must be set to a strong random value in production (Render/FLASK_ENV=production).")

app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = os.getenv("SESSION_COOKIE_SAMESITE", "Lax")
if os.getenv("RENDER") or os.getenv("FLASK_ENV") == "production":
    app.config["SESSION_COOKIE_SECURE"] = True
app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=int(os.getenv("SESSION_LIFETIME_HOURS", "1")))

# Behind a reverse proxy request.remote_addr is the proxy; trust a single hop.
if os.getenv("RENDER") or os.getenv("FLASK_ENV") == "production":
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

# -------------------------------
# Logging
# -------------------------------
_log_level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
logging.basicConfig(level=_log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
app.logger.setLevel(_log_level)

# -------------------------------
# Database
# -------------------------------
_db_url = os.getenv("DATABASE_URL")
if not _db_url:
    if os.getenv("RENDER") == "true":
        raise RuntimeError("DATABASE_URL missing on Render; refusing to use SQLite.")
    _db_url = "sqlite:///swagly.db"

if _db_url.startswith("postgres://"):
    _db_url = _db_url.replace("postgres://", "postgresql://", 1)

app.config["SQLALCHEMY_DATABASE_URI"] = _db_url
if not _db_url.startswith("sqlite"):
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        "pool_recycle": 300,
        "pool_pre_ping": True,
    }

# Rate limiting can be switched off (tests, local scripts).
app.config["RATELIMIT_ENABLED"] = os.getenv("RATELIMIT_ENABLED", "1") == "1"

# Initialize extensions
db.init_app(app)
CORS(app)
limiter.init_app(app)


@app.errorhandler(429)
def ratelimit_handler(e):
    return jsonify({"success": False, "error": "Too many requests. Please slow down and try again."}), 429


@app.get("/api/health")
def health():
    return jsonify({"success": True, "status": "ok"})


# Models must be imported before create_all().
from models_passports import Activity, Passport, PassportActivity, User  # noqa: F401
from models_proofs import ActivityProof, ProofAttempt  # noqa: F401
from proofs import proofs_api
from admin_proofs import admin_proofs

app.register_blueprint(proofs_api)
app.register_blueprint(admin_proofs)

with app.app_context():
    db.create_all()


if __name__ == '__main__':
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    print("=" * 60)
    print("Swagly proof validation service")
    print("=" * 60)
    print(f"Chain ID: {os.getenv('CHAIN_ID', '534352')}")
    print(f"Auto-validate: http://localhost:{port}/api/proofs/auto-validate")
    print(f"Admin Proofs: http://localhost:{port}/api/admin/proofs")
    print("=" * 60)

    app.run(debug=debug, port=port)
