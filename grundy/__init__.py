import logging
import os

from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from grundy.extensions import cors, db, migrate
from grundy.integrations.payments.factory import payment_health
from grundy.segments.segment_orders_api import orders_api_bp
from grundy.segments.segment_payment_webhooks import webhooks_bp
from grundy.segments.segment_payments import payments_bp
from grundy.segments.segment_rider import rider_bp
from grundy.segments.segment_vendors import vendors_bp
from grundy.services.store_factory import build_order_store, install_order_store
from grundy.utils.observability import init_otel, init_sentry, install_request_observers
from grundy.utils.settings import SETTINGS_EXTENSION_KEY, PlatformSettings, env_int


def create_app(config=None, order_store=None):
    app = Flask(__name__)
    init_sentry(app)

    settings = PlatformSettings.from_env()
    env = settings.env

    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'grundy.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url
    engine_options = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_recycle": env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
                "pool_size": env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
            }
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
    if config:
        app.config.update(config)

    app.logger.setLevel(logging.INFO)

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    app.extensions[SETTINGS_EXTENSION_KEY] = settings
    store = order_store if order_store is not None else build_order_store(settings)
    install_order_store(app, store)
    with app.app_context():
        # webhook_events backs replay detection even with the in-memory store
        db.create_all()
        init_otel(app, enabled=(os.getenv("OTEL_ENABLED") or "").strip() == "1", env=env)
    app.logger.info("order_store_ready backend=%s env=%s", store.name, env)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        payload = {
            "ok": False,
            "error": error.name,
            "message": error.description or error.name,
            "status": int(error.code or 500),
        }
        rid = (getattr(g, "request_id", "") or "").strip()
        if rid:
            payload["trace_id"] = rid
        return jsonify(payload), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        db.session.rollback()
        payload = {
            "ok": False,
            "error": "InternalServerError",
            "message": "Internal server error",
            "status": 500,
        }
        rid = (getattr(g, "request_id", "") or "").strip()
        if rid:
            payload["trace_id"] = rid
        return jsonify(payload), 500

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    app.register_blueprint(payments_bp)
    app.register_blueprint(orders_api_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(rider_bp)
    app.register_blueprint(vendors_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "grundy-orders",
            "env": env,
            "db": db_state,
            "order_store": store.name,
            "payments": payment_health(settings),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.get("/")
    def root():
        return jsonify({"ok": True, "service": "grundy-orders"})

    return app
