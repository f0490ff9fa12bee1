import os
import secrets

from dotenv import load_dotenv
from flask import Flask, g
from werkzeug.exceptions import HTTPException

from .auth import auth_blueprint
from .database import db_session, init_db
from .errors import ApiError, render_api_error, render_http_error
from .models import seed_sample_data
from .payments import payments_blueprint
from .views import main_blueprint


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def create_app(test_config=None):
    load_dotenv()

    app = Flask(__name__)
    app.config.from_mapping(
        SECRET_KEY=os.getenv("SECRET_KEY", "dev-secret-key"),
        DATABASE_URL=os.getenv("DATABASE_URL", "sqlite:///delivery.db"),
        JWT_SECRET=os.getenv("JWT_SECRET", "dev-jwt-secret"),
        JWT_EXPIRES_IN=int(os.getenv("JWT_EXPIRES_IN", "900")),
        REFRESH_TOKEN_EXPIRES_IN=int(os.getenv("REFRESH_TOKEN_EXPIRES_IN", "604800")),
        FIREBASE_PROJECT_ID=os.getenv("FIREBASE_PROJECT_ID"),
        FIREBASE_API_KEY=os.getenv("FIREBASE_API_KEY"),
        LINE_CHANNEL_ID=os.getenv("LINE_CHANNEL_ID"),
        LINE_CHANNEL_ACCESS_TOKEN=os.getenv("LINE_CHANNEL_ACCESS_TOKEN"),
        LINE_USER_IDS=os.getenv("LINE_USER_IDS"),
        SLIPOK_VERIFY_URL=os.getenv("SLIPOK_VERIFY_URL"),
        SLIPOK_TOKEN=os.getenv("SLIPOK_TOKEN"),
        SLIPOK_MODE=os.getenv("SLIPOK_MODE", ""),
        STAFF_TOKEN=os.getenv("STAFF_TOKEN"),
        STORE_TIMEZONE=os.getenv("STORE_TIMEZONE", "Asia/Bangkok"),
        ENABLE_MOCK_QR=_env_flag("ENABLE_MOCK_QR"),
        SEED_SAMPLE_DATA=_env_flag("SEED_SAMPLE_DATA", "1"),
    )
    if test_config:
        app.config.update(test_config)

    init_db(app.config["DATABASE_URL"])
    if app.config["SEED_SAMPLE_DATA"]:
        seed_sample_data()

    app.register_blueprint(auth_blueprint)
    app.register_blueprint(main_blueprint)
    app.register_blueprint(payments_blueprint)

    @app.before_request
    def assign_request_id():
        g.req_id = secrets.token_hex(4)

    @app.after_request
    def echo_request_id(response):
        if g.get("req_id"):
            response.headers["x-req-id"] = g.req_id
        return response

    app.register_error_handler(ApiError, render_api_error)
    app.register_error_handler(HTTPException, render_http_error)

    @app.teardown_appcontext
    def shutdown_session(exception=None):
        db_session.remove()

    return app
