"""
PDF2MD Application Factory
"""
import os
from datetime import datetime, timezone

import stripe
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from flask_wtf.csrf import CSRFProtect
from config import config, REQUIRED_SETTINGS

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()

# Version info
APP_VERSION = os.environ.get("APP_VERSION", "2026.10")
BUILD_TIME = os.environ.get("BUILD_TIME", "")
GIT_COMMIT = os.environ.get("GIT_COMMIT", "")


def check_required_settings(app):
    """Refuse to start when a required secret is missing"""
    from pdf2md.exceptions import ConfigurationError

    missing = [name for name in REQUIRED_SETTINGS if not (app.config.get(name) or "").strip()]
    if missing:
        raise ConfigurationError(missing)


def create_app(config_name='default'):
    app = Flask(__name__)
    app.config.from_object(config[config_name])

    if not app.config.get('TESTING'):
        check_required_settings(app)

    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))
    stripe.api_key = app.config['STRIPE_SECRET_KEY']

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)

    from pdf2md.auth import init_auth
    from pdf2md.services.ocr_service import init_ocr
    init_auth(app)
    init_ocr(app)

    # Register blueprints
    from pdf2md.billing import billing_bp
    from pdf2md.stripe_webhook import webhook_bp
    from pdf2md.api import api_bp

    app.register_blueprint(billing_bp)
    app.register_blueprint(webhook_bp)
    app.register_blueprint(api_bp)

    # Bearer-token APIs and the signed webhook carry no CSRF token
    csrf.exempt(billing_bp)
    csrf.exempt(webhook_bp)
    csrf.exempt(api_bp)

    from pdf2md.exceptions import BillingError

    @app.errorhandler(BillingError)
    def handle_billing_error(error):
        return jsonify(error.to_dict()), error.status_code

    # Health check endpoint
    @app.route('/healthz')
    def healthz():
        """Health check for load balancers and monitoring"""
        try:
            from sqlalchemy import text
            db.session.execute(text('SELECT 1'))
            db_status = "ok"
        except Exception as e:
            app.logger.error('Health check database query failed: %s', e)
            db_status = f"error: {e}"

        return jsonify({
            "status": "ok" if db_status == "ok" else "degraded",
            "version": APP_VERSION,
            "database": db_status,
            "timestamp": datetime.now(timezone.utc).isoformat()
        })

    # Version endpoint
    @app.route('/version')
    def version():
        """Version and build info"""
        return jsonify({
            "version": APP_VERSION,
            "build_time": BUILD_TIME,
            "git_commit": GIT_COMMIT,
            "features": {
                "credits": True,
                "subscriptions": True,
                "ocr": bool(app.config.get('OCR_API_KEY')),
                "webhook_deduplication": bool(app.config.get('WEBHOOK_DEDUPLICATION')),
            }
        })

    # Handle database initialization
    with app.app_context():
        from sqlalchemy import inspect
        from pdf2md import models  # noqa: F401  (register tables)

        if os.getenv('RESET_DB', '').strip() in ('1', 'true', 'yes'):
            app.logger.warning('RESET_DB is set - dropping all tables...')
            db.drop_all()
            db.create_all()
            app.logger.warning('Fresh tables created')
        else:
            # Only create tables if they don't exist (safe for existing DB)
            inspector = inspect(db.engine)
            if not inspector.get_table_names():
                app.logger.info('No tables found, creating...')
                db.create_all()

    return app
