"""
Flask Application Factory

This module creates and configures the Flask application.
"""
import time
from flask import Flask, g, request, jsonify
from flask_cors import CORS

from .config import Config, get_config
from .extensions import db, migrate
from .api import sync_bp, queue_bp
from .services.engine import init_sync_engine
from .utils.logger import setup_logger, get_logger, parse_component_levels


def create_app(config_class=None, **engine_overrides):
    """Create and configure Flask application.

    Args:
        config_class: Configuration class to use. If None, auto-detect from environment.
        engine_overrides: Component overrides passed to the sync engine
            (session, local_store, asset_store, renderer)

    Returns:
        Configured Flask application instance
    """
    if config_class is None:
        config_class = get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # Ensure data directories exist
    Config.init_paths()

    setup_logger(
        log_level=app.config.get('LOG_LEVEL', 'INFO'),
        log_file=app.config.get('LOG_FILE'),
        component_levels=parse_component_levels(app.config.get('LOG_COMPONENT_LEVELS'))
    )

    logger = get_logger('app')

    cors_config = config_class.get_cors_config()
    CORS(app, resources={r"/api/*": cors_config})

    db.init_app(app)
    migrate.init_app(app, db)

    engine = init_sync_engine(app, **engine_overrides)

    _register_blueprints(app)

    # Note: Use 'flask db upgrade' to create/update database tables
    with app.app_context():
        _cleanup_stale_runs(engine, logger)

    _register_error_handlers(app)
    _register_request_hooks(app)
    _register_health_check(app)

    if engine.worker is not None:
        engine.worker.start()

    db_uri = app.config.get('SQLALCHEMY_DATABASE_URI', '')
    logger.info(f"Application initialized, database: {db_uri}")

    return app


def _register_blueprints(app):
    """Register API blueprints under /api."""
    app.register_blueprint(sync_bp, url_prefix='/api')
    app.register_blueprint(queue_bp, url_prefix='/api')


def _cleanup_stale_runs(engine, logger):
    """Fail runs and requeue downloads abandoned by a previous process."""
    try:
        cleaned = engine.coordinator.cleanup_stale_runs()
        if cleaned > 0:
            logger.info(f"Cleaned up {cleaned} stale sync runs on startup")
        recovered = engine.download_queue.recover_stale()
        if recovered > 0:
            logger.info(f"Requeued {recovered} stale download tasks on startup")
    except Exception as e:
        # Tables may not exist yet before the first migration
        logger.warning(f"Failed to cleanup stale runs: {e}")


def _register_error_handlers(app):
    """Register global error handlers."""
    from .utils.responses import ApiResponse

    @app.errorhandler(400)
    def bad_request(error):
        msg = str(error.description) if hasattr(error, 'description') else 'Bad request'
        return ApiResponse.error(msg, 400, 'BAD_REQUEST')

    @app.errorhandler(404)
    def not_found(error):
        msg = str(error.description) if hasattr(error, 'description') else 'Resource not found'
        return ApiResponse.not_found(msg)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return ApiResponse.error('Method not allowed', 405, 'METHOD_NOT_ALLOWED')

    @app.errorhandler(500)
    def internal_error(error):
        logger = get_logger('error')
        logger.exception(error)
        return ApiResponse.server_error('Internal server error')


def _register_request_hooks(app):
    """Register request timing hooks."""

    @app.before_request
    def before_request():
        g.start_time = time.time()

    @app.after_request
    def after_request(response):
        if hasattr(g, 'start_time'):
            duration = (time.time() - g.start_time) * 1000
            if duration > 1000:
                logger = get_logger('slow_request')
                logger.warning(f"Slow request: {request.method} {request.path} took {duration:.2f}ms")
        return response


def _register_health_check(app):
    """Register health check endpoint."""

    @app.route('/api/health')
    def health_check():
        """Health check endpoint for container orchestration."""
        return jsonify({
            'status': 'healthy',
            'service': 'notion-sync'
        })
