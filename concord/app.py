"""
Concord Main Application
Flask application factory wiring blueprints, compression, rate limiting and
the scheduler thread.
"""

import logging
import os
import secrets
from typing import Any, Dict, Optional, Union

from flask import Flask, Response, request
from flask_compress import Compress

from .config import get_config_manager
from .config_schema import ConcordConfig
from .routes import health_bp, queue_bp
from .routes.errors import register_error_handlers
from .services.service_manager import (ServiceManager, get_service_manager,
                                       set_service_manager)
from .utils.logger import log_startup, setup_logger
from .utils.rate_limiting import add_rate_limit_headers, get_rate_limiter
from .version import get_app_info

compress = Compress()


def _configure_compression(app: Flask) -> None:
    app.config.setdefault('COMPRESS_REGISTER', True)
    app.config.setdefault('COMPRESS_ALGORITHM', os.getenv('CONCORD_COMPRESS_ALGO', 'gzip'))
    app.config.setdefault('COMPRESS_MIMETYPES', ('application/json', 'text/plain'))
    try:
        app.config['COMPRESS_LEVEL'] = max(1, min(9, int(os.getenv('CONCORD_COMPRESS_LEVEL', '6'))))
    except ValueError:
        app.config['COMPRESS_LEVEL'] = 6
    try:
        app.config['COMPRESS_MIN_SIZE'] = max(256, int(os.getenv('CONCORD_COMPRESS_MIN_BYTES', '1024')))
    except ValueError:
        app.config['COMPRESS_MIN_SIZE'] = 1024
    compress.init_app(app)


def _allowed_origin(request_origin: Optional[str]) -> Optional[str]:
    allowed_env = os.getenv('CONCORD_CORS_ORIGINS')
    if not allowed_env:
        return None
    allowed = [entry.strip() for entry in allowed_env.split(',') if entry.strip()]
    if '*' in allowed:
        return request_origin or '*'
    if request_origin and request_origin.rstrip('/') in (entry.rstrip('/') for entry in allowed):
        return request_origin
    return None


def create_app(
    config: Optional[Union[ConcordConfig, Dict[str, Any]]] = None,
    *,
    service_manager: Optional[ServiceManager] = None,
    start_scheduler: Optional[bool] = None,
) -> Flask:
    """Return a freshly constructed Flask application.

    Args:
        config: Validated config or raw dict; loaded from ``config/`` when omitted
        service_manager: Prebuilt manager (tests inject in-memory collaborators)
        start_scheduler: Override ``scheduler.autostart``
    """
    logger = setup_logger("concord")

    if service_manager is None:
        if config is None:
            store = get_config_manager()
            service_manager = ServiceManager(store.load_config(), config_store=store)
        else:
            service_manager = ServiceManager(config)
    set_service_manager(service_manager)

    app = Flask(__name__)
    app.secret_key = os.getenv('FLASK_SECRET_KEY', secrets.token_hex(32))
    app.extensions['concord'] = service_manager
    _configure_compression(app)

    app.register_blueprint(health_bp)
    app.register_blueprint(queue_bp)
    register_error_handlers(app)

    # Initialize rate limiter with default rules
    get_rate_limiter()

    @app.after_request
    def after_request(response: Response):
        """Add CORS and rate limit headers."""
        origin = _allowed_origin(request.headers.get('Origin'))
        if origin:
            response.headers['Access-Control-Allow-Origin'] = origin
            response.headers.setdefault('Vary', 'Origin')
            response.headers['Access-Control-Allow-Headers'] = 'Content-Type,Authorization'
            response.headers['Access-Control-Allow-Methods'] = 'GET,PUT,POST,DELETE,OPTIONS'
        return add_rate_limit_headers(response)

    autostart = service_manager.config.scheduler.autostart if start_scheduler is None else start_scheduler
    if autostart:
        service_manager.start()

    log_startup(logger, "Concord")
    logger.info(f"🎛️ {get_app_info()} ready with features: {', '.join(service_manager.engines)}")
    return app


def run_app(host: str = "0.0.0.0", port: int = 5001, debug: bool = False) -> None:
    """Run the Flask development server with the scheduler started."""
    app = create_app(start_scheduler=True)
    try:
        app.run(host=host, port=port, debug=debug, threaded=True, use_reloader=False)
    finally:
        get_service_manager().shutdown()
        logging.getLogger("concord").info("🛑 Concord stopped")
