#!/usr/bin/env python3
"""
Concord Runner - Starts the API with the scheduler thread
"""

import os

from waitress import serve

from concord.app import create_app
from concord.config import load_config
from concord.services.service_manager import get_service_manager
from concord.utils.logger import setup_logger

if __name__ == "__main__":
    logger = setup_logger("concord")
    config = load_config()

    port = int(os.environ.get("PORT", config.get("port", 5001)))
    host = config.get("host", "0.0.0.0")
    debug_mode = config.get("debug", False)

    logger.info(f"🚀 Starting Concord on {host}:{port}")
    logger.info(f"🌍 Environment: {config.get('environment', 'unknown')}")
    logger.info(f"🔧 Debug mode: {debug_mode}")

    app = create_app()
    try:
        if debug_mode:
            app.run(host=host, port=port, debug=True, use_reloader=False)
        else:
            threads = int(os.environ.get("CONCORD_WAITRESS_THREADS", "8"))
            backlog = int(os.environ.get("CONCORD_WAITRESS_BACKLOG", "128"))
            logger.info(f"🍽️ Using Waitress WSGI server (threads={threads}, backlog={backlog})")
            serve(app, host=host, port=port, threads=threads, backlog=backlog)
    finally:
        get_service_manager().shutdown()
