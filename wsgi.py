#!/usr/bin/env python3
"""
WSGI Entry Point for ScribeStore
This file serves as the WSGI application entry point for production deployment.
"""

import logging
import os
import sys

# Add the application directory to Python path
sys.path.insert(0, os.path.dirname(__file__))

import config

config.load_server_config()

# Import the Flask application
from app import app, metadata, remote
from scheduler import initialize_background_jobs, stop_background_jobs

# WSGI application
application = app

if __name__ == "__main__":
    from waitress import serve

    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(message)s')
    config.setup_scratch_directory()

    print("🚀 Starting ScribeStore with Waitress WSGI Server...")
    config.print_config_info()
    print("📁 Press Ctrl+C to stop the server")
    print()

    initialize_background_jobs(metadata, remote)
    try:
        serve(
            application,
            host=config.HOST,
            port=config.PORT,
            threads=8,
            channel_timeout=120,
            cleanup_interval=30,
            max_request_body_size=config.MAX_CONTENT_LENGTH,
        )
    except KeyboardInterrupt:
        print("\n👋 Server stopped by user")
    finally:
        stop_background_jobs()
