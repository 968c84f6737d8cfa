#!/usr/bin/env python3
"""
Development Server for ScribeStore
Runs the Flask development server against the configured FTP host, with
debug mode and the background jobs enabled.
"""

import logging
import os
import sys

# Add the application directory to Python path
sys.path.insert(0, os.path.dirname(__file__))

# Immediate console output
os.environ['PYTHONUNBUFFERED'] = '1'

import config
from app import app, metadata, remote
from scheduler import initialize_background_jobs

if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    config.setup_scratch_directory()

    app.config.update(
        SEND_FILE_MAX_AGE_DEFAULT=0,
        PROPAGATE_EXCEPTIONS=True,
    )

    print("🧪 Starting ScribeStore Development Server...")
    print("⚠️  WARNING: This is for DEVELOPMENT/TESTING only!")
    config.print_config_info()
    print("📁 Press Ctrl+C to stop the server")
    print()

    # The reloader would start a second copy of the background jobs
    initialize_background_jobs(metadata, remote)

    try:
        app.run(
            host=config.HOST,
            port=config.PORT,
            debug=True,
            threaded=True,
            use_reloader=False,
        )
    except KeyboardInterrupt:
        print("\n👋 Development server stopped by user")
