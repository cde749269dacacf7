"""
PDF Annotator Service: Main Entry Point
========================================
Starts the Flask-based annotation microservice.

Usage:
    python main.py                    # Default: 0.0.0.0:5000
    python main.py --port 8000        # Custom port
    python main.py --db ./ann.sqlite  # Custom database
    python main.py --debug            # Debug mode

Environment:
    ANNOTATOR_DB_PATH     Database file (default: annotations.sqlite)
    ANNOTATOR_LOG_LEVEL   Logging level (default: INFO)
"""

import argparse
import logging
import os

from pdf_annotator.database import get_db_path
from pdf_annotator.engine import setup_logging
from pdf_annotator.server import app, create_app

logger = logging.getLogger("pdf_annotator.main")


def main():
    parser = argparse.ArgumentParser(description="PDF Annotator Service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host")
    parser.add_argument("--port", type=int, default=5000, help="Bind port")
    parser.add_argument("--db", default=None, help="Database path")
    parser.add_argument("--debug", action="store_true", help="Debug mode")
    args = parser.parse_args()

    setup_logging(os.environ.get("ANNOTATOR_LOG_LEVEL", "INFO"))

    db_path = args.db or get_db_path()
    logger.info(f"Database path: {db_path}")
    create_app({"DB_PATH": db_path})

    logger.info(f"Starting server on {args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
