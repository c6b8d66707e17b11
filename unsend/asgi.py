"""ASGI entry point.

Usage:
    uvicorn unsend.asgi:app --host 0.0.0.0 --port 3000
"""

from unsend.app import create_app
from unsend.config import get_settings
from unsend.logging_config import setup_logging

setup_logging(get_settings().log_level)
app = create_app()
