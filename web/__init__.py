"""FastAPI web application for Hubris Image Generator.

This module provides the HTTP API that mirrors the core services.

All business logic is delegated to core modules in hubris_imagegen/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
