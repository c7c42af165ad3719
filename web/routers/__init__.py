"""Router modules for FastAPI web API."""

from web.routers import builds, config, health, identity, plans

__all__ = ["builds", "config", "health", "identity", "plans"]
