"""Hubris Image Generator - hermetic, cached builds of Hubris firmware images.

This package turns an application manifest (app.toml) into reproducible
firmware images, vendoring all dependencies up front so that builds run
without network access and reuse compiled dependencies across targets.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
