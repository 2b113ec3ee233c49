"""HashGuard API package.

A FastAPI service layer around the evidence verification engine.
"""

from .server import create_app  # noqa: F401
