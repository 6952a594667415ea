"""
Order bot package.

Exposes helpers for creating the FastAPI application so that runtime code
(``uvicorn orderbot:get_app --factory``) and tests build it the same way.
The import of ``main`` is deferred so importing the services does not build
an application.
"""


def create_app(settings=None):
    """Lazy import wrapper for create_app to avoid import-time app creation."""
    from .main import create_app as _create_app
    return _create_app(settings)


def get_app():
    """Create the FastAPI application with settings from the environment."""
    return create_app()


__all__ = ["create_app", "get_app"]
