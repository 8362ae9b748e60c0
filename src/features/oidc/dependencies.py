"""OIDC dependencies for FastAPI."""

from fastapi import Request

from .client import OidcClient


def get_oidc_client(request: Request) -> OidcClient:
    """Return the application-wide OIDC client created in the lifespan handler."""
    return request.app.state.oidc_client
