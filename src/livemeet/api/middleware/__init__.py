"""API middleware package."""

from src.livemeet.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
