"""Application wiring."""

from .bootstrap import ServiceContainer, build_services

__all__ = ["ServiceContainer", "build_services"]
