"""Celery task modules for the marketing engine."""

# Import submodules so Celery autodiscovery registers tasks.
from . import automation as _automation  # noqa: F401

__all__ = ["_automation"]
