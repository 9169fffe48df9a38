"""Observability package bootstrap."""

from __future__ import annotations

from fastapi import FastAPI

from app.obs import logging as obs_logging
from app.obs import middleware
from app.settings import settings

_initialised = False


def init(app: FastAPI) -> None:
	global _initialised
	if _initialised or not settings.obs_enabled:
		return
	obs_logging.configure_logging()
	_initialised = True


def install(app: FastAPI) -> None:
	"""Attach request instrumentation; safe to call once per app instance."""
	middleware.install(app, enabled=settings.obs_enabled)


__all__ = ["init", "install"]
