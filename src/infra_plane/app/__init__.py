"""Infra plane FastAPI application."""

from .main import create_app
from .settings import EngineSettings

__all__ = ["create_app", "EngineSettings"]
