"""FastAPI control surface for imports."""

from mafia_data_platform.api.app import create_app

__all__ = ["create_app"]
