"""Chat-completion relay that rotates upstream API keys and cools down failing ones."""

from .app import create_app
from .settings import Settings

__all__ = ["create_app", "Settings"]
__version__ = "0.1.0"
