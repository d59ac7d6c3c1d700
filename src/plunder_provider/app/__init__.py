"""PlunderMachine controller application package."""

from .main import create_app
from .settings import ControllerSettings

__all__ = ["ControllerSettings", "create_app"]
