from . import autogroup
from .model import BaseModel, json_default

__all__ = ["BaseModel", "autogroup", "json_default"]
