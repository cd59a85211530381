from .base import BaseSource
from .kladovkin import KladovkinSource

__all__ = ["BaseSource", "KladovkinSource"]
