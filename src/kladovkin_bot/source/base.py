from abc import ABC, abstractmethod
from typing import List

from ..models import UnitRecord


class BaseSource(ABC):
    """Abstract base class for unit listing sources"""

    @abstractmethod
    def fetch(self) -> str:
        """Download the raw listing document"""
        pass

    @abstractmethod
    def parse(self, document: str) -> List[UnitRecord]:
        """Parse a listing document into unit records"""
        pass

    @abstractmethod
    def get_source_name(self) -> str:
        """Return the name of this source for logging"""
        pass

    def close(self) -> None:
        """Release network resources"""
        pass
