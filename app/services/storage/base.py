from abc import ABC, abstractmethod
from typing import Optional

class BaseStorage(ABC):
    """Permanent store for validated uploads."""

    @abstractmethod
    async def store(self, file_path: str, name: str, content_type: Optional[str] = None) -> str:
        """Move the artifact at file_path into the store under name, return its location."""

    @abstractmethod
    async def exists(self, name: str) -> bool:
        pass
