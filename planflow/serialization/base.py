from abc import ABC, abstractmethod
from typing import Any


class BaseSerializer(ABC):
    """Encodes payloads, results and state data for storage fields."""

    @abstractmethod
    def serialize_value(self, value: Any) -> str: ...

    @abstractmethod
    def deserialize_value(self, data: str) -> Any: ...
