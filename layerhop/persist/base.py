from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List


class Persistence(ABC):
    """Abstract key -> record store for host memory, preferences and history."""

    @abstractmethod
    def save_host_record(self, record: Dict) -> None:
        raise NotImplementedError

    @abstractmethod
    def load_host_records(self) -> List[Dict]:
        raise NotImplementedError

    @abstractmethod
    def get_preference(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    @abstractmethod
    def set_preference(self, key: str, value: Any) -> None:
        raise NotImplementedError

    @abstractmethod
    def record_hop_outcome(self, entry: Dict) -> None:
        raise NotImplementedError

    @abstractmethod
    def hop_history(self, limit: int = 50) -> List[Dict]:
        raise NotImplementedError
