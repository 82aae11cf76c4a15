from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .http.options import TransferOptions
from .http.result import TransferResult


class ITransport(ABC):
    @abstractmethod
    def perform(self, options: TransferOptions) -> TransferResult:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class IEvidenceCollector(ABC):
    @abstractmethod
    def log_failed_transfer(self, method: str, url: str, error_kind: str, message: str, headers: Dict[str, str], context: Dict[str, Any], response_body: Optional[bytes] = None):
        pass
