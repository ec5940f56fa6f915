"""
Base classes and types for converters.
The scheduler only knows this interface; concrete converters are loaded by factory.
"""
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from convbot.schemas.tasks import ConversionOptions


@dataclass
class ConversionRequest:
    """Request for a single file conversion."""
    task_id: str
    user_id: str
    file_id: str
    file_name: str
    source_format: str
    target_format: str
    options: ConversionOptions | None = None
    file_size: int = 0


@dataclass
class ConversionResult:
    """Converted file on local disk. The scheduler removes it after delivery."""
    path: str
    file_name: str
    extra: dict[str, Any] = field(default_factory=dict)


class ConversionError(Exception):
    """Raised when conversion fails; detail holds converter-specific fields for logging."""
    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.detail = detail or {}


class ConversionTimeout(ConversionError):
    pass


class ConversionContext:
    """
    Deadline and cancellation for one job.
    Converters running external processes should poll `cancelled` or pass
    `remaining()` as their own timeout.
    """

    def __init__(self, timeout: float):
        self.deadline = time.monotonic() + timeout
        self._cancel = threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set() or time.monotonic() >= self.deadline

    def remaining(self) -> float:
        return max(self.deadline - time.monotonic(), 0.0)


class Converter(ABC):
    """Abstract base class for converters."""

    @abstractmethod
    def convert(self, request: ConversionRequest, ctx: ConversionContext) -> ConversionResult:
        """Convert one file. Raise ConversionError on failure."""
        pass
