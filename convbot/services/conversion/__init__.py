"""
File conversion interface.
"""
from .base import (
    ConversionContext,
    ConversionError,
    ConversionRequest,
    ConversionResult,
    ConversionTimeout,
    Converter,
)
from .factory import load_converter

__all__ = [
    "ConversionContext",
    "ConversionError",
    "ConversionRequest",
    "ConversionResult",
    "ConversionTimeout",
    "Converter",
    "load_converter",
]
