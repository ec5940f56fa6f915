"""
Factory for the configured converter implementation.
"""
import importlib
import logging

from convbot.services.conversion.base import Converter


logger = logging.getLogger(__name__)


def load_converter(path: str) -> Converter:
    """
    Instantiate a converter from "package.module:ClassName".

    Raises:
        ValueError: malformed path, or the class is not a Converter
        ImportError: the module cannot be imported
    """
    module_name, sep, class_name = (path or "").strip().partition(":")
    if not sep or not module_name or not class_name:
        raise ValueError(f"Converter path must look like 'package.module:ClassName', got {path!r}")
    module = importlib.import_module(module_name)
    cls = getattr(module, class_name, None)
    if cls is None or not isinstance(cls, type) or not issubclass(cls, Converter):
        raise ValueError(f"{path} is not a Converter subclass")
    logger.info(f"Creating converter: {path}")
    return cls()
