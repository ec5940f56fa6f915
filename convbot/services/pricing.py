"""
Per-job credit price and heaviness classification.
"""
from dataclasses import dataclass

from convbot.core.config import settings
from convbot.services.formats import is_video, normalize_ext


@dataclass(frozen=True)
class Quote:
    credits: int
    heavy: bool


def is_heavy(source_ext: str, target_ext: str, file_size: int = 0) -> bool:
    """Video transcodes and oversized inputs are heavy."""
    if is_video(normalize_ext(source_ext)) or is_video(normalize_ext(target_ext)):
        return True
    threshold = settings.heavy_file_size_mb * 1024 * 1024
    return threshold > 0 and file_size >= threshold


def quote(source_ext: str, target_ext: str, file_size: int = 0) -> Quote:
    heavy = is_heavy(source_ext, target_ext, file_size)
    credits = settings.credits_per_heavy_job if heavy else settings.credits_per_job
    return Quote(credits=max(credits, 0), heavy=heavy)
