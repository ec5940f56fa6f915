"""
Supported file formats and conversion targets.
Source format detection works on file extensions only.
"""
import os


FORMAT_CATEGORIES: dict[str, tuple[str, ...]] = {
    "images": (
        "PNG", "JPG", "JPEG", "JP2", "WEBP", "BMP", "TIF", "TIFF", "GIF",
        "ICO", "HEIC", "AVIF", "TGS", "PSD", "SVG", "APNG", "EPS",
    ),
    "audio": ("MP3", "OGG", "OPUS", "WAV", "FLAC", "WMA", "OGA", "M4A", "AAC", "AIFF", "AMR"),
    "video": (
        "MP4", "AVI", "WMV", "MKV", "3GP", "3GPP", "MPG", "MPEG", "WEBM",
        "TS", "MOV", "FLV", "ASF", "VOB",
    ),
    "document": ("XLSX", "XLS", "TXT", "RTF", "DOC", "DOCX", "ODT", "PDF", "ODS"),
    "presentation": ("PPT", "PPTX", "PPTM", "PPS", "PPSX", "PPSM", "POT", "POTX", "POTM", "ODP"),
    "ebook": ("EPUB", "MOBI", "AZW3", "LRF", "PDB", "CBR", "FB2", "CBZ", "DJVU"),
}

WRITER_FORMATS = ("DOC", "DOCX", "ODT", "RTF", "TXT")
SHEET_FORMATS = ("XLS", "XLSX", "ODS")
SLIDE_FORMATS = FORMAT_CATEGORIES["presentation"]

# Target families: source family -> extra targets besides the family itself
_FAMILY_EXTRAS: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (FORMAT_CATEGORIES["images"], ()),
    (FORMAT_CATEGORIES["audio"], ()),
    (FORMAT_CATEGORIES["video"], FORMAT_CATEGORIES["audio"] + ("GIF",)),
    (FORMAT_CATEGORIES["ebook"], ("PDF",)),
)
_OFFICE_FAMILIES = (WRITER_FORMATS, SHEET_FORMATS, SLIDE_FORMATS)

UNKNOWN_FORMAT = "_unknown_"


def normalize_ext(ext: str | None) -> str:
    """'.JPG ' -> 'jpg'"""
    return (ext or "").strip().lstrip(".").lower()


def detect_format(file_name: str | None) -> str:
    """Lowercase extension of a file name, or empty string when there is none."""
    _, ext = os.path.splitext((file_name or "").strip())
    return normalize_ext(ext)


def category_of(ext: str) -> str | None:
    upper = normalize_ext(ext).upper()
    if not upper:
        return None
    for name, formats in FORMAT_CATEGORIES.items():
        if upper in formats:
            return name
    return None


def is_video(ext: str) -> bool:
    return category_of(ext) == "video"


def _finish(targets: tuple[str, ...], source: str) -> list[str]:
    return sorted({t.upper() for t in targets if t and normalize_ext(t) != source})


def target_formats(source_ext: str) -> list[str]:
    """Sorted uppercase targets available for a source extension. Empty when unsupported."""
    source = normalize_ext(source_ext)
    if not source:
        return []
    upper = source.upper()

    for family, extras in _FAMILY_EXTRAS:
        if upper in family:
            return _finish(family + extras, source)

    if source == "pdf":
        return ["TXT"]

    for family in _OFFICE_FAMILIES:
        if upper in family:
            return _finish(family + ("PDF",), source)

    return []


def is_supported_target(source_ext: str, target_ext: str) -> bool:
    return normalize_ext(target_ext).upper() in target_formats(source_ext)
