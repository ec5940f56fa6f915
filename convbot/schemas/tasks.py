"""
Task records kept in the task store.
Conversion options are a closed tagged union; everything else is a typed field.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


class TaskState(str, Enum):
    AWAITING_FORMAT = "awaiting_format"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class BatchMode(str, Enum):
    NONE = ""
    ALL = "all"
    SEPARATE = "separate"


class TaskStateError(Exception):
    """Illegal task state transition."""


class ResizeOptions(BaseModel):
    kind: Literal["resize"] = "resize"
    max_side: int | None = Field(default=None, gt=0)
    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)
    quality: int | None = Field(default=None, ge=1, le=100)

    @model_validator(mode="after")
    def _check_dimensions(self) -> "ResizeOptions":
        if self.max_side is None and (self.width is None or self.height is None):
            raise ValueError("resize needs max_side or both width and height")
        return self


class CompressOptions(BaseModel):
    kind: Literal["compress"] = "compress"
    quality: int = Field(ge=1, le=100)


class VideoResizeOptions(BaseModel):
    kind: Literal["video_resize"] = "video_resize"
    height: int = Field(gt=0)


class VideoCompressOptions(BaseModel):
    kind: Literal["video_compress"] = "video_compress"
    crf: int = Field(ge=0, le=51)


class VideoGifOptions(BaseModel):
    """Animated GIF cut from a video; the target is always gif."""
    kind: Literal["video_gif"] = "video_gif"
    height: int = Field(gt=0)


# Options that only make sense for a video source
VIDEO_OPTIONS = (VideoResizeOptions, VideoCompressOptions, VideoGifOptions)


# Preset name -> fixed output parameters
IMAGE_PRESETS: dict[str, dict] = {
    "avito": {"target": "jpg", "max_side": 1600, "quality": 85},
    "instagram_feed": {"target": "jpg", "width": 1080, "height": 1080, "quality": 85},
    "instagram_story": {"target": "jpg", "width": 1080, "height": 1920, "quality": 85},
    "vk_square": {"target": "jpg", "width": 1080, "height": 1080, "quality": 85},
}
VIDEO_PRESETS: dict[str, dict] = {
    "tiktok": {"target": "mp4", "width": 1080, "height": 1920, "crf": 28},
    "reels": {"target": "mp4", "width": 1080, "height": 1920, "crf": 28},
    "shorts": {"target": "mp4", "width": 1080, "height": 1920, "crf": 28},
    "vk_clips": {"target": "mp4", "width": 1080, "height": 1920, "crf": 28},
    "youtube_1080p": {"target": "mp4", "width": 1920, "height": 1080, "crf": 28},
}


class ProfileOptions(BaseModel):
    kind: Literal["profile"] = "profile"
    preset: str

    @model_validator(mode="after")
    def _known_preset(self) -> "ProfileOptions":
        if self.preset not in IMAGE_PRESETS and self.preset not in VIDEO_PRESETS:
            raise ValueError(f"unknown profile preset: {self.preset}")
        return self

    @property
    def resolved(self) -> dict:
        return dict(IMAGE_PRESETS.get(self.preset) or VIDEO_PRESETS[self.preset])


ConversionOptions = Annotated[
    Union[
        ResizeOptions,
        CompressOptions,
        ProfileOptions,
        VideoResizeOptions,
        VideoCompressOptions,
        VideoGifOptions,
    ],
    Field(discriminator="kind"),
]


class BatchFile(BaseModel):
    file_id: str
    file_name: str = ""
    file_size: int = 0


class CollectionState(BaseModel):
    """Files accumulated by an open collector task."""
    key: str
    files: list[BatchFile] = Field(default_factory=list)
    expected: int = 0  # manual mode only


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Task(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    chat_id: str = ""
    state: TaskState = TaskState.AWAITING_FORMAT

    file_id: str = ""
    file_name: str = ""
    file_size: int = 0
    source_format: str = ""
    target_format: str = ""
    options: ConversionOptions | None = None

    locale: str = "en"
    priority: bool = False
    unlimited: bool = False
    heavy: bool | None = None  # None = decided by pricing at run time
    credits_remaining: int | None = None

    batch_parent_id: str = ""
    batch_files: list[BatchFile] = Field(default_factory=list)
    batch_mode: BatchMode = BatchMode.NONE
    collection: CollectionState | None = None
    # Status message kept up to date while the task waits for a format / a worker
    status_message_id: int | None = None

    result_ref: str = ""
    error: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_collector(self) -> bool:
        return self.collection is not None and not self.source_format

    @property
    def is_group(self) -> bool:
        return len(self.batch_files) > 1

    def start_processing(self, target_format: str, options: ConversionOptions | None = None) -> None:
        """awaiting_format -> processing. The target format is fixed from here on."""
        if self.state != TaskState.AWAITING_FORMAT or self.target_format:
            raise TaskStateError(f"task {self.id} already has target format {self.target_format or '?'}")
        target = target_format.strip().lstrip(".").lower()
        if not target:
            raise TaskStateError("target format is empty")
        self.target_format = target
        self.options = options
        self.state = TaskState.PROCESSING
        self.touch()

    def touch(self) -> None:
        self.updated_at = _utcnow()
