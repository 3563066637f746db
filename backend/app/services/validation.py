import re
from enum import Enum

MAX_FILENAME_LENGTH = 256
MAX_DOT_TOKENS = 10

_FILENAME_PATTERN = re.compile(r"[A-Za-z0-9_\-.]+")


class ImageType(str, Enum):
    JPG = "jpg"
    JPEG = "jpeg"
    PNG = "png"
    GIF = "gif"
    WEBP = "webp"

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self]


CONTENT_TYPES: dict[ImageType, str] = {
    ImageType.JPG: "image/jpeg",
    ImageType.JPEG: "image/jpeg",
    ImageType.PNG: "image/png",
    ImageType.GIF: "image/gif",
    ImageType.WEBP: "image/webp",
}

_BY_SUFFIX: dict[str, ImageType] = {f".{image_type.value}": image_type for image_type in ImageType}


def validate_filename(filename: str) -> bool:
    """Return True when ``filename`` is safe to use as an object key."""
    if not filename or len(filename) > MAX_FILENAME_LENGTH:
        return False
    if ".." in filename:
        return False
    if _FILENAME_PATTERN.fullmatch(filename) is None:
        return False
    return len(filename.split(".")) <= MAX_DOT_TOKENS


def classify_extension(filename: str) -> ImageType | None:
    """Map the suffix starting at the last dot to an allowed image type.

    A name without a dot yields the whole name as its suffix, which never
    matches the table.
    """
    dot = filename.rfind(".")
    suffix = filename[dot:] if dot >= 0 else filename
    return _BY_SUFFIX.get(suffix.lower())
