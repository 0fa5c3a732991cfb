"""Where media files live on disk and which URL to fetch them from.

Files are stored as ``<media_root>/<key[:2]>/<media_key>.<ext>``. The
extension comes from the Content-Type when known, else from the URL, else
falls back to ``UNKNOWN_EXTENSION``.
"""

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

from .models import Media

UNKNOWN_EXTENSION = "bin"

_CONTENT_TYPE_EXTENSIONS = (
    ("jpeg", "jpg"),
    ("png", "png"),
    ("gif", "gif"),
    ("mp4", "mp4"),
    ("webm", "webm"),
)


@dataclass(frozen=True)
class MediaTarget:
    url: str | None
    local_path: Path


def ext_from_content_type(content_type: str | None) -> str | None:
    if not content_type:
        return None
    for needle, ext in _CONTENT_TYPE_EXTENSIONS:
        if needle in content_type:
            return ext
    return None


def ext_from_url(url: str | None) -> str | None:
    if not url:
        return None
    suffix = PurePosixPath(urlparse(url).path).suffix
    return suffix.lstrip(".").lower() or None


def build_media_local_path(media_root: Path, media_key: str, ext: str) -> Path:
    return media_root / media_key[:2] / f"{media_key}.{ext}"


def resolve_media_target(media_root: Path, media: Media) -> MediaTarget:
    """Pick the download URL and local path for a media item.

    Videos and GIFs use their highest bit-rate variant; photos use ``url``;
    anything else falls back to the preview image.
    """
    variant = media.best_variant()
    variant_url = variant.url if variant else None
    variant_type = variant.content_type if variant else None

    url = variant_url or media.url or media.preview_image_url
    ext = (
        ext_from_content_type(variant_type)
        or ext_from_url(url)
        or UNKNOWN_EXTENSION
    )
    return MediaTarget(
        url=url,
        local_path=build_media_local_path(media_root, media.media_key, ext),
    )
