"""
Asset Service - Single Responsibility: resolve asset references to local media.

Photos are inspected with Pillow (dimensions, capture date, GPS), videos with
ffprobe (duration) when it is installed.
"""
import asyncio
import json
import logging
import mimetypes
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from PIL import Image

from ..errors import MalformedPostError
from ..models import AssetInfo, MediaKind
from ..protocols import IAssetResolver

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {
    '.mp4', '.avi', '.mkv', '.mov', '.wmv', '.flv', '.webm', '.m4v',
    '.3gp', '.ogv', '.mts', '.m2ts', '.ts', '.mpeg', '.mpg',
}
IMAGE_EXTENSIONS = {
    '.jpg', '.jpeg', '.png', '.webp', '.gif', '.bmp', '.tiff', '.tif',
    '.heic', '.heif',
}

# EXIF tag ids
_EXIF_IFD = 0x8769
_GPS_IFD = 0x8825
_DATETIME = 306
_DATETIME_ORIGINAL = 36867
_EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"


def is_video(path) -> bool:
    return Path(path).suffix.lower() in VIDEO_EXTENSIONS


def is_image(path) -> bool:
    return Path(path).suffix.lower() in IMAGE_EXTENSIONS


def media_kind(path) -> Optional[MediaKind]:
    if is_video(path):
        return MediaKind.VIDEO
    if is_image(path):
        return MediaKind.PHOTO
    return None


def _gps_to_degrees(value, ref) -> Optional[float]:
    try:
        degrees, minutes, seconds = (float(v) for v in value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    result = degrees + minutes / 60 + seconds / 3600
    if ref in ("S", "W"):
        result = -result
    return round(result, 6)


def _read_photo_metadata(path: Path) -> Dict[str, Any]:
    """Width, height, capture time and location from a photo."""
    meta: Dict[str, Any] = {}
    with Image.open(path) as img:
        meta["width"], meta["height"] = img.size
        exif = img.getexif()
        raw_date = exif.get_ifd(_EXIF_IFD).get(_DATETIME_ORIGINAL) or exif.get(_DATETIME)
        if raw_date:
            try:
                meta["captured_at"] = datetime.strptime(str(raw_date).strip("\x00 "), _EXIF_DATE_FORMAT)
            except ValueError:
                logger.debug(f"Unparseable EXIF date {raw_date!r} in {path.name}")
        gps = exif.get_ifd(_GPS_IFD)
        if gps:
            lat = _gps_to_degrees(gps.get(2), gps.get(1))
            lng = _gps_to_degrees(gps.get(4), gps.get(3))
            if lat is not None and lng is not None:
                meta["latitude"], meta["longitude"] = lat, lng
    return meta


def build_digest(asset: AssetInfo) -> Dict[str, Any]:
    """
    Metadata sent to the API when creating a post from an uploaded asset.

    Args:
        asset: Resolved asset

    Returns:
        Dict with contentType, fileSize and whatever capture metadata is known
    """
    digest: Dict[str, Any] = {
        "contentType": asset.content_type,
        "fileSize": asset.size,
        "is_video": asset.is_video,
    }
    if asset.captured_at:
        digest["captured_at"] = asset.captured_at.isoformat()
    if asset.latitude is not None and asset.longitude is not None:
        digest["lat"] = asset.latitude
        digest["lng"] = asset.longitude
    if asset.width and asset.height:
        digest["width"] = asset.width
        digest["height"] = asset.height
    if asset.duration:
        digest["duration"] = asset.duration
    return digest


class LocalAssetResolver(IAssetResolver):
    """
    Resolves asset references that are local file paths.

    Usage:
        resolver = LocalAssetResolver(root=Path("~/Pictures").expanduser())
        asset = await resolver.resolve("holiday/IMG_0001.jpg")
    """

    def __init__(self, root: Optional[Path] = None, ffprobe: str = "ffprobe"):
        self._root = Path(root) if root else None
        self._ffprobe = ffprobe

    def _path_for(self, asset_ref: str) -> Path:
        path = Path(asset_ref).expanduser()
        if self._root and not path.is_absolute():
            path = self._root / path
        return path

    async def resolve(self, asset_ref: str) -> AssetInfo:
        if not asset_ref:
            raise MalformedPostError("Empty asset reference")
        path = self._path_for(asset_ref)
        if not path.is_file():
            raise MalformedPostError(f"Asset not found: {asset_ref}")

        kind = media_kind(path)
        if kind is None:
            raise MalformedPostError(f"Unsupported asset type: {path.suffix or asset_ref}")

        size = path.stat().st_size
        content_type = mimetypes.guess_type(path.name)[0] or (
            "video/mp4" if kind == MediaKind.VIDEO else "image/jpeg"
        )

        extra: Dict[str, Any] = {}
        if kind == MediaKind.PHOTO:
            try:
                extra = await asyncio.to_thread(_read_photo_metadata, path)
            except (OSError, ValueError) as e:
                logger.debug(f"No photo metadata for {path.name}: {e}")
        else:
            duration, dims = await self._probe_video(path)
            extra["duration"] = duration
            if dims:
                extra["width"], extra["height"] = dims

        return AssetInfo(
            asset_id=str(asset_ref),
            kind=kind,
            size=size,
            path=path,
            content_type=content_type,
            **extra,
        )

    async def _probe_video(self, path: Path) -> Tuple[Optional[float], Optional[Tuple[int, int]]]:
        """Duration and dimensions via ffprobe; (None, None) if unavailable."""
        if not shutil.which(self._ffprobe):
            return None, None
        cmd = [
            self._ffprobe, "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "format=duration:stream=width,height",
            "-of", "json",
            path.as_posix(),
        ]
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            logger.debug(f"ffprobe failed for {path.name}: {stderr.decode('utf-8', errors='ignore').strip()}")
            return None, None
        try:
            data = json.loads(stdout or b"{}")
        except json.JSONDecodeError:
            return None, None

        duration = None
        raw_duration = data.get("format", {}).get("duration")
        if raw_duration:
            try:
                duration = float(raw_duration)
            except ValueError:
                duration = None

        dims = None
        streams = data.get("streams") or []
        if streams and streams[0].get("width") and streams[0].get("height"):
            dims = (int(streams[0]["width"]), int(streams[0]["height"]))
        return duration, dims
