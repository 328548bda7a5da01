"""
Local media host.

Uploaded videos and thumbnails are written under UPLOAD_DIR/<kind>/ and
served back through the /static mount. Video durations are read with
ffprobe when it is installed.
"""
import json
import logging
import os
import subprocess
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import UploadFile

import config
from errors import UpstreamError

logger = logging.getLogger(__name__)

VIDEOS = "videos"
THUMBNAILS = "thumbnails"

DEFAULT_EXTENSIONS = {VIDEOS: ".mp4", THUMBNAILS: ".jpg"}


def read_duration(path: str, timeout: float = config.FFPROBE_TIMEOUT) -> float:
    """Return the media duration in seconds, or 0.0 when it cannot be read."""
    cmd = ["ffprobe", "-v", "quiet", "-print_format", "json", "-show_format", path]
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=timeout, check=False)
    except FileNotFoundError:
        logger.warning("ffprobe not installed; storing duration 0")
        return 0.0
    except subprocess.TimeoutExpired:
        logger.warning(f"ffprobe timed out for {os.path.basename(path)} after {timeout}s")
        return 0.0

    if result.returncode != 0:
        logger.warning(f"ffprobe failed for {os.path.basename(path)} (exit code {result.returncode})")
        return 0.0
    try:
        data = json.loads(result.stdout.decode("utf-8", errors="ignore"))
        return max(float(data.get("format", {}).get("duration", 0.0)), 0.0)
    except (json.JSONDecodeError, ValueError, TypeError) as e:
        logger.warning(f"Failed to parse duration from {os.path.basename(path)}: {e}")
        return 0.0


class MediaStore:
    def __init__(self, root: Optional[str] = None, url_prefix: Optional[str] = None):
        self.root = root or config.UPLOAD_DIR
        self.url_prefix = (url_prefix or config.STATIC_URL_PREFIX).rstrip("/")
        for kind in (VIDEOS, THUMBNAILS):
            os.makedirs(os.path.join(self.root, kind), exist_ok=True)

    def url_for(self, kind: str, filename: str) -> str:
        return f"{self.url_prefix}/{kind}/{filename}"

    def path_for_url(self, url: str) -> Optional[str]:
        prefix = self.url_prefix + "/"
        if not url or not url.startswith(prefix):
            return None
        relative = url[len(prefix):]
        path = os.path.normpath(os.path.join(self.root, relative))
        # Never resolve outside the upload root
        if os.path.commonpath([os.path.abspath(self.root), os.path.abspath(path)]) != os.path.abspath(self.root):
            return None
        return path

    async def save(self, upload: UploadFile, kind: str) -> Dict[str, Any]:
        """Store an upload and return its public url, local path and duration."""
        ext = os.path.splitext(upload.filename or "")[1] or DEFAULT_EXTENSIONS[kind]
        filename = f"{ObjectId()}{ext}"
        path = os.path.join(self.root, kind, filename)
        try:
            with open(path, "wb") as f:
                f.write(await upload.read())
        except OSError as e:
            logger.exception(f"Failed to store {kind} upload: {e}")
            raise UpstreamError(f"Failed to upload {kind[:-1]}")

        duration = read_duration(path) if kind == VIDEOS else 0.0
        logger.info(f"Stored {kind[:-1]} {filename}")
        return {"url": self.url_for(kind, filename), "path": path, "duration": duration}

    def delete(self, url: str) -> bool:
        """Remove a stored file by its public url. Returns False if it was not ours or already gone."""
        path = self.path_for_url(url)
        if path is None or not os.path.exists(path):
            return False
        try:
            os.remove(path)
        except OSError as e:
            logger.exception(f"Failed to delete {url}: {e}")
            raise UpstreamError("Failed to delete media")
        logger.info(f"Deleted media {url}")
        return True
