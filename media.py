"""
Media store: uploaded images on the local filesystem.

Blobs live under UPLOAD_DIR/<category>/<filename> and are referenced from
records by their key "<category>/<filename>". Nothing collects unreferenced
blobs, so whoever replaces or deletes a record deletes its blob too.
"""
import logging
import os
import secrets
import tempfile
import threading
import time
from dataclasses import dataclass
from typing import Optional

from errors import UpstreamFailure
from validation import ALLOWED_IMAGE_TYPES, validate_image

logger = logging.getLogger(__name__)

CATEGORIES = ("recipes", "about")


@dataclass
class IncomingFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    def validate(self):
        return validate_image(self.content_type, self.size)


@dataclass
class StoredMedia:
    key: str
    filename: str
    url: str


class MediaStore:
    def __init__(self, root: str, base_url: str = "/media"):
        self.root = os.path.abspath(root)
        self.base_url = base_url.rstrip("/")
        self._lock = threading.Lock()
        self._last_stamp = 0

    def _next_stamp(self) -> int:
        # Strictly increasing even when two uploads land in the same millisecond
        with self._lock:
            stamp = max(int(time.time() * 1000), self._last_stamp + 1)
            self._last_stamp = stamp
            return stamp

    def generate_filename(self, content_type: str) -> str:
        extension = ALLOWED_IMAGE_TYPES.get((content_type or "").lower(), ".bin")
        return f"{self._next_stamp()}-{secrets.token_hex(4)}{extension}"

    def url_for(self, key: Optional[str]) -> Optional[str]:
        if not key:
            return None
        return f"{self.base_url}/{key}"

    def resolve(self, category: str, filename: str) -> Optional[str]:
        """Absolute path of a stored blob, or None when it is outside the store."""
        if category not in CATEGORIES or not filename or os.path.basename(filename) != filename:
            return None
        path = os.path.abspath(os.path.join(self.root, category, filename))
        if not path.startswith(os.path.join(self.root, category) + os.sep):
            return None
        return path

    def store(self, file: IncomingFile, category: str) -> StoredMedia:
        if category not in CATEGORIES:
            raise ValueError(f"Unknown media category: {category}")

        directory = os.path.join(self.root, category)
        filename = self.generate_filename(file.content_type)
        destination = os.path.join(directory, filename)
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(file.data)
                os.replace(tmp_path, destination)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            raise UpstreamFailure(f"Could not store {file.filename!r} as {destination}: {e}")

        key = f"{category}/{filename}"
        logger.info(f"Stored media {key} ({file.size} bytes)")
        return StoredMedia(key=key, filename=filename, url=self.url_for(key))

    def _key_from(self, reference: str) -> Optional[str]:
        reference = reference.strip()
        if reference.startswith(self.base_url + "/"):
            reference = reference[len(self.base_url) + 1:]
        parts = reference.strip("/").split("/")
        if len(parts) == 2 and parts[0] in CATEGORIES:
            return "/".join(parts)
        if len(parts) == 1:
            # A bare filename from older records: look in every category
            for category in CATEGORIES:
                if os.path.exists(os.path.join(self.root, category, parts[0])):
                    return f"{category}/{parts[0]}"
        return None

    def delete(self, reference: Optional[str]) -> bool:
        """Delete a blob by key, bare filename or URL. Missing blobs are only logged."""
        if not reference:
            return False
        key = self._key_from(reference)
        path = self.resolve(*key.split("/", 1)) if key else None
        if not path or not os.path.exists(path):
            logger.warning(f"Media {reference!r} not found, nothing to delete")
            return False
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.warning(f"Media {reference!r} disappeared before delete")
            return False
        except OSError as e:
            raise UpstreamFailure(f"Could not delete media {key}: {e}")
        logger.info(f"Deleted media {key}")
        return True
