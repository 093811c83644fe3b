"""
Upload store for original media files.
"""
import os
import re
import uuid
import logging
from datetime import datetime, timezone

from .errors import (
    ValidationError,
    UnsupportedMediaError,
    FileTooLargeError,
)

logger = logging.getLogger(__name__)

# Matched against the MIME type; extensions must be listed exactly below
ALLOWED_TYPES = re.compile(r'jpeg|jpg|png|webp|mp4|avi|mkv|mov|webm')

# Registered MIME types whose names do not contain their extension
EXTRA_MIME_TYPES = ('video/quicktime', 'video/x-matroska', 'video/x-msvideo')

IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.webp')
VIDEO_EXTENSIONS = ('.mp4', '.avi', '.mkv', '.mov', '.webm')


def media_type(filename):
    """'image', 'video' or None, from the file extension."""
    ext = os.path.splitext(filename)[1].lower()
    if ext in IMAGE_EXTENSIONS:
        return 'image'
    if ext in VIDEO_EXTENSIONS:
        return 'video'
    return None


def safe_name(filename):
    """
    Reject anything that is not a bare file name.

    Raises:
        ValidationError: for empty names or names with path components
    """
    if not filename or not isinstance(filename, str):
        raise ValidationError("Filename is required", error_code="FILENAME_REQUIRED")
    if (os.path.basename(filename) != filename or filename in ('.', '..')
            or '\\' in filename or '\x00' in filename):
        raise ValidationError(f"Invalid filename: {filename}", error_code="INVALID_FILENAME",
                              details={"filename": filename})
    return filename


class UploadStore:
    """
    Validates and stores uploaded files under unique names.
    """

    def __init__(self, directory, max_size):
        self.directory = directory
        self.max_size = max_size
        os.makedirs(self.directory, exist_ok=True)

    def validate(self, name, content_type, size):
        """
        Raises:
            UnsupportedMediaError: extension or MIME type outside the allow-list
            FileTooLargeError: size above the ceiling
        """
        ext = os.path.splitext(name or '')[1].lower()
        content_type = (content_type or '').lower()
        mime_ok = ALLOWED_TYPES.search(content_type) or content_type in EXTRA_MIME_TYPES
        if ext not in IMAGE_EXTENSIONS + VIDEO_EXTENSIONS or not mime_ok:
            raise UnsupportedMediaError(name, content_type)
        if size > self.max_size:
            raise FileTooLargeError(size, self.max_size)

    def save(self, uploaded_file):
        """
        Validate and store a Django UploadedFile.

        Returns:
            dict: FileInfo for the stored file
        """
        original_name = os.path.basename(uploaded_file.name or '')
        self.validate(original_name, uploaded_file.content_type, uploaded_file.size)

        filename = f"{uuid.uuid4()}-{original_name}"
        path = os.path.join(self.directory, filename)

        with open(path, 'wb+') as dest:
            for chunk in uploaded_file.chunks():
                dest.write(chunk)

        logger.info(f"Stored upload {original_name!r} as {filename} ({uploaded_file.size} bytes)")

        return {
            "id": str(uuid.uuid4()),
            "filename": filename,
            "originalName": original_name,
            "mimetype": uploaded_file.content_type,
            "size": uploaded_file.size,
            "path": f"uploads/{filename}",
            "uploadedAt": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        }

    def path_for(self, filename):
        """Absolute path for a stored file name (validated, may not exist)."""
        return os.path.join(self.directory, safe_name(filename))
