"""
Error Handling System
Provides consistent error responses across upload, pipeline and download
"""
import logging

logger = logging.getLogger(__name__)


class EnhancerError(Exception):
    """Base exception for media enhancement errors"""
    status = 500

    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Request validation
class ValidationError(EnhancerError):
    """Missing or unusable input, rejected before any library call"""
    status = 400

    def __init__(self, message, error_code="VALIDATION_FAILED", details=None):
        super().__init__(message, error_code, details)


class MissingFileReferenceError(ValidationError):
    """No source file named in the request"""
    def __init__(self):
        super().__init__(
            message="Filename is required",
            error_code="FILENAME_REQUIRED",
            details={
                "suggestion": "Upload a file first and pass the returned filename"
            }
        )


class SourceNotFoundError(ValidationError):
    """Source file reference does not exist in the upload store"""
    def __init__(self, filename):
        super().__init__(
            message=f"Uploaded file not found: {filename}",
            error_code="SOURCE_NOT_FOUND",
            details={"filename": filename}
        )


class UnreadableImageError(ValidationError):
    """Source exists but could not be decoded as an image"""
    def __init__(self, filename):
        super().__init__(
            message=f"Could not read image file: {filename}",
            error_code="INVALID_IMAGE",
            details={"filename": filename}
        )


class DegenerateImageError(ValidationError):
    """Source image has a zero dimension"""
    def __init__(self, width, height):
        super().__init__(
            message=f"Image has degenerate dimensions {width}x{height}",
            error_code="DEGENERATE_IMAGE",
            details={"width": width, "height": height}
        )


# Upload errors
class UnsupportedMediaError(EnhancerError):
    """File type outside the upload allow-list"""
    status = 415

    def __init__(self, filename, content_type):
        super().__init__(
            message="Invalid file type",
            error_code="UNSUPPORTED_MEDIA",
            details={
                "filename": filename,
                "content_type": content_type,
                "suggestion": "Upload a JPEG, PNG or WebP image, or an MP4, AVI, MKV, MOV or WebM video"
            }
        )


class FileTooLargeError(EnhancerError):
    """Upload exceeds the size ceiling"""
    status = 413

    def __init__(self, size, limit):
        super().__init__(
            message=f"File is too large ({size} bytes)",
            error_code="FILE_TOO_LARGE",
            details={"size": size, "limit": limit}
        )


# Pipeline errors
class ProcessingError(EnhancerError):
    """Failure inside the resize or filter stage"""
    status = 500

    def __init__(self, message, error_code="PROCESSING_FAILED", details=None):
        super().__init__(message, error_code, details)


class ProcessingTimeoutError(ProcessingError):
    """Run exceeded its deadline"""
    def __init__(self, timeout):
        super().__init__(
            message=f"Processing timed out after {timeout:g}s",
            error_code="PROCESSING_TIMEOUT",
            details={"timeout": timeout}
        )


class ProcessingCancelledError(ProcessingError):
    """Run was cancelled because its observer went away"""
    def __init__(self):
        super().__init__(
            message="Processing cancelled",
            error_code="PROCESSING_CANCELLED",
            details={
                "suggestion": "Keep the progress connection open until processing completes"
            }
        )


# Download errors
class NotFoundError(EnhancerError):
    """Requested output file does not exist"""
    status = 404

    def __init__(self, filename):
        super().__init__(
            message="File not found",
            error_code="FILE_NOT_FOUND",
            details={"filename": filename}
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.info(log_message)

    if isinstance(error, EnhancerError):
        # Known error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }


def error_status(error):
    """HTTP status for an error returned by handle_error"""
    if isinstance(error, EnhancerError):
        return error.status
    return 500
