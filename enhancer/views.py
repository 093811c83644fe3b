"""
HTTP API for upload, processing, download and history.

Processing views are async: the pipeline hands its OpenCV work to worker
threads so one run never blocks another.
"""
import os
import json
import logging
from datetime import datetime, timezone

from django.conf import settings
from django.http import JsonResponse, FileResponse
from django.views.static import serve

from .apps import enhancer_app
from .errors import (
    EnhancerError,
    ValidationError,
    MissingFileReferenceError,
    NotFoundError,
    handle_error,
    error_status,
)
from .options import ProcessingOptions
from .progress import emitter_for
from .uploads import UploadStore, safe_name
from .pipeline import ImagePipeline
from .video import VideoPipeline

logger = logging.getLogger(__name__)

# Header carrying the progress socket's token
OBSERVER_HEADER = "X-Socket-Id"


# ============================================================================
# Helpers
# ============================================================================


def _now_iso():
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def _method_not_allowed(allowed):
    response = JsonResponse({"error": f"{allowed} only"}, status=405)
    response["Allow"] = allowed
    return response


def _error_response(error):
    return JsonResponse(handle_error(error), status=error_status(error))


def _upload_store():
    return UploadStore(settings.EZHD_UPLOAD_DIR, settings.EZHD_MAX_UPLOAD_SIZE)


def _image_pipeline():
    return ImagePipeline(
        upload_store=_upload_store(),
        processed_dir=settings.EZHD_PROCESSED_DIR,
        temp_dir=settings.EZHD_TEMP_DIR,
        history=enhancer_app().history,
        timeout=settings.EZHD_PIPELINE_TIMEOUT,
        intermediate_quality=settings.EZHD_INTERMEDIATE_QUALITY,
    )


def _video_pipeline():
    app = enhancer_app()
    return VideoPipeline(
        upload_store=_upload_store(),
        history=app.history,
        registry=app.video_jobs,
        step_delay=settings.EZHD_VIDEO_STEP_DELAY,
    )


def _process_request(request):
    """
    Parse a process request body.

    Returns:
        tuple: (filename, ProcessingOptions)

    Raises:
        ValidationError: malformed JSON, missing filename or bad options
    """
    try:
        body = json.loads(request.body or b"{}")
    except (ValueError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON", error_code="INVALID_JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", error_code="INVALID_JSON")

    filename = body.get("filename")
    if not filename:
        raise MissingFileReferenceError()
    safe_name(filename)

    if body.get("fileId"):
        logger.debug(f"Process request for file id {body['fileId']}")

    return filename, ProcessingOptions.from_dict(body.get("options"))


# ============================================================================
# Service info
# ============================================================================


def index(request):
    """Service banner with the endpoint map"""
    return JsonResponse({
        "message": "Ez-HD Backend Server is running!",
        "status": "OK",
        "timestamp": _now_iso(),
        "endpoints": {
            "upload": "/api/upload",
            "processImage": "/api/process-image",
            "processVideo": "/api/process-video",
            "download": "/api/download/:filename",
            "history": "/api/history",
            "health": "/api/health",
            "progress": "/ws/progress/",
        }
    })


def health(request):
    """Health check endpoint for load balancers"""
    return JsonResponse({"status": "OK", "timestamp": _now_iso()})


# ============================================================================
# Upload / download
# ============================================================================


def upload(request):
    """
    Store an uploaded photo or video.

    Request:
        multipart/form-data with a 'file' field

    Response:
        FileInfo: id, filename, originalName, mimetype, size, path, uploadedAt
    """
    if request.method != "POST":
        return _method_not_allowed("POST")

    uploaded_file = request.FILES.get("file")
    if uploaded_file is None:
        return _error_response(ValidationError("No file uploaded", error_code="NO_FILE"))

    try:
        file_info = _upload_store().save(uploaded_file)
    except EnhancerError as e:
        logger.info(f"Upload rejected: {uploaded_file.name!r}")
        return _error_response(e)

    return JsonResponse(file_info)


def download(request, filename):
    """Serve a processed file as an attachment"""
    if request.method != "GET":
        return _method_not_allowed("GET")

    try:
        path = os.path.join(settings.EZHD_PROCESSED_DIR, safe_name(filename))
    except ValidationError:
        return _error_response(NotFoundError(filename))

    if not os.path.isfile(path):
        return _error_response(NotFoundError(filename))

    logger.info(f"Download: {filename}")
    return FileResponse(open(path, "rb"), as_attachment=True, filename=filename)


def serve_upload(request, path):
    return serve(request, path, document_root=settings.EZHD_UPLOAD_DIR)


def serve_processed(request, path):
    return serve(request, path, document_root=settings.EZHD_PROCESSED_DIR)


# ============================================================================
# Processing
# ============================================================================


async def process_image(request):
    """
    Resize and filter an uploaded image.

    Request:
        JSON {"filename": ..., "options": {quality, brightness, contrast, sharpen}}
        Header X-Socket-Id: progress socket token (optional)

    Response:
        {"success": true, "processedFile": ..., "downloadUrl": ...}
    """
    if request.method != "POST":
        return _method_not_allowed("POST")

    try:
        filename, options = _process_request(request)
    except EnhancerError as e:
        return _error_response(e)

    emitter = emitter_for(request.headers.get(OBSERVER_HEADER))

    try:
        result = await _image_pipeline().run(filename, options, emitter)
    except Exception as e:
        return _error_response(e)

    return JsonResponse(result)


async def process_video(request):
    """
    Mocked video processing with timed progress events.

    Same request shape as process_image; frameRate and format are accepted
    in options.
    """
    if request.method != "POST":
        return _method_not_allowed("POST")

    try:
        filename, options = _process_request(request)
    except EnhancerError as e:
        return _error_response(e)

    token = request.headers.get(OBSERVER_HEADER)
    emitter = emitter_for(token)

    try:
        result = await _video_pipeline().run(filename, options, emitter, token=token)
    except Exception as e:
        return _error_response(e)

    return JsonResponse(result)


# ============================================================================
# History
# ============================================================================


def history(request):
    """Processing history, most recent first"""
    if request.method != "GET":
        return _method_not_allowed("GET")
    entries = enhancer_app().history.list()
    return JsonResponse([entry.to_dict() for entry in entries], safe=False)
