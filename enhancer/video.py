"""
Mocked video pipeline.

No transcoding happens here: a run walks through timed progress steps,
records history and returns where the output would be. Runs are tracked
per observer token so a closed progress socket cancels its pending steps.
"""
import os
import asyncio
import logging
import threading
import weakref
from collections import defaultdict

from .errors import ValidationError, SourceNotFoundError, ProcessingCancelledError
from .history import HistoryEntry
from .progress import NullEmitter
from .uploads import media_type
from .pipeline.coordinator import download_url

logger = logging.getLogger(__name__)

VIDEO_STEPS = [
    (25, "Analyzing video stream..."),
    (50, "Upscaling video frames..."),
    (75, "Encoding final video..."),
    (100, "Video processing complete!"),
]

MOCK_NOTE = ("Video processing is mocked in this demo. "
             "In production, FFmpeg would handle video processing.")


class VideoJobRegistry:
    """Running video tasks keyed by observer token."""

    def __init__(self):
        self._jobs = defaultdict(set)
        self._cancelled = weakref.WeakSet()
        self._lock = threading.Lock()

    def add(self, token, task):
        with self._lock:
            self._jobs[token].add(task)
        task.add_done_callback(lambda t: self._remove(token, t))

    def _remove(self, token, task):
        with self._lock:
            tasks = self._jobs.get(token)
            if tasks is None:
                return
            tasks.discard(task)
            if not tasks:
                del self._jobs[token]

    def cancel(self, token):
        """Cancel every pending job for ``token``; returns how many were cancelled."""
        with self._lock:
            tasks = list(self._jobs.get(token, ()))
        cancelled = 0
        for task in tasks:
            if task.cancel():
                self._cancelled.add(task)
                cancelled += 1
        if cancelled:
            logger.info(f"[Video] Cancelled {cancelled} job(s) for observer {token}")
        return cancelled

    def was_cancelled(self, task):
        """True if ``task`` was cancelled through cancel()."""
        return task in self._cancelled

    def pending(self, token):
        with self._lock:
            return len(self._jobs.get(token, ()))


class VideoPipeline:
    """Same run contract as ImagePipeline, with timed mock steps."""

    def __init__(self, upload_store, history, registry, step_delay=1.0):
        self.uploads = upload_store
        self.history = history
        self.registry = registry
        self.step_delay = step_delay

    def validate(self, filename):
        source_path = self.uploads.path_for(filename)
        if media_type(filename) != 'video':
            raise ValidationError(
                f"Not a video file: {filename}",
                error_code="NOT_A_VIDEO",
                details={"filename": filename}
            )
        if not os.path.isfile(source_path):
            raise SourceNotFoundError(filename)

    async def run(self, filename, options, emitter=None, token=None):
        """
        Raises:
            ValidationError: bad or missing source
            ProcessingCancelledError: the observer disconnected mid-run
        """
        emitter = emitter or NullEmitter()
        try:
            self.validate(filename)
        except ValidationError as e:
            await emitter.fail(e.message)
            raise

        task = asyncio.ensure_future(self._steps(filename, options, emitter))
        if token:
            self.registry.add(token, task)

        try:
            return await task
        except asyncio.CancelledError:
            if not self.registry.was_cancelled(task):
                # The request itself was cancelled, not the job
                task.cancel()
                raise
            logger.info(f"[Video] Run for {filename!r} cancelled")
            raise ProcessingCancelledError()

    async def _steps(self, filename, options, emitter):
        logger.info(f"[Video] Mock run for {filename!r} ({options.quality}, {options.frame_rate}, {options.format})")
        await emitter.emit(0, "Starting video processing...")

        for progress, stage in VIDEO_STEPS:
            await asyncio.sleep(self.step_delay)
            await emitter.emit(progress, stage)

        processed_file = f"processed-{filename}"
        self.history.record(HistoryEntry(
            original_file=filename,
            processed_file=processed_file,
            options=options.to_dict(),
            type='video',
        ))
        logger.info(f"[Video] Mock run complete -> {processed_file}")

        return {
            "success": True,
            "processedFile": processed_file,
            "downloadUrl": download_url(processed_file),
            "note": MOCK_NOTE,
        }
