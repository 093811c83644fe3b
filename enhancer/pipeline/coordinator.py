"""
Image Enhancement Pipeline
Thin coordinator for one image run:

    validate -> resolve dimensions -> resize -> filter -> publish -> record

Library work is handed to worker threads so the event loop keeps serving
other runs while one waits on OpenCV.
"""
import os
import time
import uuid
import shutil
import asyncio
import logging
import threading

import cv2
from asgiref.sync import sync_to_async

from ..errors import (
    EnhancerError,
    ValidationError,
    SourceNotFoundError,
    UnreadableImageError,
    DegenerateImageError,
    ProcessingError,
    ProcessingTimeoutError,
    ProcessingCancelledError,
)
from ..history import HistoryEntry
from ..progress import NullEmitter
from ..uploads import media_type
from .quality import resolve
from .resize import ResizeStage, ResizeConfig
from .filters import FilterStage

logger = logging.getLogger(__name__)

# Fixed checkpoints reported to the observer
STAGE_START = (0, "Starting image processing...")
STAGE_RESIZE = (20, "Resizing image...")
STAGE_FILTER = (60, "Applying filters...")
STAGE_COMPLETE = (100, "Processing complete!")


def download_url(filename):
    return f"/api/download/{filename}"


class StageGuard:
    """
    Cleanup for one stage call running in a worker thread.

    A thread that outlives its run cannot be stopped. Once the run stops
    waiting on it, whatever files the thread writes afterwards are removed
    by the thread itself when the stage returns.
    """

    def __init__(self, *paths):
        self.paths = paths
        self._lock = threading.Lock()
        self._finished = False
        self._abandoned = False

    def wrap(self, func):
        def guarded(*args):
            try:
                return func(*args)
            finally:
                with self._lock:
                    self._finished = True
                    abandoned = self._abandoned
                if abandoned:
                    self.release()
        return guarded

    def abandon(self):
        """The run gave up on this call; clean up now or when the thread ends."""
        with self._lock:
            self._abandoned = True
            finished = self._finished
        if finished:
            self.release()

    def release(self):
        for path in self.paths:
            ImagePipeline._discard(path)


class ImagePipeline:
    """
    Coordinates one image run across the pipeline stages.

    Stateless apart from the injected history store; every run gets its own
    id, intermediate file and output name.
    """

    def __init__(self, upload_store, processed_dir, temp_dir, history,
                 timeout=120.0, intermediate_quality=95,
                 resize_stage=None, filter_stage=None):
        self.uploads = upload_store
        self.processed_dir = processed_dir
        self.temp_dir = temp_dir
        self.history = history
        self.timeout = timeout

        self.resize_stage = resize_stage or ResizeStage(ResizeConfig(jpeg_quality=intermediate_quality))
        self.filter_stage = filter_stage or FilterStage()

        os.makedirs(self.processed_dir, exist_ok=True)
        os.makedirs(self.temp_dir, exist_ok=True)

    def load_source(self, filename):
        """
        Read and check the source image.

        Raises:
            ValidationError: bad reference, missing file, not an image,
                unreadable or zero-dimension image
        """
        source_path = self.uploads.path_for(filename)
        if not os.path.isfile(source_path):
            raise SourceNotFoundError(filename)
        if media_type(filename) != 'image':
            raise ValidationError(
                f"Not an image file: {filename}",
                error_code="NOT_AN_IMAGE",
                details={"filename": filename}
            )

        try:
            image = cv2.imread(source_path, cv2.IMREAD_COLOR)
        except cv2.error:
            image = None
        if image is None:
            raise UnreadableImageError(filename)

        h, w = image.shape[:2]
        if w == 0 or h == 0:
            raise DegenerateImageError(w, h)
        return image

    async def run(self, filename, options, emitter=None):
        """
        Execute one image run.

        Args:
            filename: Stored upload name
            options: ProcessingOptions
            emitter: ProgressEmitter for the caller's observer

        Returns:
            dict: success response with the output reference

        Raises:
            ValidationError: input rejected before processing started
            ProcessingError: failure inside the resize or filter stage
        """
        emitter = emitter or NullEmitter()
        run_id = uuid.uuid4().hex
        tag = f"[Pipeline {run_id[:8]}]"

        logger.info("=" * 60)
        logger.info(f"{tag} Image run for {filename!r} ({options.quality})")

        try:
            source = await sync_to_async(self.load_source, thread_sensitive=False)(filename)
        except EnhancerError as e:
            logger.info(f"{tag} Rejected: {e.message}")
            await emitter.fail(e.message)
            raise

        source_h, source_w = source.shape[:2]
        deadline = asyncio.get_running_loop().time() + self.timeout

        output_filename = f"processed-{int(time.time() * 1000)}-{run_id[:8]}-{filename}"
        output_path = os.path.join(self.processed_dir, output_filename)
        ext = os.path.splitext(filename)[1].lower()
        intermediate_path = os.path.join(self.temp_dir, f"ezhd-{run_id}.jpg")
        staged_output_path = os.path.join(self.temp_dir, f"ezhd-{run_id}-out{ext}")

        leftovers = (intermediate_path, staged_output_path)

        try:
            await emitter.emit(*STAGE_START)
            target = resolve(options.quality, source_w, source_h)
            logger.info(f"{tag} Target {target.width}x{target.height} from {source_w}x{source_h}")

            await emitter.emit(*STAGE_RESIZE)
            await self._call(deadline, leftovers, self.resize_stage.run, source, target, intermediate_path)

            await emitter.emit(*STAGE_FILTER)
            await self._call(deadline, leftovers, self.filter_stage.run, intermediate_path, options, staged_output_path)

            # Publish only complete outputs
            shutil.move(staged_output_path, output_path)

        except asyncio.CancelledError:
            logger.warning(f"{tag} Cancelled")
            self._discard(staged_output_path)
            self._discard(output_path)
            await emitter.fail(ProcessingCancelledError().message)
            raise

        except Exception as e:
            self._discard(staged_output_path)
            self._discard(output_path)

            if isinstance(e, ProcessingError):
                error = e
            else:
                error = ProcessingError(
                    f"Image processing failed: {e}",
                    details={"error_type": type(e).__name__}
                )
                error.__cause__ = e
            logger.error(f"{tag} Failed: {error.message}")
            logger.info("=" * 60)
            await emitter.fail(error.message)
            raise error

        finally:
            self._discard(intermediate_path)

        await emitter.emit(*STAGE_COMPLETE)

        self.history.record(HistoryEntry(
            original_file=filename,
            processed_file=output_filename,
            options=options.to_dict(),
            type='image',
        ))

        logger.info(f"{tag} Success! -> {output_filename}")
        logger.info("=" * 60)

        return {
            "success": True,
            "processedFile": output_filename,
            "downloadUrl": download_url(output_filename),
        }

    async def _call(self, deadline, leftovers, func, *args):
        """
        Run a blocking stage in a worker thread within the run's deadline.

        If the run stops waiting (timeout or cancellation), ``leftovers`` are
        removed once the thread finishes.
        """
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise ProcessingTimeoutError(self.timeout)

        guard = StageGuard(*leftovers)
        try:
            return await asyncio.wait_for(
                sync_to_async(guard.wrap(func), thread_sensitive=False)(*args),
                timeout=remaining
            )
        except asyncio.TimeoutError:
            guard.abandon()
            raise ProcessingTimeoutError(self.timeout)
        except asyncio.CancelledError:
            guard.abandon()
            raise

    @staticmethod
    def _discard(path):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")
