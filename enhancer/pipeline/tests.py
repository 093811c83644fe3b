"""
Tests for the image enhancement pipeline stages and coordinator.
"""
import os
import asyncio
import time

import cv2
import numpy as np
import pytest
from asgiref.sync import async_to_sync

from enhancer.errors import (
    ValidationError,
    SourceNotFoundError,
    UnreadableImageError,
    DegenerateImageError,
    ProcessingError,
    ProcessingTimeoutError,
)
from enhancer.history import HistoryStore
from enhancer.options import ProcessingOptions
from enhancer.progress import ProgressEmitter
from enhancer.uploads import UploadStore
from enhancer.pipeline import (
    resolve,
    QUALITY_TIERS,
    ResizeStage,
    FilterStage,
    ImagePipeline,
    apply_filters,
)
from enhancer.pipeline.filters import adjust_brightness, adjust_contrast, sharpen


class RecordingEmitter(ProgressEmitter):
    """Keeps delivered events in order."""

    def __init__(self):
        super().__init__()
        self.events = []

    async def _deliver(self, event):
        self.events.append(event)

    @property
    def checkpoints(self):
        return [e['progress'] for e in self.events if e['type'] == 'process.progress']

    @property
    def errors(self):
        return [e['error'] for e in self.events if e['type'] == 'process.error']


@pytest.fixture
def history():
    return HistoryStore(limit=50)


@pytest.fixture
def pipeline(media_dirs, history):
    return ImagePipeline(
        upload_store=UploadStore(str(media_dirs['uploads']), 500 * 1024 * 1024),
        processed_dir=str(media_dirs['processed']),
        temp_dir=str(media_dirs['temp']),
        history=history,
        timeout=30,
    )


class FailingFilterStage:
    def run(self, intermediate_path, options, output_path):
        # Leave a partial file behind to check cleanup
        with open(output_path, 'wb') as f:
            f.write(b'partial')
        raise IOError("disk full")


class SlowFilterStage:
    def run(self, intermediate_path, options, output_path):
        time.sleep(0.5)
        with open(output_path, 'wb') as f:
            f.write(b'late')
        return output_path


class SlowResizeStage(ResizeStage):
    def run(self, image, target, intermediate_path):
        time.sleep(0.5)
        return super().run(image, target, intermediate_path)


class TestQualityResolver:
    """Test tier -> dimension resolution."""

    @pytest.mark.parametrize('tier', sorted(QUALITY_TIERS))
    @pytest.mark.parametrize('size', [
        (3000, 2000), (4000, 1000), (1080, 1920), (640, 480),
        (1920, 1080), (333, 777), (5000, 5000), (1, 1),
    ])
    def test_fit_keeps_aspect_and_touches_box(self, tier, size):
        """One side matches the box and the other is within rounding of the source aspect."""
        source_w, source_h = size
        box = QUALITY_TIERS[tier]
        aspect = source_w / source_h

        target = resolve(tier, source_w, source_h)

        assert target.width == box.width or target.height == box.height
        if target.width == box.width:
            assert abs(target.height - target.width / aspect) <= 0.5
        else:
            assert abs(target.width - target.height * aspect) <= 0.5

    def test_source_narrower_than_box_keeps_height(self):
        """3000x2000 is 1.5:1, narrower than 16:9, so height is held."""
        target = resolve('720p', 3000, 2000)
        assert (target.width, target.height) == (1080, 720)

    def test_source_wider_than_box_keeps_width(self):
        target = resolve('1080p', 4000, 1000)
        assert (target.width, target.height) == (1920, 480)

    def test_exact_box_ratio_yields_full_box(self):
        target = resolve('4K', 1920, 1080)
        assert (target.width, target.height) == (3840, 2160)

    def test_portrait_source(self):
        target = resolve('2K', 1080, 1920)
        assert target.height == 1440
        assert target.width == 810

    def test_unknown_tier_falls_back_to_1080p(self):
        assert resolve('8K', 1920, 1080) == resolve('1080p', 1920, 1080)
        assert resolve('', 1920, 1080) == (1920, 1080)

    def test_rounds_half_up(self):
        """33x32 at 720p: 720 * 1.03125 = 742.5 exactly."""
        assert resolve('720p', 33, 32) == (743, 720)

    @pytest.mark.parametrize('size', [(0, 100), (100, 0), (0, 0), (-5, 10)])
    def test_degenerate_source_rejected(self, size):
        with pytest.raises(DegenerateImageError):
            resolve('1080p', *size)


class TestFilters:
    """Test brightness, contrast and sharpen math."""

    def pixel(self, value):
        return np.full((4, 4, 3), value, dtype=np.uint8)

    def test_no_filters_returns_input_untouched(self, image_factory):
        image = image_factory(64, 48)
        before = image.copy()

        result = apply_filters(image, ProcessingOptions(brightness=0, contrast=0, sharpen=False))

        assert result is image
        assert np.array_equal(result, before)

    def test_brightness_up_moves_toward_white(self):
        assert adjust_brightness(self.pixel(100), 50)[0, 0, 0] == 177

    def test_brightness_down_scales_toward_black(self):
        assert adjust_brightness(self.pixel(100), -50)[0, 0, 0] == 50

    def test_contrast_up_stretches_from_mid_grey(self):
        assert adjust_contrast(self.pixel(100), 50)[0, 0, 0] == 46
        assert adjust_contrast(self.pixel(200), 50)[0, 0, 0] == 255
        assert adjust_contrast(self.pixel(127), 50)[0, 0, 0] == 127

    def test_brightness_applied_before_contrast(self):
        """20 -> brightness(50) = 137 -> contrast(50) = 157; the reverse order gives 127."""
        result = apply_filters(self.pixel(20), ProcessingOptions(brightness=50, contrast=50))
        assert result[0, 0, 0] == 157

    def test_sharpen_leaves_flat_regions_alone(self):
        flat = self.pixel(90)
        assert np.array_equal(sharpen(flat), flat)

    def test_sharpen_kernel(self):
        image = np.zeros((5, 5, 3), dtype=np.uint8)
        image[2, 2] = 40

        result = sharpen(image)

        assert result[2, 2, 0] == 200
        assert result[1, 2, 0] == 0  # -40 saturates at 0
        assert result[0, 0, 0] == 0

    def test_filters_do_not_mutate_input(self, image_factory):
        image = image_factory(32, 32)
        before = image.copy()
        apply_filters(image, ProcessingOptions(brightness=30, contrast=-20, sharpen=True))
        assert np.array_equal(image, before)

    def test_stage_copies_intermediate_when_nothing_to_apply(self, tmp_path, image_factory):
        intermediate = tmp_path / 'intermediate.jpg'
        cv2.imwrite(str(intermediate), image_factory(40, 30))
        output = tmp_path / 'out.jpg'

        FilterStage().run(str(intermediate), ProcessingOptions(), str(output))

        assert output.read_bytes() == intermediate.read_bytes()

    def test_stage_writes_requested_format(self, tmp_path, image_factory):
        intermediate = tmp_path / 'intermediate.jpg'
        cv2.imwrite(str(intermediate), image_factory(40, 30))
        output = tmp_path / 'out.png'

        FilterStage().run(str(intermediate), ProcessingOptions(sharpen=True), str(output))

        written = cv2.imread(str(output))
        assert written.shape == (30, 40, 3)

    def test_stage_unreadable_intermediate(self, tmp_path):
        broken = tmp_path / 'broken.jpg'
        broken.write_bytes(b'not an image')
        with pytest.raises(IOError):
            FilterStage().run(str(broken), ProcessingOptions(sharpen=True), str(tmp_path / 'out.jpg'))


class TestResizeStage:
    """Test resampling to target dimensions."""

    def test_resize_fills_target_exactly(self, image_factory):
        target = resolve('720p', 600, 400)
        result = ResizeStage().resize(image_factory(600, 400), target)
        assert result.shape == (target.height, target.width, 3)

    def test_resize_does_not_touch_source(self, image_factory):
        source = image_factory(600, 400)
        before = source.copy()
        ResizeStage().resize(source, resolve('1080p', 600, 400))
        assert np.array_equal(source, before)

    def test_run_writes_intermediate_jpeg(self, tmp_path, image_factory):
        path = str(tmp_path / 'intermediate.jpg')
        target = resolve('720p', 600, 400)

        ResizeStage().run(image_factory(600, 400), target, path)

        written = cv2.imread(path)
        assert written.shape[:2] == (target.height, target.width)


class TestImagePipeline:
    """Test the coordinator end to end."""

    def test_scenario_checkpoints_and_history(self, pipeline, history, sample_image, media_dirs, image_options):
        """4K with brightness, contrast and sharpen emits 0/20/60/100 then records one image entry."""
        emitter = RecordingEmitter()
        options = ProcessingOptions.from_dict(image_options)

        result = async_to_sync(pipeline.run)(sample_image, options, emitter)

        assert emitter.checkpoints == [0, 20, 60, 100]
        assert emitter.errors == []
        assert result['success'] is True
        assert result['downloadUrl'] == f"/api/download/{result['processedFile']}"

        output = cv2.imread(str(media_dirs['processed'] / result['processedFile']))
        assert output.shape[:2] == (2160, 3240)

        entries = history.list()
        assert len(entries) == 1
        assert entries[0].type == 'image'
        assert entries[0].original_file == sample_image
        assert entries[0].processed_file == result['processedFile']
        assert entries[0].options['quality'] == '4K'

    def test_source_is_never_modified(self, pipeline, sample_image, media_dirs):
        source_path = media_dirs['uploads'] / sample_image
        before = source_path.read_bytes()

        async_to_sync(pipeline.run)(sample_image, ProcessingOptions(sharpen=True))

        assert source_path.read_bytes() == before

    def test_intermediate_removed_after_success(self, pipeline, sample_image, media_dirs):
        async_to_sync(pipeline.run)(sample_image, ProcessingOptions())
        assert os.listdir(media_dirs['temp']) == []

    def test_png_output_keeps_format(self, pipeline, sample_png, media_dirs):
        result = async_to_sync(pipeline.run)(sample_png, ProcessingOptions(quality='720p'))

        assert result['processedFile'].endswith('.png')
        output = cv2.imread(str(media_dirs['processed'] / result['processedFile']))
        assert output.shape[:2] == (720, 720)

    def test_repeated_runs_get_distinct_entries(self, pipeline, history, sample_image):
        options = ProcessingOptions(quality='720p', brightness=10)

        first = async_to_sync(pipeline.run)(sample_image, options)
        second = async_to_sync(pipeline.run)(sample_image, options)

        newest, oldest = history.list()
        assert newest.id != oldest.id
        assert newest.processed_file == second['processedFile']
        assert oldest.processed_file == first['processedFile']
        assert first['processedFile'] != second['processedFile']
        assert newest.options == oldest.options

    def test_stage_failure_reports_error_and_cleans_up(self, media_dirs, history, sample_image):
        pipeline = ImagePipeline(
            upload_store=UploadStore(str(media_dirs['uploads']), 1024 * 1024),
            processed_dir=str(media_dirs['processed']),
            temp_dir=str(media_dirs['temp']),
            history=history,
            filter_stage=FailingFilterStage(),
        )
        emitter = RecordingEmitter()

        with pytest.raises(ProcessingError) as excinfo:
            async_to_sync(pipeline.run)(sample_image, ProcessingOptions(), emitter)

        assert 'disk full' in excinfo.value.message
        assert emitter.checkpoints == [0, 20, 60]
        assert len(emitter.errors) == 1
        assert os.listdir(media_dirs['temp']) == []
        assert os.listdir(media_dirs['processed']) == []
        assert len(history) == 0

    def slow_pipeline(self, media_dirs, history, timeout, **stages):
        return ImagePipeline(
            upload_store=UploadStore(str(media_dirs['uploads']), 1024 * 1024),
            processed_dir=str(media_dirs['processed']),
            temp_dir=str(media_dirs['temp']),
            history=history,
            timeout=timeout,
            **stages
        )

    def test_timeout_is_a_processing_error(self, media_dirs, history, sample_image):
        pipeline = self.slow_pipeline(media_dirs, history, 0.1, filter_stage=SlowFilterStage())
        emitter = RecordingEmitter()

        with pytest.raises(ProcessingTimeoutError):
            async_to_sync(pipeline.run)(sample_image, ProcessingOptions(), emitter)

        assert 100 not in emitter.checkpoints
        assert len(emitter.errors) == 1
        assert len(history) == 0

        # The stage thread finishes after the run gave up; its output must not linger
        time.sleep(1.0)
        assert os.listdir(media_dirs['temp']) == []
        assert os.listdir(media_dirs['processed']) == []

    def test_timeout_during_resize_leaves_no_intermediate(self, media_dirs, history, sample_image):
        pipeline = self.slow_pipeline(media_dirs, history, 0.1, resize_stage=SlowResizeStage())
        emitter = RecordingEmitter()

        with pytest.raises(ProcessingTimeoutError):
            async_to_sync(pipeline.run)(sample_image, ProcessingOptions(), emitter)

        assert emitter.checkpoints == [0, 20]
        time.sleep(1.0)
        assert os.listdir(media_dirs['temp']) == []

    def test_cancelled_run_reports_error_and_cleans_up(self, media_dirs, history, sample_image):
        pipeline = self.slow_pipeline(media_dirs, history, 30, filter_stage=SlowFilterStage())
        emitter = RecordingEmitter()

        async def cancel_midway():
            task = asyncio.ensure_future(pipeline.run(sample_image, ProcessingOptions(), emitter))
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        async_to_sync(cancel_midway)()

        assert 100 not in emitter.checkpoints
        assert emitter.errors == ['Processing cancelled']
        assert len(history) == 0
        time.sleep(1.0)
        assert os.listdir(media_dirs['temp']) == []
        assert os.listdir(media_dirs['processed']) == []

    def test_overlapping_runs_on_same_upload(self, pipeline, history, sample_image, media_dirs):
        options = ProcessingOptions(quality='720p', contrast=20, sharpen=True)
        first_emitter, second_emitter = RecordingEmitter(), RecordingEmitter()

        async def run_both():
            return await asyncio.gather(
                pipeline.run(sample_image, options, first_emitter),
                pipeline.run(sample_image, options, second_emitter),
            )

        first, second = async_to_sync(run_both)()

        assert first['processedFile'] != second['processedFile']
        assert sorted(os.listdir(media_dirs['processed'])) == sorted(
            [first['processedFile'], second['processedFile']])
        assert first_emitter.checkpoints == [0, 20, 60, 100]
        assert second_emitter.checkpoints == [0, 20, 60, 100]

        entries = history.list()
        assert len(entries) == 2
        assert {e.processed_file for e in entries} == {first['processedFile'], second['processedFile']}
        assert entries[0].id != entries[1].id
        assert os.listdir(media_dirs['temp']) == []

    def test_missing_source_rejected_before_processing(self, pipeline):
        emitter = RecordingEmitter()
        with pytest.raises(SourceNotFoundError):
            async_to_sync(pipeline.run)('never-uploaded.jpg', ProcessingOptions(), emitter)
        assert emitter.checkpoints == []

    def test_unreadable_source_rejected(self, pipeline, media_dirs):
        (media_dirs['uploads'] / 'broken.jpg').write_bytes(b'\xff\xd8 definitely not a jpeg')
        emitter = RecordingEmitter()

        with pytest.raises(UnreadableImageError):
            async_to_sync(pipeline.run)('broken.jpg', ProcessingOptions(), emitter)

        assert emitter.checkpoints == []
        assert len(emitter.errors) == 1

    @pytest.mark.parametrize('filename', ['../secret.jpg', 'nested/photo.jpg', '', '..'])
    def test_path_like_references_rejected(self, pipeline, filename):
        with pytest.raises(ValidationError):
            async_to_sync(pipeline.run)(filename, ProcessingOptions())

    def test_video_reference_rejected(self, pipeline, sample_video):
        with pytest.raises(ValidationError) as excinfo:
            async_to_sync(pipeline.run)(sample_video, ProcessingOptions())
        assert excinfo.value.error_code == 'NOT_AN_IMAGE'
