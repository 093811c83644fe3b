"""
Pytest configuration and fixtures for Ez-HD tests.
"""
import os
import pytest
import numpy as np
import cv2
from django.test import Client

# Set up Django settings before importing the app
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'ezhd_project.settings')
os.environ.setdefault('SECRET_KEY', 'test-secret-key')


@pytest.fixture
def client():
    """Django test client."""
    return Client()


@pytest.fixture
def media_dirs(settings, tmp_path):
    """Point upload, processed and temp directories at a scratch tree."""
    dirs = {
        'uploads': tmp_path / 'uploads',
        'processed': tmp_path / 'processed',
        'temp': tmp_path / 'temp',
    }
    for path in dirs.values():
        path.mkdir()

    settings.EZHD_UPLOAD_DIR = str(dirs['uploads'])
    settings.EZHD_PROCESSED_DIR = str(dirs['processed'])
    settings.EZHD_TEMP_DIR = str(dirs['temp'])
    settings.EZHD_VIDEO_STEP_DELAY = 0
    return dirs


@pytest.fixture(autouse=True)
def clean_history():
    """History is process-wide; start every test empty."""
    from django.apps import apps
    store = apps.get_app_config('enhancer').history
    store.clear()
    yield store
    store.clear()


def make_image(width, height, color=(40, 120, 200)):
    """Solid BGR image with a diagonal gradient so resampling has detail to work on."""
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, :] = color
    ramp = (np.arange(width, dtype=np.int64) * 255 // max(width - 1, 1)).astype(np.uint8)
    image[:, :, 1] = ramp
    return image


@pytest.fixture
def sample_image(media_dirs):
    """A 600x400 JPEG stored in the upload directory; returns its stored name."""
    filename = 'sample-photo.jpg'
    cv2.imwrite(str(media_dirs['uploads'] / filename), make_image(600, 400))
    return filename


@pytest.fixture
def sample_png(media_dirs):
    """A 300x300 PNG stored in the upload directory."""
    filename = 'sample-square.png'
    cv2.imwrite(str(media_dirs['uploads'] / filename), make_image(300, 300))
    return filename


@pytest.fixture
def sample_video(media_dirs):
    """Placeholder video file; the video path never decodes it."""
    filename = 'sample-clip.mp4'
    (media_dirs['uploads'] / filename).write_bytes(b'\x00\x00\x00\x18ftypmp42')
    return filename


@pytest.fixture
def image_options():
    """Options payload from the scenario in the API docs."""
    return {
        'quality': '4K',
        'brightness': 25,
        'contrast': -10,
        'sharpen': True,
    }


@pytest.fixture
def image_factory():
    """make_image as a fixture, for tests that need custom sizes."""
    return make_image
