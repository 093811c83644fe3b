import os
import tempfile
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-change-in-production')

DEBUG = os.environ.get('DEBUG', '0').lower() in ('1', 'true', 'yes')

ALLOWED_HOSTS = ['*']

INSTALLED_APPS = [
    'daphne',
    'django.contrib.staticfiles',
    'channels',
    'enhancer',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'ezhd_project.urls'

TEMPLATES = []

ASGI_APPLICATION = 'ezhd_project.asgi.application'

CHANNEL_LAYERS = {
    'default': {
        'BACKEND': 'channels.layers.InMemoryChannelLayer',
    },
}

# History lives in memory, nothing is stored in a database
DATABASES = {}

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = False
USE_TZ = True

STATIC_URL = '/static/'

# Uploads are streamed to disk rather than held in memory
FILE_UPLOAD_MAX_MEMORY_SIZE = 10 * 1024 * 1024
FILE_UPLOAD_HANDLERS = ['django.core.files.uploadhandler.TemporaryFileUploadHandler']

# ============================================================================
# Media enhancement
# ============================================================================

# Use /app/media if it exists (Docker), otherwise keep media beside the project
_media_path = '/app/media' if os.path.isdir('/app/media') else os.path.join(BASE_DIR, 'media')
EZHD_MEDIA_ROOT = os.environ.get('EZHD_MEDIA_ROOT', _media_path)

EZHD_UPLOAD_DIR = os.environ.get('EZHD_UPLOAD_DIR', os.path.join(EZHD_MEDIA_ROOT, 'uploads'))
EZHD_PROCESSED_DIR = os.environ.get('EZHD_PROCESSED_DIR', os.path.join(EZHD_MEDIA_ROOT, 'processed'))
EZHD_TEMP_DIR = os.environ.get('EZHD_TEMP_DIR', tempfile.gettempdir())

EZHD_MAX_UPLOAD_SIZE = int(os.environ.get('EZHD_MAX_UPLOAD_SIZE', 500 * 1024 * 1024))
EZHD_HISTORY_LIMIT = int(os.environ.get('EZHD_HISTORY_LIMIT', 50))

# Upper bound (seconds) for the library calls of a single image run
EZHD_PIPELINE_TIMEOUT = float(os.environ.get('EZHD_PIPELINE_TIMEOUT', 120))

# Delay between mocked video progress steps
EZHD_VIDEO_STEP_DELAY = float(os.environ.get('EZHD_VIDEO_STEP_DELAY', 1.0))

# JPEG quality of the resize stage's intermediate artifact
EZHD_INTERMEDIATE_QUALITY = int(os.environ.get('EZHD_INTERMEDIATE_QUALITY', 95))

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'default': {
            'format': '%(asctime)s - %(levelname)s - %(message)s',
            'datefmt': '%Y-%m-%d %H:%M:%S',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'default',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': os.environ.get('LOG_LEVEL', 'INFO'),
    },
}
