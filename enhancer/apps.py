from django.apps import AppConfig, apps
from django.conf import settings


class EnhancerConfig(AppConfig):
    name = 'enhancer'

    def ready(self):
        from .history import HistoryStore
        from .video import VideoJobRegistry

        # Process-wide state, owned here and handed to pipelines and views
        self.history = HistoryStore(limit=settings.EZHD_HISTORY_LIMIT)
        self.video_jobs = VideoJobRegistry()


def enhancer_app():
    return apps.get_app_config('enhancer')
