from django.urls import path
from . import views

app_name = 'enhancer'

urlpatterns = [
    # Service info
    path('', views.index, name='index'),
    path('api/health', views.health, name='health'),

    # Upload / processing
    path('api/upload', views.upload, name='upload'),
    path('api/process-image', views.process_image, name='process_image'),
    path('api/process-video', views.process_video, name='process_video'),

    # Results
    path('api/download/<str:filename>', views.download, name='download'),
    path('api/history', views.history, name='history'),

    # Stored files
    path('uploads/<path:path>', views.serve_upload, name='serve_upload'),
    path('processed/<path:path>', views.serve_processed, name='serve_processed'),
]
