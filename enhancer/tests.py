"""
Tests for the Ez-HD HTTP API, progress socket, history store and video mock.
"""
import json
import asyncio

import pytest
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer, InMemoryChannelLayer
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from django.core.files.uploadedfile import SimpleUploadedFile
from django.urls import reverse

from enhancer.apps import enhancer_app
from enhancer.errors import ProcessingCancelledError, handle_error, NotFoundError
from enhancer.history import HistoryEntry, HistoryStore
from enhancer.options import ProcessingOptions
from enhancer.progress import (
    ChannelLayerEmitter,
    NullEmitter,
    ProgressEmitter,
    emitter_for,
    progress_group,
)
from enhancer.routing import websocket_urlpatterns
from enhancer.uploads import UploadStore
from enhancer.video import VideoPipeline, VideoJobRegistry


def post_json(client, url, payload, **extra):
    return client.post(url, data=json.dumps(payload), content_type='application/json', **extra)


class TestServiceEndpoints:
    """Test banner and health endpoints."""

    def test_health_returns_ok(self, client):
        response = client.get('/api/health')
        assert response.status_code == 200
        data = json.loads(response.content)
        assert data['status'] == 'OK'
        assert 'timestamp' in data

    def test_index_lists_endpoints(self, client):
        data = json.loads(client.get('/').content)
        assert data['status'] == 'OK'
        assert data['endpoints']['processImage'] == '/api/process-image'

    def test_missing_endpoint_returns_404(self, client):
        response = client.get('/api/nonexistent')
        assert response.status_code == 404


class TestUploadEndpoint:
    """Test upload validation and storage."""

    def test_upload_stores_file_under_unique_name(self, client, media_dirs):
        upload = SimpleUploadedFile('photo.jpg', b'\xff\xd8\xff fake jpeg', content_type='image/jpeg')

        response = client.post(reverse('enhancer:upload'), {'file': upload})

        assert response.status_code == 200
        data = json.loads(response.content)
        assert data['originalName'] == 'photo.jpg'
        assert data['filename'].endswith('-photo.jpg')
        assert data['filename'] != 'photo.jpg'
        assert data['mimetype'] == 'image/jpeg'
        assert data['path'] == f"uploads/{data['filename']}"
        assert (media_dirs['uploads'] / data['filename']).exists()

    def test_upload_rejects_executable(self, client, media_dirs):
        upload = SimpleUploadedFile('tool.exe', b'MZ\x90\x00', content_type='application/x-msdownload')

        response = client.post(reverse('enhancer:upload'), {'file': upload})

        assert response.status_code == 415
        data = json.loads(response.content)
        assert data['success'] is False
        assert data['error_code'] == 'UNSUPPORTED_MEDIA'
        assert list(media_dirs['uploads'].iterdir()) == []

    def test_upload_requires_matching_mime_type(self, client, media_dirs):
        upload = SimpleUploadedFile('photo.jpg', b'hello', content_type='text/plain')
        response = client.post(reverse('enhancer:upload'), {'file': upload})
        assert response.status_code == 415

    @pytest.mark.parametrize('name', ['payload.pngexe', 'clip.mp4x', 'photo.jpgs'])
    def test_upload_rejects_lookalike_extension(self, client, media_dirs, name):
        upload = SimpleUploadedFile(name, b'\x89PNG\r\n', content_type='image/png')

        response = client.post(reverse('enhancer:upload'), {'file': upload})

        assert response.status_code == 415
        assert json.loads(response.content)['error_code'] == 'UNSUPPORTED_MEDIA'
        assert list(media_dirs['uploads'].iterdir()) == []

    def test_upload_accepts_video(self, client, media_dirs):
        upload = SimpleUploadedFile('clip.webm', b'\x1aE\xdf\xa3', content_type='video/webm')
        response = client.post(reverse('enhancer:upload'), {'file': upload})
        assert response.status_code == 200

    def test_upload_accepts_quicktime(self, client, media_dirs):
        upload = SimpleUploadedFile('clip.mov', b'\x00\x00\x00\x14ftypqt', content_type='video/quicktime')
        response = client.post(reverse('enhancer:upload'), {'file': upload})
        assert response.status_code == 200

    def test_upload_size_ceiling(self, client, media_dirs, settings):
        settings.EZHD_MAX_UPLOAD_SIZE = 4
        upload = SimpleUploadedFile('photo.png', b'\x89PNG\r\n', content_type='image/png')

        response = client.post(reverse('enhancer:upload'), {'file': upload})

        assert response.status_code == 413
        assert json.loads(response.content)['error_code'] == 'FILE_TOO_LARGE'

    def test_upload_without_file(self, client, media_dirs):
        response = client.post(reverse('enhancer:upload'), {})
        assert response.status_code == 400
        assert json.loads(response.content)['error'] == 'No file uploaded'

    def test_upload_requires_post(self, client, media_dirs):
        response = client.get(reverse('enhancer:upload'))
        assert response.status_code == 405


class TestProcessImageEndpoint:
    """Test the image processing endpoint."""

    def test_process_and_download(self, client, sample_image, image_options):
        response = post_json(client, reverse('enhancer:process_image'),
                             {'filename': sample_image, 'options': image_options})

        assert response.status_code == 200
        data = json.loads(response.content)
        assert data['success'] is True

        download = client.get(data['downloadUrl'])
        assert download.status_code == 200
        assert 'attachment' in download['Content-Disposition']
        assert b''.join(download.streaming_content)

    def test_processed_file_served_statically(self, client, sample_image):
        data = json.loads(post_json(client, reverse('enhancer:process_image'),
                                    {'filename': sample_image, 'options': {'quality': '720p'}}).content)
        response = client.get(f"/processed/{data['processedFile']}")
        assert response.status_code == 200

    def test_original_served_statically(self, client, sample_image):
        response = client.get(f"/uploads/{sample_image}")
        assert response.status_code == 200

    def test_history_records_run(self, client, sample_image, image_options):
        post_json(client, reverse('enhancer:process_image'),
                  {'filename': sample_image, 'options': image_options})

        history = json.loads(client.get(reverse('enhancer:history')).content)

        assert len(history) == 1
        entry = history[0]
        assert entry['type'] == 'image'
        assert entry['originalFile'] == sample_image
        assert entry['options']['brightness'] == 25
        assert entry['options']['sharpen'] is True
        assert set(entry) == {'id', 'originalFile', 'processedFile', 'processedAt', 'options', 'type'}

    def test_progress_reaches_observer(self, client, sample_image, image_options):
        """Runs started with X-Socket-Id push 0/20/60/100 to that token's group."""
        layer = get_channel_layer()
        token = 'test-observer-token'
        channel = async_to_sync(layer.new_channel)()
        async_to_sync(layer.group_add)(progress_group(token), channel)

        response = post_json(client, reverse('enhancer:process_image'),
                             {'filename': sample_image, 'options': image_options},
                             HTTP_X_SOCKET_ID=token)
        assert response.status_code == 200

        events = [async_to_sync(layer.receive)(channel) for _ in range(4)]
        assert [e['progress'] for e in events] == [0, 20, 60, 100]
        assert all(e['type'] == 'process.progress' for e in events)

        async_to_sync(layer.group_discard)(progress_group(token), channel)

    def test_missing_filename(self, client, media_dirs):
        response = post_json(client, reverse('enhancer:process_image'), {'options': {}})
        assert response.status_code == 400
        assert json.loads(response.content)['error'] == 'Filename is required'

    def test_missing_options(self, client, sample_image):
        response = post_json(client, reverse('enhancer:process_image'), {'filename': sample_image})
        assert response.status_code == 400
        assert json.loads(response.content)['error_code'] == 'OPTIONS_REQUIRED'

    def test_out_of_range_brightness(self, client, sample_image):
        response = post_json(client, reverse('enhancer:process_image'),
                             {'filename': sample_image, 'options': {'brightness': 80}})
        assert response.status_code == 400

    def test_invalid_json(self, client, media_dirs):
        response = client.post(reverse('enhancer:process_image'), data='{"filename": ',
                               content_type='application/json')
        assert response.status_code == 400
        assert json.loads(response.content)['error_code'] == 'INVALID_JSON'

    def test_unknown_source(self, client, media_dirs):
        response = post_json(client, reverse('enhancer:process_image'),
                             {'filename': 'nope.jpg', 'options': {}})
        assert response.status_code == 400
        assert json.loads(response.content)['error_code'] == 'SOURCE_NOT_FOUND'

    def test_requires_post(self, client, media_dirs):
        response = client.get(reverse('enhancer:process_image'))
        assert response.status_code == 405


class TestDownloadEndpoint:
    """Test downloads of processed files."""

    def test_never_produced_file_is_not_found(self, client, media_dirs):
        response = client.get(reverse('enhancer:download', args=['processed-never.jpg']))
        assert response.status_code == 404
        assert json.loads(response.content)['error'] == 'File not found'

    def test_dot_dot_is_not_found(self, client, media_dirs):
        response = client.get('/api/download/..')
        assert response.status_code == 404


class TestProcessVideoEndpoint:
    """Test the mocked video endpoint."""

    def test_mock_run_records_video_entry(self, client, sample_video):
        response = post_json(client, reverse('enhancer:process_video'),
                             {'filename': sample_video,
                              'options': {'quality': '4K', 'frameRate': '60fps', 'format': 'webm'}})

        assert response.status_code == 200
        data = json.loads(response.content)
        assert data['processedFile'] == f'processed-{sample_video}'
        assert 'mocked' in data['note']

        history = json.loads(client.get(reverse('enhancer:history')).content)
        assert history[0]['type'] == 'video'
        assert history[0]['options']['frameRate'] == '60fps'

    def test_rejects_image_source(self, client, sample_image):
        response = post_json(client, reverse('enhancer:process_video'),
                             {'filename': sample_image, 'options': {}})
        assert response.status_code == 400
        assert json.loads(response.content)['error_code'] == 'NOT_A_VIDEO'

    def test_rejects_unknown_format(self, client, sample_video):
        response = post_json(client, reverse('enhancer:process_video'),
                             {'filename': sample_video, 'options': {'format': 'gif'}})
        assert response.status_code == 400


class TestHistoryStore:
    """Test the bounded history log."""

    def entry(self, n):
        return HistoryEntry(original_file=f'in-{n}.jpg', processed_file=f'out-{n}.jpg',
                            options={'quality': '1080p'}, type='image')

    def test_most_recent_first(self):
        store = HistoryStore()
        for n in range(3):
            store.record(self.entry(n))
        assert [e.original_file for e in store.list()] == ['in-2.jpg', 'in-1.jpg', 'in-0.jpg']

    def test_bounded_at_fifty(self):
        store = HistoryStore(limit=50)
        for n in range(51):
            store.record(self.entry(n))

        entries = store.list()
        assert len(entries) == 50
        assert 'in-0.jpg' not in [e.original_file for e in entries]
        assert entries[0].original_file == 'in-50.jpg'
        assert entries[-1].original_file == 'in-1.jpg'

    def test_list_is_a_snapshot(self):
        store = HistoryStore()
        store.record(self.entry(0))
        snapshot = store.list()
        store.record(self.entry(1))
        assert len(snapshot) == 1
        assert isinstance(snapshot, tuple)

    def test_entries_get_unique_ids(self):
        assert self.entry(0).id != self.entry(0).id

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            HistoryStore(limit=0)

    def test_app_store_uses_configured_limit(self):
        assert enhancer_app().history.limit == 50


class RecordingEmitter(ProgressEmitter):
    def __init__(self):
        super().__init__()
        self.events = []

    async def _deliver(self, event):
        self.events.append(event)


class TestProgressEmitter:
    """Test checkpoint ordering and terminal events."""

    def test_progress_never_goes_backwards(self):
        emitter = RecordingEmitter()

        async def scenario():
            await emitter.emit(20, 'a')
            await emitter.emit(10, 'b')
            await emitter.emit(60, 'c')

        async_to_sync(scenario)()
        assert [e['progress'] for e in emitter.events] == [20, 60]

    def test_nothing_after_complete(self):
        emitter = RecordingEmitter()

        async def scenario():
            await emitter.emit(100, 'done')
            await emitter.fail('late failure')
            await emitter.emit(100, 'again')

        async_to_sync(scenario)()
        assert len(emitter.events) == 1

    def test_nothing_after_error(self):
        emitter = RecordingEmitter()

        async def scenario():
            await emitter.emit(20, 'a')
            await emitter.fail('boom')
            await emitter.emit(100, 'done')

        async_to_sync(scenario)()
        assert [e['type'] for e in emitter.events] == ['process.progress', 'process.error']

    @pytest.mark.parametrize('value', [-1, 101, 50.5, True, '20'])
    def test_rejects_invalid_progress(self, value):
        with pytest.raises(ValueError):
            async_to_sync(RecordingEmitter().emit)(value, 'x')

    def test_channel_layer_emitter_sends_to_token_group(self):
        layer = InMemoryChannelLayer()

        async def scenario():
            channel = await layer.new_channel()
            await layer.group_add(progress_group('abc123'), channel)
            emitter = ChannelLayerEmitter('abc123', channel_layer=layer)
            await emitter.emit(60, 'Applying filters...')
            return await layer.receive(channel)

        message = async_to_sync(scenario)()
        assert message == {'type': 'process.progress', 'progress': 60, 'stage': 'Applying filters...'}

    def test_emitter_for_header_values(self):
        assert isinstance(emitter_for(None), NullEmitter)
        assert isinstance(emitter_for(''), NullEmitter)
        assert isinstance(emitter_for('bad token with spaces'), NullEmitter)
        assert isinstance(emitter_for('a1b2c3'), ChannelLayerEmitter)


class TestProgressConsumer:
    """Test the progress WebSocket."""

    def test_session_token_and_relay(self):
        async def scenario():
            communicator = WebsocketCommunicator(URLRouter(websocket_urlpatterns), '/ws/progress/')
            connected, _ = await communicator.connect()
            session = await communicator.receive_json_from()

            emitter = ChannelLayerEmitter(session['token'])
            await emitter.emit(20, 'Resizing image...')
            progress = await communicator.receive_json_from()
            await emitter.fail('boom')
            error = await communicator.receive_json_from()

            await communicator.disconnect()
            return connected, session, progress, error

        connected, session, progress, error = async_to_sync(scenario)()

        assert connected
        assert session['type'] == 'session'
        assert progress == {'type': 'processProgress', 'progress': 20, 'stage': 'Resizing image...'}
        assert error == {'type': 'processError', 'error': 'boom'}

    def test_ping(self):
        async def scenario():
            communicator = WebsocketCommunicator(URLRouter(websocket_urlpatterns), '/ws/progress/')
            await communicator.connect()
            await communicator.receive_json_from()
            await communicator.send_json_to({'action': 'ping'})
            reply = await communicator.receive_json_from()
            await communicator.disconnect()
            return reply

        assert async_to_sync(scenario)()['type'] == 'pong'

    def test_disconnect_cancels_video_jobs(self, media_dirs, sample_video):
        app = enhancer_app()
        pipeline = VideoPipeline(
            upload_store=UploadStore(str(media_dirs['uploads']), 1024),
            history=app.history,
            registry=app.video_jobs,
            step_delay=0.2,
        )

        async def scenario():
            communicator = WebsocketCommunicator(URLRouter(websocket_urlpatterns), '/ws/progress/')
            await communicator.connect()
            token = (await communicator.receive_json_from())['token']

            run = asyncio.ensure_future(pipeline.run(
                sample_video, ProcessingOptions(), ChannelLayerEmitter(token), token=token))
            first = await communicator.receive_json_from()
            await communicator.disconnect()

            try:
                await run
            except ProcessingCancelledError as e:
                return first, e
            return first, None

        first, error = async_to_sync(scenario)()

        assert first['progress'] == 0
        assert isinstance(error, ProcessingCancelledError)
        assert len(app.history) == 0


class TestVideoPipeline:
    """Test the mocked video steps."""

    def test_checkpoints_in_order(self, media_dirs, sample_video):
        history = HistoryStore()
        pipeline = VideoPipeline(UploadStore(str(media_dirs['uploads']), 1024), history,
                                 VideoJobRegistry(), step_delay=0)
        emitter = RecordingEmitter()

        result = async_to_sync(pipeline.run)(sample_video, ProcessingOptions(), emitter)

        assert [e['progress'] for e in emitter.events] == [0, 25, 50, 75, 100]
        assert result['success'] is True
        assert history.list()[0].type == 'video'

    def test_runs_without_observer(self, media_dirs, sample_video):
        history = HistoryStore()
        pipeline = VideoPipeline(UploadStore(str(media_dirs['uploads']), 1024), history,
                                 VideoJobRegistry(), step_delay=0)

        async_to_sync(pipeline.run)(sample_video, ProcessingOptions())

        assert len(history) == 1

    def test_registry_forgets_finished_jobs(self, media_dirs, sample_video):
        registry = VideoJobRegistry()
        pipeline = VideoPipeline(UploadStore(str(media_dirs['uploads']), 1024), HistoryStore(),
                                 registry, step_delay=0)

        async_to_sync(pipeline.run)(sample_video, ProcessingOptions(), token='tok')

        assert registry.pending('tok') == 0
        assert registry.cancel('tok') == 0


class TestOptions:
    """Test option parsing."""

    def test_defaults(self):
        options = ProcessingOptions.from_dict({})
        assert options == ProcessingOptions(quality='1080p', brightness=0, contrast=0, sharpen=False)
        assert not options.has_filters

    def test_wire_form(self):
        data = ProcessingOptions.from_dict({'quality': '2K', 'brightness': -5, 'frameRate': '60fps'}).to_dict()
        assert data == {'quality': '2K', 'brightness': -5, 'contrast': 0, 'sharpen': False,
                        'frameRate': '60fps', 'format': 'mp4'}

    def test_unknown_quality_kept(self):
        assert ProcessingOptions.from_dict({'quality': '8K'}).quality == '8K'

    @pytest.mark.parametrize('payload', [
        {'brightness': 51}, {'contrast': -51}, {'brightness': '10'},
        {'contrast': 1.5}, {'sharpen': 'yes'}, {'brightness': True},
    ])
    def test_invalid_values(self, payload):
        from enhancer.errors import ValidationError
        with pytest.raises(ValidationError):
            ProcessingOptions.from_dict(payload)

    def test_missing_object(self):
        from enhancer.errors import ValidationError
        with pytest.raises(ValidationError):
            ProcessingOptions.from_dict(None)


class TestErrorHandling:
    """Test the uniform error descriptor."""

    def test_known_error(self):
        data = handle_error(NotFoundError('x.jpg'))
        assert data == {'success': False, 'error': 'File not found', 'error_code': 'FILE_NOT_FOUND',
                        'details': {'filename': 'x.jpg'}}

    def test_unexpected_error(self):
        data = handle_error(RuntimeError('boom'))
        assert data['error_code'] == 'UNEXPECTED_ERROR'
        assert data['details']['error_type'] == 'RuntimeError'
