"""
WebSocket consumer for processing progress.

Protocol:
1. Client connects and receives {"type": "session", "token": ...}
2. Client sends the token as the X-Socket-Id header on process requests
3. Server pushes {"type": "processProgress", "progress", "stage"} and
   {"type": "processError", "error"} for runs started with that token
4. Closing the socket cancels the token's pending video jobs
"""
import json
import uuid
import logging
from channels.generic.websocket import AsyncWebsocketConsumer

from .apps import enhancer_app
from .progress import progress_group

logger = logging.getLogger(__name__)


class ProgressConsumer(AsyncWebsocketConsumer):
    """Relays pipeline progress events to one browser connection."""

    async def connect(self):
        self.token = uuid.uuid4().hex
        self.group = progress_group(self.token)

        await self.channel_layer.group_add(self.group, self.channel_name)
        await self.accept()
        logger.info(f"[Progress] Client connected: {self.token}")

        await self.send(text_data=json.dumps({
            'type': 'session',
            'token': self.token,
        }))

    async def disconnect(self, close_code):
        if not hasattr(self, 'group'):
            return
        await self.channel_layer.group_discard(self.group, self.channel_name)
        enhancer_app().video_jobs.cancel(self.token)
        logger.info(f"[Progress] Client disconnected (code: {close_code}): {self.token}")

    async def receive(self, text_data=None, bytes_data=None):
        # Push-only channel; answer pings so clients can keep the socket warm
        if not text_data:
            return
        try:
            data = json.loads(text_data)
        except ValueError:
            return
        if isinstance(data, dict) and data.get('action') == 'ping':
            await self.send(text_data=json.dumps({'type': 'pong', 'token': self.token}))

    async def process_progress(self, event):
        """Handle progress broadcast"""
        await self.send(text_data=json.dumps({
            'type': 'processProgress',
            'progress': event['progress'],
            'stage': event['stage'],
        }))

    async def process_error(self, event):
        """Handle terminal error broadcast"""
        await self.send(text_data=json.dumps({
            'type': 'processError',
            'error': event['error'],
        }))
