"""
Progress reporting for a single processing run.

A run reports through the emitter it is handed; the emitter decides where
events go. The browser side lives in consumers.ProgressConsumer.
"""
import re
import logging

from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)

# Channels group names allow ASCII alphanumerics, hyphens, underscores and periods
TOKEN_PATTERN = re.compile(r'^[A-Za-z0-9_.-]{1,64}$')


def progress_group(token):
    """Channel layer group that carries a token's events."""
    return f'progress_{token}'


def is_valid_token(token):
    return bool(token) and TOKEN_PATTERN.match(token) is not None


class ProgressEmitter:
    """
    Base emitter for one run.

    Progress is an integer percentage that never goes backwards. The run
    ends at 100 or at the first error, whichever comes first, and nothing
    is delivered after that.
    """

    def __init__(self):
        self.last_progress = None
        self.finished = False

    async def emit(self, progress, stage):
        if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
            raise ValueError(f"progress must be an integer between 0 and 100, got {progress!r}")

        if self.finished:
            logger.warning(f"Dropping progress {progress}% after run finished")
            return
        if self.last_progress is not None and progress < self.last_progress:
            logger.warning(f"Dropping progress {progress}% (already at {self.last_progress}%)")
            return

        self.last_progress = progress
        if progress == 100:
            self.finished = True

        await self._deliver({
            'type': 'process.progress',
            'progress': progress,
            'stage': stage,
        })

    async def fail(self, message):
        if self.finished:
            logger.warning(f"Dropping error after run finished: {message}")
            return
        self.finished = True

        await self._deliver({
            'type': 'process.error',
            'error': message,
        })

    async def _deliver(self, event):
        raise NotImplementedError


class NullEmitter(ProgressEmitter):
    """Used when the caller did not register an observer."""

    async def _deliver(self, event):
        logger.debug(f"No observer for {event['type']}")


class ChannelLayerEmitter(ProgressEmitter):
    """Sends events to the progress socket identified by ``token``."""

    def __init__(self, token, channel_layer=None):
        super().__init__()
        self.token = token
        self.group = progress_group(token)
        self.channel_layer = channel_layer or get_channel_layer()

    async def _deliver(self, event):
        # Best effort: an unreachable observer never fails the run
        try:
            await self.channel_layer.group_send(self.group, event)
        except Exception as e:
            logger.warning(f"Failed to deliver {event['type']} to {self.group}: {e}")


def emitter_for(token):
    """
    Emitter for an observer token taken from a request header.

    Missing or malformed tokens get a NullEmitter.
    """
    if not token:
        return NullEmitter()
    if not is_valid_token(token):
        logger.warning(f"Ignoring malformed observer token: {token[:80]!r}")
        return NullEmitter()
    return ChannelLayerEmitter(token)
