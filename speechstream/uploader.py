"""Streaming upload sessions

An :class:`Uploader` streams one utterance to a recognition service over a
single WebSocket connection. The audio capture thread calls
:func:`Uploader.on_has_data` for every chunk it records. Until the
connection is established those calls block, so the earliest audio is not
lost while the handshake is in flight.

A session moves through the states of :class:`SessionState`::

    IDLE -> CONNECTING -> OPEN -> CLOSED
                 |          |
                 +----------+--> FAILED

Sessions are single use. Once CLOSED or FAILED no more audio is sent.
"""

import asyncio
import collections
import concurrent.futures
import enum
import json
import logging
import threading
import weakref

from speechstream import encoder
from speechstream import transport

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    OPEN = 'open'
    CLOSED = 'closed'
    FAILED = 'failed'


TERMINAL_STATES = (SessionState.CLOSED, SessionState.FAILED)


class AlreadyPreparedError(Exception):
    def __init__(self, state):
        super(AlreadyPreparedError, self).__init__(
            'Uploader prepared when it is already %s' % state.value
        )


DELIVERED = 'delivered'
NOT_READY = 'not_ready'
CANCELLED = 'cancelled'

UploadResult = collections.namedtuple('UploadResult', ['status', 'size'])
"""Outcome of handing one audio buffer to an :class:`Uploader`.

:param status: One of DELIVERED, NOT_READY or CANCELLED.
:type status: str
:param size: Number of bytes written to the connection.
:type size: int
"""


class Uploader(object):
    """Stream audio to a recognition service over a WebSocket.

    :parameter config: Session parameters.
    :type config: config.SessionConfig
    :parameter delegate: Receiver of session events. Only a weak reference
        is kept.
    :type delegate: delegate.SpeechDelegate
    :parameter transport_factory: Callable returning the transport, called
        with the URI, the headers and the open timeout.
    """
    def __init__(self, config, delegate=None,
                 transport_factory=transport.WebSocketTransport):
        logger.info('New uploader for %s', config.server_uri)
        self.config = config
        self._encoder = encoder.encoder_for_format(config.audio_format,
                                                   rate=config.sample_rate)
        self._transport = transport_factory(config.server_uri,
                                            config.headers,
                                            config.open_timeout)
        self._transport.on_open = self._on_open
        self._transport.on_message = self._on_message
        self._transport.on_close = self._on_close
        self._transport.on_error = self._on_error

        self._lock = threading.Lock()
        self._state = SessionState.IDLE
        self._prepare_future = None
        self._delegate = None
        self.set_delegate(delegate)

    @property
    def state(self):
        with self._lock:
            return self._state

    @property
    def encoder(self):
        return self._encoder

    def is_upload_prepared(self):
        return self.state is SessionState.OPEN

    def set_delegate(self, delegate):
        self._delegate = None
        if delegate is not None:
            self._delegate = weakref.ref(delegate)

    def prepare(self):
        """Start connecting to the service in the background.

        :raises AlreadyPreparedError: If called more than once.
        """
        with self._lock:
            if self._state is not SessionState.IDLE:
                raise AlreadyPreparedError(self._state)
            self._state = SessionState.CONNECTING
            self._transport.start()
            self._prepare_future = self._transport.submit(
                self._init_stream()
            )

    def stop_uploader_prepare_thread(self):
        """Cancel a connection attempt which is still in flight."""
        with self._lock:
            future = self._prepare_future
        if future is not None and future.cancel():
            logger.info('Cancelled connection attempt')

    def on_has_data(self, buffer):
        """Send a buffer of captured audio.

        :ret: Number of bytes written to the connection.
        :rtype: int
        """
        return self.send_audio(buffer).size

    def send_audio(self, buffer):
        """Send a buffer of captured audio.

        If the connection is still being established this blocks until the
        attempt has finished.

        :param buffer: Raw PCM audio.
        :type buffer: bytes
        :rtype: UploadResult
        """
        with self._lock:
            state = self._state
            future = self._prepare_future

        if state is SessionState.CONNECTING:
            logger.warning('Waiting for connection to be established')
            try:
                future.result()
            except concurrent.futures.CancelledError:
                return UploadResult(CANCELLED, 0)
            state = self.state

        if state is not SessionState.OPEN:
            return UploadResult(NOT_READY, 0)
        return UploadResult(DELIVERED, self._encoder.encode_and_write(buffer))

    def upload(self, data):
        """Write a text (str) or binary (bytes) frame to the connection.

        :ret: False if the frame was dropped because the connection is not
            open.
        :rtype: bool
        """
        try:
            self._transport.send(data)
        except transport.NotYetConnectedError as e:
            logger.error('Dropped %d byte frame: %s', len(data), e)
            return False
        return True

    def stop(self):
        """Signal the end of the audio with an empty binary frame."""
        logger.info('Sending end of audio')
        return self.upload(b'')

    def close(self):
        logger.warning('Closing the websocket')
        with self._lock:
            state = self._state
            if state is SessionState.IDLE:
                self._state = SessionState.CLOSED
        if state is SessionState.CONNECTING:
            self.stop_uploader_prepare_thread()
        self._transport.close()

    def wait(self, timeout=None):
        """Block until the connection has shut down.

        :ret: True if the connection is no longer running.
        """
        return self._transport.join(timeout)

    async def _init_stream(self):
        logger.info('Connecting...')
        self._encoder.init_encoder_with_uploader(self)

        ssl_context = None
        if self.config.is_secure and self.config.insecure_tls:
            ssl_context = transport.trust_all_context()

        try:
            await self._transport.connect(ssl_context)
        except asyncio.CancelledError:
            logger.info('Connection attempt cancelled')
            self._transition(SessionState.CLOSED)
            self._transport.close()
            raise
        except Exception as e:
            logger.error('Connection failed: %s', e)
            self._transition(SessionState.FAILED)
            self._transport.close()
            self._notify('on_error', 'Connection failed: %s' % e)
            return
        logger.info('WebSocket connection established')

    def _transition(self, new_state):
        with self._lock:
            if self._state in TERMINAL_STATES:
                return
            logger.debug('State %s -> %s', self._state.value, new_state.value)
            self._state = new_state

    def _send_speech_header(self):
        header = json.dumps({
            'action': 'start',
            'content-type': self.config.audio_format,
            'interim_results': True,
            'continuous': True,
            'inactivity_timeout': self.config.inactivity_timeout,
        }, separators=(',', ':'))
        logger.info('Sending start header: %s', header)
        self.upload(header)

    def _on_open(self):
        with self._lock:
            if self._state is not SessionState.CONNECTING:
                return
            cancelled = self._prepare_future.cancelled()
            if cancelled:
                self._state = SessionState.CLOSED
            else:
                # queued before the state is published so no audio precedes it
                self._send_speech_header()
                self._encoder.on_start()
                self._state = SessionState.OPEN
        if cancelled:
            logger.info('Connection attempt cancelled after the handshake')
            self._transport.close()
            return
        logger.info('WebSocket connection opened')
        self._notify('on_open')

    def _on_message(self, message):
        self._notify('on_message', message)

    def _on_error(self, exc):
        logger.warning('WebSocket error: %s', exc)
        self._transition(SessionState.FAILED)
        self._notify('on_error', str(exc) or exc.__class__.__name__)

    def _on_close(self, code, reason, remote):
        logger.info('Closed, code: %s reason: %s remote: %s',
                    code, reason, remote)
        self._transition(SessionState.CLOSED)
        self._notify('on_close', code, reason, remote)

    def _notify(self, event, *args):
        delegate = self._delegate() if self._delegate else None
        if delegate is None:
            return
        try:
            getattr(delegate, event)(*args)
        except Exception:
            logger.exception('Delegate %s handler failed', event)
