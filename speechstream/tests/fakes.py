import asyncio
import json
import threading
import types
from unittest import mock

import fixtures
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

from speechstream import delegate


FINAL_RESULT = json.dumps({
    'results': [{'alternatives': [{'transcript': 'hello ',
                                   'confidence': .9}],
                 'final': True}],
    'result_index': 0,
})

LISTENING = '{"state": "listening"}'


def closed_exc(code, reason, remote):
    close = Close(code, reason)
    exc_cls = ConnectionClosedOK if code in (1000, 1001) else \
        ConnectionClosedError
    return exc_cls(close, close, remote)


class FakeWebSocket(object):
    """Stands in for a websockets client connection.

    Acknowledges the start header like a recognition service does and, with
    finish_on_stop, answers the end of audio marker with a final result and
    a close.
    """
    def __init__(self, finish_on_stop=False):
        self.sent = []
        self.close_code = None
        self.close_reason = None
        self.finish_on_stop = finish_on_stop
        self._incoming = None
        self._loop = None

    async def open(self):
        self._loop = asyncio.get_running_loop()
        self._incoming = asyncio.Queue()
        return self

    async def send(self, data):
        if self.close_code is not None:
            raise closed_exc(self.close_code, self.close_reason, False)
        self.sent.append(data)
        if isinstance(data, str):
            if self._is_start(data):
                self._incoming.put_nowait(LISTENING)
        elif data == b'' and self.finish_on_stop:
            self._incoming.put_nowait(FINAL_RESULT)
            self._remote_close(1000, 'done')

    @staticmethod
    def _is_start(text):
        try:
            message = json.loads(text)
        except ValueError:
            return False
        return isinstance(message, dict) and message.get('action') == 'start'

    async def recv(self):
        item = await self._incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self, code=1000, reason=''):
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
            self._incoming.put_nowait(closed_exc(code, reason, False))

    def _remote_close(self, code, reason):
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
            self._incoming.put_nowait(closed_exc(code, reason, True))

    # Called from test threads
    def push(self, item):
        self._loop.call_soon_threadsafe(self._incoming.put_nowait, item)

    def remote_close(self, code, reason):
        self._loop.call_soon_threadsafe(self._remote_close, code, reason)

    @property
    def audio_frames(self):
        return [x for x in self.sent if isinstance(x, bytes) and x]


class FakeWebSocketFixture(fixtures.Fixture):
    """Patch websockets.connect to hand out a FakeWebSocket.

    :param connect_error: Exception to fail the connection attempt with.
    :param hold: Keep the connection attempt pending until release().
    """
    def __init__(self, connect_error=None, hold=False, finish_on_stop=False):
        super(FakeWebSocketFixture, self).__init__()
        self.connect_error = connect_error
        self.hold = hold
        self.finish_on_stop = finish_on_stop

    def _setUp(self):
        self.ws = FakeWebSocket(finish_on_stop=self.finish_on_stop)
        self.uri = None
        self.connect_kwargs = None
        self.connecting = threading.Event()
        self._loop = None
        self._gate = None
        self.connect = mock.Mock(side_effect=self._connect)
        self.useFixture(fixtures.MockPatch('websockets.connect',
                                           new=self.connect))

    async def _connect(self, uri, **kwargs):
        self.uri = uri
        self.connect_kwargs = kwargs
        self._loop = asyncio.get_running_loop()
        self._gate = asyncio.Event()
        self.connecting.set()
        if self.hold:
            await self._gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        return await self.ws.open()

    def release(self):
        self.connecting.wait()
        self._loop.call_soon_threadsafe(self._gate.set)


class RecordingDelegate(delegate.SpeechDelegate):
    def __init__(self):
        self.events = []
        self.opened = threading.Event()
        self.errored = threading.Event()
        self.closed = threading.Event()

    def on_open(self):
        self.events.append(('open',))
        self.opened.set()

    def on_message(self, message):
        self.events.append(('message', message))

    def on_error(self, message):
        self.events.append(('error', message))
        self.errored.set()

    def on_close(self, code, reason, remote):
        self.events.append(('close', code, reason, remote))
        self.closed.set()

    def _of_kind(self, kind):
        return [ev[1:] for ev in self.events if ev[0] == kind]

    @property
    def messages(self):
        return [ev[0] for ev in self._of_kind('message')]

    @property
    def errors(self):
        return [ev[0] for ev in self._of_kind('error')]

    @property
    def closes(self):
        return self._of_kind('close')


class FakeOpusEncoder(object):
    def __init__(self, rate, channels, application):
        self.rate = rate
        self.channels = channels
        self.frames = []
        self.fail = False

    def encode(self, pcm, frame_size):
        if self.fail:
            raise FakeOpusError('encoder failed')
        self.frames.append((pcm, frame_size))
        return b'\x01' * 10


class FakeOpusError(Exception):
    pass


class FakeOpuslibFixture(fixtures.Fixture):
    """Provide an opuslib module which does not need libopus."""
    def _setUp(self):
        self.module = types.SimpleNamespace(Encoder=FakeOpusEncoder,
                                            OpusError=FakeOpusError,
                                            APPLICATION_VOIP=2048)
        patcher = mock.patch.dict('sys.modules', {'opuslib': self.module})
        patcher.start()
        self.addCleanup(patcher.stop)
