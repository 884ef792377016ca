"""WebSocket transport

:class:`WebSocketTransport` owns one WebSocket connection. The connection
lives on an asyncio event loop running in its own thread, so that it can be
driven from ordinary threads such as an audio capture callback. Whoever owns
the transport assigns the ``on_open``, ``on_message``, ``on_close`` and
``on_error`` callbacks; they are invoked from the transport thread.
"""

import asyncio
import logging
import ssl
import threading

import janus
import websockets
import websockets.exceptions

from speechstream import InterruptError, interruptable_get

logger = logging.getLogger(__name__)

ABNORMAL_CLOSURE = 1006

# Queued after the last frame to close the connection once it is flushed
_CLOSE = object()


class NotYetConnectedError(Exception):
    def __init__(self):
        super(NotYetConnectedError, self).__init__(
            'WebSocket is not connected'
        )


class ConnectFailedError(Exception):
    def __init__(self, uri, cause):
        super(ConnectFailedError, self).__init__(
            'Connection to %s failed: %s' % (uri, cause)
        )
        self.cause = cause


def trust_all_context():
    """SSL context which accepts any server certificate."""
    logger.warning('Server certificates will NOT be verified')
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def close_info(exc):
    """Close code, reason and whether the peer closed first.

    :param exc: Exception raised by the closed connection.
    :type exc: websockets.exceptions.ConnectionClosed
    :rtype: tuple
    """
    if exc.rcvd is not None:
        remote = exc.sent is None or bool(exc.rcvd_then_sent)
        return exc.rcvd.code, exc.rcvd.reason, remote
    if exc.sent is not None:
        return exc.sent.code, exc.sent.reason, False
    return ABNORMAL_CLOSURE, '', True


class WebSocketTransport(object):
    """A WebSocket connection driven from its own thread.

    :parameter uri: URI to connect to.
    :type uri: str
    :parameter headers: Extra headers for the opening handshake.
    :type headers: dict
    :parameter open_timeout: Seconds to wait for the opening handshake.
    :type open_timeout: float
    """
    def __init__(self, uri, headers=None, open_timeout=None):
        self.uri = uri
        self._headers = dict(headers or {})
        self._open_timeout = open_timeout

        self.on_open = None
        self.on_message = None
        self.on_close = None
        self.on_error = None

        self._lock = threading.Lock()
        self._loop = None
        self._thread = None
        self._ws = None
        self._outbound = None
        self._closed = None
        self._tasks = []
        self._accepting = False
        self._close_requested = False
        self._stopping = False

    @property
    def is_open(self):
        return self._accepting

    def start(self):
        """Start the transport thread and its event loop."""
        if self._thread is not None:
            raise RuntimeError('Transport already started')
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop,
                                        name='websocket-transport',
                                        daemon=True)
        self._thread.start()

    def submit(self, coro):
        """Schedule a coroutine on the transport loop.

        :ret: Future for the result of coro.
        :rtype: concurrent.futures.Future
        """
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def join(self, timeout=None):
        """Wait for the transport thread to exit.

        :ret: True if the thread is no longer running.
        """
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    async def connect(self, ssl_context=None):
        """Open the connection, making a single attempt.

        :parameter ssl_context: Context for secure URIs, None for the
            default certificate validation.
        :type ssl_context: ssl.SSLContext
        :raises ConnectFailedError: If the opening handshake failed.
        """
        kwargs = {
            'additional_headers': self._headers,
            'open_timeout': self._open_timeout,
        }
        if ssl_context is not None:
            kwargs['ssl'] = ssl_context

        logger.info('Connecting to %s', self.uri)
        try:
            ws = await websockets.connect(self.uri, **kwargs)
        except (OSError, asyncio.TimeoutError,
                websockets.exceptions.WebSocketException) as e:
            raise ConnectFailedError(self.uri, e)

        self._closed = asyncio.Event()
        with self._lock:
            aborted = self._close_requested
            if not aborted:
                self._ws = ws
                self._outbound = janus.Queue()
                self._accepting = True
        if aborted:
            # closed while the handshake was in flight
            await ws.close()
            raise asyncio.CancelledError()

        self._tasks = [asyncio.ensure_future(self._read()),
                       asyncio.ensure_future(self._send())]
        logger.info('Connected to %s', self.uri)
        self._fire(self.on_open)

    def send(self, data):
        """Queue a frame, text for str and binary for bytes.

        Frames are sent in the order they were queued. Safe to call from any
        thread.

        :raises NotYetConnectedError: If the connection is not open.
        """
        with self._lock:
            if not self._accepting:
                raise NotYetConnectedError()
            self._outbound.sync_q.put_nowait(data)

    def close(self):
        """Close the connection once all queued frames are sent.

        Safe to call from any thread, and more than once.
        """
        with self._lock:
            if self._close_requested:
                return
            self._close_requested = True
            self._accepting = False
            loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._begin_close)
        except RuntimeError:
            logger.debug('Transport loop already closed')

    def _begin_close(self):
        if self._ws is None:
            self._stop()
        else:
            self._outbound.async_q.put_nowait(_CLOSE)

    async def _read(self):
        while True:
            try:
                message = await self._ws.recv()
            except websockets.exceptions.ConnectionClosed as e:
                self._finish(*close_info(e))
                return
            except Exception as e:
                logger.exception('Failed reading from WebSocket')
                await self._fail(e)
                return

            if isinstance(message, str):
                logger.debug('Received: %s', message)
                self._fire(self.on_message, message)
            else:
                logger.debug('Ignoring %d byte binary message', len(message))

    async def _send(self):
        while True:
            try:
                data = await interruptable_get(self._outbound.async_q,
                                               self._closed)
            except InterruptError:
                return

            if data is _CLOSE:
                logger.info('Closing WebSocket')
                await self._ws.close()
                return

            try:
                await self._ws.send(data)
            except websockets.exceptions.ConnectionClosed:
                # reported by the reader
                return
            except Exception as e:
                logger.exception('Failed writing to WebSocket')
                await self._fail(e)
                return

    async def _fail(self, exc):
        with self._lock:
            self._accepting = False
        self._fire(self.on_error, exc)
        if self._closed.is_set():
            return
        await self._ws.close()
        self._finish(self._ws.close_code or ABNORMAL_CLOSURE,
                     self._ws.close_reason or '', False)

    def _finish(self, code, reason, remote):
        if self._closed.is_set():
            return
        with self._lock:
            self._accepting = False
        self._closed.set()
        logger.info('WebSocket closed, code: %s reason: %s remote: %s',
                    code, reason, remote)
        self._fire(self.on_close, code, reason, remote)
        self._stop()

    def _stop(self):
        if self._stopping:
            return
        self._stopping = True
        self._loop.stop()

    def _fire(self, callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception('Transport callback %s failed', callback)

    def _run_loop(self):
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            self._stopping = True
            pending = [task for task in asyncio.all_tasks(self._loop)
                       if not task.done()]
            for task in pending:
                task.cancel()
            self._loop.run_until_complete(
                asyncio.gather(*pending, return_exceptions=True)
            )
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.close()
            logger.debug('Transport thread for %s exiting', self.uri)
