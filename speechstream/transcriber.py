"""Recognition results

The service answers with JSON text messages. :class:`EventDelegate` parses
those messages in to :class:`TranscribeEvent` objects and hands them to the
registered event handlers.
"""

import json
import logging

from speechstream import delegate

logger = logging.getLogger(__name__)


class TranscribeResult(object):
    def __init__(self, transcript, confidence=None):
        self.transcript = transcript
        self.confidence = confidence

    def __str__(self):
        return 'TranscribeResult(transcript=%s, confidence=%s)' % (
            self.transcript, self.confidence
        )


class TranscribeEvent(object):
    def __init__(self, results, final):
        self.results = results
        self.final = final

    def __str__(self):
        ret = 'TranscribeEvent(results=[%s], final=%s)'
        results_str = ', '.join([str(x) for x in self.results])
        return ret % (results_str, self.final)


def msg_to_event(msg):
    """Convert a decoded recognition message in to a TranscribeEvent.

    :param msg: Decoded JSON message.
    :type msg: dict
    :rtype: TranscribeEvent
    """
    t_rs = []
    final = False
    for result in msg.get('results', []):
        final = final or result.get('final', False)
        for alt in result.get('alternatives', []):
            t_rs.append(TranscribeResult(alt['transcript'],
                                         alt.get('confidence', None)))
    return TranscribeEvent(t_rs, final)


class EventDelegate(delegate.SpeechDelegate):
    """Delegate which turns recognition messages in to events.

    Messages which are not JSON, the ``{"state": "listening"}``
    acknowledgement of the start header, and messages without results are
    not turned in to events. ``{"error": ...}`` messages are reported through
    :func:`on_error`.
    """
    def __init__(self):
        self._ev_handlers = []
        self._err_handlers = []

    def register_event_handler(self, handler):
        self._ev_handlers.append(handler)

    def register_error_handler(self, handler):
        self._err_handlers.append(handler)

    def on_message(self, message):
        try:
            msg = json.loads(message)
        except ValueError:
            logger.warning('Ignoring message which is not JSON: %s', message)
            return
        if not isinstance(msg, dict):
            return

        if 'error' in msg:
            self.on_error(msg['error'])
        elif msg.get('state') == 'listening':
            logger.debug('Service is listening')
        elif 'results' in msg:
            self._handle_event(msg_to_event(msg))

    def on_error(self, message):
        for handler in self._err_handlers:
            handler(message)

    def _handle_event(self, event):
        for handler in self._ev_handlers:
            handler(event)
