"""Listener interface for upload sessions"""


class SpeechDelegate(object):
    """Receives the lifecycle and transcript events of an upload session.

    Subclasses override the methods they are interested in. All methods are
    called from the session's network thread, so they should return
    quickly.
    """
    def on_open(self):
        """The connection is open and the start header has been queued.

        Frames go out in the order they are queued, so the header reaches
        the service before any audio.
        """

    def on_message(self, message):
        """A text message was received from the service.

        :param message: The message, exactly as received.
        :type message: str
        """

    def on_error(self, message):
        """The session failed.

        :param message: Human readable description of the failure.
        :type message: str
        """

    def on_close(self, code, reason, remote):
        """The connection was closed.

        :param code: WebSocket close code.
        :type code: int
        :param reason: WebSocket close reason.
        :type reason: str
        :param remote: True if the service initiated the close.
        :type remote: bool
        """
