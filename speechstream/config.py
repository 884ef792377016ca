"""Session configuration

:class:`SessionConfig` is the immutable set of parameters one upload session
is created with. Defaults can be taken from the environment with
:func:`SessionConfig.from_env`.
"""

import base64
import collections
import os
import types
from urllib import parse


AUDIO_FORMAT_RAW = 'audio/l16;rate=16000'
"""Content type of raw 16 bit little endian PCM at 16kHz."""

AUDIO_FORMAT_OPUS = 'audio/ogg;codecs=opus'
"""Content type of Opus packets in an Ogg container."""

DEFAULT_INACTIVITY_TIMEOUT = 30
DEFAULT_SAMPLE_RATE = 16000

SECURE_SCHEMES = ('wss', 'https')

LOG_LEVEL = os.environ.get('SPEECHSTREAM_LOG_LEVEL', 'WARNING').upper()
LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


def raw_audio_format(rate):
    """Content type for raw PCM sampled at rate."""
    return 'audio/l16;rate=%d' % rate


def basic_auth_header(user, passwd):
    seed = ':'.join((user, passwd))
    return {'Authorization': ' '.join(
        ('Basic', base64.b64encode(seed.encode('utf-8')).decode()))}


def token_auth_header(token):
    return {'X-Watson-Authorization-Token': token}


def _env_flag(name):
    return os.environ.get(name, '').strip().lower() in ('1', 'true', 'yes')


_SessionConfigBase = collections.namedtuple(
    '_SessionConfigBase',
    ['server_uri', 'audio_format', 'inactivity_timeout', 'headers',
     'insecure_tls', 'open_timeout', 'sample_rate']
)


class SessionConfig(_SessionConfigBase):
    """Parameters of one upload session.

    :param server_uri: WebSocket URI of the recognize endpoint.
    :type server_uri: str
    :param audio_format: Content type of the audio which is streamed. This
        also selects the encoder.
    :type audio_format: str
    :param inactivity_timeout: Seconds of silence after which the service
        closes the connection. Only sent to the service.
    :type inactivity_timeout: int
    :param headers: Extra headers for the opening handshake.
    :type headers: dict
    :param insecure_tls: Accept any server certificate on secure URIs.
    :type insecure_tls: bool
    :param open_timeout: Seconds to wait for the opening handshake, None to
        wait forever.
    :type open_timeout: float
    :param sample_rate: Sampling frequency of the captured audio, used by
        compressing encoders.
    :type sample_rate: int
    """
    __slots__ = ()

    def __new__(cls, server_uri, audio_format=AUDIO_FORMAT_RAW,
                inactivity_timeout=DEFAULT_INACTIVITY_TIMEOUT, headers=None,
                insecure_tls=False, open_timeout=None,
                sample_rate=DEFAULT_SAMPLE_RATE):
        headers = types.MappingProxyType(dict(headers or {}))
        return super(SessionConfig, cls).__new__(
            cls, server_uri, audio_format, int(inactivity_timeout), headers,
            bool(insecure_tls), open_timeout, int(sample_rate)
        )

    @property
    def is_secure(self):
        scheme = parse.urlsplit(self.server_uri).scheme
        return scheme.lower() in SECURE_SCHEMES

    @classmethod
    def from_env(cls, server_uri=None, headers=None, **kwargs):
        """Build a config, filling unset values from the environment.

        Reads ``SPEECHSTREAM_URL``, ``SPEECHSTREAM_AUDIO_FORMAT``,
        ``SPEECHSTREAM_INACTIVITY_TIMEOUT`` and ``SPEECHSTREAM_INSECURE_TLS``.
        When no headers are given, ``WATSON_STT_USER`` and
        ``WATSON_STT_PASSWORD`` are turned into a basic auth header.
        """
        server_uri = server_uri or os.environ.get('SPEECHSTREAM_URL')
        if not server_uri:
            raise ValueError('No server URI given and SPEECHSTREAM_URL '
                             'is not set')
        kwargs.setdefault('audio_format', os.environ.get(
            'SPEECHSTREAM_AUDIO_FORMAT', AUDIO_FORMAT_RAW))
        kwargs.setdefault('inactivity_timeout', os.environ.get(
            'SPEECHSTREAM_INACTIVITY_TIMEOUT', DEFAULT_INACTIVITY_TIMEOUT))
        kwargs.setdefault('insecure_tls',
                          _env_flag('SPEECHSTREAM_INSECURE_TLS'))

        if headers is None:
            user = os.environ.get('WATSON_STT_USER')
            passwd = os.environ.get('WATSON_STT_PASSWORD')
            headers = basic_auth_header(user, passwd) if user and passwd else {}
        return cls(server_uri, headers=headers, **kwargs)
