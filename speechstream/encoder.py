"""Audio encoders

An :class:`Encoder` turns raw PCM buffers handed to an upload session into
the payload which is written to the service. The encoder for a session is
picked from its audio format by :func:`encoder_for_format`.
"""

import logging
import struct

from speechstream import config

logger = logging.getLogger(__name__)


class UnsupportedAudioFormatError(Exception):
    def __init__(self, audio_format):
        super(UnsupportedAudioFormatError, self).__init__(
            'No encoder for audio format: %s' % audio_format
        )


class Encoder(object):
    """Base class for encoders.

    Encoders are bound to the uploader they write to with
    :func:`init_encoder_with_uploader` before any audio is encoded.
    """
    def __init__(self):
        self._uploader = None

    def init_encoder_with_uploader(self, uploader):
        self._uploader = uploader

    def on_start(self):
        """Called once, right after the start header was sent.

        Subclasses write any priming data their format needs here.
        """

    def encode_and_write(self, buffer):
        """Encode buffer and write the result to the uploader.

        :param buffer: Raw PCM audio.
        :type buffer: bytes
        :ret: Number of bytes written.
        :rtype: int
        """
        raise NotImplementedError()

    def _write(self, data):
        if self._uploader.upload(bytes(data)):
            return len(data)
        return 0


class RawEncoder(Encoder):
    """Pass PCM through untouched."""
    def encode_and_write(self, buffer):
        try:
            return self._write(buffer)
        except OSError as e:
            logger.error('Failed to write audio: %s', e)
            return 0


def _crc_table():
    table = []
    for i in range(256):
        r = i << 24
        for _ in range(8):
            if r & 0x80000000:
                r = ((r << 1) ^ 0x04c11db7) & 0xffffffff
            else:
                r = (r << 1) & 0xffffffff
        table.append(r)
    return table


_CRC_TABLE = _crc_table()


def ogg_crc(data):
    """Ogg page checksum (CRC-32, polynomial 0x04c11db7, not reflected)."""
    crc = 0
    for byte in data:
        crc = (((crc << 8) & 0xffffffff) ^
               _CRC_TABLE[((crc >> 24) & 0xff) ^ byte])
    return crc


class OggPageWriter(object):
    """Build Ogg pages holding one packet each.

    :param serial: Bitstream serial number.
    :type serial: int
    """
    HEADER_FMT = '<4sBBqIIIB'
    CRC_OFFSET = 22

    BOS = 0x02
    EOS = 0x04

    def __init__(self, serial=0x5354):
        self._serial = serial
        self._seq = 0

    def page(self, packet, granule, header_type=0):
        # lacing values, a trailing value below 255 ends the packet
        lacing = [255] * (len(packet) // 255) + [len(packet) % 255]
        if len(lacing) > 255:
            raise ValueError('Packet too large for a single page')
        header = struct.pack(self.HEADER_FMT, b'OggS', 0, header_type,
                             granule, self._serial, self._seq, 0,
                             len(lacing))
        self._seq += 1
        page = bytearray(header + bytes(lacing) + packet)
        crc = ogg_crc(page)
        page[self.CRC_OFFSET:self.CRC_OFFSET + 4] = struct.pack('<I', crc)
        return bytes(page)


class OpusEncoder(Encoder):
    """Encode PCM as Opus in an Ogg container.

    PCM is cut in to 20ms frames, each frame is encoded with opuslib and
    written as its own Ogg page. Leftover samples are kept until the next
    buffer arrives.

    :param rate: Sampling frequency of the PCM input.
    :type rate: int
    :param channels: Number of interleaved channels.
    :type channels: int
    """
    FRAME_DURATION = .02
    # Ogg Opus granule positions always count 48kHz samples
    GRANULE_RATE = 48000
    PRE_SKIP = 312
    VENDOR = b'speechstream'

    def __init__(self, rate=16000, channels=1):
        super(OpusEncoder, self).__init__()
        # opuslib loads libopus when imported
        import opuslib
        self._opuslib = opuslib
        self._rate = rate
        self._channels = channels
        self._encoder = opuslib.Encoder(rate, channels,
                                        opuslib.APPLICATION_VOIP)
        self._frame_size = int(rate * self.FRAME_DURATION)
        self._frame_bytes = self._frame_size * channels * 2
        self._granule_step = int(self.GRANULE_RATE * self.FRAME_DURATION)
        self._granule = 0
        self._pending = b''
        self._pages = OggPageWriter()

    def on_start(self):
        head = struct.pack('<8sBBHIhB', b'OpusHead', 1, self._channels,
                           self.PRE_SKIP, self._rate, 0, 0)
        tags = (b'OpusTags' + struct.pack('<I', len(self.VENDOR)) +
                self.VENDOR + struct.pack('<I', 0))
        self._write(self._pages.page(head, 0, OggPageWriter.BOS))
        self._write(self._pages.page(tags, 0))

    def encode_and_write(self, buffer):
        self._pending += bytes(buffer)
        written = 0
        try:
            while len(self._pending) >= self._frame_bytes:
                frame = self._pending[:self._frame_bytes]
                self._pending = self._pending[self._frame_bytes:]
                packet = self._encoder.encode(frame, self._frame_size)
                self._granule += self._granule_step
                written += self._write(self._pages.page(packet,
                                                        self._granule))
        except (self._opuslib.OpusError, OSError) as e:
            logger.error('Failed to encode audio: %s', e)
            return 0
        return written


def _normalize(audio_format):
    return audio_format.replace(' ', '').lower()


def encoder_for_format(audio_format, rate=16000):
    """Create the encoder matching a content type.

    :param audio_format: Content type from the session configuration.
    :type audio_format: str
    :param rate: Capture rate, used by compressing encoders.
    :type rate: int
    :raises UnsupportedAudioFormatError: For unknown content types.
    """
    fmt = _normalize(audio_format)
    if fmt.startswith('audio/l16'):
        return RawEncoder()
    elif fmt == _normalize(config.AUDIO_FORMAT_OPUS):
        return OpusEncoder(rate=rate)
    raise UnsupportedAudioFormatError(audio_format)
