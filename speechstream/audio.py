"""Audio capture

:class:`AudioSource` subclasses produce :class:`AudioChunk` objects from a
wave file or a microphone. An :class:`AudioPump` is the capture thread which
feeds those chunks in to an :class:`uploader.Uploader`.
"""

import array
import collections
from contextlib import contextmanager
import logging
import threading
import time
import wave

try:
    import pyaudio
except ImportError:
    # pyaudio is only needed for Microphone and comes with the mic extra
    pass

from speechstream import uploader

logger = logging.getLogger(__name__)


# Using a namedtuple for audio chunks due to their lightweight nature
AudioChunk = collections.namedtuple('AudioChunk',
                                    ['start_time', 'audio', 'width', 'freq'])
"""A sequence of audio samples.

:param start_time: Unix timestamp of the first sample.
:type start_time: float
:param audio: Bytes array of audio samples.
:type audio: bytes
:param width: Number of bytes per sample.
:type width: int
:param freq: Sampling frequency.
:type freq: int
"""


class UnsupportedWaveError(Exception):
    def __init__(self, path, reason):
        super(UnsupportedWaveError, self).__init__(
            'Cannot stream %s: %s' % (path, reason)
        )


def to_mono(frames):
    """Average the channels of interleaved 16 bit stereo frames."""
    samples = array.array('h', frames)
    mono = array.array('h', [(left + right) // 2 for left, right
                             in zip(samples[::2], samples[1::2])])
    return mono.tobytes()


class AudioSource(object):
    """Base class for providing audio.

    Subclasses implement :func:`start`, :func:`stop` and iteration over
    :class:`AudioChunk` objects.
    """
    def __init__(self):
        self.running = False

    @contextmanager
    def listen(self):
        """Context manager which starts and stops the source."""
        self.start()
        try:
            yield self
        finally:
            self.stop()

    def start(self):
        self.running = True

    def stop(self):
        self.running = False

    def __iter__(self):
        raise NotImplementedError()


class WaveSource(AudioSource):
    """Use a 16 bit wave file as an audio source.

    Stereo files are mixed down to mono.

    :parameter wave_path: Path to wave file.
    :type wave_path: string
    :parameter chunk_frames: Number of frames in each chunk.
    :type chunk_frames: int
    """
    def __init__(self, wave_path, chunk_frames=1600):
        super(WaveSource, self).__init__()
        self._wave_path = wave_path
        self._chunk_frames = chunk_frames
        self._wave_fp = None
        self.freq = None
        self._channels = None

    def start(self):
        self._wave_fp = wave.open(self._wave_path, 'rb')
        self.freq = self._wave_fp.getframerate()
        self._channels = self._wave_fp.getnchannels()
        width = self._wave_fp.getsampwidth()
        if width != 2:
            self._wave_fp.close()
            raise UnsupportedWaveError(self._wave_path,
                                       'sample width is %d bytes' % width)
        if self._channels > 2:
            self._wave_fp.close()
            raise UnsupportedWaveError(self._wave_path,
                                       '%d channels' % self._channels)
        super(WaveSource, self).start()

    def stop(self):
        super(WaveSource, self).stop()
        if self._wave_fp is not None:
            self._wave_fp.close()
            self._wave_fp = None

    def __iter__(self):
        start_time = time.time()
        frame_ndx = 0
        while self.running:
            frames = self._wave_fp.readframes(self._chunk_frames)
            if len(frames) == 0:
                return
            if self._channels == 2:
                frames = to_mono(frames)
            yield AudioChunk(start_time + float(frame_ndx) / self.freq,
                             audio=frames, width=2, freq=self.freq)
            frame_ndx += len(frames) // 2


class Microphone(AudioSource):
    """Use a local microphone as an audio source.

    :parameter channels: Number of channels in microphone.
    :type channels: int
    :parameter rate: Sample frequency
    :type rate: int
    :parameter device_ndx: PyAudio device index
    :type device_ndx: int
    :parameter chunk_frames: Number of frames in each chunk.
    :type chunk_frames: int
    """
    def __init__(self, channels=1, rate=16000, device_ndx=None,
                 chunk_frames=1600):
        super(Microphone, self).__init__()
        self._channels = channels
        self.freq = rate
        self._device_ndx = device_ndx
        self._chunk_frames = chunk_frames
        self._pyaudio = None
        self._stream = None

    def start(self):
        self._pyaudio = pyaudio.PyAudio()
        self._stream = self._pyaudio.open(
            input=True,
            format=pyaudio.paInt16,
            channels=self._channels,
            rate=self.freq,
            input_device_index=self._device_ndx,
            frames_per_buffer=self._chunk_frames
        )
        super(Microphone, self).start()

    def stop(self):
        super(Microphone, self).stop()
        self._stream.stop_stream()
        self._stream.close()
        self._pyaudio.terminate()

    def __iter__(self):
        while self.running:
            audio = self._stream.read(self._chunk_frames,
                                      exception_on_overflow=False)
            if self._channels == 2:
                audio = to_mono(audio)
            yield AudioChunk(time.time(), audio=audio, width=2,
                             freq=self.freq)


class AudioPump(threading.Thread):
    """Capture thread feeding an audio source in to an uploader.

    Once the source runs out of audio, or :func:`halt` is called, the end of
    audio marker is sent. Pumping stops early if the uploader can no longer
    take audio.

    :parameter source: Audio to send.
    :type source: AudioSource
    :parameter upl: Session to send the audio to.
    :type upl: uploader.Uploader
    """
    def __init__(self, source, upl):
        super(AudioPump, self).__init__(name='audio-pump', daemon=True)
        self._source = source
        self._uploader = upl
        self._halted = threading.Event()
        self.sent_bytes = 0
        self.result = None

    def halt(self):
        self._halted.set()

    def run(self):
        with self._source.listen():
            for chunk in self._source:
                if self._halted.is_set():
                    break
                self.result = self._uploader.send_audio(chunk.audio)
                if self.result.status != uploader.DELIVERED:
                    logger.warning('Uploader stopped taking audio (%s)',
                                   self.result.status)
                    return
                self.sent_bytes += self.result.size

        logger.info('Sent %d bytes of audio', self.sent_bytes)
        self._uploader.stop()
