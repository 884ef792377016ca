import array
import os
import wave

import fixtures

from speechstream import audio
from speechstream import uploader
from speechstream.tests import base


def write_wave(path, frames, channels=1, width=2, rate=16000):
    with wave.open(path, 'wb') as wave_fp:
        wave_fp.setnchannels(channels)
        wave_fp.setsampwidth(width)
        wave_fp.setframerate(rate)
        wave_fp.writeframes(frames)
    return path


class FakeUploader(object):
    def __init__(self, results=None):
        self.buffers = []
        self.stopped = False
        self._results = list(results or [])

    def send_audio(self, buffer):
        self.buffers.append(buffer)
        if self._results:
            return self._results.pop(0)
        return uploader.UploadResult(uploader.DELIVERED, len(buffer))

    def stop(self):
        self.stopped = True
        return True


class WaveSourceTestCase(base.TestCase):
    def setUp(self):
        super(WaveSourceTestCase, self).setUp()
        self.tmp = self.useFixture(fixtures.TempDir()).path

    def test_chunks(self):
        path = write_wave(os.path.join(self.tmp, 'mono.wav'),
                          b'\1\0' * 2500, rate=8000)
        src = audio.WaveSource(path, chunk_frames=1000)
        with src.listen():
            chunks = list(src)
        self.assertEqual([2000, 2000, 1000], [len(x.audio) for x in chunks])
        for chunk in chunks:
            self.assertEqual(2, chunk.width)
            self.assertEqual(8000, chunk.freq)
        self.assertAlmostEqual(.125, chunks[1].start_time -
                               chunks[0].start_time, delta=1e-4)
        self.assertFalse(src.running)

    def test_stereo_mixed_down(self):
        frames = array.array('h', [100, 300] * 10).tobytes()
        path = write_wave(os.path.join(self.tmp, 'stereo.wav'), frames,
                          channels=2)
        src = audio.WaveSource(path)
        with src.listen():
            chunks = list(src)
        self.assertEqual(array.array('h', [200] * 10).tobytes(),
                         chunks[0].audio)

    def test_unsupported_width(self):
        path = write_wave(os.path.join(self.tmp, 'narrow.wav'), b'\0' * 10,
                          width=1)
        src = audio.WaveSource(path)
        self.assertRaises(audio.UnsupportedWaveError, src.start)


class ToMonoTestCase(base.TestCase):
    def test_negative_samples(self):
        frames = array.array('h', [-100, -300, 5, 6]).tobytes()
        self.assertEqual(array.array('h', [-200, 5]).tobytes(),
                         audio.to_mono(frames))


class ListSource(audio.AudioSource):
    def __init__(self, buffers):
        super(ListSource, self).__init__()
        self.buffers = buffers
        self.started = False

    def start(self):
        super(ListSource, self).start()
        self.started = True

    def __iter__(self):
        for buf in self.buffers:
            yield audio.AudioChunk(0, buf, 2, 16000)


class AudioPumpTestCase(base.TestCase):
    def test_pump(self):
        src = ListSource([b'\0\0', b'\1\1'])
        upl = FakeUploader()
        pump = audio.AudioPump(src, upl)
        pump.start()
        pump.join(base.TIMEOUT)
        self.assertEqual([b'\0\0', b'\1\1'], upl.buffers)
        self.assertEqual(4, pump.sent_bytes)
        self.assertTrue(upl.stopped)
        self.assertTrue(src.started)
        self.assertFalse(src.running)

    def test_stops_when_not_ready(self):
        src = ListSource([b'\0\0', b'\1\1'])
        upl = FakeUploader([uploader.UploadResult(uploader.NOT_READY, 0)])
        pump = audio.AudioPump(src, upl)
        pump.start()
        pump.join(base.TIMEOUT)
        self.assertEqual([b'\0\0'], upl.buffers)
        self.assertEqual(uploader.NOT_READY, pump.result.status)
        self.assertFalse(upl.stopped)

    def test_halt(self):
        src = ListSource([b'\0\0', b'\1\1'])
        upl = FakeUploader()
        pump = audio.AudioPump(src, upl)
        pump.halt()
        pump.run()
        self.assertEqual([], upl.buffers)
        self.assertTrue(upl.stopped)
