import argparse
import logging
import os
import sys
import threading
import wave

from speechstream import audio
from speechstream import config
from speechstream import transcriber
from speechstream import uploader

logger = logging.getLogger(__name__)

FORMATS = ('raw', 'opus')


class CommandError(Exception):
    pass


def parse_args(argv):
    parser = argparse.ArgumentParser(
        description='Stream audio to a speech recognition service.')

    parser.add_argument('url',
                        help='WebSocket URL of the recognize endpoint. '
                             'Defaults to $SPEECHSTREAM_URL.',
                        nargs='?',
                        type=str)
    parser.add_argument('-w', '--wave',
                        help='Stream a 16 bit wave file instead of the mic.',
                        type=str)
    parser.add_argument('-u', '--username',
                        help='Username for service account (if applicable).',
                        type=str)
    parser.add_argument('-p', '--password',
                        help='Password for service account (if applicable).',
                        type=str)
    parser.add_argument('-t', '--token',
                        help='Authorization token (if applicable).',
                        type=str)
    parser.add_argument('-F', '--format',
                        help='Format to send audio in.',
                        default='raw',
                        choices=FORMATS)
    parser.add_argument('-c', '--channels',
                        help='Number of channels to record from mic.',
                        default=1,
                        type=int)
    parser.add_argument('-f', '--frequency',
                        help='Sampling frequency from mic.',
                        default=16000,
                        type=int)
    parser.add_argument('-d', '--device-index',
                        help='Device index for mic',
                        type=int)
    parser.add_argument('-i', '--inactivity-timeout',
                        help='Seconds of silence before the service stops.',
                        default=config.DEFAULT_INACTIVITY_TIMEOUT,
                        type=int)
    parser.add_argument('-k', '--insecure',
                        help='Do not verify the server certificate.',
                        action='store_true')
    parser.add_argument('--close-timeout',
                        help='Seconds to wait for final results.',
                        default=10.,
                        type=float)
    parser.add_argument('-v', '--verbose',
                        help='Log debug output.',
                        action='store_true')
    return parser.parse_args(argv)


def exit(error):
    print("ERROR: %s" % error, file=sys.stderr)
    sys.exit(1)


class PrintingDelegate(transcriber.EventDelegate):
    def __init__(self):
        super(PrintingDelegate, self).__init__()
        self.closed = threading.Event()
        self.errors = []
        self.register_event_handler(print)
        self.register_error_handler(self.errors.append)

    def on_open(self):
        print('Connected, streaming audio.')

    def on_close(self, code, reason, remote):
        print('Connection closed (%s %s)' % (code, reason))
        self.closed.set()


def auth_headers(args):
    token = args.token or os.environ.get('WATSON_STT_TOKEN')
    if token:
        return config.token_auth_header(token)
    username = args.username or os.environ.get('WATSON_STT_USER')
    password = args.password or os.environ.get('WATSON_STT_PASSWORD')
    if username or password:
        if not (username and password):
            raise CommandError('You must specify both a username and a '
                               'password.')
        return config.basic_auth_header(username, password)
    return {}


def get_audio_source(args):
    if args.wave:
        try:
            with wave.open(args.wave, 'rb') as wave_fp:
                frequency = wave_fp.getframerate()
        except (OSError, wave.Error) as e:
            raise CommandError('Cannot open %s: %s' % (args.wave, e))
        return audio.WaveSource(args.wave), frequency

    mic = audio.Microphone(
        channels=args.channels,
        rate=args.frequency,
        device_ndx=args.device_index)
    return mic, args.frequency


def build_config(args, frequency):
    if args.format == 'opus':
        audio_format = config.AUDIO_FORMAT_OPUS
    else:
        audio_format = config.raw_audio_format(frequency)

    kwargs = {
        'audio_format': audio_format,
        'inactivity_timeout': args.inactivity_timeout,
        'sample_rate': frequency,
    }
    if args.insecure:
        kwargs['insecure_tls'] = True
    try:
        return config.SessionConfig.from_env(args.url,
                                             headers=auth_headers(args),
                                             **kwargs)
    except ValueError as e:
        raise CommandError(e)


def transcribe(args):
    src, frequency = get_audio_source(args)
    cfg = build_config(args, frequency)

    delegate = PrintingDelegate()
    upl = uploader.Uploader(cfg, delegate)
    upl.prepare()

    pump = audio.AudioPump(src, upl)
    pump.start()
    try:
        while pump.is_alive():
            pump.join(.5)
    except KeyboardInterrupt:
        print('Stopping.')
        pump.halt()
        pump.join()

    if upl.is_upload_prepared():
        if not delegate.closed.wait(args.close_timeout):
            logger.warning('Timed out waiting for the service to finish')
    upl.close()
    upl.wait(args.close_timeout)

    if delegate.errors:
        raise CommandError(delegate.errors[-1])


def main(argv=None):
    args = parse_args(sys.argv[1:] if argv is None else argv)
    level = logging.DEBUG if args.verbose else config.LOG_LEVEL
    logging.basicConfig(level=level, format=config.LOG_FORMAT)
    try:
        transcribe(args)
    except CommandError as e:
        exit(error=e)
