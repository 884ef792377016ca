"""Toolkit for streaming audio to speech recognition services.

The main component of this toolkit is :class:`uploader.Uploader`, which
owns one WebSocket connection to a recognition service. An audio capture
thread hands it raw audio through :func:`uploader.Uploader.on_has_data`,
the audio is encoded by an :class:`encoder.Encoder` and sent to the
service, and every message the service sends back is passed to a
:class:`delegate.SpeechDelegate`.
"""
import asyncio


class InterruptError(Exception):
    pass


async def interruptable_get(queue, event):
    """Get an item from an asyncio queue unless event is set first.

    An item which is already available is returned even if event is set.

    :parameter queue: Queue to read from.
    :type queue: asyncio.Queue
    :parameter event: Event which interrupts the get.
    :type event: asyncio.Event
    :raises InterruptError: If event is set before an item is available.
    """
    if not queue.empty():
        return queue.get_nowait()

    getter = asyncio.ensure_future(queue.get())
    interrupt = asyncio.ensure_future(event.wait())
    try:
        await asyncio.wait((getter, interrupt),
                           return_when=asyncio.FIRST_COMPLETED)
    finally:
        interrupt.cancel()
        if not getter.done():
            getter.cancel()

    if getter.done() and not getter.cancelled():
        return getter.result()
    raise InterruptError()
