"""
Decrypting subscription on the shared message log.

MessageSyncStream keeps at most one listener on the log. Every child the
listener sees is tagged with the listener's generation and queued; a single
worker thread takes them off the queue one at a time, decrypts the fields and
hands the result to the consumer. detach() bumps the generation, so anything
still queued or in flight for an older listener is dropped instead of emitted.
"""
import logging, queue, threading
from typing import Any, Callable, Optional

from .net import ChildEventListener, LogError
from common.crypto import CipherCodec
from common.messages import MalformedRecordError, MessageRecord

logger = logging.getLogger(__name__)

_CHILD_ADDED = "child_added"
_CANCELLED = "cancelled"
_STOP = object()   # worker shutdown sentinel


class _StreamListener(ChildEventListener):
    ''' Feeds the stream's queue; modify/remove/move stay no-ops '''
    def __init__(self, stream: "MessageSyncStream", generation: int):
        self.stream = stream
        self.generation = generation

    def on_child_added(self, key: str, value: Any):
        self.stream._queue.put((self.generation, _CHILD_ADDED, key, value))

    def on_cancelled(self, error: LogError):
        self.stream._queue.put((self.generation, _CANCELLED, None, error))


class MessageSyncStream:
    '''
    Attach/detach state machine around one log reference.

    Inputs:
        - reference: object with add_child_event_listener / remove_event_listener
        - codec: CipherCodec used to decrypt every field
        - on_message: called with each decrypted MessageRecord, in log order
        - on_error: called with a LogError when the subscription is cancelled
    '''
    def __init__(self, reference, codec: CipherCodec,
                 on_message: Callable[[MessageRecord], None],
                 on_error: Optional[Callable[[LogError], None]] = None):
        self.reference = reference
        self.codec = codec
        self.on_message = on_message
        self.on_error = on_error
        self._lock = threading.RLock()   # reentrant: consumers may detach from inside on_message
        self._queue: "queue.Queue" = queue.Queue()
        self._generation = 0
        self._listener: Optional[_StreamListener] = None
        self._worker: Optional[threading.Thread] = None
        self._closed = False

    @property
    def attached(self) -> bool:
        with self._lock:
            return self._listener is not None

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def attach(self):
        ''' Register a fresh listener; does nothing when one is already registered '''
        with self._lock:
            if self._closed:
                raise RuntimeError("stream is closed")
            if self._listener is not None:
                return
            self._generation += 1
            listener = _StreamListener(self, self._generation)
            self._listener = listener
            self._start_worker()
            try:
                self.reference.add_child_event_listener(listener)
            except ConnectionError:
                self._listener = None
                raise
            logger.debug("attached listener generation %d", listener.generation)

    def detach(self):
        '''
        Unregister the listener. Once this returns, the consumer sees no further
        emissions from it, even for children already queued.
        '''
        with self._lock:
            if self._listener is None:
                return
            listener, self._listener = self._listener, None
            self._generation += 1
            self.reference.remove_event_listener(listener)
            logger.debug("detached listener generation %d", listener.generation)

    def drain(self):
        ''' Block until every queued event has been handled or dropped '''
        if self._worker is None:
            return   # never attached, or closed
        self._queue.join()

    def close(self):
        ''' Detach and stop the worker thread '''
        self.detach()
        with self._lock:
            self._closed = True
            worker, self._worker = self._worker, None
        if worker is not None:
            self._queue.put(_STOP)
            if worker is not threading.current_thread():
                worker.join()

    def _start_worker(self):
        if self._worker is None:
            self._worker = threading.Thread(target=self._run, name="message-sync", daemon=True)
            self._worker.start()

    def _run(self):
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                generation, kind, key, value = item
                with self._lock:
                    if self._listener is None or generation != self._generation:
                        logger.debug("dropping %s from stale listener generation %d", kind, generation)
                        continue
                    if kind == _CHILD_ADDED:
                        self._handle_child(key, value)
                    else:
                        self._handle_cancelled(value)
            finally:
                self._queue.task_done()

    def _handle_child(self, key: str, value: Any):
        try:
            record = MessageRecord.from_dict(value)
        except MalformedRecordError as exc:
            logger.warning("skipping malformed record %s: %s", key, exc)
            return
        # sender name first, then whichever payload the record carries
        decoded = record.map_fields(self.codec.decode)
        try:
            self.on_message(decoded)
        except Exception:
            # a broken consumer must not stop the stream
            logger.exception("message consumer failed on record %s", key)

    def _handle_cancelled(self, error: LogError):
        logger.warning("subscription cancelled: %s", error.code)
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception:
            logger.exception("error consumer failed")
