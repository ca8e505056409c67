import logging, threading
from typing import Any, Callable, Dict, List, Optional

from .net import LogError
from .settings import EncryptionModeSwitch
from .sync import MessageSyncStream
from common.crypto import CipherCodec, CipherUnavailableError
from common.messages import MessageRecord

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"
DEFAULT_MSG_LENGTH_LIMIT = 1000
MSG_LENGTH_CONFIG_KEY = "secure_msg_length"


class EmptyMessageError(ValueError):
    """Raised when trying to send a blank text message."""
    pass


class MessageTooLongError(ValueError):
    """Raised when a text message is over the configured length limit."""
    def __init__(self, length: int, limit: int):
        super().__init__(f"message is {length} characters, limit is {limit}")
        self.length, self.limit = length, limit


class EncryptionUnavailableError(Exception):
    """Raised when AES mode is selected but the cipher could not be initialized."""
    pass


class ChatSession:
    ''' Send path plus the sign-in / pause lifecycle that drives the sync stream '''
    def __init__(self, reference, codec: CipherCodec, mode: EncryptionModeSwitch,
                 on_message: Optional[Callable[[MessageRecord], None]] = None,
                 on_error: Optional[Callable[[LogError], None]] = None):
        self.reference = reference
        self.codec = codec
        self.mode = mode
        self.username = ANONYMOUS
        self.signed_in = False
        self.length_limit = DEFAULT_MSG_LENGTH_LIMIT
        self.messages: List[MessageRecord] = []   # what the UI shows, in log order
        self._messages_lock = threading.Lock()
        self._on_message = on_message
        self.stream = MessageSyncStream(reference, codec, self._received, on_error)

        if not codec.available:
            try:
                codec.initialize()
            except CipherUnavailableError:
                # plaintext mode keeps working; AES sends will be refused
                logger.error("AES unavailable, encrypted sending disabled", exc_info=True)

    def _received(self, record: MessageRecord):
        with self._messages_lock:
            self.messages.append(record)
        if self._on_message:
            self._on_message(record)

    def clear_messages(self):
        with self._messages_lock:
            self.messages.clear()

    def snapshot(self) -> List[MessageRecord]:
        with self._messages_lock:
            return list(self.messages)

    # lifecycle

    def sign_in(self, username: str):
        self.stream.attach()   # raises ConnectionError; the session stays signed out
        self.username = username
        self.signed_in = True

    def sign_out(self):
        self.username = ANONYMOUS
        self.signed_in = False
        self.stream.detach()
        self.clear_messages()

    def pause(self):
        self.stream.detach()
        self.clear_messages()   # after detach, so nothing lands in the list in between

    def resume(self):
        if self.signed_in:
            self.stream.attach()

    def close(self):
        self.stream.close()

    def apply_config(self, config: Optional[Dict[str, Any]]):
        ''' Take the message length limit from the server config, if it has a usable one '''
        if not config:
            return
        try:
            limit = int(config.get(MSG_LENGTH_CONFIG_KEY, self.length_limit))
        except (TypeError, ValueError):
            logger.warning("bad %s in config: %r", MSG_LENGTH_CONFIG_KEY, config.get(MSG_LENGTH_CONFIG_KEY))
            return
        if limit <= 0:
            logger.warning("ignoring non-positive message length limit %d", limit)
            return
        self.length_limit = limit
        logger.debug("Secure message length = %d", limit)

    # send path

    def _seal(self, record: MessageRecord) -> MessageRecord:
        # mode is read per send: settings may flip between two messages
        if not self.mode.encrypts():
            return record
        if not self.codec.available:
            raise EncryptionUnavailableError("AES is selected but not available")
        return record.map_fields(self.codec.encode)

    def send_text(self, text: str) -> MessageRecord:
        '''
        Encrypt (if enabled) and append a text message.
        Output: the record as stored in the log
        '''
        if not text.strip():
            raise EmptyMessageError("nothing to send")
        if len(text) > self.length_limit:
            raise MessageTooLongError(len(text), self.length_limit)
        stored = self._seal(MessageRecord(sender_name=self.username, text=text))
        self.reference.push(stored.to_dict())
        return stored

    def send_photo(self, photo_url: str) -> MessageRecord:
        '''
        Append a photo message. photo_url comes from the upload collaborator
        and is treated like any other text field.
        '''
        stored = self._seal(MessageRecord(sender_name=self.username, photo_url=photo_url))
        self.reference.push(stored.to_dict())
        return stored
