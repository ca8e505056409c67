import logging
from typing import Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

logger = logging.getLogger(__name__)

# Shared secret baked into every client. Same bytes as the mobile app so that
# records written by either side decrypt on the other.
DEFAULT_KEY = bytes([9, 115, 51, 86, 105, 4, 225, 233, 188, 88, 17, 20, 3, 151, 119, 203])
KEY_SIZE = 16          # AES-128
BLOCK_BITS = 128       # AES block size for PKCS#7
TEXT_ENC = "utf-8"     # plaintext <-> bytes
WIRE_ENC = "latin-1"   # one code point per byte, 0-255 survive untouched


class CipherUnavailableError(Exception):
    """Raised when the AES primitive can't be set up, or when encoding with an uninitialized codec."""
    pass


class CipherCodec:
    ''' Static-key AES text codec used for every field of a chat record '''
    def __init__(self, key: bytes = DEFAULT_KEY):
        if len(key) != KEY_SIZE:
            raise ValueError(f"key must be {KEY_SIZE} bytes, got {len(key)}")
        self._key = bytes(key)
        self._cipher: Optional[Cipher] = None   # built by initialize()

    @property
    def available(self) -> bool:
        ''' True once initialize() succeeded '''
        return self._cipher is not None

    def initialize(self):
        '''
        Build the AES cipher for the fixed key.
        Raises CipherUnavailableError if the backend has no AES/ECB support;
        the codec then stays unusable for encode but decode keeps passing text through.
        '''
        try:
            self._cipher = Cipher(algorithms.AES(self._key), modes.ECB())
        except UnsupportedAlgorithm as exc:
            raise CipherUnavailableError("AES/ECB is not available") from exc

    def encode(self, plain: str) -> str:
        '''
        Encrypt a text value.
        Input:
            - plain: any string
        Output: ciphertext as a latin-1 string (one char per cipher byte)
        Identical plaintext always yields identical ciphertext (no IV).
        '''
        if self._cipher is None:
            raise CipherUnavailableError("codec is not initialized")
        padder = padding.PKCS7(BLOCK_BITS).padder()
        data = padder.update(plain.encode(TEXT_ENC)) + padder.finalize()
        enc = self._cipher.encryptor()   # fresh context per call, safe across threads
        ct = enc.update(data) + enc.finalize()
        return ct.decode(WIRE_ENC)

    def try_decode(self, cipher_text: str) -> Optional[str]:
        '''
        Decrypt a value produced by encode().
        Input:
            - cipher_text: latin-1 string from the log
        Output: the plaintext, or None if the value is not valid ciphertext under our key
        '''
        if self._cipher is None:
            return None
        try:
            ct = cipher_text.encode(WIRE_ENC)   # code points > 255 can't be ours
            dec = self._cipher.decryptor()
            data = dec.update(ct) + dec.finalize()   # wrong block length
            unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
            raw = unpadder.update(data) + unpadder.finalize()   # bad padding
            return raw.decode(TEXT_ENC)   # tampered bytes / wrong key
        except ValueError:
            # UnicodeEncodeError and UnicodeDecodeError are ValueErrors too
            return None

    def decode(self, cipher_text: str) -> str:
        '''
        Fail-open decrypt: returns the input unchanged when it can't be decrypted.
        Plaintext sent with encryption off comes through this path as well.
        '''
        plain = self.try_decode(cipher_text)
        if plain is None:
            logger.debug("decode pass-through for %d-char value", len(cipher_text))
            return cipher_text
        return plain
