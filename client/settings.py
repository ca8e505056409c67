"""
User preferences for the chat client.

Preferences is a small JSON-file key/value store with change listeners; the
settings UI writes to it and everything else reads. EncryptionModeSwitch is the
single setting the message pipeline cares about.
"""
import json, logging, os, threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_PREFS_PATH = Path.home() / ".securechat" / "prefs.json"

CRYPTO_ALGORITHM_KEY = "cryptography_algorithm"
MODE_NONE = "none"
MODE_AES = "aes"
MODES = (MODE_NONE, MODE_AES)

Listener = Callable[["Preferences", str], None]


class Preferences:
    ''' JSON-backed string preferences, shared across threads '''
    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None   # None = in-memory only
        self._lock = threading.Lock()
        self._values: Dict[str, str] = {}
        self._listeners: List[Listener] = []
        if self.path is not None and self.path.exists():
            self._values = self._load()

    def _load(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("ignoring unreadable preferences file %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("ignoring preferences file %s: not an object", self.path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _save(self, values: Dict[str, str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(values, f, indent=2, sort_keys=True)
        os.replace(tmp, self.path)   # atomic on the same filesystem

    def get_string(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._values.get(key, default)

    def put_string(self, key: str, value: str):
        '''
        Store a value and notify listeners if it changed.
        Listeners run on the caller's thread, after the lock is released.
        An OSError from writing the file propagates and leaves the old value in place.
        '''
        with self._lock:
            if self._values.get(key) == value:
                return
            values = dict(self._values)
            values[key] = value
            if self.path is not None:
                self._save(values)
            self._values = values
            listeners = list(self._listeners)
        for cb in listeners:
            cb(self, key)

    def register_listener(self, cb: Listener):
        with self._lock:
            if cb not in self._listeners:
                self._listeners.append(cb)

    def unregister_listener(self, cb: Listener):
        with self._lock:
            if cb in self._listeners:
                self._listeners.remove(cb)


class EncryptionModeSwitch:
    '''
    Which transform outgoing fields go through: "none" or "aes".
    Read fresh from the preferences on every call; never cached, since the
    settings can change between any two sends.
    '''
    def __init__(self, prefs: Preferences):
        self.prefs = prefs

    def current(self) -> str:
        mode = self.prefs.get_string(CRYPTO_ALGORITHM_KEY, MODE_NONE)
        if mode not in MODES:
            logger.warning("unknown cryptography algorithm %r, sending plaintext", mode)
            return MODE_NONE
        return mode

    def encrypts(self) -> bool:
        return self.current() == MODE_AES

    def set(self, mode: str):
        ''' Used by the settings surface (console /mode command) '''
        if mode not in MODES:
            raise ValueError(f"mode must be one of {', '.join(MODES)}")
        self.prefs.put_string(CRYPTO_ALGORITHM_KEY, mode)
