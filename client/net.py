import itertools, logging, socket, threading
from typing import Any, Dict, Optional

from common.protocol import send_json, recv_json, make_envelope, forget

logger = logging.getLogger(__name__)

MESSAGES_PATH = "public-messages"   # the shared chat log
CONFIG_TIMEOUT = 5.0


class LogError(Exception):
    """Raised/passed to listeners when the server rejects a request or the connection is lost."""
    def __init__(self, code: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(code)
        self.code = code
        self.detail = detail or {}


class ChildEventListener:
    '''
    Callbacks for one subscription on an ordered collection.
    Only on_child_added is ever fired by the log server; the rest exist so a
    listener implementation can state that it ignores them.
    '''
    def on_child_added(self, key: str, value: Any):
        pass

    def on_child_changed(self, key: str, value: Any):
        pass

    def on_child_removed(self, key: str):
        pass

    def on_child_moved(self, key: str, previous_key: Optional[str]):
        pass

    def on_cancelled(self, error: LogError):
        pass


class LogReference:
    ''' A handle on one path of the remote log '''
    def __init__(self, client: "NetClient", path: str):
        self.client, self.path = client, path

    def push(self, value: Dict[str, Any]):
        ''' Append a value; the server assigns its key '''
        self.client.send(make_envelope("push", {"path": self.path, "value": value},
                                       sender=self.client.name))

    def add_child_event_listener(self, listener: ChildEventListener) -> ChildEventListener:
        self.client.add_listener(self.path, listener)
        return listener

    def remove_event_listener(self, listener: ChildEventListener):
        self.client.remove_listener(listener)


class NetClient:
    ''' Network client for the shared message log '''
    def __init__(self, host: str, port: int, name: Optional[str] = None):
        self.host, self.port = host, port
        self.name = name   # informational, stamped as envelope sender
        self.sock: Optional[socket.socket] = None
        self.recv_thread: Optional[threading.Thread] = None   # thread for receiving messages
        self.running = False
        self._send_lock = threading.Lock()
        self._lock = threading.Lock()   # guards the listener table
        self._listeners: Dict[str, ChildEventListener] = {}   # sub id -> listener
        self._sub_ids = itertools.count(1)
        self._config: Optional[Dict[str, Any]] = None
        self._config_ready = threading.Event()

    def reference(self, path: str = MESSAGES_PATH) -> LogReference:
        return LogReference(self, path)

    def connect(self):
        '''
        Establish a TCP connection to the log server.
        Also used to reconnect after the connection was lost: subscriptions of the
        old connection are gone with it, so their listeners are forgotten here.
        '''
        sock = socket.create_connection((self.host, self.port))
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1) # Disable Nagle's algorithm: send any data immediately
        old, self.sock = self.sock, sock
        if old is not None:
            forget(old)
            try:
                old.close()
            except OSError:
                pass
        with self._lock:
            self._listeners.clear()
        self.running = True
        self.recv_thread = threading.Thread(target=self._recv_loop, args=(sock,), daemon=True)
        self.recv_thread.start()
        logger.info("connected to %s:%d", self.host, self.port)

    def close(self):
        try:
            if self.sock: # if socket exists
                self.send(make_envelope("system", {"event": "leave"}, sender=self.name))   # notify server we are leaving
        except ConnectionError:
            pass
        self.running = False
        if self.sock:
            forget(self.sock)
            try:
                self.sock.close()
            except OSError:
                pass

    def send(self, env: Dict[str, Any]):
        ''' Send one envelope; raises ConnectionError if not connected '''
        if not self.sock or not self.running:
            raise ConnectionError("not connected")
        try:
            with self._send_lock:
                send_json(self.sock, env)
        except OSError as exc:
            raise ConnectionError(str(exc)) from exc

    def add_listener(self, path: str, listener: ChildEventListener) -> str:
        '''
        Register a listener and subscribe it on the server.
        The server replays every existing child before live ones.
        '''
        sub_id = str(next(self._sub_ids))
        with self._lock:
            self._listeners[sub_id] = listener
        try:
            self.send(make_envelope("subscribe", {"path": path, "sub": sub_id}, sender=self.name))
        except ConnectionError:
            with self._lock:
                self._listeners.pop(sub_id, None)
            raise
        return sub_id

    def remove_listener(self, listener: ChildEventListener):
        ''' Unregister a listener; children already on the wire for it are dropped locally '''
        with self._lock:
            sub_ids = [s for s, l in self._listeners.items() if l is listener]
            for s in sub_ids:
                del self._listeners[s]
        for s in sub_ids:
            try:
                self.send(make_envelope("unsubscribe", {"sub": s}, sender=self.name))
            except ConnectionError:
                # connection already gone, so is the subscription
                pass

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def fetch_config(self, timeout: float = CONFIG_TIMEOUT) -> Optional[Dict[str, Any]]:
        ''' Ask the server for its client config; None on timeout '''
        self._config_ready.clear()
        self.send(make_envelope("config", {}, sender=self.name))
        if not self._config_ready.wait(timeout):
            logger.warning("no config from server after %.1fs, keeping defaults", timeout)
            return None
        return self._config

    def _dispatch(self, env: Dict[str, Any]):
        if not isinstance(env, dict):
            logger.warning("ignoring non-object frame from server")
            return
        etype = env.get("type")
        payload = env.get("payload") or {}
        if not isinstance(payload, dict):
            payload = {}
        if etype == "child_added":
            with self._lock:
                listener = self._listeners.get(str(payload.get("sub")))
            if listener is not None:
                listener.on_child_added(payload.get("key"), payload.get("value"))
        elif etype == "config":
            self._config = payload
            self._config_ready.set()
        elif etype == "error":
            code = payload.get("code", "UNKNOWN")
            with self._lock:
                listener = self._listeners.get(str(payload.get("sub")))
            if listener is not None:
                listener.on_cancelled(LogError(code, payload))
            else:
                logger.warning("server error: %s", payload)
        else:
            logger.debug("ignoring %s envelope", etype)

    def _recv_loop(self, sock: socket.socket):
        ''' Thread function to receive envelopes from the server '''
        try:
            while self.running:
                self._dispatch(recv_json(sock))
        except (ConnectionError, OSError, ValueError) as exc:
            if sock is not self.sock:
                return   # replaced by a reconnect
            was_running = self.running
            self.running = False
            if not was_running:
                return   # close() was called, nothing to report
            logger.warning("connection lost: %s", exc)
            with self._lock:
                listeners = list(self._listeners.values())
            for listener in listeners:
                listener.on_cancelled(LogError("DISCONNECTED", {"reason": str(exc)}))
