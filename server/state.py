from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
import socket
import queue
from threading import Lock, Thread

# (path, key, value) -> None; called for every child that should reach a subscriber
Deliver = Callable[[str, str, Any], None]

@dataclass   # decorator to automatically generate init, repr, etc.
class Subscription:   # one live listener on one path, owned by one connection
    sub_id: str        # client-chosen id, echoed back in every child_added
    path: str          # collection the listener is attached to
    conn: socket.socket   # connection that registered it
    deliver: Deliver   # pushes one child to the client

@dataclass
class Collection:   # append-only list of (key, value) in insertion order
    children: List[Tuple[str, Any]] = field(default_factory=list)
    subscribers: List[Subscription] = field(default_factory=list)

class Outbox:
    # Per-connection send queue drained by its own writer thread, so a client that
    # stops reading only stalls itself, never the log lock
    def __init__(self, send: Callable[[Dict[str, Any]], None], name: str = "outbox"):
        self.send = send           # blocking write of one envelope (sendall underneath)
        self.queue: "queue.Queue" = queue.Queue()
        self.closed = False
        self.writer = Thread(target=self._run, name=name, daemon=True)
        self.writer.start()

    def put(self, env: Dict[str, Any]):
        ''' Queue one envelope; never blocks. Raises ConnectionError once the writer gave up'''
        if self.closed:
            raise ConnectionError("connection closed")
        self.queue.put(env)

    def close(self):
        ''' Stop the writer after whatever is already queued'''
        if not self.closed:
            self.closed = True
            self.queue.put(None)

    def _run(self):
        while True:
            env = self.queue.get()
            if env is None:
                return
            try:
                self.send(env)
            except OSError:
                self.closed = True   # later puts fail, LogState then drops the subscriptions
                return

class LogState:
    # This class holds every append-only collection and the listeners on them
    def __init__(self):
        self.lock = Lock()  # guards collections AND fan-out; deliveries only enqueue, so append order holds per connection
        self.collections: Dict[str, Collection] = {}   # path -> Collection
        self.seq = 0        # server-wide insertion counter, source of child keys

    def _collection(self, path: str) -> Collection:
        c = self.collections.get(path)
        if c is None:
            c = self.collections[path] = Collection()
        return c

    def append(self, path: str, value: Any) -> str:
        '''
        This function appends a value to a collection and queues it for every subscriber of that path.
        deliver() only enqueues on the subscriber's outbox, so holding the lock here never waits on a socket.
        Output: the key assigned to the new child
        '''
        with self.lock:
            self.seq += 1
            key = f"{self.seq:012d}"   # zero-padded so keys sort in insertion order
            c = self._collection(path)
            c.children.append((key, value))
            for sub in list(c.subscribers):
                self._deliver(c, sub, key, value)
            return key

    def subscribe(self, sub: Subscription) -> int:
        '''
        This function registers a subscription and replays the existing children to it first.
        Replay and registration happen under one lock so nothing is missed or doubled.
        Output: number of replayed children
        '''
        with self.lock:
            c = self._collection(sub.path)
            for key, value in c.children:
                if not self._deliver(c, sub, key, value):
                    return 0
            c.subscribers.append(sub)
            return len(c.children)

    def unsubscribe(self, conn: socket.socket, sub_id: str) -> bool:
        ''' This function removes one subscription of a connection by id'''
        with self.lock:
            for c in self.collections.values():
                for sub in c.subscribers:
                    if sub.conn is conn and sub.sub_id == sub_id:
                        c.subscribers.remove(sub)
                        return True
            return False

    def drop_connection(self, conn: socket.socket) -> int:
        ''' This function removes all subscriptions that belong to a closed connection'''
        with self.lock:
            dropped = 0
            for c in self.collections.values():
                keep = [s for s in c.subscribers if s.conn is not conn]
                dropped += len(c.subscribers) - len(keep)
                c.subscribers = keep
            return dropped

    def children(self, path: str) -> List[Tuple[str, Any]]:
        ''' This function retrieves a snapshot of a collection'''
        with self.lock:
            c = self.collections.get(path)
            return list(c.children) if c else []

    def subscriber_count(self, path: Optional[str] = None) -> int:
        with self.lock:
            if path is not None:
                c = self.collections.get(path)
                return len(c.subscribers) if c else 0
            return sum(len(c.subscribers) for c in self.collections.values())

    @staticmethod
    def _deliver(c: Collection, sub: Subscription, key: str, value: Any) -> bool:
        # a closed outbox means the connection is gone; its handler cleans up on the way out
        try:
            sub.deliver(sub.path, key, value)
            return True
        except OSError:
            if sub in c.subscribers:
                c.subscribers.remove(sub)
            return False
