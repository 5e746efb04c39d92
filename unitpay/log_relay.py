"""
Dev-only relay of log records to connected listeners.

A LogRelay owns the set of connected clients for one process. It is started with the server,
closed on shutdown and handed to whatever needs it (the logging handler, the stream route).
"""

import json
import queue
import logging
import datetime as dt
import threading

_CLOSED = object()


class LogRelay:
    def __init__(self, max_queue=1000, keepalive=15):
        self.max_queue = max_queue
        self.keepalive = keepalive
        self._clients = set()
        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self):
        return self._running

    @property
    def client_count(self):
        with self._lock:
            return len(self._clients)

    def start(self):
        self._running = True
        return self

    def close(self):
        with self._lock:
            self._running = False
            clients = list(self._clients)
            self._clients.clear()
        for client in clients:
            _offer(client, _CLOSED)

    def connect(self):
        if not self._running:
            raise RuntimeError("Log relay is not running")
        client = queue.Queue(maxsize=self.max_queue)
        with self._lock:
            self._clients.add(client)
        return client

    def disconnect(self, client):
        with self._lock:
            self._clients.discard(client)

    def broadcast(self, message: str):
        with self._lock:
            clients = list(self._clients)
        for client in clients:
            # a slow listener drops records rather than stalling the logger
            _offer(client, message)

    def sse(self, client):
        """Yields server-sent-event frames for ``client`` until the relay closes."""
        while True:
            try:
                message = client.get(timeout=self.keepalive)
            except queue.Empty:
                yield ": keepalive\n\n"
                continue
            if message is _CLOSED:
                return
            yield f"data: {message}\n\n"


def _offer(client, item):
    try:
        client.put_nowait(item)
    except queue.Full:
        pass


class JsonLogFormatter(logging.Formatter):
    def __init__(self, service="unitpay"):
        super().__init__()
        self.service = service

    def format(self, record):
        payload = {
            "timestamp": dt.datetime.fromtimestamp(record.created, dt.timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
        }
        if record.exc_info:
            payload["stack"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class RelayHandler(logging.Handler):
    def __init__(self, relay, level=logging.INFO):
        super().__init__(level)
        self.relay = relay
        self.setFormatter(JsonLogFormatter())

    def emit(self, record):
        if not self.relay.running:
            return
        try:
            self.relay.broadcast(self.format(record))
        except Exception:
            self.handleError(record)
