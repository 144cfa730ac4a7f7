from __future__ import annotations

import json
from typing import Any, Callable, Protocol
from urllib.parse import urlsplit, urlunsplit

from pydantic import ValidationError
from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from .api_models import StreamMessage
from .coalescer import TransitionEvent
from .eventlog import log_event


class ConnectionLost(Exception):
    pass


class EventSink(Protocol):
    def post_event(self, event: TransitionEvent) -> None: ...

    def post_bootstrap(self) -> None: ...

    def post_connected(self, connected: bool) -> None: ...


def redact(url: str) -> str:
    """Drop the query string, which carries the credential."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def parse_message(raw: str | bytes) -> TransitionEvent | None:
    """Turn one stream message into a TransitionEvent, or None if it carries none."""
    try:
        data = json.loads(raw)
    except ValueError:
        log_event("WARN", "Ignoring non-JSON message from event stream")
        return None
    if not isinstance(data, dict):
        return None
    try:
        msg = StreamMessage.model_validate(data)
    except ValidationError:
        log_event("WARN", "Ignoring malformed message from event stream")
        return None
    if not (msg.type and msg.uuid and msg.state):
        return None
    return TransitionEvent(
        service_id=msg.uuid,
        event_type=msg.type,
        state=msg.state,
        timestamp=msg.timestamp,
    )


class StreamConnection:
    """The one subscription to the orchestration event stream.

    run() raises ConnectionLost when the stream drops; restarting is left to
    the process supervisor.
    """

    def __init__(
        self,
        url: str,
        sink: EventSink,
        on_open: Callable[[], None] | None = None,
        connect: Callable[..., Any] = ws_connect,
        open_timeout: float = 10.0,
    ):
        self.url = url
        self.sink = sink
        self.on_open = on_open
        self._connect = connect
        self.open_timeout = open_timeout

    def run(self) -> None:
        log_event("INFO", f"Connecting to {redact(self.url)}")
        try:
            with self._connect(self.url, open_timeout=self.open_timeout) as ws:
                self._opened()
                for message in ws:
                    event = parse_message(message)
                    if event is not None:
                        self.sink.post_event(event)
        except (OSError, WebSocketException) as e:
            raise ConnectionLost(f"event stream failed: {type(e).__name__}: {e}") from e
        finally:
            self.sink.post_connected(False)
        raise ConnectionLost("event stream closed by server")

    def _opened(self) -> None:
        log_event("INFO", "Event stream connected")
        self.sink.post_connected(True)
        self.sink.post_bootstrap()
        if self.on_open is not None:
            self.on_open()
