from __future__ import annotations

import logging
from threading import Event, Lock, Thread
from typing import Any, Callable

from .docker_ops import DockerRuntime

logger = logging.getLogger(__name__)


def describe_event(event: dict[str, Any]) -> str:
    action = event.get("Action") or event.get("status") or "unknown"
    actor = event.get("Actor") or {}
    name = (actor.get("Attributes") or {}).get("name") or (actor.get("ID") or event.get("id") or "")[:12]
    return f"event:{action}:{name}"


class EventWatcher:
    """Producer thread feeding container lifecycle events to a callback.

    The docker event stream is infinite but ends on disconnect; the watcher
    re-opens it after `reconnect_s` and asks for a pass, since events may
    have been missed in between.
    """

    def __init__(
        self,
        docker_runtime: DockerRuntime,
        on_event: Callable[[str], object],
        reconnect_s: float = 5.0,
    ):
        self.docker = docker_runtime
        self.on_event = on_event
        self.reconnect_s = reconnect_s
        self._stop = Event()
        self._lock = Lock()
        self._stream = None
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self._loop, name="event-watcher", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            stream = self._stream
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                logger.debug("Closing event stream: %s", e)

    def join(self, timeout: float | None = None) -> None:
        if self._thr:
            self._thr.join(timeout)

    def _loop(self) -> None:
        first = True
        while not self._stop.is_set():
            reopened, first = not first, False
            try:
                stream = self.docker.events()
                with self._lock:
                    self._stream = stream
                if reopened:
                    logger.info("Docker event stream reconnected")
                    self.on_event("event-stream-reconnected")
                for event in stream:
                    if self._stop.is_set():
                        break
                    reason = describe_event(event)
                    logger.debug("Docker %s", reason)
                    self.on_event(reason)
            except Exception as e:
                if self._stop.is_set():
                    break
                logger.warning("Docker event stream failed: %s: %s", type(e).__name__, e)
            finally:
                with self._lock:
                    self._stream = None

            if not self._stop.is_set():
                logger.warning("Docker event stream ended, reconnecting in %gs", self.reconnect_s)
                self._stop.wait(self.reconnect_s)
