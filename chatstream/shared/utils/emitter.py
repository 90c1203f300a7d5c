"""Small publish/subscribe channel owned by connection managers and sessions."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Set

from chatstream.shared.logging.logger import get_logger

log = get_logger("shared.emitter")

Handler = Callable[[Any], Any]


class Emitter:
    """
    Named-event dispatcher.

    Rules:
    - Handlers run synchronously, in registration order, on the caller's
      loop iteration. Coroutine results are scheduled as tasks that are
      held until they finish; their failures are logged.
    - A failing handler is logged and does not stop the remaining handlers.
    - on() returns a callable that removes the handler (safe to call twice).
    """

    def __init__(self, name: str = "emitter") -> None:
        self.name = name
        self._handlers: Dict[str, List[Handler]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        self._handlers.setdefault(event, []).append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return

    def once(self, event: str) -> "asyncio.Future[Any]":
        """Return a future resolved by the next emission of `event`."""
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def _resolve(data: Any) -> None:
            self.off(event, _resolve)
            if not future.done():
                future.set_result(data)

        self.on(event, _resolve)
        return future

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def emit(self, event: str, data: Any = None) -> None:
        # Copy so handlers may unregister themselves while dispatching.
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
            except Exception:
                log.exception(f"[{self.name}] '{event}' handler failed")
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(lambda t, event=event: self._task_done(event, t))

    def _task_done(self, event: str, task: "asyncio.Future[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.error(
                f"[{self.name}] '{event}' handler failed",
                exc_info=(type(error), error, error.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def clear(self) -> None:
        self._handlers.clear()
