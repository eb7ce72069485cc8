"""Concurrency-bounded FIFO request queue."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from pymaximax.exceptions import MaximaxQueueClosedError, MaximaxTimeoutError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class QueueTask:
    """A submitted unit of work and the future its submitter awaits."""

    id: int
    work: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]
    timeout: float | None = None


class BoundedRequestQueue:
    """Run submitted coroutines with at most ``max_concurrent`` in flight.

    Waiting tasks are admitted strictly in submission order; running
    tasks may finish in any order. The queue never retries: each task's
    outcome, including a timeout, is delivered to its own submitter
    only, and every completion admits the next waiter.
    """

    def __init__(self, max_concurrent: int = 5, *, default_timeout: float | None = None) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max_concurrent = max_concurrent
        self._default_timeout = default_timeout
        self._waiting: deque[QueueTask] = deque()
        self._running: dict[int, tuple[QueueTask, asyncio.Task[None]]] = {}
        self._ids = itertools.count(1)
        self._closed = False

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def running(self) -> int:
        return len(self._running)

    @property
    def pending(self) -> int:
        return len(self._waiting)

    @property
    def closed(self) -> bool:
        return self._closed

    async def submit(self, work: Callable[[], Awaitable[T]], *, timeout: float | None = None) -> T:
        """Queue *work* and wait for its outcome.

        Parameters
        ----------
        work
            Zero-argument callable returning an awaitable.
        timeout
            Seconds the work may run once started. Falls back to the
            queue's ``default_timeout``; ``None`` means unbounded.

        Raises
        ------
        MaximaxTimeoutError
            The work ran longer than *timeout*.
        MaximaxQueueClosedError
            The queue was closed before the work completed.
        """
        if self._closed:
            raise MaximaxQueueClosedError("Request queue is closed")
        loop = asyncio.get_running_loop()
        task = QueueTask(
            id=next(self._ids),
            work=work,
            future=loop.create_future(),
            timeout=timeout if timeout is not None else self._default_timeout,
        )
        self._waiting.append(task)
        self._pump()
        result: T = await task.future
        return result

    def _pump(self) -> None:
        while not self._closed and self._waiting and len(self._running) < self._max_concurrent:
            task = self._waiting.popleft()
            if task.future.done():
                # Submitter went away (cancelled) before admission.
                continue
            self._running[task.id] = (task, asyncio.ensure_future(self._run(task)))
            _logger.debug(
                "Queue admitted task=%d running=%d pending=%d",
                task.id,
                len(self._running),
                len(self._waiting),
            )

    async def _run(self, task: QueueTask) -> None:
        try:
            if task.timeout is not None:
                try:
                    result = await asyncio.wait_for(task.work(), task.timeout)
                except TimeoutError as exc:
                    raise MaximaxTimeoutError(
                        f"Queued task {task.id} timed out after {task.timeout}s",
                        timeout=task.timeout,
                    ) from exc
            else:
                result = await task.work()
        except asyncio.CancelledError:
            if not task.future.done():
                task.future.set_exception(MaximaxQueueClosedError(f"Queued task {task.id} cancelled"))
            raise
        except Exception as exc:
            if not task.future.done():
                task.future.set_exception(exc)
        else:
            if not task.future.done():
                task.future.set_result(result)
        finally:
            self._running.pop(task.id, None)
            self._pump()

    async def close(self) -> None:
        """Reject new work, fail waiting tasks and cancel running ones."""
        if self._closed:
            return
        self._closed = True
        while self._waiting:
            task = self._waiting.popleft()
            if not task.future.done():
                task.future.set_exception(MaximaxQueueClosedError(f"Queued task {task.id} dropped on close"))
        running = list(self._running.values())
        self._running.clear()
        for _task, runner in running:
            runner.cancel()
        if running:
            await asyncio.gather(*(runner for _task, runner in running), return_exceptions=True)
        # A runner cancelled before its first step never reaches its own handler.
        for task, _runner in running:
            if not task.future.done():
                task.future.set_exception(MaximaxQueueClosedError(f"Queued task {task.id} cancelled"))
        _logger.debug("Queue closed, cancelled %d running tasks", len(running))
