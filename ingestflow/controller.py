from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable


class ControllerStopped(RuntimeError):
    """Raised for work submitted after stop()."""


class ThreadPoolController:
    """Runs per-source workflows on a bounded thread pool.

    A condition-guarded counter acts as the counting semaphore: submit()
    blocks while ``limit`` workflows are active, and the slot is released in
    a ``finally`` so a failing or slow source never starves the others.
    """

    def __init__(self, max_workers: int, initial_limit: int, name: str = "source") -> None:
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix=name)

        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)

        self._limit = max(1, initial_limit)
        self._active = 0
        self._running = True

    def stop(self, wait: bool = True) -> None:
        with self._cv:
            self._running = False
            self._cv.notify_all()
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "ThreadPoolController":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop(wait=True)

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        """Submit ``fn(*args)``, blocking while the concurrency limit is reached."""
        with self._cv:
            while self._running and self._active >= self._limit:
                self._cv.wait(timeout=0.5)

            if not self._running:
                raise ControllerStopped("controller is stopped")

            self._active += 1

        try:
            return self._executor.submit(self._wrap_task, fn, *args)
        except RuntimeError:
            self._release()
            raise

    def _wrap_task(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        finally:
            self._release()

    def _release(self) -> None:
        with self._cv:
            self._active = max(0, self._active - 1)
            self._cv.notify_all()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        with self._cv:
            return self._active
