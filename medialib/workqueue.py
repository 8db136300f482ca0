from __future__ import annotations

import concurrent.futures
import threading
from typing import Any, Callable, Iterable, Optional, TypeVar

from .config import default_concurrency
from .log import log

T = TypeVar("T")
R = TypeVar("R")


class _SlotContext(threading.local):
    def __init__(self):
        super().__init__()
        self.queue_id: Optional[int] = None


_SLOT_CTX = _SlotContext()


class WorkQueue:
    """
    Bounded-concurrency executor for external-process and CPU-heavy work.

    At most `concurrency` tasks run at once; any number may wait. Work that is
    already running inside one of this queue's slots runs nested calls inline
    (see `call` and `map`), so a task that fans out never waits on slots it is
    itself holding.
    """

    def __init__(self, concurrency: Optional[int] = None, *, name: str = "media-work"):
        self.concurrency = max(1, int(concurrency or default_concurrency()))
        self.name = name
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix=name,
        )
        self._mtx = threading.Lock()
        self._active = 0
        self._queued = 0

    def __enter__(self) -> "WorkQueue":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def in_slot(self) -> bool:
        return _SLOT_CTX.queue_id == id(self)

    def _run_in_slot(self, fn: Callable[..., R], args: tuple, kwargs: dict) -> R:
        with self._mtx:
            self._queued -= 1
            self._active += 1
        prev = _SLOT_CTX.queue_id
        _SLOT_CTX.queue_id = id(self)
        try:
            return fn(*args, **kwargs)
        finally:
            _SLOT_CTX.queue_id = prev
            with self._mtx:
                self._active -= 1

    def submit(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> "concurrent.futures.Future[R]":
        """Queue `fn` and return its future. Never blocks the caller."""
        with self._mtx:
            self._queued += 1
        try:
            return self._executor.submit(self._run_in_slot, fn, args, kwargs)
        except Exception:
            with self._mtx:
                self._queued -= 1
            raise

    def call(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """Run `fn` in a slot and wait for it. Inline when already in a slot."""
        if self.in_slot():
            return fn(*args, **kwargs)
        return self.submit(fn, *args, **kwargs).result()

    def map(self, fn: Callable[[T], R], items: Iterable[T]) -> list[R]:
        """
        Run `fn` over items with overlap bounded by the queue, returning results in
        input order. The first exception raised by any item propagates after all
        items have finished.
        """
        items = list(items)
        if self.in_slot():
            return [fn(it) for it in items]
        futs = [self.submit(fn, it) for it in items]
        concurrent.futures.wait(futs)
        return [f.result() for f in futs]

    def stats(self) -> dict:
        with self._mtx:
            return {
                "concurrency": self.concurrency,
                "active": self._active,
                "queued": max(0, self._queued),
            }

    def shutdown(self, wait: bool = True) -> None:
        log("queue", f"shutdown name={self.name} wait={int(wait)}")
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
