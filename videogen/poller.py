# videogen/poller.py
# One polling loop per task id, driving the task record to a terminal state

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from .client import RemoteJobClient, Sleep
from .errors import PollTimeout, RemoteJobError
from .models import Task
from .registry import Registry
from .schemas import JobStatus, TaskStatus

logger = logging.getLogger(__name__)

Listener = Callable[[Task], Awaitable[None]]


@dataclass
class _PollHandle:
    task: Optional[asyncio.Task] = None
    stopped: bool = False
    in_flight: bool = False
    waiters: List[asyncio.Future] = field(default_factory=list)


def _apply_completed(record: Task, status: JobStatus) -> None:
    record.status = TaskStatus.COMPLETED.value
    record.progress = 100.0
    record.error = None
    # no url yet: keep whatever we already had
    if status.result_url:
        record.result_url = status.result_url
    if status.thumbnail_url:
        record.thumbnail_url = status.thumbnail_url
    if status.enhanced_prompt:
        record.prompt = status.enhanced_prompt


def _apply_progress(record: Task, status: JobStatus) -> None:
    record.status = status.status.value
    if status.progress is not None:
        record.progress = max(record.progress or 0.0, status.progress)


class StatusPoller:
    """Independent, cancellable polling loops keyed by task id.

    Each loop sleeps ``interval`` then issues one query, so queries for the
    same id never overlap. Failed queries are logged and the loop keeps its
    schedule. ``completed`` without a result URL keeps polling until the URL
    shows up or ``result_url_max_wait`` seconds have passed.
    """

    def __init__(
        self,
        client: RemoteJobClient,
        registry: Registry[Task],
        *,
        interval: float = 2.0,
        result_url_max_wait: float = 300.0,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._client = client
        self._registry = registry
        self.interval = interval
        self.result_url_max_wait = result_url_max_wait
        self._sleep = sleep
        self._clock = clock
        self._handles: Dict[str, _PollHandle] = {}
        self._completed_since: Dict[str, float] = {}
        self._listeners: List[Listener] = []
        self._progress_listeners: List[Callable[[Task], None]] = []

    def add_listener(self, listener: Listener) -> None:
        """``listener(task)`` is awaited once a loop ends on a terminal record."""
        self._listeners.append(listener)

    def add_progress_listener(self, listener: Callable[[Task], None]) -> None:
        """``listener(task)`` is called after every non-terminal status write."""
        self._progress_listeners.append(listener)

    def is_active(self, task_id: str) -> bool:
        handle = self._handles.get(task_id)
        return handle is not None and not handle.stopped

    def active_ids(self) -> List[str]:
        return [task_id for task_id in self._handles if self.is_active(task_id)]

    def start(self, task_id: str) -> bool:
        if self.is_active(task_id):
            return False
        handle = _PollHandle()
        self._handles[task_id] = handle
        handle.task = asyncio.create_task(self._run(task_id, handle), name=f"poll:{task_id}")
        handle.task.add_done_callback(lambda t: self._on_done(task_id, handle, t))
        logger.info("[POLL] started %s", task_id)
        return True

    def stop(self, task_id: str) -> bool:
        """Stop scheduling ticks. A query already in flight finishes and is discarded."""
        handle = self._handles.get(task_id)
        if handle is None or handle.stopped:
            return False
        handle.stopped = True
        if not handle.in_flight and handle.task is not None:
            handle.task.cancel()
        logger.info("[POLL] stopped %s", task_id)
        return True

    async def stop_all(self) -> None:
        handles = list(self._handles.values())
        for handle in handles:
            handle.stopped = True
            if handle.task is not None:
                handle.task.cancel()
        await asyncio.gather(*(h.task for h in handles if h.task is not None), return_exceptions=True)

    async def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[Task]:
        """Wait for the loop of ``task_id`` to end and return the final record.

        Raises PollTimeout after ``timeout`` seconds; the loop itself keeps going.
        """
        handle = self._handles.get(task_id)
        if handle is None or handle.stopped:
            return self._registry.get(task_id)

        fut = asyncio.get_running_loop().create_future()
        handle.waiters.append(fut)
        try:
            return await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError:
            raise PollTimeout(task_id, timeout or 0.0) from None
        finally:
            if fut in handle.waiters:
                handle.waiters.remove(fut)

    async def poll_once(self, task_id: str, handle: Optional[_PollHandle] = None) -> bool:
        """One tick. Returns True when polling for ``task_id`` should stop."""
        try:
            status = await self._client.query_job(task_id)
        except (RemoteJobError, ValueError) as e:
            logger.warning("[POLL] status query failed for %s: %s", task_id, e)
            return False

        if handle is not None and handle.stopped:
            logger.debug("[POLL] %s was stopped mid-query, result discarded", task_id)
            return True

        if status.status is TaskStatus.COMPLETED:
            record = self._registry.upsert(task_id, lambda t: _apply_completed(t, status))
            if record is None:
                return True
            if status.result_url:
                self._completed_since.pop(task_id, None)
                logger.info("[POLL] %s completed: %s", task_id, status.result_url)
                return True
            first_seen = self._completed_since.setdefault(task_id, self._clock())
            if self._clock() - first_seen >= self.result_url_max_wait:
                logger.warning(
                    "[POLL] %s completed without a result url for %.0fs, giving up",
                    task_id, self.result_url_max_wait,
                )
                return True
            return False

        if status.status is TaskStatus.FAILED:
            def _failed(t: Task) -> None:
                t.status = TaskStatus.FAILED.value
                t.error = t.error or "generation failed on the remote service"
            self._registry.upsert(task_id, _failed)
            logger.error("[POLL] %s failed on the remote service", task_id)
            return True

        record = self._registry.upsert(task_id, lambda t: _apply_progress(t, status))
        if record is None:
            return True
        self._notify_progress(record)
        return False

    async def _run(self, task_id: str, handle: _PollHandle) -> None:
        finished = False
        try:
            while not handle.stopped:
                await self._sleep(self.interval)
                if handle.stopped:
                    break
                handle.in_flight = True
                try:
                    done = await self.poll_once(task_id, handle)
                finally:
                    handle.in_flight = False
                if done:
                    finished = not handle.stopped
                    break
        finally:
            record = self._registry.get(task_id)
            if finished and record is not None:
                await self._notify(record)
            self._release(task_id, handle, record)

    def _release(self, task_id: str, handle: _PollHandle, record: Optional[Task]) -> None:
        if self._handles.get(task_id) is handle:
            del self._handles[task_id]
            self._completed_since.pop(task_id, None)
        for fut in list(handle.waiters):
            if not fut.done():
                fut.set_result(record)

    def _on_done(self, task_id: str, handle: _PollHandle, task: asyncio.Task) -> None:
        # a loop cancelled before its first step never reaches its finally block
        if task.cancelled():
            self._release(task_id, handle, self._registry.get(task_id))

    async def _notify(self, record: Task) -> None:
        for listener in self._listeners:
            try:
                await listener(record)
            except Exception:
                logger.exception("[POLL] terminal listener failed for %s", record.id)

    def _notify_progress(self, record: Task) -> None:
        for listener in self._progress_listeners:
            try:
                listener(record)
            except Exception:
                logger.exception("[POLL] progress listener failed for %s", record.id)
