# videogen/coordinator.py
# Job submission: placeholder record -> create call -> temp id swapped for the real id -> poller

import asyncio
import logging
import time
import uuid
from typing import List, Optional

from pydantic import BaseModel

from .client import Found, RemoteJobClient, Sleep
from .errors import InvalidJobParams, RemoteJobError
from .models import TEMP_ID_PREFIX, Task, is_temp_id
from .poller import StatusPoller
from .registry import Registry
from .schemas import CreateJobParams, TaskStatus, check_job_params

logger = logging.getLogger(__name__)


def new_temp_id(index: int = 0) -> str:
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}_{index}_{uuid.uuid4().hex[:9]}"


class Submission(BaseModel):
    task_id: str
    resolved: bool  # False: still on the temp id, needs a manual follow-up
    tracked: bool = True  # False: placeholder deleted mid-call, no record and no poller


def _task_from_params(task_id: str, params: CreateJobParams) -> Task:
    return Task(
        id=task_id,
        status=TaskStatus.PENDING.value,
        progress=0.0,
        model=params.model,
        prompt=params.prompt,
        images=list(params.images),
        orientation=params.orientation,
        size=params.size,
        duration=params.duration,
    )


class JobSubmissionCoordinator:
    def __init__(
        self,
        client: RemoteJobClient,
        registry: Registry[Task],
        poller: StatusPoller,
        *,
        extraction_retry_delay: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ):
        self._client = client
        self._registry = registry
        self._poller = poller
        self._retry_delay = extraction_retry_delay
        self._sleep = sleep

    def register_placeholder(self, params: CreateJobParams, index: int = 0) -> Task:
        """Write a pending temp-id record so there is something to show before the network call."""
        return self._registry.put(_task_from_params(new_temp_id(index), params))

    def fail_placeholder(self, temp_id: str, message: str) -> Optional[Task]:
        def _fail(t: Task) -> None:
            t.status = TaskStatus.FAILED.value
            t.error = message
        return self._registry.upsert(temp_id, _fail)

    async def submit(
        self,
        params: CreateJobParams,
        *,
        temp_id: Optional[str] = None,
        start_polling: bool = True,
    ) -> Submission:
        """Create the remote job and reconcile the placeholder record.

        - invalid params: InvalidJobParams, nothing sent
        - remote error: placeholder marked failed, error re-raised
        - no usable id after one retry: placeholder left pending, resolved=False
        - placeholder deleted during the call: nothing written, tracked=False
        - success: temp record replaced by the final one, poller started
        """
        try:
            check_job_params(params.model, params.prompt, params.duration, params.size)
        except InvalidJobParams as e:
            if temp_id:
                self.fail_placeholder(temp_id, str(e))
            raise

        if temp_id is None:
            temp_id = self.register_placeholder(params).id

        try:
            extraction = await self._client.create_job(params)
        except RemoteJobError as e:
            self.fail_placeholder(temp_id, str(e))
            raise

        if not isinstance(extraction, Found):
            logger.warning("[CREATE] %s: no task id, retrying once in %.1fs", temp_id, self._retry_delay)
            await self._sleep(self._retry_delay)
            try:
                extraction = await self._client.create_job(params)
            except RemoteJobError as e:
                # the first call may have created a job; leave the record pending
                logger.error("[CREATE] %s: retry failed: %s", temp_id, e)
                return self._leave_pending(temp_id, f"retry after a missing task id failed: {e.message}, check manually")

        if not isinstance(extraction, Found):
            return self._leave_pending(temp_id, "task id could not be extracted from the create response, check manually")

        final_id = extraction.task_id
        if self._registry.replace(temp_id, _task_from_params(final_id, params)) is None:
            logger.warning("[CREATE] %s was deleted during the create call, %s is not tracked", temp_id, final_id)
            return Submission(task_id=final_id, resolved=True, tracked=False)
        logger.info("[CREATE] %s -> %s", temp_id, final_id)
        if start_polling:
            self._poller.start(final_id)
        return Submission(task_id=final_id, resolved=True)

    def _leave_pending(self, temp_id: str, note: str) -> Submission:
        def _note(t: Task) -> None:
            t.error = note
        self._registry.upsert(temp_id, _note)
        logger.error("[CREATE] %s: no task id, left pending", temp_id)
        return Submission(task_id=temp_id, resolved=False)

    def delete_task(self, task_id: str) -> bool:
        """User-initiated delete: stop the poller first, then drop the record."""
        self._poller.stop(task_id)
        return self._registry.delete(task_id)

    def resume(self) -> List[str]:
        """Restart pollers for unfinished final-id tasks (after a restart)."""
        resumed = []
        for task in self._registry.list_all():
            if is_temp_id(task.id):
                continue
            unfinished = not task.is_terminal
            missing_url = task.status == TaskStatus.COMPLETED.value and not task.result_url
            if (unfinished or missing_url) and self._poller.start(task.id):
                resumed.append(task.id)
        if resumed:
            logger.info("[POLL] resumed %d task(s)", len(resumed))
        return resumed
