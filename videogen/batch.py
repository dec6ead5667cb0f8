# videogen/batch.py
# Batch generation: one job per parsed spreadsheet row, submitted one by one

import asyncio
import logging
import mimetypes
from pathlib import PurePath
from typing import List, Optional, Sequence

from .client import Sleep
from .coordinator import JobSubmissionCoordinator
from .errors import ImageResolutionError
from .schemas import BatchReport, BatchRow, RowOutcome
from .uploads import ImageUploader, is_remote_url

logger = logging.getLogger(__name__)


class BatchRunner:
    """Submits rows sequentially; their jobs then poll concurrently.

    All placeholders are written before the first network call. A failing
    row is marked failed and the run moves on to the next one.
    """

    def __init__(
        self,
        coordinator: JobSubmissionCoordinator,
        uploader: ImageUploader,
        *,
        submit_delay: float = 0.5,
        sleep: Sleep = asyncio.sleep,
    ):
        self._coordinator = coordinator
        self._uploader = uploader
        self.submit_delay = submit_delay
        self._sleep = sleep

    def prepare(self, rows: Sequence[BatchRow]) -> List[str]:
        return [self._coordinator.register_placeholder(row, index=i).id for i, row in enumerate(rows)]

    async def submit(self, rows: Sequence[BatchRow]) -> BatchReport:
        return await self.run(rows, self.prepare(rows))

    async def run(self, rows: Sequence[BatchRow], placeholder_ids: Sequence[str]) -> BatchReport:
        if len(rows) != len(placeholder_ids):
            raise ValueError("one placeholder per row is required")

        report = BatchReport()
        total = len(rows)
        for i, (row, temp_id) in enumerate(zip(rows, placeholder_ids)):
            if i > 0:
                await self._sleep(self.submit_delay)
            outcome = await self._run_row(i, total, row, temp_id)
            report.rows.append(outcome)

        failed = len(report.failed)
        logger.info("[BATCH] done: %d submitted, %d failed", total - failed, failed)
        return report

    async def _run_row(self, i: int, total: int, row: BatchRow, temp_id: str) -> RowOutcome:
        label = f"{i + 1}/{total}"
        try:
            images = await self._resolve_images(i, row)
            params = row.job_params(images)
            submission = await self._coordinator.submit(params, temp_id=temp_id)
        except Exception as e:
            logger.error("[BATCH] row %s failed: %s", label, e)
            self._coordinator.fail_placeholder(temp_id, str(e))
            return RowOutcome(index=i, placeholder_id=temp_id, status="failed", error=str(e))

        if not submission.resolved:
            return RowOutcome(index=i, placeholder_id=temp_id, status="unresolved")
        logger.info("[BATCH] row %s submitted as %s", label, submission.task_id)
        return RowOutcome(index=i, placeholder_id=temp_id, task_id=submission.task_id, status="submitted")

    async def _resolve_images(self, i: int, row: BatchRow) -> List[str]:
        source = (row.image_source or "").strip()
        if not source:
            return []  # text-to-video, or images already hosted

        content_type: Optional[str] = None
        if is_remote_url(source):
            try:
                content, content_type = await self._uploader.fetch(source)
            except Exception as e:
                raise ImageResolutionError(f"could not download {source}: {e}") from e
            filename = f"image_{i}{mimetypes.guess_extension(content_type) or '.jpg'}"
        elif row.image_content:
            content = row.image_content
            filename = PurePath(source).name or f"image_{i}.jpg"
        else:
            raise ImageResolutionError(f"local image '{source}' has no file content")

        try:
            url = await self._uploader.upload(content, filename=filename, content_type=content_type)
        except Exception as e:
            raise ImageResolutionError(f"could not upload {source}: {e}") from e
        return [url]
