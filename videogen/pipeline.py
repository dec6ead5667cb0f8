# videogen/pipeline.py
# Product pipeline: source image -> white-background image -> video prompt -> video job

import logging
import math
from typing import NoReturn, Optional
from uuid import uuid4

from .client import RemoteJobClient, user_message
from .coordinator import JobSubmissionCoordinator
from .errors import PipelineTimeout, PollTimeout, StageError
from .models import Product, PromptSettingsRecord, Task
from .poller import StatusPoller
from .registry import Registry
from .schemas import (
    BASE_MODEL,
    MODELS,
    PRO_MODEL,
    CreateJobParams,
    PromptSettings,
    TaskStatus,
    check_job_params,
)
from .uploads import ImageUploader

logger = logging.getLogger(__name__)

STAGE_IMAGE = "stage1"
STAGE_PROMPT = "stage2"
STAGE_VIDEO = "stage3"


class ProductPipeline:
    """Runs the three pipeline stages for one product record.

    Artifacts are written to the product as soon as a stage produces them,
    so a later failure never loses the earlier output. Every failure is
    raised as StageError carrying the stage label.
    """

    def __init__(
        self,
        client: RemoteJobClient,
        uploader: ImageUploader,
        coordinator: JobSubmissionCoordinator,
        poller: StatusPoller,
        products: Registry[Product],
        prompt_store: Registry[PromptSettingsRecord],
        *,
        default_prompts: PromptSettings,
    ):
        self._client = client
        self._uploader = uploader
        self._coordinator = coordinator
        self._poller = poller
        self._products = products
        self._prompt_store = prompt_store
        self._default_prompts = default_prompts
        poller.add_listener(self.on_task_terminal)
        poller.add_progress_listener(self.on_task_progress)

    # -------------------------------------------------------------------
    # products / prompt settings
    # -------------------------------------------------------------------
    def register(self, title: str, main_image_url: str) -> Product:
        return self._products.put(Product(id=str(uuid4()), title=title.strip(), main_image_url=main_image_url))

    def prompt_settings(self) -> PromptSettings:
        record = self._prompt_store.get("default")
        if record is None:
            return self._default_prompts
        return PromptSettings(main_image_prompt=record.main_image_prompt, scene_prompt=record.scene_prompt)

    def save_prompt_settings(self, prompts: PromptSettings) -> PromptSettings:
        self._prompt_store.put(PromptSettingsRecord(id="default", **prompts.model_dump()))
        return prompts

    def timeout_for(self, model: str) -> float:
        """Pro: 60 min, base: 30 min, counted in whole poll intervals."""
        minutes = MODELS[model].pipeline_timeout_minutes
        interval = self._poller.interval or 1.0
        max_attempts = math.ceil(minutes * 60 / interval)
        return max_attempts * interval

    # -------------------------------------------------------------------
    # run
    # -------------------------------------------------------------------
    async def run(
        self,
        product_id: str,
        *,
        model: str = BASE_MODEL,
        duration: int = 10,
        prompts: Optional[PromptSettings] = None,
    ) -> Product:
        product = self._products.get(product_id)
        if product is None:
            raise KeyError(f"product {product_id} not found")
        size = "large" if model == PRO_MODEL else "small"
        check_job_params(model, product.title, duration, size)
        prompts = prompts or self.prompt_settings()

        self._update(product_id, status=TaskStatus.PROCESSING.value, progress=10.0, error=None, error_stage=None)
        logger.info("[PIPELINE] %s: start (%s, %ss)", product_id, model, duration)

        # stage 1: white-background image
        try:
            derived_url = await self._derive_image(product.main_image_url, prompts.main_image_prompt)
        except Exception as e:
            self._fail(product_id, STAGE_IMAGE, e)
        self._update(product_id, derived_image_url=derived_url, progress=30.0)
        logger.info("[PIPELINE] %s: derived image %s", product_id, derived_url)

        # stage 2: video prompt
        try:
            prompt = await self._derive_prompt(product.title, derived_url, prompts.scene_prompt)
        except Exception as e:
            self._fail(product_id, STAGE_PROMPT, e)
        self._update(product_id, prompt=prompt, progress=50.0)

        # stage 3: video job
        params = CreateJobParams(
            model=model,
            prompt=prompt,
            images=[derived_url],
            orientation="portrait",
            size=size,
            duration=duration,
        )
        try:
            submission = await self._coordinator.submit(params)
        except Exception as e:
            self._fail(product_id, STAGE_VIDEO, e)
        if not submission.resolved:
            self._fail(product_id, STAGE_VIDEO, f"no task id from the service (record {submission.task_id})")
        if not submission.tracked:
            self._fail(product_id, STAGE_VIDEO, f"task record for {submission.task_id} was deleted")

        self._update(
            product_id,
            task_id=submission.task_id,
            model=model,
            duration=duration,
            orientation=params.orientation,
            size=size,
            progress=70.0,
        )

        timeout = self.timeout_for(model)
        try:
            await self._poller.wait(submission.task_id, timeout=timeout)
        except PollTimeout:
            logger.warning("[PIPELINE] %s: task %s not done after %.0f min", product_id, submission.task_id, timeout / 60)
            raise PipelineTimeout(submission.task_id, timeout) from None

        product = self._products.get(product_id)
        if product is None:
            raise KeyError(f"product {product_id} was deleted while running")
        if product.status != TaskStatus.COMPLETED.value:
            raise StageError(STAGE_VIDEO, product.error or "video generation failed")
        logger.info("[PIPELINE] %s: done %s", product_id, product.result_url)
        return product

    def on_task_progress(self, task: Task) -> None:
        """Map task progress into the 70-95 band of a processing product."""
        product = self._products.find_one(task_id=task.id)
        if product is None or product.status != TaskStatus.PROCESSING.value:
            return
        progress = min(95.0, 70.0 + (task.progress or 0.0) * 0.3)
        if progress > product.progress:
            self._update(product.id, progress=progress)

    async def on_task_terminal(self, task: Task) -> None:
        """Poller listener: reconcile the product that owns ``task``, also after a pipeline timeout."""
        product = self._products.find_one(task_id=task.id)
        if product is None:
            return
        if task.status == TaskStatus.COMPLETED.value and task.result_url:
            self._update(
                product.id,
                status=TaskStatus.COMPLETED.value,
                progress=100.0,
                result_url=task.result_url,
                prompt=task.prompt or product.prompt,
            )
        else:
            reason = task.error or ("completed without a result url" if task.status == TaskStatus.COMPLETED.value
                                    else "video generation failed")
            self._update(product.id, status=TaskStatus.FAILED.value, error=reason, error_stage=STAGE_VIDEO)

    # -------------------------------------------------------------------
    # helpers
    # -------------------------------------------------------------------
    async def _derive_image(self, source_url: str, instruction: str) -> str:
        output = await self._client.transform("image", [user_message(instruction, source_url)])
        if output.url:
            return output.url
        # inline base64 -> image host
        return await self._uploader.upload(output.image_data, filename="derived.png", content_type=output.mime_type)

    async def _derive_prompt(self, title: str, image_url: str, scene_prompt: str) -> str:
        messages = [
            {
                "role": "system",
                "content": "You are a professional video script assistant. Based on the product image and title, "
                           f"write a video script prompt that meets these requirements:\n\n{scene_prompt}",
            },
            user_message(f"Product title: {title}\n\nWrite the video script prompt as described above.", image_url),
        ]
        output = await self._client.transform("text", messages)
        return output.text

    def _update(self, product_id: str, **fields) -> Optional[Product]:
        def _set(p: Product) -> None:
            for name, value in fields.items():
                setattr(p, name, value)
        return self._products.upsert(product_id, _set)

    def _fail(self, product_id: str, stage: str, cause) -> NoReturn:
        self._update(product_id, status=TaskStatus.FAILED.value, error=str(cause), error_stage=stage)
        logger.error("[PIPELINE] %s: %s failed: %s", product_id, stage, cause)
        if isinstance(cause, BaseException):
            raise StageError(stage, cause) from cause
        raise StageError(stage, cause)
