# videogen/main.py
# FastAPI entry point: wires the services and exposes tasks, products and batches

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

import httpx

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from .batch import BatchRunner
from .characters import CharacterCreator
from .client import RemoteJobClient
from .config import Settings, settings
from .coordinator import JobSubmissionCoordinator
from .db import init_db, make_engine
from .errors import InvalidCharacterParams, InvalidJobParams, PipelineTimeout, RemoteJobError, VideoGenError
from .models import Product, PromptSettingsRecord, Task
from .pipeline import ProductPipeline
from .poller import StatusPoller
from .registry import Registry
from .schemas import (
    PRO_MODEL,
    BatchRequest,
    BatchRow,
    Character,
    CharacterParams,
    CreateTasksRequest,
    ProductCreate,
    ProductOut,
    PromptSettings,
    TaskOut,
    TasksCreated,
    UploadOut,
    check_job_params,
)
from .uploads import ImageUploader

logger = logging.getLogger(__name__)


# -------------------------------------------------------------------
# Services
# -------------------------------------------------------------------
@dataclass
class Services:
    tasks: Registry[Task]
    products: Registry[Product]
    client: RemoteJobClient
    uploader: ImageUploader
    poller: StatusPoller
    coordinator: JobSubmissionCoordinator
    pipeline: ProductPipeline
    batch: BatchRunner
    characters: CharacterCreator

    async def aclose(self) -> None:
        await self.poller.stop_all()
        await self.client.aclose()
        await self.uploader.aclose()


def build_services(cfg: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Services:
    """Wire the registries, client, poller and runners. ``transport`` swaps the HTTP layer (tests)."""
    engine = make_engine(cfg.DATABASE_URL)
    init_db(engine)

    tasks = Registry(engine, Task)
    products = Registry(engine, Product)
    client = RemoteJobClient.from_settings(cfg, transport=transport)
    uploader = ImageUploader(cfg.IMAGE_UPLOAD_URL, timeout=cfg.UPLOAD_TIMEOUT, transport=transport)
    poller = StatusPoller(client, tasks, interval=cfg.POLL_INTERVAL, result_url_max_wait=cfg.RESULT_URL_MAX_WAIT)
    coordinator = JobSubmissionCoordinator(client, tasks, poller, extraction_retry_delay=cfg.EXTRACTION_RETRY_DELAY)
    pipeline = ProductPipeline(
        client,
        uploader,
        coordinator,
        poller,
        products,
        Registry(engine, PromptSettingsRecord),
        default_prompts=PromptSettings(main_image_prompt=cfg.MAIN_IMAGE_PROMPT, scene_prompt=cfg.SCENE_PROMPT),
    )
    batch = BatchRunner(coordinator, uploader, submit_delay=cfg.SUBMIT_DELAY)
    characters = CharacterCreator(client, uploader)
    return Services(tasks, products, client, uploader, poller, coordinator, pipeline, batch, characters)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    services = build_services(settings)
    app.state.services = services
    logger.info("[API] service: %s  db: %s", settings.API_BASE_URL, settings.DATABASE_URL)
    services.coordinator.resume()

    yield

    await services.aclose()


def get_services(request: Request) -> Services:
    return request.app.state.services


# -------------------------------------------------------------------
# FastAPI & CORS
# -------------------------------------------------------------------
app = FastAPI(title="Video Generation Orchestrator", version="1.0.0", lifespan=lifespan)

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/health")
def health():
    return {"ok": True, "time": datetime.now().isoformat()}


# -------------------------------------------------------------------
# Background work (errors end up in the records and the log)
# -------------------------------------------------------------------
async def _run_batch(services: Services, rows: Sequence[BatchRow], placeholder_ids: List[str]) -> None:
    try:
        await services.batch.run(rows, placeholder_ids)
    except Exception:
        logger.exception("[BATCH] batch aborted")


async def _run_pipeline(services: Services, product_id: str, model: str, duration: int) -> None:
    try:
        await services.pipeline.run(product_id, model=model, duration=duration)
    except PipelineTimeout as e:
        logger.warning("[PIPELINE] %s: %s, still pollable", product_id, e)
    except VideoGenError as e:
        logger.error("[PIPELINE] %s: %s", product_id, e)
    except Exception:
        logger.exception("[PIPELINE] %s: unexpected error", product_id)


def _get_task_or_404(services: Services, task_id: str) -> Task:
    task = services.tasks.get(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


def _get_product_or_404(services: Services, product_id: str) -> Product:
    product = services.products.get(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


# -------------------------------------------------------------------
# Uploads
# -------------------------------------------------------------------
@app.post("/api/uploads", response_model=UploadOut)
async def upload_image(image: UploadFile = File(...), services: Services = Depends(get_services)):
    if not image.filename:
        raise HTTPException(status_code=400, detail="No file name")
    content = await image.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")
    try:
        url = await services.uploader.upload(content, filename=image.filename, content_type=image.content_type)
    except RemoteJobError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return UploadOut(url=url)


# -------------------------------------------------------------------
# Tasks (single video generation)
# -------------------------------------------------------------------
@app.post("/api/tasks", response_model=TasksCreated, status_code=202)
async def create_tasks(
    request: CreateTasksRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    row = BatchRow(**request.model_dump(exclude={"count"}))
    rows = [row] * request.count
    placeholder_ids = services.batch.prepare(rows)
    background_tasks.add_task(_run_batch, services, rows, placeholder_ids)
    return TasksCreated(placeholder_ids=placeholder_ids)


@app.get("/api/tasks", response_model=List[TaskOut])
def list_tasks(services: Services = Depends(get_services)):
    return [TaskOut.model_validate(t, from_attributes=True) for t in services.tasks.list_all()]


@app.get("/api/tasks/{task_id}", response_model=TaskOut)
def get_task(task_id: str, services: Services = Depends(get_services)):
    return TaskOut.model_validate(_get_task_or_404(services, task_id), from_attributes=True)


@app.delete("/api/tasks/{task_id}")
def delete_task(task_id: str, services: Services = Depends(get_services)):
    _get_task_or_404(services, task_id)
    services.coordinator.delete_task(task_id)
    return {"detail": "Task deleted"}


@app.get("/api/tasks/{task_id}/download")
def download_task_result(task_id: str, services: Services = Depends(get_services)):
    task = _get_task_or_404(services, task_id)
    if not task.result_url:
        raise HTTPException(status_code=400, detail="Task has no result yet")
    return RedirectResponse(url=task.result_url)


# -------------------------------------------------------------------
# Products (image -> prompt -> video pipeline)
# -------------------------------------------------------------------
@app.post("/api/products", response_model=ProductOut, status_code=202)
async def create_product(
    request: ProductCreate,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    size = "large" if request.model == PRO_MODEL else "small"
    try:
        check_job_params(request.model, request.title, request.duration, size)
    except InvalidJobParams as e:
        raise HTTPException(status_code=400, detail=str(e))

    product = services.pipeline.register(request.title, request.main_image_url)
    background_tasks.add_task(_run_pipeline, services, product.id, request.model, request.duration)
    return ProductOut.model_validate(product, from_attributes=True)


@app.get("/api/products", response_model=List[ProductOut])
def list_products(services: Services = Depends(get_services)):
    return [ProductOut.model_validate(p, from_attributes=True) for p in services.products.list_all()]


@app.get("/api/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str, services: Services = Depends(get_services)):
    return ProductOut.model_validate(_get_product_or_404(services, product_id), from_attributes=True)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, services: Services = Depends(get_services)):
    _get_product_or_404(services, product_id)
    services.products.delete(product_id)
    return {"detail": "Product deleted"}


@app.get("/api/settings/prompts", response_model=PromptSettings)
def get_prompt_settings(services: Services = Depends(get_services)):
    return services.pipeline.prompt_settings()


@app.put("/api/settings/prompts", response_model=PromptSettings)
def update_prompt_settings(prompts: PromptSettings, services: Services = Depends(get_services)):
    return services.pipeline.save_prompt_settings(prompts)


# -------------------------------------------------------------------
# Batch (rows parsed from the spreadsheet template)
# -------------------------------------------------------------------
@app.post("/api/batch", response_model=TasksCreated, status_code=202)
async def create_batch(
    request: BatchRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    placeholder_ids = services.batch.prepare(request.rows)
    background_tasks.add_task(_run_batch, services, request.rows, placeholder_ids)
    return TasksCreated(placeholder_ids=placeholder_ids)


# -------------------------------------------------------------------
# Characters (clip of 1-3 s from a hosted or uploaded video)
# -------------------------------------------------------------------
@app.post("/api/characters", response_model=Character)
async def create_character(request: CharacterParams, services: Services = Depends(get_services)):
    try:
        return await services.characters.create(request)
    except RemoteJobError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.post("/api/characters/upload", response_model=Character)
async def create_character_from_video(
    video: UploadFile = File(...),
    start: float = Form(...),
    end: float = Form(...),
    services: Services = Depends(get_services),
):
    content = await video.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")
    try:
        return await services.characters.create_from_file(
            content, video.filename or "clip.mp4", video.content_type, start=start, end=end
        )
    except InvalidCharacterParams as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RemoteJobError as e:
        raise HTTPException(status_code=502, detail=str(e))
