# videogen/client.py
# Remote video service client: create / query jobs and the two chat-completion transforms

import asyncio
import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx
from pydantic import ValidationError

from .config import Settings
from .errors import RemoteJobError, ServiceOverloaded, TransformError
from .schemas import (
    PRO_MODEL,
    Character,
    CharacterParams,
    CreateJobParams,
    JobStatus,
    TaskStatus,
    TransformOutput,
    check_character_window,
    check_job_params,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

# 500 bodies that mean "capacity saturated, try again later"
OVERLOAD_MARKERS = ("saturated", "负载已饱和")

ALTERNATE_ID_FIELDS = ("task_id", "taskId", "video_id", "videoId")

URL_RE = re.compile(r"https?://[^\s\)\]\"'<>]+")
DATA_URL_RE = re.compile(r"data:image/(png|jpeg|jpg|webp);base64,([A-Za-z0-9+/=]+)")


def is_overloaded(err: RemoteJobError) -> bool:
    if err.status != 500:
        return False
    message = (err.message or "").lower()
    return any(marker in message for marker in OVERLOAD_MARKERS)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry and how long to wait before each retry."""
    max_retries: int = 3
    backoff: Sequence[float] = (2.0, 4.0, 6.0)
    retryable: Callable[[RemoteJobError], bool] = field(default=is_overloaded)

    def delay(self, retry: int) -> float:
        # retry is 1-based; the last backoff step repeats if the schedule is short
        return self.backoff[min(retry, len(self.backoff)) - 1]


# -------------------------------------------------------------------
# Identifier / image extraction (pure, never raise)
# -------------------------------------------------------------------
@dataclass(frozen=True)
class Found:
    task_id: str
    source: str


@dataclass(frozen=True)
class NotFound:
    payload: Any = None


Extraction = Union[Found, NotFound]


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, str)):
        text = str(value).strip()
        return text or None
    return None


def extract_task_id(payload: Any) -> Extraction:
    """Pull the job id out of a create response.

    Tried in order: ``id``; ``choices[0].message.content`` (chat-completion
    shaped replies); then the alternate field names.
    """
    if not isinstance(payload, dict):
        return NotFound(payload)

    task_id = _clean(payload.get("id")) if isinstance(payload.get("id"), str) else None
    if task_id:
        return Found(task_id, "id")

    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message") if isinstance(first.get("message"), dict) else {}
        content = message.get("content")
        if isinstance(content, str) and content.strip():
            return Found(content.strip(), "choices")

    for name in ALTERNATE_ID_FIELDS:
        task_id = _clean(payload.get(name))
        if task_id:
            return Found(task_id, name)

    return NotFound(payload)


def extract_image(text: str) -> Optional[TransformOutput]:
    """URL first, inline base64 second. None when the text holds neither."""
    match = URL_RE.search(text or "")
    if match:
        return TransformOutput(text=text, url=match.group(0).rstrip(".,;"))

    match = DATA_URL_RE.search(text or "")
    if match:
        kind, b64 = match.groups()
        try:
            data = base64.b64decode(b64, validate=True)
        except (binascii.Error, ValueError):
            return None
        mime = "image/png" if kind == "png" else f"image/{'jpeg' if kind == 'jpg' else kind}"
        return TransformOutput(text=text, image_data=data, mime_type=mime)
    return None


def _chat_content(payload: Any) -> str:
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""
    return content if isinstance(content, str) else ""


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300] or response.reason_phrase
    if isinstance(body, dict):
        err = body.get("message") or body.get("error")
        if isinstance(err, dict):
            err = err.get("message")
        if err:
            return str(err)
    return response.text[:300]


class RemoteJobClient:
    """Thin async wrapper over the service's documented request/response contract."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        pro_api_key: Optional[str] = None,
        video_api_base: str = "/v1/video",
        chat_api_base: str = "/v1/chat/completions",
        character_api_path: str = "/sora/v1/characters",
        image_model: str = "gemini-2.5-flash-image",
        prompt_model: str = "gpt-5-chat-latest",
        timeout: float = 300.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._api_key = api_key
        self._pro_api_key = pro_api_key
        self._video_base = video_api_base.rstrip("/")
        self._chat_path = chat_api_base
        self._character_path = character_api_path
        self.image_model = image_model
        self.prompt_model = prompt_model
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "RemoteJobClient":
        return cls(
            settings.API_BASE_URL,
            settings.API_KEY,
            pro_api_key=settings.PRO_API_KEY,
            video_api_base=settings.VIDEO_API_BASE,
            chat_api_base=settings.CHAT_API_BASE,
            character_api_path=settings.CHARACTER_API_PATH,
            image_model=settings.IMAGE_MODEL,
            prompt_model=settings.PROMPT_MODEL,
            timeout=settings.REQUEST_TIMEOUT,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _auth(self, model: Optional[str] = None) -> Dict[str, str]:
        key = self._api_key
        if model == PRO_MODEL and self._pro_api_key:
            key = self._pro_api_key
        if not key:
            logger.error("[API] no API key configured, the request will most likely get a 401")
            return {}
        return {"Authorization": f"Bearer {key}"}

    async def _request(self, method: str, path: str, *, model: Optional[str] = None, **kwargs) -> Any:
        try:
            r = await self._http.request(method, path, headers=self._auth(model), **kwargs)
        except httpx.RequestError as e:
            raise RemoteJobError(f"{type(e).__name__}: {e}") from e

        if r.status_code >= 400:
            raise RemoteJobError(_error_message(r), status=r.status_code, payload=r.text[:1000])
        try:
            return r.json()
        except ValueError as e:
            raise RemoteJobError(f"invalid JSON body: {r.text[:300]}", status=r.status_code) from e

    # -------------------------------------------------------------------
    # create / query
    # -------------------------------------------------------------------
    async def create_job(self, params: CreateJobParams) -> Extraction:
        """Submit a generation job. Returns Found(id) or NotFound(payload).

        Overloaded 500s are retried with the policy's backoff; once the budget
        is spent ServiceOverloaded (retryable) is raised. Other errors raise
        RemoteJobError right away.
        """
        check_job_params(params.model, params.prompt, params.duration, params.size)
        body = params.to_request()
        path = f"{self._video_base}/create"
        policy = self.retry_policy

        attempt = 0
        while True:
            if attempt > 0:
                wait = policy.delay(attempt)
                logger.warning("[CREATE] service saturated, retry %d/%d in %.0fs", attempt, policy.max_retries, wait)
                await self._sleep(wait)
            try:
                payload = await self._request("POST", path, json=body, model=params.model)
                break
            except RemoteJobError as e:
                if not policy.retryable(e):
                    raise
                if attempt >= policy.max_retries:
                    raise ServiceOverloaded(
                        f"service saturated, gave up after {policy.max_retries} retries: {e.message}",
                        attempts=attempt + 1,
                        payload=e.payload,
                    ) from e
                attempt += 1

        extraction = extract_task_id(payload)
        if isinstance(extraction, Found):
            logger.info("[CREATE] %s job created: %s (from %s)", params.model, extraction.task_id, extraction.source)
        else:
            logger.warning("[CREATE] no task id in create response: %s", str(payload)[:300])
        return extraction

    async def query_job(self, task_id: str) -> JobStatus:
        payload = await self._request("GET", f"{self._video_base}/query", params={"id": task_id})
        if not isinstance(payload, dict):
            raise RemoteJobError(f"unexpected query response: {str(payload)[:300]}")

        raw_status = str(payload.get("status") or "").lower()
        try:
            status = TaskStatus(raw_status)
        except ValueError:
            status = TaskStatus.PROCESSING

        detail = payload.get("detail") if isinstance(payload.get("detail"), dict) else {}
        pct = detail.get("progress_pct", payload.get("progress_pct"))
        progress = None
        if isinstance(pct, (int, float)) and not isinstance(pct, bool):
            progress = max(0.0, min(100.0, float(pct) * 100))

        return JobStatus(
            task_id=task_id,
            status=status,
            progress=progress,
            result_url=payload.get("video_url") or None,
            thumbnail_url=payload.get("thumbnail_url") or None,
            enhanced_prompt=payload.get("enhanced_prompt") or None,
            raw=payload,
        )

    # -------------------------------------------------------------------
    # characters
    # -------------------------------------------------------------------
    async def create_character(self, params: CharacterParams) -> Character:
        """Cut a reusable character out of ``params.start``-``params.end`` of a hosted video."""
        check_character_window(params.start, params.end)
        payload = await self._request("POST", self._character_path, json=params.to_request())
        try:
            character = Character.model_validate(payload)
        except ValidationError as e:
            raise RemoteJobError(f"unexpected character response: {str(payload)[:300]}", payload=payload) from e
        logger.info("[CHARACTER] created %s (%s)", character.username, character.id)
        return character

    # -------------------------------------------------------------------
    # transforms (chat-completions compatible)
    # -------------------------------------------------------------------
    async def transform(
        self,
        kind: str,
        messages: List[Dict[str, Any]],
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> TransformOutput:
        """kind="image" -> reply must carry an image URL or inline base64 image.
        kind="text"  -> reply must carry non-empty text.
        """
        if kind == "image":
            model = self.image_model
            body = {"model": model, "messages": messages, "temperature": 0.7, "max_tokens": 1000}
        elif kind == "text":
            model = self.prompt_model
            body = {"model": model, "messages": messages, "temperature": 0.8, "max_tokens": 2000}
        else:
            raise ValueError(f"unknown transform kind: {kind}")
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens

        payload = await self._request("POST", self._chat_path, json=body)
        content = _chat_content(payload)

        if kind == "text":
            if not content.strip():
                raise TransformError(f"{model} returned no text", raw_text=str(payload)[:500])
            return TransformOutput(text=content.strip())

        output = extract_image(content)
        if output is None:
            raise TransformError(f"no image in {model} response", raw_text=content or str(payload))
        return output


def user_message(text: str, image_url: Optional[str] = None) -> Dict[str, Any]:
    content: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    if image_url:
        content.append({"type": "image_url", "image_url": {"url": image_url}})
    return {"role": "user", "content": content}
