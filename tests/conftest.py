"""Shared fixtures: a throwaway SQLite registry and a scripted fake of the remote service.

The project root is put on sys.path so ``import videogen`` works when the
tests are run from any directory.
"""

import asyncio
import json
import os
import sys

import httpx
import pytest
import pytest_asyncio

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from videogen.client import RemoteJobClient  # noqa: E402
from videogen.coordinator import JobSubmissionCoordinator  # noqa: E402
from videogen.db import init_db, make_engine  # noqa: E402
from videogen.models import Product, PromptSettingsRecord, Task  # noqa: E402
from videogen.poller import StatusPoller  # noqa: E402
from videogen.registry import Registry  # noqa: E402
from videogen.uploads import ImageUploader  # noqa: E402

BASE_URL = "https://video.test"
UPLOAD_URL = "https://images.test/api/upload"


class FakeService:
    """Scripted stand-in for the video service, image host and chat endpoint.

    Each queue holds the responses to hand out in order; the last one repeats.
    A response is either a dict (200 JSON) or a ``(status, body)`` tuple.
    """

    def __init__(self):
        self.create_responses = []
        self.query_responses = {}
        self.chat_responses = []
        self.character_responses = []
        self.fetch_responses = {}
        self.requests = []
        self.uploads = []
        self.on_request = None  # optional callable(request), runs before the response is built

    @staticmethod
    def _next(queue):
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, tuple):
            status, body = item
        else:
            status, body = 200, item
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body)

    def calls(self, path):
        return [r for r in self.requests if r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        path = request.url.path
        if path == "/v1/video/create":
            return self._next(self.create_responses)
        if path == "/v1/video/query":
            task_id = request.url.params["id"]
            queue = self.query_responses.get(task_id)
            if not queue:
                return httpx.Response(404, json={"message": "task not found"})
            return self._next(queue)
        if path == "/v1/chat/completions":
            return self._next(self.chat_responses)
        if path == "/sora/v1/characters":
            return self._next(self.character_responses)
        if str(request.url) == UPLOAD_URL:
            self.uploads.append(request.content)
            return httpx.Response(200, json={"url": f"https://images.test/u/{len(self.uploads)}.png", "created": 1})
        if str(request.url) in self.fetch_responses:
            status, content = self.fetch_responses[str(request.url)]
            return httpx.Response(status, content=content, headers={"content-type": "image/jpeg"})
        return httpx.Response(404, json={"message": f"no route {path}"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def chat_reply(content: str) -> dict:
    return {"id": "chatcmpl-1", "object": "chat.completion", "choices": [
        {"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
    ]}


def query_reply(status: str, pct=None, url=None, **extra) -> dict:
    body = {"id": "ignored", "status": status, "status_update_time": 0, **extra}
    if pct is not None:
        body["detail"] = {"progress_pct": pct}
    if url:
        body["video_url"] = url
    return body


def body_of(request: httpx.Request) -> dict:
    return json.loads(request.content)


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        await asyncio.sleep(0)  # still hand control back to the loop


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def tasks(engine):
    return Registry(engine, Task)


@pytest.fixture
def products(engine):
    return Registry(engine, Product)


@pytest.fixture
def prompt_store(engine):
    return Registry(engine, PromptSettingsRecord)


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def client(service, sleep):
    return RemoteJobClient(BASE_URL, "test-key", pro_api_key="pro-key", transport=service.transport(), sleep=sleep)


@pytest.fixture
def uploader(service):
    return ImageUploader(UPLOAD_URL, transport=service.transport())


@pytest_asyncio.fixture
async def poller(client, tasks):
    p = StatusPoller(client, tasks, interval=2.0, sleep=RecordingSleep())
    yield p
    await p.stop_all()


@pytest.fixture
def coordinator(client, tasks, poller, sleep):
    return JobSubmissionCoordinator(client, tasks, poller, extraction_retry_delay=1.0, sleep=sleep)
