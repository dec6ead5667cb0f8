import pytest
from fastapi.testclient import TestClient

from conftest import BASE_URL, UPLOAD_URL
from videogen import main
from videogen.config import Settings
from videogen.models import Task


@pytest.fixture
def api(tmp_path, service, monkeypatch):
    cfg = Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'api.db'}",
        API_BASE_URL=BASE_URL,
        API_KEY="test-key",
        IMAGE_UPLOAD_URL=UPLOAD_URL,
        POLL_INTERVAL=60,
        SUBMIT_DELAY=0,
        EXTRACTION_RETRY_DELAY=0,
        MAIN_IMAGE_PROMPT="white background",
        SCENE_PROMPT="15s, 4 shots",
    )
    build_services = main.build_services
    monkeypatch.setattr(main, "build_services", lambda _settings: build_services(cfg, transport=service.transport()))
    with TestClient(main.app) as client:
        yield client


def test_health(api):
    r = api.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_create_tasks_runs_submission_in_background(api, service):
    service.create_responses = [{"id": "video_1"}, {"id": "video_2"}]

    r = api.post("/api/tasks", json={"prompt": "a cat surfing", "count": 2})

    assert r.status_code == 202
    assert len(r.json()["placeholder_ids"]) == 2
    ids = sorted(t["id"] for t in api.get("/api/tasks").json())
    assert ids == ["video_1", "video_2"]
    assert api.get("/api/tasks/video_1").json()["status"] == "pending"


@pytest.mark.parametrize("payload", [
    {"prompt": "x", "model": "sora-2-pro", "size": "large", "duration": 10},
    {"prompt": "x", "model": "sora-2-pro", "size": "small", "duration": 15},
    {"prompt": "   "},
    {"prompt": "x", "count": 21},
])
def test_create_tasks_validation(api, service, payload):
    r = api.post("/api/tasks", json=payload)

    assert r.status_code == 422
    assert service.requests == []


def test_task_not_found(api):
    assert api.get("/api/tasks/video_missing").status_code == 404
    assert api.delete("/api/tasks/video_missing").status_code == 404


def test_delete_task(api, service):
    service.create_responses = [{"id": "video_1"}]
    api.post("/api/tasks", json={"prompt": "a cat surfing"})

    assert api.delete("/api/tasks/video_1").status_code == 200
    assert api.get("/api/tasks/video_1").status_code == 404


def test_download_redirects_to_result(api):
    tasks = api.app.state.services.tasks
    tasks.put(Task(id="video_done", status="completed", progress=100.0, result_url="https://cdn.test/v.mp4"))
    tasks.put(Task(id="video_busy", status="processing", progress=20.0))

    r = api.get("/api/tasks/video_done/download", follow_redirects=False)
    assert r.status_code in (302, 307)
    assert r.headers["location"] == "https://cdn.test/v.mp4"

    assert api.get("/api/tasks/video_busy/download").status_code == 400


def test_create_product_rejects_incompatible_model(api, service):
    r = api.post("/api/products", json={
        "title": "Ceramic Mug", "main_image_url": "https://img.test/mug.jpg", "model": "sora-2-pro", "duration": 10,
    })

    assert r.status_code == 400
    assert api.get("/api/products").json() == []
    assert service.requests == []


def test_product_failure_is_recorded_with_stage(api, service):
    service.chat_responses = [(500, {"message": "image model unavailable"})]

    r = api.post("/api/products", json={"title": "Ceramic Mug", "main_image_url": "https://img.test/mug.jpg"})

    assert r.status_code == 202
    product_id = r.json()["id"]
    product = api.get(f"/api/products/{product_id}").json()
    assert product["status"] == "failed"
    assert product["error_stage"] == "stage1"

    assert api.delete(f"/api/products/{product_id}").status_code == 200
    assert api.get(f"/api/products/{product_id}").status_code == 404


def test_prompt_settings(api):
    assert api.get("/api/settings/prompts").json() == {
        "main_image_prompt": "white background", "scene_prompt": "15s, 4 shots",
    }

    r = api.put("/api/settings/prompts", json={"main_image_prompt": "transparent", "scene_prompt": "10s"})

    assert r.status_code == 200
    assert api.get("/api/settings/prompts").json()["main_image_prompt"] == "transparent"


def test_batch(api, service):
    service.create_responses = [{"id": "video_1"}, {"id": "video_2"}]

    r = api.post("/api/batch", json={"rows": [
        {"prompt": "one", "model": 1, "orientation": 2, "size": 1, "duration": 10},
        {"prompt": "two", "image_source": "C:/photos/missing.jpg"},
        {"prompt": "three"},
    ]})

    assert r.status_code == 202
    assert len(r.json()["placeholder_ids"]) == 3
    by_id = {t["id"]: t for t in api.get("/api/tasks").json()}
    assert by_id["video_1"]["orientation"] == "landscape"
    assert "video_2" in by_id
    assert [t["status"] for t in by_id.values() if t["id"].startswith("tmp_")] == ["failed"]


def test_batch_requires_rows(api):
    assert api.post("/api/batch", json={"rows": []}).status_code == 422


def test_upload(api, service):
    r = api.post("/api/uploads", files={"image": ("mug.png", b"png bytes", "image/png")})

    assert r.status_code == 200
    assert r.json() == {"url": "https://images.test/u/1.png"}
    assert b"png bytes" in service.uploads[0]


def test_create_character(api, service):
    service.character_responses = [{"id": "ch_1", "username": "mira.walks"}]

    r = api.post("/api/characters", json={"url": "https://v.test/clip.mp4", "start": 1, "end": 3})

    assert r.status_code == 200
    assert r.json()["prompt_tag"] == "@{mira.walks}"


def test_create_character_rejects_long_clip(api, service):
    r = api.post("/api/characters", json={"url": "https://v.test/clip.mp4", "start": 0, "end": 4})

    assert r.status_code == 422
    assert service.requests == []


def test_create_character_from_uploaded_video(api, service):
    service.character_responses = [{"id": "ch_1", "username": "mira.walks"}]

    r = api.post(
        "/api/characters/upload",
        files={"video": ("clip.mp4", b"mp4 bytes", "video/mp4")},
        data={"start": "0", "end": "2"},
    )

    assert r.status_code == 200
    assert r.json()["username"] == "mira.walks"
    assert len(service.uploads) == 1


def test_create_character_from_non_video(api, service):
    r = api.post(
        "/api/characters/upload",
        files={"video": ("mug.png", b"png bytes", "image/png")},
        data={"start": "0", "end": "2"},
    )

    assert r.status_code == 400
    assert service.requests == []


def test_create_character_remote_error(api, service):
    service.character_responses = [(422, {"message": "no person found in clip"})]

    r = api.post("/api/characters", json={"url": "https://v.test/clip.mp4", "start": 1, "end": 2})

    assert r.status_code == 502
    assert "no person found" in r.json()["detail"]
