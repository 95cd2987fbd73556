import io
import json
import time
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

import main
from genstudio.history import HistoryEntry, encode_data_url
from genstudio.providers import (
    ImageToVideoProvider,
    ProviderRegistry,
    ReplicateClient,
    RunwayClient,
    TextToImageProvider,
    TextToVideoProvider,
)
from genstudio.tasks import TaskManager

pytestmark = pytest.mark.integration

IMAGE_URL = "https://example.com/cat.png"


@pytest.fixture(scope="module")
def client() -> TestClient:
    return TestClient(main.app)


@pytest.fixture(autouse=True, scope="module")
def isolate_settings_store(tmp_path_factory: pytest.TempPathFactory):
    original_store = main.settings_store
    root = tmp_path_factory.mktemp("settings")
    main.settings_store = main.SettingsStore(root / "settings.json", main.DEFAULT_SETTINGS)
    main.settings_store.update({"paths": {"data_dir": str(root / "data"), "logs_dir": str(root / "logs")}})
    main.ensure_runtime_dirs(main.settings_store.get(), main.BASE_DIR)
    yield
    main.settings_store = original_store


@pytest.fixture(autouse=True)
def isolate_runtime(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main, "history_store", main.HistoryStore(tmp_path / "history.json", max_entries=100))
    monkeypatch.setattr(main, "TASK_MANAGER", TaskManager())
    monkeypatch.setattr(main, "PROVIDERS", ProviderRegistry())


def use_providers(monkeypatch: pytest.MonkeyPatch, *providers: Any) -> None:
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    monkeypatch.setattr(main, "PROVIDERS", registry)


def runway_provider(
    statuses: list[dict[str, Any]],
    *,
    interval: float = 0.0,
    environ: Any = None,
    seen: Optional[list[httpx.Request]] = None,
) -> ImageToVideoProvider:
    remaining = list(statuses)
    requests = seen if seen is not None else []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "POST":
            return httpx.Response(200, json={"id": "job-1"})
        status = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return httpx.Response(200, json=dict(status, id="job-1"))

    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return ImageToVideoProvider(
        poll_interval_sec=interval,
        client_factory=lambda key: RunwayClient(key, http_client=http_client),
        environ={"RUNWAY_API_KEY": "rk"} if environ is None else environ,
    )


def replicate_provider(handler: Callable[[httpx.Request], httpx.Response], environ: Any = None) -> TextToVideoProvider:
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return TextToVideoProvider(
        client_factory=lambda token: ReplicateClient(token, http_client=http_client),
        environ={"REPLICATE_API_TOKEN": "r8"} if environ is None else environ,
    )


class FakeInferenceClient:
    prompts: list[str] = []

    def __init__(self, **_kwargs: Any) -> None:
        pass

    def text_to_image(self, prompt: str, **_parameters: Any) -> Image.Image:
        FakeInferenceClient.prompts.append(prompt)
        return Image.new("RGB", (4, 4), color=(0, 128, 255))


def image_provider(environ: Any = None) -> TextToImageProvider:
    return TextToImageProvider(
        client_factory=FakeInferenceClient,
        environ={"HF_API_KEY": "hf"} if environ is None else environ,
    )


def png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (16, 16), color=(10, 20, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


def wait_for_task(client: TestClient, task_id: str, timeout_sec: float = 10.0) -> dict[str, Any]:
    deadline = time.monotonic() + timeout_sec
    while time.monotonic() < deadline:
        task = client.get(f"/api/tasks/{task_id}").json()
        if task["status"] in ("completed", "error", "cancelled"):
            return task
        time.sleep(0.05)
    raise AssertionError(f"task {task_id} did not finish")


def test_root_serves_ui(client: TestClient) -> None:
    resp = client.get("/")
    assert resp.status_code == 200
    assert "GenStudio" in resp.text


def test_settings_roundtrip(client: TestClient) -> None:
    got = client.get("/api/settings")
    assert got.status_code == 200
    payload = got.json()
    payload["defaults"]["steps"] = 42
    payload["defaults"]["video_orientation"] = "portrait"

    updated = client.put("/api/settings", json=payload)
    assert updated.status_code == 200
    assert updated.json()["defaults"]["steps"] == 42

    verify = client.get("/api/settings")
    assert verify.json()["defaults"]["steps"] == 42
    assert verify.json()["defaults"]["video_orientation"] == "portrait"
    client.put("/api/settings", json={"defaults": {"video_orientation": "landscape"}})


def test_settings_are_sanitized(client: TestClient) -> None:
    resp = client.put("/api/settings", json={"defaults": {"guidance": 99, "seed": 0}})
    assert resp.status_code == 200
    assert resp.json()["defaults"]["guidance"] == 20.0
    assert resp.json()["defaults"]["seed"] == -1


def test_history_cap_follows_settings(client: TestClient) -> None:
    try:
        resp = client.put("/api/settings", json={"history": {"max_entries": 2}})
        assert resp.status_code == 200
        assert resp.json()["history"]["max_entries"] == 2
        for index in range(4):
            main.history_store.add(HistoryEntry(id=f"e{index}", url=encode_data_url(b"x"), prompt="p"))
        listing = client.get("/api/history").json()
        assert listing["max_entries"] == 2
        assert [item["id"] for item in listing["items"]] == ["e3", "e2"]
    finally:
        client.put("/api/settings", json={"history": {"max_entries": 100}})
    assert client.get("/api/history").json()["max_entries"] == 100


def test_history_moves_with_data_dir(client: TestClient, tmp_path: Path) -> None:
    original_data_dir = client.get("/api/settings").json()["paths"]["data_dir"]
    moved = tmp_path / "moved"
    try:
        resp = client.put("/api/settings", json={"paths": {"data_dir": str(moved)}})
        assert resp.status_code == 200
        assert main.history_store.path == moved.resolve() / "history.json"
        main.history_store.add(HistoryEntry(id="m1", url=encode_data_url(b"x"), prompt="p"))
        assert [item["id"] for item in client.get("/api/history").json()["items"]] == ["m1"]
        assert (moved / "history.json").exists()
    finally:
        client.put("/api/settings", json={"paths": {"data_dir": original_data_dir}})


def test_vendor_endpoints_cannot_be_changed_through_the_api(client: TestClient) -> None:
    current = client.get("/api/settings").json()["providers"]
    for key in ("runway_base_url", "replicate_base_url"):
        resp = client.put("/api/settings", json={"providers": {key: "http://127.0.0.1:9/collect"}})
        assert resp.status_code == 400
        assert key in resp.json()["detail"]
    assert client.get("/api/settings").json()["providers"] == current

    echoed = client.put(
        "/api/settings",
        json={"providers": {"runway_base_url": current["runway_base_url"], "runway_model": current["runway_model"]}},
    )
    assert echoed.status_code == 200
    assert echoed.json()["providers"] == current


def test_system_info_reports_credentials(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HF_API_KEY", raising=False)
    monkeypatch.delenv("HF_TOKEN", raising=False)
    monkeypatch.setenv("REPLICATE_API_TOKEN", "r8-secret")
    resp = client.get("/api/system/info")
    assert resp.status_code == 200
    body = resp.json()
    assert body["version"] == main.APP_VERSION
    assert body["credentials"]["HF_API_KEY"] is False
    assert body["credentials"]["REPLICATE_API_TOKEN"] is True
    assert "r8-secret" not in resp.text


def test_presets_endpoint(client: TestClient) -> None:
    resp = client.get("/api/presets")
    assert resp.status_code == 200
    body = resp.json()
    assert {model["key"] for model in body["models"]} >= {"stable-diffusion-3.5-large", "flux-schnell"}
    assert body["ranges"]["steps"] == {"min": 10, "max": 50, "step": 1}


def test_img2vdo_returns_video_url(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[httpx.Request] = []
    statuses = [
        {"status": "PENDING"},
        {"status": "RUNNING"},
        {"status": "SUCCEEDED", "output": ["https://x/video.mp4"]},
    ]
    use_providers(monkeypatch, runway_provider(statuses, seen=seen))
    resp = client.post("/api/img2vdo", json={"imageUrl": IMAGE_URL, "promptText": "zoom out"})
    assert resp.status_code == 200
    assert resp.json() == {"videoUrl": "https://x/video.mp4"}
    assert len([request for request in seen if request.method == "POST"]) == 1
    assert len([request for request in seen if request.method == "GET"]) == 3


def test_img2vdo_throttled_job_is_an_error(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    use_providers(monkeypatch, runway_provider([{"status": "PENDING"}, {"status": "THROTTLED"}]))
    resp = client.post("/api/img2vdo", json={"imageUrl": IMAGE_URL})
    assert resp.status_code == 500
    assert "THROTTLED" in resp.json()["error"]


def test_img2vdo_missing_key_names_the_variable(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[httpx.Request] = []
    use_providers(monkeypatch, runway_provider([{"status": "SUCCEEDED"}], environ={}, seen=seen))
    resp = client.post("/api/img2vdo", json={"imageUrl": IMAGE_URL})
    assert resp.status_code == 500
    assert "RUNWAY_API_KEY" in resp.json()["error"]
    assert seen == []


def test_img2vdo_rejects_non_url_image(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[httpx.Request] = []
    use_providers(monkeypatch, runway_provider([{"status": "SUCCEEDED"}], seen=seen))
    resp = client.post("/api/img2vdo", json={"imageUrl": "/home/me/cat.png"})
    assert resp.status_code == 400
    assert seen == []


def test_replicate_returns_video_url(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"id": "p1", "status": "succeeded", "output": "https://x/anim.mp4"})

    use_providers(monkeypatch, replicate_provider(handler))
    resp = client.post("/api/replicate", json={"prompt": "a dancing robot"})
    assert resp.status_code == 200
    assert resp.json() == {"video_url": "https://x/anim.mp4"}


def test_replicate_mirrors_upstream_error(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(402, json={"title": "Payment required", "detail": "Add billing"})

    use_providers(monkeypatch, replicate_provider(handler))
    resp = client.post("/api/replicate", json={"prompt": "a dancing robot"})
    assert resp.status_code == 402
    assert resp.json() == {"error": {"title": "Payment required", "detail": "Add billing"}}


def test_replicate_missing_token(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    use_providers(monkeypatch, replicate_provider(lambda request: httpx.Response(500), environ={}))
    resp = client.post("/api/replicate", json={"prompt": "a dancing robot"})
    assert resp.status_code == 500
    assert "REPLICATE_API_TOKEN" in resp.json()["error"]


def test_direct_routes_share_the_session_guard(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[httpx.Request] = []

    def replicate_handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": "p1", "status": "succeeded", "output": "https://x/anim.mp4"})

    use_providers(
        monkeypatch,
        runway_provider([{"status": "SUCCEEDED", "output": ["https://x/video.mp4"]}], seen=seen),
        replicate_provider(replicate_handler),
    )
    headers = {"X-Session-Id": "s-direct"}
    busy_id = main.TASK_MANAGER.create("text2image", owner="s-direct")

    busy_video = client.post("/api/img2vdo", json={"imageUrl": IMAGE_URL}, headers=headers)
    assert busy_video.status_code == 409
    assert busy_id in busy_video.json()["error"]
    assert client.post("/api/replicate", json={"prompt": "x"}, headers=headers).status_code == 409
    assert seen == []

    other = client.post("/api/img2vdo", json={"imageUrl": IMAGE_URL}, headers={"X-Session-Id": "s-elsewhere"})
    assert other.status_code == 200

    main.TASK_MANAGER.mark_cancelled(busy_id)
    assert client.post("/api/img2vdo", json={"imageUrl": IMAGE_URL}, headers=headers).json() == {
        "videoUrl": "https://x/video.mp4"
    }
    assert client.post("/api/replicate", json={"prompt": "x"}, headers=headers).json() == {
        "video_url": "https://x/anim.mp4"
    }
    finished = client.get("/api/tasks", params={"status": "completed"}).json()["items"]
    assert sorted(task["task_type"] for task in finished if task["owner"] == "s-direct") == ["image2video", "text2video"]


def test_image_task_completes_and_lands_in_history(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    FakeInferenceClient.prompts = []
    use_providers(monkeypatch, image_provider())
    resp = client.post(
        "/api/generate/image",
        json={"prompt": "a blue tile", "style": "pixel-art", "enhance_prompt": True},
        headers={"X-Session-Id": "s-image"},
    )
    assert resp.status_code == 200
    task = wait_for_task(client, resp.json()["task_id"])
    assert task["status"] == "completed", task
    assert task["result"]["kind"] == "image"
    assert task["result"]["url"].startswith("data:image/png;base64,")
    assert FakeInferenceClient.prompts[0].startswith("a blue tile, pixel art")

    history = client.get("/api/history").json()["items"]
    assert len(history) == 1
    assert history[0]["id"] == task["result"]["history_id"]
    assert history[0]["prompt"] == "a blue tile"


def test_image_request_validates_ranges(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    use_providers(monkeypatch, image_provider())
    assert client.post("/api/generate/image", json={"prompt": "x", "width": 300}).status_code == 422
    assert client.post("/api/generate/image", json={"prompt": "x", "steps": 80}).status_code == 422
    assert client.post("/api/generate/image", json={"prompt": ""}).status_code == 422


def test_image_task_missing_key_is_rejected_up_front(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    use_providers(monkeypatch, image_provider(environ={}))
    resp = client.post("/api/generate/image", json={"prompt": "a cat"})
    assert resp.status_code == 500
    assert "HF_API_KEY" in resp.json()["error"]
    assert main.TASK_MANAGER.list() == []


def test_video_task_accepts_uploaded_image(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[httpx.Request] = []
    statuses = [{"status": "RUNNING", "progress": 0.5}, {"status": "SUCCEEDED", "output": ["https://x/v.mp4"]}]
    use_providers(monkeypatch, runway_provider(statuses, seen=seen))
    resp = client.post(
        "/api/generate/video",
        files={"image": ("cat.png", png_bytes(), "image/png")},
        data={"prompt_text": "slow zoom", "duration": "10", "orientation": "portrait"},
        headers={"X-Session-Id": "s-video"},
    )
    assert resp.status_code == 200, resp.text
    task = wait_for_task(client, resp.json()["task_id"])
    assert task["status"] == "completed", task
    assert task["result"]["url"] == "https://x/v.mp4"
    assert task["job_id"] == "job-1"
    assert task["job_status"] == "SUCCEEDED"

    body = json.loads(seen[0].content)
    assert body["promptImage"].startswith("data:image/png;base64,")
    assert body["duration"] == 10
    assert body["ratio"] == "768:1280"
    assert client.get("/api/history").json()["items"] == []


def test_video_task_requires_an_image(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    use_providers(monkeypatch, runway_provider([{"status": "SUCCEEDED"}]))
    assert client.post("/api/generate/video", data={"prompt_text": "x"}).status_code == 400
    bad_upload = client.post("/api/generate/video", files={"image": ("a.png", b"not an image", "image/png")})
    assert bad_upload.status_code == 400
    bad_duration = client.post("/api/generate/video", data={"image_url": IMAGE_URL, "duration": "7"})
    assert bad_duration.status_code == 400


def test_second_submission_while_busy_is_rejected_then_cancel(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    seen: list[httpx.Request] = []
    use_providers(monkeypatch, runway_provider([{"status": "RUNNING"}], interval=0.2, seen=seen))
    headers = {"X-Session-Id": "s-busy"}
    first = client.post("/api/generate/video", data={"image_url": IMAGE_URL}, headers=headers)
    assert first.status_code == 200
    task_id = first.json()["task_id"]

    second = client.post("/api/generate/video", data={"image_url": IMAGE_URL}, headers=headers)
    assert second.status_code == 409

    other_session = client.post("/api/generate/video", data={"image_url": IMAGE_URL}, headers={"X-Session-Id": "s-other"})
    assert other_session.status_code == 200
    other_id = other_session.json()["task_id"]
    client.post(f"/api/tasks/{other_id}/cancel")
    assert wait_for_task(client, other_id)["status"] == "cancelled"

    cancel = client.post(f"/api/tasks/{task_id}/cancel")
    assert cancel.status_code == 200
    assert cancel.json()["cancel_requested"] is True
    task = wait_for_task(client, task_id)
    assert task["status"] == "cancelled"

    checks_after_cancel = len(seen)
    time.sleep(0.5)
    assert len(seen) == checks_after_cancel

    again = client.post("/api/generate/video", data={"image_url": IMAGE_URL}, headers=headers)
    assert again.status_code == 200
    client.post(f"/api/tasks/{again.json()['task_id']}/cancel")
    wait_for_task(client, again.json()["task_id"])


def test_animation_task_error_is_recorded(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "p1", "status": "failed", "error": "NSFW content detected"})

    use_providers(monkeypatch, replicate_provider(handler))
    resp = client.post("/api/generate/animation", json={"prompt": "x"})
    assert resp.status_code == 200
    task = wait_for_task(client, resp.json()["task_id"])
    assert task["status"] == "error"
    assert "NSFW content detected" in task["error"]


def test_task_endpoints_404(client: TestClient) -> None:
    assert client.get("/api/tasks/missing").status_code == 404
    assert client.post("/api/tasks/missing/cancel").status_code == 404


def test_history_detail_download_delete(client: TestClient) -> None:
    data = png_bytes()
    main.history_store.add(HistoryEntry(id="e1", url=encode_data_url(data), prompt="first"))
    main.history_store.add(HistoryEntry(id="e2", url=encode_data_url(data), prompt="second"))

    listing = client.get("/api/history").json()
    assert [item["id"] for item in listing["items"]] == ["e2", "e1"]
    assert listing["max_entries"] == 100

    detail = client.get("/api/history/e1")
    assert detail.status_code == 200
    assert detail.json()["prompt"] == "first"

    download = client.get("/api/history/e1/download")
    assert download.status_code == 200
    assert download.content == data
    assert download.headers["content-type"] == "image/png"
    assert download.headers["content-disposition"] == 'attachment; filename="ai-generated-e1.png"'

    assert client.delete("/api/history/e1").json() == {"status": "ok"}
    assert client.delete("/api/history/e1").status_code == 404
    assert client.get("/api/history/e1").status_code == 404
    assert [item["id"] for item in client.get("/api/history").json()["items"]] == ["e2"]


def test_task_listing(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    use_providers(monkeypatch, image_provider())
    task_id = client.post("/api/generate/image", json={"prompt": "a cat"}).json()["task_id"]
    wait_for_task(client, task_id)
    items = client.get("/api/tasks", params={"task_type": "text2image"}).json()["items"]
    assert [item["id"] for item in items] == [task_id]
