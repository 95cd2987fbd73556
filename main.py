import io
import threading
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from fastapi import FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field

from genstudio.config import (
    DEFAULT_SETTINGS,
    VALID_ORIENTATIONS,
    VALID_VIDEO_DURATIONS,
    SettingsStore,
    credential_status,
    ensure_runtime_dirs,
    resolve_path,
    strip_read_only_settings,
)
from genstudio.errors import GenerationError
from genstudio.history import HistoryEntry, HistoryStore, decode_data_url, encode_data_url, new_entry_id
from genstudio.logging import get_logger, setup_logger
from genstudio.presets import presets_payload
from genstudio.providers import (
    GenerationContext,
    GenerationRequest,
    GenerationResult,
    ProviderRegistry,
    build_providers,
    validate_image_reference,
)
from genstudio.tasks import TaskBusyError, TaskCancelledError, TaskManager, task_progress_heartbeat

APP_VERSION = "0.1.0"

BASE_DIR = Path(__file__).resolve().parent
STATIC_DIR = BASE_DIR / "static"
DATA_DIR = BASE_DIR / "data"
DEFAULT_SESSION_ID = "default"
MAX_UPLOAD_BYTES = 16 * 1024 * 1024

settings_store = SettingsStore(DATA_DIR / "settings.json", DEFAULT_SETTINGS)
ensure_runtime_dirs(settings_store.get(), BASE_DIR)
setup_logger(settings_store.get(), BASE_DIR)
LOGGER = get_logger("app")


def create_history_store(settings: Dict[str, Any]) -> HistoryStore:
    data_dir = resolve_path(str(settings["paths"]["data_dir"]), BASE_DIR)
    return HistoryStore(data_dir / "history.json", max_entries=int(settings["history"]["max_entries"]))


TASK_MANAGER = TaskManager()
history_store = create_history_store(settings_store.get())
PROVIDERS: ProviderRegistry = build_providers(settings_store.get())


class TextToImageRequest(BaseModel):
    prompt: str = Field(min_length=1)
    width: Optional[int] = Field(default=None, ge=256, le=1024, multiple_of=64)
    height: Optional[int] = Field(default=None, ge=256, le=1024, multiple_of=64)
    steps: Optional[int] = Field(default=None, ge=10, le=50)
    guidance: Optional[float] = Field(default=None, ge=1.0, le=20.0)
    seed: Optional[int] = Field(default=None, ge=-1, le=1_000_000)
    enhance_prompt: Optional[bool] = None
    model: Optional[str] = None
    style: Optional[str] = None


class ImageToVideoRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_url: str = Field(alias="imageUrl", min_length=1)
    prompt_text: str = Field(default="", alias="promptText")
    duration: Optional[Literal[5, 10]] = None
    orientation: Optional[Literal["landscape", "portrait"]] = None


class AnimationRequest(BaseModel):
    prompt: str = Field(min_length=1)


def session_owner(x_session_id: Optional[str]) -> str:
    return (x_session_id or "").strip() or DEFAULT_SESSION_ID


def image_parameters(req: TextToImageRequest, defaults: Dict[str, Any]) -> Dict[str, Any]:
    parameters = {
        key: defaults[key] for key in ("width", "height", "steps", "guidance", "seed", "enhance_prompt", "model", "style")
    }
    for key, value in req.model_dump(exclude={"prompt"}).items():
        if value is not None:
            parameters[key] = value
    # 0 comes from the slider's low end and means "pick one for me", same as -1.
    if parameters["seed"] == 0:
        parameters["seed"] = -1
    return parameters


def video_parameters(duration: Optional[int], orientation: Optional[str], defaults: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "duration": int(duration or defaults["video_duration"]),
        "orientation": orientation or defaults["video_orientation"],
    }


def upload_to_data_url(data: bytes) -> str:
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded image is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Uploaded image is too large")
    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = image.format or "PNG"
            image.verify()
    except (UnidentifiedImageError, OSError) as exc:
        raise HTTPException(status_code=400, detail="Uploaded file is not a readable image") from exc
    media_type = Image.MIME.get(image_format.upper(), "image/png")
    return encode_data_url(data, media_type)


def error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, GenerationError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    return JSONResponse(status_code=400, content={"error": str(exc)})


def generation_worker(task_id: str, capability: str, request: GenerationRequest) -> None:
    cancel_event = TASK_MANAGER.cancel_event(task_id)

    def on_progress(value: float, message: str) -> None:
        TASK_MANAGER.update(task_id, progress=max(0.0, min(1.0, float(value))), message=message)

    def on_job(snapshot: Any) -> None:
        TASK_MANAGER.update(task_id, step="polling", job_id=snapshot.id, job_status=snapshot.status_name)

    context = GenerationContext(cancel_event=cancel_event, on_progress=on_progress, on_job=on_job)
    try:
        provider = PROVIDERS.get(capability)
        TASK_MANAGER.update(task_id, status="running", step="submitting", progress=0.01, message="Submitting request")
        LOGGER.info("generation start task_id=%s capability=%s provider=%s", task_id, capability, provider.name)
        if capability == "text-to-image":
            with task_progress_heartbeat(
                TASK_MANAGER,
                task_id,
                0.1,
                0.9,
                "Generating image",
                estimated_duration_sec=30.0,
            ):
                result = provider.generate(request, context)
        else:
            result = provider.generate(request, context)
        TASK_MANAGER.check_cancelled(task_id)
        payload = result.to_dict()
        if result.kind == "image":
            entry = HistoryEntry(id=new_entry_id(), url=result.url, prompt=request.prompt)
            history_store.add(entry)
            payload["history_id"] = entry.id
        TASK_MANAGER.update(task_id, status="completed", step="completed", progress=1.0, message="Done", result=payload)
        LOGGER.info("generation completed task_id=%s capability=%s", task_id, capability)
    except TaskCancelledError:
        TASK_MANAGER.mark_cancelled(task_id)
        LOGGER.info("generation cancelled task_id=%s capability=%s", task_id, capability)
    except (GenerationError, ValueError) as exc:
        LOGGER.warning("generation failed task_id=%s capability=%s error=%s", task_id, capability, exc)
        TASK_MANAGER.update(task_id, status="error", step="error", message="Generation failed", error=str(exc))
    except Exception as exc:
        LOGGER.exception("generation crashed task_id=%s capability=%s", task_id, capability)
        TASK_MANAGER.update(task_id, status="error", step="error", message="Generation failed", error=str(exc))


def start_generation(task_type: str, capability: str, request: GenerationRequest, owner: str) -> Dict[str, str]:
    # Fail fast on a missing credential instead of queueing a task that cannot run.
    PROVIDERS.get(capability).ensure_configured()
    try:
        task_id = TASK_MANAGER.create(task_type, "Generation queued", owner=owner)
    except TaskBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    thread = threading.Thread(
        target=generation_worker,
        args=(task_id, capability, request),
        name=f"gen-{task_id[:8]}",
        daemon=True,
    )
    thread.start()
    LOGGER.info("generation queued task_id=%s task_type=%s owner=%s", task_id, task_type, owner)
    return {"task_id": task_id}


def run_inline(task_type: str, capability: str, request: GenerationRequest, owner: str) -> GenerationResult:
    """Run a generation on the request thread while holding the session's in-flight slot.

    Raises TaskBusyError when the session already has a generation running.
    """
    task_id = TASK_MANAGER.create(task_type, "Generation running", owner=owner)
    TASK_MANAGER.update(task_id, status="running", step="submitting", progress=0.01, message="Submitting request")
    context = GenerationContext(cancel_event=TASK_MANAGER.cancel_event(task_id))
    try:
        result = PROVIDERS.get(capability).generate(request, context)
    except TaskCancelledError:
        TASK_MANAGER.mark_cancelled(task_id)
        raise
    except Exception as exc:
        TASK_MANAGER.update(task_id, status="error", step="error", message="Generation failed", error=str(exc))
        raise
    TASK_MANAGER.update(
        task_id, status="completed", step="completed", progress=1.0, message="Done", result=result.to_dict()
    )
    return result


app = FastAPI(title="GenStudio", version=APP_VERSION)
if STATIC_DIR.exists():
    app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")


@app.exception_handler(GenerationError)
def generation_error_handler(_request: Request, exc: GenerationError) -> JSONResponse:
    return error_response(exc)


@app.get("/")
def root() -> FileResponse:
    return FileResponse(STATIC_DIR / "index.html")


@app.get("/api/system/info")
def system_info() -> Dict[str, Any]:
    return {
        "version": APP_VERSION,
        "credentials": credential_status(),
        "providers": PROVIDERS.describe(),
    }


@app.get("/api/settings")
def get_settings() -> Dict[str, Any]:
    return settings_store.get()


@app.put("/api/settings")
def update_settings(payload: Dict[str, Any]) -> Dict[str, Any]:
    global PROVIDERS, history_store
    previous = settings_store.get()
    try:
        payload = strip_read_only_settings(previous, payload)
    except ValueError as exc:
        LOGGER.warning("settings update rejected error=%s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    updated = settings_store.update(payload)
    ensure_runtime_dirs(updated, BASE_DIR)
    setup_logger(updated, BASE_DIR)
    PROVIDERS = build_providers(updated)
    if updated["paths"]["data_dir"] != previous["paths"]["data_dir"]:
        history_store = create_history_store(updated)
    elif updated["history"]["max_entries"] != history_store.max_entries:
        history_store.resize(updated["history"]["max_entries"])
    return updated


@app.get("/api/presets")
def get_presets() -> Dict[str, Any]:
    return presets_payload(settings_store.get()["defaults"])


@app.post("/api/img2vdo")
def img2vdo(req: ImageToVideoRequest, x_session_id: Optional[str] = Header(default=None)) -> JSONResponse:
    defaults = settings_store.get()["defaults"]
    request = GenerationRequest(
        prompt=req.prompt_text,
        image_url=req.image_url,
        parameters=video_parameters(req.duration, req.orientation, defaults),
    )
    try:
        result = run_inline("image2video", "image-to-video", request, session_owner(x_session_id))
    except TaskBusyError as exc:
        return JSONResponse(status_code=409, content={"error": str(exc)})
    except (GenerationError, TaskCancelledError) as exc:
        LOGGER.warning("img2vdo failed error=%s", exc)
        # Job failures and timeouts all surface as a server error on this route.
        return JSONResponse(status_code=500, content={"error": str(exc)})
    except ValueError as exc:
        return JSONResponse(status_code=400, content={"error": str(exc)})
    return JSONResponse(status_code=200, content={"videoUrl": result.url})


@app.post("/api/replicate")
def replicate(req: AnimationRequest, x_session_id: Optional[str] = Header(default=None)) -> JSONResponse:
    request = GenerationRequest(prompt=req.prompt)
    try:
        result = run_inline("text2video", "text-to-video", request, session_owner(x_session_id))
    except TaskBusyError as exc:
        return JSONResponse(status_code=409, content={"error": str(exc)})
    except (GenerationError, ValueError) as exc:
        LOGGER.warning("replicate failed error=%s", exc)
        return error_response(exc)
    return JSONResponse(status_code=200, content={"video_url": result.url})


@app.post("/api/generate/image")
def generate_image(req: TextToImageRequest, x_session_id: Optional[str] = Header(default=None)) -> Dict[str, str]:
    parameters = image_parameters(req, settings_store.get()["defaults"])
    request = GenerationRequest(prompt=req.prompt, parameters=parameters)
    return start_generation("text2image", "text-to-image", request, session_owner(x_session_id))


@app.post("/api/generate/video")
async def generate_video(
    image: Optional[UploadFile] = File(None),
    image_url: str = Form(""),
    prompt_text: str = Form(""),
    duration: Optional[int] = Form(None),
    orientation: str = Form(""),
    x_session_id: Optional[str] = Header(default=None),
) -> Dict[str, str]:
    if image is not None and image.filename:
        source = upload_to_data_url(await image.read())
    elif image_url.strip():
        source = image_url.strip()
    else:
        raise HTTPException(status_code=400, detail="Provide an image file or an image_url")
    defaults = settings_store.get()["defaults"]
    if duration is not None and duration not in VALID_VIDEO_DURATIONS:
        raise HTTPException(status_code=400, detail="duration must be 5 or 10")
    if orientation and orientation not in VALID_ORIENTATIONS:
        raise HTTPException(status_code=400, detail="orientation must be landscape or portrait")
    try:
        source = validate_image_reference(source)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    request = GenerationRequest(
        prompt=prompt_text,
        image_url=source,
        parameters=video_parameters(duration, orientation, defaults),
    )
    return start_generation("image2video", "image-to-video", request, session_owner(x_session_id))


@app.post("/api/generate/animation")
def generate_animation(req: AnimationRequest, x_session_id: Optional[str] = Header(default=None)) -> Dict[str, str]:
    request = GenerationRequest(prompt=req.prompt)
    return start_generation("text2video", "text-to-video", request, session_owner(x_session_id))


@app.get("/api/tasks")
def list_tasks(task_type: str = "", status: str = "all", limit: int = 30) -> Dict[str, Any]:
    return {"items": TASK_MANAGER.list(task_type=task_type, status=status, limit=limit)}


@app.get("/api/tasks/{task_id}")
def task_status(task_id: str) -> Dict[str, Any]:
    task = TASK_MANAGER.get(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.post("/api/tasks/{task_id}/cancel")
def cancel_task(task_id: str) -> Dict[str, Any]:
    try:
        task = TASK_MANAGER.request_cancel(task_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Task not found") from exc
    LOGGER.info("task cancel requested task_id=%s status=%s", task_id, task.get("status"))
    return task


@app.get("/api/history")
def list_history() -> Dict[str, Any]:
    items = [entry.to_dict() for entry in history_store.list()]
    return {"items": items, "max_entries": history_store.max_entries}


@app.get("/api/history/{entry_id}")
def get_history_entry(entry_id: str) -> Dict[str, Any]:
    entry = history_store.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="History entry not found")
    return entry.to_dict()


@app.get("/api/history/{entry_id}/download")
def download_history_entry(entry_id: str) -> Response:
    entry = history_store.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="History entry not found")
    try:
        data, media_type = decode_data_url(entry.url)
    except ValueError as exc:
        raise HTTPException(status_code=500, detail=f"Stored image is unreadable: {exc}") from exc
    return Response(
        content=data,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="ai-generated-{entry.id}.png"'},
    )


@app.delete("/api/history/{entry_id}")
def delete_history_entry(entry_id: str) -> Dict[str, str]:
    if not history_store.remove(entry_id):
        raise HTTPException(status_code=404, detail="History entry not found")
    LOGGER.info("history entry deleted id=%s", entry_id)
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    server_settings = settings_store.get()["server"]
    uvicorn.run(app, host=server_settings["listen_host"], port=int(server_settings["listen_port"]))
