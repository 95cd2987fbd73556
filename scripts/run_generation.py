from __future__ import annotations

import argparse
import base64
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Optional

import requests

ROOT = Path(__file__).resolve().parents[1]
PY = Path(sys.executable)
TERMINAL = {"completed", "error", "cancelled"}


class Server:
    """uvicorn child process with its output copied to a log file."""

    def __init__(self, port: int, log_path: Path) -> None:
        self.port = port
        self.log_path = log_path
        self.proc: Optional[subprocess.Popen[str]] = None
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        cmd = [str(PY), "-m", "uvicorn", "main:app", "--host", "127.0.0.1", "--port", str(self.port)]
        self.proc = subprocess.Popen(
            cmd,
            cwd=str(ROOT),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
        self.thread = threading.Thread(target=self._reader, daemon=True)
        self.thread.start()

    def _reader(self) -> None:
        if self.proc is None or self.proc.stdout is None:
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("w", encoding="utf-8") as f:
            while not self.stop_event.is_set():
                line = self.proc.stdout.readline()
                if not line:
                    if self.proc.poll() is not None:
                        break
                    time.sleep(0.05)
                    continue
                f.write(line)
                f.flush()

    def wait_ready(self, timeout_sec: int = 60) -> None:
        end = time.time() + timeout_sec
        url = f"http://127.0.0.1:{self.port}/api/system/info"
        while time.time() < end:
            if self.proc and self.proc.poll() is not None:
                raise RuntimeError(f"server exited: {self.proc.returncode}")
            try:
                if requests.get(url, timeout=1.5).status_code == 200:
                    return
            except requests.RequestException:
                pass
            time.sleep(0.3)
        raise TimeoutError("server not ready")

    def stop(self) -> None:
        self.stop_event.set()
        if self.proc and self.proc.poll() is None:
            self.proc.terminate()
            try:
                self.proc.wait(timeout=20)
            except subprocess.TimeoutExpired:
                self.proc.kill()
        if self.thread:
            self.thread.join(timeout=2)


def submit(base: str, args: argparse.Namespace, headers: dict[str, str]) -> str:
    if args.mode == "image":
        body: dict[str, Any] = {"prompt": args.prompt}
        for key in ("width", "height", "steps", "guidance", "seed", "model", "style"):
            value = getattr(args, key)
            if value is not None:
                body[key] = value
        resp = requests.post(f"{base}/api/generate/image", json=body, headers=headers, timeout=30)
    elif args.mode == "video":
        data = {"prompt_text": args.prompt or "", "duration": str(args.duration), "orientation": args.orientation}
        source = Path(args.image)
        if source.exists():
            with source.open("rb") as handle:
                files = {"image": (source.name, handle.read(), "application/octet-stream")}
            resp = requests.post(f"{base}/api/generate/video", data=data, files=files, headers=headers, timeout=60)
        else:
            data["image_url"] = args.image
            resp = requests.post(f"{base}/api/generate/video", data=data, headers=headers, timeout=30)
    else:
        resp = requests.post(f"{base}/api/generate/animation", json={"prompt": args.prompt}, headers=headers, timeout=30)
    if resp.status_code != 200:
        raise RuntimeError(f"submit failed: {resp.status_code} {resp.text}")
    return str(resp.json()["task_id"])


def wait_task(base: str, task_id: str, timeout_sec: int) -> dict[str, Any]:
    end = time.time() + timeout_sec
    last_line = ""
    while time.time() < end:
        task = requests.get(f"{base}/api/tasks/{task_id}", timeout=10).json()
        line = f"[{task['status']}] {task['progress'] * 100:5.1f}% {task['message']}"
        if task.get("job_status"):
            line += f" job={task['job_status']}"
        if line != last_line:
            print(line, flush=True)
            last_line = line
        if task["status"] in TERMINAL:
            return task
        time.sleep(2.0)
    requests.post(f"{base}/api/tasks/{task_id}/cancel", timeout=10)
    raise TimeoutError(f"task {task_id} did not finish within {timeout_sec}s")


def save_result(result: dict[str, Any], out_dir: Path) -> Optional[Path]:
    url = str(result.get("url") or "")
    if not url.startswith("data:"):
        return None
    _header, payload = url.split(",", 1)
    out_dir.mkdir(parents=True, exist_ok=True)
    target = out_dir / f"ai-generated-{result.get('history_id') or int(time.time())}.png"
    target.write_bytes(base64.b64decode(payload))
    return target


def main() -> int:
    parser = argparse.ArgumentParser(description="Submit one generation to a GenStudio server and wait for it.")
    parser.add_argument("mode", choices=["image", "video", "animation"])
    parser.add_argument("--prompt", default="")
    parser.add_argument("--image", help="Source image path or http(s) URL for video mode.")
    parser.add_argument("--duration", type=int, choices=[5, 10], default=5)
    parser.add_argument("--orientation", choices=["landscape", "portrait"], default="landscape")
    parser.add_argument("--width", type=int)
    parser.add_argument("--height", type=int)
    parser.add_argument("--steps", type=int)
    parser.add_argument("--guidance", type=float)
    parser.add_argument("--seed", type=int)
    parser.add_argument("--model")
    parser.add_argument("--style")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--start-server", type=int, metavar="PORT", help="Start uvicorn on PORT for this run.")
    parser.add_argument("--session", default="cli")
    parser.add_argument("--timeout", type=int, default=900)
    parser.add_argument("--out", default=str(ROOT / "outputs"))
    args = parser.parse_args()

    if args.mode == "video" and not args.image:
        parser.error("--image is required for video mode")
    if args.mode != "video" and not args.prompt.strip():
        parser.error("--prompt is required")

    server: Optional[Server] = None
    base = args.base_url.rstrip("/")
    if args.start_server:
        server = Server(args.start_server, ROOT / "logs" / f"run_generation_server_{args.start_server}.log")
        server.start()
        base = f"http://127.0.0.1:{args.start_server}"
    try:
        if server:
            server.wait_ready()
        task_id = submit(base, args, {"X-Session-Id": args.session})
        print(f"task_id={task_id}", flush=True)
        task = wait_task(base, task_id, args.timeout)
        if task["status"] != "completed":
            print(f"failed: {task.get('error') or task['status']}", file=sys.stderr)
            return 1
        saved = save_result(task["result"], Path(args.out))
        print(f"result={saved or task['result']['url']}")
        return 0
    finally:
        if server:
            server.stop()


if __name__ == "__main__":
    sys.exit(main())
