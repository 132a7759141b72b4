"""Virtual Try-On - Flask web application."""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import mimetypes
import os
import queue
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Generator, Optional

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, render_template, request, send_from_directory
from flask_cors import CORS

load_dotenv()

import log_setup
log_setup.configure()

import db
import generation
import tryon_core

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).parent
IMAGES_DIR = BASE_DIR / "static" / "images"
IMAGES_DIR.mkdir(parents=True, exist_ok=True)

app = Flask(__name__, template_folder="templates", static_folder="static")
CORS(app)

db.init_db()

# Active SSE queues: client_id -> Queue
_stream_queues: Dict[str, queue.Queue] = {}
_stream_queues_lock = threading.Lock()


# ---------------------------------------------------------------------------
# Event loop thread (hosts the coordinator)
# ---------------------------------------------------------------------------

class _LoopThread:
    """A private asyncio loop running forever in a daemon thread."""

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, name="tryon-loop", daemon=True)
        self._thread.start()

    def call(self, fn: Callable[..., Any], *args: Any, timeout: float = 10.0) -> Any:
        """Run `fn(*args)` on the loop thread and return its result."""

        async def invoke() -> Any:
            return fn(*args)

        return asyncio.run_coroutine_threadsafe(invoke(), self.loop).result(timeout)


_loop = _LoopThread()
_coordinator: Optional[tryon_core.RunCoordinator] = None
_coordinator_settings: Optional[Dict[str, Any]] = None
_coordinator_lock = threading.Lock()


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------

def _sse_event(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


def _open_stream() -> tuple[str, queue.Queue]:
    client_id = uuid.uuid4().hex
    q: queue.Queue = queue.Queue(maxsize=500)
    with _stream_queues_lock:
        _stream_queues[client_id] = q
    return client_id, q


def _close_stream(client_id: str) -> None:
    with _stream_queues_lock:
        _stream_queues.pop(client_id, None)


def _broadcast(event: Dict) -> None:
    with _stream_queues_lock:
        queues = list(_stream_queues.values())
    for q in queues:
        try:
            q.put_nowait(event)
        except queue.Full:
            pass


# ---------------------------------------------------------------------------
# Coordinator hooks (called on the loop thread)
# ---------------------------------------------------------------------------

def _on_state(state: tryon_core.TryOnState) -> None:
    _broadcast({"type": "state", "state": state.to_dict()})


def _on_results_ready(run_id: int) -> None:
    _broadcast({"type": "results_ready", "run_id": str(run_id)})


def _on_run_settled(state: tryon_core.TryOnState) -> None:
    # Image saving does blocking I/O; keep it off the event loop.
    threading.Thread(target=_persist_run, args=(state,), daemon=True).start()


def _persist_run(state: tryon_core.TryOnState) -> None:
    run_key = str(state.run_id)
    images_dir = IMAGES_DIR / run_key
    results: Dict[str, Dict] = {}
    for task in state.tasks:
        entry = {"status": task.status, "image_url": task.image_url}
        if task.status == tryon_core.READY and task.image_url:
            local_path = tryon_core.save_image(task.image_url, images_dir / f"{task.product_id}.png")
            if local_path:
                rel = Path(local_path).relative_to(BASE_DIR / "static")
                entry["image_url"] = f"/static/{rel.as_posix()}"
        results[task.product_id] = entry
    try:
        db.complete_run(run_key, results, state.success_count, state.error_count, state.duration)
    except Exception as exc:
        log.warning("Run history write failed: run=%s  %s", run_key, exc)


def _build_coordinator(settings: Dict[str, Any]) -> tryon_core.RunCoordinator:
    client = generation.build_client({
        "prompt_template": settings.get("prompt_template"),
        **(settings.get("provider") or {}),
    })
    policy = tryon_core.RunPolicy.from_settings(settings.get("generation"))
    coordinator = tryon_core.RunCoordinator(
        client,
        policy=policy,
        on_results_ready=_on_results_ready,
        on_run_settled=_on_run_settled,
    )
    coordinator.subscribe(_on_state)
    log.info(
        "Coordinator ready: provider=%s  priority=%d@%d  background@%d  timeout=%.0fs",
        type(client).__name__, policy.priority_size, policy.priority_concurrency,
        policy.background_concurrency, policy.request_timeout,
    )
    return coordinator


def _get_coordinator() -> tryon_core.RunCoordinator:
    """Return the coordinator, rebuilding it when stored settings have changed.

    A coordinator that is still generating is kept; the new settings apply
    from the first run after it settles.
    """
    global _coordinator, _coordinator_settings
    with _coordinator_lock:
        settings = db.list_settings()
        if _coordinator is not None:
            if settings == _coordinator_settings or _coordinator.state.is_generating:
                return _coordinator
            log.info("Settings changed, rebuilding coordinator")
        fresh = _build_coordinator(settings)
        if _coordinator is not None:
            _loop.call(_coordinator.close)
            asyncio.run_coroutine_threadsafe(_coordinator.runner.client.aclose(), _loop.loop)
        _coordinator, _coordinator_settings = fresh, settings
        return _coordinator


@atexit.register
def _shutdown() -> None:
    if _coordinator is not None and _loop.loop.is_running():
        _loop.loop.call_soon_threadsafe(_coordinator.close)


# ---------------------------------------------------------------------------
# Routes - UI
# ---------------------------------------------------------------------------

@app.get("/")
def index():
    return render_template("index.html")


@app.get("/static/images/<path:filename>")
def serve_image(filename: str):
    return send_from_directory(str(IMAGES_DIR), filename)


# ---------------------------------------------------------------------------
# Routes - Catalog
# ---------------------------------------------------------------------------

@app.get("/api/products")
def api_products():
    category = request.args.get("category") or None
    return jsonify({"products": db.list_active_products(category)})


@app.get("/api/categories")
def api_categories():
    return jsonify({"categories": db.list_categories()})


# ---------------------------------------------------------------------------
# Routes - Try-on runs
# ---------------------------------------------------------------------------

@app.post("/api/try-on")
def api_start_try_on():
    photo = request.files.get("photo")
    if photo is None or not photo.filename:
        return jsonify({"error": "photo is required"}), 400

    data = photo.read()
    if not data:
        return jsonify({"error": "photo is empty"}), 400

    rows = db.list_active_products(request.form.get("category") or None)
    wanted = request.form.getlist("product_ids")
    if wanted:
        rows = [r for r in rows if r["id"] in wanted]
    if not rows:
        return jsonify({"error": "no products to try on"}), 400

    try:
        coordinator = _get_coordinator()
    except (RuntimeError, ValueError) as exc:
        return jsonify({"error": str(exc)}), 400

    mime_type = photo.mimetype or mimetypes.guess_type(photo.filename)[0] or "image/jpeg"
    source = generation.ImageBlob(data, mime_type, photo.filename)
    products = [tryon_core.Product.from_dict(r) for r in rows]

    run_id = _loop.call(coordinator.start_run, source, products)
    run_key = str(run_id)
    db.create_run(run_key, [p.id for p in products])
    db.supersede_running_runs(except_id=run_key)
    log.info("Try-on requested: run=%s  products=%d  photo=%s", run_key, len(products), photo.filename)

    return jsonify({"run_id": run_key, "total": len(products)})


@app.get("/api/state")
def api_state():
    if _coordinator is None:
        return jsonify(tryon_core.TryOnState().to_dict())
    return jsonify(_coordinator.state.to_dict())


@app.get("/api/stream")
def api_stream():
    """Server-Sent Events stream of coordinator state."""
    client_id, q = _open_stream()
    current = _coordinator.state if _coordinator is not None else tryon_core.TryOnState()

    def generate() -> Generator[str, None, None]:
        yield _sse_event({"type": "state", "state": current.to_dict()})
        try:
            while True:
                try:
                    event = q.get(timeout=25)
                except queue.Empty:
                    yield _sse_event({"type": "heartbeat"})
                    continue
                yield _sse_event(event)
        finally:
            _close_stream(client_id)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )


@app.get("/api/runs")
def api_list_runs():
    summary = []
    for r in db.list_runs():
        summary.append({
            "id": r["id"],
            "status": r["status"],
            "created_at": r["created_at"],
            "total": r["total"],
            "success_count": r.get("success_count"),
            "error_count": r.get("error_count"),
            "duration": r.get("duration"),
        })
    return jsonify(summary)


@app.get("/api/runs/<run_id>")
def api_get_run(run_id: str):
    run = db.get_run(run_id)
    if not run:
        return jsonify({"error": "Not found"}), 404
    return jsonify(run)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    print(f"\n  Virtual Try-On → http://localhost:{port}\n")
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
