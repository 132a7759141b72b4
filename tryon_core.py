"""Virtual try-on generation core. Used by both the web app and CLI.

A run takes one shopper photo and a product list and asks the generation
endpoint for one composited image per product:

    RunCoordinator.start_run(photo, products)
        ├── priority batch   (first 3 products, 3 at a time)
        └── background batch (the rest, 2 at a time)
              └── TaskRunner.run(product, ...) per product

All progress is published as immutable TryOnState snapshots; a newer run
supersedes the current one and nothing from the old run is applied after that.
"""

from __future__ import annotations

import asyncio
import base64
import dataclasses
import functools
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests

import generation
from generation import (
    EndpointTimeout,
    GenerationRequest,
    ImageBlob,
    TaskCancelled,
    classify,
    is_transient,
)
from limiter import RetryPolicy, run_limited, with_retry, with_timeout

log = logging.getLogger(__name__)

# Task statuses
PENDING = "pending"
GENERATING = "generating"
READY = "ready"
ERROR = "error"
CANCELLED = "cancelled"

# Run phases
IDLE = "idle"
PRIORITY = "priority"
BACKGROUND = "background"
SETTLED = "settled"


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RunPolicy:
    """Scheduling and retry knobs for a run."""

    priority_size: int = 3
    priority_concurrency: int = 3
    background_concurrency: int = 2
    request_timeout: float = 90.0
    max_attempts: int = 2
    retry_delay: float = 2.0

    def __post_init__(self) -> None:
        for name in ("priority_concurrency", "background_concurrency", "max_attempts"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.priority_size < 0:
            raise ValueError("priority_size must be >= 0")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be >= 0")

    @classmethod
    def from_settings(cls, settings: Optional[Dict]) -> "RunPolicy":
        settings = settings or {}
        return cls(
            priority_size=int(settings.get("priority_size", cls.priority_size)),
            priority_concurrency=int(settings.get("priority_concurrency", cls.priority_concurrency)),
            background_concurrency=int(settings.get("background_concurrency", cls.background_concurrency)),
            request_timeout=float(settings.get("request_timeout", cls.request_timeout)),
            max_attempts=int(settings.get("max_attempts", cls.max_attempts)),
            retry_delay=float(settings.get("retry_delay", cls.retry_delay)),
        )

    def retry_policy(self, attempt: int = 0) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self.max_attempts - attempt),
            delay=self.retry_delay,
            retryable=is_transient,
        )


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Product:
    id: str
    name: str
    category: str
    reference_image_url: str
    color_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            category=data.get("category") or "",
            reference_image_url=data.get("reference_image_url") or data["image_url"],
            color_name=data.get("color_name"),
        )


@dataclass(frozen=True)
class TaskState:
    product_id: str
    product_name: str
    status: str = PENDING
    image_url: Optional[str] = None

    @property
    def settled(self) -> bool:
        return self.status in (READY, ERROR)


@dataclass(frozen=True)
class TryOnState:
    """Everything the presentation layer may read about the current run."""

    run_id: int = 0
    phase: str = IDLE
    tasks: Tuple[TaskState, ...] = ()
    priority_batch_settled: bool = False
    duration: Optional[float] = None

    @classmethod
    def for_run(cls, run_id: int, products: Sequence[Product]) -> "TryOnState":
        return cls(
            run_id=run_id,
            phase=PRIORITY,
            tasks=tuple(TaskState(p.id, p.name) for p in products),
        )

    @property
    def is_generating(self) -> bool:
        return self.phase in (PRIORITY, BACKGROUND)

    @property
    def total_count(self) -> int:
        return len(self.tasks)

    @property
    def ready_count(self) -> int:
        return sum(1 for t in self.tasks if t.settled)

    @property
    def success_count(self) -> int:
        return sum(1 for t in self.tasks if t.status == READY)

    @property
    def error_count(self) -> int:
        return sum(1 for t in self.tasks if t.status == ERROR)

    @property
    def in_flight_names(self) -> List[str]:
        return [t.product_name for t in self.tasks if t.status == GENERATING]

    @property
    def results(self) -> Dict[str, Tuple[str, Optional[str]]]:
        return {t.product_id: (t.status, t.image_url) for t in self.tasks}

    def task(self, product_id: str) -> Optional[TaskState]:
        for t in self.tasks:
            if t.product_id == product_id:
                return t
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "phase": self.phase,
            "is_generating": self.is_generating,
            "ready_count": self.ready_count,
            "total_count": self.total_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "in_flight_names": self.in_flight_names,
            "priority_batch_settled": self.priority_batch_settled,
            "duration": self.duration,
            "results": {
                t.product_id: {"status": t.status, "image_url": t.image_url} for t in self.tasks
            },
        }


@dataclass(frozen=True)
class TaskOutcome:
    product_id: str
    status: str
    image_url: Optional[str] = None
    attempts: int = 0
    failure: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == READY


# ---------------------------------------------------------------------------
# Task runner
# ---------------------------------------------------------------------------

class TaskRunner:
    """Generates the try-on image for one product within one run.

    The runner never writes shared state itself; it asks the coordinator
    (`board`) to apply transitions, and the board refuses anything coming
    from a superseded run.
    """

    def __init__(
        self,
        client: Any,
        board: "RunCoordinator",
        policy: Optional[RunPolicy] = None,
        fetch_image: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.client = client
        self.board = board
        self.policy = policy or RunPolicy()
        self.fetch_image = fetch_image or generation.fetch_image
        self._call_endpoint = with_timeout(
            self.client.generate, self.policy.request_timeout, error=EndpointTimeout
        )

    async def _generate(self, product: Product, source_photo: ImageBlob) -> str:
        reference = await self.fetch_image(product.reference_image_url)
        request = GenerationRequest(
            source_photo=source_photo,
            reference_image=reference,
            product_id=product.id,
            product_name=product.name,
            product_category=product.category,
            color_name=product.color_name,
        )
        return await self._call_endpoint(request)

    async def run(
        self,
        product: Product,
        source_photo: ImageBlob,
        run_id: int,
        attempt: int = 0,
    ) -> TaskOutcome:
        if not self.board.mark(run_id, product.id, GENERATING):
            return TaskOutcome(product.id, CANCELLED)

        attempts = 0

        async def attempt_once() -> str:
            nonlocal attempts
            if not self.board.is_current(run_id):
                raise TaskCancelled(product.id)
            attempts += 1
            handle = asyncio.ensure_future(self._generate(product, source_photo))
            self.board.register_handle(run_id, product.id, handle)
            try:
                return await handle
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                raise TaskCancelled(product.id) from None
            finally:
                self.board.release_handle(run_id, product.id, handle)

        def on_retry(n: int, exc: BaseException) -> None:
            log.info(
                "[%s] %s: attempt %d failed (%s), retrying in %.0fs: %s",
                run_id, product.name, attempt + n, classify(exc), self.policy.retry_delay, exc,
            )

        try:
            image_url = await with_retry(attempt_once, self.policy.retry_policy(attempt), on_retry)()
        except TaskCancelled:
            log.debug("[%s] %s: run superseded, result dropped", run_id, product.name)
            return TaskOutcome(product.id, CANCELLED, attempts=attempts)
        except Exception as exc:
            kind = classify(exc)
            log.info(
                "[%s] %s: giving up after %d attempt(s) (%s): %s",
                run_id, product.name, attempts, kind, exc,
            )
            if not self.board.mark(run_id, product.id, ERROR, product.reference_image_url):
                return TaskOutcome(product.id, CANCELLED, attempts=attempts)
            return TaskOutcome(
                product.id, ERROR, product.reference_image_url, attempts, failure=f"{kind}: {exc}"
            )

        if not self.board.mark(run_id, product.id, READY, image_url):
            return TaskOutcome(product.id, CANCELLED, attempts=attempts)
        return TaskOutcome(product.id, READY, image_url, attempts)


# ---------------------------------------------------------------------------
# Run coordinator
# ---------------------------------------------------------------------------

class RunCoordinator:
    """Owns the current run, its task states and its cancellation handles."""

    def __init__(
        self,
        client: Any,
        policy: Optional[RunPolicy] = None,
        fetch_image: Optional[Callable[[str], Any]] = None,
        on_results_ready: Optional[Callable[[int], None]] = None,
        on_run_settled: Optional[Callable[[TryOnState], None]] = None,
    ) -> None:
        self.policy = policy or RunPolicy()
        self.runner = TaskRunner(client, self, self.policy, fetch_image)
        self.on_results_ready = on_results_ready
        self.on_run_settled = on_run_settled

        self._state = TryOnState()
        self._index: Dict[str, int] = {}
        self._handles: Dict[str, asyncio.Future] = {}
        self._subscribers: List[Callable[[TryOnState], None]] = []
        self._drive: Optional[asyncio.Task] = None
        self._batches: List[asyncio.Future] = []
        self._last_run_id = 0
        self._started_at = 0.0

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> TryOnState:
        return self._state

    @property
    def run_id(self) -> int:
        return self._state.run_id

    def subscribe(self, callback: Callable[[TryOnState], None]) -> Callable[[], None]:
        """Register for state snapshots; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, state: TryOnState) -> None:
        self._state = state
        for callback in list(self._subscribers):
            try:
                callback(state)
            except Exception:
                log.exception("State subscriber failed")

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _next_run_id(self) -> int:
        run_id = max(time.time_ns(), self._last_run_id + 1)
        self._last_run_id = run_id
        return run_id

    def is_current(self, run_id: int) -> bool:
        return run_id == self._state.run_id and self._state.phase != IDLE

    def start_run(self, photo: ImageBlob, products: Iterable[Product]) -> int:
        """Supersede any current run and start generating for `products`.

        Must be called from inside the event loop.  Returns immediately;
        progress arrives through subscribe().
        """
        products = tuple(products)
        ids = [p.id for p in products]
        if len(set(ids)) != len(ids):
            raise ValueError("product ids must be unique within a run")

        loop = asyncio.get_running_loop()
        previous = self._state.run_id
        run_id = self._next_run_id()

        cancelled = self.cancel_all()
        if previous and self._state.phase != SETTLED:
            log.info("Run superseded: run=%s  (%d in-flight calls cancelled)", previous, cancelled)

        self._index = {pid: i for i, pid in enumerate(ids)}
        self._started_at = time.time()
        self._publish(TryOnState.for_run(run_id, products))

        split = self.policy.priority_size
        priority, background = products[:split], products[split:]
        log.info(
            "Run start: run=%s  products=%d  priority=%d  background=%d",
            run_id, len(products), len(priority), len(background),
        )
        self._drive = loop.create_task(self._drive_run(run_id, photo, priority, background))
        return run_id

    async def _run_batch(
        self, run_id: int, photo: ImageBlob, batch: Sequence[Product], limit: int
    ) -> List[TaskOutcome]:
        factories = [functools.partial(self.runner.run, p, photo, run_id) for p in batch]
        settled = await run_limited(factories, limit)
        outcomes = []
        for product, result in zip(batch, settled):
            if result.ok:
                outcomes.append(result.value)
            else:
                # Runner absorbs its own failures; this is a bug, keep the run alive.
                log.error("[%s] %s: runner raised %r", run_id, product.name, result.error)
                self.mark(run_id, product.id, ERROR, product.reference_image_url)
                outcomes.append(TaskOutcome(product.id, ERROR, product.reference_image_url))
        return outcomes

    async def _drive_run(
        self,
        run_id: int,
        photo: ImageBlob,
        priority: Sequence[Product],
        background: Sequence[Product],
    ) -> TryOnState:
        # Priority is created first so its tasks are dispatched first.
        priority_job = asyncio.ensure_future(
            self._run_batch(run_id, photo, priority, self.policy.priority_concurrency)
        )
        background_job = None
        if background:
            background_job = asyncio.ensure_future(
                self._run_batch(run_id, photo, background, self.policy.background_concurrency)
            )
        if self.is_current(run_id):
            self._batches = [job for job in (priority_job, background_job) if job is not None]

        await priority_job
        self.handle_priority_settled(run_id)
        if background_job is not None:
            await background_job
        return self.handle_run_settled(run_id)

    def handle_priority_settled(self, run_id: int) -> bool:
        """Mark the priority batch settled and fire the results transition once."""
        if not self.is_current(run_id) or self._state.priority_batch_settled:
            return False
        phase = self._state.phase
        if phase == PRIORITY and self._state.ready_count < self._state.total_count:
            phase = BACKGROUND
        self._publish(dataclasses.replace(self._state, priority_batch_settled=True, phase=phase))
        log.info(
            "Priority batch settled: run=%s  %d/%d ready",
            run_id, self._state.ready_count, self._state.total_count,
        )
        if self.on_results_ready is not None:
            try:
                self.on_results_ready(run_id)
            except Exception:
                log.exception("Results-ready hook failed: run=%s", run_id)
        return True

    def handle_run_settled(self, run_id: int) -> TryOnState:
        """Mark the run complete. Repeated or stale calls change nothing."""
        if not self.is_current(run_id) or self._state.phase == SETTLED:
            return self._state
        duration = time.time() - self._started_at
        state = dataclasses.replace(self._state, phase=SETTLED, duration=duration)
        self._publish(state)
        lvl = logging.WARNING if state.total_count and not state.success_count else logging.INFO
        log.log(
            lvl,
            "Run complete: run=%s  %.1fs  %d generated / %d fallback",
            run_id, duration, state.success_count, state.error_count,
        )
        if self.on_run_settled is not None:
            try:
                self.on_run_settled(state)
            except Exception:
                log.exception("Run-settled hook failed: run=%s", run_id)
        return state

    async def wait(self) -> TryOnState:
        """Wait for the current run to settle (or be superseded)."""
        while self._drive is not None:
            drive = self._drive
            try:
                await asyncio.shield(drive)
            except asyncio.CancelledError:
                if not drive.cancelled():
                    raise
            if drive is self._drive:
                break
        return self._state

    def close(self) -> int:
        """Tear down: abort all network calls and stop honouring the current run."""
        cancelled = self.cancel_all()
        if self._drive is not None and not self._drive.done():
            self._drive.cancel()
        for job in self._batches:
            if not job.done():
                job.cancel()
        self._batches = []
        if self._state.phase != IDLE:
            self._publish(dataclasses.replace(self._state, phase=IDLE))
        return cancelled

    # ------------------------------------------------------------------
    # Board interface used by TaskRunner
    # ------------------------------------------------------------------

    def mark(self, run_id: int, product_id: str, status: str, image_url: Optional[str] = None) -> bool:
        """Apply a task transition if `run_id` is still current."""
        if not self.is_current(run_id):
            return False
        i = self._index[product_id]
        old = self._state.tasks[i]
        if old.settled:
            return False
        task = dataclasses.replace(old, status=status, image_url=image_url)
        tasks = self._state.tasks[:i] + (task,) + self._state.tasks[i + 1:]
        self._publish(dataclasses.replace(self._state, tasks=tasks))

        lvl = logging.WARNING if status == ERROR else logging.DEBUG
        msg = {
            GENERATING: "generating",
            READY: "ready",
            ERROR: "failed, showing original image",
        }.get(status, status)
        log.log(lvl, "[%s] %s - %s", run_id, old.product_name, msg)
        return True

    def register_handle(self, run_id: int, product_id: str, handle: asyncio.Future) -> None:
        if not self.is_current(run_id):
            handle.cancel()
            return
        self._handles[product_id] = handle

    def release_handle(self, run_id: int, product_id: str, handle: asyncio.Future) -> None:
        if self._handles.get(product_id) is handle:
            del self._handles[product_id]

    def cancel_all(self) -> int:
        """Cancel every registered network call without waiting on them."""
        handles, self._handles = self._handles, {}
        count = 0
        for handle in handles.values():
            if not handle.done():
                handle.cancel()
                count += 1
        return count


# ---------------------------------------------------------------------------
# Saving results
# ---------------------------------------------------------------------------

def save_image(url: str, dest: Path) -> Optional[str]:
    """Write a generated image (data URI or URL) to `dest`. Returns the path or None."""
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if url.startswith("data:"):
            _, _, encoded = url.partition(",")
            dest.write_bytes(base64.b64decode(encoded))
            return str(dest)
        resp = requests.get(url, timeout=90, stream=True)
        resp.raise_for_status()
        with open(dest, "wb") as fh:
            for chunk in resp.iter_content(chunk_size=65536):
                fh.write(chunk)
        return str(dest)
    except (requests.RequestException, OSError, ValueError) as exc:
        log.warning("Could not save image to %s: %s", dest, exc)
        return None
