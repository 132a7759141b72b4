from __future__ import annotations

import asyncio
import base64
import os
import tempfile
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional

# Keep logs and the default database out of the working tree.
_TMP = Path(tempfile.mkdtemp(prefix="tryon-tests-"))
os.environ.setdefault("TRYON_LOG_DIR", str(_TMP / "logs"))
os.environ.setdefault("TRYON_DB_PATH", str(_TMP / "default.db"))

import pytest

import db
from generation import (
    EndpointApplicationError,
    EndpointNetworkError,
    EndpointTimeout,
    GenerationRequest,
    ImageBlob,
)
from tryon_core import Product, RunPolicy


class FakeClient:
    """Scripted generation endpoint.

    `script` maps product id -> list of steps consumed one per call:
      "ok"      return a generated URL
      "timeout" raise EndpointTimeout
      "network" raise EndpointNetworkError
      "app"     raise EndpointApplicationError
      "wait"    block until `release` is set, then return a URL
      "stubborn" like "wait", but keeps going after being cancelled
      "hang"    block forever (until cancelled)
    Products without a script (or with an exhausted one) use `default`.
    """

    def __init__(
        self,
        script: Optional[Dict[str, List[str]]] = None,
        default: str = "ok",
        delay: float = 0.0,
        data_uri: bool = False,
    ) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default = default
        self.delay = delay
        self.data_uri = data_uri
        self.calls: Dict[str, int] = defaultdict(int)
        self.order: List[str] = []
        self.cancelled: List[str] = []
        self.requests: List[GenerationRequest] = []
        self.active = 0
        self.max_active = 0
        self.release = asyncio.Event()

    def _url(self, request: GenerationRequest) -> str:
        if self.data_uri:
            return "data:image/png;base64," + base64.b64encode(b"png-" + request.product_id.encode()).decode()
        tag = request.source_photo.data.decode(errors="ignore")
        return f"https://cdn.test/generated/{tag}/{request.product_id}.png"

    async def generate(self, request: GenerationRequest) -> str:
        pid = request.product_id
        self.calls[pid] += 1
        self.order.append(pid)
        self.requests.append(request)
        steps = self.script.get(pid)
        step = steps.pop(0) if steps else self.default

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if step == "wait":
                await self.release.wait()
            elif step == "stubborn":
                # Ignores cancellation and answers once released.
                try:
                    await self.release.wait()
                except asyncio.CancelledError:
                    self.cancelled.append(pid)
                    await self.release.wait()
            elif step == "hang":
                await asyncio.Event().wait()
            elif step == "timeout":
                raise EndpointTimeout("simulated timeout")
            elif step == "network":
                raise EndpointNetworkError("simulated connection reset")
            elif step == "app":
                raise EndpointApplicationError("simulated bad input", status_code=400)
            return self._url(request)
        except asyncio.CancelledError:
            self.cancelled.append(pid)
            raise
        finally:
            self.active -= 1

    async def aclose(self) -> None:
        return None


async def fake_fetch(url: str) -> ImageBlob:
    return ImageBlob(b"ref:" + url.encode(), "image/jpeg", "ref.jpg")


def make_products(n: int) -> List[Product]:
    return [
        Product(f"p{i}", f"Product {i}", "Clothing", f"https://cdn.test/products/p{i}.jpg")
        for i in range(1, n + 1)
    ]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until `predicate()` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def photo() -> ImageBlob:
    return ImageBlob(b"photoA", "image/png", "me.png")


@pytest.fixture
def fast_policy() -> RunPolicy:
    return RunPolicy(retry_delay=0.0)


@pytest.fixture
def tmp_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "tryon.db"
    monkeypatch.setattr(db, "DB_PATH", path)
    db.init_db()
    return path


def seed_catalog(products: Iterable[Dict]) -> None:
    for i, p in enumerate(products):
        db.upsert_product(p["id"], p["name"], p.get("category", "Clothing"), p["image_url"], sort_order=i)
