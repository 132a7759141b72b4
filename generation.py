"""Remote try-on generation endpoints and reference-image fetching.

Two backends produce one composited image per (shopper photo, product photo):

    HttpGenerationClient       - multipart POST to a try-on endpoint returning {"imageUrl": ...}
    ReplicateGenerationClient  - image-edit model on Replicate (both images as data URIs)

Every failure is raised as one of the GenerationError subclasses below so the
task runner can decide what is worth retrying.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import httpx

log = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = ("image/png", "image/jpeg", "image/webp")
FALLBACK_MIME_TYPE = "image/jpeg"

DEFAULT_IMAGE_MODEL = "google/nano-banana"
DEFAULT_PROMPT_TEMPLATE = (
    "Create a professional product modeling photo showing the person from the first "
    "image wearing or using the {{product_name}} ({{product_category}}) from the second "
    "image. Preserve the person's face, hair and skin tone exactly, keep the product's "
    "original fit and design, and use a clean studio background without watermarks or text."
)

_FETCH_TIMEOUT = 15.0
_FETCH_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; tryon-gallery/1.0)",
    "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
}

# Gateway statuses without a structured body are treated as transport trouble
_GATEWAY_STATUSES = (502, 503, 504)


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class GenerationError(Exception):
    """Base class for every per-task failure."""


class ImageFetchError(GenerationError):
    """Product reference image could not be retrieved."""


class EndpointTimeout(GenerationError, TimeoutError):
    """Remote call exceeded its deadline."""


class EndpointNetworkError(GenerationError):
    """Connection-level failure talking to the endpoint."""


class EndpointApplicationError(GenerationError):
    """Endpoint answered with a structured failure (bad input, quota, server error)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TaskCancelled(Exception):
    """The task's run was superseded; never surfaced to the shopper."""


def classify(exc: BaseException) -> str:
    """Map a failure onto "timeout", "network" or "other"."""
    if isinstance(exc, EndpointTimeout):
        return "timeout"
    if isinstance(exc, (EndpointNetworkError, ImageFetchError)):
        return "network"
    return "other"


def is_transient(exc: BaseException) -> bool:
    return classify(exc) in ("timeout", "network")


# ---------------------------------------------------------------------------
# Payload types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImageBlob:
    data: bytes
    mime_type: str = FALLBACK_MIME_TYPE
    filename: str = "image.jpg"

    @property
    def upload_mime_type(self) -> str:
        """MIME type the generators accept; anything exotic is sent as JPEG."""
        if self.mime_type in SUPPORTED_MIME_TYPES:
            return self.mime_type
        return FALLBACK_MIME_TYPE

    def to_data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.upload_mime_type};base64,{encoded}"


@dataclass(frozen=True)
class GenerationRequest:
    source_photo: ImageBlob
    reference_image: ImageBlob
    product_id: str
    product_name: str
    product_category: str
    color_name: Optional[str] = None


def build_prompt(request: GenerationRequest, template: Optional[str] = None) -> str:
    prompt = (template or DEFAULT_PROMPT_TEMPLATE)
    prompt = prompt.replace("{{product_name}}", request.product_name)
    prompt = prompt.replace("{{product_category}}", request.product_category)
    if request.color_name and request.color_name != "default":
        prompt = (
            f"IMPORTANT: The {request.product_name} must be specifically in "
            f"{request.color_name.lower()} color as shown in the product image. " + prompt
        )
    return prompt


# ---------------------------------------------------------------------------
# Reference images
# ---------------------------------------------------------------------------

async def fetch_image(url: str, http: Optional[httpx.AsyncClient] = None) -> ImageBlob:
    """Fetch a product reference image from an http(s) URL or a local path."""
    if not url.startswith(("http://", "https://")):
        return await asyncio.to_thread(_read_local_image, url)

    try:
        if http is not None:
            resp = await http.get(url, follow_redirects=True, timeout=_FETCH_TIMEOUT, headers=_FETCH_HEADERS)
        else:
            async with httpx.AsyncClient() as client:
                resp = await client.get(url, follow_redirects=True, timeout=_FETCH_TIMEOUT, headers=_FETCH_HEADERS)
        resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise ImageFetchError(f"Image server error {exc.response.status_code} for {url}") from exc
    except httpx.HTTPError as exc:
        raise ImageFetchError(f"Failed to fetch image {url}: {exc}") from exc

    content_type = resp.headers.get("content-type", "").split(";")[0].strip()
    if not content_type.startswith("image/"):
        content_type = mimetypes.guess_type(url)[0] or FALLBACK_MIME_TYPE
    return ImageBlob(resp.content, content_type, Path(httpx.URL(url).path).name or "image")


def _read_local_image(path: str) -> ImageBlob:
    p = Path(path)
    try:
        data = p.read_bytes()
    except OSError as exc:
        raise ImageFetchError(f"Failed to read image {path}: {exc}") from exc
    return ImageBlob(data, mimetypes.guess_type(p.name)[0] or FALLBACK_MIME_TYPE, p.name)


# ---------------------------------------------------------------------------
# HTTP try-on endpoint
# ---------------------------------------------------------------------------

class HttpGenerationClient:
    """Client for a try-on endpoint taking multipart form data.

    Request fields: userPhoto, productImage, productName, productCategory,
    productId and (optional) colorName.  Success is `{"imageUrl": "..."}`;
    failures carry `{"error": "..."}` with a non-2xx status.
    """

    def __init__(
        self,
        endpoint_url: str,
        token: str = "",
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not endpoint_url:
            raise RuntimeError("TRYON_ENDPOINT_URL not set")
        self.endpoint_url = endpoint_url
        self.token = token
        # Deadlines are enforced by the caller; no client-side read timeout here.
        self._http = http or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))

    def _build_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def generate(self, request: GenerationRequest) -> str:
        files = {
            "userPhoto": (
                request.source_photo.filename,
                request.source_photo.data,
                request.source_photo.upload_mime_type,
            ),
            "productImage": (
                f"{request.product_id}.jpg",
                request.reference_image.data,
                request.reference_image.upload_mime_type,
            ),
        }
        data = {
            "productName": request.product_name,
            "productCategory": request.product_category,
            "productId": request.product_id,
        }
        if request.color_name:
            data["colorName"] = request.color_name

        t0 = time.time()
        try:
            resp = await self._http.post(
                self.endpoint_url, data=data, files=files, headers=self._build_headers()
            )
        except httpx.TimeoutException as exc:
            raise EndpointTimeout(f"Endpoint timed out for {request.product_name}: {exc}") from exc
        except httpx.TransportError as exc:
            raise EndpointNetworkError(f"Endpoint unreachable for {request.product_name}: {exc}") from exc

        log.debug(
            "Endpoint [%s]: status=%d  %.1fs", request.product_id, resp.status_code, time.time() - t0
        )

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 400:
            if body is None and resp.status_code in _GATEWAY_STATUSES:
                raise EndpointNetworkError(
                    f"Gateway error {resp.status_code} for {request.product_name}"
                )
            message = body.get("error") if isinstance(body, dict) else None
            raise EndpointApplicationError(
                f"Failed to generate image for {request.product_name}: "
                f"{resp.status_code} - {message or resp.text[:200]}",
                status_code=resp.status_code,
            )

        image_url = body.get("imageUrl") if isinstance(body, dict) else None
        if not image_url:
            raise EndpointApplicationError(
                f"No image URL returned for {request.product_name}", status_code=resp.status_code
            )
        return image_url

    async def aclose(self) -> None:
        await self._http.aclose()


# ---------------------------------------------------------------------------
# Replicate image-edit models
# ---------------------------------------------------------------------------

class ReplicateGenerationClient:
    """Runs an image-edit model on Replicate with the shopper and product photos."""

    def __init__(
        self,
        api_token: str,
        model: str = DEFAULT_IMAGE_MODEL,
        prompt_template: Optional[str] = None,
    ) -> None:
        if not api_token:
            raise RuntimeError("REPLICATE_API_TOKEN not set")
        import replicate as rep

        self.model = model
        self.prompt_template = prompt_template
        self._client = rep.Client(api_token=api_token)

    def _build_input(self, request: GenerationRequest) -> Dict:
        return {
            "prompt": build_prompt(request, self.prompt_template),
            "image_input": [
                request.source_photo.to_data_uri(),
                request.reference_image.to_data_uri(),
            ],
            "aspect_ratio": "4:5",
            "output_format": "png",
        }

    async def generate(self, request: GenerationRequest) -> str:
        from replicate.exceptions import ModelError, ReplicateError

        t0 = time.time()
        try:
            raw_output = await self._client.async_run(self.model, input=self._build_input(request))
        except ModelError as exc:
            raise EndpointApplicationError(f"Replicate prediction failed: {exc}") from exc
        except ReplicateError as exc:
            raise EndpointApplicationError(
                f"Replicate error: {exc}", status_code=getattr(exc, "status", None)
            ) from exc
        except httpx.TimeoutException as exc:
            raise EndpointTimeout(f"Replicate timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise EndpointNetworkError(f"Replicate unreachable: {exc}") from exc

        log.info(
            "Replicate [%s]: model=%s  total=%.1fs", request.product_id, self.model, time.time() - t0
        )

        # Normalise output to URL string
        if isinstance(raw_output, list) and raw_output:
            raw = raw_output[0]
        else:
            raw = raw_output
        if not raw:
            raise EndpointApplicationError(f"No image was generated for {request.product_name}")
        return getattr(raw, "url", None) or str(raw)

    async def aclose(self) -> None:
        return None


def build_client(settings: Optional[Dict] = None):
    """Create the generation client selected by TRYON_PROVIDER / settings."""
    settings = settings or {}
    provider = settings.get("provider") or os.environ.get("TRYON_PROVIDER", "http")
    if provider == "replicate":
        return ReplicateGenerationClient(
            api_token=os.environ.get("REPLICATE_API_TOKEN", ""),
            model=settings.get("image_model") or os.environ.get("TRYON_IMAGE_MODEL", DEFAULT_IMAGE_MODEL),
            prompt_template=settings.get("prompt_template"),
        )
    if provider == "http":
        return HttpGenerationClient(
            endpoint_url=settings.get("endpoint_url") or os.environ.get("TRYON_ENDPOINT_URL", ""),
            token=os.environ.get("TRYON_ENDPOINT_TOKEN", ""),
        )
    raise RuntimeError(f"Unknown TRYON_PROVIDER {provider!r} (expected 'http' or 'replicate')")
