"""Image generation client and the image helpers around it."""
from __future__ import annotations

import base64
import hashlib
import io
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
from PIL import Image, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from shared.errors import ExternalServiceError, ValidationError

DEFAULT_PROVIDER = "stub"
DEFAULT_MODEL = "fal-ai/nano-banana-pro/edit"
FAL_RUN_URL = "https://fal.run"
MAX_PROVIDER_IMAGE_BYTES = 4 * 1024 * 1024
MAX_DIMENSION_BY_RESOLUTION: Dict[str, int] = {
    "1K": 1280,
    "2K": 2048,
    "4K": 3072,
}
DEFAULT_RESOLUTION = "2K"
ASPECT_RATIOS: List[Tuple[float, str]] = [
    (21 / 9, "21:9"),
    (16 / 9, "16:9"),
    (3 / 2, "3:2"),
    (4 / 3, "4:3"),
    (5 / 4, "5:4"),
    (1.0, "1:1"),
    (4 / 5, "4:5"),
    (3 / 4, "3:4"),
    (2 / 3, "2:3"),
    (9 / 16, "9:16"),
]
ASPECT_RATIO_LABELS = {label for _, label in ASPECT_RATIOS}
DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>.+?);base64,(?P<data>.*)$", re.DOTALL)


class RenderError(ExternalServiceError):
    """Raised when the image provider cannot produce a render."""


class ConfigurationError(RenderError):
    """Raised when a provider is selected but is not properly configured."""


@dataclass
class NormalizedImage:
    payload: bytes
    width: int
    height: int
    aspect_ratio: str
    mime_type: str = "image/jpeg"


@dataclass
class RenderedImage:
    payload: bytes
    width: int
    height: int
    mime_type: str = "image/jpeg"
    metadata: Dict[str, Any] = field(default_factory=dict)


def detect_aspect_ratio(width: int, height: int) -> str:
    """Closest supported aspect ratio label for ``width`` x ``height``."""

    if width <= 0 or height <= 0:
        return "1:1"
    ratio = width / height
    return min(ASPECT_RATIOS, key=lambda candidate: abs(ratio - candidate[0]))[1]


def decode_data_url(value: str) -> Tuple[bytes, str]:
    match = DATA_URL_PATTERN.match(value.strip())
    if not match:
        raise ValidationError("Invalid image data")
    try:
        payload = base64.b64decode(match.group("data"), validate=False)
    except ValueError as exc:
        raise ValidationError("Invalid image data") from exc
    return payload, match.group("mime")


def _open_image(payload: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(payload))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError("Failed to process image") from exc
    return ImageOps.exif_transpose(image).convert("RGB")


def _encode_jpeg(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def normalize_source_image(payload: bytes, *, max_dimension: int, quality: int) -> NormalizedImage:
    """Rotate per EXIF, bound the longest edge and recompress as JPEG."""

    image = _open_image(payload)
    if max(image.size) > max_dimension:
        image.thumbnail((max_dimension, max_dimension), Image.LANCZOS)
    encoded = _encode_jpeg(image, quality)
    width, height = image.size
    return NormalizedImage(
        payload=encoded,
        width=width,
        height=height,
        aspect_ratio=detect_aspect_ratio(width, height),
    )


def prepare_provider_image(payload: bytes, resolution: str) -> bytes:
    """Shrink the source to the resolution bound and the provider's payload cap."""

    max_dimension = MAX_DIMENSION_BY_RESOLUTION.get(resolution, MAX_DIMENSION_BY_RESOLUTION["2K"])
    image = _open_image(payload)
    if max(image.size) > max_dimension:
        image.thumbnail((max_dimension, max_dimension), Image.LANCZOS)
    encoded = _encode_jpeg(image, 90)
    for quality in (80, 72):
        if len(encoded) <= MAX_PROVIDER_IMAGE_BYTES:
            break
        encoded = _encode_jpeg(image, quality)
    if len(encoded) > MAX_PROVIDER_IMAGE_BYTES:
        raise RenderError("Source image is too large after compression.")
    return encoded


def collect_image_urls(payload: Any) -> List[str]:
    """Pull image URLs out of the provider's loosely shaped response."""

    urls: List[str] = []

    def add_candidate(candidate: Any) -> None:
        if isinstance(candidate, str) and candidate:
            urls.append(candidate)
        elif isinstance(candidate, dict) and isinstance(candidate.get("url"), str):
            urls.append(candidate["url"])

    if isinstance(payload, str):
        add_candidate(payload)
        return urls
    if not isinstance(payload, dict):
        return urls

    add_candidate(payload.get("image"))
    add_candidate(payload.get("image_url"))
    for key in ("images", "outputs"):
        value = payload.get(key)
        if isinstance(value, list):
            for item in value:
                add_candidate(item)
        elif isinstance(value, dict):
            for item in value.values():
                add_candidate(item)
    for key in ("output", "response", "data"):
        if payload.get(key):
            urls.extend(collect_image_urls(payload[key]))
    return urls


def _load_font(size: int) -> ImageFont.ImageFont:
    for candidate in (
        "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf",
    ):
        try:
            return ImageFont.truetype(candidate, size=size)
        except OSError:
            continue
    return ImageFont.load_default()


def _instruction_lines(instruction: str) -> List[str]:
    lines = []
    for line in instruction.splitlines():
        match = re.match(r"^\d+\.\s(.*)$", line)
        if match:
            lines.append(match.group(1))
    return lines


class RenderClient:
    """Client responsible for requesting renders from the configured provider."""

    def __init__(
        self,
        provider: str,
        *,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        max_retries: int = 2,
        backoff_seconds: float = 1.5,
    ) -> None:
        self.provider = (provider or DEFAULT_PROVIDER).lower()
        self.model = model
        self.api_key = api_key
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if not self._client:
            self._client = httpx.Client(timeout=httpx.Timeout(180.0, connect=10.0))
        return self._client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def render(
        self,
        source_image: bytes,
        instruction: str,
        *,
        num_images: int = 1,
        aspect_ratio: Optional[str] = None,
        resolution: str = DEFAULT_RESOLUTION,
    ) -> List[RenderedImage]:
        """Render up to ``num_images`` edits of ``source_image``, one provider call each."""

        count = max(1, int(num_images))
        prepared = prepare_provider_image(source_image, resolution)
        results: List[RenderedImage] = []
        for _ in range(count):
            results.append(self._render_with_retries(prepared, instruction, aspect_ratio, resolution))
        return results

    def _render_with_retries(
        self,
        prepared: bytes,
        instruction: str,
        aspect_ratio: Optional[str],
        resolution: str,
    ) -> RenderedImage:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._render_once(prepared, instruction, aspect_ratio, resolution)
            except ConfigurationError:
                raise
            except (RenderError, httpx.HTTPError) as exc:
                last_error = exc
                if attempt >= self.max_retries:
                    break
                time.sleep(self.backoff_seconds * (attempt + 1))
        raise RenderError(str(last_error) if last_error else "unknown render failure")

    def _render_once(
        self,
        prepared: bytes,
        instruction: str,
        aspect_ratio: Optional[str],
        resolution: str,
    ) -> RenderedImage:
        if self.provider == "fal":
            return self._render_fal(prepared, instruction, aspect_ratio, resolution)
        return self._render_stub(prepared, instruction)

    def _render_stub(self, prepared: bytes, instruction: str) -> RenderedImage:
        """Draw the requested lines onto the source so runs work without a provider."""

        image = _open_image(prepared)
        width, height = image.size
        seed = int(hashlib.sha256(instruction.encode("utf-8")).hexdigest()[0:8], 16)
        rng = random.Random(seed)
        band_color = tuple(rng.randint(20, 90) for _ in range(3))
        overlay = Image.new("RGBA", image.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        lines = _instruction_lines(instruction)
        font_size = max(12, height // 24)
        font = _load_font(font_size)
        band_height = min(height, (font_size + 8) * max(len(lines), 1) + 16)
        draw.rectangle([0, height - band_height, width, height], fill=(*band_color, 200))
        y = height - band_height + 8
        for line in lines:
            draw.text((12, y), line, fill=(255, 255, 255, 255), font=font)
            y += font_size + 8
        image.paste(overlay, mask=overlay.split()[-1])
        return RenderedImage(
            payload=_encode_jpeg(image, 92),
            width=width,
            height=height,
            metadata={"mode": "stub", "seed": seed},
        )

    def _render_fal(
        self,
        prepared: bytes,
        instruction: str,
        aspect_ratio: Optional[str],
        resolution: str,
    ) -> RenderedImage:
        if not self.api_key:
            raise ConfigurationError("Image provider API key is not configured")
        image_url = "data:image/jpeg;base64," + base64.b64encode(prepared).decode("ascii")
        payload: Dict[str, Any] = {
            "prompt": instruction,
            "image_urls": [image_url],
            "num_images": 1,
            "output_format": "jpeg",
            "resolution": resolution,
        }
        if aspect_ratio:
            payload["aspect_ratio"] = aspect_ratio
        response = self.client.post(
            f"{FAL_RUN_URL}/{self.model}",
            headers={
                "Authorization": f"Key {self.api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
        )
        response.raise_for_status()
        try:
            urls = collect_image_urls(response.json())
        except (ValueError, TypeError) as exc:
            raise RenderError("Image provider returned a malformed response") from exc
        if not urls:
            raise RenderError("No image data returned from the image provider")
        output_url = urls[0]
        if output_url.startswith("data:"):
            try:
                image_bytes, mime_type = decode_data_url(output_url)
            except ValidationError as exc:
                raise RenderError("Provider returned an unreadable image") from exc
        else:
            download = self.client.get(output_url)
            download.raise_for_status()
            image_bytes = download.content
            mime_type = download.headers.get("content-type", "image/jpeg")
        try:
            rendered = Image.open(io.BytesIO(image_bytes))
        except (UnidentifiedImageError, OSError) as exc:
            raise RenderError("Provider returned an unreadable image") from exc
        width, height = rendered.size
        return RenderedImage(
            payload=image_bytes,
            width=width,
            height=height,
            mime_type=mime_type,
            metadata={"mode": "fal", "model": self.model, "url": output_url},
        )
