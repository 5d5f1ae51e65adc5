from __future__ import annotations

import base64
import io
import json
import sys
from pathlib import Path

import httpx
import pytest
from PIL import Image

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from image.generator import (
    ConfigurationError,
    RenderClient,
    RenderError,
    collect_image_urls,
    decode_data_url,
    detect_aspect_ratio,
    normalize_source_image,
    prepare_provider_image,
)
from shared.errors import ValidationError

INSTRUCTION = "Task: replace text\nText lines to place (in order):\n1. Grand Solde\n2. Acheter"


def _jpeg(width: int, height: int, color=(10, 120, 200), fmt: str = "JPEG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=color).save(buffer, format=fmt)
    return buffer.getvalue()


def _fal_client(handler) -> RenderClient:
    client = RenderClient("fal", api_key="fal-key", max_retries=2, backoff_seconds=0)
    client._client = httpx.Client(transport=httpx.MockTransport(handler))
    return client


@pytest.mark.parametrize(
    "size, expected",
    [((1920, 1080), "16:9"), ((1000, 1000), "1:1"), ((1080, 1350), "4:5"), ((64, 48), "4:3"), ((0, 10), "1:1")],
)
def test_detect_aspect_ratio(size, expected) -> None:
    assert detect_aspect_ratio(*size) == expected


def test_decode_data_url() -> None:
    payload, mime = decode_data_url("data:image/png;base64," + base64.b64encode(b"abc").decode())
    assert payload == b"abc"
    assert mime == "image/png"
    with pytest.raises(ValidationError):
        decode_data_url("https://example.com/image.png")


def test_normalize_source_image_bounds_and_recompresses() -> None:
    normalized = normalize_source_image(_jpeg(400, 200, fmt="PNG"), max_dimension=100, quality=80)

    assert (normalized.width, normalized.height) == (100, 50)
    assert normalized.aspect_ratio == "16:9"
    assert normalized.mime_type == "image/jpeg"
    assert Image.open(io.BytesIO(normalized.payload)).format == "JPEG"


def test_normalize_rejects_garbage() -> None:
    with pytest.raises(ValidationError):
        normalize_source_image(b"definitely not an image", max_dimension=100, quality=80)


def test_prepare_provider_image_respects_resolution_bound() -> None:
    prepared = prepare_provider_image(_jpeg(3000, 1500), "1K")
    assert max(Image.open(io.BytesIO(prepared)).size) == 1280


def test_collect_image_urls_handles_nested_shapes() -> None:
    payload = {
        "images": [{"url": "https://cdn/a.jpg"}, "https://cdn/b.jpg"],
        "output": {"image_url": "https://cdn/c.jpg"},
    }
    assert collect_image_urls(payload) == [
        "https://cdn/a.jpg",
        "https://cdn/b.jpg",
        "https://cdn/c.jpg",
    ]
    assert collect_image_urls(None) == []


def test_stub_render_keeps_source_dimensions() -> None:
    client = RenderClient("stub")

    rendered = client.render(_jpeg(320, 240), INSTRUCTION, num_images=2, aspect_ratio="4:3")

    assert len(rendered) == 2
    assert (rendered[0].width, rendered[0].height) == (320, 240)
    assert rendered[0].metadata["mode"] == "stub"
    assert rendered[0].payload == rendered[1].payload


def test_fal_render_posts_prompt_and_decodes_data_url() -> None:
    output = _jpeg(32, 18)
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        data_url = "data:image/jpeg;base64," + base64.b64encode(output).decode()
        return httpx.Response(200, json={"images": [{"url": data_url}]})

    rendered = _fal_client(handler).render(_jpeg(64, 48), INSTRUCTION, aspect_ratio="4:3")

    assert seen["url"] == "https://fal.run/fal-ai/nano-banana-pro/edit"
    assert seen["auth"] == "Key fal-key"
    assert seen["body"]["prompt"] == INSTRUCTION
    assert seen["body"]["aspect_ratio"] == "4:3"
    assert seen["body"]["resolution"] == "2K"
    assert seen["body"]["image_urls"][0].startswith("data:image/jpeg;base64,")
    assert rendered[0].payload == output
    assert (rendered[0].width, rendered[0].height) == (32, 18)


def test_fal_render_downloads_hosted_output_after_retry() -> None:
    output = _jpeg(16, 16)
    calls = {"post": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            calls["post"] += 1
            if calls["post"] == 1:
                return httpx.Response(500, json={"detail": "busy"})
            return httpx.Response(200, json={"images": [{"url": "https://cdn.example/out.jpg"}]})
        return httpx.Response(200, content=output, headers={"content-type": "image/jpeg"})

    rendered = _fal_client(handler).render(_jpeg(64, 48), INSTRUCTION)

    assert calls["post"] == 2
    assert rendered[0].payload == output
    assert rendered[0].metadata["url"] == "https://cdn.example/out.jpg"


def test_fal_render_gives_up_after_retries() -> None:
    calls = {"post": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["post"] += 1
        return httpx.Response(200, json={"images": []})

    with pytest.raises(RenderError):
        _fal_client(handler).render(_jpeg(64, 48), INSTRUCTION)
    assert calls["post"] == 3


def test_fal_without_key_fails_immediately() -> None:
    client = RenderClient("fal", backoff_seconds=0)
    with pytest.raises(ConfigurationError):
        client.render(_jpeg(64, 48), INSTRUCTION)


def test_fal_malformed_reply_is_a_render_error() -> None:
    calls = {"post": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["post"] += 1
        return httpx.Response(200, text="<html>gateway</html>")

    with pytest.raises(RenderError, match="malformed"):
        _fal_client(handler).render(_jpeg(64, 48), INSTRUCTION)
    assert calls["post"] == 3
