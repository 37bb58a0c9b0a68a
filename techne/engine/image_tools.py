"""Image tools: generate_image and edit_image via the OpenAI Images API.

Generated images are written into the workspace as binary files and
reported to the change tracker like any other file write.
"""

from __future__ import annotations

import base64
import logging
import posixpath
from typing import Any

import httpx

from techne.config import Settings
from techne.engine.schemas import ToolOutcome
from techne.engine.tools import ToolContext, ToolDispatcher, path_args
from techne.storage.files import FileNotFound, normalize_path

logger = logging.getLogger(__name__)

_IMAGE_TYPES = {".png": "image/png", ".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".webp": "image/webp"}
_OUTPUT_FORMATS = {".png": "png", ".jpg": "jpeg", ".jpeg": "jpeg", ".webp": "webp"}

# Sizes the image model accepts
_SQUARE, _LANDSCAPE, _PORTRAIT = "1024x1024", "1536x1024", "1024x1536"


def image_size(width: int, height: int) -> str:
    """Closest supported size for the requested aspect ratio."""
    if width > height * 1.2:
        return _LANDSCAPE
    if height > width * 1.2:
        return _PORTRAIT
    return _SQUARE


def _check_target(path: str) -> str:
    path = normalize_path(path)
    ext = posixpath.splitext(path)[1].lower()
    if ext not in _IMAGE_TYPES:
        raise ValueError(
            f"Unsupported image extension for {path}; use one of {', '.join(sorted(_IMAGE_TYPES))}"
        )
    return path


def _usage_hint(path: str) -> str:
    if path.startswith("public/"):
        return f'Reference it as <img src="/{path[len("public/"):]}" alt="..." />'
    if path.startswith("src/"):
        module = "@/" + path[len("src/"):]
        name = posixpath.splitext(posixpath.basename(path))[0].replace("-", "_")
        return f'Import it with: import {name} from "{module}";'
    return f"Saved at {path}"


def _decode_image(data: dict[str, Any]) -> bytes:
    items = data.get("data") or []
    if not items or not items[0].get("b64_json"):
        raise ValueError("Image API returned no image data")
    return base64.b64decode(items[0]["b64_json"])


async def _save_image(context: ToolContext, path: str, image: bytes) -> None:
    await context.file_store.write(context.workspace_id, path, image)
    await context.tracker.record_write(context.workspace_id, path, image)


def _api_error(response: httpx.Response) -> str:
    try:
        message = response.json().get("error", {}).get("message", "")
    except ValueError:
        message = response.text[:300]
    return f"Image API error (HTTP {response.status_code}): {message}"


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def _generate_image(
    context: ToolContext,
    prompt: str,
    target_path: str,
    width: int = 1024,
    height: int = 1024,
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
) -> ToolOutcome:
    if not _settings.openai_api_key:
        return ToolOutcome.fail("OPENAI_API_KEY not configured. Image generation is disabled.")
    if not prompt.strip():
        return ToolOutcome.fail("Prompt is required")
    try:
        path = _check_target(target_path)
    except ValueError as e:
        return ToolOutcome.fail(str(e))

    ext = posixpath.splitext(path)[1].lower()
    payload = {
        "model": _settings.image_model,
        "prompt": prompt,
        "size": image_size(width, height),
        "n": 1,
        "output_format": _OUTPUT_FORMATS[ext],
    }
    try:
        response = await _http.post(
            f"{_settings.image_api_base_url}/images/generations",
            json=payload,
            headers={"Authorization": f"Bearer {_settings.openai_api_key}"},
            timeout=120,
        )
    except httpx.TimeoutException:
        return ToolOutcome.fail("Image generation timed out. Try a simpler prompt.")
    except httpx.HTTPError as e:
        return ToolOutcome.fail(f"Could not reach the image service: {e}")

    if response.status_code != 200:
        return ToolOutcome.fail(_api_error(response))
    try:
        image = _decode_image(response.json())
    except ValueError as e:
        return ToolOutcome.fail(str(e))

    await _save_image(context, path, image)
    logger.info("Generated image %s (%d bytes) for %s", path, len(image), context.workspace_id)
    return ToolOutcome.ok(
        f"Image generated: {path} ({payload['size']}, {len(image):,} bytes). {_usage_hint(path)}",
        changed_paths=[path],
    )


async def _edit_image(
    context: ToolContext,
    image_path: str,
    prompt: str,
    target_path: str | None = None,
    *,
    _settings: Settings,
    _http: httpx.AsyncClient,
) -> ToolOutcome:
    if not _settings.openai_api_key:
        return ToolOutcome.fail("OPENAI_API_KEY not configured. Image editing is disabled.")
    try:
        source_path = _check_target(image_path)
        path = _check_target(target_path or image_path)
        source = await context.file_store.read(context.workspace_id, source_path)
    except (ValueError, FileNotFound) as e:
        return ToolOutcome.fail(str(e))
    if not isinstance(source, bytes):
        return ToolOutcome.fail(f"{source_path} is not an image file")

    ext = posixpath.splitext(source_path)[1].lower()
    try:
        response = await _http.post(
            f"{_settings.image_api_base_url}/images/edits",
            data={"model": _settings.image_model, "prompt": prompt},
            files={"image": (posixpath.basename(source_path), source, _IMAGE_TYPES[ext])},
            headers={"Authorization": f"Bearer {_settings.openai_api_key}"},
            timeout=120,
        )
    except httpx.TimeoutException:
        return ToolOutcome.fail("Image edit timed out.")
    except httpx.HTTPError as e:
        return ToolOutcome.fail(f"Could not reach the image service: {e}")

    if response.status_code != 200:
        return ToolOutcome.fail(_api_error(response))
    try:
        image = _decode_image(response.json())
    except ValueError as e:
        return ToolOutcome.fail(str(e))

    await _save_image(context, path, image)
    return ToolOutcome.ok(f"Image edited and saved to {path}. {_usage_hint(path)}", changed_paths=[path])


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_GENERATE_IMAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Generate an image from a text prompt and save it into the project "
        "(e.g. src/assets/hero.png or public/images/logo.png)."
    ),
    "properties": {
        "prompt": {"type": "string", "description": "Detailed description of the image"},
        "target_path": {"type": "string", "description": "Where to save (.png, .jpg, .webp)"},
        "width": {"type": "integer", "default": 1024, "minimum": 256, "maximum": 1536},
        "height": {"type": "integer", "default": 1024, "minimum": 256, "maximum": 1536},
    },
    "required": ["prompt", "target_path"],
}

_EDIT_IMAGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Edit an existing project image with a text prompt",
    "properties": {
        "image_path": {"type": "string", "description": "Existing image in the project"},
        "prompt": {"type": "string", "description": "How to change the image"},
        "target_path": {"type": "string", "description": "Where to save (defaults to image_path)"},
    },
    "required": ["image_path", "prompt"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_image_tools(
    dispatcher: ToolDispatcher,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> None:
    """Register image tools with settings and the outbound httpx client injected."""

    async def _generate(
        context: ToolContext, prompt: str, target_path: str, width: int = 1024, height: int = 1024
    ) -> ToolOutcome:
        return await _generate_image(
            context, prompt, target_path, width, height, _settings=settings, _http=http_client
        )

    async def _edit(
        context: ToolContext, image_path: str, prompt: str, target_path: str | None = None
    ) -> ToolOutcome:
        return await _edit_image(
            context, image_path, prompt, target_path, _settings=settings, _http=http_client
        )

    dispatcher.register(
        "generate_image",
        _generate,
        _GENERATE_IMAGE_SCHEMA,
        parallel_safe=True,
        touches=path_args("target_path"),
        timeout=max(settings.tool_timeout, 150.0),
    )
    dispatcher.register(
        "edit_image",
        _edit,
        _EDIT_IMAGE_SCHEMA,
        parallel_safe=True,
        touches=path_args("image_path", "target_path"),
        timeout=max(settings.tool_timeout, 150.0),
    )
