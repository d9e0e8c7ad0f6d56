"""HTTP client for the asynchronous generation provider."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .models import GenerationKind, GenerationRequest, ProviderStatus, ProviderTaskStatus

logger = logging.getLogger("generation.provider")

DEFAULT_UPLOAD_URL = "https://kieai.redpandaai.co/api/file-base64-upload"
UPLOAD_PATH = "fitcheck/uploads"

KIE_MODELS: Dict[str, str] = {
    "image": "nano-banana-pro",
    "video_text": "kling-2.6/text-to-video",
    "video_image": "kling-2.6/image-to-video",
}

_STATE_MAP: Dict[str, ProviderStatus] = {
    "waiting": ProviderStatus.QUEUED,
    "queuing": ProviderStatus.QUEUED,
    "generating": ProviderStatus.RUNNING,
    "success": ProviderStatus.SUCCEEDED,
    "fail": ProviderStatus.FAILED,
}

_RESULT_FIELDS = ("resultUrls", "image_url", "video_url", "url", "images", "output")


class ProviderError(Exception):
    """Base class for provider failures."""


class ProviderTransientError(ProviderError):
    """The provider could not be asked; the call may be retried."""


class ProviderTerminalError(ProviderError):
    """The provider answered with a definitive refusal or failure."""


class GenerationProvider(Protocol):
    async def submit(self, request: GenerationRequest) -> str:
        ...

    async def get_status(self, provider_task_id: str) -> ProviderTaskStatus:
        ...

    async def upload_image(self, base64_data: str, mime_type: str) -> str:
        ...


def extract_urls(value: Any) -> List[str]:
    """Collect every ``https://`` string nested anywhere in ``value``."""

    if isinstance(value, str):
        return [value] if value.startswith("https://") else []
    if isinstance(value, list):
        return [url for item in value for url in extract_urls(item)]
    if isinstance(value, dict):
        return [url for item in value.values() for url in extract_urls(item)]
    return []


def parse_result_urls(raw: Any) -> List[str]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Provider returned an unparseable result payload")
            return []

    if isinstance(raw, dict):
        for key in _RESULT_FIELDS:
            found = raw.get(key)
            if not found:
                continue
            values = found if isinstance(found, list) else [found]
            return [value for value in values if isinstance(value, str) and value]
        return extract_urls(raw)
    if isinstance(raw, list):
        return [value for value in raw if isinstance(value, str) and value] or extract_urls(raw)
    return []


def normalize_progress(value: Any) -> float:
    try:
        progress = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    if progress > 1.0:
        progress = progress / 100.0
    return min(1.0, max(0.0, progress))


class KieGenerationProvider:
    """Client for the kie.ai jobs API.

    Network errors, timeouts, rate limiting and server errors raise
    :class:`ProviderTransientError`. Any other rejection raises
    :class:`ProviderTerminalError`.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.kie.ai/api/v1",
        upload_url: str = DEFAULT_UPLOAD_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise ValueError("KIE_API_KEY is not configured")
        self._upload_url = upload_url
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def upload_image(self, base64_data: str, mime_type: str) -> str:
        """Upload an inline image and return the temporary URL the provider hosts it at."""

        data_url = base64_data if base64_data.startswith("data:") else f"data:{mime_type};base64,{base64_data}"
        payload = await self._request(
            "POST",
            self._upload_url,
            json={"base64Data": data_url, "uploadPath": UPLOAD_PATH},
        )
        url = (payload.get("data") or {}).get("downloadUrl")
        if not url:
            raise ProviderTerminalError("upload response did not include a download URL")
        return url

    async def submit(self, request: GenerationRequest) -> str:
        body = {"model": self._model_for(request), "input": self._input_for(request)}
        payload = await self._request("POST", "/jobs/createTask", json=body)
        task_id = (payload.get("data") or {}).get("taskId")
        if not task_id:
            raise ProviderTerminalError("task creation response did not include a task id")
        return str(task_id)

    async def get_status(self, provider_task_id: str) -> ProviderTaskStatus:
        payload = await self._request("GET", "/jobs/recordInfo", params={"taskId": provider_task_id})
        data = payload.get("data") or {}
        state = str(data.get("state") or "").lower()
        status = _STATE_MAP.get(state, ProviderStatus.QUEUED)
        result_urls = parse_result_urls(data.get("resultJson")) if status == ProviderStatus.SUCCEEDED else []
        logger.debug(
            "Provider status",
            extra={"provider_task_id": provider_task_id, "state": state, "result_count": len(result_urls)},
        )
        return ProviderTaskStatus(
            status=status,
            progress=1.0 if status == ProviderStatus.SUCCEEDED else normalize_progress(data.get("progress")),
            result_urls=result_urls,
            error=data.get("failMsg") or None,
        )

    @staticmethod
    def _model_for(request: GenerationRequest) -> str:
        if request.kind == GenerationKind.IMAGE:
            return KIE_MODELS["image"]
        return KIE_MODELS["video_image"] if request.image_urls else KIE_MODELS["video_text"]

    @staticmethod
    def _input_for(request: GenerationRequest) -> Dict[str, Any]:
        if request.kind == GenerationKind.IMAGE:
            return {
                "prompt": request.prompt,
                "image_input": list(request.image_urls),
                "aspect_ratio": request.aspect_ratio,
                "resolution": request.resolution,
            }
        body: Dict[str, Any] = {
            "prompt": request.prompt,
            "aspect_ratio": request.aspect_ratio or "16:9",
            "duration": request.duration_seconds,
            "sound": request.sound,
        }
        if request.image_urls:
            body["image_input"] = [request.image_urls[0]]
        return body

    async def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"provider unreachable: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientError(f"provider returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ProviderTerminalError(f"provider rejected request ({response.status_code}): {response.text}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderTransientError("provider returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise ProviderTerminalError("provider returned an unexpected payload")

        code = payload.get("code")
        if code is not None and code != 200:
            if code == 429 or (isinstance(code, int) and code >= 500):
                raise ProviderTransientError(f"provider busy ({code}): {payload.get('msg')}")
            raise ProviderTerminalError(f"provider error ({code}): {payload.get('msg')}")
        return payload


__all__ = [
    "GenerationProvider",
    "KIE_MODELS",
    "KieGenerationProvider",
    "ProviderError",
    "ProviderTerminalError",
    "ProviderTransientError",
    "extract_urls",
    "normalize_progress",
    "parse_result_urls",
]
