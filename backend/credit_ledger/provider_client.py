"""
Generation Provider client

Submits paid operations to the external music generation API and polls job
state. The ledger reads only the task id and the success signal from here;
everything else in the payload is passed through.
"""

import os
import logging
from typing import Dict, Any, Optional, List

import httpx

from .errors import ProviderError, UnsupportedOperation, InvalidParameters

logger = logging.getLogger(__name__)

PROVIDER_API_URL = os.environ.get("PROVIDER_API_URL", "https://api.kie.ai/api/v1")
PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "30"))
DEFAULT_CALLBACK_URL = os.environ.get("PROVIDER_CALLBACK_URL", "https://example.com/api/webhooks/provider")

# Operation -> submit path
SUBMIT_PATHS = {
    "song": "/generate",
    "cover": "/generate/upload-cover",
    "extend": "/generate/upload-extend",
    "persona": "/generate/generate-persona",
    "lyrics": "/lyrics"
}

STATUS_PATHS = {
    "lyrics": "/lyrics/record-info"
}
DEFAULT_STATUS_PATH = "/generate/record-info"

# Optional tuning fields copied through when present
_TUNING_FIELDS = ("vocalGender", "negativeTags")
_WEIGHT_FIELDS = ("styleWeight", "weirdnessConstraint", "audioWeight")


def _copy_tuning(params: Dict[str, Any], payload: Dict[str, Any]) -> None:
    for field in _TUNING_FIELDS:
        if params.get(field):
            payload[field] = params[field]
    for field in _WEIGHT_FIELDS:
        if params.get(field) not in (None, ""):
            try:
                payload[field] = float(params[field])
            except (TypeError, ValueError):
                raise InvalidParameters(f"{field} must be a number", field=field)


def build_payload(
    operation: str,
    params: Dict[str, Any],
    callback_url: Optional[str] = None,
    allow_persona: bool = False
) -> Dict[str, Any]:
    """
    Translate request parameters into the provider payload for one operation.

    Raises:
        UnsupportedOperation for an unknown operation
        InvalidParameters when a required field is missing
    """
    callback_url = params.get("callBackUrl") or callback_url or DEFAULT_CALLBACK_URL

    if operation == "song":
        payload = {
            "prompt": params.get("prompt"),
            "model": params.get("model") or "V4",
            "customMode": True,
            "instrumental": bool(params.get("instrumental", False)),
            "style": params.get("style") or "Pop",
            "title": params.get("title") or "New Song",
            "callBackUrl": callback_url
        }
        _copy_tuning(params, payload)
        if params.get("personaId") and allow_persona:
            payload["personaId"] = params["personaId"]
        return payload

    if operation == "cover":
        if not params.get("uploadUrl"):
            raise InvalidParameters("uploadUrl is required", field="uploadUrl")
        payload = {
            "uploadUrl": params["uploadUrl"],
            "model": params.get("model") or "V5",
            "customMode": params.get("customMode") is not False,
            "instrumental": params.get("instrumental") is True,
            "callBackUrl": callback_url
        }
        if payload["customMode"]:
            payload["style"] = params.get("style") or "Pop"
            payload["title"] = params.get("title") or "Covered Song"
            if not payload["instrumental"]:
                payload["prompt"] = params.get("prompt")
        else:
            payload["prompt"] = params.get("prompt")
        _copy_tuning(params, payload)
        return payload

    if operation == "extend":
        if not params.get("uploadUrl") or params.get("continueAt") in (None, ""):
            raise InvalidParameters("uploadUrl and continueAt are required", field="continueAt")
        try:
            continue_at = int(params["continueAt"])
        except (TypeError, ValueError):
            raise InvalidParameters("continueAt must be an integer", field="continueAt")
        payload = {
            "uploadUrl": params["uploadUrl"],
            "model": params.get("model") or "V5",
            "continueAt": continue_at,
            "callBackUrl": callback_url,
            "customMode": True,
            "instrumental": params.get("instrumental") is True,
            "style": params.get("style") or "Pop",
            "title": params.get("title") or "Extended Song"
        }
        if not payload["instrumental"] and params.get("prompt"):
            payload["prompt"] = params["prompt"]
        _copy_tuning(params, payload)
        return payload

    if operation == "persona":
        required = ("taskId", "audioId", "name", "description")
        missing = [field for field in required if not params.get(field)]
        if missing:
            raise InvalidParameters(f"Missing fields: {', '.join(missing)}", fields=missing)
        return {field: params[field] for field in required}

    if operation == "lyrics":
        if not params.get("prompt"):
            raise InvalidParameters("prompt is required", field="prompt")
        return {"prompt": params["prompt"], "callBackUrl": callback_url}

    raise UnsupportedOperation(operation=operation)


def extract_task_id(data: Dict[str, Any]) -> Optional[str]:
    inner = data.get("data") if isinstance(data.get("data"), dict) else {}
    return inner.get("taskId") or data.get("taskId")


def extract_result_urls(data: Dict[str, Any]) -> List[str]:
    inner = data.get("data") if isinstance(data.get("data"), dict) else {}
    response = inner.get("response") or {}
    tracks = response.get("sunoData") or response.get("data") or []
    return [t.get("audioUrl") for t in tracks if isinstance(t, dict) and t.get("audioUrl")]


class GenerationProvider:
    """
    Async client for the generation API.

    Usage:
        provider = GenerationProvider()
        task_id = await provider.submit("song", {"prompt": "..."})
        state = await provider.query_status(task_id)
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = (api_url or PROVIDER_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else os.environ.get("PROVIDER_API_KEY", "")
        self.timeout = timeout or PROVIDER_TIMEOUT_SECONDS
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }

    async def submit(self, operation: str, params: Dict[str, Any], allow_persona: bool = False) -> str:
        """
        Dispatch one operation.

        Returns:
            The provider task id

        Raises:
            ProviderError on transport failure, a non-2xx reply, or a reply
            without a task id
        """
        if not self.api_key:
            raise ProviderError("Generation provider is not configured")

        payload = build_payload(operation, params, allow_persona=allow_persona)
        url = f"{self.api_url}{SUBMIT_PATHS[operation]}"

        try:
            async with self._client() as client:
                response = await client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"Provider request failed for {operation}: {e}")
            raise ProviderError(f"Provider request failed: {e}", operation=operation) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code not in [200, 201]:
            logger.error(f"Provider rejected {operation}: {response.status_code} {response.text[:200]}")
            raise ProviderError(data.get("msg") or data.get("error") or "Provider error", status=response.status_code)

        task_id = extract_task_id(data)
        if data.get("code") not in (None, 200) or not task_id:
            logger.error(f"Provider returned no task for {operation}: {data}")
            raise ProviderError(data.get("msg") or "Provider returned no task id")

        logger.info(f"Provider accepted {operation} as task {task_id}")
        return task_id

    async def query_status(self, task_id: str, operation: Optional[str] = None) -> Dict[str, Any]:
        """Current provider state as {status, result_urls}."""
        if not self.api_key:
            raise ProviderError("Generation provider is not configured")

        url = f"{self.api_url}{STATUS_PATHS.get(operation, DEFAULT_STATUS_PATH)}"
        try:
            async with self._client() as client:
                response = await client.get(url, params={"taskId": task_id}, headers=self._headers())
        except httpx.HTTPError as e:
            raise ProviderError(f"Provider status request failed: {e}", task_id=task_id) from e

        if response.status_code != 200:
            raise ProviderError("Provider status error", status=response.status_code, task_id=task_id)

        data = response.json()
        inner = data.get("data") if isinstance(data.get("data"), dict) else {}
        return {
            "status": str(inner.get("status") or "unknown").lower(),
            "result_urls": extract_result_urls(data),
            "error": inner.get("errorMessage")
        }
