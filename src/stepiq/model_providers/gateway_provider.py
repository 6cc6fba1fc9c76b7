"""Model capability via an OpenAI-compatible gateway (LiteLLM proxy).

The gateway routes every supported model id to its provider. The user's own
provider key travels with each request; the worker holds no provider keys.
"""

from __future__ import annotations

import httpx
import structlog

from stepiq.core.catalog import PROVIDER_API_KEY_FIELD, provider_for_model
from stepiq.core.exceptions import ModelCallError
from stepiq.models.llm import ModelRequest, ModelResponse
from stepiq.models.pipeline import OutputFormat

logger = structlog.get_logger(__name__)


class GatewayModelCaller:
    """IModelCaller posting chat completions to the gateway."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _payload(self, request: ModelRequest) -> dict:
        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})

        payload: dict = {"model": request.model, "messages": messages}
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.output_format == OutputFormat.JSON:
            payload["response_format"] = {"type": "json_object"}

        provider = provider_for_model(request.model)
        if provider is not None:
            key = request.api_keys.get(PROVIDER_API_KEY_FIELD[provider])
            if key:
                payload["api_key"] = key
        return payload

    async def call_model(self, request: ModelRequest) -> ModelResponse:
        try:
            response = await self._client.post(
                f"{self._base_url}/chat/completions",
                json=self._payload(request),
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise ModelCallError(f"Model gateway unreachable: {exc}") from exc

        if not response.is_success:
            # Body can echo request fields; keep only the status
            raise ModelCallError(f"Model gateway error ({response.status_code}) for {request.model}")

        data = response.json()
        usage = data.get("usage") or {}
        try:
            output = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ModelCallError(f"Malformed completion for {request.model}") from exc

        cost_header = response.headers.get("x-litellm-response-cost")
        cost_cents = float(cost_header) * 100 if cost_header else 0.0
        logger.debug("model_called", model=request.model, tokens=usage.get("total_tokens"))
        return ModelResponse(
            output=output,
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            cost_cents=cost_cents,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
