"""Mock model caller for local development and testing.

Returns canned responses. No real LLM calls.
"""

from __future__ import annotations

from stepiq.models.llm import ModelRequest, ModelResponse


class MockModelCaller:
    """IModelCaller implementation that returns deterministic mock responses."""

    def __init__(
        self,
        default_response: str = "Mock LLM response",
        input_tokens: int = 10,
        output_tokens: int = 5,
        cost_cents: float = 0.1,
    ) -> None:
        self._default_response = default_response
        self._canned_responses: dict[str, str] = {}
        self._failures: dict[str, Exception] = {}
        self._usage = (input_tokens, output_tokens, cost_cents)
        self.requests: list[ModelRequest] = []

    def set_response(self, prompt_contains: str, response: str) -> None:
        """Register a canned response for prompts containing a keyword."""
        self._canned_responses[prompt_contains] = response

    def fail_on(self, prompt_contains: str, error: Exception) -> None:
        """Raise ``error`` for prompts containing a keyword."""
        self._failures[prompt_contains] = error

    async def call_model(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        for keyword, error in self._failures.items():
            if keyword in request.prompt:
                raise error
        output = self._default_response
        for keyword, response in self._canned_responses.items():
            if keyword in request.prompt:
                output = response
                break
        input_tokens, output_tokens, cost_cents = self._usage
        return ModelResponse(
            output=output,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_cents=cost_cents,
        )
