"""Chat-completion HTTP client used for classification and finance questions"""

import httpx
from typing import Any, Dict
from finance_gateway.domain.exceptions import ExternalServiceError
from finance_gateway.config import settings


class CompletionClient:
    """Client for an OpenAI-compatible /chat/completions endpoint"""

    def __init__(
        self,
        api_url: str | None = None,
        api_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url or settings.completion_api_url
        self.api_token = api_token if api_token is not None else settings.completion_api_token
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    async def complete(self, prompt: str) -> str:
        """
        Send a single-message prompt and return the trimmed answer text.

        Raises:
            ExternalServiceError: On timeout, HTTP errors, or a response without
                a message.
        """
        if not self.api_url:
            raise ExternalServiceError("Completion endpoint is not configured", code="NOT_CONFIGURED")

        headers: Dict[str, str] = {}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    self.api_url,
                    json={"messages": [{"role": "user", "content": prompt}]},
                    headers=headers,
                )
                response.raise_for_status()
                data: Dict[str, Any] = response.json()
                content = data["choices"][0]["message"]["content"]
                if not isinstance(content, str):
                    raise TypeError("message content is not a string")
                return content.strip()

            except httpx.TimeoutException as e:
                raise ExternalServiceError(f"Completion timeout after {self.timeout}s", code="TIMEOUT") from e
            except httpx.HTTPStatusError as e:
                raise ExternalServiceError("Completion endpoint error", code=f"HTTP_{e.response.status_code}") from e
            except httpx.RequestError as e:
                raise ExternalServiceError(f"Completion request failed: {e}", code="NETWORK_ERROR") from e
            except (KeyError, IndexError, ValueError, TypeError) as e:
                raise ExternalServiceError(f"Malformed completion response: {e}", code="INVALID_RESPONSE") from e
