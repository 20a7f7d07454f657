"""
HTTP NodeRunner - calls the generation proxy's ``/api/generate`` endpoint.

Request:  {model, prompt, images, responseModalities?, imageConfig?, tools?}
Response: {image: <base64>} | {text: <string>}

Status mapping: 401 → AuthError, 402 → BalanceError, 403 → QuotaError,
other non-2xx → GenerationError carrying the server's ``error`` message.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from flowcanvas.config import DEFAULT_REQUEST_TIMEOUT, get_default_model
from flowcanvas.errors import (
    AuthError,
    BalanceError,
    GenerationError,
    QuotaError,
    ValidationError,
)
from flowcanvas.graph.models import NodeKind
from flowcanvas.runner.port import (
    Credentials,
    GenerationOptions,
    Input,
    NodeRunnerPort,
    PayloadKind,
    RunResult,
)

logger = logging.getLogger(__name__)


def build_request(
    instruction: str,
    kind: NodeKind,
    inputs: list[Input],
    model: str | None,
    options: GenerationOptions | None = None,
) -> dict[str, Any]:
    """
    Build the JSON body for one generation call.

    Text inputs come first, the instruction last, joined by blank lines.
    Inputs without data are dropped.

    Raises:
        ValidationError: if nothing is left to send
    """
    texts = [i.data for i in inputs if i.kind == PayloadKind.TEXT and i.data]
    images = [i.data for i in inputs if i.kind == PayloadKind.IMAGE and i.data]
    if instruction:
        texts.append(instruction)
    if not texts and not images:
        raise ValidationError(
            "Nothing to generate: the node needs an instruction or upstream input."
        )

    body: dict[str, Any] = {
        "model": model or get_default_model(kind.value),
        "prompt": "\n\n".join(texts),
        "images": images,
    }

    if kind in (NodeKind.IMAGE, NodeKind.BATCH_IMAGE):
        body["responseModalities"] = ["IMAGE", "TEXT"]
    if options is not None:
        image_config = {}
        if options.aspect_ratio:
            image_config["aspectRatio"] = options.aspect_ratio
        if options.resolution:
            image_config["imageSize"] = options.resolution
        if image_config:
            body["imageConfig"] = image_config
        if options.google_search:
            body["tools"] = [{"googleSearch": {}}]
        body.update(options.extra)

    return body


class HttpNodeRunner(NodeRunnerPort):
    """
    NodeRunnerPort backed by the generation proxy.

    Example:
        runner = HttpNodeRunner(api_base="https://proxy.example.com")
        result = await runner.run(
            "Add the text as a watermark",
            NodeKind.IMAGE,
            [Input(PayloadKind.IMAGE, image_b64), Input(PayloadKind.TEXT, "ACME")],
            credentials=Credentials(access_token=token),
        )
    """

    def __init__(
        self,
        api_base: str,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _headers(self, credentials: Credentials | None) -> dict[str, str]:
        if credentials is None or not credentials.access_token:
            raise AuthError("Not signed in. Sign in to use generation.")
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {credentials.access_token}",
        }
        if credentials.api_key:
            headers["X-Api-Key"] = credentials.api_key
        return headers

    def _handle_response(self, response: httpx.Response) -> RunResult:
        """Map HTTP status codes and body shapes onto results or errors."""
        if response.status_code >= 400:
            try:
                detail = response.json().get("error")
            except Exception:
                detail = None
            if response.status_code == 401:
                raise AuthError(detail or "Authentication failed. Please sign in again.")
            if response.status_code == 402:
                raise BalanceError("Insufficient balance. Contact an administrator to top up.")
            if response.status_code == 403:
                raise QuotaError(detail or "Forbidden or inactive account.")
            raise GenerationError(detail or f"Request failed ({response.status_code})")

        try:
            data = response.json()
        except ValueError as e:
            raise GenerationError("Generation service returned malformed JSON.") from e

        if not isinstance(data, dict):
            raise GenerationError("Generation service returned an unrecognised response.")

        if data.get("image"):
            return RunResult(PayloadKind.IMAGE, data["image"])
        if data.get("text"):
            return RunResult(PayloadKind.TEXT, data["text"])
        raise GenerationError("Generation service returned an unrecognised response.")

    async def run(
        self,
        instruction: str,
        kind: NodeKind,
        inputs: list[Input],
        model: str | None = None,
        credentials: Credentials | None = None,
        options: GenerationOptions | None = None,
    ) -> RunResult:
        headers = self._headers(credentials)
        body = build_request(instruction, kind, inputs, model, options)
        url = f"{self.api_base}/api/generate"

        start = time.perf_counter()
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, headers=headers, json=body, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        url, headers=headers, json=body, timeout=self.timeout
                    )
        except httpx.TimeoutException as e:
            raise GenerationError(f"Generation request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Generation request failed: {e}") from e

        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.debug(
            f"POST {url} -> {response.status_code}",
            extra={"model": body["model"], "latency_ms": latency_ms},
        )
        return self._handle_response(response)
