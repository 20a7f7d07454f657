"""
Tests for the HTTP NodeRunner: request shape and status-code mapping.

Uses httpx.MockTransport so no network traffic is made.
"""

import json

import httpx
import pytest

from flowcanvas.errors import (
    AuthError,
    BalanceError,
    GenerationError,
    QuotaError,
    ValidationError,
)
from flowcanvas.graph.models import NodeKind
from flowcanvas.runner import Credentials, GenerationOptions, HttpNodeRunner, Input, PayloadKind
from flowcanvas.runner.http import build_request

TOKEN = Credentials(access_token="tok-123")


def runner_for(handler) -> tuple[HttpNodeRunner, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpNodeRunner(api_base="http://proxy.test/", client=client), client


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------
class TestBuildRequest:
    def test_text_inputs_precede_instruction(self):
        body = build_request(
            "summarise",
            NodeKind.TEXT,
            [Input(PayloadKind.TEXT, "one"), Input(PayloadKind.TEXT, "two")],
            model="m",
        )
        assert body == {"model": "m", "prompt": "one\n\ntwo\n\nsummarise", "images": []}

    def test_image_request_asks_for_images(self):
        body = build_request(
            "",
            NodeKind.IMAGE,
            [Input(PayloadKind.IMAGE, "b64"), Input(PayloadKind.IMAGE, None)],
            model=None,
        )
        assert body["images"] == ["b64"]
        assert body["prompt"] == ""
        assert body["model"] == "gemini-2.5-flash-image"
        assert body["responseModalities"] == ["IMAGE", "TEXT"]

    def test_options_map_to_image_config_and_tools(self):
        options = GenerationOptions(
            aspect_ratio="16:9",
            resolution="2K",
            google_search=True,
            extra={"temperature": 0.2},
        )
        body = build_request("draw", NodeKind.IMAGE, [], model="m", options=options)

        assert body["imageConfig"] == {"aspectRatio": "16:9", "imageSize": "2K"}
        assert body["tools"] == [{"googleSearch": {}}]
        assert body["temperature"] == 0.2

    def test_nothing_to_send_raises(self):
        with pytest.raises(ValidationError):
            build_request("", NodeKind.TEXT, [Input(PayloadKind.TEXT, "")], model="m")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_image_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"image": "generated-b64"})

    runner, client = runner_for(handler)
    async with client:
        result = await runner.run(
            "draw a cat", NodeKind.IMAGE, [], model="img-model", credentials=TOKEN
        )

    assert result.kind == PayloadKind.IMAGE
    assert result.content == "generated-b64"
    assert seen["url"] == "http://proxy.test/api/generate"
    assert seen["auth"] == "Bearer tok-123"
    assert seen["body"]["model"] == "img-model"
    assert seen["body"]["prompt"] == "draw a cat"


@pytest.mark.asyncio
async def test_text_response_and_api_key_header():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["X-Api-Key"] == "user-key"
        return httpx.Response(200, json={"text": "hello"})

    runner, client = runner_for(handler)
    async with client:
        result = await runner.run(
            "greet",
            NodeKind.TEXT,
            [],
            credentials=Credentials(access_token="tok", api_key="user-key"),
        )

    assert result.kind == PayloadKind.TEXT
    assert result.content == "hello"


@pytest.mark.parametrize(
    ("status", "body", "error", "message"),
    [
        (401, {}, AuthError, "Authentication failed. Please sign in again."),
        (402, {"error": "ignored"}, BalanceError, "Insufficient balance."),
        (403, {"error": "Account disabled"}, QuotaError, "Account disabled"),
        (403, {}, QuotaError, "Forbidden or inactive account."),
        (500, {"error": "model overloaded"}, GenerationError, "model overloaded"),
        (502, None, GenerationError, "Request failed (502)"),
    ],
)
@pytest.mark.asyncio
async def test_error_status_mapping(status, body, error, message):
    def handler(request: httpx.Request) -> httpx.Response:
        if body is None:
            return httpx.Response(status, text="Bad Gateway")
        return httpx.Response(status, json=body)

    runner, client = runner_for(handler)
    async with client:
        with pytest.raises(error) as exc_info:
            await runner.run("x", NodeKind.TEXT, [], credentials=TOKEN)

    assert str(exc_info.value).startswith(message)


@pytest.mark.asyncio
async def test_balance_error_is_a_quota_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(402)

    runner, client = runner_for(handler)
    async with client:
        with pytest.raises(QuotaError):
            await runner.run("x", NodeKind.TEXT, [], credentials=TOKEN)


@pytest.mark.asyncio
async def test_unrecognised_body_is_generation_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": []})

    runner, client = runner_for(handler)
    async with client:
        with pytest.raises(GenerationError):
            await runner.run("x", NodeKind.TEXT, [], credentials=TOKEN)


@pytest.mark.asyncio
async def test_transport_failure_is_generation_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    runner, client = runner_for(handler)
    async with client:
        with pytest.raises(GenerationError, match="connection refused"):
            await runner.run("x", NodeKind.TEXT, [], credentials=TOKEN)


@pytest.mark.asyncio
async def test_missing_token_fails_before_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"text": "unused"})

    runner, client = runner_for(handler)
    async with client:
        with pytest.raises(AuthError):
            await runner.run("x", NodeKind.TEXT, [], credentials=None)

    assert calls == []
