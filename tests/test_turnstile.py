from urllib.parse import parse_qs

import httpx
import pytest

from bouncer.errors import BNC_E_VERIFICATION_UNAVAILABLE, BouncerError
from bouncer.turnstile import SITEVERIFY_URL, TurnstileVerifier


def _verifier(handler) -> TurnstileVerifier:
    return TurnstileVerifier("secret", http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_success_posts_secret_token_and_ip():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"success": True})

    assert await _verifier(handler).verify("tok", "203.0.113.7") is True
    assert seen["url"] == SITEVERIFY_URL
    assert seen["form"] == {"secret": ["secret"], "response": ["tok"], "remoteip": ["203.0.113.7"]}


@pytest.mark.asyncio
async def test_negative_answer_is_false():
    handler = lambda request: httpx.Response(200, json={"success": False, "error-codes": ["invalid-input-response"]})
    assert await _verifier(handler).verify("tok") is False


@pytest.mark.asyncio
async def test_empty_token_never_hits_network():
    def handler(request):
        raise AssertionError("should not be called")

    assert await _verifier(handler).verify("") is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(500, text="oops"),
        lambda request: httpx.Response(200, text="not json"),
        lambda request: httpx.Response(200, json=["success"]),
    ],
)
async def test_transport_problems_raise_retryable(handler):
    with pytest.raises(BouncerError) as ei:
        await _verifier(handler).verify("tok")
    assert ei.value.code == BNC_E_VERIFICATION_UNAVAILABLE
    assert ei.value.retryable
    assert ei.value.http_status == 502


@pytest.mark.asyncio
async def test_connect_error_raises():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    with pytest.raises(BouncerError) as ei:
        await _verifier(handler).verify("tok")
    assert ei.value.code == BNC_E_VERIFICATION_UNAVAILABLE
