import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from bookgen.common.errors import ProviderError
from bookgen.generation.provider import HttpProvider, MockProvider, encode_image, get_provider


def _provider_app(statuses, calls):
    async def handler(request):
        calls.append(await request.json())
        status = statuses[min(len(calls), len(statuses)) - 1]
        if status != 200:
            return web.Response(status=status, text="nope")
        return web.json_response({"image": encode_image(b"generated")})

    app = web.Application()
    app.router.add_post("/generate-image", handler)
    return app


async def test_http_provider_retries_transient_errors():
    calls = []
    async with TestServer(_provider_app([503, 429, 200], calls)) as server:
        provider = HttpProvider(str(server.make_url("/")), max_retries=3, backoff=0.01)
        try:
            assert await provider.generate_image("a dragon", b"img") == b"generated"
        finally:
            await provider.close()
    assert len(calls) == 3
    assert calls[0]["prompt"] == "a dragon"


async def test_http_provider_does_not_retry_client_errors():
    calls = []
    async with TestServer(_provider_app([400], calls)) as server:
        provider = HttpProvider(str(server.make_url("/")), max_retries=3, backoff=0.01)
        try:
            with pytest.raises(ProviderError) as exc:
                await provider.generate_image("a dragon", b"img")
        finally:
            await provider.close()
    assert exc.value.status == 400
    assert len(calls) == 1


async def test_http_provider_gives_up_after_max_retries():
    calls = []
    async with TestServer(_provider_app([500], calls)) as server:
        provider = HttpProvider(str(server.make_url("/")), max_retries=2, backoff=0.01)
        try:
            with pytest.raises(ProviderError) as exc:
                await provider.generate_image("a dragon", b"img")
        finally:
            await provider.close()
    assert exc.value.retryable is True
    assert len(calls) == 2


def test_get_provider_defaults_to_mock():
    assert isinstance(get_provider("mock"), MockProvider)
    assert isinstance(get_provider("something-else"), MockProvider)
    with pytest.raises(ValueError):
        get_provider("http")
