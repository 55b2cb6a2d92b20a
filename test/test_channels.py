import base64
import hashlib
import hmac
import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from core.channels import get_channel, list_channels, register_channel
from core.channels import ali_channel, baidu_channel
from core.channels.ali_channel import convert_ali_image_request, fetch_ali_image_response
from core.channels.baidu_channel import (
    convert_baidu_image_request,
    fetch_baidu_image_response,
    get_baidu_access_token,
)
from core.channels.openai_channel import build_azure_image_endpoint, build_openai_image_endpoint
from core.channels.zhipu_channel import convert_zhipu_image_request
from core.error_response import RelayError
from core.jwt_utils import issue_zhipu_token
from core.models import APIType, ChannelType, ImageGenerationRequest
from core.response import forward_response, relay_error_from_upstream
from fakes import Upstream, make_meta


def _b64url_decode(data):
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _verify_hs256(token, secret):
    header_b64, payload_b64, sig_b64 = token.split(".")
    expected = hmac.new(secret.encode(), f"{header_b64}.{payload_b64}".encode(), hashlib.sha256).digest()
    if not hmac.compare_digest(expected, _b64url_decode(sig_b64)):
        return None
    return json.loads(_b64url_decode(payload_b64))


def _request(**fields):
    values = {"model": "wanx-v1", "prompt": "mountain lake", "n": 2, "size": "1024x1024"}
    values.update(fields)
    return ImageGenerationRequest(**values)


def test_registry_covers_image_capable_api_types():
    assert {c.api_type for c in list_channels()} == {APIType.OPENAI, APIType.ALI, APIType.BAIDU, APIType.ZHIPU}
    assert get_channel(APIType.ANTHROPIC) is None
    assert get_channel(APIType.OPENAI).convert_image_request is None


def test_duplicate_registration_is_rejected():
    with pytest.raises(ValueError):
        register_channel(api_type=APIType.OPENAI, type_name="openai-again")


def test_azure_endpoint_strips_dots_and_defaults_api_version():
    assert build_azure_image_endpoint("https://res.openai.azure.com/", "gpt-image.1", "") == (
        "https://res.openai.azure.com/openai/deployments/gpt-image1/images/generations?api-version=2025-01-01-preview"
    )


def test_openai_endpoint_accepts_base_with_or_without_v1():
    assert build_openai_image_endpoint("https://api.openai.com") == "https://api.openai.com/v1/images/generations"
    assert build_openai_image_endpoint("https://proxy.test/v1/") == "https://proxy.test/v1/images/generations"


def test_ali_conversion():
    payload = convert_ali_image_request(_request(negative_prompt="people", seed=7, response_format="b64_json"))

    assert payload == {
        "model": "wanx-v1",
        "input": {"prompt": "mountain lake", "negative_prompt": "people"},
        "parameters": {"size": "1024*1024", "n": 2, "seed": 7},
        "response_format": "b64_json",
    }


def test_baidu_conversion():
    payload = convert_baidu_image_request(_request(model="sd_xl", steps=20, style="Base", user="u"))

    assert payload == {"prompt": "mountain lake", "size": "1024x1024", "n": 2, "steps": 20, "style": "Base", "user_id": "u"}


def test_zhipu_conversion_drops_n():
    payload = convert_zhipu_image_request(_request(model="cogview-3"))
    assert payload == {"model": "cogview-3", "prompt": "mountain lake", "size": "1024x1024"}


def test_zhipu_token_is_signed_with_key_secret_and_cached():
    token = issue_zhipu_token("abc123.s3cret")
    payload = _verify_hs256(token, "s3cret")

    assert payload["api_key"] == "abc123"
    assert payload["exp"] > payload["timestamp"]
    assert _verify_hs256(token, "wrong") is None
    assert issue_zhipu_token("abc123.s3cret") == token


def test_zhipu_key_without_secret_is_used_verbatim():
    assert issue_zhipu_token("just-a-key") == "just-a-key"


@pytest.mark.asyncio
async def test_ali_task_is_polled_and_rendered_as_b64(monkeypatch):
    monkeypatch.setattr(ali_channel, "ALI_TASK_POLL_INTERVAL", 0)
    upstream = Upstream(
        httpx.Response(200, json={"output": {"task_id": "t-1", "task_status": "RUNNING"}}),
        httpx.Response(200, json={"output": {"task_status": "SUCCEEDED", "results": [{"url": "https://oss.test/1.png"}]}}),
        httpx.Response(200, content=b"PNGDATA"),
    )
    meta = make_meta(channel_type=ChannelType.ALI, api_type=APIType.ALI, response_format="b64_json")

    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        submit = await client.get("https://upstream.test/submit")
        response = await fetch_ali_image_response(client, submit, meta)

    data = json.loads(response.body)
    assert data["data"] == [{"b64_json": base64.b64encode(b"PNGDATA").decode("ascii")}]
    assert str(upstream.requests[1].url) == "https://upstream.test/api/v1/tasks/t-1"
    assert upstream.requests[1].headers["Authorization"] == "Bearer sk-upstream"


@pytest.mark.asyncio
async def test_ali_failed_task_raises():
    upstream = Upstream(
        httpx.Response(200, json={"output": {"task_id": "t-2", "task_status": "PENDING"}}),
        httpx.Response(200, json={"output": {"task_status": "FAILED", "code": "DataInspectionFailed", "message": "bad prompt"}}),
    )
    meta = make_meta(channel_type=ChannelType.ALI, api_type=APIType.ALI)

    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        submit = await client.get("https://upstream.test/submit")
        with pytest.raises(RelayError) as exc_info:
            await fetch_ali_image_response(client, submit, meta)

    assert exc_info.value.code == "DataInspectionFailed"
    assert exc_info.value.message == "bad prompt"


@pytest.mark.asyncio
async def test_baidu_access_token_exchange_is_cached(monkeypatch):
    monkeypatch.setattr(baidu_channel, "_token_cache", {})
    upstream = Upstream(httpx.Response(200, json={"access_token": "tok-1", "expires_in": 2592000}))

    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        first = await get_baidu_access_token(client, "https://aip.test", "ak|sk")
        second = await get_baidu_access_token(client, "https://aip.test", "ak|sk")

    assert first == second == "tok-1"
    assert len(upstream.requests) == 1
    params = upstream.requests[0].url.params
    assert params["client_id"] == "ak"
    assert params["client_secret"] == "sk"


@pytest.mark.asyncio
async def test_baidu_access_token_non_json_error_page_raises_relay_error(monkeypatch):
    monkeypatch.setattr(baidu_channel, "_token_cache", {})
    upstream = Upstream(httpx.Response(502, text="<html>bad gateway</html>"))

    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        with pytest.raises(RelayError) as exc_info:
            await get_baidu_access_token(client, "https://aip.test", "ak|sk")

    assert exc_info.value.status_code == 502
    assert exc_info.value.message == "<html>bad gateway</html>"
    assert baidu_channel._token_cache == {}


@pytest.mark.asyncio
async def test_baidu_access_token_missing_in_response(monkeypatch):
    monkeypatch.setattr(baidu_channel, "_token_cache", {})
    upstream = Upstream(httpx.Response(200, json={"expires_in": 100}))

    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        with pytest.raises(RelayError) as exc_info:
            await get_baidu_access_token(client, "https://aip.test", "ak|sk")

    assert exc_info.value.code == "baidu_access_token_failed"


@pytest.mark.asyncio
async def test_baidu_error_code_in_200_body_raises():
    meta = make_meta(channel_type=ChannelType.BAIDU, api_type=APIType.BAIDU)
    response = httpx.Response(200, json={"error_code": 336003, "error_msg": "prompt is empty"})

    with pytest.raises(RelayError) as exc_info:
        await fetch_baidu_image_response(None, response, meta)

    assert exc_info.value.code == 336003
    assert exc_info.value.message == "prompt is empty"


@pytest.mark.asyncio
async def test_baidu_images_become_b64_json_in_index_order():
    meta = make_meta(channel_type=ChannelType.BAIDU, api_type=APIType.BAIDU)
    response = httpx.Response(200, json={
        "created": 1700000000,
        "data": [{"index": 1, "b64_image": "BBB"}, {"index": 0, "b64_image": "AAA"}],
    })

    rendered = await fetch_baidu_image_response(None, response, meta)

    assert json.loads(rendered.body) == {"created": 1700000000, "data": [{"b64_json": "AAA"}, {"b64_json": "BBB"}]}


@pytest.mark.parametrize(
    "body, code, message",
    [
        ({"error": {"message": "bad size", "code": "invalid_size"}}, "invalid_size", "bad size"),
        ({"code": "InvalidApiKey", "message": "key invalid"}, "InvalidApiKey", "key invalid"),
        ({"error_code": 110, "error_msg": "token invalid"}, 110, "token invalid"),
    ],
)
def test_upstream_error_shapes(body, code, message):
    error = relay_error_from_upstream(httpx.Response(400, json=body), "test")

    assert error.code == code
    assert error.message == message
    assert error.status_code == 400


def test_upstream_error_plain_text():
    error = relay_error_from_upstream(httpx.Response(502, text="Bad Gateway"), "test")

    assert error.message == "Bad Gateway"
    assert error.code == "upstream_http_502"
    assert error.status_code == 502


def test_forward_response_drops_hop_by_hop_headers():
    upstream = httpx.Response(200, content=b'{"data":[]}', headers={"Content-Type": "application/json", "Connection": "keep-alive", "X-Request-Id": "r1"})

    response = forward_response(upstream)

    assert response.body == b'{"data":[]}'
    assert response.headers["x-request-id"] == "r1"
    assert "connection" not in response.headers
    assert response.headers["content-length"] == str(len(b'{"data":[]}'))
