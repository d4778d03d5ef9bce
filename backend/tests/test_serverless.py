import base64
import json

import httpx

from conftest import API_KEY, ORIGIN, UpstreamRecorder, make_settings
from genplay_proxy import serverless


def make_event(method="GET", path="/api/task/t_1", params=None, body=None, headers=None, base64_body=False):
    return {
        "httpMethod": method,
        "path": path,
        "queryStringParameters": params,
        "headers": headers or {},
        "body": body,
        "isBase64Encoded": base64_body,
    }


async def test_preflight_is_answered_without_forwarding():
    recorder = UpstreamRecorder()

    result = await serverless.handle_event(make_event("OPTIONS", "/api/task"), make_settings(), recorder.transport)

    assert result["statusCode"] == 200
    assert result["body"] == ""
    assert result["headers"]["Access-Control-Allow-Origin"] == ORIGIN
    assert recorder.requests == []


async def test_forward_injects_credential_and_rewrites_path():
    recorder = UpstreamRecorder(lambda request: httpx.Response(200, json={"code": 0, "data": {"status": "running"}}))

    result = await serverless.handle_event(
        make_event("POST", "/api/task", body=json.dumps({"type": "image_to_model"}), headers={"Content-Type": "application/json"}),
        make_settings(),
        recorder.transport,
    )

    assert result["statusCode"] == 200
    assert result["isBase64Encoded"] is False
    assert json.loads(result["body"])["data"]["status"] == "running"
    sent = recorder.requests[0]
    assert str(sent.url) == "https://api.tripo3d.ai/v2/openapi/task"
    assert sent.headers["authorization"] == f"Bearer {API_KEY}"
    assert json.loads(sent.content) == {"type": "image_to_model"}


async def test_base64_request_body_is_decoded():
    recorder = UpstreamRecorder()
    raw = b"\x89PNG\r\n\x1a\n"

    await serverless.handle_event(
        make_event("POST", "/api/upload/sts", body=base64.b64encode(raw).decode(), base64_body=True),
        make_settings(),
        recorder.transport,
    )

    assert recorder.requests[0].content == raw


async def test_download_returns_base64_body():
    payload = bytes(range(256))
    recorder = UpstreamRecorder(lambda request: httpx.Response(200, content=payload))

    result = await serverless.handle_event(
        make_event(path="/api/download", params={"url": "cdn.example.com/model.glb"}),
        make_settings(),
        recorder.transport,
    )

    assert result["statusCode"] == 200
    assert result["isBase64Encoded"] is True
    assert base64.b64decode(result["body"]) == payload
    assert result["headers"]["Content-Type"] == "application/octet-stream"
    assert result["headers"]["Content-Length"] == str(len(payload))
    assert str(recorder.requests[0].url) == "https://cdn.example.com/model.glb"


async def test_download_missing_url():
    result = await serverless.handle_event(make_event(path="/api/download"), make_settings(), UpstreamRecorder().transport)

    assert result["statusCode"] == 400
    assert json.loads(result["body"])["error"] == "Bad request"


async def test_missing_credential_returns_configuration_error():
    recorder = UpstreamRecorder()

    result = await serverless.handle_event(make_event(), make_settings(TRIPO_API_KEY=None), recorder.transport)

    assert result["statusCode"] == 500
    assert json.loads(result["body"])["error"] == "Server configuration error"
    assert recorder.requests == []


async def test_health_and_unknown_paths():
    recorder = UpstreamRecorder()
    settings = make_settings()

    health = await serverless.handle_event(make_event(path="/health"), settings, recorder.transport)
    unknown = await serverless.handle_event(make_event(path="/other/thing"), settings, recorder.transport)

    assert health["statusCode"] == 200
    assert json.loads(health["body"])["status"] == "ok"
    assert unknown["statusCode"] == 404
    assert recorder.requests == []


def test_handler_entrypoint(monkeypatch):
    monkeypatch.setattr(serverless, "get_settings", lambda: make_settings())

    result = serverless.handler(make_event("OPTIONS", "/api/task"), context=None)

    assert result["statusCode"] == 200
    assert result["headers"]["Access-Control-Max-Age"] == "86400"


async def test_repeated_headers_are_returned_as_multi_value():
    def responder(request):
        return httpx.Response(200, json={"code": 0}, headers=[("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")])

    result = await serverless.handle_event(make_event(), make_settings(), UpstreamRecorder(responder).transport)

    cookie_header = next(name for name in result["headers"] if name.lower() == "set-cookie")
    assert result["headers"][cookie_header] == "a=1"
    assert result["multiValueHeaders"][cookie_header] == ["a=1", "b=2"]
