import asyncio
import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import FakeUpstreamClient, message_stream

from completionbridge.app import create_app
from completionbridge.errors import TransportError


def _make_app(tmp_path: Path, fake: FakeUpstreamClient, extra_yaml: str = ""):
    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        "upstream_url: http://127.0.0.1:10000/v1/messages\n"
        "upstream_model: claude-test\n"
        "upstream_max_tokens: 256\n" + extra_yaml,
        encoding="utf-8",
    )
    app = create_app(str(config_file), watch_config=False)
    service = app.state.service
    asyncio.run(service.upstream.close())
    service.upstream = fake
    return app


def _sse_payloads(body: bytes) -> list:
    out: list = []
    for frame in body.split(b"\n\n"):
        if not frame:
            continue
        assert frame.startswith(b"data: ")
        data = frame[len(b"data: ") :].decode("utf-8")
        out.append(data if data == "[DONE]" else json.loads(data))
    return out


def test_chat_completions_streams_translated_chunks(tmp_path: Path) -> None:
    fake = FakeUpstreamClient([message_stream("Hel", "lo")])
    app = _make_app(tmp_path, fake)
    with TestClient(app) as client:
        response = client.post(
            "/v1/chat/completions",
            json={"messages": [{"role": "system", "content": "Be terse."}, {"role": "user", "content": "Hi"}]},
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["x-accel-buffering"] == "no"
    assert response.headers["cache-control"] == "no-cache"
    payloads = _sse_payloads(response.content)
    assert [p["choices"][0]["delta"] for p in payloads[:-1]] == [
        {"role": "assistant", "content": ""},
        {"content": "Hel"},
        {"content": "lo"},
        {},
    ]
    assert payloads[-1] == "[DONE]"
    assert fake.requests[0].max_tokens == 256


def test_validation_error_is_reported_before_streaming(tmp_path: Path) -> None:
    fake = FakeUpstreamClient([message_stream("x")])
    app = _make_app(tmp_path, fake)
    with TestClient(app) as client:
        response = client.post("/v1/chat/completions", json={"messages": [{"role": "system", "content": "x"}]})

    assert response.status_code == 400
    assert response.json()["error"]["message"] == "no user/assistant messages"
    assert response.json()["error"]["code"] == "invalid_messages"
    assert fake.requests == []


@pytest.mark.parametrize("content", [b"not json", b"[1, 2]"])
def test_non_object_body_is_rejected(tmp_path: Path, content: bytes) -> None:
    app = _make_app(tmp_path, FakeUpstreamClient())
    with TestClient(app) as client:
        response = client.post(
            "/v1/chat/completions",
            content=content,
            headers={"content-type": "application/json"},
        )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_json"


def test_transport_failure_is_reported_in_band(tmp_path: Path) -> None:
    fake = FakeUpstreamClient(connect_error=TransportError("connection refused"))
    app = _make_app(tmp_path, fake)
    with TestClient(app) as client:
        response = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "Hi"}]})

    assert response.status_code == 200
    payloads = _sse_payloads(response.content)
    assert payloads[0]["error"]["message"] == "upstream connection error: connection refused"
    assert payloads[1:] == ["[DONE]"]


def test_service_api_key_is_enforced(tmp_path: Path) -> None:
    fake = FakeUpstreamClient([message_stream("x")])
    app = _make_app(tmp_path, fake, extra_yaml="service_api_key: secret\n")
    body = {"messages": [{"role": "user", "content": "Hi"}]}
    with TestClient(app) as client:
        denied = client.post("/v1/chat/completions", json=body)
        wrong = client.post("/v1/chat/completions", json=body, headers={"Authorization": "Bearer nope"})
        allowed = client.post("/v1/chat/completions", json=body, headers={"Authorization": "Bearer secret"})

    assert denied.status_code == 401
    assert denied.json()["error"]["code"] == "invalid_api_key"
    assert wrong.status_code == 401
    assert fake.requests and len(fake.requests) == 1
    assert allowed.status_code == 200
    assert _sse_payloads(allowed.content)[-1] == "[DONE]"


def test_healthz_reports_upstream_target(tmp_path: Path) -> None:
    app = _make_app(tmp_path, FakeUpstreamClient())
    with TestClient(app) as client:
        response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["service"] == "completionbridge"
    assert response.json()["model"] == "claude-test"


def test_describe_config_errors_names_each_field() -> None:
    from pydantic import ValidationError as ConfigValidationError

    from completionbridge.app import _describe_config_errors
    from completionbridge.config import BridgeConfig

    with pytest.raises(ConfigValidationError) as excinfo:
        BridgeConfig.model_validate({"upstream_max_tokens": 0, "surprise": True})
    described = _describe_config_errors(excinfo.value)
    assert "upstream_max_tokens" in described
    assert "surprise" in described


def test_config_change_is_loaded_off_the_event_loop(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import threading

    import completionbridge.app as app_module

    fake = FakeUpstreamClient()
    app = _make_app(tmp_path, fake)
    loader_threads: list[threading.Thread] = []
    real_load_config = app_module.load_config

    def recording_load_config(path: str | None = None):
        loader_threads.append(threading.current_thread())
        return real_load_config(path)

    monkeypatch.setattr(app_module, "load_config", recording_load_config)
    (tmp_path / "config.yaml").write_text(
        "upstream_url: http://127.0.0.1:10000/v1/messages\nupstream_model: claude-reloaded\n",
        encoding="utf-8",
    )

    async def _reload() -> bool:
        try:
            return await app.state.config_watcher.reload_if_changed()
        finally:
            await app.state.service.close()

    assert asyncio.run(_reload()) is True
    assert app.state.service.cfg.upstream_model == "claude-reloaded"
    assert fake.retired is True
    assert loader_threads and loader_threads[0] is not threading.main_thread()
