from fastapi.testclient import TestClient

from chatrelay.gateway import app as app_module
from chatrelay.gateway.app import app
from chatrelay.gateway.backend import BackendPool, ChatChunk
from chatrelay.gateway.errors import BackendError, ErrorKind


class DummyStream:
    def __init__(self, texts):
        self._texts = iter(texts)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return ChatChunk(next(self._texts))
        except StopIteration:
            raise StopAsyncIteration from None

    async def aclose(self):
        self.closed = True


class DummyBackend:
    def __init__(self, texts=(), reply=None, fail=False):
        self.texts = texts
        self.reply = reply
        self.fail = fail
        self.calls = []

    async def complete_once(self, model, messages):
        self.calls.append(("once", model, messages))
        if self.fail:
            raise BackendError(ErrorKind.UNAVAILABLE, "connection refused")
        return self.reply

    async def complete_stream(self, model, messages):
        self.calls.append(("stream", model, messages))
        if self.fail:
            raise BackendError(ErrorKind.UNAVAILABLE, "connection refused")
        return DummyStream(self.texts)

    async def aclose(self):
        pass


def _install(monkeypatch, backend):
    pool = BackendPool(lambda: backend, size=1)
    monkeypatch.setattr(app_module, "_pool", pool)
    monkeypatch.setattr(app_module._relay, "pool", pool)
    return backend


def test_chat_non_stream(monkeypatch):
    backend = _install(
        monkeypatch,
        DummyBackend(reply={"message": {"role": "assistant", "content": "hello there"}}),
    )
    client = TestClient(app)

    r = client.post("/chat", json={"model": "llama3", "prompt": "hi", "stream": False})

    assert r.status_code == 200
    assert r.json() == {"response": "hello there"}
    assert backend.calls == [("once", "llama3", [{"role": "user", "content": "hi"}])]


def test_chat_streams_by_default(monkeypatch):
    _install(monkeypatch, DummyBackend(texts=["he", "llo"]))
    client = TestClient(app)

    r = client.post("/chat", json={"model": "llama3", "prompt": "hi"})

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["cache-control"] == "no-cache"
    assert r.text == 'data: {"content": "he"}\n\ndata: {"content": "llo"}\n\n'


def test_chat_backend_failure_non_stream(monkeypatch):
    _install(monkeypatch, DummyBackend(fail=True))
    client = TestClient(app)

    r = client.post("/chat", json={"model": "llama3", "prompt": "hi", "stream": False})

    assert r.status_code == 200
    assert r.json() == {"response": "Error occurred while processing the chat."}
    assert "connection refused" not in r.text


def test_chat_backend_failure_stream(monkeypatch):
    _install(monkeypatch, DummyBackend(fail=True))
    client = TestClient(app)

    r = client.post("/chat", json={"model": "llama3", "prompt": "hi", "stream": True})

    assert r.status_code == 200
    assert r.text == (
        'event: error\ndata: {"error": "Error occurred while streaming the chat."}\n\n'
    )


def test_chat_missing_field_is_422(monkeypatch):
    backend = _install(monkeypatch, DummyBackend(texts=["x"]))
    client = TestClient(app)

    r = client.post("/chat", json={"model": "llama3"})

    assert r.status_code == 422
    err = r.json()["error"]
    assert err["type"] == "invalid_request"
    assert "prompt" in err["message"]
    assert backend.calls == []


def test_chat_empty_model_is_422(monkeypatch):
    _install(monkeypatch, DummyBackend(texts=["x"]))
    client = TestClient(app)

    r = client.post("/chat", json={"model": "", "prompt": "hi"})

    assert r.status_code == 422


def test_chat_invalid_json_is_400(monkeypatch):
    backend = _install(monkeypatch, DummyBackend(texts=["x"]))
    client = TestClient(app)

    r = client.post(
        "/chat", content=b"{not json", headers={"content-type": "application/json"}
    )

    assert r.status_code == 400
    assert r.json()["error"]["type"] == "invalid_json"
    assert backend.calls == []


def test_health_reports_pool(monkeypatch):
    _install(monkeypatch, DummyBackend())
    client = TestClient(app)

    body = client.get("/v1/health").json()

    assert body["status"] == "ok"
    assert body["backend"] == {"pool_size": 1, "idle": 1}


def test_metrics_disabled(monkeypatch):
    monkeypatch.setattr(app_module._cfg, "enable_metrics", False)
    client = TestClient(app)

    r = client.get("/v1/metrics")

    assert r.status_code == 404
    assert r.json()["error"]["message"] == "Metrics disabled"


def test_metrics_after_requests(monkeypatch):
    _install(monkeypatch, DummyBackend(texts=["a", "b"], reply={"message": {"content": "ab"}}))
    monkeypatch.setattr(app_module._cfg, "enable_metrics", True)
    client = TestClient(app)

    client.post("/chat", json={"model": "llama3", "prompt": "hi"})
    client.post("/chat", json={"model": "llama3", "prompt": "hi", "stream": False})
    summary = client.get("/v1/metrics").json()

    assert summary["rolling"]["count"] >= 2
    assert summary["requests_by_outcome"]["completed"]["streaming_requests"] >= 1


def test_config_endpoint_roundtrip(tmp_path, monkeypatch):
    monkeypatch.setenv("CHAT_RELAY_CONFIG_FILE", str(tmp_path / "relay.toml"))
    client = TestClient(app)

    current = client.get("/v1/config").json()
    assert current["runtime"]["queue_capacity"] == app_module._cfg.queue_capacity
    assert current["precedence"][0] == "environment"

    r = client.put("/v1/config", json={"queue_capacity": 64})
    assert r.status_code == 200
    assert r.json()["file"]["queue_capacity"] == 64
    assert r.json()["requires_restart"] is True

    r = client.put("/v1/config", json={"retries": 2})
    assert r.status_code == 400
