import json

import pytest

from plu_chat.infrastructure.storage.json_store import JsonChatPersistence


class SettingsStub:
    webhook_url = "https://hooks.example.test/webhook/plu/chat"
    webhook_api_key = None
    http_timeout = 1.0
    poll_window_ms = 3000
    poll_interval_ms = 350
    poll_backoff = 1.0
    persistence_backend = "json"
    storage_root = ".storage"
    supabase_url = "https://project.supabase.test"
    supabase_key = "anon-key-1234567890"
    trace_dir = None
    locale = "fr"


class FakeResponse:
    def __init__(self, status_code=200, headers=None, body=b"", chunks=None):
        self.status_code = status_code
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self._body = body.encode("utf-8") if isinstance(body, str) else body
        self._chunks = chunks

    def iter_bytes(self):
        if self._chunks is not None:
            for chunk in self._chunks:
                yield chunk
        else:
            yield self._body

    def read(self):
        return self._body

    @property
    def content(self):
        return self._body

    @property
    def text(self):
        return self._body.decode("utf-8")

    def json(self):
        return json.loads(self.text)


def json_response(payload, status_code=200):
    return FakeResponse(status_code, {"Content-Type": "application/json"}, json.dumps(payload))


class StreamContext:
    def __init__(self, response):
        self._response = response

    def __enter__(self):
        return self._response

    def __exit__(self, *args):
        return False


class FakeHttp:
    """替换 httpx.Client：每次请求都交给 handler(call) 生成响应，并记录调用。"""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def _dispatch(self, method, url, kw):
        call = {"method": method, "url": url}
        call.update(kw)
        self.calls.append(call)
        result = self.handler(call)
        if isinstance(result, Exception):
            raise result
        return result

    def client_class(self):
        fake = self

        class Client:
            def __init__(self, *a, **kw):
                pass

            def __enter__(self):
                return self

            def __exit__(self, *a):
                return False

            def stream(self, method, url, **kw):
                return StreamContext(fake._dispatch(method, url, kw))

            def request(self, method, url, **kw):
                return fake._dispatch(method, url, kw)

        return Client


@pytest.fixture
def settings_stub():
    return SettingsStub()


@pytest.fixture
def install_http(monkeypatch):
    def install(handler):
        fake = FakeHttp(handler)
        monkeypatch.setattr("httpx.Client", fake.client_class())
        return fake

    return install


@pytest.fixture
def persistence(tmp_path):
    return JsonChatPersistence(root=tmp_path / ".storage")
