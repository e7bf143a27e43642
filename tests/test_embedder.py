import pytest
import requests

from semindex.embedder import EmbeddingClient, embeddings_url, resolve_connection
from semindex.errors import (
    ConfigError,
    DimensionMismatchError,
    EmbeddingCancelledError,
    EmbeddingCountMismatchError,
    EmbeddingHTTPError,
    EmbeddingResponseError,
    EmbeddingTimeoutError,
)
from semindex.settings import EmbeddingSettings


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    """Records posts; answers with one vector per input unless told otherwise."""

    def __init__(self, dims=3, drop=0, response=None, exc=None, dims_by_call=None):
        self.dims = dims
        self.drop = drop
        self.response = response
        self.exc = exc
        self.dims_by_call = dims_by_call or {}
        self.posts = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.posts.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        if self.response is not None:
            return self.response
        dims = self.dims_by_call.get(len(self.posts), self.dims)
        inputs = json["input"]
        rows = [{"embedding": [float(len(t))] * dims} for t in inputs]
        if self.drop:
            rows = rows[: len(rows) - self.drop]
        return FakeResponse(payload={"data": rows})


def _client(session, base_url="http://embed.test/v1", **kw):
    return EmbeddingClient(base_url=base_url, model="m1", session=session, **kw)


def test_batches_preserve_order():
    sess = FakeSession()
    texts = ["x" * (i + 1) for i in range(20)]
    vecs = _client(sess).embed(texts)
    assert len(sess.posts) == 2
    assert [len(p["json"]["input"]) for p in sess.posts] == [16, 4]
    assert [v[0] for v in vecs] == [float(i + 1) for i in range(20)]


def test_progress_callback_per_batch():
    seen = []
    _client(FakeSession(), batch_size=4).embed(["a"] * 10, on_batch=lambda *a: seen.append(a))
    assert seen == [(1, 3, 4), (2, 3, 8), (3, 3, 10)]


def test_short_response_is_a_count_mismatch():
    with pytest.raises(EmbeddingCountMismatchError, match="count mismatch"):
        _client(FakeSession(drop=1)).embed(["t"] * 16)


def test_dims_must_agree_across_batches():
    sess = FakeSession(dims_by_call={2: 4})
    with pytest.raises(DimensionMismatchError):
        _client(sess, batch_size=2).embed(["a", "b", "c"])


def test_expect_dims_pins_existing_store():
    client = _client(FakeSession(dims=3))
    client.expect_dims(5)
    with pytest.raises(DimensionMismatchError):
        client.embed(["a"])


def test_timeout_is_its_own_retryable_error():
    client = _client(FakeSession(exc=requests.Timeout("slow")), timeout_sec=2)
    with pytest.raises(EmbeddingTimeoutError) as ei:
        client.embed(["a"])
    assert ei.value.retryable is True


def test_http_error_carries_status_and_truncated_body():
    resp = FakeResponse(status_code=500, text="boom " * 200)
    with pytest.raises(EmbeddingHTTPError) as ei:
        _client(FakeSession(response=resp)).embed(["a"])
    assert ei.value.status == 500
    assert len(ei.value.body) == 300
    assert "HTTP 500" in str(ei.value)


def test_empty_data_is_a_response_error():
    with pytest.raises(EmbeddingResponseError):
        _client(FakeSession(response=FakeResponse(payload={"data": []}))).embed(["a"])


def test_input_type_only_for_voyage():
    sess = FakeSession()
    _client(sess, base_url="https://api.voyageai.com").embed_query("hello")
    post = sess.posts[0]
    assert post["url"] == "https://api.voyageai.com/v1/embeddings"
    assert post["json"]["input_type"] == "query"

    sess = FakeSession()
    _client(sess).embed_query("hello")
    assert "input_type" not in sess.posts[0]["json"]
    assert sess.posts[0]["url"] == "http://embed.test/v1/embeddings"


def test_bearer_header_and_timeout_are_sent():
    sess = FakeSession()
    _client(sess, api_key="sk-1", timeout_sec=7).embed(["a"])
    assert sess.posts[0]["headers"]["Authorization"] == "Bearer sk-1"
    assert sess.posts[0]["timeout"] == 7.0


def test_cancel_stops_before_any_request():
    sess = FakeSession()
    client = _client(sess)
    client.cancel()
    with pytest.raises(EmbeddingCancelledError):
        client.embed(["a"])
    assert sess.posts == []


def test_embeddings_url_shapes():
    assert embeddings_url("http://h/v1/") == "http://h/v1/embeddings"
    assert embeddings_url("http://h/v1/embeddings") == "http://h/v1/embeddings"
    with pytest.raises(ConfigError):
        embeddings_url("  ")


def test_shared_connection_comes_from_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_BASE_URL", "http://env.test/v1")
    monkeypatch.setenv("SEMINDEX_EMBED_API_KEY", "k-env")
    assert resolve_connection(EmbeddingSettings()) == ("http://env.test/v1", "k-env")


def test_shared_connection_without_env_is_a_config_error():
    with pytest.raises(ConfigError):
        resolve_connection(EmbeddingSettings())


def test_custom_provider_needs_base_url():
    with pytest.raises(ConfigError):
        resolve_connection(EmbeddingSettings(provider="custom"))
    got = resolve_connection(EmbeddingSettings(provider="custom", base_url="http://c/v1", api_key="k"))
    assert got == ("http://c/v1", "k")
