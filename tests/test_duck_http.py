import httpx
import pytest

from duck import duck_http
from duck.duck_datatypes import DuckRuntimeError, ErrorKind
from duck.duck_runtime import ScriptRunner


@pytest.fixture
def mock_transport(monkeypatch):
    """Routes every AsyncClient through an httpx.MockTransport driven by `handler`."""
    calls = []
    state = {'handler': None}

    def handler(request: httpx.Request):
        calls.append(request)
        return state['handler'](request)

    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(duck_http.httpx, "AsyncClient", client_factory)

    def install(fn):
        state['handler'] = fn
        return calls

    return install


@pytest.mark.asyncio
async def test_get_returns_body_text(mock_transport):
    calls = mock_transport(lambda request: httpx.Response(200, text="quack"))
    body = await duck_http.http_get("http://pond.test/hello")
    assert body == "quack"
    assert calls[0].method == "GET"
    assert str(calls[0].url) == "http://pond.test/hello"


@pytest.mark.asyncio
async def test_post_sends_text_body(mock_transport):
    calls = mock_transport(lambda request: httpx.Response(201, text="created"))
    body = await duck_http.http_post("http://pond.test/ducks", '{"name": "duck"}')
    assert body == "created"
    assert calls[0].method == "POST"
    assert calls[0].content == b'{"name": "duck"}'
    assert calls[0].headers["content-type"].startswith("text/plain")


@pytest.mark.asyncio
async def test_non_2xx_is_a_network_error_without_retry(mock_transport):
    calls = mock_transport(lambda request: httpx.Response(404, text="no such pond"))
    with pytest.raises(DuckRuntimeError) as exc:
        await duck_http.http_get("http://pond.test/missing", {'backoff': 0})
    assert exc.value.kind is ErrorKind.NETWORK_ERROR
    assert "HTTP 404" in exc.value.message
    assert "no such pond" in exc.value.message
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_transport_failures_are_retried_then_raised(mock_transport):
    def fail(request):
        raise httpx.ConnectError("pond unreachable", request=request)

    calls = mock_transport(fail)
    with pytest.raises(DuckRuntimeError) as exc:
        await duck_http.http_get("http://pond.test/", {'retries': 2, 'backoff': 0})
    assert exc.value.kind is ErrorKind.NETWORK_ERROR
    assert "pond unreachable" in exc.value.message
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_recovers_after_a_transient_failure(mock_transport):
    attempts = {'n': 0}

    def flaky(request):
        attempts['n'] += 1
        if attempts['n'] == 1:
            raise httpx.ReadTimeout("slow pond", request=request)
        return httpx.Response(200, text="ok")

    mock_transport(flaky)
    assert await duck_http.http_get("http://pond.test/", {'backoff': 0}) == "ok"
    assert attempts['n'] == 2


@pytest.mark.asyncio
async def test_http_builtins_from_a_script(mock_transport):
    mock_transport(lambda request: httpx.Response(200, json={"ducks": 3}))
    src = """
    quack [let reply be json-parse(http-get("http://pond.test/count"))]
    quack [print reply.ducks]
    """
    res = await ScriptRunner().handle_script(src)
    assert res.status == 'success', res.error_message
    assert [e['message'] for e in res.side_effects if e['topics'] == ['stdout']] == ["3"]


@pytest.mark.asyncio
async def test_http_errors_are_rescuable_in_scripts(mock_transport):
    mock_transport(lambda request: httpx.Response(500, text="pond on fire"))
    src = """
    quack [attempt
      quack [http-post("http://pond.test/", "hello")]
    rescue [e]
      quack [print e]
    ]
    """
    res = await ScriptRunner().handle_script(src)
    assert res.status == 'success', res.error_message
    out = [e['message'] for e in res.side_effects if e['topics'] == ['stdout']]
    assert out == ["HTTP 500 for http://pond.test/: pond on fire"]


@pytest.mark.asyncio
async def test_malformed_url_is_a_network_error(mock_transport):
    calls = mock_transport(lambda request: httpx.Response(200, text="unreachable"))
    with pytest.raises(DuckRuntimeError) as exc:
        await duck_http.http_get("http://exa mple.com:abc/", {'backoff': 0})
    assert exc.value.kind is ErrorKind.NETWORK_ERROR
    assert calls == []


@pytest.mark.asyncio
async def test_malformed_url_is_rescuable_in_scripts(mock_transport):
    mock_transport(lambda request: httpx.Response(200, text="unreachable"))
    src = """
    quack [attempt quack [http-get("http://exa mple.com:abc/")] rescue [e] quack [print "rescued"]]
    quack [print "after"]
    """
    res = await ScriptRunner().handle_script(src)
    assert res.status == 'success', res.error_message
    assert [e['message'] for e in res.side_effects if e['topics'] == ['stdout']] == ["rescued", "after"]
