import asyncio
import json
import zlib
from base64 import b64encode

import aiohttp
import brotli
import pytest

from clickhouse_stream.driver.asyncclient import AsyncHttpClient
from clickhouse_stream.driver.exceptions import (
    DecodeError,
    InvalidArgument,
    ServerError,
    StreamFailureError,
    TransportError,
)

# pylint: disable=protected-access

ROWS = [{'n': i} for i in range(5)]
BODY = json.dumps({'meta': [{'name': 'n', 'type': 'UInt64'}], 'data': ROWS, 'rows': 5}).encode()


class MockContent:
    """Mock aiohttp StreamReader content."""

    def __init__(self, chunks, error=None):
        self.chunks = list(chunks)
        self.error = error

    async def read(self, n=-1):  # pylint: disable=unused-argument
        if self.chunks:
            return self.chunks.pop(0)
        if self.error:
            raise self.error
        return b''


class MockResponse:
    """Mock aiohttp ClientResponse."""

    def __init__(self, chunks=(), status=200, headers=None, error=None):
        self.content = MockContent(chunks, error)
        self.status = status
        self.headers = headers or {}
        self.released = False
        self.closed = False

    def release(self):
        self.released = True

    def close(self):
        self.closed = True

    async def read(self):
        return b''.join(self.content.chunks)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        self.release()


class MockSession:
    def __init__(self, *responses, error=None):
        self.responses = list(responses)
        self.error = error
        self.calls = []
        self.closed = False

    async def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        self.calls.append(('GET', url, kwargs))
        if self.error:
            raise self.error
        return self.responses.pop(0)

    async def close(self):
        self.closed = True


def make_client(session, **options):
    client = AsyncHttpClient(**options)
    client._session = session
    return client


@pytest.mark.asyncio
async def test_query_collect():
    response = MockResponse([BODY[:17], BODY[17:40], BODY[40:]])
    session = MockSession(response)
    client = make_client(session, username='reader', password='pw')
    assert await client.query_collect('SELECT number AS n FROM numbers({count:UInt8})', {'count': 5}) == ROWS
    method, url, kwargs = session.calls[0]
    assert method == 'POST'
    assert url == 'http://localhost:8123/'
    assert kwargs['params']['query'].endswith(' FORMAT JSON')
    assert kwargs['params']['param_count'] == '5'
    assert 'auth' not in kwargs
    assert kwargs['headers']['Authorization'] == 'Basic ' + b64encode(b'reader:pw').decode()
    assert response.released


@pytest.mark.asyncio
async def test_query_subscribe_and_iterate():
    client = make_client(MockSession(MockResponse([BODY]), MockResponse([BODY])))
    rows, done = [], []
    await client.query('SELECT 1').subscribe(rows.append, on_complete=lambda: done.append(True))
    assert rows == ROWS
    assert done == [True]
    assert [row async for row in client.query('SELECT 1')] == ROWS


@pytest.mark.asyncio
async def test_lazy_request_and_validation():
    session = MockSession()
    client = make_client(session)
    client.query('SELECT 1')
    assert not session.calls
    with pytest.raises(InvalidArgument):
        client.query('')
    with pytest.raises(InvalidArgument):
        client.insert('', [{'a': 1}])


@pytest.mark.asyncio
async def test_compressed_response():
    response = MockResponse([zlib.compress(BODY)], headers={'Content-Encoding': 'deflate'})
    assert await make_client(MockSession(response), compression='deflate').query_collect('SELECT 1') == ROWS

    compressed = brotli.compress(BODY)
    response = MockResponse([compressed[:5], compressed[5:]], headers={'Content-Encoding': 'br'})
    assert await make_client(MockSession(response), compression='br').query_collect('SELECT 1') == ROWS


@pytest.mark.asyncio
async def test_server_error():
    response = MockResponse([b'Code: 62. DB::Exception: Syntax error\n'], 400, {'X-ClickHouse-Exception-Code': '62'})
    errors = []
    await make_client(MockSession(response)).query('SELEC 1').subscribe(lambda row: None, errors.append)
    assert isinstance(errors[0], ServerError)
    assert errors[0].code == '62'
    assert errors[0].message == 'Code: 62. DB::Exception: Syntax error'
    assert response.released


@pytest.mark.asyncio
async def test_mid_stream_exception():
    body = b'{"data":[{"n":0},{"n":1},Code: 395. DB::Exception: Value passed to \'throwIf\' function is non-zero'
    rows = []
    with pytest.raises(StreamFailureError, match='Code: 395'):
        async for row in make_client(MockSession(MockResponse([body[:20], body[20:]]))).query('SELECT 1'):
            rows.append(row)
    assert rows == ROWS[:2]


@pytest.mark.asyncio
async def test_connection_lost_mid_stream():
    response = MockResponse([BODY[:30]], error=aiohttp.ClientPayloadError('Response payload is not completed'))
    with pytest.raises(DecodeError):
        await make_client(MockSession(response)).query_collect('SELECT 1')
    assert response.closed


@pytest.mark.asyncio
async def test_transport_error():
    failure = aiohttp.ClientConnectionError('Connection refused')
    with pytest.raises(TransportError) as excinfo:
        await make_client(MockSession(error=failure)).query_collect('SELECT 1')
    assert excinfo.value.original is failure


@pytest.mark.asyncio
async def test_insert_await():
    session = MockSession(MockResponse())
    await make_client(session).insert_await('events', [{'id': 1}, {'id': 2}])
    _, _, kwargs = session.calls[0]
    assert kwargs['params']['query'] == 'INSERT INTO events FORMAT JSONEachRow'
    assert kwargs['data'] == b'{"id":1}\n{"id":2}'


@pytest.mark.asyncio
async def test_insert_error():
    response = MockResponse([b'Code: 16. DB::Exception: No such column foo'], 400)
    with pytest.raises(ServerError, match='No such column'):
        await make_client(MockSession(response)).insert_await('events', [{'foo': 1}])


@pytest.mark.asyncio
async def test_command():
    session = MockSession(MockResponse([b'\n']))
    assert await make_client(session).command('DROP TABLE IF EXISTS events') == ''
    assert session.calls[0][2]['params']['query'] == 'DROP TABLE IF EXISTS events'


@pytest.mark.asyncio
@pytest.mark.parametrize('status, body, expected', [
    (200, b'Ok.\n', True),
    (200, b'Ok.', False),
    (200, b'ok.\n', False),
    (503, b'Ok.\n', False),
])
async def test_ping(status, body, expected):
    session = MockSession(MockResponse([body], status))
    assert await make_client(session).ping(timeout=250) is expected
    _, url, kwargs = session.calls[0]
    assert url == 'http://localhost:8123/ping'
    assert kwargs['timeout'].total == 0.25


@pytest.mark.asyncio
async def test_ping_timeout():
    with pytest.raises(TransportError):
        await make_client(MockSession(error=asyncio.TimeoutError())).ping()


@pytest.mark.asyncio
async def test_close():
    session = MockSession()
    async with make_client(session):
        pass
    assert session.closed
