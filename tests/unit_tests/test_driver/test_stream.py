from unittest.mock import Mock

import pytest

from clickhouse_stream.driver.asyncstream import AsyncRowStream
from clickhouse_stream.driver.exceptions import DecodeError, ServerError, StreamClosedError
from clickhouse_stream.driver.stream import RowStream, parse_summary

HEADERS = {
    'X-ClickHouse-Query-Id': 'b1f6c1ce-7a5e-4b0e-9f55-2a1d0f4c9a10',
    'X-ClickHouse-Summary': '{"read_rows":"3","read_bytes":"24","written_rows":"0"}'
}


class FakeSource:
    def __init__(self, rows, headers=None):
        self.headers = headers or HEADERS
        self.rows = iter(rows)
        self.closed = False

    def close(self):
        self.closed = True


def failing_rows(rows, error):
    yield from rows
    raise error


class Recorder:
    def __init__(self):
        self.events = []

    def on_next(self, row):
        self.events.append(('next', row))

    def on_error(self, error):
        self.events.append(('error', error))

    def on_complete(self):
        self.events.append(('complete',))


def test_subscribe_completes():
    source = FakeSource([1, 2, 3])
    stream = RowStream(lambda: source)
    recorder = Recorder()
    stream.subscribe(recorder)
    assert recorder.events == [('next', 1), ('next', 2), ('next', 3), ('complete',)]
    assert source.closed
    assert stream.query_id == HEADERS['X-ClickHouse-Query-Id']
    assert stream.summary == {'read_rows': '3', 'read_bytes': '24', 'written_rows': '0'}


def test_subscribe_with_callables():
    rows = []
    done = Mock()
    RowStream(lambda: FakeSource(['a', 'b'])).subscribe(rows.append, on_complete=done)
    assert rows == ['a', 'b']
    done.assert_called_once_with()


def test_error_after_rows_is_terminal():
    error = DecodeError('Response stream ended before the JSON result was complete')
    source = FakeSource(failing_rows([1, 2], error))
    recorder = Recorder()
    RowStream(lambda: source).subscribe(recorder)
    assert recorder.events == [('next', 1), ('next', 2), ('error', error)]
    assert source.closed


def test_open_failure_goes_to_on_error():
    error = ServerError('Code: 60. DB::Exception: Unknown table', 404, '60')

    def opener():
        raise error

    recorder = Recorder()
    RowStream(opener).subscribe(recorder)
    assert recorder.events == [('error', error)]


def test_error_raised_without_on_error():
    error = ServerError('Code: 62. DB::Exception: Syntax error', 400, '62')
    stream = RowStream(lambda: FakeSource(failing_rows([], error)))
    with pytest.raises(ServerError):
        stream.subscribe(Mock())


def test_callback_exceptions_propagate():
    source = FakeSource([1, 2])
    on_error = Mock()

    def on_next(_row):
        raise ValueError('consumer failure')

    with pytest.raises(ValueError):
        RowStream(lambda: source).subscribe(on_next, on_error)
    on_error.assert_not_called()
    assert source.closed


def test_collect_matches_subscribe():
    rows = [{'x': i} for i in range(10)]
    pushed = []
    RowStream(lambda: FakeSource(rows)).subscribe(pushed.append)
    assert RowStream(lambda: FakeSource(rows)).collect() == pushed == rows


def test_collect_raises():
    error = DecodeError('Malformed JSON after row 1')
    with pytest.raises(DecodeError):
        RowStream(lambda: FakeSource(failing_rows([1], error))).collect()


def test_request_is_lazy():
    opener = Mock(return_value=FakeSource([]))
    stream = RowStream(opener)
    opener.assert_not_called()
    assert not stream.collect()
    opener.assert_called_once()


def test_single_use():
    stream = RowStream(lambda: FakeSource([1]))
    stream.collect()
    with pytest.raises(StreamClosedError):
        stream.collect()
    with pytest.raises(StreamClosedError):
        list(stream)


def test_iteration_early_exit_closes():
    source = FakeSource([1, 2, 3])
    with RowStream(lambda: source) as stream:
        for row in stream:
            if row == 2:
                break
    assert source.closed


def test_parse_summary():
    assert not parse_summary({})
    assert not parse_summary({'X-ClickHouse-Summary': 'not json'})


class FakeAsyncSource:
    def __init__(self, rows, error=None):
        self.headers = HEADERS
        self.rows = self._rows(rows, error)
        self.closed = False

    @staticmethod
    async def _rows(rows, error):
        for row in rows:
            yield row
        if error:
            raise error

    async def aclose(self):
        self.closed = True


def async_opener(source):
    async def opener():
        return source
    return opener


@pytest.mark.asyncio
async def test_async_subscribe():
    source = FakeAsyncSource([1, 2])
    recorder = Recorder()
    stream = AsyncRowStream(async_opener(source))
    await stream.subscribe(recorder)
    assert recorder.events == [('next', 1), ('next', 2), ('complete',)]
    assert source.closed
    assert stream.summary['read_rows'] == '3'


@pytest.mark.asyncio
async def test_async_coroutine_callbacks():
    rows = []

    async def on_next(row):
        rows.append(row)

    await AsyncRowStream(async_opener(FakeAsyncSource(['a']))).subscribe(on_next)
    assert rows == ['a']


@pytest.mark.asyncio
async def test_async_error():
    error = DecodeError('Response stream closed prematurely')
    recorder = Recorder()
    await AsyncRowStream(async_opener(FakeAsyncSource([1], error))).subscribe(recorder)
    assert recorder.events == [('next', 1), ('error', error)]
    with pytest.raises(DecodeError):
        await AsyncRowStream(async_opener(FakeAsyncSource([1], error))).collect()


@pytest.mark.asyncio
async def test_async_iteration_and_reuse():
    source = FakeAsyncSource([1, 2, 3])
    stream = AsyncRowStream(async_opener(source))
    assert [row async for row in stream] == [1, 2, 3]
    assert source.closed
    with pytest.raises(StreamClosedError):
        await stream.collect()
