import inspect
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Generic, List, Mapping, Optional, Protocol

from clickhouse_stream.driver.exceptions import DatabaseError, StreamClosedError
from clickhouse_stream.driver.stream import T, parse_summary, query_id_header, subscriber_callbacks


class AsyncRowSource(Protocol):
    headers: Mapping[str, str]
    rows: AsyncIterator[Any]

    async def aclose(self): ...


async def _notify(callback: Optional[Callable], *args):
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class AsyncRowStream(Generic[T]):
    """
    Asyncio counterpart of RowStream.  Callbacks may be plain functions or coroutine functions
    """

    def __init__(self, opener: Callable[[], Awaitable[AsyncRowSource]]):
        self._opener = opener
        self._source: Optional[AsyncRowSource] = None
        self._consumed = False
        self.summary: Dict[str, Any] = {}
        self.query_id: Optional[str] = None

    def _claim(self):
        if self._consumed:
            raise StreamClosedError('Row stream has already been consumed')
        self._consumed = True

    async def _open(self) -> AsyncIterator[T]:
        self._source = await self._opener()
        headers = self._source.headers
        self.query_id = headers.get(query_id_header)
        self.summary = parse_summary(headers)
        return self._source.rows

    async def subscribe(self,
                        on_next: Optional[Callable[[T], Any]] = None,
                        on_error: Optional[Callable[[Exception], Any]] = None,
                        on_complete: Optional[Callable[[], Any]] = None):
        """
        Run the request and deliver its results to the callbacks.  Returns after the terminal notification
        """
        on_next, on_error, on_complete = subscriber_callbacks(on_next, on_error, on_complete)
        self._claim()
        error = None
        try:
            try:
                rows = await self._open()
            except DatabaseError as ex:
                error = ex
            while error is None:
                try:
                    row = await rows.__anext__()
                except StopAsyncIteration:
                    break
                except DatabaseError as ex:
                    error = ex
                    break
                await _notify(on_next, row)
        finally:
            await self.aclose()
        if error is not None:
            if on_error is None:
                raise error
            await _notify(on_error, error)
        else:
            await _notify(on_complete)

    async def collect(self) -> List[T]:
        result: List[T] = []
        errors: List[Exception] = []
        await self.subscribe(result.append, errors.append)
        if errors:
            raise errors[0]
        return result

    async def __aiter__(self) -> AsyncIterator[T]:
        self._claim()
        try:
            rows = await self._open()
            async for row in rows:
                yield row
        finally:
            await self.aclose()

    async def aclose(self):
        source = self._source
        self._source = None
        if source is not None:
            await source.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
