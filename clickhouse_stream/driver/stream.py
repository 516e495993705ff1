import json
import logging
from typing import Any, Callable, Dict, Generic, Iterator, List, Mapping, Optional, Protocol, TypeVar, Union

from clickhouse_stream.driver.exceptions import DatabaseError, StreamClosedError

logger = logging.getLogger(__name__)

T = TypeVar('T')

summary_header = 'X-ClickHouse-Summary'
query_id_header = 'X-ClickHouse-Query-Id'


class Subscriber(Protocol[T]):
    def on_next(self, row: T): ...

    def on_error(self, error: Exception): ...

    def on_complete(self): ...


class RowSource(Protocol):
    """
    An open response: decoded rows plus the response headers
    """
    headers: Mapping[str, str]
    rows: Iterator[Any]

    def close(self): ...


def parse_summary(headers: Mapping[str, str]) -> Dict[str, Any]:
    summary = {}
    if summary_header in headers:
        try:
            summary = json.loads(headers[summary_header])
        except json.JSONDecodeError:
            logger.debug('Unparseable query summary header %s', headers[summary_header])
    return summary


def subscriber_callbacks(on_next, on_error, on_complete):
    """
    Accept either a Subscriber style object as the first argument or up to three callables
    """
    if on_next is not None and not callable(on_next):
        subscriber = on_next
        return (getattr(subscriber, 'on_next', None),
                getattr(subscriber, 'on_error', None),
                getattr(subscriber, 'on_complete', None))
    return on_next, on_error, on_complete


class RowStream(Generic[T]):
    """
    The rows of one query or insert call.  Nothing is sent to the server until the stream is consumed, either
    by subscribing (push), by collect(), or by iterating (pull).  A stream can only be consumed once.

    Push delivery calls on_next once per row in server order, then exactly one of on_complete (clean end of the
    response) or on_error (server, transport or decoding failure).  Nothing is delivered after on_error.
    """

    def __init__(self, opener: Callable[[], RowSource]):
        self._opener = opener
        self._source: Optional[RowSource] = None
        self._consumed = False
        self.summary: Dict[str, Any] = {}
        self.query_id: Optional[str] = None

    def _claim(self):
        if self._consumed:
            raise StreamClosedError('Row stream has already been consumed')
        self._consumed = True

    def _open(self) -> Iterator[T]:
        self._source = self._opener()
        headers = self._source.headers
        self.query_id = headers.get(query_id_header)
        self.summary = parse_summary(headers)
        return self._source.rows

    def subscribe(self,
                  on_next: Union[Callable[[T], Any], Subscriber[T], None] = None,
                  on_error: Optional[Callable[[Exception], Any]] = None,
                  on_complete: Optional[Callable[[], Any]] = None):
        """
        Run the request and deliver its results to the callbacks.  Returns after the terminal notification
        :param on_next: Called with each row, or a Subscriber object with on_next/on_error/on_complete methods
        :param on_error: Called with the error that terminated the stream.  If not set the error is raised
        :param on_complete: Called once after the last row
        """
        on_next, on_error, on_complete = subscriber_callbacks(on_next, on_error, on_complete)
        self._claim()
        error = None
        try:
            try:
                rows = self._open()
            except DatabaseError as ex:
                error = ex
            while error is None:
                try:
                    row = next(rows)
                except StopIteration:
                    break
                except DatabaseError as ex:
                    error = ex
                    break
                if on_next is not None:
                    on_next(row)
        finally:
            self.close()
        if error is not None:
            if on_error is None:
                raise error
            on_error(error)
        elif on_complete is not None:
            on_complete()

    def collect(self) -> List[T]:
        """
        Run the request and return all rows in order, or raise the error that terminated the stream
        """
        result: List[T] = []
        errors: List[Exception] = []
        self.subscribe(result.append, errors.append)
        if errors:
            raise errors[0]
        return result

    def __iter__(self) -> Iterator[T]:
        self._claim()
        try:
            yield from self._open()
        finally:
            self.close()

    def close(self):
        source = self._source
        self._source = None
        if source is not None:
            source.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
