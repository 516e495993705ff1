import logging
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, Iterable, Iterator, Optional, Sequence, Tuple

from clickhouse_stream.driver.errhandler import BodyText, extract_exception_message
from clickhouse_stream.driver.exceptions import DecodeError, InvalidArgument, StreamFailureError, UnsupportedFormat
from clickhouse_stream.driver.options import RowFormat
from clickhouse_stream.json_impl import to_json

logger = logging.getLogger(__name__)


def json_each_row(records: Sequence[Any]) -> bytes:
    """
    One JSON object per line, newline joined
    """
    return b'\n'.join(to_json(record) for record in records)


# Result row format -> (insert format, serializer)
insert_formats: Dict[str, Tuple[str, Callable[[Sequence[Any]], bytes]]] = {
    RowFormat.JSON.value: (RowFormat.JSON_EACH_ROW.value, json_each_row),
}


def insert_format(row_format: str) -> Tuple[str, Callable[[Sequence[Any]], bytes]]:
    try:
        return insert_formats[row_format]
    except KeyError:
        raise UnsupportedFormat(f'Unsupported data format {row_format}.  Only JSON is supported for inserts') from None


def validate_insert(table: str, records: Sequence[Any]):
    if not isinstance(table, str) or not table.strip():
        raise InvalidArgument('table name required')
    if not isinstance(records, (list, tuple)):
        raise InvalidArgument('records must be a list or tuple')
    if not records:
        raise InvalidArgument('records required')


def insert_response(chunks: Iterable[bytes],
                    encoding: Optional[str] = None,
                    exception_tag: Optional[str] = None,
                    log: Optional[logging.Logger] = None) -> Iterator[Any]:
    """
    Read the response to an insert.  ClickHouse answers a successful insert with an empty body, so this never
    yields a row.  Anything else in the body is either a mid-stream exception or logged and ignored
    """
    body = BodyText(encoding)
    try:
        for chunk in chunks:
            body.add(chunk)
    except DecodeError as ex:
        (log or logger).error(str(ex))
        raise
    _check_insert_body(body.text(), exception_tag, log)
    yield from ()


async def insert_response_async(chunks: AsyncIterable[bytes],
                                encoding: Optional[str] = None,
                                exception_tag: Optional[str] = None,
                                log: Optional[logging.Logger] = None) -> AsyncIterator[Any]:
    body = BodyText(encoding)
    try:
        async for chunk in chunks:
            body.add(chunk)
    except DecodeError as ex:
        (log or logger).error(str(ex))
        raise
    _check_insert_body(body.text(), exception_tag, log)
    for row in ():
        yield row


def _check_insert_body(text: str, exception_tag: Optional[str], log: Optional[logging.Logger]):
    text = text.strip()
    if not text:
        return
    message = extract_exception_message(text, exception_tag)
    if message:
        (log or logger).error(message)
        raise StreamFailureError(message)
    logger.warning('Ignoring unexpected insert response: %s', text[:240])
