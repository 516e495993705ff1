import codecs
import logging
import re
from typing import Any, AsyncIterable, AsyncIterator, Callable, Iterable, Iterator, Optional

from clickhouse_stream import json_impl
from clickhouse_stream.driver.errhandler import extract_exception_message
from clickhouse_stream.driver.exceptions import DecodeError, StreamFailureError, UnsupportedFormat
from clickhouse_stream.driver.httputil import Inflater
from clickhouse_stream.driver.options import RowFormat

logger = logging.getLogger(__name__)

# Only the end of a failed response is kept while looking for an exception message
MAX_ERROR_TEXT = 64 * 1024

_WS = re.compile(r'[ \t\n\r]*')
_STRUCT = re.compile(r'["\[\]{}]')
_STR_SPECIAL = re.compile(r'["\\]')
_SCALAR_END = re.compile(r'[ \t\n\r,\]}]')

# Envelope parser states
_START = 0
_KEY_OR_END = 1
_KEY_START = 2
_KEY = 3
_COLON = 4
_VALUE = 5
_SKIP = 6
_EXCEPTION = 7
_ELEMENT_OR_END = 8
_ELEMENT_START = 9
_ELEMENT = 10
_ELEMENT_SEP = 11
_OBJECT_SEP = 12
_DONE = 13

_VALUE_STATES = (_KEY, _SKIP, _EXCEPTION, _ELEMENT)


class _ValueScanner:
    """
    Finds the end of one JSON value spread over any number of text chunks without parsing it
    """
    __slots__ = ('depth', 'in_str', 'escape', 'scalar', 'started')

    def __init__(self):
        self.reset()

    def reset(self):
        self.depth = 0
        self.in_str = False
        self.escape = False
        self.scalar = False
        self.started = False

    def scan(self, text: str, pos: int) -> int:
        """
        :return: Index just past the end of the value, or -1 if the value continues in the next chunk
        """
        if not self.started:
            self.started = True
            ch = text[pos]
            if ch in '{[':
                self.depth = 1
                pos += 1
            elif ch == '"':
                self.in_str = True
                pos += 1
            else:
                self.scalar = True
        if self.scalar:
            match = _SCALAR_END.search(text, pos)
            return match.start() if match else -1
        end = len(text)
        while pos < end:
            if self.in_str:
                if self.escape:
                    self.escape = False
                    pos += 1
                    continue
                match = _STR_SPECIAL.search(text, pos)
                if match is None:
                    return -1
                pos = match.end()
                if match.group() == '\\':
                    self.escape = True
                else:
                    self.in_str = False
                    if self.depth == 0:
                        return pos
                continue
            match = _STRUCT.search(text, pos)
            if match is None:
                return -1
            pos = match.end()
            ch = match.group()
            if ch == '"':
                self.in_str = True
            elif ch in '{[':
                self.depth += 1
            else:
                self.depth -= 1
                if self.depth == 0:
                    return pos
        return -1


# pylint: disable=too-many-instance-attributes
class JsonRowsDecoder:
    """
    Incremental decoder for the ClickHouse JSON output format:

    {"meta": [...], "data": [<row>, <row>, ...], "rows": 2, "statistics": {...}}

    Only the elements of the top level "data" array are returned.  Each element is held in memory only until it
    is complete, the values of all other top level keys are skipped without being stored.  A top level
    "exception" key, which ClickHouse writes when a query fails after the response has started, raises
    StreamFailureError.
    """

    def __init__(self, encoding: Optional[str] = None, loads: Optional[Callable[[str], Any]] = None):
        """
        :param encoding: Compression the transport did not undo (br, zstd, lz4, gzip or deflate)
        :param loads: JSON parser for a single row, defaults to the configured JSON library
        """
        self.inflater = Inflater(encoding) if encoding else None
        self._text_decoder = codecs.getincrementaldecoder('utf-8')()
        self._salvage_decoder = None
        self._loads = loads or json_impl.from_json
        self._scanner = _ValueScanner()
        self._state = _START
        self._parts = []
        self._key = None
        self.rows_emitted = 0
        self.data_found = False
        self.finished = False

    def feed(self, chunk: bytes) -> Iterator[Any]:
        """
        Decode the rows completed by the next chunk of the response body
        """
        if self.inflater:
            chunk = self.inflater.inflate(chunk)
        return self._parse(self._decode_text(chunk))

    def close(self) -> Iterator[Any]:
        """
        Signal the end of the response body.  Raises DecodeError if the body ended inside the JSON result
        """
        tail = self.inflater.flush() if self.inflater else b''
        yield from self._parse(self._decode_text(tail, True))
        if self._state not in (_START, _DONE):
            raise DecodeError('Response stream ended before the JSON result was complete', ''.join(self._parts))
        self.finished = True

    def salvage(self, chunk: bytes) -> str:
        """
        Text of a chunk following a decode failure, used only to look for an exception message
        """
        if self._salvage_decoder is None:
            self._salvage_decoder = codecs.getincrementaldecoder('utf-8')(errors='backslashreplace')
        if self.inflater:
            chunk = self.inflater.inflate(chunk)
        return self._salvage_decoder.decode(chunk)

    def _decode_text(self, data: bytes, final: bool = False) -> str:
        try:
            return self._text_decoder.decode(data, final)
        except UnicodeDecodeError as ex:
            raise DecodeError(f'Invalid UTF-8 in response: {ex}', data.decode(errors='backslashreplace')) from ex

    def _fail(self, message: str, text: str, pos: int):
        raise DecodeError(message, ''.join(self._parts) + text[pos:])

    def _begin_value(self, state: int):
        self._scanner.reset()
        self._parts = []
        self._state = state

    # pylint: disable=too-many-branches,too-many-statements
    def _parse(self, text: str) -> Iterator[Any]:
        pos = 0
        end = len(text)
        while pos < end:
            state = self._state
            if state in _VALUE_STATES:
                value_end = self._scanner.scan(text, pos)
                if value_end < 0:
                    if state != _SKIP:
                        self._parts.append(text[pos:])
                    return
                if state == _SKIP:
                    self._state = _OBJECT_SEP
                else:
                    self._parts.append(text[pos:value_end])
                    value = ''.join(self._parts)
                    self._parts = []
                    if state == _ELEMENT:
                        yield self._row(value, text[value_end:])
                        self._state = _ELEMENT_SEP
                    elif state == _KEY:
                        self._key = self._parse_value(value, text[value_end:], json_impl.from_json)
                        self._state = _COLON
                    else:
                        message = self._parse_value(value, text[value_end:], json_impl.from_json)
                        raise StreamFailureError(str(message).strip())
                pos = value_end
                continue
            pos = _WS.match(text, pos).end()
            if pos == end:
                return
            ch = text[pos]
            if state == _START:
                if ch != '{':
                    self._fail('Expected a JSON object', text, pos)
                self._state = _KEY_OR_END
                pos += 1
            elif state in (_KEY_OR_END, _KEY_START):
                if ch == '}' and state == _KEY_OR_END:
                    self._state = _DONE
                    pos += 1
                elif ch == '"':
                    self._begin_value(_KEY)
                else:
                    self._fail('Expected an object key', text, pos)
            elif state == _COLON:
                if ch != ':':
                    self._fail(f'Expected ":" after key {self._key}', text, pos)
                self._state = _VALUE
                pos += 1
            elif state == _VALUE:
                if self._key == 'data':
                    if ch != '[':
                        self._fail('The "data" value is not an array', text, pos)
                    self.data_found = True
                    self._state = _ELEMENT_OR_END
                    pos += 1
                elif self._key == 'exception':
                    self._begin_value(_EXCEPTION)
                else:
                    self._begin_value(_SKIP)
            elif state in (_ELEMENT_OR_END, _ELEMENT_START):
                if ch == ']' and state == _ELEMENT_OR_END:
                    self._state = _OBJECT_SEP
                    pos += 1
                elif ch in ',]}':
                    self._fail(f'Expected row {self.rows_emitted + 1}', text, pos)
                else:
                    self._begin_value(_ELEMENT)
            elif state == _ELEMENT_SEP:
                if ch == ',':
                    self._state = _ELEMENT_START
                elif ch == ']':
                    self._state = _OBJECT_SEP
                else:
                    self._fail(f'Expected "," or "]" after row {self.rows_emitted}', text, pos)
                pos += 1
            elif state == _OBJECT_SEP:
                if ch == ',':
                    self._state = _KEY_START
                elif ch == '}':
                    self._state = _DONE
                else:
                    self._fail('Expected "," or "}" in the JSON result', text, pos)
                pos += 1
            else:
                self._fail('Unexpected content after the JSON result', text, pos)

    def _row(self, value: str, rest: str) -> Any:
        row = self._parse_value(value, rest, self._loads)
        self.rows_emitted += 1
        return row

    def _parse_value(self, value: str, rest: str, loads: Callable[[str], Any]) -> Any:
        try:
            return loads(value)
        except ValueError as ex:
            raise DecodeError(f'Malformed JSON after row {self.rows_emitted}: {ex}', value + rest) from ex


decoders = {
    RowFormat.JSON.value: JsonRowsDecoder,
}


def check_format(row_format: str):
    if row_format not in decoders:
        raise UnsupportedFormat(f'Unsupported data format {row_format}.  Only JSON is supported')


def get_decoder(row_format: str, encoding: Optional[str] = None):
    check_format(row_format)
    return decoders[row_format](encoding)


def decode(row_format: str,
           chunks: Iterable[bytes],
           encoding: Optional[str] = None,
           exception_tag: Optional[str] = None,
           log: Optional[logging.Logger] = None) -> Iterator[Any]:
    """
    Lazily decode rows from the chunks of a response body
    :param row_format: Configured row format, only JSON has a decoder
    :param chunks: Response body chunks as delivered by the transport
    :param encoding: Compression to undo before parsing, if the transport did not
    :param exception_tag: X-ClickHouse-Exception-Tag response header value
    :param log: Logger that receives any decoding error exactly once
    """
    decoder = get_decoder(row_format, encoding)
    chunks = iter(chunks)
    try:
        for chunk in chunks:
            yield from decoder.feed(chunk)
        yield from decoder.close()
    except StreamFailureError as ex:
        _log_error(log, ex)
        raise
    except DecodeError as ex:
        text = ex.tail
        try:
            for chunk in chunks:
                text = (text + decoder.salvage(chunk))[-MAX_ERROR_TEXT:]
        except DecodeError:
            logger.debug('Unable to read the rest of a failed response', exc_info=True)
        failure = _stream_failure(text, exception_tag)
        _log_error(log, failure or ex)
        if failure:
            raise failure from ex
        raise


async def decode_async(row_format: str,
                       chunks: AsyncIterable[bytes],
                       encoding: Optional[str] = None,
                       exception_tag: Optional[str] = None,
                       log: Optional[logging.Logger] = None) -> AsyncIterator[Any]:
    """
    Asyncio version of decode
    """
    decoder = get_decoder(row_format, encoding)
    chunks = chunks.__aiter__()
    try:
        async for chunk in chunks:
            for row in decoder.feed(chunk):
                yield row
        for row in decoder.close():
            yield row
    except StreamFailureError as ex:
        _log_error(log, ex)
        raise
    except DecodeError as ex:
        text = ex.tail
        try:
            async for chunk in chunks:
                text = (text + decoder.salvage(chunk))[-MAX_ERROR_TEXT:]
        except DecodeError:
            logger.debug('Unable to read the rest of a failed response', exc_info=True)
        failure = _stream_failure(text, exception_tag)
        _log_error(log, failure or ex)
        if failure:
            raise failure from ex
        raise


def _stream_failure(text: str, exception_tag: Optional[str]) -> Optional[StreamFailureError]:
    message = extract_exception_message(text, exception_tag)
    if message:
        return StreamFailureError(message)
    return None


def _log_error(log: Optional[logging.Logger], ex: Exception):
    (log or logger).error(str(ex))
