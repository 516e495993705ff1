import codecs
import logging
import re
from typing import AsyncIterable, Iterable, Mapping, Optional, Union

from clickhouse_stream.driver.exceptions import DatabaseError, DecodeError, ServerError, TransportError
from clickhouse_stream.driver.httputil import Inflater, ResponseSource

logger = logging.getLogger(__name__)

ex_header = 'X-ClickHouse-Exception-Code'
ex_tag_header = 'X-ClickHouse-Exception-Tag'

# "Code: 62. DB::Exception: Syntax error ..." and the older "Code: 62, e.displayText() = ..."
error_code_re = re.compile(r'Code:\s*\d+[.,].*', re.DOTALL)
tagged_exception_re = re.compile(r'__exception__(\w+)\r?\n(.*?)\r?\n\d+ \1__exception__', re.DOTALL)


class BodyText:
    """
    Accumulates a response body as text.  Invalid UTF-8 is kept as backslash escapes
    """

    def __init__(self, encoding: Optional[str] = None):
        self.inflater = Inflater(encoding) if encoding else None
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='backslashreplace')
        self._parts = []

    def add(self, chunk: bytes):
        if self.inflater:
            chunk = self.inflater.inflate(chunk)
        self._parts.append(self._decoder.decode(chunk))

    def text(self) -> str:
        tail = b''
        if self.inflater:
            try:
                tail = self.inflater.flush()
            except DecodeError:
                logger.warning('Incomplete compressed error response', exc_info=True)
        self._parts.append(self._decoder.decode(tail, final=True))
        return ''.join(self._parts)


def drain_text(chunks: Iterable[bytes], encoding: Optional[str] = None) -> str:
    """
    Read a response body to the end and return it as text
    """
    body = BodyText(encoding)
    try:
        for chunk in chunks:
            body.add(chunk)
    except DecodeError:
        logger.warning('Failed to read the full error response body', exc_info=True)
    return body.text()


async def async_drain_text(chunks: AsyncIterable[bytes], encoding: Optional[str] = None) -> str:
    body = BodyText(encoding)
    try:
        async for chunk in chunks:
            body.add(chunk)
    except DecodeError:
        logger.warning('Failed to read the full error response body', exc_info=True)
    return body.text()


def extract_exception_with_tag(body: str, exception_tag: Optional[str] = None) -> Optional[str]:
    """
    Find an exception block in the ClickHouse 25.11+ format:
    __exception__<TAG>\\r\\n<error message>\\r\\n<message_length> <TAG>__exception__\\r\\n
    """
    for match in tagged_exception_re.finditer(body):
        if exception_tag is None or match.group(1) == exception_tag:
            return match.group(2).strip()
    return None


def extract_exception_message(body: str, exception_tag: Optional[str] = None) -> Optional[str]:
    """
    Find the exception text ClickHouse appends to a response body when a query fails after the HTTP status was
    sent
    :param body: Undecoded remainder of the response body
    :param exception_tag: Value of the X-ClickHouse-Exception-Tag response header, if any
    :return: The exception message or None if the body contains no recognizable exception
    """
    message = extract_exception_with_tag(body, exception_tag)
    if message:
        return message
    match = error_code_re.search(body)
    if match:
        return match.group(0).strip()
    return None


def error_from_body(body: str, status: int, headers: Mapping[str, str], log: logging.Logger) -> ServerError:
    message = body.strip()
    if not message:
        message = f'HTTP driver received HTTP status {status}'
    log.error(message)
    return ServerError(message, status, headers.get(ex_header))


def transport_error(failure: BaseException, log: logging.Logger) -> TransportError:
    log.error(str(failure) or repr(failure))
    error = TransportError(f'Network error: {failure}', failure)
    error.__cause__ = failure
    return error


def extract_error(failure: Union[ResponseSource, BaseException], log: logging.Logger) -> DatabaseError:
    """
    Convert a failed request into the error delivered to the caller.  An error response body is always read
    to the end and the response released before this returns
    :param failure: The non-2xx response, or the exception raised by the transport
    :param log: Logger that receives the error exactly once
    :return: ServerError with the trimmed response body, or TransportError wrapping the transport exception
    """
    if isinstance(failure, BaseException):
        return transport_error(failure, log)
    try:
        body = drain_text(failure.chunks(), failure.encoding)
    finally:
        failure.close()
    return error_from_body(body, failure.status, failure.headers, log)


async def async_extract_error(failure, log: logging.Logger) -> DatabaseError:
    """
    Asyncio version of extract_error for a failed aiohttp response source
    """
    try:
        body = await async_drain_text(failure.chunks(), failure.encoding)
    finally:
        await failure.aclose()
    return error_from_body(body, failure.status, failure.headers, log)
