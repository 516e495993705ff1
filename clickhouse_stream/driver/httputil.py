import logging
import socket
import sys
import zlib
from typing import Iterator, Mapping, Optional

import brotli
import certifi
import lz4.frame
import zstandard
from urllib3.exceptions import HTTPError
from urllib3.poolmanager import PoolManager
from urllib3.response import HTTPResponse

from clickhouse_stream.driver.exceptions import DecodeError

logger = logging.getLogger(__name__)

DEFAULT_KEEP_INTERVAL = 30
DEFAULT_KEEP_COUNT = 3
DEFAULT_KEEP_IDLE = 30

SOCKET_TCP = socket.IPPROTO_TCP

core_socket_options = [
    (socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1),
    (SOCKET_TCP, socket.TCP_NODELAY, 1),
    (socket.SOL_SOCKET, socket.SO_SNDBUF, 1024 * 256),
    (socket.SOL_SOCKET, socket.SO_RCVBUF, 1024 * 256)
]

logging.getLogger('urllib3').setLevel(logging.WARNING)


# pylint: disable=no-member
def get_pool_manager(keep_interval: int = DEFAULT_KEEP_INTERVAL,
                     keep_count: int = DEFAULT_KEEP_COUNT,
                     keep_idle: int = DEFAULT_KEEP_IDLE,
                     ca_cert: str = None,
                     verify: bool = True,
                     client_cert: str = None,
                     client_cert_key: str = None,
                     **options) -> PoolManager:
    socket_options = core_socket_options.copy()
    if getattr(socket, 'TCP_KEEPINTVL', None) is not None:
        socket_options.append((SOCKET_TCP, socket.TCP_KEEPINTVL, keep_interval))
    if getattr(socket, 'TCP_KEEPCNT', None) is not None:
        socket_options.append((SOCKET_TCP, socket.TCP_KEEPCNT, keep_count))
    if getattr(socket, 'TCP_KEEPIDLE', None) is not None:
        socket_options.append((SOCKET_TCP, socket.TCP_KEEPIDLE, keep_idle))
    if sys.platform == 'darwin':
        socket_options.append((SOCKET_TCP, getattr(socket, 'TCP_KEEPALIVE', 0x10), keep_interval))
    options['maxsize'] = options.get('maxsize', 8)
    options['retries'] = options.get('retries', False)
    if ca_cert == 'certifi':
        ca_cert = certifi.where()
    options['cert_reqs'] = 'CERT_REQUIRED' if verify else 'CERT_NONE'
    if ca_cert:
        options['ca_certs'] = ca_cert
    if client_cert:
        options['cert_file'] = client_cert
    if client_cert_key:
        options['key_file'] = client_cert_key
    return PoolManager(block=False, socket_options=socket_options, **options)


default_pool_manager = get_pool_manager()

# lz4 reports corrupt frames as RuntimeError
decompress_errors = (zlib.error, brotli.error, zstandard.ZstdError, RuntimeError)


def create_decompressor(encoding: str):
    """Create incremental decompressor for encoding."""
    if encoding == 'gzip':
        return zlib.decompressobj(16 + zlib.MAX_WBITS)
    if encoding == 'deflate':
        return zlib.decompressobj()
    if encoding == 'br':
        return brotli.Decompressor()
    if encoding == 'zstd':
        return zstandard.ZstdDecompressor().decompressobj()
    if encoding == 'lz4':
        return lz4.frame.LZ4FrameDecompressor()
    raise ValueError(f'Unsupported compression encoding: {encoding}')


class Inflater:
    """
    Incrementally decompresses a response body that the HTTP transport delivered still compressed
    """

    def __init__(self, encoding: str):
        self.encoding = encoding
        self._decompressor = create_decompressor(encoding)

    def inflate(self, chunk: bytes) -> bytes:
        try:
            if hasattr(self._decompressor, 'process'):
                return self._decompressor.process(chunk)
            return self._decompressor.decompress(chunk)
        except decompress_errors as ex:
            raise DecodeError(f'Failed to decompress {self.encoding} response data: {ex}') from ex

    def flush(self) -> bytes:
        if hasattr(self._decompressor, 'flush'):
            try:
                return self._decompressor.flush()
            except decompress_errors as ex:
                raise DecodeError(f'Failed to decompress {self.encoding} response data: {ex}') from ex
        if hasattr(self._decompressor, 'is_finished') and not self._decompressor.is_finished():
            raise DecodeError(f'Incomplete {self.encoding} response data')
        return b''


def response_encoding(headers: Mapping[str, str]) -> Optional[str]:
    encoding = headers.get('content-encoding') or headers.get('Content-Encoding')
    if not encoding or encoding == 'identity':
        return None
    return encoding


class ResponseSource:
    """
    Chunked reader over a streaming urllib3 response.  When `decode_content` is False the transport leaves
    the body compressed and `encoding` names the compression the row decoder must undo
    """

    def __init__(self,
                 response: HTTPResponse,
                 decode_content: bool = True,
                 preloaded: bool = False,
                 chunk_size: int = 1024 * 1024):
        self.response = response
        self.headers = response.headers
        self.status = response.status
        self.decode_content = decode_content
        self.preloaded = preloaded
        self.chunk_size = chunk_size
        self.encoding = None if decode_content else response_encoding(response.headers)
        self.finished = False

    def chunks(self) -> Iterator[bytes]:
        if self.preloaded:
            data = self.response.data
            if data:
                yield data
            self.finished = True
            return
        try:
            for chunk in self.response.stream(self.chunk_size, decode_content=self.decode_content):
                if chunk:
                    yield chunk
        except HTTPError as ex:
            raise DecodeError(f'Response stream closed prematurely: {ex}') from ex
        self.finished = True

    def read_all(self) -> bytes:
        return b''.join(self.chunks())

    def close(self):
        if not self.finished:
            logger.debug('Closing partially read HTTP response')
            self.response.close()
        self.response.release_conn()