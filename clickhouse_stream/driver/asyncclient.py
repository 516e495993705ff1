# pylint: disable=import-error

import asyncio
import inspect
import logging
import ssl
from base64 import b64encode
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

import aiohttp
import certifi

from clickhouse_stream.driver.asyncstream import AsyncRowStream
from clickhouse_stream.driver.client import Client
from clickhouse_stream.driver.common import dict_copy
from clickhouse_stream.driver.errhandler import BodyText, async_extract_error, ex_tag_header, transport_error
from clickhouse_stream.driver.exceptions import DecodeError
from clickhouse_stream.driver.httputil import response_encoding
from clickhouse_stream.driver.insert import insert_response_async
from clickhouse_stream.driver.jsonrows import decode_async
from clickhouse_stream.driver.options import Protocol
from clickhouse_stream.driver.request import RequestDescriptor, build_command, build_insert, build_ping, build_query

logger = logging.getLogger(__name__)

PING_OK = b'Ok.\n'
transport_errors = (aiohttp.ClientError, asyncio.TimeoutError)


class AsyncResponseSource:
    """
    Chunked reader over an aiohttp response.  The session never decompresses, so `encoding` is always taken
    from the Content-Encoding response header
    """

    def __init__(self, response: aiohttp.ClientResponse, chunk_size: int = 1024 * 1024):
        self.response = response
        self.headers = response.headers
        self.status = response.status
        self.encoding = response_encoding(response.headers)
        self.chunk_size = chunk_size
        self.finished = False

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await self.response.content.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk
        except transport_errors as ex:
            raise DecodeError(f'Response stream closed prematurely: {ex}') from ex
        self.finished = True

    async def aclose(self):
        if self.finished:
            result = self.response.release()
            if inspect.isawaitable(result):
                await result
        else:
            logger.debug('Closing partially read HTTP response')
            self.response.close()


class AsyncHttpRowSource:
    def __init__(self, source: AsyncResponseSource, rows):
        self.source = source
        self.headers = source.headers
        self.rows = rows

    async def aclose(self):
        try:
            await self.rows.aclose()
        finally:
            await self.source.aclose()


class AsyncHttpClient(Client):
    """
    Asyncio streaming ClickHouse client over an aiohttp ClientSession.  The session is created on first use,
    bound to the running event loop
    """

    def __init__(self, config=None, **options):
        super().__init__(config, **options)
        cfg = self.config
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = aiohttp.ClientTimeout(total=None,
                                              connect=cfg.connect_timeout,
                                              sock_connect=cfg.connect_timeout,
                                              sock_read=cfg.send_receive_timeout)
        self._ssl_context = None
        if cfg.protocol == Protocol.HTTPS:
            self._ssl_context = self._create_ssl_context()

    def _create_ssl_context(self) -> ssl.SSLContext:
        cfg = self.config
        ca_cert = certifi.where() if cfg.ca_cert == 'certifi' else cfg.ca_cert
        ssl_context = ssl.create_default_context()
        if not cfg.verify:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
        elif ca_cert:
            ssl_context.load_verify_locations(ca_cert)
        if cfg.client_cert:
            ssl_context.load_cert_chain(cfg.client_cert, cfg.client_cert_key)
        return ssl_context

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = self.config.transport
            owner = connector is None
            if owner:
                if self._ssl_context is not None:
                    connector = aiohttp.TCPConnector(ssl=self._ssl_context)
                else:
                    connector = aiohttp.TCPConnector()
            self._session = aiohttp.ClientSession(connector=connector,
                                                  connector_owner=owner,
                                                  timeout=self._timeout,
                                                  trust_env=False,
                                                  auto_decompress=False,
                                                  skip_auto_headers={'Accept-Encoding'})
        return self._session

    async def _raw_request(self, request: RequestDescriptor) -> AsyncResponseSource:
        kwargs = {'params': request.params, 'headers': request.headers, 'data': request.body}
        if request.auth:
            credentials = b64encode(f'{request.auth[0]}:{request.auth[1]}'.encode()).decode()
            kwargs['headers'] = dict_copy(request.headers, {'Authorization': f'Basic {credentials}'})
        if request.timeout:
            kwargs['timeout'] = aiohttp.ClientTimeout(total=request.timeout)
        logger.debug('Sending %s request to %s', request.method, request.url)
        try:
            response = await self._get_session().request(request.method, request.url, **kwargs)
        except transport_errors as ex:
            raise transport_error(ex, self.logger) from ex
        source = AsyncResponseSource(response)
        if 200 <= response.status < 300:
            return source
        raise await async_extract_error(source, self.logger)

    async def _open(self, request: RequestDescriptor, reader: Callable) -> AsyncHttpRowSource:
        source = await self._raw_request(request)
        rows = reader(source.chunks(), source.encoding, source.headers.get(ex_tag_header), self.logger)
        return AsyncHttpRowSource(source, rows)

    def _decode_rows(self, chunks, encoding, exception_tag, log):
        return decode_async(self.config.row_format, chunks, encoding, exception_tag, log)

    def query(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> AsyncRowStream[Any]:
        request = build_query(self.config, query, parameters)
        return AsyncRowStream(lambda: self._open(request, self._decode_rows))

    async def query_collect(self,  # pylint: disable=invalid-overridden-method
                            query: str,
                            parameters: Optional[Dict[str, Any]] = None) -> List[Any]:
        return await self.query(query, parameters).collect()

    def insert(self, table: str, records: Sequence[Any]) -> AsyncRowStream[None]:
        request = build_insert(self.config, table, records)
        return AsyncRowStream(lambda: self._open(request, insert_response_async))

    async def insert_await(self,  # pylint: disable=invalid-overridden-method
                           table: str,
                           records: Sequence[Any]) -> None:
        await self.insert(table, records).collect()

    async def command(self,  # pylint: disable=invalid-overridden-method
                      cmd: str,
                      parameters: Optional[Dict[str, Any]] = None) -> str:
        source = await self._raw_request(build_command(self.config, cmd, parameters))
        body = BodyText(source.encoding)
        try:
            async for chunk in source.chunks():
                body.add(chunk)
        finally:
            await source.aclose()
        return body.text().strip()

    async def ping(self, timeout: int = 3000) -> bool:  # pylint: disable=invalid-overridden-method
        request = build_ping(self.config, timeout)
        try:
            async with self._get_session().get(request.url,
                                               headers=request.headers,
                                               timeout=aiohttp.ClientTimeout(total=request.timeout)) as response:
                if not 200 <= response.status < 300:
                    logger.debug('Ping returned HTTP status %d', response.status)
                    return False
                return await response.read() == PING_OK
        except transport_errors as ex:
            raise transport_error(ex, self.logger) from ex

    async def close(self):  # pylint: disable=invalid-overridden-method
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
