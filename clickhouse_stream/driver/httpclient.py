import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from urllib3 import Timeout
from urllib3.exceptions import HTTPError
from urllib3.poolmanager import PoolManager
from urllib3.util import make_headers

from clickhouse_stream.driver.client import Client
from clickhouse_stream.driver.common import dict_copy
from clickhouse_stream.driver.errhandler import BodyText, ex_tag_header, extract_error
from clickhouse_stream.driver.httputil import ResponseSource, default_pool_manager, get_pool_manager
from clickhouse_stream.driver.insert import insert_response
from clickhouse_stream.driver.jsonrows import decode
from clickhouse_stream.driver.options import Protocol
from clickhouse_stream.driver.request import RequestDescriptor, build_command, build_insert, build_ping, build_query
from clickhouse_stream.driver.stream import RowStream

logger = logging.getLogger(__name__)

PING_OK = b'Ok.\n'


class HttpRowSource:
    """
    An open streaming response and the rows read from it
    """

    def __init__(self, source: ResponseSource, rows: Iterator[Any]):
        self.source = source
        self.headers = source.headers
        self.rows = rows

    def close(self):
        try:
            self.rows.close()
        finally:
            self.source.close()


class HttpClient(Client):
    """
    Streaming ClickHouse client over a urllib3 connection pool
    """

    def __init__(self, config=None, **options):
        super().__init__(config, **options)
        cfg = self.config
        self._owns_pool = False
        if cfg.transport is not None:
            self.http: PoolManager = cfg.transport
        elif cfg.protocol == Protocol.HTTPS and (cfg.ca_cert or cfg.client_cert or not cfg.verify):
            self.http = get_pool_manager(ca_cert=cfg.ca_cert,
                                         verify=cfg.verify,
                                         client_cert=cfg.client_cert,
                                         client_cert_key=cfg.client_cert_key)
            self._owns_pool = True
        else:
            self.http = default_pool_manager
        self.timeout = Timeout(connect=cfg.connect_timeout, read=cfg.send_receive_timeout)

    def _raw_request(self, request: RequestDescriptor) -> ResponseSource:
        headers = dict_copy(request.headers)
        if request.auth:
            headers.update(make_headers(basic_auth=f'{request.auth[0]}:{request.auth[1]}'))
        decode_content = request.decompress is None
        timeout = Timeout(total=request.timeout) if request.timeout else self.timeout
        logger.debug('Sending %s request to %s', request.method, request.url)
        try:
            response = self.http.request(request.method, request.full_url,
                                         headers=headers,
                                         body=request.body,
                                         timeout=timeout,
                                         retries=False,
                                         preload_content=not request.stream,
                                         decode_content=decode_content)
        except HTTPError as ex:
            raise extract_error(ex, self.logger) from ex
        source = ResponseSource(response, decode_content, not request.stream)
        if 200 <= response.status < 300:
            return source
        raise extract_error(source, self.logger)

    def _open(self, request: RequestDescriptor, reader: Callable) -> HttpRowSource:
        source = self._raw_request(request)
        rows = reader(source.chunks(), source.encoding, source.headers.get(ex_tag_header), self.logger)
        return HttpRowSource(source, rows)

    def _decode_rows(self, chunks, encoding, exception_tag, log):
        return decode(self.config.row_format, chunks, encoding, exception_tag, log)

    def query(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> RowStream[Any]:
        request = build_query(self.config, query, parameters)
        return RowStream(lambda: self._open(request, self._decode_rows))

    def query_collect(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> List[Any]:
        return self.query(query, parameters).collect()

    def insert(self, table: str, records: Sequence[Any]) -> RowStream[None]:
        request = build_insert(self.config, table, records)
        return RowStream(lambda: self._open(request, insert_response))

    def insert_await(self, table: str, records: Sequence[Any]) -> None:
        self.insert(table, records).collect()

    def command(self, cmd: str, parameters: Optional[Dict[str, Any]] = None) -> str:
        source = self._raw_request(build_command(self.config, cmd, parameters))
        body = BodyText(source.encoding)
        try:
            for chunk in source.chunks():
                body.add(chunk)
        finally:
            source.close()
        return body.text().strip()

    def ping(self, timeout: int = 3000) -> bool:
        request = build_ping(self.config, timeout)
        try:
            response = self.http.request(request.method, request.url,
                                         headers=request.headers,
                                         timeout=Timeout(total=request.timeout),
                                         retries=False)
        except HTTPError as ex:
            raise extract_error(ex, self.logger) from ex
        if not 200 <= response.status < 300:
            logger.debug('Ping returned HTTP status %d', response.status)
            return False
        return response.data == PING_OK

    def close(self):
        if self._owns_pool:
            self.http.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
