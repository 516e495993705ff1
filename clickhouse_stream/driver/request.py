from typing import Any, Dict, Mapping, NamedTuple, Optional, Sequence, Tuple
from urllib.parse import urlencode

from clickhouse_stream import common
from clickhouse_stream.driver.binding import bind_parameters
from clickhouse_stream.driver.exceptions import InvalidArgument
from clickhouse_stream.driver.insert import insert_format, validate_insert
from clickhouse_stream.driver.jsonrows import check_format
from clickhouse_stream.driver.options import Compression, EffectiveConfig, self_decompressed

PING_PATH = '/ping'


class RequestDescriptor(NamedTuple):
    """
    Everything the transport needs to issue one request.  Built per call and never reused
    """
    url: str
    params: Dict[str, str]
    method: str
    body: Optional[bytes]
    headers: Dict[str, str]
    auth: Optional[Tuple[str, str]]
    stream: bool
    timeout: Optional[float] = None
    decompress: Optional[str] = None

    @property
    def full_url(self) -> str:
        if not self.params:
            return self.url
        return f'{self.url}?{urlencode(self.params)}'


def validate_query(sql: str):
    if not isinstance(sql, str) or not sql.strip():
        raise InvalidArgument('query required')


def build_query(config: EffectiveConfig,
                sql: str,
                parameters: Optional[Mapping[str, Any]] = None,
                raw: bool = False) -> RequestDescriptor:
    """
    Build the request for a query
    :param config: Client configuration
    :param sql: SQL statement, may contain {name:Type} placeholders
    :param parameters: Values for the placeholders
    :param raw: If True the statement is sent as is, otherwise the configured row format directive is appended
    """
    validate_query(sql)
    if not raw:
        check_format(config.row_format)
        sql = f'{sql.rstrip()} FORMAT {config.row_format}'
    params = _base_params(config, sql)
    params.update(bind_parameters(parameters, config.server_tz))
    return _build_request(config, params)


def build_insert(config: EffectiveConfig, table: str, records: Sequence[Any]) -> RequestDescriptor:
    """
    Build the request for inserting records into a table
    :param config: Client configuration
    :param table: Table name, optionally qualified with the database
    :param records: Non-empty list of records, each serialized to one line of the request body
    """
    validate_insert(table, records)
    fmt, serialize = insert_format(config.row_format)
    params = _base_params(config, f'INSERT INTO {table.strip()} FORMAT {fmt}')
    headers = {'Content-Type': 'application/octet-stream'}
    return _build_request(config, params, serialize(records), headers)


def build_command(config: EffectiveConfig,
                  cmd: str,
                  parameters: Optional[Mapping[str, Any]] = None) -> RequestDescriptor:
    """
    Build the request for a statement with no row result (DDL, SET, etc.).  The response is read in full
    """
    descriptor = build_query(config, cmd, parameters, raw=True)
    return descriptor._replace(stream=False)


def build_ping(config: EffectiveConfig, timeout: int = 3000) -> RequestDescriptor:
    """
    Build the liveness request
    :param config: Client configuration
    :param timeout: Timeout in milliseconds
    """
    headers = {'User-Agent': common.build_client_name(config.client_name)}
    return RequestDescriptor(f'{config.url}{PING_PATH}', {}, 'GET', None, headers, None, False, timeout / 1000)


def _base_params(config: EffectiveConfig, sql: str) -> Dict[str, str]:
    params = {'query': sql}
    if config.database:
        params['database'] = config.database
    params.update(config.settings)
    if config.compression != Compression.NONE:
        params['enable_http_compression'] = '1'
    return params


def _build_request(config: EffectiveConfig,
                   params: Dict[str, str],
                   body: Optional[bytes] = None,
                   headers: Optional[Dict[str, str]] = None) -> RequestDescriptor:
    headers = headers or {}
    headers['User-Agent'] = common.build_client_name(config.client_name)
    if config.compression == Compression.NONE:
        headers['Accept-Encoding'] = 'identity'
    else:
        headers['Accept-Encoding'] = config.compression.value
    decompress = config.compression.value if config.compression in self_decompressed else None
    auth = (config.username, config.password) if config.username else None
    return RequestDescriptor(f'{config.url}/', params, 'POST', body, headers, auth, True, None, decompress)
