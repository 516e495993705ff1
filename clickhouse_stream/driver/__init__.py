from typing import Any, Dict, Optional, Union
from urllib.parse import parse_qs, urlparse

from clickhouse_stream.driver.client import Client
from clickhouse_stream.driver.common import coerce_bool
from clickhouse_stream.driver.exceptions import ProgrammingError
from clickhouse_stream.driver.httpclient import HttpClient
from clickhouse_stream.driver.options import EffectiveConfig, Protocol, default_port, resolve


# pylint: disable=too-many-arguments,too-many-locals,too-many-branches
def create_config(host: str = None,
                  username: str = None,
                  password: str = '',
                  database: str = None,
                  interface: Optional[str] = None,
                  port: int = 0,
                  secure: Union[bool, str] = False,
                  dsn: Optional[str] = None,
                  settings: Optional[Dict[str, Any]] = None,
                  **kwargs) -> EffectiveConfig:
    """
    Resolve the keyword arguments accepted by create_client into an EffectiveConfig
    :param host: The hostname or IP address of the ClickHouse server.  Defaults to localhost
    :param username: The ClickHouse username.  Defaults to the default user
    :param password: The password for username
    :param database: Default database for each request.  Defaults to the default database
    :param interface: Must be http or https.  Defaults to http, or https if port is 8443 or 443
    :param port: The ClickHouse HTTP/HTTPS port.  Defaults to 8123, or 8443 for https
    :param secure: Use https/TLS.  This overrides inferred values from the interface or port arguments
    :param dsn: A string in standard DSN (Data Source Name) format.  Other connection values (such as host or
      user) will be extracted from this string if not set otherwise
    :param settings: ClickHouse server settings sent with every request
    :param kwargs: Any other EffectiveConfig option, for example compression, row_format or transport.
      compress is accepted as an alias for compression
    """
    if dsn:
        parsed = urlparse(dsn)
        username = username or parsed.username
        password = password or parsed.password
        host = host or parsed.hostname
        port = port or parsed.port
        if parsed.path and not database:
            database = parsed.path[1:].split('/')[0] or None
        for key, values in parse_qs(parsed.query).items():
            kwargs.setdefault(key, values[-1])
    use_tls = coerce_bool(secure) or interface == 'https' or (not interface and port in (443, 8443))
    if not interface:
        interface = 'https' if use_tls else 'http'
    if interface not in ('http', 'https'):
        raise ProgrammingError(f'Unrecognized client type {interface}')
    protocol = Protocol.HTTPS if use_tls else Protocol.HTTP
    if username is None and 'user' in kwargs:
        username = kwargs.pop('user')
    if username is None and 'user_name' in kwargs:
        username = kwargs.pop('user_name')
    if 'compress' in kwargs and 'compression' not in kwargs:
        kwargs['compression'] = kwargs.pop('compress')
    return resolve(kwargs,
                   host=host,
                   port=int(port or default_port(protocol)),
                   protocol=protocol,
                   username=username,
                   password=password,
                   database=database,
                   settings=settings)


def create_client(**kwargs) -> HttpClient:
    """
    Create a synchronous streaming client.  See create_config for the accepted arguments
    """
    return HttpClient(create_config(**kwargs))


def create_async_client(**kwargs) -> Client:
    """
    Create an asyncio streaming client.  Requires the aiohttp package (the async extra)
    """
    from clickhouse_stream.driver.asyncclient import AsyncHttpClient  # pylint: disable=import-outside-toplevel
    return AsyncHttpClient(create_config(**kwargs))
