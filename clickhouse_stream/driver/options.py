import logging
from dataclasses import dataclass, field, fields
from datetime import tzinfo
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Type, Union

import pytz
from pytz.exceptions import UnknownTimeZoneError

from clickhouse_stream.driver.common import coerce_bool, dict_copy
from clickhouse_stream.driver.exceptions import ProgrammingError

logger = logging.getLogger(__name__)

default_logger = logging.getLogger('clickhouse_stream.driver')


class Protocol(str, Enum):
    HTTP = 'http'
    HTTPS = 'https'


class Compression(str, Enum):
    NONE = 'none'
    GZIP = 'gzip'
    DEFLATE = 'deflate'
    BROTLI = 'br'
    ZSTD = 'zstd'
    LZ4 = 'lz4'


class RowFormat(str, Enum):
    JSON = 'JSON'
    JSON_COMPACT = 'JSONCompact'
    JSON_EACH_ROW = 'JSONEachRow'
    TAB_SEPARATED = 'TabSeparated'
    CSV = 'CSV'
    NATIVE = 'Native'


# Compression methods the HTTP transport does not undo on its own
self_decompressed = (Compression.BROTLI, Compression.ZSTD, Compression.LZ4)


# pylint: disable=too-many-instance-attributes
@dataclass(frozen=True)
class EffectiveConfig:
    """
    Immutable connection, format and compression settings shared by every request of one client
    """
    host: str = 'localhost'
    port: int = 0
    protocol: Protocol = Protocol.HTTP
    username: str = 'default'
    password: str = ''
    database: str = 'default'
    row_format: str = RowFormat.JSON.value
    compression: Compression = Compression.NONE
    transport: Any = None
    logger: logging.Logger = default_logger
    settings: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    client_name: Optional[str] = None
    server_tz: tzinfo = pytz.UTC
    connect_timeout: float = 10
    send_receive_timeout: float = 300
    verify: bool = True
    ca_cert: Optional[str] = None
    client_cert: Optional[str] = None
    client_cert_key: Optional[str] = None

    @property
    def url(self) -> str:
        return f'{self.protocol.value}://{self.host}:{self.port}'


option_names = frozenset(f.name for f in fields(EffectiveConfig))


def default_port(protocol: Protocol) -> int:
    return 8443 if protocol == Protocol.HTTPS else 8123


def resolve(user_options: Optional[Mapping[str, Any]] = None, **kwargs) -> EffectiveConfig:
    """
    Merge user supplied options with the defaults.  Options that are missing or None take the default value
    :param user_options: Mapping of option name to value
    :param kwargs: Additional options, these take precedence over user_options
    :return: A new immutable EffectiveConfig
    """
    overrides = dict_copy(user_options, kwargs)
    unknown = sorted(set(overrides) - option_names)
    if unknown:
        raise ProgrammingError(f'Unrecognized client option(s) {", ".join(unknown)}')
    values = {f.name: f.default for f in fields(EffectiveConfig) if f.name not in ('settings',)}
    values.update({key: value for key, value in overrides.items() if value is not None})
    values['protocol'] = coerce_enum(Protocol, values['protocol'], 'protocol')
    values['compression'] = coerce_compression(values['compression'])
    values['row_format'] = coerce_row_format(values['row_format'])
    values['port'] = int(values['port']) or default_port(values['protocol'])
    values['settings'] = MappingProxyType(settings_to_str(overrides.get('settings')))
    values['server_tz'] = coerce_tz(values['server_tz'])
    values['connect_timeout'] = float(values['connect_timeout'])
    values['send_receive_timeout'] = float(values['send_receive_timeout'])
    if isinstance(values['verify'], str):
        values['verify'] = coerce_bool(values['verify'])
    return EffectiveConfig(**values)


def coerce_enum(enum_cls: Type[Enum], value: Any, name: str):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip()
        for member in enum_cls:
            if key.lower() in (member.value.lower(), member.name.lower()):
                return member
    raise ProgrammingError(f'Unrecognized {name} value {value}')


def coerce_compression(value: Any) -> Compression:
    if value is True:
        return Compression.GZIP
    if value is False:
        return Compression.NONE
    if isinstance(value, str) and value.lower() == 'brotli':
        return Compression.BROTLI
    return coerce_enum(Compression, value, 'compression')


def coerce_row_format(value: Union[str, RowFormat]) -> str:
    if isinstance(value, RowFormat):
        return value.value
    if not isinstance(value, str) or not value.strip():
        raise ProgrammingError(f'Unrecognized row format {value}')
    return value.strip()


def coerce_tz(value: Union[str, tzinfo]) -> tzinfo:
    if isinstance(value, tzinfo):
        return value
    try:
        return pytz.timezone(value)
    except UnknownTimeZoneError:
        logger.warning('Unrecognized server timezone %s, will use UTC default', value)
        return pytz.UTC


def settings_to_str(settings: Optional[Mapping[str, Any]]) -> dict:
    result = {}
    for key, value in (settings or {}).items():
        if isinstance(value, bool):
            result[key] = '1' if value else '0'
        else:
            result[key] = str(value)
    return result
