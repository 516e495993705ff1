import ipaddress
import uuid
from datetime import date, datetime, tzinfo
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import pytz

from clickhouse_stream import common
from clickhouse_stream.json_impl import to_json


def format_bind_value(value: Any, server_tz: tzinfo = pytz.UTC) -> str:
    """
    Render a Python value as the text of a ClickHouse server side query parameter.  The value is not quoted or
    escaped, ClickHouse parses it according to the type declared in the {name:Type} placeholder
    :param value: Python object
    :param server_tz: Timezone that timezone aware datetime values are converted to
    :return: Parameter string for the python value
    """
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(server_tz)
        return value.strftime('%Y-%m-%d %H:%M:%S')
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, list):
        return f"[{', '.join(format_bind_element(x, server_tz) for x in value)}]"
    if isinstance(value, tuple):
        return f"({', '.join(format_bind_element(x, server_tz) for x in value)})"
    if isinstance(value, dict):
        if common.get_setting('dict_parameter_format') == 'json':
            return to_json(value).decode()
        pairs = [format_bind_element(k, server_tz) + ':' + format_bind_element(v, server_tz)
                 for k, v in value.items()]
        return f"{{{', '.join(pairs)}}}"
    if isinstance(value, Enum):
        return format_bind_value(value.value, server_tz)
    return str(value)


def format_bind_element(value: Any, server_tz: tzinfo = pytz.UTC) -> str:
    """
    Values nested in arrays, tuples and maps are parsed as literals, so strings and temporal values are quoted
    """
    if isinstance(value, str):
        return "'" + value.replace('\\', '\\\\').replace("'", "\\'") + "'"
    if isinstance(value, (datetime, date, uuid.UUID, ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return f"'{format_bind_value(value, server_tz)}'"
    return format_bind_value(value, server_tz)


def bind_parameters(parameters: Optional[Mapping[str, Any]], server_tz: tzinfo = pytz.UTC) -> Dict[str, str]:
    if not parameters:
        return {}
    return {f'param_{name}': format_bind_value(value, server_tz) for name, value in parameters.items()}
