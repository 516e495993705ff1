import logging
import json as py_json
from collections import OrderedDict
from typing import Any, Union

try:
    import orjson
except ImportError:
    orjson = None

try:
    import ujson
except ImportError:
    ujson = None


def _pyjson_to_json(obj: Any) -> bytes:
    return py_json.dumps(obj, separators=(',', ':'), ensure_ascii=False).encode()


def _ujson_to_json(obj: Any) -> bytes:
    return ujson.dumps(obj, ensure_ascii=False).encode()  # pylint: disable=c-extension-no-member


logger = logging.getLogger(__name__)
_to_json = OrderedDict()
_to_json['orjson'] = orjson.dumps if orjson else None  # pylint: disable=no-member
_to_json['ujson'] = _ujson_to_json if ujson else None
_to_json['python'] = _pyjson_to_json

_from_json = OrderedDict()
_from_json['orjson'] = orjson.loads if orjson else None  # pylint: disable=no-member
_from_json['ujson'] = ujson.loads if ujson else None  # pylint: disable=c-extension-no-member
_from_json['python'] = py_json.loads

any_to_json = _pyjson_to_json
any_from_json = py_json.loads


def to_json(obj: Any) -> bytes:
    return any_to_json(obj)


def from_json(text: Union[str, bytes]) -> Any:
    return any_from_json(text)


def set_json_library(impl: str = None):
    """
    Select the library used to serialize inserted rows and parse result rows
    :param impl: One of 'orjson', 'ujson' or 'python'.  If not set, the first installed library in that order
      is used
    """
    global any_to_json, any_from_json  # pylint: disable=global-statement
    if impl:
        if not _to_json.get(impl):
            raise NotImplementedError(f'JSON library {impl} is not supported')
        libraries = [impl]
    else:
        libraries = [library for library, func in _to_json.items() if func]
    library = libraries[0]
    logger.debug('Using %s library for JSON rows', library)
    any_to_json = _to_json[library]
    any_from_json = _from_json[library]


set_json_library()
