import pytest

from clickhouse_stream import common
from clickhouse_stream.json_impl import set_json_library


@pytest.fixture(autouse=True)
def clean_global_state():
    yield
    common.set_setting('dict_parameter_format', 'json')
    common.set_setting('product_name', '')
    set_json_library()
