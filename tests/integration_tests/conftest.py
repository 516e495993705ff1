import os
import random
import time
from typing import Iterator, NamedTuple

import pytest
from pytest import fixture

from clickhouse_stream import create_client
from clickhouse_stream.driver.exceptions import TransportError
from clickhouse_stream.driver.httpclient import HttpClient


class TestConfig(NamedTuple):
    host: str
    port: int
    username: str
    password: str
    test_database: str
    compress: str
    __test__ = False


@fixture(scope='session', name='test_config')
def test_config_fixture() -> Iterator[TestConfig]:
    host = os.environ.get('CLICKHOUSE_STREAM_TEST_HOST', 'localhost')
    port = int(os.environ.get('CLICKHOUSE_STREAM_TEST_PORT', '8123'))
    username = os.environ.get('CLICKHOUSE_STREAM_TEST_USER', 'default')
    password = os.environ.get('CLICKHOUSE_STREAM_TEST_PASSWORD', '')
    test_database = f'ch_stream__{random.randint(100000, 999999)}__{int(time.time() * 1000)}'
    compress = os.environ.get('CLICKHOUSE_STREAM_TEST_COMPRESS', 'none')
    yield TestConfig(host, port, username, password, test_database, compress)


@fixture(scope='session', name='test_client')
def test_client_fixture(test_config: TestConfig) -> Iterator[HttpClient]:
    admin = create_client(host=test_config.host,
                          port=test_config.port,
                          username=test_config.username,
                          password=test_config.password)
    try:
        alive = admin.ping()
    except TransportError:
        alive = False
    if not alive:
        pytest.skip(f'No ClickHouse server at {test_config.host}:{test_config.port}')
    admin.command(f'CREATE DATABASE IF NOT EXISTS {test_config.test_database}')
    client = create_client(host=test_config.host,
                           port=test_config.port,
                           username=test_config.username,
                           password=test_config.password,
                           database=test_config.test_database,
                           compress=test_config.compress)
    yield client
    admin.command(f'DROP DATABASE IF EXISTS {test_config.test_database}')
    client.close()
    admin.close()
