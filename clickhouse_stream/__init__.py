from clickhouse_stream.driver import create_async_client, create_client
from clickhouse_stream.common import version


def get_client(**kwargs):
    return create_client(**kwargs)


def get_async_client(**kwargs):
    return create_async_client(**kwargs)


__all__ = ['create_client', 'create_async_client', 'get_client', 'get_async_client', 'version']
