import os
from setuptools import setup, find_packages


def run_setup():
    project_dir = os.path.abspath(os.path.dirname(__file__))
    with open(os.path.join(project_dir, 'README.md'), encoding='utf-8') as read_me:
        long_desc = read_me.read()

    version_fn = '.dev_version' if os.path.isfile('.dev_version') else 'clickhouse_stream/VERSION'
    with open(os.path.join(project_dir, version_fn), encoding='utf-8') as version_file:
        version = version_file.readline().strip()

    setup(
        name='clickhouse-stream',
        keywords=['clickhouse', 'http', 'driver', 'streaming', 'json'],
        description='Streaming ClickHouse HTTP client for JSON row queries and inserts',
        version=version,
        long_description=long_desc,
        long_description_content_type='text/markdown',
        package_data={'clickhouse_stream': ['VERSION']},
        packages=find_packages(exclude=['tests*']),
        python_requires='>=3.8',
        license='Apache License 2.0',
        install_requires=[
            'certifi',
            'urllib3>=1.26',
            'pytz',
            'zstandard',
            'lz4',
            'brotli'
        ],
        extras_require={
            'async': ['aiohttp>=3.8'],
            'orjson': ['orjson'],
            'ujson': ['ujson'],
            'test': ['pytest', 'pytest-asyncio', 'aiohttp>=3.8'],
        },
        classifiers=[
            'Development Status :: 4 - Beta',
            'Intended Audience :: Developers',
            'License :: OSI Approved :: Apache Software License',
            'Programming Language :: Python :: 3.8',
            'Programming Language :: Python :: 3.9',
            'Programming Language :: Python :: 3.10',
            'Programming Language :: Python :: 3.11',
            'Programming Language :: Python :: 3.12'
        ]
    )


run_setup()
