import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from clickhouse_stream.driver.exceptions import ProgrammingError
from clickhouse_stream.driver.options import EffectiveConfig, resolve
from clickhouse_stream.driver.stream import RowStream

logger = logging.getLogger(__name__)


class Client(ABC):
    """
    Base ClickHouse streaming client.  Every call is an independent HTTP request built from the same
    immutable configuration, so one client may be shared by concurrent callers
    """

    def __init__(self, config: Union[EffectiveConfig, Mapping[str, Any], None] = None, **options):
        """
        :param config: A resolved EffectiveConfig, or a mapping of option names to values
        :param options: Additional options, these override values in a config mapping
        """
        if isinstance(config, EffectiveConfig):
            if options:
                raise ProgrammingError('Options cannot be combined with a resolved EffectiveConfig')
            self.config = config
        else:
            self.config = resolve(config, **options)
        self.url = self.config.url
        self.logger = self.config.logger
        logger.debug('Created %s for %s', self.__class__.__name__, self.url)

    @abstractmethod
    def query(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> RowStream[Any]:
        """
        Lazy, single use stream of the rows returned by a query.  The request is sent when the stream is
        subscribed, collected or iterated
        :param query: SQL statement, without a FORMAT clause.  May contain {name:Type} placeholders
        :param parameters: Placeholder values, sent to the server as param_<name> query parameters
        :return: RowStream of decoded rows
        """

    @abstractmethod
    def query_collect(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> List[Any]:
        """
        Execute a query and return all rows in server order
        :param query: SQL statement, without a FORMAT clause
        :param parameters: Placeholder values
        :return: List of decoded rows.  Raises the error that terminated the stream
        """

    @abstractmethod
    def insert(self, table: str, records: Sequence[Any]) -> RowStream[None]:
        """
        Lazy, single use insert.  The stream completes with no rows when the server accepts the data
        :param table: Target table name, optionally qualified with the database
        :param records: Non-empty list of records, each sent as one JSON object
        """

    @abstractmethod
    def insert_await(self, table: str, records: Sequence[Any]) -> None:
        """
        Insert records and return when the server has accepted them.  Raises on failure
        """

    @abstractmethod
    def command(self, cmd: str, parameters: Optional[Dict[str, Any]] = None) -> str:
        """
        Execute a statement that returns no rows (DDL, SET, OPTIMIZE, etc.)
        :param cmd: SQL statement
        :param parameters: Placeholder values
        :return: The trimmed text of the response body, usually empty
        """

    @abstractmethod
    def ping(self, timeout: int = 3000) -> bool:
        """
        Check that the server answers the /ping endpoint
        :param timeout: Timeout in milliseconds
        :return: True if the server responded with a success status and the expected body
        """

    @abstractmethod
    def close(self):
        """
        Release connections owned by this client.  Transports supplied in the configuration are left open
        """
