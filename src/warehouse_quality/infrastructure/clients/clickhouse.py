from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from clickhouse_connect import get_client
from clickhouse_connect.driver.client import Client

from warehouse_quality.infrastructure.config import ClickHouseConfig


class ClickHouseFactory:

    def __init__(self, config: ClickHouseConfig) -> None:
        self._config = config

    @property
    def config(self) -> ClickHouseConfig:
        return self._config

    def create(self) -> Client:
        return get_client(
            host=self._config.host,
            port=self._config.port,
            username=self._config.username,
            password=self._config.password,
            database=self._config.database,
        )

    @contextmanager
    def connect(self) -> Iterator[Client]:
        # one client per caller: a client session does not allow concurrent queries
        client = self.create()
        try:
            yield client
        finally:
            client.close()
