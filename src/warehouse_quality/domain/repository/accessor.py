from __future__ import annotations

from typing import Iterator, Protocol, Sequence, runtime_checkable

import pandas as pd


@runtime_checkable
class DatasetAccessor(Protocol):
    """
    Read-only view over the storage engine.

    `scan` yields the dataset as a lazy sequence of DataFrame chunks with named
    columns; nulls are allowed. Repeated scans of the same dataset within one
    run must observe the same rows. Read failures raise `DataAccessError`.
    """

    def scan(
        self, dataset_id: str, columns: Sequence[str] | None = None
    ) -> Iterator[pd.DataFrame]: ...

    def snapshot_id(self) -> str: ...
