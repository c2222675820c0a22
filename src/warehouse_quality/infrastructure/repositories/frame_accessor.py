from __future__ import annotations

import uuid
from pathlib import Path
from typing import Iterator, Mapping, Sequence

import pandas as pd
from loguru import logger

from warehouse_quality.domain.errors import DataAccessError

DEFAULT_CHUNK_SIZE = 50_000


def _project(frame: pd.DataFrame, columns: Sequence[str] | None) -> pd.DataFrame:
    if not columns:
        return frame
    return frame[[column for column in columns if column in frame.columns]]


class InMemoryAccessor:
    """Frames held in memory, copied on construction so a run sees a fixed snapshot."""

    def __init__(
        self, frames: Mapping[str, pd.DataFrame], chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> None:
        self._frames = {name: frame.copy() for name, frame in frames.items()}
        self._chunk_size = chunk_size
        self._snapshot = f"memory:{uuid.uuid4().hex[:12]}"

    def snapshot_id(self) -> str:
        return self._snapshot

    def scan(
        self, dataset_id: str, columns: Sequence[str] | None = None
    ) -> Iterator[pd.DataFrame]:
        if dataset_id not in self._frames:
            raise DataAccessError(dataset_id, "no such dataset")
        frame = _project(self._frames[dataset_id], columns)
        if frame.empty:
            yield frame
            return
        for start in range(0, len(frame), self._chunk_size):
            yield frame.iloc[start : start + self._chunk_size]


class FileAccessor:
    """
    Datasets stored as files under a root directory.

    `silver.crm_cust_info` resolves to `<root>/silver/crm_cust_info.csv` (or
    `.parquet`); identifiers without a tier resolve directly under the root.
    """

    SUFFIXES = (".csv", ".parquet")

    def __init__(self, root: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if not root.is_dir():
            raise DataAccessError(str(root), "dataset root is not a directory")
        self._root = root
        self._chunk_size = chunk_size

    def snapshot_id(self) -> str:
        files = [p for p in self._root.rglob("*") if p.suffix in self.SUFFIXES]
        latest = max((p.stat().st_mtime for p in files), default=0.0)
        return f"files:{self._root}@{int(latest)}"

    def resolve(self, dataset_id: str) -> Path:
        relative = Path(*dataset_id.split("."))
        for suffix in self.SUFFIXES:
            candidate = self._root / relative.with_suffix(suffix)
            if candidate.is_file():
                return candidate
        raise DataAccessError(dataset_id, f"no csv or parquet file under {self._root}")

    def scan(
        self, dataset_id: str, columns: Sequence[str] | None = None
    ) -> Iterator[pd.DataFrame]:
        path = self.resolve(dataset_id)
        logger.debug("scanning {} from {}", dataset_id, path)
        try:
            if path.suffix == ".parquet":
                frame = _project(pd.read_parquet(path), columns)
                for start in range(0, max(len(frame), 1), self._chunk_size):
                    yield frame.iloc[start : start + self._chunk_size]
                return

            wanted = set(columns) if columns else None
            reader = pd.read_csv(
                path,
                chunksize=self._chunk_size,
                usecols=(lambda name: name in wanted) if wanted else None,
            )
            with reader:
                yield from reader
        except (OSError, ValueError, ImportError) as exc:
            raise DataAccessError(dataset_id, str(exc)) from exc
