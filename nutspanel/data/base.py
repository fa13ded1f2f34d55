"""
Abstract base class for static file sources.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any
import hashlib
import json
import logging

import pandas as pd
from diskcache import Cache

from config.settings import Settings, get_settings
from nutspanel.errors import SchemaError

logger = logging.getLogger(__name__)

CSV_ENCODINGS = ("utf-8", "latin-1", "cp1252")


class DataSource(ABC):
    """Abstract base class for all raw file sources.

    Parsed raw grids are cached in a diskcache keyed by the file's path,
    size and modification time, so a cached grid is always the same grid
    a fresh read would produce.
    """

    def __init__(self, settings: Settings | None = None, cache_dir: Path | None = None):
        self.settings = settings or get_settings()
        self._cache: Cache | None = None
        if self.settings.use_cache:
            self.cache_dir = cache_dir or self.settings.resolve(self.settings.cache_dir)
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self._cache = Cache(str(self.cache_dir / self.source_name))

    @property
    @abstractmethod
    def source_name(self) -> str:
        """Unique identifier for this data source."""
        pass

    @abstractmethod
    def load(self) -> pd.DataFrame:
        """Load the source into a normalized frame."""
        pass

    def _cache_key(self, path: Path, **params: Any) -> str:
        """Generate cache key from file identity and read parameters."""
        stat = path.stat()
        key_data = json.dumps(
            {
                "path": str(path.resolve()),
                "size": stat.st_size,
                "mtime_ns": stat.st_mtime_ns,
                **params,
            },
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(key_data.encode()).hexdigest()[:16]

    def get_cached(self, cache_key: str) -> pd.DataFrame | None:
        """Retrieve a raw grid from cache if available."""
        if self._cache is None:
            return None
        try:
            data = self._cache.get(cache_key)
            if data is not None:
                logger.debug(f"Cache hit for {self.source_name}: {cache_key}")
                return pd.DataFrame(data["data"], index=data["index"], columns=data["columns"])
        except Exception as e:
            logger.warning(f"Cache read error: {e}")
        return None

    def set_cached(self, cache_key: str, df: pd.DataFrame) -> None:
        """Store a raw grid in cache."""
        if self._cache is None:
            return
        try:
            self._cache.set(cache_key, df.to_dict("split"))
            logger.debug(f"Cached {self.source_name}: {cache_key}")
        except Exception as e:
            logger.warning(f"Cache write error: {e}")

    def clear_cache(self) -> None:
        """Clear all cached data for this source."""
        if self._cache is not None:
            self._cache.clear()
            logger.info(f"Cleared cache for {self.source_name}")

    def read_raw(self, path: Path, **params: Any) -> pd.DataFrame:
        """Read a raw file with caching."""
        if not path.exists():
            raise SchemaError(
                f"Raw input for {self.source_name} not found: {path}. "
                "Place the snapshot file under the raw data directory."
            )

        cache_key = self._cache_key(path, **params)
        cached = self.get_cached(cache_key)
        if cached is not None:
            return cached

        logger.info(f"Reading {self.source_name} from {path}")
        df = _read_raw_file(path, **params)
        self.set_cached(cache_key, df)
        return df


def _read_raw_file(path: Path, **params: Any) -> pd.DataFrame:
    """Read a raw file without interpreting headers or types."""
    suffix = path.suffix.lower()

    if suffix in (".xlsx", ".xls"):
        return pd.read_excel(
            path, sheet_name=params.get("sheet_name", 0), header=None, dtype=object
        )

    if suffix in (".csv", ".tsv", ".txt"):
        sep = params.get("delimiter") or ("\t" if suffix == ".tsv" else ",")
        # Wide exports are positional grids; long ones carry a header row
        header = None if params.get("format") == "wide" else "infer"
        for encoding in CSV_ENCODINGS:
            try:
                return pd.read_csv(path, sep=sep, dtype=str, encoding=encoding, header=header)
            except UnicodeDecodeError:
                continue
        raise SchemaError(f"Cannot decode {path} with any supported encoding")

    raise SchemaError(f"Unsupported file format for {path}: {suffix}")
