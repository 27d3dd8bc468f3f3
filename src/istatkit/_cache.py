"""
On-disk metadata cache with staggered expirations.

Layout (all JSON, under ``cache_dir``):

    dataflows.json           {"fetched_at": ..., "dataflows": [...]}
    codelists.json           {codelist_id: {code: label}}
    dataset_codelists.json   {dataset_id: {"dimensions": [...], "codelists": {dim: codelist_id}}}
    codelist_metadata.json   {codelist_id: {"first_download", "last_refresh", "ttl_days"}}
    download_log.json        {"version": "1.0", "datasets": {dataset_id: {...}}}

Codelists are stored once per codelist id, however many datasets reference
them. Each codelist gets its own TTL, derived from a stable hash of its id, so
expirations spread over a window instead of all falling on the same day.

Every write replaces the file atomically.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from istatkit._errors import IstatError
from istatkit._utils import fnv1a_32, load_json_file, save_json_file

logger = logging.getLogger(__name__)

DATAFLOWS_FILE = "dataflows.json"
CODELISTS_FILE = "codelists.json"
DATASET_CODELISTS_FILE = "dataset_codelists.json"
CODELIST_METADATA_FILE = "codelist_metadata.json"
DOWNLOAD_LOG_FILE = "download_log.json"
DOWNLOAD_LOG_VERSION = "1.0"

_ROOT_ID_PATTERN = re.compile(r"^(\d+_\d+)(?:_|$)")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def compute_ttl(key: str, base_ttl: int = 14, jitter_days: int = 14) -> int:
    """
    Return the TTL in days of a cache key.

    ``base_ttl + fnv1a_32(key) % jitter_days``. The value depends only on the
    key and the two parameters, so it is the same in every process and run.

    Example:
        >>> compute_ttl("CL_FREQ") == compute_ttl("CL_FREQ")
        True
        >>> 14 <= compute_ttl("CL_FREQ") < 28
        True
    """
    assert base_ttl > 0, "base_ttl must be greater than 0"
    assert jitter_days >= 0, "jitter_days must be >= 0"

    if jitter_days == 0:
        return base_ttl
    return base_ttl + fnv1a_32(key) % jitter_days


def extract_root_id(dataset_id: str) -> str:
    """
    Return the root id of a compound dataset id.

    Example:
        >>> extract_root_id("534_49_DF_DCSC_GI_ORE_10")
        '534_49'
        >>> extract_root_id("150_908")
        '150_908'
    """
    match = _ROOT_ID_PATTERN.match(dataset_id)
    return match.group(1) if match else dataset_id


# =============================================================================
# Codelist cache
# =============================================================================


@dataclass(frozen=True)
class CodelistMetadata:
    """
    Freshness record of one cached codelist.

    Attributes:
        codelist_id: The codelist id (e.g. "CL_FREQ").
        first_download: When the codelist was first cached.
        last_refresh: When the codelist was last downloaded.
        ttl_days: Lifetime in days after the last refresh.
    """
    codelist_id: str
    first_download: datetime
    last_refresh: datetime
    ttl_days: int

    @property
    def expires_at(self) -> datetime:
        return self.last_refresh + timedelta(days=self.ttl_days)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "first_download": _to_iso(self.first_download),
            "last_refresh": _to_iso(self.last_refresh),
            "ttl_days": self.ttl_days,
        }

    @classmethod
    def from_dict(cls, codelist_id: str, data: Mapping[str, Any]) -> CodelistMetadata:
        return cls(
            codelist_id=codelist_id,
            first_download=_from_iso(data["first_download"]),
            last_refresh=_from_iso(data["last_refresh"]),
            ttl_days=int(data["ttl_days"]),
        )


class MetadataCache:
    """
    Staggered-TTL cache for the dataflow catalogue and codelists.

    Args:
        cache_dir: Directory holding the JSON files. Defaults to ``ISTAT.config.cache.cache_dir``.
        base_ttl_days: Minimum codelist lifetime.
        jitter_days: Width of the window over which codelist expirations spread.
        dataflow_ttl_days: Lifetime of the dataflow catalogue.
        clock: Returns the current UTC datetime (injectable for tests).

    Example:
        >>> cache = MetadataCache("meta")
        >>> cache.store_codelists("150_908", {"CL_FREQ": {"M": "mensile"}}, {"FREQ": "CL_FREQ"})
        >>> cache.get_codelist("CL_FREQ")
        {'M': 'mensile'}
    """

    def __init__(
        self,
        cache_dir: str | Path | None = None,
        base_ttl_days: int | None = None,
        jitter_days: int | None = None,
        dataflow_ttl_days: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        from istatkit._config import ISTAT

        cfg = ISTAT.config.cache
        self.cache_dir = Path(cache_dir if cache_dir is not None else cfg.cache_dir)
        self.base_ttl_days = base_ttl_days if base_ttl_days is not None else cfg.codelist_base_ttl_days
        self.jitter_days = jitter_days if jitter_days is not None else cfg.codelist_jitter_days
        self.dataflow_ttl_days = dataflow_ttl_days if dataflow_ttl_days is not None else cfg.dataflow_ttl_days
        self._clock = clock

        assert self.base_ttl_days > 0, "base_ttl_days must be greater than 0"
        assert self.jitter_days >= 0, "jitter_days must be >= 0"
        assert self.dataflow_ttl_days > 0, "dataflow_ttl_days must be greater than 0"

    def _path(self, name: str) -> Path:
        return self.cache_dir / name

    def ttl_for(self, codelist_id: str) -> int:
        return compute_ttl(codelist_id, self.base_ttl_days, self.jitter_days)

    # -------------------------------------------------------------------------
    # Dataflow catalogue
    # -------------------------------------------------------------------------

    def load_dataflows(self) -> list[dict[str, Any]] | None:
        """Return the cached catalogue rows, or None if never cached."""
        content = load_json_file(self._path(DATAFLOWS_FILE))
        if not isinstance(content, dict):
            return None
        return content.get("dataflows")

    def save_dataflows(self, rows: Sequence[Mapping[str, Any]]) -> None:
        save_json_file(
            {"fetched_at": _to_iso(self._clock()), "dataflows": [dict(r) for r in rows]},
            self._path(DATAFLOWS_FILE),
        )
        logger.info(f"Cached {len(rows)} dataflows in {self.cache_dir}")

    def dataflows_expired(self) -> bool:
        """True when the catalogue is missing or older than ``dataflow_ttl_days``."""
        content = load_json_file(self._path(DATAFLOWS_FILE))
        if not isinstance(content, dict) or not content.get("fetched_at"):
            return True
        fetched_at = _from_iso(content["fetched_at"])
        return self._clock() >= fetched_at + timedelta(days=self.dataflow_ttl_days)

    # -------------------------------------------------------------------------
    # Codelists
    # -------------------------------------------------------------------------

    def _load_metadata(self) -> dict[str, dict[str, Any]]:
        return load_json_file(self._path(CODELIST_METADATA_FILE), default={})

    def store_codelists(
        self,
        dataset_id: str,
        codelists: Mapping[str, Mapping[str, str]],
        dimensions: Mapping[str, str | None],
    ) -> None:
        """
        Store the codelists of a dataset and its dimension → codelist references.

        Codelists already cached are replaced and their ``last_refresh`` is
        updated; ``first_download`` is kept.

        Args:
            dataset_id: The dataset the codelists belong to.
            codelists: Mapping of codelist id to {code: label}.
            dimensions: Dimension ids in key order, mapped to their codelist id (or None).
        """
        now = self._clock()
        payloads = load_json_file(self._path(CODELISTS_FILE), default={})
        metadata = self._load_metadata()

        for codelist_id, codes in codelists.items():
            payloads[codelist_id] = dict(codes)
            metadata[codelist_id] = self._touch(codelist_id, metadata.get(codelist_id), now).to_dict()

        references = load_json_file(self._path(DATASET_CODELISTS_FILE), default={})
        references[dataset_id] = {
            "dimensions": list(dimensions.keys()),
            "codelists": {dim: cl for dim, cl in dimensions.items() if cl},
        }

        save_json_file(payloads, self._path(CODELISTS_FILE))
        save_json_file(metadata, self._path(CODELIST_METADATA_FILE))
        save_json_file(references, self._path(DATASET_CODELISTS_FILE))
        logger.info(f"Cached {len(codelists)} codelists for dataset {dataset_id}")

    def _touch(self, codelist_id: str, existing: Mapping[str, Any] | None, now: datetime) -> CodelistMetadata:
        first_download = _from_iso(existing.get("first_download")) if existing else None
        return CodelistMetadata(
            codelist_id=codelist_id,
            first_download=first_download or now,
            last_refresh=now,
            ttl_days=self.ttl_for(codelist_id),
        )

    def get_codelist(self, codelist_id: str) -> dict[str, str] | None:
        return load_json_file(self._path(CODELISTS_FILE), default={}).get(codelist_id)

    def get_dataset_codelists(self, dataset_id: str) -> dict[str, Any] | None:
        """
        Return ``{"dimensions": [...], "codelists": {dim: codelist_id}}`` for a dataset.

        Falls back to the root id of compound dataset ids.
        """
        references = load_json_file(self._path(DATASET_CODELISTS_FILE), default={})
        entry = references.get(dataset_id)
        if entry is None:
            entry = references.get(extract_root_id(dataset_id))
        return entry

    def datasets_using(self, codelist_id: str) -> list[str]:
        references = load_json_file(self._path(DATASET_CODELISTS_FILE), default={})
        return [ds for ds, entry in references.items() if codelist_id in entry.get("codelists", {}).values()]

    def codelist_metadata(self, codelist_id: str) -> CodelistMetadata | None:
        entry = self._load_metadata().get(codelist_id)
        return CodelistMetadata.from_dict(codelist_id, entry) if entry else None

    def cached_codelist_ids(self) -> list[str]:
        return sorted(self._load_metadata())

    def check_expiration(self, keys: Iterable[str] | None = None, force_check: bool = False) -> list[str]:
        """
        Return the cached codelist ids whose TTL has elapsed.

        Args:
            keys: Codelist ids to check (default: every cached codelist). Unknown
                ids are ignored.
            force_check: Treat every checked codelist as expired.
        """
        metadata = self._load_metadata()
        candidates = sorted(metadata) if keys is None else [k for k in keys if k in metadata]
        if force_check:
            return candidates

        now = self._clock()
        return [
            key for key in candidates
            if CodelistMetadata.from_dict(key, metadata[key]).is_expired(now)
        ]

    def refresh(
        self,
        fetcher: Callable[[str], Mapping[str, str] | None],
        keys: Iterable[str] | None = None,
        force: bool = False,
    ) -> list[str]:
        """
        Download again the expired codelists (or all of them when forced).

        Args:
            fetcher: Returns the fresh {code: label} mapping of a codelist id, or
                None when it is no longer available.
            keys: Restrict the refresh to these codelist ids.
            force: Refresh regardless of expiration.

        Returns:
            The ids actually refreshed. A codelist whose download fails keeps
            its current payload and is retried on the next refresh.
        """
        expired = self.check_expiration(keys, force_check=force)
        if not expired:
            logger.info("All cached codelists are fresh")
            return []

        logger.info(f"Refreshing {len(expired)} codelist(s): {', '.join(expired)}")
        payloads = load_json_file(self._path(CODELISTS_FILE), default={})
        metadata = self._load_metadata()
        refreshed: list[str] = []
        now = self._clock()

        for codelist_id in expired:
            try:
                codes = fetcher(codelist_id)
            except IstatError as e:
                logger.warning(f"⚠️ Could not refresh codelist {codelist_id}: {e}")
                continue
            if codes is None:
                logger.warning(f"⚠️ Codelist {codelist_id} is no longer available upstream")
                continue
            payloads[codelist_id] = dict(codes)
            metadata[codelist_id] = self._touch(codelist_id, metadata.get(codelist_id), now).to_dict()
            refreshed.append(codelist_id)

        if refreshed:
            save_json_file(payloads, self._path(CODELISTS_FILE))
            save_json_file(metadata, self._path(CODELIST_METADATA_FILE))
        return refreshed

    def evict(self, codelist_id: str) -> bool:
        """Remove a codelist and its metadata. Returns False if it was not cached."""
        payloads = load_json_file(self._path(CODELISTS_FILE), default={})
        metadata = self._load_metadata()
        if codelist_id not in payloads and codelist_id not in metadata:
            return False

        payloads.pop(codelist_id, None)
        metadata.pop(codelist_id, None)
        save_json_file(payloads, self._path(CODELISTS_FILE))
        save_json_file(metadata, self._path(CODELIST_METADATA_FILE))
        logger.info(f"Evicted codelist {codelist_id}")
        return True


# =============================================================================
# Download log
# =============================================================================


@dataclass(frozen=True)
class DownloadLogEntry:
    """
    Record of the last successful download of a dataset.

    Attributes:
        dataset_id: The dataset id.
        downloaded_at: When the download completed (UTC).
        remote_last_update: The server's last-update timestamp at that time, if known.
        row_count: Number of rows downloaded.
    """
    dataset_id: str
    downloaded_at: datetime
    remote_last_update: datetime | None = None
    row_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "downloaded_at": _to_iso(self.downloaded_at),
            "remote_last_update": _to_iso(self.remote_last_update),
            "row_count": self.row_count,
        }

    @classmethod
    def from_dict(cls, dataset_id: str, data: Mapping[str, Any]) -> DownloadLogEntry:
        return cls(
            dataset_id=dataset_id,
            downloaded_at=_from_iso(data["downloaded_at"]),
            remote_last_update=_from_iso(data.get("remote_last_update")),
            row_count=data.get("row_count"),
        )


class DownloadLog:
    """
    Per-dataset log of successful downloads, used for update detection.

    Args:
        cache_dir: Directory holding ``download_log.json``.
        clock: Returns the current UTC datetime (injectable for tests).
    """

    def __init__(self, cache_dir: str | Path | None = None, clock: Callable[[], datetime] = _utcnow):
        if cache_dir is None:
            from istatkit._config import ISTAT

            cache_dir = ISTAT.config.cache.cache_dir
        self.path = Path(cache_dir) / DOWNLOAD_LOG_FILE
        self._clock = clock

    def _load(self) -> dict[str, Any]:
        content = load_json_file(self.path)
        if not isinstance(content, dict) or "datasets" not in content:
            return {"version": DOWNLOAD_LOG_VERSION, "datasets": {}}
        return content

    def get(self, dataset_id: str) -> DownloadLogEntry | None:
        entry = self._load()["datasets"].get(dataset_id)
        return DownloadLogEntry.from_dict(dataset_id, entry) if entry else None

    def record(
        self,
        dataset_id: str,
        remote_last_update: datetime | None = None,
        row_count: int | None = None,
    ) -> DownloadLogEntry:
        """Overwrite the log entry of a dataset after a successful download."""
        content = self._load()
        entry = DownloadLogEntry(
            dataset_id=dataset_id,
            downloaded_at=self._clock(),
            remote_last_update=remote_last_update,
            row_count=row_count,
        )
        content["datasets"][dataset_id] = entry.to_dict()
        save_json_file(content, self.path)
        logger.debug(f"Download log updated for {dataset_id}")
        return entry

    def last_download(self, dataset_id: str) -> datetime | None:
        entry = self.get(dataset_id)
        return entry.downloaded_at if entry else None

    def all(self) -> dict[str, DownloadLogEntry]:
        return {
            dataset_id: DownloadLogEntry.from_dict(dataset_id, entry)
            for dataset_id, entry in self._load()["datasets"].items()
        }
