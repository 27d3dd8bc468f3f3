"""
File client for the demographic portal (demo.istat.it).

Downloads are cached under ``{cache_dir}/{code}/{filename}``. Before reusing a
cached file the client asks the server for its Last-Modified date with a HEAD
request; when the server does not answer (or omits the header) the file is
reused until it is older than ``max_age_days``.

Example:
    >>> client = DemoClient()
    >>> result = client.download("POS", year=2025, territory="Italia")
    >>> result.data.shape
    (202, 9)
"""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import unquote

import pandas as pd

from istatkit._errors import ParseError, ValidationError
from istatkit._metadata import parse_timestamp
from istatkit._models import ApiResult
from istatkit._transport import RetryingTransport
from istatkit._utils import save_bytes_file
from istatkit.demo._registry import get_demo_dataset_info
from istatkit.demo._urls import build_demo_url, resolve_downloadable

logger = logging.getLogger(__name__)

CACHE_STATUS_COLUMNS = ("code", "file", "size_mb", "modified", "age_days")
_SECONDS_PER_DAY = 86400.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


class FileUpdateReason:
    NOT_CACHED = "not_cached"
    SERVER_NEWER = "server_newer"
    UP_TO_DATE = "up_to_date"
    AGE_EXCEEDED = "age_exceeded"
    WITHIN_AGE_LIMIT = "within_age_limit"


@dataclass(frozen=True)
class FileUpdateCheck:
    """Whether a cached portal file must be downloaded again, and why."""
    needs_update: bool
    reason: str


# =============================================================================
# File reading
# =============================================================================

def read_demo_csv(content: bytes, name: str = "<csv>") -> pd.DataFrame:
    """
    Parse one portal CSV file.

    The portal mixes encodings and separators across datasets: UTF-8 is tried
    first with Latin-1 as fallback, and the separator is sniffed from the
    first lines.

    Raises:
        ParseError: If the file cannot be parsed.
    """
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning(f"⚠️ UTF-8 failed for '{name}', retrying with Latin-1")
        text = content.decode("latin-1")

    sample = "\n".join(text.splitlines()[:5])
    try:
        separator = csv.Sniffer().sniff(sample, delimiters=",;\t|").delimiter
    except csv.Error:
        separator = ","

    try:
        return pd.read_csv(io.StringIO(text), sep=separator)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ParseError(f"Failed to parse CSV file '{name}': {e}") from e


def extract_demo_csv(path: Path) -> pd.DataFrame:
    """
    Read the CSV content of a cached portal file.

    ZIP archives may hold several CSV files; they are stacked into one table.
    Plain CSV files are read directly.

    Raises:
        ParseError: If the archive is corrupt or holds no CSV file.
    """
    if not zipfile.is_zipfile(path):
        return read_demo_csv(path.read_bytes(), path.name)

    try:
        with zipfile.ZipFile(path) as archive:
            names = archive.namelist()
            csv_names = [n for n in names if n.lower().endswith(".csv")]
            if not csv_names:
                raise ParseError(
                    f"No CSV files found inside ZIP archive: {path}. Archive contains: {', '.join(names)}"
                )
            logger.info(f"Extracting {len(csv_names)} CSV file(s) from {path.name}")
            frames = [read_demo_csv(archive.read(n), n) for n in csv_names]
    except zipfile.BadZipFile as e:
        raise ParseError(f"Corrupt ZIP archive {path}: {e}") from e

    if len(frames) == 1:
        return frames[0]
    return pd.concat(frames, ignore_index=True)


# =============================================================================
# Client
# =============================================================================

class DemoClient:
    """
    Downloads and caches files from the demographic portal.

    Args:
        transport: Transport for HEAD and GET requests. Defaults to a
            RetryingTransport sharing the process-wide rate limiter.
        cache_dir: Cache root. Defaults to ``ISTAT.config.demo.cache_dir``.
        base_url: Portal base URL. Defaults to ``ISTAT.config.demo.base_url``.
        max_age_days: Age limit used when Last-Modified is unavailable.
            Defaults to ``ISTAT.config.demo.max_age_days``.
        clock: Returns the current aware datetime (injectable for tests).
    """

    def __init__(
        self,
        transport: RetryingTransport | None = None,
        cache_dir: str | Path | None = None,
        base_url: str | None = None,
        max_age_days: int | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        from istatkit._config import ISTAT
        demo_config = ISTAT.config.demo

        self.transport = transport or RetryingTransport()
        self.cache_dir = Path(cache_dir or demo_config.cache_dir)
        self.base_url = base_url or demo_config.base_url
        self.max_age_days = max_age_days or demo_config.max_age_days
        self.clock = clock

        assert self.max_age_days > 0, "max_age_days must be greater than 0"

    def cache_path(self, code: str, filename: str) -> Path:
        """Return where a dataset file is cached: ``{cache_dir}/{code}/{filename}``."""
        if not code or not filename:
            raise ValidationError("'code' and 'filename' must be non-empty strings")
        return self.cache_dir / code.lower() / unquote(filename)

    def _age_days(self, path: Path) -> float:
        return (self.clock().timestamp() - path.stat().st_mtime) / _SECONDS_PER_DAY

    def check_update(self, url: str, path: Path) -> FileUpdateCheck:
        """
        Decide whether a cached file must be downloaded again.

        Reasons:
            not_cached: No cached file.
            server_newer: Server Last-Modified is newer than the cached file.
            up_to_date: Server Last-Modified is not newer.
            age_exceeded / within_age_limit: Last-Modified unavailable, the
                cached file age was compared to ``max_age_days``.
        """
        if not path.exists():
            logger.info(f"Cached file not found, download required: {path.name}")
            return FileUpdateCheck(True, FileUpdateReason.NOT_CACHED)

        head = self.transport.head(url)
        last_modified = parse_timestamp(head.data.header("Last-Modified")) if head.success else None
        if last_modified is not None:
            local_mtime = datetime.fromtimestamp(path.stat().st_mtime, UTC)
            if last_modified > local_mtime:
                logger.info(
                    f"Server file is newer (server: {last_modified:%Y-%m-%d %H:%M:%S}, "
                    f"local: {local_mtime:%Y-%m-%d %H:%M:%S})"
                )
                return FileUpdateCheck(True, FileUpdateReason.SERVER_NEWER)
            logger.info(f"Cached file is up to date: {path.name}")
            return FileUpdateCheck(False, FileUpdateReason.UP_TO_DATE)

        if head.success:
            logger.warning("⚠️ No Last-Modified header, falling back to age-based check")
        else:
            logger.warning("⚠️ HEAD request failed, falling back to age-based check")

        age = self._age_days(path)
        if age > self.max_age_days:
            logger.info(f"Cached file age ({age:.1f} days) exceeds maximum ({self.max_age_days} days)")
            return FileUpdateCheck(True, FileUpdateReason.AGE_EXCEEDED)
        logger.info(f"Cached file age ({age:.1f} days) is within limit ({self.max_age_days} days)")
        return FileUpdateCheck(False, FileUpdateReason.WITHIN_AGE_LIMIT)

    # -------------------------------------------------------------------------
    # Downloads
    # -------------------------------------------------------------------------

    def download(self, code: str, force: bool = False, **params) -> ApiResult:
        """
        Download (or reuse from cache) one dataset file and parse it.

        Args:
            code: Registry code.
            force: Download even if a valid cached copy exists.
            **params: File selection parameters (year, territory, level, type,
                data_type, geo_level, subtype).

        Returns:
            An ApiResult whose ``data`` is the parsed DataFrame.

        Raises:
            ValidationError: On unknown or interactive-only codes and invalid
                parameters (from the URL builders).
        """
        dataset = resolve_downloadable(code)
        url = build_demo_url(code, base_url=self.base_url, **params)
        path = self.cache_path(code, url.rsplit("/", 1)[-1])

        year = params.get("year")
        year_label = f" for year {year}" if year is not None else ""
        logger.info(f"Downloading {code} ({dataset.description_en}){year_label}...")

        if force or self.check_update(url, path).needs_update:
            result = self.transport.get_with_retry(url)
            if not result.success:
                logger.error(f"❌ Failed to download dataset '{code}' from demo.istat.it: {result.message}")
                return result
            save_bytes_file(result.data.content, path)
            logger.info(f"Download complete: {len(result.data.content)} bytes")
        else:
            logger.info(f"Using cached file: {path}")

        try:
            frame = extract_demo_csv(path)
        except ParseError as e:
            logger.error(f"❌ {e}")
            return ApiResult.from_exception(e)

        logger.info(f"✅ Extracted {len(frame)} rows from {path.name}")
        return ApiResult.ok(data=frame, message=f"Read {len(frame)} rows from {path.name}")

    def download_multi(self, code: str, years: Iterable[int], force: bool = False, **params) -> ApiResult:
        """
        Download one dataset for several years and stack the tables.

        A ``year`` column is added when the files lack one. Failed years are
        logged and skipped; the result fails only when every year failed.
        """
        years = [int(y) for y in years]
        if not years:
            raise ValidationError("'years' must be a non-empty sequence of integers")

        frames: list[pd.DataFrame] = []
        failed: list[int] = []
        for idx, year in enumerate(years, start=1):
            logger.info(f"Processing year {year} ({idx}/{len(years)})")
            try:
                result = self.download(code, force=force, year=year, **params)
            except ValidationError as e:
                logger.warning(f"⚠️ Failed to download {code} for year {year}: {e}")
                failed.append(year)
                continue
            if not result.success:
                failed.append(year)
                continue

            frame = result.data
            if "year" not in frame.columns:
                frame = frame.assign(year=year)
            frames.append(frame)

        if not frames:
            logger.warning(f"⚠️ All years failed for dataset '{code}'. No data returned.")
            return ApiResult.ok(data=pd.DataFrame(), message=f"All years failed for dataset '{code}'")
        if failed:
            logger.warning(f"⚠️ Completed with {len(failed)} failed year(s): {', '.join(map(str, failed))}")

        combined = pd.concat(frames, ignore_index=True)
        logger.info(f"Combined {len(combined)} rows across {len(frames)} year(s)")
        return ApiResult.ok(data=combined, message=f"Combined {len(combined)} rows across {len(frames)} year(s)")

    def download_batch(self, codes: Iterable[str], force: bool = False, **params) -> dict[str, pd.DataFrame]:
        """
        Download several datasets with the same parameters.

        Returns:
            Tables keyed by code; failed codes are logged and left out.
        """
        codes = list(codes)
        if not codes or any(not c for c in codes):
            raise ValidationError("'codes' must be a non-empty sequence of non-empty codes")

        tables: dict[str, pd.DataFrame] = {}
        failed: list[str] = []
        for idx, code in enumerate(codes, start=1):
            logger.info(f"Batch download: dataset {code} ({idx}/{len(codes)})")
            try:
                result = self.download(code, force=force, **params)
            except ValidationError as e:
                logger.warning(f"⚠️ Failed to download dataset '{code}': {e}")
                failed.append(code)
                continue
            if result.success:
                tables[code] = result.data
            else:
                failed.append(code)

        if failed:
            logger.warning(
                f"⚠️ Batch complete. Succeeded: {len(tables)}/{len(codes)}. Failed: {', '.join(failed)}"
            )
        else:
            logger.info(f"✅ Batch complete. All {len(codes)} dataset(s) downloaded successfully.")
        return tables

    # -------------------------------------------------------------------------
    # Cache maintenance
    # -------------------------------------------------------------------------

    def _cached_files(self, root: Path) -> list[Path]:
        if not root.is_dir():
            return []
        return sorted(p for p in root.rglob("*") if p.is_file() and not p.name.startswith("."))

    def cache_status(self) -> pd.DataFrame:
        """List cached files with their size (MB), modification time and age (days)."""
        rows = []
        for path in self._cached_files(self.cache_dir):
            relative = path.relative_to(self.cache_dir)
            stat = path.stat()
            rows.append({
                "code": relative.parts[0].upper() if len(relative.parts) >= 2 else None,
                "file": path.name,
                "size_mb": round(stat.st_size / (1024 * 1024), 2),
                "modified": datetime.fromtimestamp(stat.st_mtime, UTC),
                "age_days": round(self._age_days(path), 1),
            })
        return pd.DataFrame(rows, columns=list(CACHE_STATUS_COLUMNS))

    def clean_cache(self, code: str | None = None, max_age_days: float | None = None) -> int:
        """
        Remove cached files, optionally only for one dataset or older than an age.

        Returns:
            The number of files removed.
        """
        if max_age_days is not None and max_age_days < 0:
            raise ValidationError("'max_age_days' must be a non-negative number")

        if code is not None:
            get_demo_dataset_info(code)
            root = self.cache_dir / code.lower()
        else:
            root = self.cache_dir

        files = self._cached_files(root)
        if max_age_days is not None:
            files = [p for p in files if self._age_days(p) > max_age_days]
        if not files:
            logger.info("No cached files match the removal criteria")
            return 0
        if code is None and max_age_days is None:
            logger.warning(f"⚠️ Removing ALL {len(files)} cached demo file(s) from '{self.cache_dir}'")

        removed = 0
        for path in files:
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"⚠️ Failed to remove '{path}': {e}")

        # Drop dataset directories left empty
        subdirs = [root] if code is not None else [d for d in root.iterdir() if d.is_dir()]
        for directory in subdirs:
            if directory.is_dir() and not any(directory.iterdir()):
                directory.rmdir()

        logger.info(f"Removed {removed} cached demo file(s)")
        return removed
