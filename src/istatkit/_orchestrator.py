"""
Download orchestration.

DownloadOrchestrator ties the other components together for one dataset:

    validate -> build descriptor -> execute (throttled, retried) -> normalize
             -> merge with existing data -> record in the download log

It also provides the batch, per-frequency and update-aware variants. Batches
run strictly sequentially: every request goes through the same rate limiter,
so running them concurrently would only make the server ban the client sooner.

Example:
    >>> orchestrator = DownloadOrchestrator()
    >>> result = orchestrator.download("150_908", start_time="2020")
    >>> result.success, len(result.data)
    (True, 1240)
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

import pandas as pd
from ulid import ULID

from istatkit._cache import DownloadLog
from istatkit._config import ISTAT, IstatConfig
from istatkit._errors import ErrorCategory, IstatError, ValidationError
from istatkit._filters import (
    build_frequency_filter,
    determine_latest_edition,
    find_edition_position,
    merge_filter,
)
from istatkit._metadata import MetadataService
from istatkit._models import ApiResult, DataFormat, EndpointKind, RequestDescriptor
from istatkit._normalize import VALUE_COLUMN, ResponseNormalizer, compute_checksum
from istatkit._transport import RetryingTransport
from istatkit._urls import URLBuilder, parse_format, url_builder_for

logger = logging.getLogger(__name__)

LATEST_EDITION = "latest"
DEFAULT_FREQUENCIES = ("A", "Q", "M")
NO_UPDATE_MESSAGE = "No update available"

_INCREMENTAL_PATTERN = re.compile(r"^\d{4}(-\d{2})?(-\d{2})?$")


def _normalize_incremental(value: date | str | None) -> str | None:
    if value is None or value is False:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and _INCREMENTAL_PATTERN.match(value.strip()):
        return value.strip()
    raise ValidationError(
        f"incremental must be a date or a string in 'YYYY', 'YYYY-MM' or 'YYYY-MM-DD' format, got: {value!r}"
    )


def merge_with_existing(existing: pd.DataFrame, new: pd.DataFrame) -> pd.DataFrame:
    """
    Combine previously downloaded rows with new ones, dropping overlaps.

    Rows are duplicates when every column except the observation value matches;
    the newly downloaded row wins.

    Example:
        >>> merged = merge_with_existing(old_frame, new_frame)
    """
    combined = pd.concat([existing, new], ignore_index=True)
    keys = [c for c in combined.columns if c not in (VALUE_COLUMN, "OBS_VALUE")]
    if not keys:
        return combined
    return combined.drop_duplicates(subset=keys, keep="last").reset_index(drop=True)


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True)
class BatchResult:
    """
    Outcome of ``download_many``.

    Attributes:
        batch_id: ULID of the batch, used as the log prefix.
        results: One ApiResult per dataset id, in input order.
    """
    batch_id: str
    results: dict[str, ApiResult] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[str]:
        return [dataset_id for dataset_id, r in self.results.items() if r.success]

    @property
    def failed(self) -> list[str]:
        return [dataset_id for dataset_id, r in self.results.items() if not r.success]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


class UpdateReason:
    FIRST_DOWNLOAD = "first_download"
    DATA_MODIFIED = "data_modified_since_last_download"
    NO_UPDATES = "no_updates_available"
    CHECK_FAILED = "check_failed"


@dataclass(frozen=True)
class UpdateStatus:
    """
    Whether a dataset changed since its last recorded download.

    Attributes:
        dataset_id: The dataset id.
        has_updates: True when a new download is needed.
        last_download: When the dataset was last downloaded, if ever.
        reason: One of the UpdateReason values.
        error: The failed result of the check, when reason is CHECK_FAILED.
    """
    dataset_id: str
    has_updates: bool
    last_download: datetime | None
    reason: str
    error: ApiResult | None = None


# =============================================================================
# Orchestrator
# =============================================================================


class DownloadOrchestrator:
    """
    Downloads datasets through the configured API surface.

    Args:
        transport: Retrying transport. Defaults to one built from ``ISTAT.config``.
        metadata: Metadata service (structure, editions, last update). Defaults
            to one sharing the transport.
        download_log: Download log. Defaults to the one in ``ISTAT.config.cache.cache_dir``.
        config: Full config. Defaults to ``ISTAT.config``.
        builder: URL builder. Defaults to the builder of ``config.http.api_surface``.
    """

    def __init__(
        self,
        transport: RetryingTransport | None = None,
        metadata: MetadataService | None = None,
        download_log: DownloadLog | None = None,
        config: IstatConfig | None = None,
        builder: URLBuilder | None = None,
    ):
        self.config = config or ISTAT.config
        self.transport = transport or RetryingTransport(
            config=self.config.rate_limit, timeout=self.config.http.timeout
        )
        self.builder = builder or url_builder_for(self.config.http.api_surface, self.config.http)
        self.metadata = metadata or MetadataService(transport=self.transport, builder=self.builder)
        self.download_log = download_log or DownloadLog(self.config.cache.cache_dir)
        self.normalizer = ResponseNormalizer(include_id=True)

    # -------------------------------------------------------------------------
    # Single dataset
    # -------------------------------------------------------------------------

    def download(
        self,
        dataset_id: str,
        filter: str | None = None,
        start_time: str | None = None,
        end_time: str | None = None,
        incremental: date | str | None = None,
        updated_after: datetime | date | str | None = None,
        check_update: bool = False,
        existing_data: pd.DataFrame | None = None,
        edition: str | None = None,
        frequency: str | None = None,
        fmt: str | DataFormat | None = None,
        **options: Any,
    ) -> ApiResult:
        """
        Download one dataset into a canonical table.

        Args:
            dataset_id: The dataset id (e.g. "150_908").
            filter: Filter key (defaults to the configured filter).
            start_time: First period to download.
            end_time: Last period to download.
            incremental: Download only from this period on; wins over start_time.
            updated_after: Only return observations changed after this instant.
            check_update: Skip the download when the server reports no update
                since the last recorded download.
            existing_data: Previously downloaded table to merge the new rows into.
            edition: Edition code to select, or "latest".
            frequency: Frequency code written at key position 1.
            fmt: "csv" (default) or "json".
            **options: Dialect-specific builder options (e.g. method="POST",
                detail, dim_filters).

        Returns:
            ApiResult whose data is the canonical DataFrame. On "no update",
            data is None and the message is "No update available".

        Raises:
            ValidationError: On invalid input, before any network call.
        """
        start_period = _normalize_incremental(incremental) or start_time
        data_format = parse_format(fmt or self.config.http.data_format)
        if data_format is DataFormat.XML:
            raise ValidationError("Only csv and json responses can be normalized into a table")

        def build(key: str | None) -> RequestDescriptor:
            return self.builder.build(
                EndpointKind.DATA,
                dataset_id,
                filter=key,
                start_period=start_period,
                end_period=end_time,
                updated_after=updated_after,
                fmt=data_format,
                **options,
            )

        # Periods, filter and options are validated here, before any request
        descriptor = build(filter)

        remote_last_update = None
        if check_update:
            remote_last_update = self.metadata.get_dataset_last_update(dataset_id)
            if not self._update_needed(dataset_id, remote_last_update):
                return ApiResult.ok(data=None, message=NO_UPDATE_MESSAGE)

        if edition is not None or frequency is not None:
            resolved = self._resolve_key(dataset_id, filter, edition, frequency)
            if isinstance(resolved, ApiResult):
                return resolved
            descriptor = build(resolved)

        logger.info(f"Downloading dataset {dataset_id} ({descriptor.dialect})")
        logger.debug(f"{descriptor.method} {descriptor.url}")
        result = self.transport.execute(descriptor)
        if not result.success:
            logger.warning(f"⚠️ Failed to download dataset {dataset_id}: {result.message}")
            return result

        try:
            table = self.normalizer.normalize(result.data.content, data_format, dataset_id)
        except IstatError as e:
            logger.warning(f"⚠️ Failed to process dataset {dataset_id}: {e}")
            return ApiResult.from_exception(e)

        frame, checksum = table.frame, table.checksum
        if existing_data is not None:
            frame = merge_with_existing(existing_data, frame)
            checksum = compute_checksum(frame)

        self.download_log.record(dataset_id, remote_last_update=remote_last_update, row_count=len(frame))

        short_checksum = f" (MD5: {checksum[:8]}...)" if checksum else ""
        message = f"Downloaded {table.row_count} rows for dataset {dataset_id}{short_checksum}"
        logger.info(message)
        return ApiResult.ok(data=frame, message=message, checksum=checksum)

    def _update_needed(self, dataset_id: str, remote_last_update: datetime | None) -> bool:
        if remote_last_update is None:
            logger.info(f"Last update of {dataset_id} unknown, downloading")
            return True
        entry = self.download_log.get(dataset_id)
        if entry is None or entry.remote_last_update is None:
            return True
        if remote_last_update > entry.remote_last_update:
            return True

        logger.info(
            f"Data unchanged since {entry.downloaded_at.isoformat()} "
            f"(last update: {remote_last_update.isoformat()})"
        )
        return False

    def _resolve_key(
        self,
        dataset_id: str,
        filter: str | None,
        edition: str | None,
        frequency: str | None,
    ) -> str | ApiResult:
        dimensions = self.metadata.get_dimensions(dataset_id)
        if not dimensions:
            return ApiResult.failure(
                ErrorCategory.UNKNOWN,
                f"Could not determine the dimensions of dataset {dataset_id}",
            )

        key = filter
        if frequency is not None:
            key = build_frequency_filter(frequency, len(dimensions), base=key)

        if edition is not None:
            position = find_edition_position(dimensions)
            if position is None:
                raise ValidationError(f"Dataset {dataset_id} has no EDITION dimension")
            if edition.lower() == LATEST_EDITION:
                available = (self.metadata.get_available_values(dataset_id, "EDITION") or {}).get("EDITION")
                if not available:
                    return ApiResult.failure(
                        ErrorCategory.UNKNOWN,
                        f"Could not determine the available editions of dataset {dataset_id}",
                    )
                edition = determine_latest_edition(available)
                logger.info(f"Latest edition of {dataset_id}: {edition}")
            key = merge_filter(key, {position: edition}, n_dims=len(dimensions))

        return key

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    def download_many(
        self,
        dataset_ids: Sequence[str],
        parallelism: int | None = None,
        **kwargs: Any,
    ) -> BatchResult:
        """
        Download several datasets one after the other.

        A failure only affects its own dataset. ``parallelism`` is accepted for
        compatibility and ignored.
        """
        batch_id = str(ULID())
        prefix = f"{batch_id[:26]:<26} | ISTAT |"
        if parallelism is not None:
            logger.debug(f"{prefix} parallelism={parallelism} ignored, downloads are sequential")
        if not dataset_ids:
            return BatchResult(batch_id=batch_id)

        logger.info(f"{prefix} Starting batch download of {len(dataset_ids)} datasets.")
        results: dict[str, ApiResult] = {}
        for seq, dataset_id in enumerate(dataset_ids):
            try:
                results[dataset_id] = self.download(dataset_id, **kwargs)
            except ValidationError as e:
                logger.error(f"{prefix} ❌ Invalid request for {dataset_id} (seq={seq}): {e}")
                results[dataset_id] = ApiResult.failure(ErrorCategory.UNKNOWN, str(e))
            except IstatError as e:
                logger.error(f"{prefix} ❌ Failed to download {dataset_id} (seq={seq}): {e}")
                results[dataset_id] = ApiResult.from_exception(e)
            status = "OK" if results[dataset_id].success else "FAILED"
            logger.info(f"{prefix}    | {dataset_id:<30} {status}")

        logger.info(f"{prefix} Batch download finished.")
        totals = Counter("success" if r.success else str(r.category) for r in results.values())
        for outcome, total in totals.items():
            logger.info(f"{prefix}    | total of datasets with outcome {outcome:<12} = {total}")

        return BatchResult(batch_id=batch_id, results=results)

    def download_by_frequency(
        self,
        dataset_id: str,
        frequencies: Sequence[str] | None = DEFAULT_FREQUENCIES,
        filter: str | None = None,
        **kwargs: Any,
    ) -> dict[str, ApiResult]:
        """
        Download a dataset once per frequency.

        Args:
            dataset_id: The dataset id.
            frequencies: Frequency codes to download. None asks the availability
                endpoint which frequencies the dataset actually has.
            filter: Base filter; its first position is replaced by each frequency.

        Returns:
            Mapping of frequency code to its ApiResult.
        """
        if frequencies is None:
            available = (self.metadata.get_available_values(dataset_id, "FREQ") or {}).get("FREQ")
            if not available:
                logger.warning(f"⚠️ Could not determine frequencies of {dataset_id}, downloading all data")
                return {"ALL": self.download(dataset_id, filter=filter, **kwargs)}
            frequencies = available
            logger.info(f"Found frequencies for {dataset_id}: {', '.join(frequencies)}")

        return {
            frequency: self.download(dataset_id, filter=filter, frequency=frequency, **kwargs)
            for frequency in frequencies
        }

    # -------------------------------------------------------------------------
    # Update tracking
    # -------------------------------------------------------------------------

    def check_update(self, dataset_id: str) -> UpdateStatus:
        """
        Ask the server whether a dataset changed since its last recorded download.

        Sends a data query with ``updatedAfter`` set to the last download time
        and ``lastNObservations=1``: any returned row means the dataset changed.
        """
        last_download = self.download_log.last_download(dataset_id)
        if last_download is None:
            return UpdateStatus(dataset_id, True, None, UpdateReason.FIRST_DOWNLOAD)

        descriptor = self.builder.build(
            EndpointKind.DATA,
            dataset_id,
            updated_after=last_download,
            last_n_observations=1,
        )
        result = self.transport.execute(descriptor)
        if not result.success:
            logger.warning(f"⚠️ Failed to check updates for dataset {dataset_id}: {result.message}")
            return UpdateStatus(dataset_id, False, last_download, UpdateReason.CHECK_FAILED, result)

        try:
            table = self.normalizer.normalize(result.data.content, descriptor.data_format, dataset_id)
            has_updates = table.row_count > 0
        except IstatError:
            # empty data message: nothing changed
            has_updates = False

        reason = UpdateReason.DATA_MODIFIED if has_updates else UpdateReason.NO_UPDATES
        logger.info(f"{'Updates' if has_updates else 'No updates'} for dataset {dataset_id}")
        return UpdateStatus(dataset_id, has_updates, last_download, reason)

    def check_updates(self, dataset_ids: Sequence[str]) -> list[UpdateStatus]:
        """Check several datasets for updates, sequentially."""
        logger.info(f"Checking {len(dataset_ids)} datasets for updates...")
        statuses = [self.check_update(dataset_id) for dataset_id in dataset_ids]
        updated = sum(1 for s in statuses if s.has_updates)
        logger.info(f"Update check complete: {updated} of {len(dataset_ids)} datasets have updates")
        return statuses

    def download_if_updated(self, dataset_id: str, force: bool = False, **kwargs: Any) -> ApiResult:
        """
        Download a dataset only when ``check_update`` reports changes (or when forced).

        Returns:
            The download result, or a successful result with ``data=None`` and
            message "No update available".
        """
        if force:
            logger.info(f"Force download requested for dataset {dataset_id}")
            return self.download(dataset_id, **kwargs)

        status = self.check_update(dataset_id)
        if not status.has_updates:
            if status.error is not None:
                return status.error
            logger.info(f"No updates available for dataset {dataset_id}. Skipping download.")
            return ApiResult.ok(data=None, message=NO_UPDATE_MESSAGE)

        return self.download(dataset_id, **kwargs)
