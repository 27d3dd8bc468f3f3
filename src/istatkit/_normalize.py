"""
Response normalization.

Turns raw SDMX-CSV or SDMX-JSON data messages into one canonical pandas
DataFrame, whatever dialect produced them:

    <dimension columns...> | ObsDimension | ObsValue

``ObsDimension`` holds the time period and ``ObsValue`` the numeric
observation. Columns that only describe the message itself (DATAFLOW,
STRUCTURE, STRUCTURE_ID, ...) are dropped.

Example:
    >>> table = ResponseNormalizer().normalize(csv_bytes, "csv", dataset_id="150_908")
    >>> list(table.frame.columns)
    ['FREQ', 'REF_AREA', 'ObsDimension', 'ObsValue']
"""

import hashlib
import io
import json
import logging
from dataclasses import dataclass
from typing import Any

import pandas as pd

from istatkit._errors import ParseError

logger = logging.getLogger(__name__)

TIME_COLUMN = "ObsDimension"
VALUE_COLUMN = "ObsValue"
ID_COLUMN = "id"

COLUMN_RENAMES = {
    "TIME_PERIOD": TIME_COLUMN,
    "OBS_VALUE": VALUE_COLUMN,
}
METADATA_COLUMNS = ("DATAFLOW", "STRUCTURE", "STRUCTURE_ID", "STRUCTURE_NAME", "ACTION")


@dataclass(frozen=True)
class NormalizedTable:
    """
    A canonical table and its checksum.

    Attributes:
        frame: The canonical DataFrame.
        checksum: MD5 hex digest of the table, or None when hashing is unavailable.
    """
    frame: pd.DataFrame
    checksum: str | None

    @property
    def row_count(self) -> int:
        return len(self.frame)


def compute_checksum(frame: pd.DataFrame) -> str | None:
    """
    Return the MD5 hex digest of a table's canonical CSV serialization.

    Returns None instead of failing when MD5 is not available (e.g. on
    FIPS-restricted interpreters).
    """
    payload = frame.to_csv(index=False).encode("utf-8")
    try:
        return hashlib.md5(payload, usedforsecurity=False).hexdigest()
    except ValueError as e:
        logger.debug(f"MD5 unavailable, checksum skipped: {e}")
        return None


def canonicalize(frame: pd.DataFrame, dataset_id: str | None = None) -> pd.DataFrame:
    """
    Rename, drop and reorder columns into the canonical schema.

    Raises:
        ParseError: If the table has no time or value column.
    """
    frame = frame.rename(columns=COLUMN_RENAMES)
    frame = frame.drop(columns=[c for c in METADATA_COLUMNS if c in frame.columns])

    missing = [c for c in (TIME_COLUMN, VALUE_COLUMN) if c not in frame.columns]
    if missing:
        raise ParseError(f"Parse error: response lacks required column(s) {missing}")

    frame[VALUE_COLUMN] = pd.to_numeric(frame[VALUE_COLUMN], errors="coerce")
    frame[TIME_COLUMN] = frame[TIME_COLUMN].astype(str)

    dimensions = [c for c in frame.columns if c not in (TIME_COLUMN, VALUE_COLUMN, ID_COLUMN)]
    ordered = [*dimensions, TIME_COLUMN, VALUE_COLUMN]
    if dataset_id is not None:
        frame[ID_COLUMN] = dataset_id
        ordered.insert(0, ID_COLUMN)
    return frame[ordered].reset_index(drop=True)


class ResponseNormalizer:
    """
    Parses data responses (CSV or JSON) into canonical tables.

    Args:
        include_id: When True, an ``id`` column with the dataset id is added first.
    """

    def __init__(self, include_id: bool = False):
        self.include_id = include_id

    def normalize(
        self,
        body: bytes | str,
        fmt: str = "csv",
        dataset_id: str | None = None,
    ) -> NormalizedTable:
        """
        Parse a response body into a canonical table.

        Args:
            body: Raw response body.
            fmt: "csv" or "json".
            dataset_id: Dataset id, used for the optional ``id`` column and logging.

        Raises:
            ParseError: If the body is empty, malformed or holds no rows.
        """
        text = body.decode("utf-8-sig", errors="replace") if isinstance(body, bytes) else body
        if not text or not text.strip():
            raise ParseError("Parse error: empty response body")

        match str(fmt).lower():
            case "csv":
                raw = self._parse_csv(text)
            case "json":
                raw = self._parse_json(text)
            case _:
                raise ParseError(f"Parse error: unsupported response format '{fmt}'")

        if raw.empty:
            raise ParseError("Parse error: no data rows in response")

        frame = canonicalize(raw, dataset_id if self.include_id else None)
        checksum = compute_checksum(frame)
        logger.debug(f"Normalized {len(frame)} rows for {dataset_id or 'response'} (checksum={checksum})")
        return NormalizedTable(frame=frame, checksum=checksum)

    # -------------------------------------------------------------------------
    # CSV
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse_csv(text: str) -> pd.DataFrame:
        try:
            return pd.read_csv(
                io.StringIO(text),
                dtype=str,
                keep_default_na=False,
                na_values=["", "NA"],
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError, ValueError) as e:
            raise ParseError(f"Failed to parse CSV response: {e}") from e

    # -------------------------------------------------------------------------
    # SDMX-JSON
    # -------------------------------------------------------------------------

    def _parse_json(self, text: str) -> pd.DataFrame:
        try:
            message = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"Failed to parse JSON response: {e}") from e

        data = message.get("data", message) if isinstance(message, dict) else None
        if not isinstance(data, dict):
            raise ParseError("Failed to parse JSON response: missing 'data' object")

        structure = data.get("structure")
        if structure is None:
            structures = data.get("structures") or []
            structure = structures[0] if structures else None
        datasets = data.get("dataSets") or []
        if not isinstance(structure, dict) or not datasets:
            raise ParseError("Failed to parse JSON response: missing structure or dataSets")

        dimensions = structure.get("dimensions", {})
        series_dims = dimensions.get("series", [])
        obs_dims = dimensions.get("observation", [])
        try:
            rows = list(self._json_rows(datasets[0], series_dims, obs_dims))
            columns = [d["id"] for d in series_dims] + [d["id"] for d in obs_dims] + ["OBS_VALUE"]
            return pd.DataFrame(rows, columns=columns)
        except (KeyError, IndexError, ValueError, TypeError) as e:
            raise ParseError(f"Failed to parse JSON response: {e}") from e

    @staticmethod
    def _decode_key(key: str, dims: list[dict[str, Any]]) -> list[str]:
        if not dims:
            return []
        indexes = [int(i) for i in key.split(":")]
        if len(indexes) != len(dims):
            raise ValueError(f"key '{key}' has {len(indexes)} positions but the structure declares {len(dims)}")
        return [str(dims[pos]["values"][idx]["id"]) for pos, idx in enumerate(indexes)]

    def _json_rows(
        self,
        dataset: dict[str, Any],
        series_dims: list[dict[str, Any]],
        obs_dims: list[dict[str, Any]],
    ):
        # dimensionAtObservation=AllDimensions: observations sit directly on the dataset
        if "series" not in dataset:
            for obs_key, values in (dataset.get("observations") or {}).items():
                yield [*self._decode_key(obs_key, obs_dims), values[0] if values else None]
            return

        for series_key, series in dataset["series"].items():
            series_values = self._decode_key(series_key, series_dims)
            for obs_key, values in (series.get("observations") or {}).items():
                yield [*series_values, *self._decode_key(obs_key, obs_dims), values[0] if values else None]
