"""
Metadata retrieval on top of the cache.

MetadataService answers catalogue and structure questions (which dataflows
exist, which dimensions a dataset has, which codes each dimension accepts,
when a dataset was last updated) and keeps the answers in a MetadataCache so
that repeated calls do not hit the network.

Lookups never raise on network or parse failures: they log a warning and
return None (or the stale cached value when there is one). Invalid input
still raises ValidationError.

Example:
    >>> service = MetadataService()
    >>> service.get_dimension_positions("150_908")
    {'FREQ': 1, 'REF_AREA': 2, 'DATA_TYPE': 3, ...}
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import pandas as pd

from istatkit._cache import MetadataCache
from istatkit._errors import ParseError
from istatkit._http import HttpResponse
from istatkit._models import ContentCategory, DataFormat, Dialect, EndpointKind
from istatkit._transport import RetryingTransport
from istatkit._urls import URLBuilder, accept_header, url_builder_for

logger = logging.getLogger(__name__)

LAST_UPDATE_ANNOTATION = "LAST_UPDATE"
DATAFLOW_COLUMNS = ("id", "name", "description", "agency", "version", "dsd_ref", "last_update")

_URN_ID_PATTERN = re.compile(r"=[^:]+:([^(]+)\(")


# =============================================================================
# Parsing helpers
# =============================================================================


def localized_text(value: Any, languages: Sequence[str] = ("it", "en")) -> str | None:
    """
    Extract one string from an SDMX multilingual text.

    Accepts a plain string, a ``{"it": ..., "en": ...}`` mapping or a list of
    ``{"lang": ..., "value": ...}`` entries. Italian is preferred, then
    English, then the first value found.

    Example:
        >>> localized_text({"en": "Monthly", "it": "Mensile"})
        'Mensile'
        >>> localized_text([{"lang": "de", "value": "Monatlich"}])
        'Monatlich'
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        for lang in languages:
            if value.get(lang):
                return str(value[lang])
        first = next(iter(value.values()), None)
        return str(first) if first is not None else None
    if isinstance(value, list):
        entries = {e.get("lang", ""): e.get("value") for e in value if isinstance(e, Mapping)}
        for lang in languages:
            if entries.get(lang):
                return str(entries[lang])
        for text in entries.values():
            if text:
                return str(text)
    return None


def parse_timestamp(value: str | None) -> datetime | None:
    """
    Parse an ISO-8601 or RFC 1123 (HTTP date) timestamp into an aware UTC datetime.

    Returns None for empty or unparseable values.
    """
    if not value:
        return None
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug(f"Unparseable timestamp: '{value}'")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _reference_id(ref: Any) -> str | None:
    """Return the artefact id of an SDMX reference (URN string or ``{"id": ...}`` object)."""
    if isinstance(ref, str):
        match = _URN_ID_PATTERN.search(ref)
        return match.group(1) if match else ref
    if isinstance(ref, Mapping):
        if "Ref" in ref:
            return _reference_id(ref["Ref"])
        if "id" in ref:
            return str(ref["id"])
    return None


def _annotation_value(annotations: Any, annotation_type: str) -> str | None:
    for annotation in annotations or []:
        if not isinstance(annotation, Mapping):
            continue
        kind = annotation.get("type") or annotation.get("id") or annotation.get("AnnotationType")
        if kind != annotation_type:
            continue
        return (
            annotation.get("title")
            or annotation.get("AnnotationTitle")
            or localized_text(annotation.get("texts") or annotation.get("text"))
        )
    return None


def _find_dataflows(message: Any) -> list[Mapping[str, Any]]:
    if not isinstance(message, Mapping):
        return []
    candidates = (
        message.get("Structure", {}).get("Dataflows", {}).get("Dataflow"),
        message.get("Dataflows", {}).get("Dataflow"),
        (message.get("data") or {}).get("dataflows"),
        message.get("Dataflow"),
    )
    for flows in candidates:
        if flows:
            return [flows] if isinstance(flows, Mapping) else list(flows)
    return []


def parse_dataflows(message: Any) -> list[dict[str, Any]]:
    """
    Extract the dataflow rows of a catalogue message.

    Each row carries the keys of ``DATAFLOW_COLUMNS``.
    """
    rows = []
    for flow in _find_dataflows(message):
        rows.append({
            "id": flow.get("id"),
            "name": localized_text(flow.get("names") or flow.get("Name") or flow.get("name")),
            "description": localized_text(
                flow.get("descriptions") or flow.get("Description") or flow.get("description")
            ),
            "agency": flow.get("agencyID"),
            "version": flow.get("version"),
            "dsd_ref": _reference_id(flow.get("structure") or flow.get("Structure")),
            "last_update": _annotation_value(
                flow.get("annotations") or flow.get("Annotations"), LAST_UPDATE_ANNOTATION
            ),
        })
    return rows


@dataclass(frozen=True)
class DatasetStructure:
    """
    Dimensions and codelists of a dataset.

    Attributes:
        dataset_id: The dataset id.
        dimensions: Dimension ids in key order (time dimension excluded).
        codelist_refs: Mapping of dimension id to its codelist id.
        codelists: Mapping of codelist id to {code: label}.
    """
    dataset_id: str
    dimensions: list[str]
    codelist_refs: dict[str, str | None] = field(default_factory=dict)
    codelists: dict[str, dict[str, str]] = field(default_factory=dict)


def parse_structure(dataset_id: str, message: Any) -> DatasetStructure:
    """
    Parse an SDMX-JSON structure message (data structure with its codelists).

    Raises:
        ParseError: If the message holds no data structure.
    """
    data = message.get("data") if isinstance(message, Mapping) else None
    structures = (data or {}).get("dataStructures") or []
    if not structures:
        raise ParseError(f"Parse error: no data structure found for dataset {dataset_id}")

    components = structures[0].get("dataStructureComponents", {})
    raw_dimensions = components.get("dimensionList", {}).get("dimensions", [])
    ordered = sorted(
        enumerate(raw_dimensions),
        key=lambda item: (item[1].get("position", item[0]), item[0]),
    )

    dimensions: list[str] = []
    refs: dict[str, str | None] = {}
    for _, dimension in ordered:
        dim_id = dimension["id"]
        dimensions.append(dim_id)
        enumeration = (dimension.get("localRepresentation") or {}).get("enumeration")
        refs[dim_id] = _reference_id(enumeration)

    codelists: dict[str, dict[str, str]] = {}
    for codelist in data.get("codelists") or []:
        codes = {}
        for code in codelist.get("codes") or []:
            label = localized_text(code.get("names") or code.get("name"))
            codes[str(code["id"])] = label if label is not None else str(code["id"])
        codelists[codelist["id"]] = codes

    return DatasetStructure(
        dataset_id=dataset_id,
        dimensions=dimensions,
        codelist_refs=refs,
        codelists=codelists,
    )


def parse_available_values(message: Any) -> dict[str, list[str]]:
    """
    Parse an availability (content constraint) message into {dimension: [codes]}.
    """
    data = message.get("data") if isinstance(message, Mapping) else None
    constraints = (data or {}).get("contentConstraints") or (data or {}).get("dataConstraints") or []
    values: dict[str, list[str]] = {}
    for constraint in constraints:
        for region in constraint.get("cubeRegions") or []:
            for key_value in region.get("keyValues") or region.get("components") or []:
                codes = [
                    str(v.get("value")) if isinstance(v, Mapping) else str(v)
                    for v in key_value.get("values") or []
                ]
                values.setdefault(key_value["id"], [])
                values[key_value["id"]].extend(c for c in codes if c not in values[key_value["id"]])
    return values


@dataclass(frozen=True)
class EndpointStatus:
    """Result of one connectivity probe."""
    dialect: Dialect
    url: str
    accessible: bool
    status_code: int | None
    response_time: float
    error_message: str = ""


# =============================================================================
# Service
# =============================================================================


class MetadataService:
    """
    Catalogue, structure and codelist lookups backed by a MetadataCache.

    Args:
        transport: Transport used for every request. Defaults to a new RetryingTransport.
        builder: URL builder of the configured API surface.
        cache: Metadata cache. Defaults to a MetadataCache under ``ISTAT.config.cache.cache_dir``.
    """

    def __init__(
        self,
        transport: RetryingTransport | None = None,
        builder: URLBuilder | None = None,
        cache: MetadataCache | None = None,
    ):
        from istatkit._config import ISTAT

        self.transport = transport or RetryingTransport()
        self.builder = builder or url_builder_for(ISTAT.config.http.api_surface)
        self.cache = cache or MetadataCache()

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def _get_json(self, url: str, what: str) -> tuple[Any, HttpResponse] | None:
        headers = {"Accept": accept_header(self.builder.dialect, ContentCategory.STRUCTURE, DataFormat.JSON)}
        result = self.transport.get_with_retry(url, headers=headers)
        if not result.success:
            logger.warning(f"⚠️ Failed to retrieve {what}: {result.message}")
            return None

        response: HttpResponse = result.data
        try:
            return json.loads(response.text), response
        except json.JSONDecodeError as e:
            logger.warning(f"⚠️ Failed to parse {what}: invalid JSON ({e})")
            return None

    # -------------------------------------------------------------------------
    # Dataflow catalogue
    # -------------------------------------------------------------------------

    def list_dataflows(self, force: bool = False) -> pd.DataFrame:
        """
        Return the dataflow catalogue, downloading it when the cached copy expired.

        Args:
            force: Ignore the cached catalogue.

        Returns:
            A DataFrame with the columns of ``DATAFLOW_COLUMNS``. Empty when the
            catalogue cannot be downloaded and nothing is cached.
        """
        cached = self.cache.load_dataflows()
        if cached is not None and not force and not self.cache.dataflows_expired():
            logger.debug(f"Using cached dataflow catalogue ({len(cached)} dataflows)")
            return pd.DataFrame(cached, columns=list(DATAFLOW_COLUMNS))

        url = self.builder.build(EndpointKind.DATAFLOW).url
        logger.info(f"Downloading dataflow catalogue from {url}")
        fetched = self._get_json(url, "dataflow catalogue")
        rows = parse_dataflows(fetched[0]) if fetched else []

        if not rows:
            if cached is not None:
                logger.warning(f"⚠️ Using stale dataflow catalogue ({len(cached)} dataflows)")
                return pd.DataFrame(cached, columns=list(DATAFLOW_COLUMNS))
            logger.warning("⚠️ No dataflows found in catalogue response")
            return pd.DataFrame(columns=list(DATAFLOW_COLUMNS))

        self.cache.save_dataflows(rows)
        return pd.DataFrame(rows, columns=list(DATAFLOW_COLUMNS))

    def _cached_dsd_ref(self, dataset_id: str) -> str | None:
        for row in self.cache.load_dataflows() or []:
            if row.get("id") == dataset_id:
                return row.get("dsd_ref")
        return None

    # -------------------------------------------------------------------------
    # Structure and codelists
    # -------------------------------------------------------------------------

    def get_structure(self, dataset_id: str) -> DatasetStructure | None:
        """
        Download the data structure of a dataset and cache its codelists.

        Returns:
            The parsed structure, or None when it cannot be retrieved.
        """
        structure = self._download_structure(dataset_id)
        if structure is None:
            return None
        self.cache.store_codelists(dataset_id, structure.codelists, structure.codelist_refs)
        return structure

    def get_codelists(self, dataset_id: str, force: bool = False) -> dict[str, dict[str, str]] | None:
        """
        Return the codelists of a dataset as {dimension id: {code: label}}.

        Served from the cache while every codelist of the dataset is fresh.
        """
        entry = self.cache.get_dataset_codelists(dataset_id)
        if entry is not None and not force:
            refs: dict[str, str] = entry.get("codelists", {})
            expired = self.cache.check_expiration(refs.values())
            payloads = {dim: self.cache.get_codelist(cl) for dim, cl in refs.items()}
            if not expired and all(p is not None for p in payloads.values()):
                logger.debug(f"Using cached codelists for dataset {dataset_id}")
                return payloads

        structure = self.get_structure(dataset_id)
        if structure is None:
            if entry is not None:
                logger.warning(f"⚠️ Using stale codelists for dataset {dataset_id}")
                return {
                    dim: self.cache.get_codelist(cl) or {}
                    for dim, cl in entry.get("codelists", {}).items()
                }
            return None

        return {
            dim: structure.codelists.get(cl, {})
            for dim, cl in structure.codelist_refs.items()
            if cl
        }

    def get_dimensions(self, dataset_id: str) -> list[str] | None:
        """Return the dimension ids of a dataset in key order."""
        entry = self.cache.get_dataset_codelists(dataset_id)
        if entry is not None and entry.get("dimensions"):
            return list(entry["dimensions"])
        structure = self.get_structure(dataset_id)
        return structure.dimensions if structure else None

    def get_dimension_positions(self, dataset_id: str) -> dict[str, int] | None:
        """
        Return the 1-based key position of each dimension.

        Example:
            >>> service.get_dimension_positions("150_908")["FREQ"]
            1
        """
        dimensions = self.get_dimensions(dataset_id)
        if dimensions is None:
            return None
        return {dimension: index for index, dimension in enumerate(dimensions, start=1)}

    def get_available_values(self, dataset_id: str, dimension: str = "all") -> dict[str, list[str]] | None:
        """
        Query the availability endpoint for the codes actually present in a dataset.

        Args:
            dataset_id: The dataset id.
            dimension: One dimension id, or "all".

        Returns:
            {dimension: [codes]}, restricted to ``dimension`` unless it is "all";
            None on failure.
        """
        options = {}
        if self.builder.dialect is Dialect.HVD_V2 and dimension != "all":
            options["component_id"] = dimension
        url = self.builder.build(EndpointKind.AVAILABILITY, dataset_id, **options).url

        fetched = self._get_json(url, f"available values of dataset {dataset_id}")
        if fetched is None:
            return None
        try:
            values = parse_available_values(fetched[0])
        except (KeyError, TypeError, AttributeError) as e:
            logger.warning(f"⚠️ Failed to parse available values of dataset {dataset_id}: {e}")
            return None

        if dimension != "all":
            return {dimension: values.get(dimension, [])}
        return values

    def refresh_codelists(self, force: bool = False) -> list[str]:
        """
        Download again the expired codelists.

        Each expired codelist is refreshed through the structure of a dataset
        that references it; a structure is downloaded at most once per call.

        Returns:
            The ids of the refreshed codelists.
        """
        structures: dict[str, DatasetStructure | None] = {}

        def fetch(codelist_id: str) -> dict[str, str] | None:
            for dataset_id in self.cache.datasets_using(codelist_id):
                if dataset_id not in structures:
                    structures[dataset_id] = self._download_structure(dataset_id)
                structure = structures[dataset_id]
                if structure is not None and codelist_id in structure.codelists:
                    return structure.codelists[codelist_id]
            return None

        return self.cache.refresh(fetch, force=force)

    def _download_structure(self, dataset_id: str) -> DatasetStructure | None:
        options = {}
        dsd_ref = self._cached_dsd_ref(dataset_id)
        if dsd_ref and self.builder.dialect is not Dialect.HVD_V2:
            options["dsd_ref"] = dsd_ref
        url = self.builder.build(EndpointKind.STRUCTURE, dataset_id, **options).url

        logger.info(f"Retrieving data structure of dataset {dataset_id}")
        fetched = self._get_json(url, f"data structure of dataset {dataset_id}")
        if fetched is None:
            return None
        try:
            return parse_structure(dataset_id, fetched[0])
        except (ParseError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"⚠️ Failed to parse data structure of dataset {dataset_id}: {e}")
            return None

    # -------------------------------------------------------------------------
    # Update detection
    # -------------------------------------------------------------------------

    def get_dataset_last_update(self, dataset_id: str) -> datetime | None:
        """
        Return when the server last updated a dataset.

        Read from the ``LAST_UPDATE`` annotation of the dataflow, falling back
        to the ``Last-Modified`` header of the dataflow response.

        Returns:
            An aware UTC datetime, or None when the server does not tell.
        """
        url = self.builder.build(EndpointKind.DATAFLOW, dataset_id).url
        fetched = self._get_json(url, f"dataflow {dataset_id}")
        if fetched is None:
            return None
        message, response = fetched

        for row in parse_dataflows(message):
            if row["id"] == dataset_id and row["last_update"]:
                last_update = parse_timestamp(row["last_update"])
                if last_update is not None:
                    return last_update

        last_modified = parse_timestamp(response.header("Last-Modified"))
        if last_modified is None:
            logger.debug(f"No last-update information for dataset {dataset_id}")
        return last_modified

    # -------------------------------------------------------------------------
    # Connectivity
    # -------------------------------------------------------------------------

    def test_connectivity(self, dialects: Sequence[str | Dialect] | None = None) -> list[EndpointStatus]:
        """
        Probe the dataflow endpoint of each dialect with a HEAD request.

        Example:
            >>> [s.accessible for s in service.test_connectivity()]
            [True, True, True]
        """
        from istatkit._config import ISTAT

        targets = [Dialect.parse(d) for d in dialects] if dialects else list(Dialect)
        statuses = []
        for dialect in targets:
            url = url_builder_for(dialect, ISTAT.config.http).build(EndpointKind.DATAFLOW).url
            started = time.monotonic()
            result = self.transport.head(url)
            elapsed = time.monotonic() - started

            status_code = result.data.status_code if result.success else None
            statuses.append(EndpointStatus(
                dialect=dialect,
                url=url,
                accessible=result.success,
                status_code=status_code,
                response_time=elapsed,
                error_message="" if result.success else result.message,
            ))
            icon = "✅" if result.success else "❌"
            logger.info(f"{icon} {dialect} {url} ({elapsed:.2f}s)")
        return statuses
