"""
Request builders for the three ISTAT REST dialects.

Each dialect has its own builder class. Builders validate every input before
producing a RequestDescriptor, so invalid requests never reach the network.

Available builders:
    - LegacyURLBuilder: positional-filter SDMX web service (``/SDMXWS``).
    - HvdV1URLBuilder: high-value datasets surface, SDMX 2.1 style.
    - HvdV2URLBuilder: high-value datasets surface, SDMX 3.0 style.

Example:
    >>> builder = url_builder_for("hvd_v1")
    >>> builder.build(EndpointKind.DATA, "150_908", last_n_observations=5).url
    'https://esploradati.istat.it/hvd/rest/data/150_908/ALL/all?lastNObservations=5'
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any, override
from urllib.parse import quote

from istatkit._errors import ValidationError
from istatkit._filters import WILDCARD_FILTER, validate_filter
from istatkit._models import (
    ContentCategory,
    DataFormat,
    Dialect,
    EndpointKind,
    HttpMethod,
    RequestDescriptor,
)

if TYPE_CHECKING:
    from istatkit._config import HttpConfig

LEGACY_BASE_URL = "https://esploradati.istat.it/SDMXWS"
HVD_BASE_URL = "https://esploradati.istat.it/hvd"

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
VALID_DETAILS = ("full", "dataonly", "serieskeysonly", "nodata")

_DATASET_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.@-]+$")
_PERIOD_PATTERN = re.compile(
    r"^\d{4}"
    r"(-Q[1-4]"
    r"|-(0[1-9]|1[0-2])(-(0[1-9]|[12]\d|3[01]))?)?$"
)


# =============================================================================
# Content negotiation
# =============================================================================

_DATA_VERSIONS = {
    Dialect.LEGACY: "1.0.0",
    Dialect.HVD_V1: "1.0.0",
    Dialect.HVD_V2: "2.0.0",
}
_XML_DATA_VERSIONS = {
    Dialect.LEGACY: "2.1",
    Dialect.HVD_V1: "1.0.0",
    Dialect.HVD_V2: "2.0.0",
}
_STRUCTURE_MEDIA_TYPES = {
    DataFormat.JSON: "application/json",
    DataFormat.CSV: "text/csv",
    DataFormat.XML: "application/xml",
}


def parse_format(fmt: str | DataFormat) -> DataFormat:
    try:
        return DataFormat(str(fmt).strip().lower())
    except ValueError:
        valid = ", ".join(f.value for f in DataFormat)
        raise ValidationError(f"Unknown format: '{fmt}'. Valid values: {valid}") from None


def _parse_category(category: str | ContentCategory) -> ContentCategory:
    try:
        return ContentCategory(str(category).strip().lower())
    except ValueError:
        valid = ", ".join(c.value for c in ContentCategory)
        raise ValidationError(f"Unknown type: '{category}'. Valid values: {valid}") from None


def accept_header(
    dialect: str | Dialect,
    category: str | ContentCategory = ContentCategory.DATA,
    fmt: str | DataFormat = DataFormat.CSV,
) -> str:
    """
    Return the Accept header value for a dialect, content category and format.

    Data requests use SDMX-versioned media types. Structure requests use
    generic media types, because the server rejects SDMX-specific Accept
    headers on structure endpoints.

    Raises:
        ValidationError: On an unknown dialect, category or format.

    Example:
        >>> accept_header("hvd_v2", "data", "csv")
        'application/vnd.sdmx.data+csv;version=2.0.0'
        >>> accept_header("hvd_v1", "structure", "json")
        'application/json'
    """
    dialect = Dialect.parse(dialect)
    category = _parse_category(category)
    fmt = parse_format(fmt)

    if category is ContentCategory.STRUCTURE:
        return _STRUCTURE_MEDIA_TYPES[fmt]
    if fmt is DataFormat.XML:
        return f"application/vnd.sdmx.structurespecificdata+xml;version={_XML_DATA_VERSIONS[dialect]}"
    return f"application/vnd.sdmx.data+{fmt.value};version={_DATA_VERSIONS[dialect]}"


# =============================================================================
# Shared validation
# =============================================================================


def _validate_dataset_id(dataset_id: str | None, endpoint: EndpointKind) -> str:
    if dataset_id is None or not isinstance(dataset_id, str) or not dataset_id.strip():
        raise ValidationError(f"dataset_id is required for the '{endpoint}' endpoint")
    if not _DATASET_ID_PATTERN.match(dataset_id):
        raise ValidationError(f"Invalid dataset_id: '{dataset_id}'")
    return dataset_id


def validate_period(value: str | None, name: str) -> str | None:
    """
    Validate an SDMX period (``YYYY``, ``YYYY-MM``, ``YYYY-Qn`` or ``YYYY-MM-DD``).

    Empty values are treated as absent and return None.
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    if not _PERIOD_PATTERN.match(value):
        raise ValidationError(
            f"Invalid {name}: '{value}'. Expected YYYY, YYYY-MM, YYYY-Qn or YYYY-MM-DD"
        )
    return value


def format_updated_after(value: datetime | date | str | None) -> str | None:
    """
    Format an ``updatedAfter`` timestamp as ISO-8601 UTC.

    Naive datetimes are interpreted as UTC. Strings are passed through.

    Example:
        >>> format_updated_after(datetime(2024, 1, 15, 10, 30, tzinfo=UTC))
        '2024-01-15T10:30:00Z'
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, date):
        return f"{value.isoformat()}T00:00:00Z"
    value = str(value).strip()
    return value or None


def _validate_last_n(value: int | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"last_n_observations must be a positive integer, got: {value!r}")
    return value


def _query_string(params: Sequence[tuple[str, str]]) -> str:
    if not params:
        return ""
    return "?" + "&".join(f"{name}={value}" for name, value in params)


# =============================================================================
# Base builder
# =============================================================================


class URLBuilder(ABC):
    """
    Base class of the per-dialect request builders.

    ``build()`` runs the validation shared by every dialect, then delegates the
    URL shape to the subclass.

    Args:
        base_url: Root URL of the REST surface.
        agency_id: SDMX agency (default "IT1").
        provider: Data provider path segment (default "all").
        default_filter: Filter used when the caller passes none.
        data_format: Default response format for data requests.
    """

    dialect: Dialect
    supported_endpoints: tuple[EndpointKind, ...] = tuple(EndpointKind)
    supports_post: bool = True

    def __init__(
        self,
        base_url: str,
        agency_id: str = "IT1",
        provider: str = "all",
        default_filter: str = WILDCARD_FILTER,
        data_format: str | DataFormat = DataFormat.CSV,
    ):
        assert base_url, "base_url cannot be empty"
        assert agency_id, "agency_id cannot be empty"
        assert provider, "provider cannot be empty"

        self.base_url = base_url.rstrip("/")
        self.agency_id = agency_id
        self.provider = provider
        self.default_filter = default_filter
        self.data_format = parse_format(data_format)

    def build(
        self,
        endpoint: str | EndpointKind,
        dataset_id: str | None = None,
        *,
        filter: str | None = None,
        start_period: str | None = None,
        end_period: str | None = None,
        updated_after: datetime | date | str | None = None,
        last_n_observations: int | None = None,
        method: str | HttpMethod = HttpMethod.GET,
        fmt: str | DataFormat | None = None,
        **options: Any,
    ) -> RequestDescriptor:
        """
        Validate the inputs and build a request descriptor.

        Args:
            endpoint: Endpoint kind (data, structure, dataflow, availability).
            dataset_id: Dataset id; required for every endpoint but the dataflow catalogue.
            filter: Filter key (defaults to the builder's default filter).
            start_period: First period to return.
            end_period: Last period to return.
            updated_after: Only return observations changed after this instant.
            last_n_observations: Only return the last N observations per series.
            method: GET or POST (POST sends the filter in the body).
            fmt: Response format (defaults to the builder's data format for data
                requests and to JSON for structure requests).
            **options: Dialect-specific options (see subclasses).

        Raises:
            ValidationError: If any input is invalid.
        """
        kind = self._parse_endpoint(endpoint)
        method = self._parse_method(method)

        if kind is not EndpointKind.DATAFLOW:
            dataset_id = _validate_dataset_id(dataset_id, kind)
        elif dataset_id is not None:
            dataset_id = _validate_dataset_id(dataset_id, kind)

        if method is HttpMethod.POST and (kind is not EndpointKind.DATA or not self.supports_post):
            raise ValidationError(
                f"POST is only supported for data requests on the hvd surfaces, not for "
                f"'{kind}' on {self.dialect}"
            )

        filter_key = validate_filter(filter if filter is not None else self.default_filter)
        start_period = validate_period(start_period, "start_period")
        end_period = validate_period(end_period, "end_period")
        if start_period and end_period and int(start_period[:4]) > int(end_period[:4]):
            raise ValidationError(
                f"start_period ({start_period}) must not be after end_period ({end_period})"
            )

        query = _QueryArgs(
            start_period=start_period,
            end_period=end_period,
            updated_after=format_updated_after(updated_after),
            last_n_observations=_validate_last_n(last_n_observations),
        )

        if kind in (EndpointKind.DATA, EndpointKind.AVAILABILITY):
            category = ContentCategory.DATA
            data_format = parse_format(fmt) if fmt is not None else self.data_format
        else:
            category = ContentCategory.STRUCTURE
            data_format = parse_format(fmt) if fmt is not None else DataFormat.JSON

        match kind:
            case EndpointKind.DATA:
                url, body = self._data_url(dataset_id, filter_key, query, method, options)
            case EndpointKind.STRUCTURE:
                url, body = self._structure_url(dataset_id, options), None
            case EndpointKind.DATAFLOW:
                url, body = self._dataflow_url(dataset_id, options), None
            case EndpointKind.AVAILABILITY:
                url, body = self._availability_url(dataset_id, filter_key, options), None

        headers = {"Accept": accept_header(self.dialect, category, data_format)}
        if method is HttpMethod.POST:
            headers["Content-Type"] = FORM_CONTENT_TYPE

        return RequestDescriptor(
            endpoint=kind,
            dialect=self.dialect,
            url=url,
            method=method,
            dataset_id=dataset_id,
            filter=filter_key,
            start_period=start_period,
            end_period=end_period,
            headers=headers,
            body=body,
            content_category=category,
            data_format=data_format,
        )

    def _parse_endpoint(self, endpoint: str | EndpointKind) -> EndpointKind:
        try:
            kind = EndpointKind(str(endpoint).strip().lower())
        except ValueError:
            kind = None
        if kind is None or kind not in self.supported_endpoints:
            valid = ", ".join(e.value for e in self.supported_endpoints)
            raise ValidationError(
                f"Unknown {self.dialect} endpoint: '{endpoint}'. Valid values: {valid}"
            )
        return kind

    @staticmethod
    def _parse_method(method: str | HttpMethod) -> HttpMethod:
        try:
            return HttpMethod(str(method).strip().upper())
        except ValueError:
            raise ValidationError(f"method must be either 'GET' or 'POST', got: '{method}'") from None

    # -------------------------------------------------------------------------
    # Dialect-specific URL shapes
    # -------------------------------------------------------------------------

    @abstractmethod
    def _data_url(
        self,
        dataset_id: str,
        filter_key: str,
        query: _QueryArgs,
        method: HttpMethod,
        options: Mapping[str, Any],
    ) -> tuple[str, str | None]:
        """Return the data URL and the optional POST body."""
        pass

    @abstractmethod
    def _structure_url(self, dataset_id: str, options: Mapping[str, Any]) -> str:
        pass

    @abstractmethod
    def _dataflow_url(self, dataset_id: str | None, options: Mapping[str, Any]) -> str:
        pass

    @abstractmethod
    def _availability_url(self, dataset_id: str, filter_key: str, options: Mapping[str, Any]) -> str:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(base_url={self.base_url!r})"


class _QueryArgs:
    """Validated query values shared by every dialect."""

    __slots__ = ("start_period", "end_period", "updated_after", "last_n_observations")

    def __init__(
        self,
        start_period: str | None,
        end_period: str | None,
        updated_after: str | None,
        last_n_observations: int | None,
    ):
        self.start_period = start_period
        self.end_period = end_period
        self.updated_after = updated_after
        self.last_n_observations = last_n_observations

    def common_params(self) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        if self.start_period:
            params.append(("startPeriod", self.start_period))
        if self.end_period:
            params.append(("endPeriod", self.end_period))
        params.extend(self.tail_params())
        return params

    def tail_params(self) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        if self.updated_after:
            params.append(("updatedAfter", quote(self.updated_after, safe="")))
        if self.last_n_observations is not None:
            params.append(("lastNObservations", str(self.last_n_observations)))
        return params


def _reject_unknown_options(options: Mapping[str, Any], allowed: set[str], dialect: Dialect) -> None:
    unknown = set(options) - allowed
    if unknown:
        raise ValidationError(
            f"Unsupported option(s) for {dialect}: {sorted(unknown)}. Valid options: {sorted(allowed)}"
        )


# =============================================================================
# Legacy
# =============================================================================


class LegacyURLBuilder(URLBuilder):
    """
    Builder for the legacy SDMX web service.

    Options:
        dsd_ref: Data structure id for structure requests (default ``DSD_{dataset_id}``).

    Example:
        >>> LegacyURLBuilder().build("data", "150_908", start_period="2020").url
        'https://esploradati.istat.it/SDMXWS/rest/data/150_908/ALL/all/?startPeriod=2020'
    """

    dialect = Dialect.LEGACY
    supports_post = False
    _options = {"dsd_ref"}

    def __init__(self, base_url: str = LEGACY_BASE_URL, **kwargs: Any):
        super().__init__(base_url, **kwargs)

    @override
    def _data_url(self, dataset_id, filter_key, query, method, options):
        _reject_unknown_options(options, self._options, self.dialect)
        path = f"{self.base_url}/rest/data/{dataset_id}/{filter_key}/all/"
        return path + _query_string(query.common_params()), None

    @override
    def _structure_url(self, dataset_id, options):
        _reject_unknown_options(options, self._options, self.dialect)
        dsd_ref = options.get("dsd_ref") or f"DSD_{dataset_id}"
        return f"{self.base_url}/rest/datastructure/{self.agency_id}/{dsd_ref}/1.0?references=children"

    @override
    def _dataflow_url(self, dataset_id, options):
        _reject_unknown_options(options, self._options, self.dialect)
        url = f"{self.base_url}/rest/dataflow/{self.agency_id}"
        return f"{url}/{dataset_id}" if dataset_id else url

    @override
    def _availability_url(self, dataset_id, filter_key, options):
        _reject_unknown_options(options, self._options, self.dialect)
        return f"{self.base_url}/rest/availableconstraint/{dataset_id}/{filter_key}/all/all"


# =============================================================================
# HVD v1 (SDMX 2.1 style)
# =============================================================================


class HvdV1URLBuilder(URLBuilder):
    """
    Builder for the high-value datasets surface, SDMX 2.1 style.

    Options:
        provider: Provider path segment (default: the builder's provider, "all").
        detail: One of full, dataonly, serieskeysonly, nodata.
        include_history: Include historical revisions (rendered as lowercase bool).
        dsd_ref: Data structure id for structure requests (default: the dataset id).

    Example:
        >>> HvdV1URLBuilder().build("data", "150_908", method="POST").url
        'https://esploradati.istat.it/hvd/rest/data/150_908/body/all'
    """

    dialect = Dialect.HVD_V1
    _options = {"provider", "detail", "include_history", "dsd_ref"}

    def __init__(self, base_url: str = HVD_BASE_URL, **kwargs: Any):
        super().__init__(base_url, **kwargs)

    def _provider(self, options: Mapping[str, Any]) -> str:
        provider = options.get("provider") or self.provider
        if not isinstance(provider, str) or not _DATASET_ID_PATTERN.match(provider):
            raise ValidationError(f"Invalid provider: '{provider}'")
        return provider

    @override
    def _data_url(self, dataset_id, filter_key, query, method, options):
        _reject_unknown_options(options, self._options, self.dialect)
        provider = self._provider(options)

        params = query.common_params()
        detail = options.get("detail")
        if detail:
            if detail not in VALID_DETAILS:
                raise ValidationError(
                    f"Invalid detail: '{detail}'. Valid values: {', '.join(VALID_DETAILS)}"
                )
            params.append(("detail", detail))
        include_history = options.get("include_history")
        if include_history is not None:
            params.append(("includeHistory", str(bool(include_history)).lower()))

        if method is HttpMethod.POST:
            path = f"{self.base_url}/rest/data/{dataset_id}/body/{provider}"
            return path + _query_string(params), filter_key

        path = f"{self.base_url}/rest/data/{dataset_id}/{filter_key}/{provider}"
        return path + _query_string(params), None

    @override
    def _structure_url(self, dataset_id, options):
        _reject_unknown_options(options, self._options, self.dialect)
        dsd_ref = options.get("dsd_ref") or dataset_id
        return f"{self.base_url}/rest/datastructure/{self.agency_id}/{dsd_ref}/1.0?references=children"

    @override
    def _dataflow_url(self, dataset_id, options):
        _reject_unknown_options(options, self._options, self.dialect)
        if dataset_id:
            return f"{self.base_url}/rest/dataflow/{self.agency_id}/{dataset_id}"
        return f"{self.base_url}/rest/dataflow"

    @override
    def _availability_url(self, dataset_id, filter_key, options):
        _reject_unknown_options(options, self._options, self.dialect)
        provider = self._provider(options)
        return f"{self.base_url}/rest/availableconstraint/{dataset_id}/{filter_key}/{provider}/all"


# =============================================================================
# HVD v2 (SDMX 3.0 style)
# =============================================================================


def build_sdmx3_filters(
    start_period: str | None = None,
    end_period: str | None = None,
    dim_filters: Mapping[str, str | Sequence[str]] | None = None,
) -> list[str]:
    """
    Build the ``c[...]`` query parameters of an SDMX 3.0 data query.

    Raises:
        ValidationError: If dim_filters is not a mapping of named dimensions.

    Example:
        >>> build_sdmx3_filters("2020", "2025", {"FREQ": "M", "REF_AREA": ["IT", "FR"]})
        ['c[TIME_PERIOD]=ge:2020+le:2025', 'c[FREQ]=M', 'c[REF_AREA]=IT,FR']
    """
    params: list[str] = []

    bounds = []
    if start_period:
        bounds.append(f"ge:{start_period}")
    if end_period:
        bounds.append(f"le:{end_period}")
    if bounds:
        params.append(f"c[TIME_PERIOD]={'+'.join(bounds)}")

    if dim_filters is None:
        return params
    if not isinstance(dim_filters, Mapping):
        raise ValidationError("dim_filters must be named: pass a mapping of dimension id to value(s)")

    for dimension, value in dim_filters.items():
        if not isinstance(dimension, str) or not dimension.strip():
            raise ValidationError("dim_filters must be named: every key must be a dimension id")
        if isinstance(value, str):
            rendered = value
        elif isinstance(value, Sequence):
            rendered = ",".join(str(v) for v in value)
        else:
            rendered = str(value)
        if not rendered:
            raise ValidationError(f"dim_filters value for '{dimension}' must not be empty")
        params.append(f"c[{dimension}]={rendered}")
    return params


class HvdV2URLBuilder(URLBuilder):
    """
    Builder for the high-value datasets surface, SDMX 3.0 style.

    The filter defaults to the ``*`` wildcard; dimension and time-range
    selection is expressed with ``c[DIM]=value`` query parameters.

    Options:
        context: Structure context (default "dataflow").
        version: Artefact version (default "~", the latest).
        dim_filters: Mapping of dimension id to a value or a list of values.
        component_id: Component for availability queries (default "all").

    Example:
        >>> HvdV2URLBuilder().build("data", "150_908", start_period="2020", end_period="2025").url
        'https://esploradati.istat.it/hvd/rest/v2/data/dataflow/IT1/150_908/~/*?c[TIME_PERIOD]=ge:2020+le:2025'
    """

    dialect = Dialect.HVD_V2
    _options = {"context", "version", "dim_filters", "component_id"}

    def __init__(self, base_url: str = HVD_BASE_URL, default_filter: str = "*", **kwargs: Any):
        super().__init__(base_url, default_filter=default_filter, **kwargs)

    @override
    def build(self, endpoint, dataset_id=None, *, filter=None, **kwargs) -> RequestDescriptor:
        # "ALL" is the legacy/v1 wildcard; v2 spells it "*"
        if filter is not None and filter.strip().upper() == WILDCARD_FILTER:
            filter = "*"
        return super().build(endpoint, dataset_id, filter=filter, **kwargs)

    def _path_parts(self, options: Mapping[str, Any]) -> tuple[str, str]:
        context = options.get("context") or "dataflow"
        version = options.get("version") or "~"
        for name, value in (("context", context), ("version", version)):
            if not isinstance(value, str) or not re.match(r"^[A-Za-z0-9_.~*-]+$", value):
                raise ValidationError(f"Invalid {name}: '{value}'")
        return context, version

    @override
    def _data_url(self, dataset_id, filter_key, query, method, options):
        _reject_unknown_options(options, self._options, self.dialect)
        context, version = self._path_parts(options)

        params = [
            tuple(p.split("=", 1))
            for p in build_sdmx3_filters(query.start_period, query.end_period, options.get("dim_filters"))
        ]
        params.extend(query.tail_params())

        path = f"{self.base_url}/rest/v2/data/{context}/{self.agency_id}/{dataset_id}/{version}"
        if method is HttpMethod.POST:
            return f"{path}/body" + _query_string(params), filter_key
        return f"{path}/{filter_key}" + _query_string(params), None

    @override
    def _structure_url(self, dataset_id, options):
        _reject_unknown_options(options, self._options, self.dialect)
        _, version = self._path_parts(options)
        return f"{self.base_url}/rest/v2/structure/dataflow/{self.agency_id}/{dataset_id}/{version}"

    @override
    def _dataflow_url(self, dataset_id, options):
        _reject_unknown_options(options, self._options, self.dialect)
        if dataset_id:
            return f"{self.base_url}/rest/v2/structure/dataflow/{self.agency_id}/{dataset_id}/~"
        return f"{self.base_url}/rest/v2/structure/dataflow/*/*/~"

    @override
    def _availability_url(self, dataset_id, filter_key, options):
        _reject_unknown_options(options, self._options, self.dialect)
        context, version = self._path_parts(options)
        component_id = options.get("component_id") or "all"
        return (
            f"{self.base_url}/rest/v2/availability/{context}/{self.agency_id}/"
            f"{dataset_id}/{version}/{filter_key}/{component_id}"
        )


# =============================================================================
# Factory
# =============================================================================


def url_builder_for(dialect: str | Dialect, config: HttpConfig | None = None) -> URLBuilder:
    """
    Create the builder for a dialect, configured from an HttpConfig.

    Args:
        dialect: Dialect name or enum member.
        config: HTTP config section. Defaults to ``ISTAT.config.http``.

    Raises:
        ValidationError: On an unknown dialect.
    """
    dialect = Dialect.parse(dialect)
    if config is None:
        from istatkit._config import ISTAT

        config = ISTAT.config.http

    common = {
        "agency_id": config.agency_id,
        "provider": config.provider,
        "data_format": config.data_format,
    }
    match dialect:
        case Dialect.LEGACY:
            return LegacyURLBuilder(
                config.legacy_base_url, default_filter=config.default_filter, **common
            )
        case Dialect.HVD_V1:
            return HvdV1URLBuilder(config.hvd_base_url, default_filter=config.default_filter, **common)
        case Dialect.HVD_V2:
            return HvdV2URLBuilder(config.hvd_base_url, **common)
