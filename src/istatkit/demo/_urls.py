"""
URL construction for demographic portal files.

Each registry entry names one of the file naming patterns below; the builder
for that pattern validates the parameters and assembles the URL:

    A   {base}/{path}/{FILE_CODE}{YEAR}.csv.zip
    A1  {base}/{path}/{FILE_CODE}_{YEAR}_it.csv.zip
    B   {base}/{path}/{FILE_CODE}_{YEAR}_it_{TERRITORY}.zip
    C   {base}/{path}/dati{LEVEL}{TYPE}{YEAR}.zip
    D   {base}/{path}/{DATA_TYPE}-{GEO_LEVEL}{EXT}   (or {DATA_TYPE}{EXT})
    E   {base}/{path}/{FILE_CODE}_{SUBTYPE}_{YEAR}.zip
    F   {base}/{path}/{STATIC_FILENAME}              (percent-encoded)
    G   {base}/{path}/{FILE_CODE}{YEAR}.csv

Example:
    >>> build_demo_url("POS", year=2025, territory="Comuni")
    'https://demo.istat.it/data/posas/POSAS_2025_it_Comuni.zip'
"""

from __future__ import annotations

import posixpath
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date
from urllib.parse import quote

from istatkit._errors import ValidationError
from istatkit.demo._registry import DemoDataset, get_demo_dataset_info


@dataclass(frozen=True)
class DemoFileParams:
    """Parameters selecting one file of a demographic dataset."""
    year: int | None = None
    territory: str | None = None
    level: str | None = None
    type: str | None = None
    data_type: str | None = None
    geo_level: str | None = None
    subtype: str | None = None


def _current_year() -> int:
    return date.today().year


# =============================================================================
# Parameter checks
# =============================================================================

def _require(value: object, name: str, dataset: DemoDataset, hint: Sequence[str] = ()) -> None:
    if value is None:
        message = f"Parameter '{name}' is required for dataset '{dataset.code}' (Pattern {dataset.url_pattern})"
        if hint:
            message += f". Valid values: {', '.join(hint)}"
        raise ValidationError(message)


def _check_year(year: int | None, dataset: DemoDataset) -> int:
    _require(year, "year", dataset)
    try:
        year = int(year)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Parameter 'year' must be an integer, got {year!r}") from e

    year_start = dataset.year_start if dataset.year_start is not None else year
    year_end = dataset.year_end if dataset.year_end is not None else _current_year()
    if year < year_start or year > year_end:
        raise ValidationError(
            f"Year {year} is out of range for dataset '{dataset.code}'. Valid range: {year_start}-{year_end}"
        )
    return year


def _check_choice(value: str, label: str, valid: Sequence[str], dataset: DemoDataset) -> str:
    if value not in valid:
        raise ValidationError(
            f"{label} '{value}' is not valid for dataset '{dataset.code}'. Valid values: {', '.join(valid)}"
        )
    return value


# =============================================================================
# Pattern builders
# =============================================================================

def _pattern_a(dataset: DemoDataset, params: DemoFileParams) -> str:
    year = _check_year(params.year, dataset)
    return f"{dataset.file_code}{year}.csv.zip"


def _pattern_a1(dataset: DemoDataset, params: DemoFileParams) -> str:
    year = _check_year(params.year, dataset)
    return f"{dataset.file_code}_{year}_it.csv.zip"


def _pattern_b(dataset: DemoDataset, params: DemoFileParams) -> str:
    _require(params.year, "year", dataset)
    _require(params.territory, "territory", dataset)
    year = _check_year(params.year, dataset)
    territory = _check_choice(params.territory, "Territory", dataset.territories, dataset)
    return f"{dataset.file_code}_{year}_it_{territory}.zip"


def _pattern_c(dataset: DemoDataset, params: DemoFileParams) -> str:
    _require(params.year, "year", dataset)
    _require(params.level, "level", dataset)
    _require(params.type, "type", dataset)
    year = _check_year(params.year, dataset)
    level = _check_choice(params.level, "Level", dataset.levels, dataset)
    kind = _check_choice(params.type, "Type", dataset.types, dataset)
    return f"dati{level}{kind}{year}.zip"


def _pattern_d(dataset: DemoDataset, params: DemoFileParams) -> str:
    _require(params.data_type, "data_type", dataset, dataset.data_types)
    data_type = _check_choice(params.data_type, "Data type", dataset.data_types, dataset)
    if not dataset.geo_levels:
        return f"{data_type}{dataset.file_extension}"

    _require(params.geo_level, "geo_level", dataset, dataset.geo_levels)
    geo_level = _check_choice(params.geo_level, "Geographic level", dataset.geo_levels, dataset)
    return f"{data_type}-{geo_level}{dataset.file_extension}"


def _pattern_e(dataset: DemoDataset, params: DemoFileParams) -> str:
    _require(params.year, "year", dataset)
    _require(params.subtype, "subtype", dataset, dataset.subtypes)
    year = _check_year(params.year, dataset)
    subtype = _check_choice(params.subtype, "Subtype", dataset.subtypes, dataset)
    return f"{dataset.file_code}_{subtype}_{year}.zip"


def _pattern_f(dataset: DemoDataset, params: DemoFileParams) -> str:
    return quote(dataset.static_filename or "")


def _pattern_g(dataset: DemoDataset, params: DemoFileParams) -> str:
    year = _check_year(params.year, dataset)
    return f"{dataset.file_code}{year}.csv"


PATTERN_BUILDERS: dict[str, Callable[[DemoDataset, DemoFileParams], str]] = {
    "A": _pattern_a,
    "A1": _pattern_a1,
    "B": _pattern_b,
    "C": _pattern_c,
    "D": _pattern_d,
    "E": _pattern_e,
    "F": _pattern_f,
    "G": _pattern_g,
}


# =============================================================================
# Public API
# =============================================================================

def resolve_downloadable(code: str) -> DemoDataset:
    """
    Look up a dataset and make sure it can be downloaded as a file.

    Raises:
        ValidationError: If the code is unknown or the dataset is only
            available through the interactive portal.
    """
    dataset = get_demo_dataset_info(code)
    if not dataset.downloadable:
        raise ValidationError(
            f"Dataset '{dataset.code}' is only available through the interactive portal at {dataset.portal_url}"
        )
    return dataset


def build_demo_url(
    code: str,
    year: int | None = None,
    territory: str | None = None,
    level: str | None = None,
    type: str | None = None,
    data_type: str | None = None,
    geo_level: str | None = None,
    subtype: str | None = None,
    base_url: str | None = None,
) -> str:
    """
    Build the download URL of one file of a demographic dataset.

    Args:
        code: Registry code (e.g. "D7B").
        year: Reference year (patterns A, A1, B, C, E, G).
        territory: Territory, e.g. "Comuni" (pattern B).
        level: Geographic level, e.g. "regionali" (pattern C).
        type: Table type, "completi" or "ridotti" (pattern C).
        data_type: Data type (pattern D).
        geo_level: Geographic level (pattern D, when the dataset has levels).
        subtype: Subtype, e.g. "cittadinanza" (pattern E).
        base_url: Portal base URL. Defaults to ``ISTAT.config.demo.base_url``.

    Raises:
        ValidationError: On unknown or interactive-only codes, missing
            parameters, out-of-range years or invalid choices.

    Example:
        >>> build_demo_url("TVM", year=2024, level="regionali", type="completi")
        'https://demo.istat.it/data/tvm/datiregionalicompleti2024.zip'
    """
    dataset = resolve_downloadable(code)
    if base_url is None:
        from istatkit._config import ISTAT
        base_url = ISTAT.config.demo.base_url

    params = DemoFileParams(
        year=year, territory=territory, level=level, type=type,
        data_type=data_type, geo_level=geo_level, subtype=subtype,
    )
    filename = PATTERN_BUILDERS[dataset.url_pattern](dataset, params)
    return f"{base_url.rstrip('/')}/{dataset.base_path}/{filename}"


def get_demo_filename(code: str, **params) -> str:
    """
    Return the file name part of a dataset's download URL.

    Example:
        >>> get_demo_filename("RCS", year=2025, subtype="cittadinanza")
        'Dati_RCS_cittadinanza_2025.zip'
    """
    return posixpath.basename(build_demo_url(code, **params))
