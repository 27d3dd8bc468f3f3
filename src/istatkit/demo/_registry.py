"""
Catalogue of the datasets published on the demographic portal (demo.istat.it).

The portal serves plain files (mostly CSV inside ZIP archives) whose names
follow a handful of conventions. Each DemoDataset records which convention
(``url_pattern``) applies and the values its parameters may take. Datasets
without a pattern are only available through the portal's interactive
application.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass, fields

import pandas as pd

from istatkit._errors import ValidationError

PORTAL_APP_URL = "https://demo.istat.it/app/?i={code}&l=it"
SUMMARY_COLUMNS = ("code", "category", "description_it", "description_en", "url_pattern", "downloadable")
DEFAULT_SEARCH_FIELDS = ("description_it", "description_en", "code")


@dataclass(frozen=True)
class DemoDataset:
    """
    One dataset of the demographic portal.

    Attributes:
        code: Short registry code (e.g. "D7B", "POS").
        category: Thematic category (e.g. "popolazione").
        description_it: Italian description.
        description_en: English description.
        url_pattern: File naming convention ("A", "A1", "B"..."G"), None when
            the dataset is only available interactively.
        base_path: Directory of the dataset under the portal's base URL.
        file_code: Code used in file names (may differ from ``code``).
        year_start: First available year.
        year_end: Last available year, None for ongoing series.
        territories: Valid territories (pattern B).
        levels: Valid geographic levels (pattern C).
        types: Valid table types (pattern C).
        data_types: Valid data types (pattern D).
        geo_levels: Valid geographic levels (pattern D), empty when the files
            are not split by level.
        subtypes: Valid subtypes (pattern E).
        static_filename: Fixed file name (pattern F).
        file_extension: File extension (pattern D).
    """
    code: str
    category: str
    description_it: str
    description_en: str
    url_pattern: str | None = None
    base_path: str | None = None
    file_code: str | None = None
    year_start: int | None = None
    year_end: int | None = None
    territories: tuple[str, ...] = ()
    levels: tuple[str, ...] = ()
    types: tuple[str, ...] = ()
    data_types: tuple[str, ...] = ()
    geo_levels: tuple[str, ...] = ()
    subtypes: tuple[str, ...] = ()
    static_filename: str | None = None
    file_extension: str = ".zip"

    @property
    def downloadable(self) -> bool:
        return self.url_pattern is not None

    @property
    def portal_url(self) -> str:
        return PORTAL_APP_URL.format(code=self.code)


_TERRITORIES = ("Comuni", "Province", "Regioni", "Ripartizioni", "Italia")

DEMO_REGISTRY: tuple[DemoDataset, ...] = (
    # Year-indexed CSV archives
    DemoDataset("D7B", "dinamica", "Bilancio demografico mensile", "Monthly demographic balance",
                url_pattern="A", base_path="d7b", file_code="D7B", year_start=2019),
    DemoDataset("RBD", "dinamica", "Bilancio demografico ricostruito 2002-2018",
                "Reconstructed demographic balance 2002-2018",
                url_pattern="A", base_path="ricostruzione", file_code="RBD-Dataset-",
                year_start=2002, year_end=2018),
    DemoDataset("AIR", "popolazione", "Italiani residenti all'estero (AIRE)",
                "Italians residing abroad (AIRE registry)",
                url_pattern="A1", base_path="aire", file_code="AIRE", year_start=2012),
    # Territory-indexed archives
    DemoDataset("POS", "popolazione", "Popolazione residente per eta' e sesso",
                "Resident population by age and sex",
                url_pattern="B", base_path="posas", file_code="POSAS", year_start=2002,
                territories=_TERRITORIES),
    DemoDataset("STR", "popolazione", "Popolazione straniera residente per eta' e sesso",
                "Foreign resident population by age and sex",
                url_pattern="B", base_path="strasa", file_code="STRASA", year_start=2003,
                territories=_TERRITORIES),
    DemoDataset("P02", "dinamica", "Bilancio demografico annuale", "Annual demographic balance",
                url_pattern="B", base_path="p2", file_code="P2", year_start=2019,
                territories=_TERRITORIES),
    DemoDataset("P03", "dinamica", "Bilancio demografico stranieri", "Foreign population demographic balance",
                url_pattern="B", base_path="p3", file_code="P3", year_start=2019,
                territories=_TERRITORIES),
    # Level + type + year
    DemoDataset("TVM", "mortalita", "Tavole di mortalita'", "Life tables (mortality tables)",
                url_pattern="C", base_path="tvm", year_start=1974,
                levels=("regionali", "provinciali", "ripartizione"), types=("completi", "ridotti")),
    # Data type + geographic level
    DemoDataset("PPR", "previsioni", "Previsioni della popolazione residente", "Resident population projections",
                url_pattern="D", base_path="previsioni",
                data_types=("Previsioni-Popolazione_per_eta", "Indicatori"),
                geo_levels=("Regioni", "Ripartizioni", "Italia")),
    DemoDataset("PPC", "previsioni", "Previsioni della popolazione comunale", "Municipal population projections",
                url_pattern="D", base_path="previsionicomunali",
                data_types=("Previsioni_comunali_popolazione_per_eta", "Previsioni_comunali_indicatori"),
                geo_levels=("Comuni", "Province"), file_extension=".csv.zip"),
    DemoDataset("PRF", "previsioni", "Previsioni delle famiglie", "Household projections",
                url_pattern="D", base_path="previsionifamiliari",
                data_types=("Famiglie_per_tipologia_familiare", "Persone_per_tipologia_familiare"),
                file_extension=".csv.zip"),
    DemoDataset("RIC", "popolazione", "Popolazione residente ricostruita 2002-2019",
                "Reconstructed resident population 2002-2019",
                url_pattern="D", base_path="ricostruzione",
                data_types=("PopolazioneEta-Territorio",),
                geo_levels=("Comuni", "Province", "Regioni", "Italia")),
    # Subtype + year
    DemoDataset("RCS", "popolazione", "Popolazione residente per cittadinanza e paese di nascita",
                "Resident population by citizenship and country of birth",
                url_pattern="E", base_path="rcs", file_code="Dati_RCS", year_start=2019,
                subtypes=("cittadinanza", "nascita")),
    # Static file
    DemoDataset("TVA", "mortalita", "Tavole attuariali di mortalita'", "Actuarial mortality tables",
                url_pattern="F", base_path="tva", static_filename="tavole attuariali.zip"),
    # Year-indexed plain CSV
    DemoDataset("ISM", "mortalita", "Decessi e tassi di mortalita' per anno",
                "Deaths and mortality rates by year",
                url_pattern="G", base_path="ism", file_code="Decessi-Tassi-Anno_", year_start=2011),
    # Interactive portal only
    DemoDataset("R91", "dinamica", "Bilancio demografico 1991-2001", "Demographic balance 1991-2001"),
    DemoDataset("R92", "popolazione", "Popolazione residente 1992-2001", "Resident population 1992-2001"),
    DemoDataset("SSC", "popolazione", "Popolazione semi-supercentenaria (105+ anni)",
                "Semi-supercentenarian population (105+ years)"),
    DemoDataset("FE1", "natalita", "Indicatori di fecondita'", "Fertility indicators"),
    DemoDataset("FE3", "natalita", "Nati per comune", "Births by municipality"),
    DemoDataset("MA1", "matrimoni", "Matrimoni - indicatori di nuzialita'", "Marriages - nuptiality indicators"),
    DemoDataset("MA2", "matrimoni", "Matrimoni - caratteristiche degli sposi",
                "Marriages - characteristics of spouses"),
    DemoDataset("MA3", "matrimoni", "Matrimoni per cittadinanza degli sposi", "Marriages by citizenship of spouses"),
    DemoDataset("MA4", "matrimoni", "Matrimoni - serie storiche", "Marriages - historical time series"),
    DemoDataset("NU1", "matrimoni", "Tavole di primo-nuzialita'", "First-nuptiality tables"),
    DemoDataset("UC1", "unioni_civili", "Unioni civili - principali indicatori", "Civil unions - main indicators"),
    DemoDataset("UC2", "unioni_civili", "Unioni civili - caratteristiche", "Civil unions - characteristics"),
    DemoDataset("UC3", "unioni_civili", "Unioni civili - cittadinanza", "Civil unions - citizenship"),
    DemoDataset("UC4", "unioni_civili", "Unioni civili - serie storiche", "Civil unions - historical time series"),
    DemoDataset("PFL", "previsioni", "Previsioni delle forze di lavoro", "Labour force projections"),
)

_BY_CODE = {dataset.code: dataset for dataset in DEMO_REGISTRY}
_FIELD_NAMES = tuple(f.name for f in fields(DemoDataset))


def _require_code(code: object) -> str:
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("'code' must be a non-empty string")
    return code


def get_demo_registry() -> pd.DataFrame:
    """Return the whole registry as a DataFrame (one row per dataset)."""
    rows = [{**asdict(d), "downloadable": d.downloadable} for d in DEMO_REGISTRY]
    return pd.DataFrame(rows)


def get_demo_dataset_info(code: str) -> DemoDataset:
    """
    Look up a dataset by code.

    Raises:
        ValidationError: If the code is empty or unknown.

    Example:
        >>> get_demo_dataset_info("D7B").url_pattern
        'A'
    """
    code = _require_code(code)
    dataset = _BY_CODE.get(code)
    if dataset is None:
        raise ValidationError(
            f"Dataset code '{code}' not found in the demo.istat.it registry. "
            f"Available codes: {', '.join(sorted(_BY_CODE))}"
        )
    return dataset


def get_demo_categories() -> list[str]:
    return sorted({dataset.category for dataset in DEMO_REGISTRY})


def list_demo_datasets(category: str | None = None) -> pd.DataFrame:
    """
    Summarize the registry, optionally restricted to one category.

    Raises:
        ValidationError: On an unknown category.
    """
    registry = get_demo_registry()
    if category is not None:
        categories = get_demo_categories()
        if category not in categories:
            raise ValidationError(
                f"Unknown category: '{category}'. Available categories: {', '.join(categories)}"
            )
        registry = registry[registry["category"] == category]
    return registry[list(SUMMARY_COLUMNS)].reset_index(drop=True)


def search_demo_datasets(
    keyword: str,
    fields: Sequence[str] = DEFAULT_SEARCH_FIELDS,
    ignore_case: bool = True,
) -> pd.DataFrame:
    """
    Find datasets whose text fields contain a keyword.

    Example:
        >>> search_demo_datasets("mortality", fields=["description_en"])["code"].tolist()
        ['TVM', 'TVA', 'ISM']
    """
    if not isinstance(keyword, str) or not keyword:
        raise ValidationError("'keyword' must be a non-empty string")
    if isinstance(fields, str) or not fields:
        raise ValidationError("'fields' must be a non-empty sequence of field names")

    invalid = [f for f in fields if f not in _FIELD_NAMES]
    if invalid:
        raise ValidationError(
            f"Invalid field(s): {', '.join(invalid)}. Available fields: {', '.join(_FIELD_NAMES)}"
        )

    registry = get_demo_registry()
    mask = pd.Series(False, index=registry.index)
    for name in fields:
        column = registry[name].fillna("").astype(str)
        mask |= column.str.contains(keyword, case=not ignore_case, regex=False)
    return registry.loc[mask, list(SUMMARY_COLUMNS)].reset_index(drop=True)
