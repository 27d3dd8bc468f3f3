"""Tests for demographic portal URL construction."""

from unittest.mock import patch

import pytest

from istatkit._config import ISTAT
from istatkit._errors import ValidationError
from istatkit.demo import build_demo_url, get_demo_filename

BASE = "https://demo.istat.it/data"


@pytest.fixture(autouse=True)
def current_year():
    with patch("istatkit.demo._urls._current_year", return_value=2025):
        yield


class TestPatterns:
    """One example per file naming pattern."""

    @pytest.mark.parametrize(
        "code,params,expected",
        [
            ("D7B", {"year": 2024}, f"{BASE}/d7b/D7B2024.csv.zip"),
            ("RBD", {"year": 2010}, f"{BASE}/ricostruzione/RBD-Dataset-2010.csv.zip"),
            ("AIR", {"year": 2023}, f"{BASE}/aire/AIRE_2023_it.csv.zip"),
            ("POS", {"year": 2025, "territory": "Comuni"}, f"{BASE}/posas/POSAS_2025_it_Comuni.zip"),
            ("STR", {"year": 2020, "territory": "Italia"}, f"{BASE}/strasa/STRASA_2020_it_Italia.zip"),
            ("P02", {"year": 2022, "territory": "Regioni"}, f"{BASE}/p2/P2_2022_it_Regioni.zip"),
            (
                "TVM",
                {"year": 2024, "level": "regionali", "type": "completi"},
                f"{BASE}/tvm/datiregionalicompleti2024.zip",
            ),
            (
                "PPR",
                {"data_type": "Indicatori", "geo_level": "Italia"},
                f"{BASE}/previsioni/Indicatori-Italia.zip",
            ),
            (
                "PPC",
                {"data_type": "Previsioni_comunali_indicatori", "geo_level": "Comuni"},
                f"{BASE}/previsionicomunali/Previsioni_comunali_indicatori-Comuni.csv.zip",
            ),
            (
                "PRF",
                {"data_type": "Famiglie_per_tipologia_familiare"},
                f"{BASE}/previsionifamiliari/Famiglie_per_tipologia_familiare.csv.zip",
            ),
            ("RCS", {"year": 2025, "subtype": "cittadinanza"}, f"{BASE}/rcs/Dati_RCS_cittadinanza_2025.zip"),
            ("TVA", {}, f"{BASE}/tva/tavole%20attuariali.zip"),
            ("ISM", {"year": 2019}, f"{BASE}/ism/Decessi-Tassi-Anno_2019.csv"),
        ],
    )
    def test_url(self, code, params, expected):
        assert build_demo_url(code, **params) == expected

    def test_filename(self):
        assert get_demo_filename("RCS", year=2025, subtype="nascita") == "Dati_RCS_nascita_2025.zip"
        assert get_demo_filename("TVA") == "tavole%20attuariali.zip"

    def test_explicit_base_url(self):
        url = build_demo_url("D7B", year=2024, base_url="https://mirror.example.org/data/")

        assert url == "https://mirror.example.org/data/d7b/D7B2024.csv.zip"

    def test_base_url_from_config(self):
        ISTAT.configure(demo={"base_url": "https://mirror.example.org/demo"})

        assert build_demo_url("D7B", year=2024) == "https://mirror.example.org/demo/d7b/D7B2024.csv.zip"


class TestValidation:
    """Tests for parameter validation."""

    def test_missing_year(self):
        with pytest.raises(ValidationError, match="Parameter 'year' is required for dataset 'D7B' \\(Pattern A\\)"):
            build_demo_url("D7B")

    def test_missing_territory(self):
        with pytest.raises(ValidationError, match="Parameter 'territory' is required"):
            build_demo_url("POS", year=2024)

    def test_missing_data_type_lists_choices(self):
        with pytest.raises(ValidationError, match="Valid values: Previsioni-Popolazione_per_eta, Indicatori"):
            build_demo_url("PPR")

    def test_year_before_start(self):
        with pytest.raises(ValidationError, match="Year 2018 is out of range for dataset 'D7B'. Valid range: 2019-2025"):
            build_demo_url("D7B", year=2018)

    def test_year_after_current(self):
        with pytest.raises(ValidationError, match="Valid range: 2019-2025"):
            build_demo_url("D7B", year=2026)

    def test_year_after_fixed_end(self):
        with pytest.raises(ValidationError, match="Valid range: 2002-2018"):
            build_demo_url("RBD", year=2019)

    def test_non_integer_year(self):
        with pytest.raises(ValidationError, match="must be an integer"):
            build_demo_url("D7B", year="last")

    def test_invalid_territory(self):
        with pytest.raises(ValidationError, match="Territory 'Comune' is not valid for dataset 'POS'"):
            build_demo_url("POS", year=2024, territory="Comune")

    def test_invalid_level_and_type(self):
        with pytest.raises(ValidationError, match="Level 'comunali'"):
            build_demo_url("TVM", year=2024, level="comunali", type="completi")
        with pytest.raises(ValidationError, match="Type 'medi'"):
            build_demo_url("TVM", year=2024, level="regionali", type="medi")

    def test_invalid_geo_level(self):
        with pytest.raises(ValidationError, match="Geographic level 'Regioni'"):
            build_demo_url("PPC", data_type="Previsioni_comunali_indicatori", geo_level="Regioni")

    def test_invalid_subtype(self):
        with pytest.raises(ValidationError, match="Subtype 'residenza'"):
            build_demo_url("RCS", year=2024, subtype="residenza")

    def test_interactive_only(self):
        with pytest.raises(ValidationError, match="only available through the interactive portal at "
                                                  "https://demo.istat.it/app/\\?i=MA1&l=it"):
            build_demo_url("MA1", year=2024)

    def test_unknown_code(self):
        with pytest.raises(ValidationError, match="not found in the demo.istat.it registry"):
            build_demo_url("XYZ", year=2024)
