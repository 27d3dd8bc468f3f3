"""Tests for the staggered-TTL metadata cache and the download log."""

import json
from datetime import UTC, datetime, timedelta

import pytest

from istatkit._cache import (
    CODELIST_METADATA_FILE,
    DOWNLOAD_LOG_FILE,
    DownloadLog,
    MetadataCache,
    compute_ttl,
    extract_root_id,
)
from istatkit._config import ISTAT
from istatkit._errors import HttpStatusError

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


class MutableClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def cache(tmp_path, clock) -> MetadataCache:
    return MetadataCache(tmp_path, base_ttl_days=14, jitter_days=14, dataflow_ttl_days=14, clock=clock)


# =============================================================================
# Helpers
# =============================================================================


class TestComputeTtl:
    """Tests for compute_ttl()."""

    @pytest.mark.parametrize("key", ["CL_FREQ", "CL_ITTER107", "CL_SEXISTAT1", "CL_ETA1", "CL_TIPO_DATO15"])
    def test_within_window(self, key):
        assert 14 <= compute_ttl(key, 14, 14) < 28

    def test_is_stable(self):
        assert compute_ttl("CL_FREQ") == compute_ttl("CL_FREQ")

    def test_zero_jitter_is_base(self):
        assert compute_ttl("CL_FREQ", base_ttl=7, jitter_days=0) == 7

    def test_spreads_expirations(self):
        ttls = {compute_ttl(f"CL_{i}") for i in range(50)}

        assert len(ttls) > 1

    def test_rejects_invalid_base(self):
        with pytest.raises(AssertionError):
            compute_ttl("CL_FREQ", base_ttl=0)


class TestExtractRootId:
    """Tests for extract_root_id()."""

    @pytest.mark.parametrize(
        "dataset_id,expected",
        [
            ("534_49_DF_DCSC_GI_ORE_10", "534_49"),
            ("150_908", "150_908"),
            ("22_289_DF_DCIS_POPRES1_1", "22_289"),
            ("DCIS_POPRES1", "DCIS_POPRES1"),
        ],
    )
    def test_root_id(self, dataset_id, expected):
        assert extract_root_id(dataset_id) == expected


# =============================================================================
# Dataflow catalogue
# =============================================================================


class TestDataflows:
    """Tests for the cached dataflow catalogue."""

    def test_missing_catalogue_is_expired(self, cache):
        assert cache.load_dataflows() is None
        assert cache.dataflows_expired() is True

    def test_fresh_catalogue(self, cache, clock):
        cache.save_dataflows([{"id": "150_908", "name": "Popolazione"}])
        clock.advance(days=13)

        assert cache.load_dataflows() == [{"id": "150_908", "name": "Popolazione"}]
        assert cache.dataflows_expired() is False

    def test_catalogue_expires_after_ttl(self, cache, clock):
        cache.save_dataflows([])
        clock.advance(days=14)

        assert cache.dataflows_expired() is True

    def test_defaults_come_from_config(self, tmp_path):
        ISTAT.configure(cache={"cache_dir": str(tmp_path / "meta"), "dataflow_ttl_days": 3})

        cache = MetadataCache()

        assert cache.cache_dir == tmp_path / "meta"
        assert cache.dataflow_ttl_days == 3


# =============================================================================
# Codelists
# =============================================================================


class TestCodelists:
    """Tests for codelist storage, expiration and refresh."""

    def store(self, cache):
        cache.store_codelists(
            "150_908",
            {"CL_FREQ": {"A": "annuale"}, "CL_ITTER107": {"IT": "Italia"}},
            {"FREQ": "CL_FREQ", "REF_AREA": "CL_ITTER107", "TIME_PERIOD": None},
        )

    def test_codelists_are_shared_by_id(self, cache):
        self.store(cache)
        cache.store_codelists("150_915", {"CL_FREQ": {"A": "annuale"}}, {"FREQ": "CL_FREQ"})

        payload = json.loads((cache.cache_dir / "codelists.json").read_text(encoding="utf-8"))
        assert sorted(payload) == ["CL_FREQ", "CL_ITTER107"]
        assert sorted(cache.datasets_using("CL_FREQ")) == ["150_908", "150_915"]

    def test_dataset_references(self, cache):
        self.store(cache)

        entry = cache.get_dataset_codelists("150_908")

        assert entry["dimensions"] == ["FREQ", "REF_AREA", "TIME_PERIOD"]
        assert entry["codelists"] == {"FREQ": "CL_FREQ", "REF_AREA": "CL_ITTER107"}

    def test_compound_id_falls_back_to_root(self, cache):
        cache.store_codelists("534_49", {"CL_FREQ": {"M": "mensile"}}, {"FREQ": "CL_FREQ"})

        assert cache.get_dataset_codelists("534_49_DF_DCSC_GI_ORE_10")["codelists"] == {"FREQ": "CL_FREQ"}
        assert cache.get_dataset_codelists("999_1") is None

    def test_metadata_records_ttl(self, cache):
        self.store(cache)

        meta = cache.codelist_metadata("CL_FREQ")

        assert meta.first_download == T0
        assert meta.last_refresh == T0
        assert meta.ttl_days == compute_ttl("CL_FREQ", 14, 14)
        assert cache.cached_codelist_ids() == ["CL_FREQ", "CL_ITTER107"]

    def test_nothing_expires_before_base_ttl(self, cache, clock):
        self.store(cache)
        clock.advance(days=13)

        assert cache.check_expiration() == []

    def test_everything_expires_after_window(self, cache, clock):
        self.store(cache)
        clock.advance(days=28)

        assert cache.check_expiration() == ["CL_FREQ", "CL_ITTER107"]

    def test_expires_exactly_at_ttl(self, cache, clock):
        self.store(cache)
        ttl = cache.ttl_for("CL_FREQ")

        clock.advance(days=ttl - 1)
        assert "CL_FREQ" not in cache.check_expiration()
        clock.advance(days=1)
        assert "CL_FREQ" in cache.check_expiration()

    def test_force_check_and_key_filter(self, cache):
        self.store(cache)

        assert cache.check_expiration(["CL_FREQ", "CL_UNKNOWN"], force_check=True) == ["CL_FREQ"]

    def test_refresh_updates_expired_only(self, cache, clock):
        self.store(cache)
        clock.advance(days=30)
        fetched = []

        def fetcher(codelist_id):
            fetched.append(codelist_id)
            return {"A": "annual"}

        refreshed = cache.refresh(fetcher, keys=["CL_FREQ"])

        assert refreshed == ["CL_FREQ"]
        assert fetched == ["CL_FREQ"]
        assert cache.get_codelist("CL_FREQ") == {"A": "annual"}
        meta = cache.codelist_metadata("CL_FREQ")
        assert meta.first_download == T0
        assert meta.last_refresh == clock.now
        assert cache.check_expiration(["CL_FREQ"]) == []

    def test_refresh_with_nothing_expired(self, cache):
        self.store(cache)

        assert cache.refresh(lambda cl: pytest.fail("must not fetch")) == []

    def test_refresh_failure_keeps_payload(self, cache, clock):
        self.store(cache)
        clock.advance(days=30)

        def fetcher(codelist_id):
            if codelist_id == "CL_FREQ":
                raise HttpStatusError(503, url="https://example.org")
            return None

        assert cache.refresh(fetcher) == []
        assert cache.get_codelist("CL_FREQ") == {"A": "annuale"}
        assert cache.check_expiration() == ["CL_FREQ", "CL_ITTER107"]

    def test_evict(self, cache):
        self.store(cache)

        assert cache.evict("CL_FREQ") is True
        assert cache.get_codelist("CL_FREQ") is None
        assert cache.codelist_metadata("CL_FREQ") is None
        assert cache.evict("CL_FREQ") is False

    def test_corrupted_metadata_is_treated_as_empty(self, cache):
        cache.cache_dir.mkdir(parents=True, exist_ok=True)
        (cache.cache_dir / CODELIST_METADATA_FILE).write_text("{broken", encoding="utf-8")

        assert cache.check_expiration() == []


# =============================================================================
# Download log
# =============================================================================


class TestDownloadLog:
    """Tests for DownloadLog."""

    def test_missing_entry(self, tmp_path):
        assert DownloadLog(tmp_path).get("150_908") is None
        assert DownloadLog(tmp_path).last_download("150_908") is None

    def test_record_and_read_back(self, tmp_path, clock):
        log = DownloadLog(tmp_path, clock=clock)
        remote = datetime(2024, 5, 20, tzinfo=UTC)

        log.record("150_908", remote_last_update=remote, row_count=42)

        entry = DownloadLog(tmp_path).get("150_908")
        assert entry.downloaded_at == T0
        assert entry.remote_last_update == remote
        assert entry.row_count == 42

    def test_record_overwrites(self, tmp_path, clock):
        log = DownloadLog(tmp_path, clock=clock)
        log.record("150_908", row_count=1)
        clock.advance(days=1)

        log.record("150_908", row_count=2)

        assert log.get("150_908").row_count == 2
        assert log.last_download("150_908") == T0 + timedelta(days=1)
        assert list(log.all()) == ["150_908"]

    def test_file_layout(self, tmp_path, clock):
        DownloadLog(tmp_path, clock=clock).record("150_908")

        content = json.loads((tmp_path / DOWNLOAD_LOG_FILE).read_text(encoding="utf-8"))

        assert content["version"] == "1.0"
        assert content["datasets"]["150_908"]["downloaded_at"] == T0.isoformat()
        assert content["datasets"]["150_908"]["remote_last_update"] is None
