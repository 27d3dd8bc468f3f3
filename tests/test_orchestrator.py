"""Tests for the download orchestrator."""

import json
import logging
from datetime import UTC, datetime
from unittest.mock import patch

import pandas as pd
import pytest

from istatkit._cache import DownloadLog, MetadataCache
from istatkit._config import IstatConfig
from istatkit._errors import ErrorCategory, ExitCode, ParseError, ValidationError
from istatkit._http import HttpResponse
from istatkit._metadata import MetadataService
from istatkit._orchestrator import (
    NO_UPDATE_MESSAGE,
    DownloadOrchestrator,
    UpdateReason,
    merge_with_existing,
)
from istatkit._urls import HvdV1URLBuilder, LegacyURLBuilder

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
DATA_URL = "https://esploradati.istat.it/SDMXWS/rest/data/150_908"

CSV_2020_2021 = (
    "DATAFLOW,FREQ,REF_AREA,TIME_PERIOD,OBS_VALUE\n"
    "IT1:150_908(1.0),A,IT,2020,100\n"
    "IT1:150_908(1.0),A,IT,2021,200\n"
)
CSV_2021_2022 = (
    "DATAFLOW,FREQ,REF_AREA,TIME_PERIOD,OBS_VALUE\n"
    "IT1:150_908(1.0),A,IT,2021,210\n"
    "IT1:150_908(1.0),A,IT,2022,220\n"
)
CSV_HEADER_ONLY = "DATAFLOW,FREQ,REF_AREA,TIME_PERIOD,OBS_VALUE\n"


def text(body: str, headers=None) -> HttpResponse:
    return HttpResponse(status_code=200, headers=headers or {}, content=body.encode("utf-8"), client_name="stub")


def structure(*dimensions: str) -> HttpResponse:
    message = {
        "data": {
            "dataStructures": [{
                "id": "DSD_150_908",
                "dataStructureComponents": {
                    "dimensionList": {
                        "dimensions": [{"id": d, "position": i} for i, d in enumerate(dimensions, start=1)]
                    }
                },
            }],
            "codelists": [],
        }
    }
    return text(json.dumps(message))


def availability(dimension: str, codes: list[str]) -> HttpResponse:
    message = {"data": {"contentConstraints": [
        {"cubeRegions": [{"keyValues": [{"id": dimension, "values": codes}]}]}
    ]}}
    return text(json.dumps(message))


def dataflow(last_update: str) -> HttpResponse:
    message = {"data": {"dataflows": [{
        "id": "150_908",
        "names": {"it": "Popolazione residente"},
        "annotations": [{"type": "LAST_UPDATE", "title": last_update}],
    }]}}
    return text(json.dumps(message))


def sdmx_json(series_ids: list[str], series_key: str) -> HttpResponse:
    series = [{"id": d, "values": [{"id": f"{d}_0"}]} for d in series_ids]
    time = {"id": "TIME_PERIOD", "values": [{"id": "2020"}]}
    message = {"data": {
        "structure": {"dimensions": {"series": series, "observation": [time]}},
        "dataSets": [{"series": {series_key: {"observations": {"0": [1.5]}}}}],
    }}
    return text(json.dumps(message))


class FixedClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def make_orchestrator(make_transport, tmp_path):
    """Factory building an orchestrator whose every request goes to a scripted client."""

    def factory(*script, builder=None):
        transport, client = make_transport(*script)
        builder = builder or LegacyURLBuilder()
        metadata = MetadataService(transport=transport, builder=builder, cache=MetadataCache(tmp_path / "meta"))
        orchestrator = DownloadOrchestrator(
            transport=transport,
            metadata=metadata,
            download_log=DownloadLog(tmp_path / "meta", clock=FixedClock()),
            config=IstatConfig(),
            builder=builder,
        )
        return orchestrator, client

    return factory


# =============================================================================
# merge_with_existing
# =============================================================================


class TestMergeWithExisting:
    """Tests for merge_with_existing()."""

    def test_new_rows_win_on_overlap(self):
        existing = pd.DataFrame({"REF_AREA": ["IT", "IT"], "ObsDimension": ["2020", "2021"], "ObsValue": [1, 2]})
        new = pd.DataFrame({"REF_AREA": ["IT", "IT"], "ObsDimension": ["2021", "2022"], "ObsValue": [20, 30]})

        merged = merge_with_existing(existing, new)

        assert merged["ObsDimension"].tolist() == ["2020", "2021", "2022"]
        assert merged["ObsValue"].tolist() == [1, 20, 30]

    def test_disjoint_rows_are_kept(self):
        existing = pd.DataFrame({"REF_AREA": ["IT"], "ObsDimension": ["2020"], "ObsValue": [1]})
        new = pd.DataFrame({"REF_AREA": ["FR"], "ObsDimension": ["2020"], "ObsValue": [2]})

        assert len(merge_with_existing(existing, new)) == 2


# =============================================================================
# download
# =============================================================================


class TestDownload:
    """Tests for DownloadOrchestrator.download()."""

    def test_success(self, make_orchestrator):
        orchestrator, client = make_orchestrator(text(CSV_2020_2021))

        result = orchestrator.download("150_908", start_time="2020")

        assert result.success is True
        assert list(result.data.columns) == ["id", "FREQ", "REF_AREA", "ObsDimension", "ObsValue"]
        assert result.data["ObsValue"].tolist() == [100, 200]
        assert result.checksum is not None
        assert "Downloaded 2 rows for dataset 150_908" in result.message
        assert client.urls == [f"{DATA_URL}/ALL/all/?startPeriod=2020"]
        assert client.calls[0]["headers"] == {"Accept": "application/vnd.sdmx.data+csv;version=1.0.0"}

    def test_success_is_recorded(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(text(CSV_2020_2021))

        orchestrator.download("150_908")

        entry = orchestrator.download_log.get("150_908")
        assert entry.downloaded_at == T0
        assert entry.row_count == 2

    def test_incremental_wins_over_start_time(self, make_orchestrator):
        orchestrator, client = make_orchestrator(text(CSV_2020_2021))

        orchestrator.download("150_908", start_time="2010", end_time="2024", incremental="2023-01")

        assert client.urls == [f"{DATA_URL}/ALL/all/?startPeriod=2023-01&endPeriod=2024"]

    def test_invalid_incremental(self, make_orchestrator):
        orchestrator, client = make_orchestrator()

        with pytest.raises(ValidationError, match="incremental"):
            orchestrator.download("150_908", incremental="last month")
        assert client.calls == []

    def test_invalid_period_is_rejected_before_metadata_lookups(self, make_orchestrator):
        orchestrator, client = make_orchestrator(dataflow("2024-05-01T00:00:00Z"))

        with pytest.raises(ValidationError):
            orchestrator.download("150_908", start_time="not-a-period", check_update=True)
        with pytest.raises(ValidationError):
            orchestrator.download("150_908", end_time="2024-Q7", edition="latest", frequency="A")
        with pytest.raises(ValidationError):
            orchestrator.download("150_908", filter="A IT", check_update=True)
        assert client.calls == []

    def test_invalid_input_makes_no_request(self, make_orchestrator):
        orchestrator, client = make_orchestrator()

        with pytest.raises(ValidationError):
            orchestrator.download("150_908", start_time="2020-13")
        with pytest.raises(ValidationError):
            orchestrator.download("150_908", fmt="xml")
        assert client.calls == []

    def test_http_failure(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(404)

        result = orchestrator.download("150_908")

        assert result.success is False
        assert result.category is ErrorCategory.HTTP_STATUS
        assert orchestrator.download_log.get("150_908") is None

    def test_unparseable_body(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(text(CSV_HEADER_ONLY))

        result = orchestrator.download("150_908")

        assert result.success is False
        assert result.category is ErrorCategory.PARSE
        assert orchestrator.download_log.get("150_908") is None

    def test_merges_existing_data(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(text(CSV_2020_2021), text(CSV_2021_2022))
        first = orchestrator.download("150_908")

        second = orchestrator.download("150_908", existing_data=first.data)

        assert second.data["ObsDimension"].tolist() == ["2020", "2021", "2022"]
        assert second.data["ObsValue"].tolist() == [100, 210, 220]
        assert orchestrator.download_log.get("150_908").row_count == 3

    def test_post_on_hvd(self, make_orchestrator):
        orchestrator, client = make_orchestrator(text(CSV_2020_2021), builder=HvdV1URLBuilder())

        orchestrator.download("150_908", filter="A.IT", method="POST")

        assert client.calls[0]["method"] == "POST"
        assert client.calls[0]["data"] == "A.IT"
        assert client.urls == ["https://esploradati.istat.it/hvd/rest/data/150_908/body/all"]


class TestEditionAndFrequency:
    """Tests for edition and frequency key resolution."""

    def test_latest_edition(self, make_orchestrator):
        orchestrator, client = make_orchestrator(
            structure("FREQ", "REF_AREA", "EDITION"),
            availability("EDITION", ["G_2024_01", "G_2024_03", "G_2023_12"]),
            text(CSV_2020_2021),
        )

        result = orchestrator.download("150_908", edition="latest")

        assert result.success is True
        assert client.urls[-1] == f"{DATA_URL}/..G_2024_03/all/"

    def test_explicit_edition_and_frequency(self, make_orchestrator):
        orchestrator, client = make_orchestrator(structure("FREQ", "REF_AREA", "EDITION"), text(CSV_2020_2021))

        orchestrator.download("150_908", edition="G_2024_01", frequency="A")

        assert client.urls[-1] == f"{DATA_URL}/A..G_2024_01/all/"

    def test_edition_never_overrides_caller_filter(self, make_orchestrator):
        orchestrator, client = make_orchestrator(structure("FREQ", "REF_AREA", "EDITION"), text(CSV_2020_2021))

        orchestrator.download("150_908", filter="M.IT.G_2023_12", edition="G_2024_01")

        assert client.urls[-1] == f"{DATA_URL}/M.IT.G_2023_12/all/"

    def test_dataset_without_edition(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(structure("FREQ", "REF_AREA"))

        with pytest.raises(ValidationError, match="no EDITION dimension"):
            orchestrator.download("150_908", edition="latest")

    def test_unknown_structure(self, make_orchestrator):
        orchestrator, client = make_orchestrator(404)

        result = orchestrator.download("150_908", frequency="A")

        assert result.success is False
        assert "Could not determine the dimensions" in result.message
        assert len(client.calls) == 1

    def test_latest_edition_unavailable(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(structure("FREQ", "EDITION"), 404)

        result = orchestrator.download("150_908", edition="latest")

        assert result.success is False
        assert "available editions" in result.message

    def test_by_frequency(self, make_orchestrator):
        orchestrator, client = make_orchestrator(structure("FREQ", "REF_AREA"), text(CSV_2020_2021))

        results = orchestrator.download_by_frequency("150_908", frequencies=["A", "Q"])

        assert list(results) == ["A", "Q"]
        assert all(r.success for r in results.values())
        assert client.urls[1:] == [f"{DATA_URL}/A./all/", f"{DATA_URL}/Q./all/"]

    def test_by_frequency_discovers_available(self, make_orchestrator):
        orchestrator, client = make_orchestrator(
            availability("FREQ", ["M"]), structure("FREQ", "REF_AREA"), text(CSV_2020_2021)
        )

        results = orchestrator.download_by_frequency("150_908", frequencies=None)

        assert list(results) == ["M"]
        assert client.urls[-1] == f"{DATA_URL}/M./all/"

    def test_by_frequency_falls_back_to_all(self, make_orchestrator):
        orchestrator, client = make_orchestrator(404, text(CSV_2020_2021))

        results = orchestrator.download_by_frequency("150_908", frequencies=None)

        assert list(results) == ["ALL"]
        assert results["ALL"].success is True


# =============================================================================
# Batches
# =============================================================================


class TestDownloadMany:
    """Tests for DownloadOrchestrator.download_many()."""

    def test_failures_are_isolated(self, make_orchestrator, caplog):
        orchestrator, client = make_orchestrator(text(CSV_2020_2021), 404, text(CSV_2020_2021))

        with caplog.at_level(logging.INFO, logger="istatkit._orchestrator"):
            batch = orchestrator.download_many(["150_908", "151_914", "bad id", "22_289"])

        assert list(batch.results) == ["150_908", "151_914", "bad id", "22_289"]
        assert batch.succeeded == ["150_908", "22_289"]
        assert batch.failed == ["151_914", "bad id"]
        assert batch.all_succeeded is False
        assert len(batch.batch_id) == 26
        assert len(client.calls) == 3
        assert all(batch.batch_id in r.message for r in caplog.records if "Batch" in r.message)

    def test_malformed_json_fails_only_its_dataset(self, make_orchestrator):
        malformed = sdmx_json(["FREQ", "REF_AREA", "SEX", "AGE"], series_key="0:0:0")
        orchestrator, client = make_orchestrator(malformed, sdmx_json(["FREQ", "REF_AREA"], series_key="0:0"))

        batch = orchestrator.download_many(["150_908", "151_914"], fmt="json")

        assert batch.failed == ["150_908"]
        assert batch.results["150_908"].category is ErrorCategory.PARSE
        assert batch.results["150_908"].exit_code is ExitCode.GENERIC_ERROR
        assert batch.succeeded == ["151_914"]
        assert len(client.calls) == 2

    def test_library_error_fails_only_its_dataset(self, make_orchestrator):
        orchestrator, client = make_orchestrator(text(CSV_2020_2021))

        with patch.object(orchestrator.metadata, "get_dimensions", side_effect=ParseError("Corrupt structure")):
            batch = orchestrator.download_many(["150_908", "151_914"], frequency="A")

        assert batch.failed == ["150_908", "151_914"]
        assert batch.results["150_908"].category is ErrorCategory.PARSE
        assert "Corrupt structure" in batch.results["151_914"].message
        assert client.calls == []

    def test_empty_batch(self, make_orchestrator):
        orchestrator, client = make_orchestrator()

        batch = orchestrator.download_many([], parallelism=4)

        assert batch.results == {}
        assert batch.all_succeeded is True
        assert client.calls == []

    def test_kwargs_are_forwarded(self, make_orchestrator):
        orchestrator, client = make_orchestrator(text(CSV_2020_2021))

        orchestrator.download_many(["150_908", "151_914"], start_time="2021")

        assert all(url.endswith("?startPeriod=2021") for url in client.urls)


# =============================================================================
# Update tracking
# =============================================================================


class TestUpdates:
    """Tests for update detection."""

    CHECK_URL = f"{DATA_URL}/ALL/all/?updatedAfter=2024-06-01T12%3A00%3A00Z&lastNObservations=1"

    def test_first_download(self, make_orchestrator):
        orchestrator, client = make_orchestrator()

        status = orchestrator.check_update("150_908")

        assert status.has_updates is True
        assert status.reason == UpdateReason.FIRST_DOWNLOAD
        assert status.last_download is None
        assert client.calls == []

    def test_modified(self, make_orchestrator):
        orchestrator, client = make_orchestrator(text(CSV_2020_2021))
        orchestrator.download_log.record("150_908")

        status = orchestrator.check_update("150_908")

        assert status.has_updates is True
        assert status.reason == UpdateReason.DATA_MODIFIED
        assert status.last_download == T0
        assert client.urls == [self.CHECK_URL]

    def test_not_modified(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(text(CSV_HEADER_ONLY))
        orchestrator.download_log.record("150_908")

        status = orchestrator.check_update("150_908")

        assert status.has_updates is False
        assert status.reason == UpdateReason.NO_UPDATES

    def test_check_failed(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(404)
        orchestrator.download_log.record("150_908")

        status = orchestrator.check_update("150_908")

        assert status.has_updates is False
        assert status.reason == UpdateReason.CHECK_FAILED
        assert status.error.success is False

    def test_check_updates(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(text(CSV_HEADER_ONLY))
        orchestrator.download_log.record("150_908")

        statuses = orchestrator.check_updates(["150_908", "151_914"])

        assert [s.has_updates for s in statuses] == [False, True]

    def test_download_if_updated_skips(self, make_orchestrator):
        orchestrator, client = make_orchestrator(text(CSV_HEADER_ONLY))
        orchestrator.download_log.record("150_908")

        result = orchestrator.download_if_updated("150_908")

        assert result.success is True
        assert result.data is None
        assert result.message == NO_UPDATE_MESSAGE
        assert len(client.calls) == 1

    def test_download_if_updated_forced(self, make_orchestrator):
        orchestrator, client = make_orchestrator(text(CSV_2020_2021))
        orchestrator.download_log.record("150_908")

        result = orchestrator.download_if_updated("150_908", force=True)

        assert result.success is True
        assert client.urls == [f"{DATA_URL}/ALL/all/"]

    def test_download_if_updated_propagates_check_failure(self, make_orchestrator):
        orchestrator, _ = make_orchestrator(404)
        orchestrator.download_log.record("150_908")

        result = orchestrator.download_if_updated("150_908")

        assert result.success is False
        assert result.category is ErrorCategory.HTTP_STATUS

    def test_check_update_flag_skips_unchanged(self, make_orchestrator):
        orchestrator, client = make_orchestrator(
            dataflow("2024-05-20T10:00:00"), text(CSV_2020_2021), dataflow("2024-05-20T10:00:00")
        )

        first = orchestrator.download("150_908", check_update=True)
        second = orchestrator.download("150_908", check_update=True)

        assert first.success is True
        assert first.data is not None
        assert second.data is None
        assert second.message == NO_UPDATE_MESSAGE
        assert len(client.calls) == 3

    def test_check_update_flag_downloads_newer(self, make_orchestrator):
        orchestrator, client = make_orchestrator(
            dataflow("2024-05-20T10:00:00"), text(CSV_2020_2021),
            dataflow("2024-05-28T10:00:00"), text(CSV_2020_2021),
        )

        orchestrator.download("150_908", check_update=True)
        second = orchestrator.download("150_908", check_update=True)

        assert second.data is not None
        assert len(client.calls) == 4
        assert orchestrator.download_log.get("150_908").remote_last_update == datetime(2024, 5, 28, 10, tzinfo=UTC)
