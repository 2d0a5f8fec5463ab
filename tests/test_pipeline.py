# tests/test_pipeline.py
import httpx
import pytest

from risk_ingest.errors import ParseError, StoreWriteError
from risk_ingest.loader import InMemoryPatientStore
from risk_ingest.models import RecordType
from risk_ingest.pipeline import process_batch, remove_artifact

from conftest import MATERNAL_CSV, PEDIATRIC_CSV, failing_scorer, make_scorer, run


def test_row_missing_identity_is_counted_not_fatal(write_csv, store, fallback_scorer):
    path = write_csv(
        "patient_id,name,age,risk_factors,risk_score,risk_level\n"
        "P1,Ana,30,anemia,20,low\n"
        ",Bia,31,anemia,20,low\n"
        "P3,Cris,32,anemia,20,low\n"
    )
    summary = run(process_batch(path, RecordType.maternal, fallback_scorer, store))
    assert summary.model_dump() == {
        "recordsProcessed": 3,
        "recordsSuccess": 2,
        "recordsFailed": 1,
        "errors": ("Missing required fields for patient unknown",),
    }


def test_scorer_down_for_every_row_still_succeeds(write_csv, store):
    rows = "\n".join(f"P{i},Name {i},{25 + i},anemia" for i in range(5))
    path = write_csv("patient_id,name,age,risk_factors\n" + rows + "\n")
    scorer, calls = failing_scorer()
    summary = run(process_batch(path, RecordType.maternal, scorer, store))
    assert (summary.recordsSuccess, summary.recordsFailed) == (5, 0)
    assert len(calls.requests) == 5
    assert all(r.riskScore is not None for r in run(store.list(RecordType.maternal)))


def test_rows_with_explicit_risk_never_reach_the_scorer(write_csv, store):
    scorer, calls = make_scorer(lambda r: httpx.Response(200, json={"riskScore": 33, "riskLevel": "medium"}))
    summary = run(process_batch(write_csv(MATERNAL_CSV), RecordType.maternal, scorer, store))
    assert summary.recordsSuccess == 3
    # only M002 lacks score/level
    assert len(calls.requests) == 1
    assert run(store.get_by_id(RecordType.maternal, "M001")).riskScore == 40
    assert run(store.get_by_id(RecordType.maternal, "M002")).riskScore == 33


def test_reingesting_the_same_file_is_idempotent(write_csv, store, fallback_scorer):
    first = run(process_batch(write_csv(MATERNAL_CSV), RecordType.maternal, fallback_scorer, store))
    before = {r.patientId: r.model_dump(exclude={"lastUpdated"}) for r in run(store.list(RecordType.maternal))}
    second = run(process_batch(write_csv(MATERNAL_CSV), RecordType.maternal, fallback_scorer, store))
    after = {r.patientId: r.model_dump(exclude={"lastUpdated"}) for r in run(store.list(RecordType.maternal))}
    assert first.recordsSuccess == second.recordsSuccess == 3
    assert before == after
    assert len(after) == 3


def test_pediatric_batch(write_csv, store, fallback_scorer):
    summary = run(process_batch(write_csv(PEDIATRIC_CSV), RecordType.pediatric, fallback_scorer, store))
    assert summary.recordsSuccess == 2
    eva = run(store.get_by_id(RecordType.pediatric, "C002"))
    assert eva.riskFactors == ["low birth weight", "prematurity"]
    assert eva.riskLevel.value == "critical"


def test_parse_error_writes_nothing(write_csv, store, fallback_scorer):
    path = write_csv("patient_id,name,age,risk_factors\nP1,Ana,30,anemia\nP2,Bia,31,anemia,extra\n")
    with pytest.raises(ParseError):
        run(process_batch(path, RecordType.maternal, fallback_scorer, store))
    assert run(store.list(RecordType.maternal)) == []


class FlakyStore(InMemoryPatientStore):
    async def create_or_update(self, record):
        if record.identity == "M002":
            raise StoreWriteError("disk full")
        return await super().create_or_update(record)


def test_store_write_failure_is_a_row_failure(write_csv, fallback_scorer):
    summary = run(process_batch(write_csv(MATERNAL_CSV), RecordType.maternal, fallback_scorer, FlakyStore()))
    assert (summary.recordsSuccess, summary.recordsFailed) == (2, 1)
    assert summary.errors == ("Error processing patient M002: disk full",)


def test_progress_callback_is_monotonic(write_csv, store, fallback_scorer):
    seen = []

    async def on_progress(pct):
        seen.append(pct)

    run(process_batch(write_csv(MATERNAL_CSV), RecordType.maternal, fallback_scorer, store, on_progress))
    assert seen == sorted(seen)
    assert len(seen) == 3
    assert max(seen) < 100


def test_remove_artifact_never_raises(tmp_path):
    remove_artifact(str(tmp_path / "gone.csv"))
    remove_artifact(None)
    remove_artifact(str(tmp_path))  # a directory: logged, not raised


def test_file_that_is_not_utf8_is_a_parse_error(tmp_path, store, fallback_scorer):
    path = tmp_path / "latin1.csv"
    path.write_bytes(b"\xff\xfepatient_id,name,age,risk_factors\nP1,Jos\xe9,30,anemia\n")
    with pytest.raises(ParseError, match="not valid UTF-8"):
        run(process_batch(str(path), RecordType.maternal, fallback_scorer, store))
    assert run(store.list(RecordType.maternal)) == []
