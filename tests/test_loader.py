# tests/test_loader.py
import asyncio
from datetime import datetime, timezone

from risk_ingest.loader import InMemoryPatientStore
from risk_ingest.models import MaternalPatient, PatientFilter, PediatricPatient, RecordType, RiskLevel

from conftest import run


def maternal(pid="M1", name="Ana", score=40, level="medium", **kw):
    return MaternalPatient(
        patientId=pid, name=name, age=kw.pop("age", 30), riskScore=score, riskLevel=level,
        riskFactors=kw.pop("factors", ["anemia"]), **kw,
    )


def test_create_then_replace():
    store = InMemoryPatientStore()
    assert run(store.create_or_update(maternal())) is True
    assert run(store.create_or_update(maternal(name="Ana Maria", score=80, level="critical"))) is False
    rec = run(store.get_by_id(RecordType.maternal, "M1"))
    assert (rec.name, rec.riskScore, rec.riskLevel) == ("Ana Maria", 80, RiskLevel.critical)
    assert len(run(store.list(RecordType.maternal))) == 1


def test_types_are_separate():
    store = InMemoryPatientStore()
    run(store.create_or_update(maternal(pid="X1")))
    run(store.create_or_update(PediatricPatient(
        childId="X1", name="Davi", riskScore=10, riskLevel="low", riskFactors=["jaundice"],
    )))
    assert len(run(store.list(RecordType.maternal))) == 1
    assert len(run(store.list(RecordType.pediatric))) == 1


def test_filters():
    store = InMemoryPatientStore()
    run(store.create_or_update(maternal("M1", "Ana", 80, "critical",
                                        lastUpdated=datetime(2024, 1, 1, tzinfo=timezone.utc))))
    run(store.create_or_update(maternal("M2", "Bea", 10, "low",
                                        lastUpdated=datetime(2024, 3, 1, tzinfo=timezone.utc))))
    ids = lambda flt: sorted(r.identity for r in run(store.list(RecordType.maternal, flt)))
    assert ids(PatientFilter(riskLevel="critical")) == ["M1"]
    assert ids(PatientFilter(search="bea")) == ["M2"]
    assert ids(PatientFilter(search="m1")) == ["M1"]
    assert ids(PatientFilter(dateFrom=datetime(2024, 2, 1))) == ["M2"]
    assert ids(PatientFilter(dateTo=datetime(2024, 2, 1, tzinfo=timezone.utc))) == ["M1"]


def test_delete():
    store = InMemoryPatientStore()
    run(store.create_or_update(maternal()))
    assert run(store.delete(RecordType.maternal, "M1")) is True
    assert run(store.delete(RecordType.maternal, "M1")) is False
    assert run(store.get_by_id(RecordType.maternal, "M1")) is None


def test_concurrent_writes_to_one_key_leave_one_record():
    store = InMemoryPatientStore()

    async def scenario():
        await asyncio.gather(*[
            store.create_or_update(maternal(name=f"Ana {i}", score=i)) for i in range(20)
        ])
        return await store.list(RecordType.maternal)

    records = run(scenario())
    assert len(records) == 1
    assert records[0].name.startswith("Ana ")


def test_returned_records_are_copies():
    store = InMemoryPatientStore()
    run(store.create_or_update(maternal()))
    rec = run(store.get_by_id(RecordType.maternal, "M1"))
    rec.riskFactors.append("tampered")
    assert run(store.get_by_id(RecordType.maternal, "M1")).riskFactors == ["anemia"]
