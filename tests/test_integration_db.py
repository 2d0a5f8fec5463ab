import os
import textwrap
from pathlib import Path

import pytest
import psycopg2

RUN_INTEGRATION = os.getenv("E2E") == "1"


@pytest.mark.skipif(not RUN_INTEGRATION, reason="Set E2E=1 to run DB integration tests")
def test_upload_upserts_into_db(tmp_path: Path):
    """
    End-to-end integration:
      1) Build the app against a real Postgres store
      2) Upload a maternal CSV twice (queue disabled, so it runs in the request)
      3) Check Postgres holds one row per patient, with the second upload's values
    Requires: docker compose up (postgres reachable on localhost:5432)
    """
    from fastapi.testclient import TestClient
    from risk_ingest.config import Settings
    from risk_ingest.main import create_app

    settings = Settings(
        upload_dir=str(tmp_path / "uploads"),
        queue_backend="none",
        cache_backend="memory",
        store_backend="postgres",
        pg_host=os.environ.get("POSTGRES_HOST", "localhost"),
        pg_port=int(os.environ.get("POSTGRES_PORT", "5432")),
        pg_db=os.environ.get("POSTGRES_DB", "risk_tracking"),
        pg_user=os.environ.get("POSTGRES_USER", "user"),
        pg_password=os.environ.get("POSTGRES_PASSWORD", "pass"),
        log_format="text",
    )
    first = textwrap.dedent(
        """\
        patient_id,name,age,risk_score,risk_level,risk_factors
        E2E-001,Ana Lima,29,40,medium,"anemia,hypertension"
        E2E-002,Bea Costa,41,,,gestational diabetes
        """
    )
    second = first.replace("40,medium", "85,critical")

    with TestClient(create_app(settings)) as client:
        for text in (first, second):
            resp = client.post(
                "/patients/maternal/upload",
                files={"file": ("e2e.csv", text, "text/csv")},
                timeout=10,
            )
            assert resp.status_code == 200, resp.text
            assert resp.json()["recordsSuccess"] == 2

    dsn = os.getenv(
        "DATABASE_URL",
        f"postgresql://{settings.pg_user}:{settings.pg_password}@{settings.pg_host}:{settings.pg_port}/{settings.pg_db}",
    )
    conn = psycopg2.connect(dsn)
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM maternal_patient WHERE patient_id LIKE %s;", ("E2E-%",))
            count = cur.fetchone()[0]
            cur.execute("SELECT risk_level FROM maternal_patient WHERE patient_id = %s;", ("E2E-001",))
            level = cur.fetchone()[0]
            cur.execute("DELETE FROM maternal_patient WHERE patient_id LIKE %s;", ("E2E-%",))
        conn.commit()
    finally:
        conn.close()

    assert count == 2, f"Expected 2 rows for E2E patients, got {count}"
    assert level == "critical"
