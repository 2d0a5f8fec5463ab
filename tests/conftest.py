import asyncio
import os
import sys
import tempfile
import textwrap
from typing import Callable, List

import httpx
import pytest

# ---- Make src/ importable without an install ----
THIS_DIR = os.path.dirname(__file__)
SRC_DIR = os.path.abspath(os.path.join(THIS_DIR, "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)
# -------------------------------------------------

# keep the module-level app away from redis while tests import it
os.environ.setdefault("QUEUE_BACKEND", "none")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="risk_uploads_"))

from fastapi.testclient import TestClient

from risk_ingest.cache import MemoryCache
from risk_ingest.config import Settings
from risk_ingest.jobqueue import MemoryQueueBackend, QueueHandle
from risk_ingest.loader import InMemoryPatientStore
from risk_ingest.main import create_app
from risk_ingest.orchestrator import Orchestrator, RetryPolicy
from risk_ingest.scorer import RiskScorer

MATERNAL_CSV = textwrap.dedent("""\
    Patient ID,Name,Age,Risk Score,Risk Level,Risk Factors,Last Updated
    M001,Ana Lima,29,40,medium,"anemia, hypertension",2024-01-15T09:30:00Z
    M002,Bea Costa,41,,,"gestational diabetes",2024-01-16T10:00:00Z
    M003,Cris Souza,17,80,critical,"preeclampsia,anemia",
    """)

PEDIATRIC_CSV = textwrap.dedent("""\
    child_id,name,birth_weight,gestation_weeks,risk_score,risk_level,risk_factors
    C001,Davi,3.2,39,15,low,jaundice
    C002,Eva,1.4,31,,,"low birth weight,prematurity"
    """)


def run(coro):
    return asyncio.run(coro)


class RecordingTransport:
    """httpx mock transport handler that records every request and answers with ``respond``."""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


def make_scorer(respond: Callable[[httpx.Request], httpx.Response]):
    handler = RecordingTransport(respond)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RiskScorer(url="http://inference.test/predict", timeout=1.0, client=client), handler


def failing_scorer():
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)
    return make_scorer(boom)


@pytest.fixture
def write_csv(tmp_path):
    counter = {"n": 0}

    def _write(text: str, name: str = None) -> str:
        counter["n"] += 1
        path = tmp_path / (name or f"upload-{counter['n']}.csv")
        path.write_text(text)
        return str(path)
    return _write


@pytest.fixture
def store():
    return InMemoryPatientStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def fallback_scorer():
    # no inference url: every unscored row goes straight to the heuristic
    return RiskScorer()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_orchestrator(store, cache, fallback_scorer, sleeps):
    def _make(queue: QueueHandle = None, scorer: RiskScorer = None, on_sleep=None, **kw) -> Orchestrator:
        async def fake_sleep(delay):
            sleeps.append(delay)
            if on_sleep:
                on_sleep(delay)
        return Orchestrator(
            queue or QueueHandle.unavailable(),
            store,
            scorer or fallback_scorer,
            cache,
            retry=RetryPolicy(max_attempts=3, base_delay_seconds=2.0),
            sleep=fake_sleep,
            **kw,
        )
    return _make


@pytest.fixture
def settings(tmp_path):
    return Settings(
        upload_dir=str(tmp_path / "uploads"),
        queue_backend="none",
        cache_backend="memory",
        store_backend="memory",
        worker_concurrency=1,
        job_backoff_seconds=0.01,
        log_format="text",
    )


@pytest.fixture
def client(settings):
    """Queue backend down: uploads are processed in the request."""
    app = create_app(settings)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def queued_client(settings):
    app = create_app(settings, queue=QueueHandle.available(MemoryQueueBackend()))
    with TestClient(app) as c:
        yield c
