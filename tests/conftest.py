import asyncio
import os
import tempfile
from typing import Callable, Dict, List, Optional, Union

import pytest
import pytest_asyncio

# Settings are read at import time: point them at a throwaway database first
_tmpdir = tempfile.mkdtemp(prefix="bulkqueue-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_tmpdir}/bulkqueue-test.db"
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("SUBMIT_RATE_LIMIT", "1000/minute")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from bulkqueue.database import AsyncSessionLocal, drop_db, engine, init_db  # noqa: E402
from bulkqueue.schemas.bulk_job import BulkJobRequest, QueueItemIn  # noqa: E402
from bulkqueue.services.producers import ProduceOptions, ProduceResult, ProducerRegistry  # noqa: E402
from bulkqueue.services.scheduler import BulkJobScheduler  # noqa: E402
from bulkqueue.utils import metrics  # noqa: E402

ADMIN_TOKEN = os.environ["ADMIN_TOKEN"]

Outcome = Union[ProduceResult, Exception, Callable[[], None]]


async def no_sleep(seconds: float) -> None:
    return None


class FakeProducer:
    """
    Scripted producer. `outcomes` maps an item name to a list of results or
    exceptions consumed one per call (the last one repeats). Unscripted items
    succeed with review id "rev-<name>".
    """

    def __init__(self, outcomes: Optional[Dict[str, List[Outcome]]] = None):
        self.outcomes = outcomes or {}
        self.calls: List[str] = []
        self.gates: Dict[str, asyncio.Event] = {}
        self.entered: Dict[str, asyncio.Event] = {}

    def block(self, name: str) -> asyncio.Event:
        """Make calls for `name` wait until the returned event is set."""
        self.gates[name] = asyncio.Event()
        self.entered[name] = asyncio.Event()
        return self.gates[name]

    async def process_item(self, item: QueueItemIn, options: ProduceOptions) -> ProduceResult:
        self.calls.append(item.name)
        if item.name in self.gates:
            self.entered[item.name].set()
            await self.gates[item.name].wait()

        script = self.outcomes.get(item.name)
        if not script:
            return ProduceResult.ok(f"rev-{item.name}")
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_request(names: List[str], category: str = "product", **overrides) -> BulkJobRequest:
    fields = {
        "category": category,
        "names": names,
        "batch_size": 5,
        "delay_between_batches_ms": 0,
        "delay_between_items_ms": 0,
    }
    fields.update(overrides)
    return BulkJobRequest(**fields)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest_asyncio.fixture
async def database():
    await drop_db()
    await init_db()
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def session(database):
    async with AsyncSessionLocal() as db:
        yield db


@pytest.fixture
def producer() -> FakeProducer:
    return FakeProducer()


@pytest.fixture
def registry(producer) -> ProducerRegistry:
    registry = ProducerRegistry()
    registry.register("product", producer)
    return registry


@pytest_asyncio.fixture
async def scheduler(database, registry):
    scheduler = BulkJobScheduler(registry=registry, retry_base_delay=0, retry_sleep=no_sleep)
    yield scheduler
    await scheduler.shutdown()
