import pytest

from apps.compactor.worker import CompactorWorker
from tests.fakes import FakeProvider, FakeQueue
from utils.schemas import Job
from utils.storage import Bucket
from utils.transform import Transformer


@pytest.fixture
def provider():
    """In-memory storage provider"""
    return FakeProvider()


@pytest.fixture
def bucket(provider):
    """Bucket over the fake provider with instant delete polling"""
    return Bucket(provider, delete_poll_delay=0, delete_max_attempts=5)


@pytest.fixture
def sample_job():
    return Job(filename="a.txt", path="2024/01", id=42)


@pytest.fixture
def make_worker(bucket, tmp_path):
    """Factory for workers wired to the fake bucket and a temporary scratch dir"""

    def _make(jobs=None, mode="roundtrip", **kwargs):
        return CompactorWorker(
            queue=kwargs.pop("queue", None) or FakeQueue(jobs),
            bucket=bucket,
            transformer=Transformer(mode),
            scratch_dir=tmp_path,
            **kwargs,
        )

    return _make
