import asyncio
import gzip
import logging
from unittest.mock import AsyncMock, patch

import pytest

from apps.compactor import worker as worker_module
from apps.compactor.worker import CompactorWorker, Stage
from tests.fakes import FakeQueue
from utils.errors import BackendConnectionError, UploadError
from utils.mq import Handoff
from utils.schemas import Job

CONTENT = b"raw drive file\n" * 64


class TestHandleJob:
    """Test cases for a single job moving through the stages"""

    @pytest.mark.asyncio
    async def test_successful_job(self, make_worker, provider, sample_job, tmp_path):
        """Destination holds the source key; the scratch copy is gone"""
        provider.source["2024/01/a.txt"] = CONTENT
        worker = make_worker()

        assert await worker.handle_job(sample_job) is True

        assert provider.destination == {"2024/01/a.txt": CONTENT}
        assert provider.called("download") == [("download", "2024/01/a.txt", str(tmp_path / "42" / "a.txt"))]
        assert not (tmp_path / "42" / "a.txt").exists()
        assert not (tmp_path / "42").exists()
        assert worker.processed_count == 1
        assert worker.failed_count == 0

    @pytest.mark.asyncio
    async def test_roundtrip_mode_stores_original_bytes(self, make_worker, provider, sample_job):
        provider.source[sample_job.source_key] = CONTENT

        await make_worker(mode="roundtrip").handle_job(sample_job)

        assert provider.destination[sample_job.source_key] == CONTENT

    @pytest.mark.asyncio
    async def test_gzip_mode_stores_compressed_bytes(self, make_worker, provider, sample_job):
        provider.source[sample_job.source_key] = CONTENT

        await make_worker(mode="gzip").handle_job(sample_job)

        stored = provider.destination[sample_job.source_key]
        assert stored != CONTENT
        assert gzip.decompress(stored) == CONTENT

    @pytest.mark.asyncio
    async def test_source_kept_by_default(self, make_worker, provider, sample_job):
        provider.source[sample_job.source_key] = CONTENT

        await make_worker().handle_job(sample_job)

        assert provider.called("delete") == []
        assert sample_job.source_key in provider.source

    @pytest.mark.asyncio
    async def test_delete_source_after_upload(self, make_worker, provider, sample_job):
        provider.source[sample_job.source_key] = CONTENT

        assert await make_worker(delete_source=True).handle_job(sample_job) is True

        assert provider.called("delete") == [("delete", "2024/01/a.txt")]
        assert sample_job.source_key not in provider.source

    @pytest.mark.asyncio
    async def test_download_failure_skips_upload_and_delete(self, make_worker, provider, sample_job, caplog):
        worker = make_worker(delete_source=True)

        with caplog.at_level(logging.ERROR, logger="apps.compactor.worker"):
            assert await worker.handle_job(sample_job) is False

        assert provider.called("upload") == []
        assert provider.called("delete") == []
        assert worker.failed_count == 1

        record = next(r for r in caplog.records if r.getMessage().startswith("Job failed"))
        assert record.job_id == 42
        assert record.source_key == "2024/01/a.txt"
        assert record.step == "download"
        assert record.error_type == "FetchError"

    @pytest.mark.asyncio
    async def test_upload_failure_leaves_scratch_file(self, make_worker, provider, sample_job, tmp_path):
        provider.source[sample_job.source_key] = CONTENT
        provider.fail_upload = UploadError("bucket unavailable")
        worker = make_worker()

        assert await worker.handle_job(sample_job) is False

        assert (tmp_path / "42" / "a.txt").read_bytes() == CONTENT
        assert provider.destination == {}
        assert worker.failed_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, make_worker, provider, sample_job, caplog):
        provider.fail_download = RuntimeError("boom")
        worker = make_worker()

        with caplog.at_level(logging.ERROR, logger="apps.compactor.worker"):
            assert await worker.handle_job(sample_job) is False

        record = next(r for r in caplog.records if r.getMessage().startswith("Job failed"))
        assert record.exc_info is not None

    def test_context_paths(self, make_worker, sample_job, tmp_path):
        ctx = make_worker().new_context(sample_job)

        assert ctx.source_key == "2024/01/a.txt"
        assert ctx.scratch_path == tmp_path / "42" / "a.txt"
        assert ctx.stage == Stage.RECEIVED

    @pytest.mark.asyncio
    async def test_scratch_cleanup_keeps_sibling_files(self, make_worker, provider, tmp_path):
        job = Job(filename="a.txt", path="p", id=7)
        provider.source["p/a.txt"] = CONTENT
        (tmp_path / "7").mkdir()
        (tmp_path / "7" / "other.txt").write_bytes(b"keep")

        await make_worker().handle_job(job)

        assert not (tmp_path / "7" / "a.txt").exists()
        assert (tmp_path / "7" / "other.txt").exists()


class TestProcessLoop:
    """Test cases for the loop fed by the handoff"""

    @pytest.mark.asyncio
    async def test_failed_job_does_not_stop_the_loop(self, make_worker, provider):
        missing = Job(filename="gone.txt", path="p", id=1)
        present = Job(filename="here.txt", path="p", id=2)
        provider.source["p/here.txt"] = CONTENT
        worker = make_worker()
        handoff = Handoff()

        loop_task = asyncio.create_task(worker.process_loop(handoff))
        await asyncio.wait_for(handoff.put(missing), timeout=1)
        await asyncio.wait_for(handoff.put(present), timeout=1)

        # put returns once the job is taken; wait for the second to finish
        for _ in range(100):
            if worker.processed_count == 1:
                break
            await asyncio.sleep(0.01)
        loop_task.cancel()

        assert worker.failed_count == 1
        assert worker.processed_count == 1
        assert [call[1] for call in provider.called("upload")] == ["p/here.txt"]

    @pytest.mark.asyncio
    async def test_jobs_processed_in_delivery_order(self, make_worker, provider):
        jobs = [Job(filename=f"{n}.txt", path="p", id=n) for n in range(3)]
        for job in jobs:
            provider.source[job.source_key] = CONTENT
        worker = make_worker()
        handoff = Handoff()

        loop_task = asyncio.create_task(worker.process_loop(handoff))
        for job in jobs:
            await asyncio.wait_for(handoff.put(job), timeout=1)
        for _ in range(100):
            if worker.processed_count == 3:
                break
            await asyncio.sleep(0.01)
        loop_task.cancel()

        assert [call[1] for call in provider.called("upload")] == ["p/0.txt", "p/1.txt", "p/2.txt"]


class TestStart:
    """Test cases for backend wiring and shutdown"""

    @pytest.fixture(autouse=True)
    def no_signal_handlers(self, monkeypatch):
        monkeypatch.setattr(CompactorWorker, "setup_signal_handlers", lambda self: None)

    @pytest.mark.asyncio
    async def test_run_once(self, make_worker, provider, sample_job):
        provider.source[sample_job.source_key] = CONTENT
        queue = FakeQueue([sample_job])
        worker = make_worker(queue=queue, run_once=True)

        await asyncio.wait_for(worker.start(), timeout=2)

        assert queue.connected and queue.closed
        assert provider.called("check") == [("check",)]
        assert worker.processed_count == 1

    @pytest.mark.asyncio
    async def test_shutdown_signal(self, make_worker):
        queue = FakeQueue()
        worker = make_worker(queue=queue)

        start_task = asyncio.create_task(worker.start())
        await asyncio.sleep(0.01)
        worker.shutdown_event.set()
        await asyncio.wait_for(start_task, timeout=1)

        assert queue.closed

    @pytest.mark.asyncio
    async def test_queue_connection_failure_is_fatal(self, make_worker, provider):
        queue = FakeQueue()
        queue.connect_error = BackendConnectionError("refused")
        worker = make_worker(queue=queue)

        with pytest.raises(BackendConnectionError):
            await worker.start()

        assert provider.called("check") == []

    @pytest.mark.asyncio
    async def test_consumer_stopping_is_fatal(self, make_worker):
        queue = FakeQueue(idle=False)
        worker = make_worker(queue=queue)

        with pytest.raises(BackendConnectionError):
            await asyncio.wait_for(worker.start(), timeout=1)

        assert queue.closed


@pytest.mark.asyncio
async def test_main_exits_on_startup_failure(monkeypatch):
    failing = AsyncMock(side_effect=BackendConnectionError("refused"))
    monkeypatch.setattr(worker_module, "setup_logging", lambda *args: None)

    with patch.object(CompactorWorker, "from_settings") as from_settings:
        from_settings.return_value.start = failing
        with pytest.raises(SystemExit) as exc_info:
            await worker_module.main()

    assert exc_info.value.code == 1
