"""
Unit tests for ConversionPool: dispatch, selection, restart cycle and status.
"""

import asyncio
from pathlib import Path

import pytest

from conftest import FakeGateway, make_pool
from unoserver_web.conversion import (
    ConversionAborted,
    ConversionFailed,
    ProcessUnavailable,
    convert_file,
)


def make_sources(tmp_path: Path, count: int) -> list[Path]:
    paths = []
    for i in range(count):
        path = tmp_path / f"doc{i}.docx"
        path.write_bytes(f"doc {i}".encode())
        paths.append(path)
    return paths


class TestDispatch:

    @pytest.mark.asyncio
    async def test_concurrency_never_exceeds_worker_count(self, tmp_path):
        gateway = FakeGateway(delay=0.02)
        pool = make_pool(gateway, max_workers=2)
        sources = make_sources(tmp_path, 6)

        await asyncio.gather(*(pool.convert(s, s.with_suffix(".pdf")) for s in sources))

        assert gateway.max_active == 2
        assert len(gateway.calls) == 6
        assert all(s.with_suffix(".pdf").exists() for s in sources)

    @pytest.mark.asyncio
    async def test_single_worker_runs_one_at_a_time(self, tmp_path):
        gateway = FakeGateway(delay=0.01)
        pool = make_pool(gateway, max_workers=1)
        sources = make_sources(tmp_path, 3)

        await asyncio.gather(*(pool.convert(s, s.with_suffix(".pdf")) for s in sources))

        assert gateway.max_active == 1
        assert len(gateway.calls) == 3

    @pytest.mark.asyncio
    async def test_in_use_only_while_converting(self, gateway, source_file, tmp_path):
        gateway.release = asyncio.Event()
        pool = make_pool(gateway, max_workers=1)
        instance = pool.instances[0]
        assert not instance.in_use

        task = asyncio.create_task(pool.convert(source_file, tmp_path / "out.pdf"))
        await asyncio.wait_for(gateway.started.wait(), timeout=1)
        assert instance.in_use

        gateway.release.set()
        await task
        assert not instance.in_use

    @pytest.mark.asyncio
    async def test_in_use_cleared_after_failure(self, source_file, tmp_path):
        gateway = FakeGateway(failures=100)
        pool = make_pool(gateway, max_workers=1, conversion_retries=1)

        with pytest.raises(ConversionFailed):
            await pool.convert(source_file, tmp_path / "out.pdf")
        assert not pool.instances[0].in_use
        assert pool.queue.pending == 0

    @pytest.mark.asyncio
    async def test_no_instances_is_a_configuration_error(self, gateway, source_file, tmp_path):
        pool = make_pool(gateway, max_workers=0)

        with pytest.raises(ProcessUnavailable):
            await pool.convert(source_file, tmp_path / "out.pdf")
        with pytest.raises(ProcessUnavailable):
            pool._claim_instance()

    @pytest.mark.asyncio
    async def test_cancel_before_admission_never_converts(self, gateway, tmp_path):
        gateway.release = asyncio.Event()
        pool = make_pool(gateway, max_workers=1)
        first, second = make_sources(tmp_path, 2)
        event = asyncio.Event()

        running = asyncio.create_task(pool.convert(first, tmp_path / "a.pdf"))
        await asyncio.wait_for(gateway.started.wait(), timeout=1)
        waiting = asyncio.create_task(pool.convert(second, tmp_path / "b.pdf", cancel_event=event))
        await asyncio.sleep(0.01)
        assert pool.queue.size == 1

        event.set()
        with pytest.raises(ConversionAborted):
            await waiting

        gateway.release.set()
        await running
        assert [c["source"] for c in gateway.calls] == [str(first)]

    @pytest.mark.asyncio
    async def test_cancel_after_dispatch_aborts_external_call(self, gateway, source_file, tmp_path):
        gateway.release = asyncio.Event()
        pool = make_pool(gateway, max_workers=1)
        event = asyncio.Event()

        task = asyncio.create_task(pool.convert(source_file, tmp_path / "out.pdf", cancel_event=event))
        await asyncio.wait_for(gateway.started.wait(), timeout=1)
        event.set()

        with pytest.raises(ConversionAborted):
            await asyncio.wait_for(task, timeout=1)
        assert gateway.cancelled == 1
        assert not pool.instances[0].in_use

    @pytest.mark.asyncio
    async def test_convert_file_derives_target(self, gateway, source_file, tmp_path):
        pool = make_pool(gateway)
        out_dir = tmp_path / "out"
        out_dir.mkdir()

        target = await convert_file(pool, source_file, "pdf", filter="writer_pdf_Export", output_dir=out_dir)

        assert target == out_dir / "report.pdf"
        assert target.exists()
        assert gateway.calls[0]["filter"] == "writer_pdf_Export"

    @pytest.mark.asyncio
    async def test_convert_file_defaults_to_source_directory(self, gateway, source_file):
        pool = make_pool(gateway)
        target = await convert_file(pool, source_file, "odt")
        assert target == source_file.parent / "report.odt"


class TestSelection:

    @pytest.mark.asyncio
    async def test_first_idle_instance_in_index_order(self, gateway, source_file, tmp_path):
        pool = make_pool(gateway, max_workers=3)
        pool.instances[0].claim()

        await pool.convert(source_file, tmp_path / "out.pdf")
        assert gateway.calls[0]["port"] == 2003

    def test_idle_preferred_over_restarting(self, gateway):
        pool = make_pool(gateway, max_workers=3)
        pool.instances[0].is_restarting = True

        instance = pool._claim_instance()
        assert instance is pool.instances[1]

    def test_fallback_prefers_instance_not_in_use(self, gateway):
        pool = make_pool(gateway, max_workers=3)
        pool.instances[0].claim()
        pool.instances[1].is_restarting = True
        pool.instances[2].claim()

        instance = pool._claim_instance()
        assert instance is pool.instances[1]
        assert instance.in_use

    def test_fallback_ties_resolve_to_first_instance(self, gateway):
        pool = make_pool(gateway, max_workers=2)
        for instance in pool.instances:
            instance.claim()

        assert pool._claim_instance() is pool.instances[0]


class TestRestartCycle:

    @pytest.mark.asyncio
    async def test_idle_instances_are_restarted(self, gateway):
        pool = make_pool(gateway, max_workers=2)
        await pool.warmup_instances()

        await pool.restart_instances()

        for instance in pool.instances:
            assert instance.process.start_count == 2
            assert instance.process.stop_count == 1
            assert instance.skip_restart_count == 0

    @pytest.mark.asyncio
    async def test_busy_instance_skipped_then_force_restarted(self, gateway, source_file, tmp_path):
        gateway.release = asyncio.Event()
        pool = make_pool(gateway, max_workers=2, max_skip_restarts=2)
        busy = pool.instances[0]

        task = asyncio.create_task(pool.convert(source_file, tmp_path / "out.pdf"))
        await asyncio.wait_for(gateway.started.wait(), timeout=1)
        assert busy.in_use

        await pool.restart_instances()
        assert busy.skip_restart_count == 1
        assert not task.done()

        await pool.restart_instances()
        assert busy.skip_restart_count == 2
        assert not task.done()

        await pool.restart_instances()
        assert busy.skip_restart_count == 0
        with pytest.raises(ConversionFailed):
            await asyncio.wait_for(task, timeout=1)
        assert busy.process.start_count == 2
        assert not busy.in_use

    @pytest.mark.asyncio
    async def test_restart_failure_does_not_stop_cycle(self, gateway):
        pool = make_pool(gateway, max_workers=2)
        pool.instances[0].process.fail_start = True

        await pool.restart_instances()

        assert not pool.instances[0].is_restarting
        assert pool.instances[1].process.start_count == 1

    @pytest.mark.asyncio
    async def test_background_cycle_runs_on_interval(self, gateway):
        pool = make_pool(gateway, max_workers=1, restart_interval=0.02, warmup_count=0)
        await pool.start()
        try:
            await asyncio.sleep(0.1)
        finally:
            await pool.stop_server()

        assert pool.instances[0].process.start_count >= 2


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_warms_first_two_instances(self, gateway):
        pool = make_pool(gateway, max_workers=4)
        await pool.warmup_instances()

        started = [i.process.running for i in pool.instances]
        assert started == [True, True, False, False]

    @pytest.mark.asyncio
    async def test_warmup_failures_are_swallowed(self, gateway):
        pool = make_pool(gateway, max_workers=2)
        pool.instances[0].process.fail_start = True

        await pool.warmup_instances()
        assert not pool.instances[0].process.running
        assert pool.instances[1].process.running

    @pytest.mark.asyncio
    async def test_stop_server_stops_every_instance(self, gateway):
        pool = make_pool(gateway, max_workers=3)
        await pool.start()
        await asyncio.sleep(0.01)

        await pool.stop_server()
        await pool.stop_server()

        assert all(not i.process.running for i in pool.instances)

    @pytest.mark.asyncio
    async def test_stop_server_before_start(self, gateway):
        pool = make_pool(gateway, max_workers=2)
        await pool.stop_server()
        assert all(i.process.stop_count == 0 for i in pool.instances)


class TestStatus:

    @pytest.mark.asyncio
    async def test_snapshot_while_two_of_four_busy(self, gateway, tmp_path):
        gateway.release = asyncio.Event()
        pool = make_pool(gateway, max_workers=4)
        sources = make_sources(tmp_path, 2)

        tasks = [asyncio.create_task(pool.convert(s, s.with_suffix(".pdf"))) for s in sources]
        await asyncio.sleep(0.02)

        status = pool.status()
        assert status.pending == 2
        assert status.size == 0
        assert status.concurrency == 4
        assert status.is_paused is False
        assert [w.in_use for w in status.workers] == [True, True, False, False]
        assert [w.port for w in status.workers] == [2002, 2003, 2004, 2005]

        gateway.release.set()
        await asyncio.gather(*tasks)
        assert pool.status().pending == 0

    def test_snapshot_serialises_camel_case(self, gateway):
        pool = make_pool(gateway, max_workers=1)
        pool.instances[0].skip_restart_count = 1

        assert pool.status().as_dict() == {
            "size": 0,
            "pending": 0,
            "isPaused": False,
            "concurrency": 1,
            "workers": [
                {"id": 0, "port": 2002, "inUse": False, "isRestarting": False, "skipRestartCount": 1},
            ],
        }
