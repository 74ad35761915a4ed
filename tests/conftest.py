"""
Shared fixtures and fakes for the unoserver-web tests.

Nothing here spawns LibreOffice: FakeProcess stands in for a unoserver
listener and FakeGateway for unoconvert.
"""

import asyncio
from pathlib import Path

import pytest

from unoserver_web.conversion import ConversionFailed, ConversionPool, ConverterStartError, PoolConfig


class FakeProcess:
    def __init__(self, port: int, *, fail_start: bool = False) -> None:
        self._port = port
        self._running = False
        self.fail_start = fail_start
        self.start_count = 0
        self.stop_count = 0

    @property
    def port(self) -> int:
        return self._port

    @property
    def running(self) -> bool:
        return self._running

    async def ensure_started(self) -> None:
        if self._running:
            return
        await asyncio.sleep(0)
        if self.fail_start:
            raise ConverterStartError(f"fake unoserver on port {self._port} refused to start")
        self._running = True
        self.start_count += 1

    def stop(self) -> None:
        if self._running:
            self.stop_count += 1
        self._running = False


class FakeGateway:
    """Records calls, tracks concurrency and writes `target` on success.

    `release` (when set) holds every conversion until the event fires;
    `failures` makes that many leading calls raise ConversionFailed.
    """

    def __init__(self, *, delay: float = 0.0, failures: int = 0, error: Exception | None = None) -> None:
        self.delay = delay
        self.failures = failures
        self.error = error
        self.release: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.calls: list[dict[str, object]] = []
        self.active = 0
        self.max_active = 0
        self.cancelled = 0

    async def convert(self, port, source, target, *, filter=None, timeout=None) -> None:
        self.calls.append({"port": port, "source": source, "target": target, "filter": filter, "timeout": timeout})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            if self.release is not None:
                await self.release.wait()
            await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            if len(self.calls) <= self.failures:
                raise ConversionFailed("unoconvert exited with code 1")
            Path(target).write_bytes(b"converted:" + Path(source).read_bytes())
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.active -= 1


def make_pool(gateway: FakeGateway, **overrides) -> ConversionPool:
    settings = {
        "max_workers": 2,
        "starting_port": 2002,
        "retry_backoff": 0.0,
        "restart_interval": 3600.0,
        "timeout": 5.0,
    }
    settings.update(overrides)
    return ConversionPool(PoolConfig(**settings), process_factory=FakeProcess, gateway=gateway)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def source_file(tmp_path: Path) -> Path:
    path = tmp_path / "report.docx"
    path.write_bytes(b"document body")
    return path
