import asyncio
import logging
import os
from contextlib import suppress
from pathlib import Path
from typing import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .adapters import UnoconvertGateway, UnoserverProcess
from .config import PoolConfig
from .errors import (
    ConversionAborted,
    ConversionInterrupted,
    ProcessUnavailable,
    SourceNotFoundError,
)
from .interfaces import ConverterGateway, ConverterProcess, QueueStatus, WorkerStatus
from .queue import AdmissionQueue

logger = logging.getLogger(__name__)

MAX_RETRY_BACKOFF_SEC = 30.0


async def _abortable_sleep(cancel_event: asyncio.Event | None, seconds: float) -> None:
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    if cancel_event.is_set():
        raise ConversionAborted()
    if seconds > 0:
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise ConversionAborted()


class ConverterInstance:
    """One unoserver listener plus the scheduling state the pool needs.

    All flag updates happen without an intervening await, which makes every
    check-then-set atomic on the event loop.
    """

    def __init__(
        self,
        process: ConverterProcess,
        gateway: ConverterGateway,
        *,
        timeout: float = 60.0,
        retries: int = 3,
        retry_backoff: float = 1.0,
    ) -> None:
        self.process = process
        self.gateway = gateway
        self.timeout = timeout
        self.retries = retries
        self.retry_backoff = retry_backoff
        self.is_restarting = False
        self.skip_restart_count = 0
        self._claims = 0
        self._interrupt = asyncio.Event()

    @property
    def port(self) -> int:
        return self.process.port

    @property
    def in_use(self) -> bool:
        return self._claims > 0

    def can_be_restarted(self) -> bool:
        return not self.in_use and not self.is_restarting

    def is_available_for_dispatch(self) -> bool:
        return not self.in_use and not self.is_restarting

    def try_claim(self) -> bool:
        if not self.is_available_for_dispatch():
            return False
        self._claims += 1
        return True

    def claim(self) -> None:
        self._claims += 1

    def release(self) -> None:
        if self._claims > 0:
            self._claims -= 1

    async def warmup(self) -> None:
        await self.process.ensure_started()

    def stop(self) -> None:
        self.process.stop()

    async def restart(self) -> None:
        self.is_restarting = True
        try:
            # Fail whatever is still running here; only a forced restart finds one.
            self._interrupt.set()
            self._interrupt = asyncio.Event()
            self.process.stop()
            await self.process.ensure_started()
            self.skip_restart_count = 0
        finally:
            self.is_restarting = False

    async def convert(
        self,
        source: str,
        target: str,
        *,
        filter: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.retry_backoff, max=MAX_RETRY_BACKOFF_SEC),
            retry=(
                retry_if_exception_type(Exception)
                & retry_if_not_exception_type((ConversionAborted, ConversionInterrupted))
            ),
            sleep=lambda seconds: _abortable_sleep(cancel_event, seconds),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self._attempt(source, target, filter, cancel_event)

    async def _attempt(
        self,
        source: str,
        target: str,
        filter: str | None,
        cancel_event: asyncio.Event | None,
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ConversionAborted()
        if not os.path.exists(source):
            raise SourceNotFoundError(source)
        interrupt = self._interrupt

        await self._race(self.process.ensure_started(), cancel_event, interrupt)
        await self._race(
            self.gateway.convert(self.port, source, target, filter=filter, timeout=self.timeout),
            cancel_event,
            interrupt,
        )

    async def _race(
        self,
        work: Awaitable[None],
        cancel_event: asyncio.Event | None,
        interrupt: asyncio.Event,
    ) -> None:
        """Await `work`, cancelling it as soon as either event is set."""
        task = asyncio.ensure_future(work)
        watchers = [asyncio.ensure_future(interrupt.wait())]
        if cancel_event is not None:
            watchers.append(asyncio.ensure_future(cancel_event.wait()))
        try:
            await asyncio.wait({task, *watchers}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in watchers:
                w.cancel()
            stopped_early = not task.done()
            if stopped_early:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

        if stopped_early:
            if cancel_event is not None and cancel_event.is_set():
                raise ConversionAborted()
            raise ConversionInterrupted(f"instance on port {self.port} was restarted during conversion")
        task.result()


class ConversionPool:
    """Dispatches conversions over a fixed set of unoserver instances.

    The admission queue bounds how many conversions run at once; selection
    decides which instance serves each admitted task. A background cycle
    recycles idle instances and force-restarts ones that stay busy.
    """

    def __init__(
        self,
        config: PoolConfig | None = None,
        *,
        process_factory: Callable[[int], ConverterProcess] | None = None,
        gateway: ConverterGateway | None = None,
    ) -> None:
        self.config = config or PoolConfig()
        if process_factory is None:
            process_factory = lambda port: UnoserverProcess(  # noqa: E731
                port,
                executable=self.config.unoserver_bin,
                startup_timeout=self.config.startup_timeout,
            )
        gateway = gateway or UnoconvertGateway(self.config.unoconvert_bin)
        self.max_skip_restarts = self.config.max_skip_restarts
        self.instances: list[ConverterInstance] = [
            ConverterInstance(
                process_factory(self.config.starting_port + i),
                gateway,
                timeout=self.config.timeout,
                retries=self.config.conversion_retries,
                retry_backoff=self.config.retry_backoff,
            )
            for i in range(self.config.max_workers)
        ]
        self.queue = AdmissionQueue(len(self.instances))
        self._restart_task: asyncio.Task | None = None
        self._warmup_task: asyncio.Task | None = None
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        """Warm the first instances in the background and schedule the restart cycle."""
        self._stopped.clear()
        if self._warmup_task is None:
            self._warmup_task = asyncio.create_task(self.warmup_instances())
        if self._restart_task is None:
            self._restart_task = asyncio.create_task(self._restart_loop())

    async def warmup_instances(self) -> None:
        targets = self.instances[: self.config.warmup_count]
        results = await asyncio.gather(*(i.warmup() for i in targets), return_exceptions=True)
        for instance, result in zip(targets, results):
            if isinstance(result, Exception):
                # left cold; the first conversion on it starts the process
                logger.warning("Failed to warm up unoserver on port %d: %s", instance.port, result)

    async def stop_server(self) -> None:
        self._stopped.set()
        tasks = [t for t in (self._warmup_task, self._restart_task) if t is not None]
        self._warmup_task = self._restart_task = None
        for task in tasks:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        for instance in self.instances:
            instance.stop()

    async def _restart_loop(self) -> None:
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.config.restart_interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.restart_instances()
            except Exception:
                logger.exception("restart unoserver instances failed")

    async def restart_instances(self) -> None:
        logger.info("Starting restart of unoserver instances...")
        for instance in self.instances:
            if instance.can_be_restarted():
                logger.info("Restarting instance on port %d", instance.port)
                try:
                    await instance.restart()
                    logger.info("Instance on port %d restarted successfully", instance.port)
                except Exception as e:
                    logger.error("Failed to restart instance on port %d: %s", instance.port, e)
            elif instance.in_use:
                if instance.skip_restart_count < self.max_skip_restarts:
                    instance.skip_restart_count += 1
                    logger.info(
                        "Skipping restart for busy instance on port %d (skip count: %d/%d)",
                        instance.port,
                        instance.skip_restart_count,
                        self.max_skip_restarts,
                    )
                else:
                    logger.warning(
                        "Force restarting instance on port %d after %d skips",
                        instance.port,
                        self.max_skip_restarts,
                    )
                    try:
                        await instance.restart()
                        logger.info("Instance on port %d force restarted successfully", instance.port)
                    except Exception as e:
                        logger.error("Failed to force restart instance on port %d: %s", instance.port, e)
        logger.info("restart cycle completed")

    def _claim_instance(self) -> ConverterInstance:
        for instance in self.instances:
            if instance.try_claim():
                return instance

        if not self.instances:
            raise ProcessUnavailable()

        # Every instance is busy or restarting: prefer one that is not in use,
        # then the lowest usage score, then the lowest index.
        least_busy = self.instances[0]
        min_usage = self.queue.pending + (1 if least_busy.in_use else 0)
        for instance in self.instances[1:]:
            usage = self.queue.pending + (1 if instance.in_use else 0)
            if not instance.in_use and least_busy.in_use:
                least_busy, min_usage = instance, usage
            elif not least_busy.in_use and instance.in_use:
                continue
            elif usage < min_usage:
                least_busy, min_usage = instance, usage
        least_busy.claim()
        return least_busy

    async def convert(
        self,
        source: str | Path,
        target: str | Path,
        *,
        filter: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Convert `source` into `target`; the target extension selects the format."""
        if not self.instances:
            raise ProcessUnavailable()

        async def run() -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise ConversionAborted()
            instance = self._claim_instance()
            try:
                await instance.convert(str(source), str(target), filter=filter, cancel_event=cancel_event)
            finally:
                instance.release()

        await self.queue.add(run, cancel_event=cancel_event)

    def status(self) -> QueueStatus:
        return QueueStatus(
            size=self.queue.size,
            pending=self.queue.pending,
            is_paused=self.queue.is_paused,
            concurrency=self.queue.concurrency,
            workers=tuple(
                WorkerStatus(
                    id=index,
                    port=instance.port,
                    in_use=instance.in_use,
                    is_restarting=instance.is_restarting,
                    skip_restart_count=instance.skip_restart_count,
                )
                for index, instance in enumerate(self.instances)
            ),
        )


async def convert_file(
    pool: ConversionPool,
    source: str | Path,
    fmt: str,
    *,
    filter: str | None = None,
    cancel_event: asyncio.Event | None = None,
    output_dir: str | Path | None = None,
) -> Path:
    """Convert `source` to `fmt`, writing `<stem>.<fmt>` next to it or into `output_dir`."""
    source = Path(source)
    target_dir = Path(output_dir) if output_dir is not None else source.parent
    target = target_dir / f"{source.stem}.{fmt}"
    await pool.convert(source, target, filter=filter, cancel_event=cancel_event)
    return target
