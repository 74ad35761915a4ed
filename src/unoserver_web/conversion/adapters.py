import asyncio
import logging
from contextlib import suppress

from .errors import ConversionFailed, ConversionTimeout, ConverterStartError
from .interfaces import ConverterGateway, ConverterProcess

logger = logging.getLogger(__name__)


class UnoserverProcess(ConverterProcess):
    """Handle for one `unoserver --port <port>` listener."""

    def __init__(self, port: int, *, executable: str = "unoserver", startup_timeout: float = 5.0) -> None:
        self._port = port
        self._executable = executable
        self._startup_timeout = startup_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._start_lock = asyncio.Lock()

    @property
    def port(self) -> int:
        return self._port

    @property
    def running(self) -> bool:
        return self._process is not None

    async def ensure_started(self) -> None:
        async with self._start_lock:
            if self._process is not None:
                return
            await self._spawn()

    async def _spawn(self) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._executable,
                "--port",
                str(self._port),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise ConverterStartError(f"could not launch {self._executable}: {e}") from e

        self._process = proc
        waiter = asyncio.ensure_future(proc.wait())
        waiter.add_done_callback(lambda _: self._on_exit(proc))
        # Readiness is not probed: return after an early exit or the startup window.
        done, _ = await asyncio.wait({waiter}, timeout=self._startup_timeout)
        if done:
            self._forget(proc)
            raise ConverterStartError(
                f"{self._executable} on port {self._port} exited during startup with code {proc.returncode}"
            )
        logger.debug("unoserver started on port %d (pid %s)", self._port, proc.pid)

    def _on_exit(self, proc: asyncio.subprocess.Process) -> None:
        if self._forget(proc):
            logger.info("unoserver on port %d exited with code %s", self._port, proc.returncode)

    def _forget(self, proc: asyncio.subprocess.Process) -> bool:
        # An old process exiting after a restart must not clear its replacement.
        if self._process is proc:
            self._process = None
            return True
        return False

    def stop(self) -> None:
        proc = self._process
        if proc is None:
            return
        self._process = None
        if proc.returncode is None:
            with suppress(ProcessLookupError):
                proc.terminate()


class UnoconvertGateway(ConverterGateway):
    """Runs `unoconvert` as a child process for each conversion attempt."""

    def __init__(self, executable: str = "unoconvert") -> None:
        self._executable = executable

    def build_command(self, port: int, source: str, target: str, filter: str | None = None) -> list[str]:
        cmd = [self._executable, "--port", str(port)]
        if filter is not None:
            cmd += ["--filter", filter]
        cmd += [source, target]
        return cmd

    async def convert(
        self,
        port: int,
        source: str,
        target: str,
        *,
        filter: str | None = None,
        timeout: float | None = None,
    ) -> None:
        cmd = self.build_command(port, source, target, filter)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ConversionFailed(f"could not launch {self._executable}: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ConversionTimeout(f"conversion timed out after {timeout} seconds") from None
        finally:
            # Covers both the timeout and cancellation of the awaiting task.
            if proc.returncode is None:
                with suppress(ProcessLookupError):
                    proc.kill()
                with suppress(Exception):
                    await asyncio.shield(proc.wait())

        if proc.returncode != 0:
            message = (stderr or b"").decode(errors="replace").strip()
            raise ConversionFailed(f"unoconvert exited with code {proc.returncode}: {message[:1000]}")
