from dataclasses import dataclass
from typing import Protocol


class ConverterProcess(Protocol):
    """A long-lived converter listener bound to one port."""

    @property
    def port(self) -> int:
        ...

    @property
    def running(self) -> bool:
        ...

    async def ensure_started(self) -> None:
        """Start the listener unless one is already held. Parallel callers share one spawn."""

    def stop(self) -> None:
        """Signal the listener to exit without waiting for it."""


class ConverterGateway(Protocol):
    async def convert(
        self,
        port: int,
        source: str,
        target: str,
        *,
        filter: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Run one conversion against the listener on `port`.

        Raises ConversionFailed on a non-zero exit and ConversionTimeout when
        `timeout` elapses. Cancelling the awaiting task kills the child process.
        """


@dataclass(frozen=True)
class WorkerStatus:
    id: int
    port: int
    in_use: bool
    is_restarting: bool
    skip_restart_count: int

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "port": self.port,
            "inUse": self.in_use,
            "isRestarting": self.is_restarting,
            "skipRestartCount": self.skip_restart_count,
        }


@dataclass(frozen=True)
class QueueStatus:
    size: int
    pending: int
    is_paused: bool
    concurrency: int
    workers: tuple[WorkerStatus, ...]

    def as_dict(self) -> dict[str, object]:
        return {
            "size": self.size,
            "pending": self.pending,
            "isPaused": self.is_paused,
            "concurrency": self.concurrency,
            "workers": [w.as_dict() for w in self.workers],
        }
