"""Best-effort bulk close for tool provider connections."""

from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from taskloop.exceptions import ToolCloseError
from taskloop.logging import get_logger

log = get_logger(__name__)


class Closeable(Protocol):
    async def close(self) -> None: ...


@dataclass
class CloseReport:
    closed: int = 0
    failures: list[ToolCloseError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def _label_for(item: Any) -> str:
    return str(getattr(item, "name", "") or type(item).__name__)


async def close_all(items: Iterable[Closeable]) -> CloseReport:
    """Close every item, collecting failures instead of raising.

    Every item gets its ``close()`` awaited even when an earlier one fails.
    Failures are logged and returned as ``ToolCloseError`` entries so cleanup
    never replaces the primary outcome of whatever the caller was doing.
    Cancellation still propagates.
    """
    report = CloseReport()
    for item in list(items):
        try:
            await item.close()
            report.closed += 1
        except Exception as e:
            failure = ToolCloseError(_label_for(item), str(e))
            report.failures.append(failure)
            log.warning("Error closing tool connection", provider=failure.provider, error=str(e))
    return report
