"""Debug capture of authority payloads outside production."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from backend.core.config import settings
from backend.core.observability.logging import get_trace_id, logger


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


class ArtifactRecorder:
    """Writes request/response payloads to disk; a side channel only.

    Write failures are logged and never change the outcome of a request.
    """

    def __init__(
        self,
        directory: Optional[str] = None,
        *,
        enabled: Optional[bool] = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        directory = settings.DEBUG_ARTIFACTS_DIR if directory is None else directory
        self._directory = Path(directory) if directory else None
        if enabled is None:
            enabled = not settings.is_production
        self._enabled = bool(enabled and self._directory is not None)
        self._clock = clock or _default_clock

    @property
    def enabled(self) -> bool:
        return self._enabled

    def record(self, operation: str, kind: str, content: str | bytes) -> Optional[Path]:
        if not self._enabled or self._directory is None:
            return None
        stamp = self._clock().strftime("%Y%m%dT%H%M%S%f")
        trace = (get_trace_id() or "notrace")[:8]
        path = self._directory / f"{stamp}_{trace}_{operation}_{kind}.xml"
        data = content if isinstance(content, bytes) else content.encode("utf-8")
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            logger.warning(
                "debug_artifact_write_failed",
                extra={"operation": operation, "kind": kind, "error": str(exc)},
            )
            return None
        return path


__all__ = ["ArtifactRecorder"]
