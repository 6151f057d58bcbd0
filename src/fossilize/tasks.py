"""Fan-out/fan-in of independent per-platform pipelines."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from fossilize.platforms import PlatformTarget
from fossilize.signing import SigningOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PlatformResult:
    platform: PlatformTarget
    path: Path | None = None
    signing: SigningOutcome | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


PlatformPipeline = Callable[[PlatformTarget], PlatformResult]


@dataclass(slots=True)
class PlatformTaskGroup:
    """Run one pipeline per platform and join all of them.

    A failing pipeline is recorded in its own result; it never cancels or
    hides the others. Results come back in request order.
    """

    max_workers: int | None = None

    def run(
        self,
        platforms: Sequence[PlatformTarget],
        pipeline: PlatformPipeline,
    ) -> list[PlatformResult]:
        if not platforms:
            return []
        workers = self.max_workers or len(platforms)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fossilize") as pool:
            futures = [pool.submit(pipeline, platform) for platform in platforms]
            results: list[PlatformResult] = []
            for platform, future in zip(platforms, futures, strict=True):
                try:
                    results.append(future.result())
                except Exception as exc:  # noqa: BLE001 - isolated to this platform
                    logger.error("Build for %s failed: %s", platform, exc)
                    results.append(PlatformResult(platform=platform, error=exc))
        return results


__all__ = ["PlatformPipeline", "PlatformResult", "PlatformTaskGroup"]
