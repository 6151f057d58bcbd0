"""Structured per-platform build records."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class BuildReport:
    """Machine-readable trail of a build.

    Each record is one stage outcome (bundle, payload, cache, inject, sign)
    for one platform, or for the whole build when ``platform`` is ``None``.
    Pipelines log from worker threads, so appends are serialized.
    """

    records: list[dict[str, Any]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def log(
        self,
        *,
        operation: str,
        platform: str | None,
        stage: str | None,
        message: str,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "platform": platform,
            "stage": stage,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        with self._lock:
            self.records.append(record)

    def records_for_platform(self, platform: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("platform") == platform]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path


__all__ = ["BuildReport"]
