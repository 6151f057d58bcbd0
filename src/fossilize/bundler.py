"""Application bundling through esbuild."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from fossilize.errors import BundleError, CommandError
from fossilize.runner import CommandRunner, run_checked

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).parent
IMPORT_META_URL_SHIM = PACKAGE_DIR / "import-meta-url.js"


class Bundler(Protocol):
    def bundle(self, entrypoint: Path, outfile: Path, *, app_version: str) -> Path:
        """Bundle ``entrypoint`` into a single CommonJS module at ``outfile``."""


@dataclass(slots=True)
class EsbuildBundler:
    runner: CommandRunner
    esbuild: str = "esbuild"
    target: str = "node22"
    node_env: str = "development"
    shim: Path = field(default=IMPORT_META_URL_SHIM)

    def defines(self, app_version: str) -> dict[str, str]:
        return {
            "import.meta.url": "import_meta_url",
            "process.env.npm_package_version": json.dumps(app_version),
            "process.env.NODE_ENV": json.dumps(self.node_env),
        }

    def arguments(self, entrypoint: Path, outfile: Path, *, app_version: str) -> list[str]:
        args = [
            str(entrypoint),
            "--bundle",
            "--minify",
            "--platform=node",
            f"--target={self.target}",
            "--format=cjs",
            "--tree-shaking=true",
            f"--inject:{self.shim}",
        ]
        args.extend(f"--define:{key}={value}" for key, value in self.defines(app_version).items())
        args.extend([f"--outfile={outfile}", "--allow-overwrite", "--log-level=info"])
        return args

    def bundle(self, entrypoint: Path, outfile: Path, *, app_version: str) -> Path:
        logger.info("Bundling %s -> %s", entrypoint, outfile)
        try:
            run_checked(
                self.runner,
                self.esbuild,
                *self.arguments(entrypoint, outfile, app_version=app_version),
            )
        except CommandError as exc:
            raise BundleError(
                exc.stderr.strip() or f"esbuild exited with status {exc.exit_code}.",
                hint="Fix the reported errors or pass --no-bundle.",
                context={"entrypoint": str(entrypoint)},
            ) from exc
        return outfile


__all__ = ["IMPORT_META_URL_SHIM", "PACKAGE_DIR", "Bundler", "EsbuildBundler"]
