"""Build orchestration: bundle once, then one executable per platform."""

from __future__ import annotations

import json
import logging
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.request import urlopen

from fossilize.bundler import Bundler, EsbuildBundler
from fossilize.cache import BinaryCache
from fossilize.errors import CommandError, MalformedManifestError, ValidationError
from fossilize.fetch import DEFAULT_DIST_URL, Opener
from fossilize.inject import MACHO_SEGMENT_NAME, inject, mark_executable
from fossilize.observability import BuildReport
from fossilize.payload import SEA_BLOB, SEA_CONFIG_JSON, materialize, prepare, write_config
from fossilize.platforms import PlatformTarget, normalize_platforms
from fossilize.runner import CommandRunner, SubprocessRunner
from fossilize.signing import Signer, SigningCredentials
from fossilize.tasks import PlatformResult, PlatformTaskGroup

logger = logging.getLogger(__name__)

PACKAGE_JSON = "package.json"
DEFAULT_NODE_VERSION = "22.12.0"
DEFAULT_APP_VERSION = "0.0.0"
DEFAULT_OUTPUT_NAME = "bundled"


@dataclass(frozen=True, slots=True)
class PackageDescriptor:
    name: str
    version: str
    main: str | None = None
    bin: str | Mapping[str, str] | None = None

    def entry_for(self, command: str) -> str | None:
        if isinstance(self.bin, Mapping):
            entry = self.bin.get(command)
            if entry:
                return entry
        elif self.bin:
            return self.bin
        return self.main


@dataclass(frozen=True, slots=True)
class ResolvedEntrypoint:
    path: Path
    output_name: str
    app_version: str


@dataclass(frozen=True, slots=True)
class BuildOptions:
    node_version: str = DEFAULT_NODE_VERSION
    platforms: tuple[str, ...] = ()
    assets: tuple[str, ...] = ()
    asset_manifest: Path | None = None
    out_dir: Path = Path("dist")
    cache_dir: Path = Path(".cache/fossilize")
    skip_cache: bool = False
    skip_bundling: bool = False
    sign: bool = False
    node_executable: str = "node"
    node_env: str = "development"
    dist_url: str = DEFAULT_DIST_URL


@dataclass(slots=True)
class BuildResult:
    output_name: str
    app_version: str
    results: list[PlatformResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def failed(self) -> list[PlatformResult]:
        return [result for result in self.results if not result.ok]

    @property
    def exit_code(self) -> int:
        for result in self.failed:
            if isinstance(result.error, CommandError) and result.error.exit_code:
                return result.error.exit_code
        return 0 if self.ok else 1


def read_package_descriptor(path: str | Path) -> PackageDescriptor:
    descriptor_path = Path(path)
    try:
        raw = descriptor_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ValidationError(
            f"{PACKAGE_JSON} does not exist.",
            hint="Point the entrypoint at a file or at a directory containing package.json.",
            context={"path": str(descriptor_path)},
        ) from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedManifestError(
            f"Invalid {PACKAGE_JSON} JSON.",
            hint=str(exc),
            context={"path": str(descriptor_path)},
        ) from exc
    if not isinstance(payload, dict):
        raise MalformedManifestError(
            f"{PACKAGE_JSON} must be a JSON object.",
            context={"path": str(descriptor_path)},
        )
    return PackageDescriptor(
        name=_required_str(payload, "name", descriptor_path),
        version=_required_str(payload, "version", descriptor_path),
        main=_optional_str(payload, "main", descriptor_path),
        bin=_optional_bin(payload, descriptor_path),
    )


def _required_str(payload: Mapping[str, Any], key: str, path: Path) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedManifestError(
            f"{PACKAGE_JSON} is missing a `{key}` string.",
            context={"path": str(path), "field": key},
        )
    return value


def _optional_str(payload: Mapping[str, Any], key: str, path: Path) -> str | None:
    value = payload.get(key)
    if value is not None and not isinstance(value, str):
        raise MalformedManifestError(
            f"{PACKAGE_JSON} `{key}` must be a string.",
            context={"path": str(path), "field": key},
        )
    return value


def _optional_bin(payload: Mapping[str, Any], path: Path) -> str | dict[str, str] | None:
    value = payload.get("bin")
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, dict) and all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        return dict(value)
    raise MalformedManifestError(
        f"{PACKAGE_JSON} `bin` must be a string or a mapping of strings.",
        context={"path": str(path), "field": "bin"},
    )


def resolve_entrypoint(entrypoint: str | Path) -> ResolvedEntrypoint:
    path = Path(entrypoint)
    if not path.exists():
        raise ValidationError(
            "Entrypoint does not exist.",
            context={"entrypoint": str(path)},
        )
    if not path.is_dir():
        output_name = path.name.split(".")[0] or DEFAULT_OUTPUT_NAME
        return ResolvedEntrypoint(path=path, output_name=output_name, app_version=DEFAULT_APP_VERSION)

    descriptor = read_package_descriptor(path / PACKAGE_JSON)
    output_name = descriptor.name.split("/")[-1] or DEFAULT_OUTPUT_NAME
    entry = descriptor.entry_for(output_name)
    if not entry:
        raise MalformedManifestError(
            f"{PACKAGE_JSON} has neither a `bin` entry for `{output_name}` nor a `main` field.",
            context={"path": str(path / PACKAGE_JSON)},
        )
    return ResolvedEntrypoint(
        path=path / entry,
        output_name=output_name,
        app_version=descriptor.version,
    )


def reset_directory(path: Path, *, protect: Sequence[Path] = ()) -> None:
    """Remove ``path`` if it exists and recreate it empty."""
    target = path.resolve()
    for protected in (Path.cwd(), *protect):
        resolved = protected.resolve()
        if target == resolved or target in resolved.parents:
            raise ValidationError(
                "Refusing to wipe an output directory that contains the project.",
                hint="Choose a dedicated output directory.",
                context={"out_dir": str(path), "protected": str(protected)},
            )
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Failed to remove %s: %s", path, exc)
    else:
        logger.info("Removed incomplete executable %s", path)


def build(
    entrypoint: str | Path,
    options: BuildOptions,
    *,
    runner: CommandRunner | None = None,
    bundler: Bundler | None = None,
    credentials: SigningCredentials | None = None,
    opener: Opener = urlopen,
    report: BuildReport | None = None,
) -> BuildResult:
    """Package ``entrypoint`` into one executable per requested platform.

    Errors that concern every platform (entrypoint, bundling, payload)
    propagate. Errors inside a platform pipeline are collected into that
    platform's result after all platforms finished.
    """
    runner = runner or SubprocessRunner()
    report = report if report is not None else BuildReport()
    resolved = resolve_entrypoint(entrypoint)
    platforms = normalize_platforms(options.platforms)
    logger.info("Platforms: %s", ", ".join(platform.key for platform in platforms))

    out_dir = Path(options.out_dir)
    config_path = out_dir / SEA_CONFIG_JSON
    blob_path = out_dir / SEA_BLOB

    logger.info("Cleaning up %s...", out_dir)
    reset_directory(out_dir, protect=(resolved.path,))

    if options.skip_bundling:
        bundle_path = resolved.path
    else:
        bundle_path = out_dir / f"{resolved.output_name}.cjs"
        bundler = bundler or EsbuildBundler(runner, node_env=options.node_env)
        bundler.bundle(resolved.path, bundle_path, app_version=resolved.app_version)
    report.log(operation="build", platform=None, stage="bundle", message=str(bundle_path))

    manifest = prepare(
        bundle_path,
        blob_path,
        asset_manifest_path=options.asset_manifest,
        assets=options.assets,
    )
    write_config(manifest, config_path)
    materialize(config_path, runner, node=options.node_executable)
    blob = blob_path.read_bytes()
    report.log(
        operation="build",
        platform=None,
        stage="payload",
        message=str(blob_path),
        extra={"assets": sorted(manifest.assets), "size": len(blob)},
    )

    cache = BinaryCache(
        options.cache_dir,
        dist_url=options.dist_url,
        opener=opener,
        skip_cache=options.skip_cache,
    )
    signer = Signer(runner, credentials or SigningCredentials())
    output_prefix = out_dir / resolved.output_name

    def pipeline(platform: PlatformTarget) -> PlatformResult:
        stage = "cache"
        binary: Path | None = None
        try:
            logger.info("Creating binary for %s (%s)...", platform, output_prefix)
            binary = cache.obtain(options.node_version, platform, output_prefix)
            report.log(operation="build", platform=platform.key, stage=stage, message=str(binary))

            stage = "inject"
            logger.info("Injecting blob into node executable: %s", binary)
            inject(
                binary,
                blob,
                platform,
                macho_segment_name=MACHO_SEGMENT_NAME if platform.is_macos else None,
            )
            mark_executable(binary, runner)
            logger.info("Created executable %s", binary)
            report.log(operation="build", platform=platform.key, stage=stage, message=str(binary))

            stage = "sign"
            outcome = signer.sign(binary, platform, requested=options.sign)
            report.log(operation="build", platform=platform.key, stage=stage, message=outcome.value)
        except Exception as exc:
            report.log(
                operation="build",
                platform=platform.key,
                stage=stage,
                message=str(exc),
                level="error",
            )
            # A bare runtime must never be left behind under the artifact name.
            if binary is not None and stage != "sign":
                _discard(binary)
            raise
        return PlatformResult(platform=platform, path=binary, signing=outcome)

    results = PlatformTaskGroup().run(platforms, pipeline)

    for transient in (config_path, blob_path):
        try:
            transient.unlink()
        except OSError as exc:
            logger.warning("Failed to remove %s: %s", transient, exc)

    return BuildResult(
        output_name=resolved.output_name,
        app_version=resolved.app_version,
        results=results,
    )


__all__ = [
    "DEFAULT_NODE_VERSION",
    "PACKAGE_JSON",
    "BuildOptions",
    "BuildResult",
    "PackageDescriptor",
    "ResolvedEntrypoint",
    "build",
    "read_package_descriptor",
    "reset_directory",
    "resolve_entrypoint",
]
