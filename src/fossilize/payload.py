"""Payload manifest (Node SEA config) preparation and blob materialization."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fossilize.errors import MalformedManifestError, ValidationError
from fossilize.runner import CommandRunner, run_checked

logger = logging.getLogger(__name__)

SEA_CONFIG_JSON = "sea-config.json"
SEA_BLOB = "sea.blob"


@dataclass(frozen=True, slots=True)
class AssetManifestEntry:
    file: str
    name: str | None = None
    src: str | None = None
    is_entry: bool = False


@dataclass(frozen=True, slots=True)
class PayloadManifest:
    """Declarative input of ``node --experimental-sea-config``."""

    main: str
    output: str
    assets: Mapping[str, str] = field(default_factory=dict)
    disable_experimental_sea_warning: bool = True
    use_snapshot: bool = False
    # Cross-compiled binaries cannot reuse the host's code cache.
    use_code_cache: bool = False

    def to_config(self) -> dict[str, Any]:
        config: dict[str, Any] = {
            "main": self.main,
            "output": self.output,
            "disableExperimentalSEAWarning": self.disable_experimental_sea_warning,
            "useSnapshot": self.use_snapshot,
            "useCodeCache": self.use_code_cache,
        }
        if self.assets:
            config["assets"] = dict(self.assets)
        return config


def read_asset_manifest(path: str | Path) -> dict[str, AssetManifestEntry]:
    """Parse a build-tool asset manifest (``key -> {file, isEntry?, ...}``)."""
    manifest_path = Path(path)
    try:
        raw = manifest_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ValidationError(
            "Asset manifest does not exist.",
            context={"path": str(manifest_path)},
        ) from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedManifestError(
            "Invalid asset manifest JSON.",
            hint=str(exc),
            context={"path": str(manifest_path)},
        ) from exc
    if not isinstance(payload, dict):
        raise MalformedManifestError(
            "Asset manifest must be a JSON object.",
            context={"path": str(manifest_path)},
        )
    return {
        str(key): _parse_asset_entry(key, value, manifest_path) for key, value in payload.items()
    }


def _parse_asset_entry(key: str, value: Any, manifest_path: Path) -> AssetManifestEntry:
    context = {"path": str(manifest_path), "entry": str(key)}
    if not isinstance(value, dict):
        raise MalformedManifestError("Asset manifest entry must be an object.", context=context)
    file = value.get("file")
    if not isinstance(file, str) or not file:
        raise MalformedManifestError(
            "Asset manifest entry is missing a `file` string.",
            context=context,
        )
    is_entry = value.get("isEntry", False)
    if not isinstance(is_entry, bool):
        raise MalformedManifestError("Asset manifest `isEntry` must be a boolean.", context=context)
    name = value.get("name")
    src = value.get("src")
    return AssetManifestEntry(
        file=file,
        name=name if isinstance(name, str) else None,
        src=src if isinstance(src, str) else None,
        is_entry=is_entry,
    )


def asset_map(manifest_path: str | Path) -> dict[str, str]:
    """Expand an asset manifest into ``asset key -> file path``.

    The map holds the manifest itself, every file it lists and the entry
    asset, all resolved against the manifest's directory.
    """
    path = Path(manifest_path)
    entries = read_asset_manifest(path)
    base = path.parent
    assets = {path.name: str(path)}
    for entry in entries.values():
        assets[entry.file] = str(base / entry.file)
    entry_key = next((key for key, entry in entries.items() if entry.is_entry), None)
    if entry_key is not None:
        assets[entry_key] = str(base / entry_key)
    return assets


def parse_asset_spec(spec: str) -> tuple[str, str]:
    """Parse ``name=path`` (or a bare path, keyed by its basename)."""
    name, sep, path = spec.partition("=")
    if not sep:
        return Path(spec).name, spec
    if not name or not path:
        raise ValidationError(
            f"Invalid asset `{spec}`.",
            hint="Use `name=path` or a plain file path.",
        )
    return name, path


def prepare(
    bundle_path: str | Path,
    blob_path: str | Path,
    *,
    asset_manifest_path: str | Path | None = None,
    assets: Iterable[str] = (),
) -> PayloadManifest:
    merged: dict[str, str] = {}
    if asset_manifest_path is not None:
        merged.update(asset_map(asset_manifest_path))
    for spec in assets:
        name, path = parse_asset_spec(spec)
        merged[name] = str(Path(path))
    return PayloadManifest(main=str(bundle_path), output=str(blob_path), assets=merged)


def serialize_config(manifest: PayloadManifest) -> str:
    return json.dumps(manifest.to_config(), indent=2, sort_keys=True) + "\n"


def write_config(manifest: PayloadManifest, path: str | Path) -> Path:
    config_path = Path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(serialize_config(manifest), encoding="utf-8")
    return config_path


def materialize(config_path: str | Path, runner: CommandRunner, *, node: str = "node") -> None:
    """Produce the payload blob described by the config at ``config_path``."""
    logger.info("Generating payload blob from %s...", config_path)
    run_checked(runner, node, "--experimental-sea-config", str(config_path))


__all__ = [
    "SEA_BLOB",
    "SEA_CONFIG_JSON",
    "AssetManifestEntry",
    "PayloadManifest",
    "asset_map",
    "materialize",
    "parse_asset_spec",
    "prepare",
    "read_asset_manifest",
    "serialize_config",
    "write_config",
]
