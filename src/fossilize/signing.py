"""Per-platform code signing and notarization.

Each platform moves through ``injected -> (skipped | signed) -> (done |
notarized -> done)``. Missing credentials or an unsupported platform end
the pipeline with a warning; only a failing signing tool is fatal, and
only for the platform being signed.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from fossilize.bundler import PACKAGE_DIR
from fossilize.platforms import PlatformTarget
from fossilize.runner import CommandRunner, run_checked

logger = logging.getLogger(__name__)

ENTITLEMENTS_PLIST = PACKAGE_DIR / "entitlements.plist"

ENV_TEAM_ID = "APPLE_TEAM_ID"
ENV_CERT_PATH = "APPLE_CERT_PATH"
ENV_CERT_PASSWORD = "APPLE_CERT_PASSWORD"
ENV_API_KEY_PATH = "APPLE_API_KEY_PATH"


class SigningOutcome(StrEnum):
    SKIPPED = "skipped"
    UNSUPPORTED = "unsupported"
    MISSING_CREDENTIALS = "missing_credentials"
    SIGNED = "signed"
    NOTARIZED = "notarized"


def _redact(value: str | None) -> str | None:
    if value is None:
        return None
    if len(value) <= 4:
        return "****"
    return f"{value[:2]}****{value[-2:]}"


@dataclass(frozen=True, slots=True)
class SigningCredentials:
    team_id: str | None = None
    cert_path: str | None = None
    cert_password: str | None = field(default=None, repr=False)
    api_key_path: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> SigningCredentials:
        return cls(
            team_id=environ.get(ENV_TEAM_ID) or None,
            cert_path=environ.get(ENV_CERT_PATH) or None,
            cert_password=environ.get(ENV_CERT_PASSWORD) or None,
            api_key_path=environ.get(ENV_API_KEY_PATH) or None,
        )

    def missing_for_signing(self) -> list[str]:
        required = {
            ENV_TEAM_ID: self.team_id,
            ENV_CERT_PATH: self.cert_path,
            ENV_CERT_PASSWORD: self.cert_password,
        }
        return [name for name, value in required.items() if not value]

    def redacted(self) -> dict[str, str | None]:
        return {
            ENV_TEAM_ID: _redact(self.team_id),
            ENV_CERT_PATH: self.cert_path,
            ENV_CERT_PASSWORD: "****" if self.cert_password else None,
            ENV_API_KEY_PATH: self.api_key_path,
        }


@dataclass(slots=True)
class Signer:
    runner: CommandRunner
    credentials: SigningCredentials = field(default_factory=SigningCredentials)
    entitlements: Path = field(default=ENTITLEMENTS_PLIST)
    rcodesign: str = "rcodesign"

    def sign(self, binary: Path, platform: PlatformTarget, *, requested: bool) -> SigningOutcome:
        if not requested:
            logger.info("Skipping signing, add `--sign` to sign %s", binary)
            if platform.is_macos:
                logger.warning(
                    "macOS binaries must be signed to run. You can run `spctl --add %s` to add "
                    "the binary to your system's trusted binaries for testing.",
                    binary,
                )
            return SigningOutcome.SKIPPED
        if platform.is_windows:
            logger.warning(
                "Signing is not supported on Windows, you will need to sign %s yourself.",
                binary,
            )
            return SigningOutcome.UNSUPPORTED
        if not platform.is_macos:
            logger.warning("No signing support for %s, leaving %s unsigned.", platform, binary)
            return SigningOutcome.UNSUPPORTED

        missing = self.credentials.missing_for_signing()
        if missing:
            logger.warning(
                "Missing required environment variables for macOS signing (%s), you won't be "
                "able to use this binary until you sign it yourself.",
                ", ".join(missing),
            )
            logger.info("Signing credentials: %s", self.credentials.redacted())
            return SigningOutcome.MISSING_CREDENTIALS

        self._codesign(binary)
        if not self.credentials.api_key_path:
            logger.warning(
                "Missing %s for macOS notarization, you won't be able to notarize this binary "
                "which will annoy people trying to run it.",
                ENV_API_KEY_PATH,
            )
            return SigningOutcome.SIGNED

        self._notarize(binary)
        return SigningOutcome.NOTARIZED

    def _codesign(self, binary: Path) -> None:
        logger.info("Signing %s...", binary)
        run_checked(
            self.runner,
            self.rcodesign,
            "sign",
            "--team-name",
            str(self.credentials.team_id),
            "--p12-file",
            str(self.credentials.cert_path),
            "--p12-password",
            str(self.credentials.cert_password),
            "--for-notarization",
            "-e",
            str(self.entitlements),
            str(binary),
            secrets=(str(self.credentials.cert_password),),
        )

    def _notarize(self, binary: Path) -> None:
        archive = Path(f"{binary}.zip")
        logger.info("Submitting %s for notarization...", binary)
        run_checked(self.runner, "zip", str(archive), str(binary))
        run_checked(
            self.runner,
            self.rcodesign,
            "notary-submit",
            "--api-key-file",
            str(self.credentials.api_key_path),
            "--wait",
            str(archive),
        )
        try:
            archive.unlink()
        except OSError as exc:
            logger.warning("Failed to remove %s: %s", archive, exc)


__all__ = [
    "ENTITLEMENTS_PLIST",
    "ENV_API_KEY_PATH",
    "ENV_CERT_PASSWORD",
    "ENV_CERT_PATH",
    "ENV_TEAM_ID",
    "Signer",
    "SigningCredentials",
    "SigningOutcome",
]
