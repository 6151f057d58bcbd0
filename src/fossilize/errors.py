"""Typed error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across the build pipeline."""

    VALIDATION = "E_VALIDATION"
    MALFORMED_MANIFEST = "E_MALFORMED_MANIFEST"
    FETCH = "E_FETCH"
    SIGNATURE = "E_SIGNATURE"
    INJECTION = "E_INJECTION"
    COMMAND = "E_COMMAND"
    BUNDLE = "E_BUNDLE"


class FossilizeError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": str(self),
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(FossilizeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class MalformedManifestError(FossilizeError):
    """Raised when ``package.json`` or an asset manifest has an invalid structure."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.MALFORMED_MANIFEST, hint=hint, context=context)


class FetchError(FossilizeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.FETCH, hint=hint, context=context)


class SignatureError(FossilizeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.SIGNATURE, hint=hint, context=context)


class InjectionError(FossilizeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.INJECTION, hint=hint, context=context)


class CommandError(FossilizeError):
    """A subprocess exited with a non-zero status.

    ``exit_code`` is the child's status so callers can propagate it as
    their own exit code.
    """

    exit_code: int
    stdout: str
    stderr: str

    def __init__(
        self,
        message: str,
        *,
        exit_code: int,
        stdout: str = "",
        stderr: str = "",
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.COMMAND, hint=hint, context=context)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class BundleError(FossilizeError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.BUNDLE, hint=hint, context=context)


__all__ = [
    "BundleError",
    "CommandError",
    "ErrorCode",
    "FetchError",
    "FossilizeError",
    "InjectionError",
    "MalformedManifestError",
    "SignatureError",
    "ValidationError",
]
