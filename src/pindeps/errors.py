"""Typed error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across the library and the CLI."""

    CONFIG = "E_CONFIG"
    MANIFEST = "E_MANIFEST"
    VALIDATION = "E_VALIDATION"
    RESOLUTION = "E_RESOLUTION"
    STASH = "E_STASH"
    FETCH = "E_FETCH"
    INTEGRITY = "E_INTEGRITY"
    INSTALL = "E_INSTALL"
    ENVIRONMENT = "E_ENVIRONMENT"
    LAUNCH = "E_LAUNCH"
    LOCKFILE = "E_LOCKFILE"


class PindepsError(Exception):
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


class ConfigError(PindepsError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CONFIG, hint=hint, context=context)


class MalformedManifestError(PindepsError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.MANIFEST, hint=hint, context=context)


class ValidationError(PindepsError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.VALIDATION, hint=hint, context=context)


class DuplicateDependencyNameError(ValidationError):
    """A dependency is pinned in both ``dependencies`` and ``devDependencies``."""


class InvalidEnvironmentNameError(ValidationError):
    """The manifest environment is unset or not a valid identifier."""


class UnknownOverrideTargetError(PindepsError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.RESOLUTION, hint=hint, context=context)


class StashError(PindepsError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.STASH, hint=hint, context=context)


class StashEntryNotFoundError(StashError):
    """No stashed artifact exists for a ``(component, label)`` key."""


class FetchFailedError(PindepsError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.FETCH, hint=hint, context=context)


class IntegrityCheckFailedError(PindepsError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.INTEGRITY, hint=hint, context=context)


class IncompleteInstallError(PindepsError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.INSTALL, hint=hint, context=context)


class EnvironmentUnavailableError(PindepsError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.ENVIRONMENT, hint=hint, context=context)


class LaunchFailedError(PindepsError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.LAUNCH, hint=hint, context=context)


class LockfileError(PindepsError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.LOCKFILE, hint=hint, context=context)


__all__ = [
    "ConfigError",
    "DuplicateDependencyNameError",
    "EnvironmentUnavailableError",
    "ErrorCode",
    "FetchFailedError",
    "IncompleteInstallError",
    "IntegrityCheckFailedError",
    "InvalidEnvironmentNameError",
    "LaunchFailedError",
    "LockfileError",
    "MalformedManifestError",
    "PindepsError",
    "StashEntryNotFoundError",
    "StashError",
    "UnknownOverrideTargetError",
    "ValidationError",
]
