"""Typed exceptions for configuration, record and remote platform failures."""


class ConfigurationError(ValueError):
    """Malformed job configuration or mapping; fatal for the whole run."""


class JobConfigError(ConfigurationError):
    pass


class UnmappedFieldError(ConfigurationError):
    def __init__(self, field_name: str):
        super().__init__(f"no mapping specified for {field_name}")
        self.field_name = field_name


class InvalidPathError(ConfigurationError):
    def __init__(self, path: str, detail: str = "invalid target path"):
        super().__init__(f"{detail}: {path!r}")
        self.path = path


class MissingIdentityFieldError(ConfigurationError):
    def __init__(self, identity_field: str):
        super().__init__(f"mapped resource must have a '{identity_field}'")
        self.identity_field = identity_field


class RecordValidationError(ValueError):
    """A row or resource document failed its schema check.

    Attributes:
        violations: Individual violation messages reported by the validator.
    """

    def __init__(self, name: str, violations: list[str]):
        summary = "\n".join(f"- {violation}" for violation in violations)
        super().__init__(f"schema validation failed: {name}\n{summary}")
        self.violations = violations


class RemoteError(Exception):
    """Base exception for remote platform failures.

    Attributes:
        status_code: HTTP status returned by the platform, if any.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Network failure, timeout, throttling or 5xx response; safe to retry."""


class SemanticRemoteError(RemoteError):
    """4xx rejection (validation, conflict, not found); retrying cannot help."""


class SetupError(RuntimeError):
    """The run could not establish its remote scope container."""
