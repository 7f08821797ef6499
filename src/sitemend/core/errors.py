"""Error taxonomy for the remediation pipeline.

Pipeline outcomes are reported as values on the FixRecord. These exceptions
are raised by collaborators (input parsing, backup, deadline, store) and
converted to an ``error_kind`` by the engine at each stage boundary.
"""

from __future__ import annotations


class SitemendError(Exception):
    """Base class for all sitemend errors."""

    kind = "error"


class ValidationError(SitemendError):
    """Malformed input to the pipeline."""

    kind = "validation_error"


class SafetyGateError(SitemendError):
    """Risk exceeds the safety threshold and no override was given."""

    kind = "safety_gate"


class BackupError(SitemendError):
    """A snapshot could not be created or read; nothing was mutated."""

    kind = "backup_error"


class ApplyError(SitemendError):
    """A strategy failed while mutating site resources."""

    kind = "apply_error"


class FixTimeoutError(ApplyError):
    """The per-fix time budget ran out."""

    kind = "timeout"


class FixCancelledError(ApplyError):
    """The caller cancelled the fix attempt."""

    kind = "cancelled"


class LeaseHeldError(ApplyError):
    """Another owner holds the maintenance lease."""

    kind = "lease_held"


class ValidationFailure(SitemendError):
    """Post-fix checks failed."""

    kind = "validation_failure"


class RollbackError(SitemendError):
    """Restoring resources failed; the live site may be inconsistent."""

    kind = "rollback_error"


class ConfigError(SitemendError):
    """sitemend.toml holds an invalid value."""

    kind = "config_error"


class StoreError(SitemendError):
    """The fix record store could not be read or written."""

    kind = "store_error"
