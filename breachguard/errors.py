"""Exception hierarchy for BreachGuard."""

from typing import List, Optional


class BreachGuardError(Exception):
    """Base class for all BreachGuard errors."""


class ConfigError(BreachGuardError):
    pass


class RuleValidationError(BreachGuardError):
    def __init__(self, errors: List[str], source: Optional[str] = None):
        self.errors = list(errors)
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(f"{len(self.errors)} rule error(s){where}: " + "; ".join(self.errors[:5]))


class DetectorTimeout(BreachGuardError):
    def __init__(self, detector: str, path: str, timeout: float):
        self.detector = detector
        self.path = path
        self.timeout = timeout
        super().__init__(f"{detector} exceeded {timeout:.1f}s on {path}")


class BackupError(BreachGuardError):
    pass


class BackupVerificationError(BackupError):
    pass


class BackupNotFoundError(BackupError):
    pass


class FixApplicationError(BreachGuardError):
    pass


class RollbackError(BreachGuardError):
    """Rollback failed; the target may be half-fixed and needs manual recovery."""

    def __init__(self, fix_id: str, message: str):
        self.fix_id = fix_id
        super().__init__(f"Rollback of fix {fix_id} failed: {message}")


class InvalidTransition(BreachGuardError):
    pass


class LockTimeout(BreachGuardError):
    def __init__(self, key: str, timeout: float, holder: Optional[str] = None):
        self.key = key
        self.timeout = timeout
        self.holder = holder
        super().__init__(f"Could not lock {key} within {timeout:.1f}s (held by {holder})")


class StrategyNotFound(BreachGuardError):
    pass
