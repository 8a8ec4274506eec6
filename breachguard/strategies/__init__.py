"""Fix strategies and the static registry keyed by vulnerability type."""

from typing import Dict, Type

from ..errors import StrategyNotFound
from .base import FixOptions, FixStrategy
from .code import CodeFixStrategy
from .configuration import ConfigurationFixStrategy
from .file_permissions import FilePermissionsFixStrategy

STRATEGY_CLASSES = (CodeFixStrategy, FilePermissionsFixStrategy, ConfigurationFixStrategy)

STRATEGIES: Dict[str, Type[FixStrategy]] = {
    vuln_type: cls for cls in STRATEGY_CLASSES for vuln_type in cls.supported_types
}


def strategy_for(vuln_type: str) -> Type[FixStrategy]:
    try:
        return STRATEGIES[vuln_type]
    except KeyError:
        raise StrategyNotFound(f"No fix strategy for {vuln_type!r}") from None


def build_strategies(*args, **kwargs) -> Dict[str, FixStrategy]:
    """One instance per strategy class, keyed by every type it handles."""
    instances = {cls: cls(*args, **kwargs) for cls in STRATEGY_CLASSES}
    return {vuln_type: instances[cls] for vuln_type, cls in STRATEGIES.items()}


__all__ = [
    "STRATEGIES",
    "FixOptions",
    "FixStrategy",
    "CodeFixStrategy",
    "ConfigurationFixStrategy",
    "FilePermissionsFixStrategy",
    "build_strategies",
    "strategy_for",
]
