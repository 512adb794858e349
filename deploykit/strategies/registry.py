"""Strategy registry: look up a rollout strategy by name.

Usage::

    from deploykit.strategies import get_registry

    strategy = get_registry().create("blue-green", context)
    result = strategy.execute("v1.4.0")
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from ..config import StrategyName
from .base import DeploymentStrategy, StrategyContext

logger = logging.getLogger(__name__)


class StrategyRegistry:
    """Maps strategy names to :class:`DeploymentStrategy` classes."""

    def __init__(self) -> None:
        self._strategies: dict[StrategyName, type[DeploymentStrategy]] = {}

    def register(self, name: StrategyName, strategy_cls: type[DeploymentStrategy]) -> None:
        # First registration wins
        if name in self._strategies:
            return
        self._strategies[name] = strategy_cls

    @property
    def names(self) -> list[StrategyName]:
        return list(self._strategies)

    def get(self, name: Union[str, StrategyName]) -> type[DeploymentStrategy]:
        key = StrategyName.parse(name)
        try:
            return self._strategies[key]
        except KeyError:
            available = ", ".join(n.value for n in self._strategies)
            raise ValueError(f"No strategy registered for '{key.value}'. Available: {available}") from None

    def create(self, name: Union[str, StrategyName], context: StrategyContext) -> DeploymentStrategy:
        strategy_cls = self.get(name)
        logger.debug("Using %s for %s", strategy_cls.__name__, StrategyName.parse(name).value)
        return strategy_cls(context)


# ---------------------------------------------------------------------------
# Global registry singleton
# ---------------------------------------------------------------------------

_registry: Optional[StrategyRegistry] = None


def get_registry() -> StrategyRegistry:
    """Get the global strategy registry, auto-registering built-in strategies."""
    global _registry
    if _registry is None:
        _registry = StrategyRegistry()
        _auto_register(_registry)
    return _registry


def reset_registry() -> None:
    """Reset the global registry (for testing)."""
    global _registry
    _registry = None


def create_strategy(name: Union[str, StrategyName], context: StrategyContext) -> DeploymentStrategy:
    return get_registry().create(name, context)


def _auto_register(registry: StrategyRegistry) -> None:
    """Register all built-in strategies."""
    from .blue_green import BlueGreenStrategy
    from .canary import CanaryStrategy
    from .recreate import RecreateStrategy
    from .rolling import RollingStrategy

    registry.register(StrategyName.BLUE_GREEN, BlueGreenStrategy)
    registry.register(StrategyName.ROLLING, RollingStrategy)
    registry.register(StrategyName.CANARY, CanaryStrategy)
    registry.register(StrategyName.RECREATE, RecreateStrategy)
