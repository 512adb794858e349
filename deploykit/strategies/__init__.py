"""Rollout strategies: recreate, rolling, blue-green and canary.

Usage::

    from deploykit.strategies import create_strategy

    strategy = create_strategy(config.strategy, context)
    result = strategy.execute(version, cancel=token)
"""

from .base import DeploymentStrategy, StrategyContext, StrategyResult
from .registry import (
    StrategyRegistry,
    create_strategy,
    get_registry,
    reset_registry,
)

__all__ = [
    "DeploymentStrategy",
    "StrategyContext",
    "StrategyRegistry",
    "StrategyResult",
    "create_strategy",
    "get_registry",
    "reset_registry",
]
