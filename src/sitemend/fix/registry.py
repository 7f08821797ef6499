"""Maps vulnerability types to the strategy that fixes them."""

from __future__ import annotations

import logging

from sitemend.core.config import StrategyConfig
from sitemend.core.models import StrategyKind, Vulnerability, normalize_type
from sitemend.core.site import Site
from sitemend.fix.safety import SafetyAssessor
from sitemend.fix.strategies import ALL_STRATEGIES
from sitemend.fix.strategy import FixStrategy
from sitemend.fix.validator import FixValidator

logger = logging.getLogger(__name__)


class StrategyRegistry:
    """Type-keyed strategy lookup.

    Registering a second strategy under an existing type key replaces the
    first and logs a warning: the last registration wins.
    """

    def __init__(self) -> None:
        self._by_type: dict[str, FixStrategy] = {}
        self._by_kind: dict[StrategyKind, FixStrategy] = {}

    def register(self, type_key: str, strategy: FixStrategy) -> None:
        key = normalize_type(type_key)
        previous = self._by_type.get(key)
        if previous is not None and previous is not strategy:
            logger.warning(
                "Strategy for %r replaced: %s -> %s",
                key,
                type(previous).__name__,
                type(strategy).__name__,
            )
        self._by_type[key] = strategy
        self._by_kind[strategy.kind] = strategy

    def register_strategy(self, strategy: FixStrategy) -> None:
        """Register a strategy under every type it declares."""
        for type_key in strategy.supported_types:
            self.register(type_key, strategy)

    def get(self, kind: StrategyKind) -> FixStrategy | None:
        return self._by_kind.get(kind)

    def strategies(self) -> list[FixStrategy]:
        seen: list[FixStrategy] = []
        for strategy in self._by_type.values():
            if strategy not in seen:
                seen.append(strategy)
        return seen

    def types(self) -> list[str]:
        return sorted(self._by_type)

    def find_for(self, vulnerability: Vulnerability) -> FixStrategy | None:
        """Exact type, then category, then the first strategy that says it can fix it."""
        strategy = self._by_type.get(vulnerability.type_key)
        if strategy is not None:
            return strategy

        if vulnerability.category_key:
            strategy = self._by_type.get(vulnerability.category_key)
            if strategy is not None:
                return strategy

        for candidate in self.strategies():
            try:
                if candidate.can_auto_fix(vulnerability):
                    return candidate
            except Exception as e:
                logger.warning(
                    "%s.can_auto_fix raised while probing %s: %s",
                    type(candidate).__name__,
                    vulnerability.id,
                    e,
                )
        return None

    def __len__(self) -> int:
        return len(self._by_type)

    def __contains__(self, type_key: str) -> bool:
        return normalize_type(type_key) in self._by_type


def build_default_registry(
    site: Site,
    config: StrategyConfig | None = None,
    validator: FixValidator | None = None,
) -> StrategyRegistry:
    """Registry holding every built-in strategy, sharing one assessor and validator."""
    assessor = SafetyAssessor(site)
    validator = validator or FixValidator(site)
    registry = StrategyRegistry()
    for strategy_cls in ALL_STRATEGIES:
        registry.register_strategy(strategy_cls(site, config, assessor=assessor, validator=validator))
    return registry
