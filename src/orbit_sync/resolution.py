"""Conflict resolution strategies."""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .config import ConflictResolutionSettings, apply_updates
from .exceptions import ManualResolutionRequired, UnknownStrategyError
from .models import Conflict, ConflictResolution, FieldDifference, ResolutionStrategy
from .utils.datetime import now_utc


MERGE_SEPARATOR = "\n\n---\n\n"


class ConflictResolutionEngine:
    """Resolves conflicts using the configured or requested strategy."""

    def __init__(self, config: Optional[ConflictResolutionSettings] = None,
                 clock: Callable[[], datetime] = now_utc):
        self._config = config or ConflictResolutionSettings()
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    @property
    def config(self) -> ConflictResolutionSettings:
        return self._config

    def update_config(self, **changes) -> ConflictResolutionSettings:
        """Apply setting changes and return the new settings."""
        self._config = apply_updates(self._config, changes)
        return self._config

    def select_strategy(self, conflict: Conflict,
                        strategy: Union[ResolutionStrategy, str, None] = None) -> ResolutionStrategy:
        """Explicit override, else the per-service setting, else the default."""
        if strategy is None:
            return self._config.strategy_for(conflict.service)

        if isinstance(strategy, ResolutionStrategy):
            return strategy

        try:
            return ResolutionStrategy(strategy)
        except ValueError:
            raise UnknownStrategyError(f"Unknown strategy: {strategy}") from None

    def resolve(self, conflict: Conflict,
                strategy: Union[ResolutionStrategy, str, None] = None) -> ConflictResolution:
        """Resolve a single conflict.

        The conflict itself is not modified; the caller applies the returned
        resolution to the entity and stamps the conflict.

        Args:
            conflict: The conflict to resolve
            strategy: Optional override of the configured strategy

        Returns:
            The resolution, carrying the final local-shaped value

        Raises:
            ManualResolutionRequired: For the manual strategy
            UnknownStrategyError: For a strategy name that does not exist
        """
        strategy = self.select_strategy(conflict, strategy)

        if strategy == ResolutionStrategy.APP_WINS:
            resolution = self._resolve_app_wins(conflict)
        elif strategy == ResolutionStrategy.EXTERNAL_WINS:
            resolution = self._resolve_external_wins(conflict)
        elif strategy == ResolutionStrategy.LAST_WRITE_WINS:
            resolution = self._resolve_last_write_wins(conflict)
        elif strategy == ResolutionStrategy.MERGE:
            resolution = self._resolve_merge(conflict)
        elif strategy == ResolutionStrategy.MANUAL:
            raise ManualResolutionRequired(conflict.id)
        else:
            raise UnknownStrategyError(f"Unknown strategy: {strategy}")

        self.logger.info(f"Resolved {conflict.id} with {strategy.value}")
        return resolution

    def _resolution(self, strategy: ResolutionStrategy, final_value: Dict[str, Any],
                    merged_fields: Optional[Dict[str, Any]] = None) -> ConflictResolution:
        return ConflictResolution(
            strategy=strategy,
            resolved_by="system",
            resolved_at=self.clock(),
            final_value=dict(final_value),
            merged_fields=merged_fields,
        )

    def _resolve_app_wins(self, conflict: Conflict) -> ConflictResolution:
        return self._resolution(ResolutionStrategy.APP_WINS, conflict.app_value)

    def _resolve_external_wins(self, conflict: Conflict) -> ConflictResolution:
        return self._resolution(ResolutionStrategy.EXTERNAL_WINS, conflict.external_value)

    def _resolve_last_write_wins(self, conflict: Conflict) -> ConflictResolution:
        """Strictly later app edit wins; a tie goes to the remote side."""
        if conflict.app_last_modified > conflict.external_last_modified:
            final_value = conflict.app_value
        else:
            final_value = conflict.external_value
        return self._resolution(ResolutionStrategy.LAST_WRITE_WINS, final_value)

    def _resolve_merge(self, conflict: Conflict) -> ConflictResolution:
        merged = dict(conflict.app_value)
        merged_fields = {}

        for diff in conflict.conflict_fields:
            value = self._merge_field(diff)
            merged[diff.field] = value
            merged_fields[diff.field] = value

        return self._resolution(ResolutionStrategy.MERGE, merged, merged_fields)

    def _merge_field(self, diff: FieldDifference) -> Any:
        """Combine one differing field; anything not combinable keeps the app value."""
        if not diff.can_merge:
            return diff.app_value

        app_value, external_value = diff.app_value, diff.external_value

        if isinstance(app_value, list) and isinstance(external_value, list):
            return _ordered_union(app_value, external_value)

        if isinstance(app_value, str) and isinstance(external_value, str):
            if "description" in diff.field or "notes" in diff.field:
                return f"{app_value}{MERGE_SEPARATOR}{external_value}"

        return app_value


def _ordered_union(first: List[Any], second: List[Any]) -> List[Any]:
    result = []
    for value in first + second:
        if value not in result:
            result.append(value)
    return result
