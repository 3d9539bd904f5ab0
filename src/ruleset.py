"""RuleSet: the persisted configuration of automatic grouping for a container.

A RuleSet pairs a classification strategy (variant tag plus its typed
configuration) with the roles that make a member eligible and an optional
custom name for the groups it creates. Currently each container holds at
most one RuleSet.
"""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Any, Iterable, Mapping

import group_key
from config import Config, get_logger
from entities.autogroup import RuleSetRecord
from errors import ConfigInvalid, Err, InvalidContainerArgument, InvalidRuleSetArgument, Ok, Result
from strategies import (
    STRATEGY_REGISTRY,
    ClassificationStrategy,
    StrategyConfig,
    StrategyVariant,
    build_strategy,
    parse_variant,
    resolve_variant,
)

if TYPE_CHECKING:
    from store import GroupStore

logger = get_logger(service="ruleset")


def _decode_strategy_config(raw: str | dict | None) -> dict:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding strategy configuration that is not valid JSON")
        return {}
    return decoded if isinstance(decoded, dict) else {}


class RuleSet:
    def __init__(
        self,
        container_id: int,
        variant: StrategyVariant,
        strategy_config: StrategyConfig | None = None,
        eligible_roles: Iterable[int] = (),
        custom_group_name: str | None = None,
        id: int | None = None,  # noqa: A002
        created_at: int = 0,
        modified_at: int = 0,
        variant_fell_back: bool = False,
    ) -> None:
        self.id = id
        self.container_id = container_id
        self.custom_group_name = custom_group_name or None
        self.created_at = created_at
        self.modified_at = modified_at
        self.variant_fell_back = variant_fell_back
        self._variant = variant
        self._config = strategy_config
        self._roles: frozenset[int] = frozenset(eligible_roles)
        self._strategy = build_strategy(variant, strategy_config)

    def __repr__(self) -> str:
        return f"RuleSet(id={self.id}, container_id={self.container_id}, variant={self._variant.value})"

    @classmethod
    def new(cls, container_id: int, cfg: Config) -> Result[RuleSet]:
        """A fresh, unsaved RuleSet with the configured default roles and strategy."""
        if container_id <= 0:
            return Err(InvalidContainerArgument(f"Invalid container id: {container_id}"))
        variant, fell_back = resolve_variant(cfg.default_strategy)
        return Ok(cls(container_id, variant, eligible_roles=cfg.default_eligible_roles, variant_fell_back=fell_back))

    @classmethod
    def from_record(cls, record: Any, roles: Iterable[int], cfg: Config) -> Result[RuleSet]:
        """Build a RuleSet from a stored row and its role rows.

        An unknown or missing variant falls back to the default variant
        (flagged on ``variant_fell_back``). A stored configuration the
        variant rejects is dropped, leaving the RuleSet unconfigured.
        """
        parsed = RuleSetRecord.from_record(record)
        if isinstance(parsed, Err):
            return parsed
        row = parsed.value

        variant, fell_back = resolve_variant(row.strategy_variant)
        strategy_cls = STRATEGY_REGISTRY[variant]
        raw_config = _decode_strategy_config(row.strategy_config)
        config: StrategyConfig | None = None
        if raw_config:
            try:
                config = strategy_cls.parse_config(raw_config)
            except ConfigInvalid as e:
                logger.warning(f"Ignoring stored configuration of ruleset {row.id}: {e}")

        role_set = frozenset(roles)
        if not role_set:
            role_set = cfg.default_eligible_roles

        return Ok(
            cls(
                container_id=row.container_id,
                variant=variant,
                strategy_config=config,
                eligible_roles=role_set,
                custom_group_name=row.custom_group_name,
                id=row.id,
                created_at=row.created_at,
                modified_at=row.modified_at,
                variant_fell_back=fell_back,
            )
        )

    # --- Read paths ---

    def exists(self) -> bool:
        return self.id is not None and self.id > 0

    @property
    def variant(self) -> StrategyVariant:
        return self._variant

    @property
    def strategy(self) -> ClassificationStrategy:
        return self._strategy

    @property
    def strategy_config(self) -> StrategyConfig | None:
        return self._config

    @property
    def eligible_roles(self) -> frozenset[int]:
        return self._roles

    @property
    def filter_value(self) -> str | None:
        if self._config is None or self._config.filter_value is None:
            return None
        value = self._config.filter_value.strip()
        return value or None

    def grouping_by(self) -> str | None:
        return self._strategy.grouping_by()

    def delimited_by(self) -> str | None:
        return self._strategy.delimited_by()

    def group_by_options(self, catalog: Mapping[str, str]) -> dict[str, str]:
        return self._strategy.config_options(catalog)

    def delimited_by_options(self) -> dict[str, str]:
        return self._strategy.delimiter_options()

    def expected_group_name(self, candidate_key: str) -> str:
        """Custom group name when set, otherwise the name derived from the key."""
        return self.custom_group_name or group_key.default_group_name(candidate_key)

    # --- Mutations ---

    def set_container(self, container_id: int) -> None:
        if isinstance(container_id, int) and container_id > 0:
            self.container_id = container_id

    def set_strategy(self, variant: str | StrategyVariant) -> None:
        """Switch the strategy variant.

        Changing the variant discards the current configuration; callers must
        supply a new one with ``set_options``.

        Raises:
            ConfigInvalid: If the tag names no registered strategy.
        """
        new_variant = parse_variant(variant)
        if new_variant == self._variant:
            return
        self._variant = new_variant
        self._config = None
        self.variant_fell_back = False
        self._strategy = build_strategy(new_variant)

    def set_options(self, config: Mapping[str, Any] | StrategyConfig) -> bool:
        """Apply a strategy configuration if the strategy accepts it.

        Returns:
            True if the configuration was applied, False if it was rejected.
            A rejected configuration leaves the previous one in place.
        """
        try:
            parsed = type(self._strategy).parse_config(config)
        except ConfigInvalid as e:
            logger.warning(f"Rejected configuration for ruleset {self.id}: {e}")
            return False
        self._config = parsed
        self._strategy = build_strategy(self._variant, parsed)
        return True

    def set_eligible_roles(self, new_roles: Iterable[int] | None) -> bool:
        """Replace the eligible roles.

        Returns:
            True if any role was added or removed.
        """
        old_roles = self._roles
        self._roles = frozenset(new_roles or ())
        return self._roles != old_roles

    def set_custom_group_name(self, name: str | None) -> None:
        self.custom_group_name = name.strip() if name and name.strip() else None

    # --- Persistence ---

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "container_id": self.container_id,
            "strategy_variant": self._variant.value,
            "strategy_config": json.dumps(self._config.model_dump(exclude_none=True) if self._config else {}),
            "custom_group_name": self.custom_group_name,
            "created_at": self.created_at,
            "modified_at": self.modified_at,
        }

    def save(self, store: GroupStore) -> int:
        """Insert or update the RuleSet and synchronise its role rows."""
        now = int(time.time())
        if not self.exists():
            self.created_at = now
        self.modified_at = now

        if self.exists():
            store.update_ruleset(self.to_record())
        else:
            record = self.to_record()
            record.pop("id")
            self.id = store.insert_ruleset(record)
            logger.info(
                f"Created ruleset {self.id} for container {self.container_id}",
                extra={"operation": "create_ruleset", "ruleset_id": self.id, "container_id": self.container_id},
            )

        if store.get_ruleset_roles(self.id) != set(self._roles):  # type: ignore[arg-type]
            store.set_ruleset_roles(self.id, set(self._roles))  # type: ignore[arg-type]
        return self.id  # type: ignore[return-value]


def load_ruleset(store: GroupStore, ruleset_id: int, cfg: Config) -> Result[RuleSet]:
    record = store.get_ruleset(ruleset_id)
    if record is None:
        return Err(InvalidRuleSetArgument(f"RuleSet {ruleset_id} not found"))
    return RuleSet.from_record(record, store.get_ruleset_roles(ruleset_id), cfg)


def load_rulesets(store: GroupStore, container_id: int | None, cfg: Config) -> list[RuleSet]:
    """Load the RuleSets of a container (or all), skipping malformed rows."""
    rulesets: list[RuleSet] = []
    for record in store.list_rulesets(container_id):
        ruleset_id = record.get("id") if isinstance(record, dict) else None
        roles = store.get_ruleset_roles(ruleset_id) if isinstance(ruleset_id, int) else set()
        result = RuleSet.from_record(record, roles, cfg)
        if isinstance(result, Err):
            logger.warning(f"Skipping invalid ruleset record: {result.error}")
            continue
        rulesets.append(result.value)
    return rulesets
