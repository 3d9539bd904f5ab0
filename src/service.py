"""Entry points of the autogroup engine.

External triggers (event handlers, batch jobs, configuration screens) call
``AutogroupService`` and nothing else. Every operation receives the store
it works against through the service; there is no module-level store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Mapping

import group_key
from attributes import AttributeSnapshot
from config import Config, get_logger
from dynamodb import DynamoDBStore
from errors import (
    AutogroupError,
    Err,
    InvalidContainerArgument,
    InvalidGroupArgument,
    InvalidMemberArgument,
    unwrap,
)
from ledger import ManualOverrideLedger
from reconciler import Reconciler, ReconcileResult
from registry import GroupRegistry
from ruleset import RuleSet, load_ruleset, load_rulesets
from store import InMemoryStore

if TYPE_CHECKING:
    from store import GroupStore

logger = get_logger(service="service")


@dataclass(frozen=True)
class RuleSetSummary:
    ruleset_id: int
    container_id: int
    strategy_variant: str
    grouping_by: str | None
    delimited_by: str | None
    filter_value: str | None
    custom_group_name: str | None
    eligible_roles: frozenset[int]
    group_count: int
    membership_counts: dict[int, int] = field(default_factory=dict)


def _check_positive_id(value: Any, error_cls: type[AutogroupError], label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise error_cls(f"Invalid {label} id: {value!r}")
    return value


class AutogroupService:
    def __init__(self, store: GroupStore, cfg: Config) -> None:
        self._store = store
        self._cfg = cfg
        self._ledger = ManualOverrideLedger(store)

    @property
    def store(self) -> GroupStore:
        return self._store

    @property
    def config(self) -> Config:
        return self._cfg

    @property
    def ledger(self) -> ManualOverrideLedger:
        return self._ledger

    def _reconciler(self) -> Reconciler:
        return Reconciler(self._store, preserve_manual=self._cfg.preserve_manual)

    def _load_snapshot(self, member_id: int) -> AttributeSnapshot:
        record = self._store.get_member(member_id)
        if record is None:
            raise InvalidMemberArgument(f"Member {member_id} not found")
        return unwrap(AttributeSnapshot.from_record(record))

    # --- Reconciliation ---

    def reconcile_member_results(self, member_id: int, container_id: int | None = None) -> list[ReconcileResult]:
        """Reconcile a member and return one result per RuleSet processed.

        Without a container, every container the member is enrolled in is
        reconciled.

        Raises:
            InvalidMemberArgument: If the member id is invalid or unknown.
            InvalidContainerArgument: If the container id is invalid.
        """
        _check_positive_id(member_id, InvalidMemberArgument, "member")
        if container_id is None:
            container_ids = self._store.list_member_containers(member_id)
        else:
            container_ids = [_check_positive_id(container_id, InvalidContainerArgument, "container")]

        snapshot = self._load_snapshot(member_id)
        reconciler = self._reconciler()
        results: list[ReconcileResult] = []
        for cid in container_ids:
            for ruleset in load_rulesets(self._store, cid, self._cfg):
                results.append(reconciler.reconcile(ruleset, snapshot))
        return results

    def reconcile_member(self, member_id: int, container_id: int | None = None) -> bool:
        try:
            results = self.reconcile_member_results(member_id, container_id)
        except AutogroupError as e:
            logger.exception(f"Failed to reconcile member {member_id}: {e}")
            return False
        except Exception as e:
            logger.exception(f"Unexpected error reconciling member {member_id}: {e}")
            return False
        return all(result.success for result in results)

    def _members_to_reconcile(self, container_id: int) -> list[int]:
        """Enrolled members plus anyone still sitting in a managed group."""
        member_ids = set(self._store.list_container_members(container_id))
        for ruleset in load_rulesets(self._store, container_id, self._cfg):
            for group in GroupRegistry(self._store, container_id, ruleset.id or 0).find_managed():
                member_ids |= group.members
        return sorted(member_ids)

    def reconcile_all_members(self, container_id: int) -> bool:
        try:
            _check_positive_id(container_id, InvalidContainerArgument, "container")
            member_ids = self._members_to_reconcile(container_id)
        except AutogroupError as e:
            logger.exception(f"Failed to reconcile container {container_id}: {e}")
            return False

        logger.info(f"Reconciling {len(member_ids)} members of container {container_id}")
        failures = 0
        for member_id in member_ids:
            if not self.reconcile_member(member_id, container_id):
                failures += 1
        if failures:
            logger.error(f"{failures} of {len(member_ids)} members of container {container_id} failed to reconcile")
        return failures == 0

    def rebuild_all(self) -> bool:
        """Reconcile every member of every container that has a RuleSet."""
        container_ids = sorted({ruleset.container_id for ruleset in load_rulesets(self._store, None, self._cfg)})
        logger.info(f"Rebuilding groups for {len(container_ids)} containers")
        results = [self.reconcile_all_members(cid) for cid in container_ids]
        return all(results)

    # --- RuleSet configuration ---

    def create_or_update_ruleset(  # noqa: PLR0913
        self,
        container_id: int,
        strategy_variant: str,
        config: Mapping[str, Any] | None = None,
        roles: Iterable[int] | None = None,
        filter_value: str | None = None,
        custom_name: str | None = None,
        reconcile: bool = True,
    ) -> RuleSet:
        """Create the container's RuleSet or update the existing one.

        A configuration the strategy rejects is ignored and the previous
        configuration stays in place.

        Raises:
            InvalidContainerArgument: If the container id is invalid.
            ConfigInvalid: If the strategy variant is unknown.
        """
        _check_positive_id(container_id, InvalidContainerArgument, "container")
        existing = load_rulesets(self._store, container_id, self._cfg)
        ruleset = existing[0] if existing else unwrap(RuleSet.new(container_id, self._cfg))

        ruleset.set_strategy(strategy_variant)

        options: dict[str, Any] | None = None
        if config is not None:
            options = dict(config)
        elif ruleset.strategy_config is not None:
            options = ruleset.strategy_config.model_dump()
        if options is not None:
            if filter_value is not None:
                options["filter_value"] = filter_value
            ruleset.set_options(options)
        elif filter_value is not None:
            logger.warning(
                f"Ignoring filter value for container {container_id}, the ruleset has no field configured",
                extra={"operation": "save_ruleset", "container_id": container_id},
            )

        roles_changed = False
        if roles is not None:
            roles_changed = ruleset.set_eligible_roles(roles)
        if custom_name is not None:
            ruleset.set_custom_group_name(custom_name)

        ruleset.save(self._store)
        logger.info(
            f"Saved ruleset {ruleset.id} for container {container_id}",
            extra={
                "operation": "save_ruleset",
                "ruleset_id": ruleset.id,
                "container_id": container_id,
                "strategy_variant": ruleset.variant.value,
                "roles_changed": roles_changed,
            },
        )
        if reconcile:
            self.reconcile_all_members(container_id)
        return ruleset

    def add_default_ruleset(self, container_id: int) -> RuleSet:
        """Give a container the default RuleSet unless it already has one."""
        _check_positive_id(container_id, InvalidContainerArgument, "container")
        existing = load_rulesets(self._store, container_id, self._cfg)
        if existing:
            return existing[0]
        return self.create_or_update_ruleset(
            container_id,
            self._cfg.default_strategy,
            config={"field": self._cfg.default_group_by},
        )

    def delete_ruleset(self, ruleset_id: int, cleanup_groups: bool = True) -> bool:
        """Delete a RuleSet, then delete or disassociate the groups it owns."""
        result = load_ruleset(self._store, ruleset_id, self._cfg)
        if isinstance(result, Err):
            logger.warning(f"Cannot delete ruleset: {result.error}")
            return False
        ruleset = result.value

        registry = GroupRegistry(self._store, ruleset.container_id, ruleset_id)
        groups = registry.find_managed()
        self._store.delete_ruleset(ruleset_id)
        for group in groups:
            self._ledger.forget_group(group.id)
            if cleanup_groups:
                registry.remove(group)
            else:
                registry.disassociate(group)

        logger.info(
            f"Deleted ruleset {ruleset_id}",
            extra={
                "operation": "delete_ruleset",
                "ruleset_id": ruleset_id,
                "container_id": ruleset.container_id,
                "cleanup_groups": cleanup_groups,
                "group_count": len(groups),
            },
        )
        return True

    def role_deleted(self, role_id: int) -> int:
        """Drop a deleted role from every RuleSet's eligible roles."""
        affected = self._store.delete_role(role_id)
        logger.info(f"Removed deleted role {role_id} from {affected} rulesets")
        if role_id in self._cfg.default_eligible_roles:
            logger.warning(f"Deleted role {role_id} is still listed in the default eligible roles")
        return affected

    def ruleset_summary(self, ruleset_id: int) -> RuleSetSummary:
        ruleset = unwrap(load_ruleset(self._store, ruleset_id, self._cfg))
        counts = GroupRegistry(self._store, ruleset.container_id, ruleset_id).membership_counts()
        return RuleSetSummary(
            ruleset_id=ruleset_id,
            container_id=ruleset.container_id,
            strategy_variant=ruleset.variant.value,
            grouping_by=ruleset.grouping_by(),
            delimited_by=ruleset.delimited_by(),
            filter_value=ruleset.filter_value,
            custom_group_name=ruleset.custom_group_name,
            eligible_roles=ruleset.eligible_roles,
            group_count=len(counts),
            membership_counts=counts,
        )

    # --- Group ownership checks ---

    def is_valid_managed_group(self, group_id: int) -> bool:
        """True if the group's key names an existing RuleSet of the group's container."""
        record = self._store.get_group(group_id)
        if record is None:
            return False
        try:
            ruleset_id, _ = group_key.decode(record.get("external_key") or "")
        except InvalidGroupArgument:
            return False
        if ruleset_id < 1:
            return False
        ruleset = self._store.get_ruleset(ruleset_id)
        return ruleset is not None and ruleset.get("container_id") == record.get("container_id")

    def verify_group_key(self, group_id: int) -> bool:
        """Strip a managed key that no RuleSet of the container owns.

        Returns:
            True if the key was stripped.
        """
        record = self._store.get_group(group_id)
        if record is None or not group_key.is_managed(record.get("external_key")):
            return False
        if self.is_valid_managed_group(group_id):
            return False
        self._store.update_group(group_id, {"external_key": ""})
        logger.warning(
            f"Stripped orphaned managed key from group {group_id}",
            extra={"operation": "strip_group_key", "group_id": group_id, "external_key": record.get("external_key")},
        )
        return True


def create_service(cfg: Config) -> AutogroupService:
    """Build a service over the store backend selected in the configuration."""
    if cfg.store_backend == "dynamodb":
        store: GroupStore = DynamoDBStore.from_config(cfg)
    else:
        store = InMemoryStore()
    logger.info(f"Using {cfg.store_backend} store")
    return AutogroupService(store, cfg)
