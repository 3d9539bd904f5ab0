"""Membership reconciliation for one member under one RuleSet.

Every run recomputes the target state from scratch: eligibility, candidate
keys, filter, then group resolution and membership sync against what the
store currently holds. Nothing is cached between runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from attributes import AttributeSnapshot
from config import get_logger
from eligibility import EligibilityGate
from errors import GroupCreateFailed
from ledger import ManualOverrideLedger
from registry import GroupRegistry

if TYPE_CHECKING:
    from ruleset import RuleSet
    from store import GroupStore

logger = get_logger(service="reconciler")


class ReconcileStage(str, Enum):
    START = "start"
    ELIGIBILITY_CHECKED = "eligibility_checked"
    CANDIDATES_COMPUTED = "candidates_computed"
    FILTERED = "filtered"
    MEMBERSHIP_SYNCED = "membership_synced"
    DONE = "done"


@dataclass
class ReconcileResult:
    """Outcome of reconciling one member under one RuleSet."""

    member_id: int
    ruleset_id: int | None
    container_id: int
    start_time: datetime
    end_time: datetime | None = None
    stage: ReconcileStage = ReconcileStage.START
    success: bool = False

    eligible: bool = False
    candidate_keys: list[str] = field(default_factory=list)
    target_keys: list[str] = field(default_factory=list)
    valid_group_ids: set[int] = field(default_factory=set)
    groups_created: int = 0
    memberships_added: int = 0
    memberships_removed: int = 0
    memberships_preserved: int = 0
    errors: list[str] = field(default_factory=list)

    def advance(self, stage: ReconcileStage) -> None:
        self.stage = stage

    def log_start(self) -> None:
        logger.info(
            "Reconciliation started",
            extra={
                "operation": "reconcile_start",
                "member_id": self.member_id,
                "ruleset_id": self.ruleset_id,
                "container_id": self.container_id,
                "start_time": self.start_time.isoformat(),
            },
        )

    def log_completion(self) -> None:
        duration_ms = None
        if self.end_time:
            duration_ms = int((self.end_time - self.start_time).total_seconds() * 1000)

        logger.info(
            "Reconciliation completed",
            extra={
                "operation": "reconcile_complete",
                "member_id": self.member_id,
                "ruleset_id": self.ruleset_id,
                "container_id": self.container_id,
                "duration_ms": duration_ms,
                "success": self.success,
                "eligible": self.eligible,
                "target_keys": self.target_keys,
                "groups_created": self.groups_created,
                "memberships_added": self.memberships_added,
                "memberships_removed": self.memberships_removed,
                "memberships_preserved": self.memberships_preserved,
                "error_count": len(self.errors),
            },
        )


def apply_filter(candidate_keys: list[str], filter_value: str | None) -> list[str]:
    """Keep keys equal to the filter value (trimmed, case-insensitive).

    A missing or blank filter keeps every key.
    """
    if filter_value is None or filter_value.strip() == "":
        return list(candidate_keys)
    wanted = filter_value.strip().casefold()
    return [key for key in candidate_keys if key.strip().casefold() == wanted]


class Reconciler:
    def __init__(self, store: GroupStore, preserve_manual: bool = True) -> None:
        self._store = store
        self._preserve_manual = preserve_manual
        self._gate = EligibilityGate(store)
        self._ledger = ManualOverrideLedger(store)

    def reconcile(self, ruleset: RuleSet, snapshot: AttributeSnapshot) -> ReconcileResult:
        """Converge the member's membership in the RuleSet's groups."""
        member_id = snapshot.member_id
        result = ReconcileResult(
            member_id=member_id,
            ruleset_id=ruleset.id,
            container_id=ruleset.container_id,
            start_time=datetime.now(timezone.utc),
        )
        result.log_start()
        registry = GroupRegistry(self._store, ruleset.container_id, ruleset.id or 0)

        result.eligible = self._gate.is_eligible(member_id, ruleset.container_id, ruleset.eligible_roles)
        result.advance(ReconcileStage.ELIGIBILITY_CHECKED)

        if result.eligible:
            result.candidate_keys = ruleset.strategy.candidate_keys(snapshot)
            result.advance(ReconcileStage.CANDIDATES_COMPUTED)
            result.target_keys = apply_filter(result.candidate_keys, ruleset.filter_value)
            result.advance(ReconcileStage.FILTERED)
            self._add_to_targets(ruleset, registry, member_id, result)
        else:
            logger.debug(f"Member {member_id} is not eligible for ruleset {ruleset.id}")

        self._remove_stale(registry, member_id, result)
        result.advance(ReconcileStage.MEMBERSHIP_SYNCED)

        result.success = True
        result.end_time = datetime.now(timezone.utc)
        result.advance(ReconcileStage.DONE)
        result.log_completion()
        return result

    def _add_to_targets(self, ruleset: RuleSet, registry: GroupRegistry, member_id: int, result: ReconcileResult) -> None:
        for key in result.target_keys:
            try:
                group, created = registry.get_or_create(key, ruleset.expected_group_name(key))
            except GroupCreateFailed as e:
                logger.warning(f"No group available for key '{key}' in ruleset {ruleset.id}: {e}")
                result.errors.append(str(e))
                continue
            if created:
                result.groups_created += 1
            result.valid_group_ids.add(group.id)
            if registry.ensure_member(group, member_id):
                result.memberships_added += 1

    def _remove_stale(self, registry: GroupRegistry, member_id: int, result: ReconcileResult) -> None:
        for group in registry.find_managed():
            if group.id in result.valid_group_ids or not group.has_member(member_id):
                continue
            if self._preserve_manual and self._ledger.contains(member_id, group.id):
                logger.info(
                    f"Keeping manually added member {member_id} in group '{group.name}'",
                    extra={"operation": "preserve_member", "member_id": member_id, "group_id": group.id},
                )
                result.memberships_preserved += 1
                continue
            if registry.ensure_not_member(group, member_id):
                result.memberships_removed += 1
