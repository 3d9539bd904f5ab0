from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from config import get_logger

if TYPE_CHECKING:
    from store import GroupStore

logger = get_logger(service="eligibility")


class EligibilityGate:
    """Checks whether a member holds one of a RuleSet's roles in a container."""

    def __init__(self, store: GroupStore) -> None:
        self._store = store

    def is_eligible(self, member_id: int, container_id: int, eligible_roles: Iterable[int]) -> bool:
        eligible = frozenset(eligible_roles)
        if not eligible:
            logger.debug(f"No eligible roles configured, member {member_id} is not eligible in container {container_id}")
            return False
        held = self._store.get_member_roles(member_id, container_id)
        matched = held & eligible
        logger.debug(
            f"Eligibility of member {member_id} in container {container_id}: held={sorted(held)}, eligible={sorted(eligible)}"
        )
        return bool(matched)
