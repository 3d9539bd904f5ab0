"""Ledger of memberships in managed groups that were made outside the engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

from config import get_logger

if TYPE_CHECKING:
    from store import GroupStore

logger = get_logger(service="ledger")


class ManualOverrideLedger:
    """Records (member, group) pairs that reconciliation must not remove.

    An entry only suppresses automatic removal. It never causes an
    automatic addition.
    """

    def __init__(self, store: GroupStore) -> None:
        self._store = store

    def record(self, member_id: int, group_id: int) -> None:
        if self._store.has_override(member_id, group_id):
            return
        self._store.add_override(member_id, group_id)
        logger.info(
            "Recorded manual membership",
            extra={"operation": "override_record", "member_id": member_id, "group_id": group_id},
        )

    def forget(self, member_id: int, group_id: int) -> None:
        if not self._store.has_override(member_id, group_id):
            return
        self._store.remove_override(member_id, group_id)
        logger.info(
            "Forgot manual membership",
            extra={"operation": "override_forget", "member_id": member_id, "group_id": group_id},
        )

    def contains(self, member_id: int, group_id: int) -> bool:
        return self._store.has_override(member_id, group_id)

    def forget_group(self, group_id: int) -> None:
        self._store.remove_group_overrides(group_id)
        logger.debug(f"Cleared manual memberships of group {group_id}")
