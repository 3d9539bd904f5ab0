"""Physical groups owned by one RuleSet inside one container."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import group_key
from config import get_logger
from entities.autogroup import Group
from errors import DuplicateExternalKey, Err, GroupCreateFailed, StoreError

if TYPE_CHECKING:
    from store import GroupStore

logger = get_logger(service="registry")

# Origin tag attached to every membership mutation made by the engine.
ORIGIN_COMPONENT = "local_autogroup"


class GroupRegistry:
    """Lookup, creation and membership mutation for a RuleSet's groups.

    Groups are cached in a working set keyed by group id. The working set is
    filled from the store on first use and kept in step with every mutation
    made through the registry.
    """

    def __init__(self, store: GroupStore, container_id: int, ruleset_id: int) -> None:
        self._store = store
        self._container_id = container_id
        self._ruleset_id = ruleset_id
        self._working_set: dict[int, Group] | None = None

    @property
    def container_id(self) -> int:
        return self._container_id

    @property
    def ruleset_id(self) -> int:
        return self._ruleset_id

    def _load_group(self, record: dict) -> Group | None:
        members = frozenset(self._store.list_members(record["id"])) if isinstance(record.get("id"), int) else None
        result = Group.from_record(record, members=members)
        if isinstance(result, Err):
            logger.warning(f"Skipping invalid group record: {result.error}")
            return None
        group = result.value
        if not group.owned_by(self._ruleset_id) or group.container_id != self._container_id:
            logger.warning(f"Skipping group {group.id}, it does not belong to ruleset {self._ruleset_id}")
            return None
        return group

    def find_managed(self) -> list[Group]:
        """All valid groups owned by this RuleSet in the container."""
        if self._working_set is None:
            records = self._store.list_groups(self._container_id, group_key.ruleset_prefix(self._ruleset_id))
            loaded = (self._load_group(record) for record in records)
            self._working_set = {group.id: group for group in loaded if group is not None}
        return list(self._working_set.values())

    def refresh(self) -> list[Group]:
        self._working_set = None
        return self.find_managed()

    def _remember(self, group: Group) -> Group:
        if self._working_set is None:
            self.find_managed()
        self._working_set = {**self._working_set, group.id: group}  # type: ignore[dict-item]
        return group

    def _forget(self, group: Group) -> None:
        if self._working_set is not None:
            self._working_set = {gid: g for gid, g in self._working_set.items() if gid != group.id}

    def _ensure_name(self, group: Group, desired_name: str) -> Group:
        if group.name == desired_name:
            return group
        self._store.update_group(group.id, {"name": desired_name})
        logger.info(
            f"Renamed group '{group.name}' to '{desired_name}'",
            extra={"operation": "rename_group", "group_id": group.id, "container_id": self._container_id},
        )
        return group.model_copy(update={"name": desired_name, "modified_at": int(time.time())})

    def _lookup(self, external_key: str) -> Group | None:
        for group in self.find_managed():
            if group.external_key == external_key:
                return group
        record = self._store.get_group_by_key(self._container_id, external_key)
        if record is None:
            return None
        return self._load_group(record)

    def get_or_create(self, candidate_key: str, desired_name: str) -> tuple[Group, bool]:
        """Resolve the group for a candidate key, creating it when absent.

        Returns:
            Tuple of (group, was_created).

        Raises:
            GroupCreateFailed: If the store rejected the creation and no
                concurrently created group could be fetched instead.
        """
        external_key = group_key.encode(self._ruleset_id, candidate_key)

        existing = self._lookup(external_key)
        if existing is not None:
            return self._remember(self._ensure_name(existing, desired_name)), False

        now = int(time.time())
        record = {
            "container_id": self._container_id,
            "external_key": external_key,
            "name": desired_name,
            "description": "",
            "created_at": now,
            "modified_at": now,
        }
        try:
            group_id = self._store.create_group(record)
        except DuplicateExternalKey:
            logger.info(f"Group '{external_key}' was created concurrently, fetching it")
            raced = self._store.get_group_by_key(self._container_id, external_key)
            group = self._load_group(raced) if raced is not None else None
            if group is None:
                raise GroupCreateFailed(f"Could not create or fetch group '{external_key}'") from None
            return self._remember(self._ensure_name(group, desired_name)), False
        except StoreError as e:
            raise GroupCreateFailed(f"Store rejected group '{external_key}': {e}") from e

        group = Group(id=group_id, members=frozenset(), **record)
        logger.info(
            f"Created group '{desired_name}'",
            extra={
                "operation": "create_group",
                "group_id": group_id,
                "external_key": external_key,
                "container_id": self._container_id,
            },
        )
        return self._remember(group), True

    def ensure_member(self, group: Group, member_id: int) -> bool:
        current = (self._working_set or {}).get(group.id, group)
        if current.has_member(member_id):
            return False
        added = self._store.add_member(group.id, member_id, component=ORIGIN_COMPONENT)
        self._remember(current.model_copy(update={"members": current.members | {member_id}}))
        if added:
            logger.info(
                f"Added member {member_id} to group '{group.name}'",
                extra={"operation": "add_member", "member_id": member_id, "group_id": group.id},
            )
        return added

    def ensure_not_member(self, group: Group, member_id: int) -> bool:
        current = (self._working_set or {}).get(group.id, group)
        if not current.has_member(member_id):
            return False
        removed = self._store.remove_member(group.id, member_id, component=ORIGIN_COMPONENT)
        self._remember(current.model_copy(update={"members": current.members - {member_id}}))
        if removed:
            logger.info(
                f"Removed member {member_id} from group '{group.name}'",
                extra={"operation": "remove_member", "member_id": member_id, "group_id": group.id},
            )
        return removed

    def remove(self, group: Group) -> None:
        """Delete a managed group together with its memberships."""
        self._store.delete_group(group.id)
        self._forget(group)
        logger.info(f"Deleted group '{group.name}'", extra={"operation": "delete_group", "group_id": group.id})

    def disassociate(self, group: Group) -> None:
        """Strip the managed key so the group survives as an ordinary group."""
        self._store.update_group(group.id, {"external_key": ""})
        self._forget(group)
        logger.info(
            f"Disassociated group '{group.name}'",
            extra={"operation": "disassociate_group", "group_id": group.id},
        )

    def membership_counts(self) -> dict[int, int]:
        return {group.id: len(group.members) for group in self.find_managed()}
