"""Persistence capabilities the autogroup engine relies on.

``GroupStore`` is the contract every backing store implements. Records
cross this boundary as plain dicts so that components can validate them
(and skip malformed rows) themselves. ``InMemoryStore`` is a complete
implementation used for embedding and tests; ``dynamodb.DynamoDBStore``
persists to DynamoDB.
"""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable

from config import get_logger
from errors import DuplicateExternalKey, NotFound

logger = get_logger(service="store")


@runtime_checkable
class GroupStore(Protocol):
    # --- RuleSets ---

    def get_ruleset(self, ruleset_id: int) -> dict | None: ...

    def list_rulesets(self, container_id: int | None = None) -> list[dict]: ...

    def insert_ruleset(self, record: dict) -> int: ...

    def update_ruleset(self, record: dict) -> None: ...

    def delete_ruleset(self, ruleset_id: int) -> None: ...

    def get_ruleset_roles(self, ruleset_id: int) -> set[int]: ...

    def set_ruleset_roles(self, ruleset_id: int, role_ids: set[int]) -> None: ...

    def delete_role(self, role_id: int) -> int:
        """Drop a role from every RuleSet; return how many RuleSets referenced it."""
        ...

    # --- Groups ---

    def list_groups(self, container_id: int, key_prefix: str = "") -> list[dict]: ...

    def get_group(self, group_id: int) -> dict | None: ...

    def get_group_by_key(self, container_id: int, external_key: str) -> dict | None: ...

    def create_group(self, record: dict) -> int:
        """Insert a group row.

        Raises:
            DuplicateExternalKey: If (container_id, external_key) is already taken.
        """
        ...

    def update_group(self, group_id: int, changes: dict) -> None: ...

    def delete_group(self, group_id: int) -> None: ...

    def list_members(self, group_id: int) -> set[int]: ...

    def add_member(self, group_id: int, member_id: int, component: str | None = None) -> bool: ...

    def remove_member(self, group_id: int, member_id: int, component: str | None = None) -> bool: ...

    # --- Members ---

    def get_member(self, member_id: int) -> dict | None: ...

    def get_member_roles(self, member_id: int, container_id: int) -> set[int]: ...

    def list_container_members(self, container_id: int) -> list[int]: ...

    def list_member_containers(self, member_id: int) -> list[int]: ...

    def list_custom_fields(self) -> dict[str, str]: ...

    # --- Manual overrides ---

    def has_override(self, member_id: int, group_id: int) -> bool: ...

    def add_override(self, member_id: int, group_id: int) -> None: ...

    def remove_override(self, member_id: int, group_id: int) -> None: ...

    def remove_group_overrides(self, group_id: int) -> None: ...


@dataclass(frozen=True)
class MembershipChange:
    action: Literal["add", "remove"]
    group_id: int
    member_id: int
    component: str | None


class InMemoryStore:
    """Thread-safe dict-backed ``GroupStore``.

    Uniqueness of (container_id, external_key) is enforced through a key
    index, so concurrent ``create_group`` calls for the same key cannot both
    succeed. Every membership mutation is appended to ``membership_log``
    together with its origin component.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rulesets: dict[int, dict] = {}
        self._ruleset_roles: dict[int, set[int]] = {}
        self._groups: dict[int, dict] = {}
        self._group_keys: dict[tuple[int, str], int] = {}
        self._group_members: dict[int, set[int]] = {}
        self._members: dict[int, dict] = {}
        self._role_assignments: dict[tuple[int, int], set[int]] = {}
        self._enrolments: dict[int, set[int]] = {}
        self._custom_fields: dict[str, str] = {}
        self._overrides: set[tuple[int, int]] = set()
        self._next_ruleset_id = 1
        self._next_group_id = 1
        self.membership_log: list[MembershipChange] = []

    # --- Fixtures for the member side, owned by other subsystems in production ---

    def put_member(self, record: dict) -> None:
        with self._lock:
            self._members[record["id"]] = copy.deepcopy(record)

    def update_member(self, member_id: int, **fields: object) -> None:
        with self._lock:
            if member_id not in self._members:
                raise NotFound(f"Member {member_id} not found")
            custom = fields.pop("profile_field", None)
            self._members[member_id].update(fields)
            if isinstance(custom, dict):
                self._members[member_id].setdefault("profile_field", {}).update(custom)

    def enrol(self, member_id: int, container_id: int) -> None:
        with self._lock:
            self._enrolments.setdefault(container_id, set()).add(member_id)

    def unenrol(self, member_id: int, container_id: int) -> None:
        with self._lock:
            self._enrolments.get(container_id, set()).discard(member_id)

    def assign_role(self, member_id: int, container_id: int, role_id: int) -> None:
        with self._lock:
            self._role_assignments.setdefault((member_id, container_id), set()).add(role_id)

    def unassign_role(self, member_id: int, container_id: int, role_id: int) -> None:
        with self._lock:
            self._role_assignments.get((member_id, container_id), set()).discard(role_id)

    def define_custom_field(self, shortname: str, name: str) -> None:
        with self._lock:
            self._custom_fields[shortname] = name

    def put_raw_group(self, record: dict) -> int:
        """Insert a group row verbatim, bypassing validation."""
        with self._lock:
            group_id = record.get("id") or self._next_group_id
            self._next_group_id = max(self._next_group_id, group_id + 1)
            self._groups[group_id] = dict(record, id=group_id)
            self._group_members.setdefault(group_id, set())
            if isinstance(record.get("external_key"), str) and record["external_key"]:
                self._group_keys[(record.get("container_id"), record["external_key"])] = group_id  # type: ignore[index]
            return group_id

    # --- RuleSets ---

    def get_ruleset(self, ruleset_id: int) -> dict | None:
        with self._lock:
            record = self._rulesets.get(ruleset_id)
            return dict(record) if record else None

    def list_rulesets(self, container_id: int | None = None) -> list[dict]:
        with self._lock:
            return [
                dict(r)
                for _, r in sorted(self._rulesets.items())
                if container_id is None or r.get("container_id") == container_id
            ]

    def insert_ruleset(self, record: dict) -> int:
        with self._lock:
            ruleset_id = self._next_ruleset_id
            self._next_ruleset_id += 1
            self._rulesets[ruleset_id] = dict(record, id=ruleset_id)
            return ruleset_id

    def update_ruleset(self, record: dict) -> None:
        with self._lock:
            if record["id"] not in self._rulesets:
                raise NotFound(f"RuleSet {record['id']} not found")
            self._rulesets[record["id"]] = dict(record)

    def delete_ruleset(self, ruleset_id: int) -> None:
        with self._lock:
            self._rulesets.pop(ruleset_id, None)
            self._ruleset_roles.pop(ruleset_id, None)

    def get_ruleset_roles(self, ruleset_id: int) -> set[int]:
        with self._lock:
            return set(self._ruleset_roles.get(ruleset_id, set()))

    def set_ruleset_roles(self, ruleset_id: int, role_ids: set[int]) -> None:
        with self._lock:
            self._ruleset_roles[ruleset_id] = set(role_ids)

    def delete_role(self, role_id: int) -> int:
        with self._lock:
            affected = 0
            for ruleset_id, roles in list(self._ruleset_roles.items()):
                if role_id in roles:
                    self._ruleset_roles[ruleset_id] = roles - {role_id}
                    affected += 1
            return affected

    # --- Groups ---

    def list_groups(self, container_id: int, key_prefix: str = "") -> list[dict]:
        with self._lock:
            return [
                dict(g)
                for _, g in sorted(self._groups.items())
                if g.get("container_id") == container_id and str(g.get("external_key") or "").startswith(key_prefix)
            ]

    def get_group(self, group_id: int) -> dict | None:
        with self._lock:
            record = self._groups.get(group_id)
            return dict(record) if record else None

    def get_group_by_key(self, container_id: int, external_key: str) -> dict | None:
        with self._lock:
            group_id = self._group_keys.get((container_id, external_key))
            return self.get_group(group_id) if group_id is not None else None

    def create_group(self, record: dict) -> int:
        with self._lock:
            index_key = (record["container_id"], record.get("external_key") or "")
            if index_key[1] and index_key in self._group_keys:
                raise DuplicateExternalKey(f"Group key '{index_key[1]}' already exists in container {index_key[0]}")
            now = int(time.time())
            group_id = self._next_group_id
            self._next_group_id += 1
            self._groups[group_id] = {"created_at": now, "modified_at": now} | dict(record, id=group_id)
            self._group_members[group_id] = set()
            if index_key[1]:
                self._group_keys[index_key] = group_id
            return group_id

    def update_group(self, group_id: int, changes: dict) -> None:
        with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise NotFound(f"Group {group_id} not found")
            if "external_key" in changes and changes["external_key"] != group.get("external_key"):
                new_key = (group["container_id"], changes["external_key"] or "")
                if new_key[1] and new_key in self._group_keys:
                    raise DuplicateExternalKey(f"Group key '{new_key[1]}' already exists in container {new_key[0]}")
                self._group_keys.pop((group["container_id"], group.get("external_key") or ""), None)
                if new_key[1]:
                    self._group_keys[new_key] = group_id
            group.update(changes)
            group["modified_at"] = int(time.time())

    def delete_group(self, group_id: int) -> None:
        with self._lock:
            group = self._groups.pop(group_id, None)
            if group is None:
                return
            self._group_keys.pop((group["container_id"], group.get("external_key") or ""), None)
            self._group_members.pop(group_id, None)

    def list_members(self, group_id: int) -> set[int]:
        with self._lock:
            return set(self._group_members.get(group_id, set()))

    def add_member(self, group_id: int, member_id: int, component: str | None = None) -> bool:
        with self._lock:
            if group_id not in self._groups:
                raise NotFound(f"Group {group_id} not found")
            members = self._group_members.setdefault(group_id, set())
            if member_id in members:
                return False
            members.add(member_id)
            self.membership_log.append(MembershipChange("add", group_id, member_id, component))
            return True

    def remove_member(self, group_id: int, member_id: int, component: str | None = None) -> bool:
        with self._lock:
            members = self._group_members.get(group_id, set())
            if member_id not in members:
                return False
            members.discard(member_id)
            self.membership_log.append(MembershipChange("remove", group_id, member_id, component))
            return True

    # --- Members ---

    def get_member(self, member_id: int) -> dict | None:
        with self._lock:
            record = self._members.get(member_id)
            return copy.deepcopy(record) if record else None

    def get_member_roles(self, member_id: int, container_id: int) -> set[int]:
        with self._lock:
            return set(self._role_assignments.get((member_id, container_id), set()))

    def list_container_members(self, container_id: int) -> list[int]:
        with self._lock:
            return sorted(
                m for m in self._enrolments.get(container_id, set()) if not self._members.get(m, {}).get("deleted", False)
            )

    def list_member_containers(self, member_id: int) -> list[int]:
        with self._lock:
            return sorted(c for c, members in self._enrolments.items() if member_id in members)

    def list_custom_fields(self) -> dict[str, str]:
        with self._lock:
            return dict(self._custom_fields)

    # --- Manual overrides ---

    def has_override(self, member_id: int, group_id: int) -> bool:
        with self._lock:
            return (member_id, group_id) in self._overrides

    def add_override(self, member_id: int, group_id: int) -> None:
        with self._lock:
            self._overrides.add((member_id, group_id))

    def remove_override(self, member_id: int, group_id: int) -> None:
        with self._lock:
            self._overrides.discard((member_id, group_id))

    def remove_group_overrides(self, group_id: int) -> None:
        with self._lock:
            self._overrides = {pair for pair in self._overrides if pair[1] != group_id}
