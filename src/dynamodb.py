"""DynamoDB implementation of ``GroupStore``.

Tables (all keyed by numbers unless noted):

* rulesets: ``id``; eligible roles live on the item as ``role_ids``.
* groups: ``id``.
* group keys: ``group_key`` (string ``{container_id}#{external_key}``),
  the uniqueness index for managed keys. Written with a conditional put.
* group members: ``group_id`` + ``member_id``.
* members: ``id``; the member directory (profile fields, enrolments and
  per-container role ids) fed by other subsystems.
* manual overrides: ``member_id`` + ``group_id``.

Item ``id = 0`` of the rulesets, groups and members tables holds table
metadata: the id counter, and for members the custom field catalog.
"""

from __future__ import annotations

import time
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterator

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

import config
from errors import DuplicateExternalKey, NotFound, StoreError

if TYPE_CHECKING:
    from mypy_boto3_dynamodb.service_resource import Table

logger = config.get_logger(service="dynamodb")

META_ID = 0
CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"

# Longest a writer can take between claiming a key and writing its group row.
STALE_CLAIM_SECONDS = 900


def _from_dynamo(value: Any) -> Any:  # noqa: ANN401
    """Turn DynamoDB Decimals back into ints, recursively."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_from_dynamo(v) for v in value]
    if isinstance(value, set):
        return {_from_dynamo(v) for v in value}
    return value


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == CONDITIONAL_CHECK_FAILED


def _index_key(container_id: int, external_key: str) -> str:
    return f"{container_id}#{external_key}"


def _scan_all(table: Table, **kwargs: Any) -> Iterator[dict]:  # noqa: ANN401
    while True:
        page = table.scan(**kwargs)
        yield from page.get("Items", [])
        if "LastEvaluatedKey" not in page:
            return
        kwargs["ExclusiveStartKey"] = page["LastEvaluatedKey"]


def _query_all(table: Table, **kwargs: Any) -> Iterator[dict]:  # noqa: ANN401
    while True:
        page = table.query(**kwargs)
        yield from page.get("Items", [])
        if "LastEvaluatedKey" not in page:
            return
        kwargs["ExclusiveStartKey"] = page["LastEvaluatedKey"]


class DynamoDBStore:
    def __init__(  # noqa: PLR0913
        self,
        rulesets: Table,
        groups: Table,
        group_keys: Table,
        group_members: Table,
        members: Table,
        overrides: Table,
    ) -> None:
        self._rulesets = rulesets
        self._groups = groups
        self._group_keys = group_keys
        self._group_members = group_members
        self._members = members
        self._overrides = overrides

    @classmethod
    def from_config(cls, cfg: config.Config) -> DynamoDBStore:
        dynamodb = boto3.resource("dynamodb")
        return cls(
            rulesets=dynamodb.Table(cfg.rulesets_table_name),
            groups=dynamodb.Table(cfg.groups_table_name),
            group_keys=dynamodb.Table(cfg.group_keys_table_name),
            group_members=dynamodb.Table(cfg.group_members_table_name),
            members=dynamodb.Table(cfg.members_table_name),
            overrides=dynamodb.Table(cfg.overrides_table_name),
        )

    def _next_id(self, table: Table) -> int:
        response = table.update_item(
            Key={"id": META_ID},
            UpdateExpression="ADD next_id :one",
            ExpressionAttributeValues={":one": 1},
            ReturnValues="UPDATED_NEW",
        )
        return int(response["Attributes"]["next_id"])

    @staticmethod
    def _get(table: Table, key: dict) -> dict | None:
        item = table.get_item(Key=key).get("Item")
        return _from_dynamo(item) if item else None

    # --- RuleSets ---

    def get_ruleset(self, ruleset_id: int) -> dict | None:
        if ruleset_id == META_ID:
            return None
        item = self._get(self._rulesets, {"id": ruleset_id})
        if item is not None:
            item.pop("role_ids", None)
        return item

    def list_rulesets(self, container_id: int | None = None) -> list[dict]:
        kwargs: dict[str, Any] = {}
        if container_id is not None:
            kwargs["FilterExpression"] = Attr("container_id").eq(container_id)
        records = []
        for item in _scan_all(self._rulesets, **kwargs):
            record = _from_dynamo(item)
            if record.get("id") == META_ID:
                continue
            record.pop("role_ids", None)
            records.append(record)
        return sorted(records, key=lambda r: r["id"] if isinstance(r.get("id"), int) else 0)

    def insert_ruleset(self, record: dict) -> int:
        ruleset_id = self._next_id(self._rulesets)
        self._rulesets.put_item(Item=dict(record, id=ruleset_id, role_ids=[]))
        logger.debug(f"Inserted ruleset {ruleset_id}", extra={"table": self._rulesets.name})
        return ruleset_id

    def update_ruleset(self, record: dict) -> None:
        fields = {k: v for k, v in record.items() if k != "id"}
        names = {f"#{k}": k for k in fields}
        values = {f":{k}": v for k, v in fields.items()}
        try:
            self._rulesets.update_item(
                Key={"id": record["id"]},
                UpdateExpression="SET " + ", ".join(f"#{k} = :{k}" for k in fields),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ConditionExpression=Attr("id").exists(),
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise NotFound(f"RuleSet {record['id']} not found") from e
            raise StoreError(f"Failed to update ruleset {record['id']}: {e}") from e

    def delete_ruleset(self, ruleset_id: int) -> None:
        self._rulesets.delete_item(Key={"id": ruleset_id})

    def get_ruleset_roles(self, ruleset_id: int) -> set[int]:
        item = self._get(self._rulesets, {"id": ruleset_id})
        if item is None:
            return set()
        return {int(role) for role in item.get("role_ids") or []}

    def set_ruleset_roles(self, ruleset_id: int, role_ids: set[int]) -> None:
        self._rulesets.update_item(
            Key={"id": ruleset_id},
            UpdateExpression="SET role_ids = :roles",
            ExpressionAttributeValues={":roles": sorted(role_ids)},
        )

    def delete_role(self, role_id: int) -> int:
        affected = 0
        for item in _scan_all(self._rulesets, FilterExpression=Attr("role_ids").contains(role_id)):
            record = _from_dynamo(item)
            remaining = sorted(set(record.get("role_ids") or []) - {role_id})
            self.set_ruleset_roles(record["id"], set(remaining))
            affected += 1
        return affected

    # --- Groups ---

    def list_groups(self, container_id: int, key_prefix: str = "") -> list[dict]:
        condition = Attr("container_id").eq(container_id)
        if key_prefix:
            condition = condition & Attr("external_key").begins_with(key_prefix)
        records = [_from_dynamo(item) for item in _scan_all(self._groups, FilterExpression=condition)]
        return sorted((r for r in records if r.get("id") != META_ID), key=lambda r: r["id"])

    def get_group(self, group_id: int) -> dict | None:
        if group_id == META_ID:
            return None
        return self._get(self._groups, {"id": group_id})

    def get_group_by_key(self, container_id: int, external_key: str) -> dict | None:
        index = self._get(self._group_keys, {"group_key": _index_key(container_id, external_key)})
        if index is None:
            return None
        group = self.get_group(index["group_id"])
        # A stale index row may point at a missing group or one that no longer carries the key.
        if group is None or group.get("container_id") != container_id or group.get("external_key") != external_key:
            return None
        return group

    def _owns_key(self, group_id: int, container_id: int, external_key: str) -> bool:
        group = self.get_group(group_id)
        return group is not None and group.get("container_id") == container_id and group.get("external_key") == external_key

    def _claim_key(self, container_id: int, external_key: str, group_id: int) -> None:
        """Point the key index at ``group_id``.

        An index row left behind by a writer that died before writing its
        group row is taken over once it is older than ``STALE_CLAIM_SECONDS``.

        Raises:
            DuplicateExternalKey: If a live group holds the key, or another
                writer's claim is still within the grace period.
        """
        index_key = _index_key(container_id, external_key)
        now = int(time.time())
        item = {"group_key": index_key, "group_id": group_id, "claimed_at": now}
        try:
            self._group_keys.put_item(Item=item, ConditionExpression=Attr("group_key").not_exists())
            return
        except ClientError as e:
            if not _is_conditional_failure(e):
                raise StoreError(f"Failed to claim group key '{external_key}': {e}") from e

        duplicate = DuplicateExternalKey(f"Group key '{external_key}' already exists in container {container_id}")
        current = self._get(self._group_keys, {"group_key": index_key})
        if current is None or self._owns_key(current["group_id"], container_id, external_key):
            raise duplicate
        if now - int(current.get("claimed_at") or 0) < STALE_CLAIM_SECONDS:
            raise duplicate

        try:
            self._group_keys.put_item(Item=item, ConditionExpression=Attr("group_id").eq(current["group_id"]))
        except ClientError as e:
            if _is_conditional_failure(e):
                raise duplicate from e
            raise StoreError(f"Failed to claim group key '{external_key}': {e}") from e
        logger.warning(
            f"Took over stale claim on group key '{external_key}' from group {current['group_id']}",
            extra={"operation": "reclaim_group_key", "container_id": container_id, "group_id": group_id},
        )

    def _release_key(self, container_id: int, external_key: str) -> None:
        self._group_keys.delete_item(Key={"group_key": _index_key(container_id, external_key)})

    def create_group(self, record: dict) -> int:
        group_id = self._next_id(self._groups)
        external_key = record.get("external_key") or ""
        if external_key:
            self._claim_key(record["container_id"], external_key, group_id)
        now = int(time.time())
        try:
            self._groups.put_item(Item={"created_at": now, "modified_at": now} | dict(record, id=group_id))
        except ClientError as e:
            if external_key:
                self._release_key(record["container_id"], external_key)
            raise StoreError(f"Failed to create group '{external_key}': {e}") from e
        return group_id

    def update_group(self, group_id: int, changes: dict) -> None:
        group = self.get_group(group_id)
        if group is None:
            raise NotFound(f"Group {group_id} not found")
        old_key = group.get("external_key") or ""
        if "external_key" in changes and (changes["external_key"] or "") != old_key:
            new_key = changes["external_key"] or ""
            if new_key:
                self._claim_key(group["container_id"], new_key, group_id)
            if old_key:
                self._release_key(group["container_id"], old_key)
        self._groups.put_item(Item=group | changes | {"modified_at": int(time.time())})

    def delete_group(self, group_id: int) -> None:
        group = self.get_group(group_id)
        if group is None:
            return
        if group.get("external_key"):
            self._release_key(group["container_id"], group["external_key"])
        with self._group_members.batch_writer() as batch:
            for member_id in self.list_members(group_id):
                batch.delete_item(Key={"group_id": group_id, "member_id": member_id})
        self._groups.delete_item(Key={"id": group_id})

    def list_members(self, group_id: int) -> set[int]:
        items = _query_all(self._group_members, KeyConditionExpression=Key("group_id").eq(group_id))
        return {int(item["member_id"]) for item in items}

    def add_member(self, group_id: int, member_id: int, component: str | None = None) -> bool:
        try:
            self._group_members.put_item(
                Item={"group_id": group_id, "member_id": member_id, "component": component or ""},
                ConditionExpression=Attr("member_id").not_exists(),
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise StoreError(f"Failed to add member {member_id} to group {group_id}: {e}") from e
        return True

    def remove_member(self, group_id: int, member_id: int, component: str | None = None) -> bool:
        try:
            self._group_members.delete_item(
                Key={"group_id": group_id, "member_id": member_id},
                ConditionExpression=Attr("member_id").exists(),
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise StoreError(f"Failed to remove member {member_id} from group {group_id}: {e}") from e
        logger.debug(f"Removed member {member_id} from group {group_id}", extra={"component": component})
        return True

    # --- Members ---

    def get_member(self, member_id: int) -> dict | None:
        if member_id == META_ID:
            return None
        return self._get(self._members, {"id": member_id})

    def get_member_roles(self, member_id: int, container_id: int) -> set[int]:
        member = self.get_member(member_id)
        if member is None:
            return set()
        roles = (member.get("roles") or {}).get(str(container_id)) or []
        return {int(role) for role in roles}

    def list_container_members(self, container_id: int) -> list[int]:
        condition = Attr("containers").contains(container_id) & Attr("deleted").ne(True)
        return sorted(int(item["id"]) for item in _scan_all(self._members, FilterExpression=condition))

    def list_member_containers(self, member_id: int) -> list[int]:
        member = self.get_member(member_id)
        if member is None:
            return []
        return sorted(int(c) for c in member.get("containers") or [])

    def list_custom_fields(self) -> dict[str, str]:
        meta = self._get(self._members, {"id": META_ID})
        return dict((meta or {}).get("custom_fields") or {})

    # --- Manual overrides ---

    def has_override(self, member_id: int, group_id: int) -> bool:
        return self._get(self._overrides, {"member_id": member_id, "group_id": group_id}) is not None

    def add_override(self, member_id: int, group_id: int) -> None:
        self._overrides.put_item(Item={"member_id": member_id, "group_id": group_id})

    def remove_override(self, member_id: int, group_id: int) -> None:
        self._overrides.delete_item(Key={"member_id": member_id, "group_id": group_id})

    def remove_group_overrides(self, group_id: int) -> None:
        items = list(_scan_all(self._overrides, FilterExpression=Attr("group_id").eq(group_id)))
        with self._overrides.batch_writer() as batch:
            for item in items:
                batch.delete_item(Key={"member_id": item["member_id"], "group_id": item["group_id"]})
        logger.debug(f"Removed {len(items)} manual overrides of group {group_id}")
