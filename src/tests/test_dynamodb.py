import time
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from dynamodb import STALE_CLAIM_SECONDS, DynamoDBStore, _from_dynamo
from errors import DuplicateExternalKey, NotFound, StoreError
from store import GroupStore


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "PutItem")


@pytest.fixture
def tables() -> dict[str, MagicMock]:
    return {
        name: MagicMock(name=name)
        for name in ["rulesets", "groups", "group_keys", "group_members", "members", "overrides"]
    }


@pytest.fixture
def dynamo(tables: dict[str, MagicMock]) -> DynamoDBStore:
    return DynamoDBStore(**tables)


def test_satisfies_protocol(dynamo: DynamoDBStore):
    assert isinstance(dynamo, GroupStore)


def test_from_dynamo_converts_decimals():
    item = {"id": Decimal(3), "roles": {"1": [Decimal(5)]}, "ratio": Decimal("0.5"), "name": "x"}
    assert _from_dynamo(item) == {"id": 3, "roles": {"1": [5]}, "ratio": 0.5, "name": "x"}


def test_create_group_claims_key_first(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["groups"].update_item.return_value = {"Attributes": {"next_id": Decimal(12)}}
    group_id = dynamo.create_group({"container_id": 1, "external_key": "autogroup|7|Sales", "name": "Sales"})

    assert group_id == 12
    key_item = tables["group_keys"].put_item.call_args.kwargs["Item"]
    assert key_item == {"group_key": "1#autogroup|7|Sales", "group_id": 12}
    assert "ConditionExpression" in tables["group_keys"].put_item.call_args.kwargs
    group_item = tables["groups"].put_item.call_args.kwargs["Item"]
    assert group_item["id"] == 12
    assert group_item["external_key"] == "autogroup|7|Sales"


def test_create_group_with_taken_key(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["groups"].update_item.return_value = {"Attributes": {"next_id": Decimal(13)}}
    tables["groups"].get_item.return_value = {
        "Item": {"id": Decimal(12), "container_id": Decimal(1), "external_key": "autogroup|7|Sales", "name": "Sales"}
    }
    tables["group_keys"].get_item.return_value = {"Item": {"group_key": "1#autogroup|7|Sales", "group_id": Decimal(12)}}
    tables["group_keys"].put_item.side_effect = _client_error("ConditionalCheckFailedException")

    with pytest.raises(DuplicateExternalKey):
        dynamo.create_group({"container_id": 1, "external_key": "autogroup|7|Sales", "name": "Sales"})
    tables["groups"].put_item.assert_not_called()


def test_create_group_releases_key_when_insert_fails(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["groups"].update_item.return_value = {"Attributes": {"next_id": Decimal(14)}}
    tables["groups"].put_item.side_effect = _client_error("ProvisionedThroughputExceededException")

    with pytest.raises(StoreError):
        dynamo.create_group({"container_id": 1, "external_key": "autogroup|7|Sales", "name": "Sales"})
    tables["group_keys"].delete_item.assert_called_once_with(Key={"group_key": "1#autogroup|7|Sales"})


def test_get_group_by_key(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["group_keys"].get_item.return_value = {"Item": {"group_key": "1#k", "group_id": Decimal(4)}}
    tables["groups"].get_item.return_value = {"Item": {"id": Decimal(4), "container_id": Decimal(1), "external_key": "k", "name": "G"}}
    assert dynamo.get_group_by_key(1, "k") == {"id": 4, "container_id": 1, "external_key": "k", "name": "G"}

    tables["group_keys"].get_item.return_value = {}
    assert dynamo.get_group_by_key(1, "missing") is None


def test_add_and_remove_member(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    assert dynamo.add_member(4, 42, component="local_autogroup")
    tables["group_members"].put_item.side_effect = _client_error("ConditionalCheckFailedException")
    assert not dynamo.add_member(4, 42)

    assert dynamo.remove_member(4, 42)
    tables["group_members"].delete_item.side_effect = _client_error("ConditionalCheckFailedException")
    assert not dynamo.remove_member(4, 42)

    tables["group_members"].delete_item.side_effect = _client_error("InternalServerError")
    with pytest.raises(StoreError):
        dynamo.remove_member(4, 42)


def test_list_groups_paginates_and_skips_metadata(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["groups"].scan.side_effect = [
        {"Items": [{"id": Decimal(0), "next_id": Decimal(9)}], "LastEvaluatedKey": {"id": Decimal(0)}},
        {"Items": [{"id": Decimal(5), "container_id": Decimal(1), "external_key": "autogroup|7|a"}]},
    ]
    assert dynamo.list_groups(1, "autogroup|7|") == [{"id": 5, "container_id": 1, "external_key": "autogroup|7|a"}]
    assert tables["groups"].scan.call_args.kwargs["ExclusiveStartKey"] == {"id": Decimal(0)}


def test_update_ruleset_of_missing_row(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["rulesets"].update_item.side_effect = _client_error("ConditionalCheckFailedException")
    with pytest.raises(NotFound):
        dynamo.update_ruleset({"id": 3, "container_id": 1})


def test_ruleset_roles(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["rulesets"].get_item.return_value = {"Item": {"id": Decimal(3), "role_ids": [Decimal(0), Decimal(5)]}}
    assert dynamo.get_ruleset_roles(3) == {0, 5}
    assert "role_ids" not in dynamo.get_ruleset(3)  # type: ignore[operator]

    dynamo.set_ruleset_roles(3, {5, 0})
    assert tables["rulesets"].update_item.call_args.kwargs["ExpressionAttributeValues"] == {":roles": [0, 5]}


def test_member_roles(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["members"].get_item.return_value = {
        "Item": {"id": Decimal(42), "containers": [Decimal(1)], "roles": {"1": [Decimal(5)]}}
    }
    assert dynamo.get_member_roles(42, 1) == {5}
    assert dynamo.get_member_roles(42, 2) == set()
    assert dynamo.list_member_containers(42) == [1]


def test_update_group_moves_key(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["groups"].get_item.return_value = {
        "Item": {"id": Decimal(4), "container_id": Decimal(1), "external_key": "autogroup|7|a", "name": "A"}
    }
    dynamo.update_group(4, {"external_key": ""})
    tables["group_keys"].delete_item.assert_called_once_with(Key={"group_key": "1#autogroup|7|a"})
    tables["group_keys"].put_item.assert_not_called()
    assert tables["groups"].put_item.call_args.kwargs["Item"]["external_key"] == ""

    tables["groups"].get_item.return_value = {}
    with pytest.raises(NotFound):
        dynamo.update_group(4, {"name": "B"})


def _index_row(group_id: int, claimed_at: int) -> dict:
    return {"Item": {"group_key": "1#autogroup|7|Sales", "group_id": Decimal(group_id), "claimed_at": Decimal(claimed_at)}}


def test_key_claimed_by_missing_group_is_taken_over(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    # A writer claimed the key and died before writing its group row.
    tables["groups"].update_item.return_value = {"Attributes": {"next_id": Decimal(21)}}
    tables["groups"].get_item.return_value = {}
    tables["group_keys"].get_item.return_value = _index_row(20, int(time.time()) - STALE_CLAIM_SECONDS - 1)
    tables["group_keys"].put_item.side_effect = [_client_error("ConditionalCheckFailedException"), None]

    assert dynamo.get_group_by_key(1, "autogroup|7|Sales") is None
    group_id = dynamo.create_group({"container_id": 1, "external_key": "autogroup|7|Sales", "name": "Sales"})

    assert group_id == 21
    takeover = tables["group_keys"].put_item.call_args.kwargs
    assert takeover["Item"]["group_id"] == 21
    assert "ConditionExpression" in takeover
    assert tables["groups"].put_item.call_args.kwargs["Item"]["id"] == 21


def test_recent_claim_by_missing_group_is_respected(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["groups"].update_item.return_value = {"Attributes": {"next_id": Decimal(22)}}
    tables["groups"].get_item.return_value = {}
    tables["group_keys"].get_item.return_value = _index_row(20, int(time.time()))
    tables["group_keys"].put_item.side_effect = _client_error("ConditionalCheckFailedException")

    with pytest.raises(DuplicateExternalKey):
        dynamo.create_group({"container_id": 1, "external_key": "autogroup|7|Sales", "name": "Sales"})
    assert tables["group_keys"].put_item.call_count == 1
    tables["groups"].put_item.assert_not_called()


def test_key_held_by_live_group_is_never_taken_over(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["groups"].update_item.return_value = {"Attributes": {"next_id": Decimal(23)}}
    tables["groups"].get_item.return_value = {
        "Item": {"id": Decimal(20), "container_id": Decimal(1), "external_key": "autogroup|7|Sales", "name": "Sales"}
    }
    tables["group_keys"].get_item.return_value = _index_row(20, 0)
    tables["group_keys"].put_item.side_effect = _client_error("ConditionalCheckFailedException")

    with pytest.raises(DuplicateExternalKey):
        dynamo.create_group({"container_id": 1, "external_key": "autogroup|7|Sales", "name": "Sales"})
    assert tables["group_keys"].put_item.call_count == 1


def test_lost_takeover_race_is_a_duplicate(dynamo: DynamoDBStore, tables: dict[str, MagicMock]):
    tables["groups"].update_item.return_value = {"Attributes": {"next_id": Decimal(24)}}
    tables["groups"].get_item.return_value = {}
    tables["group_keys"].get_item.return_value = _index_row(20, 0)
    tables["group_keys"].put_item.side_effect = _client_error("ConditionalCheckFailedException")

    with pytest.raises(DuplicateExternalKey):
        dynamo.create_group({"container_id": 1, "external_key": "autogroup|7|Sales", "name": "Sales"})
    assert tables["group_keys"].put_item.call_count == 2
