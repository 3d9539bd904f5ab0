from typing import Any

from pydantic import Field, ValidationError

import group_key
from errors import Err, InvalidGroupArgument, InvalidRuleSetArgument, Ok, Result

from .model import BaseModel


class Group(BaseModel):
    id: int = Field(ge=0)
    container_id: int = Field(gt=0)
    external_key: str
    name: str = Field(min_length=1)
    description: str = ""
    created_at: int = 0
    modified_at: int = 0
    members: frozenset[int] = Field(default_factory=frozenset)

    @property
    def is_managed(self) -> bool:
        return group_key.is_managed(self.external_key)

    def owned_by(self, ruleset_id: int) -> bool:
        return group_key.belongs_to(self.external_key, ruleset_id)

    def has_member(self, member_id: int) -> bool:
        return member_id in self.members

    @staticmethod
    def from_record(record: Any, members: frozenset[int] | None = None) -> Result["Group"]:
        """Build a managed Group from a stored group row.

        Rows that are not dicts, miss required fields or whose external key
        lacks the managed namespace are returned as ``Err(InvalidGroupArgument)``.
        """
        if not isinstance(record, dict):
            return Err(InvalidGroupArgument(f"Group record must be a mapping, got {type(record).__name__}"))
        if not group_key.is_managed(record.get("external_key")):
            return Err(InvalidGroupArgument(f"Group {record.get('id')} is not a managed group"))
        data = dict(record)
        if members is not None:
            data["members"] = members
        try:
            return Ok(Group.model_validate(data))
        except ValidationError as e:
            return Err(InvalidGroupArgument(f"Invalid group record {record.get('id')}: {e}"))


class RuleSetRecord(BaseModel):
    """Shape of a persisted RuleSet row."""

    id: int = Field(ge=0)
    container_id: int = Field(gt=0)
    strategy_variant: str | None = None
    strategy_config: str | dict | None = None
    custom_group_name: str | None = None
    created_at: int = 0
    modified_at: int = 0

    @staticmethod
    def from_record(record: Any) -> Result["RuleSetRecord"]:
        if not isinstance(record, dict):
            return Err(InvalidRuleSetArgument(f"RuleSet record must be a mapping, got {type(record).__name__}"))
        try:
            return Ok(RuleSetRecord.model_validate(record))
        except ValidationError as e:
            return Err(InvalidRuleSetArgument(f"Invalid ruleset record {record.get('id')}: {e}"))
