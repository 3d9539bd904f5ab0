import os
from typing import Literal, Optional

from aws_lambda_powertools import Logger
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

import entities


def get_logger(service: Optional[str] = None, level: Optional[str] = None) -> Logger:
    kwargs = {
        "json_default": entities.json_default,
        "level": level or os.environ.get("LOG_LEVEL", "INFO"),
    }
    if service:
        kwargs["service"] = service
    return Logger(**kwargs)


logger = get_logger(service="config")

# Role id of the "student" archetype, eligible by default.
DEFAULT_STUDENT_ROLE_ID = 5


class Config(BaseSettings):
    model_config = SettingsConfigDict(frozen=True, env_prefix="autogroup_")

    log_level: str = "INFO"

    preserve_manual: bool = True
    default_eligible_roles: frozenset[int] = frozenset({DEFAULT_STUDENT_ROLE_ID})
    default_strategy: str = "profile_field"
    default_group_by: str = "department"

    listen_for_role_changes: bool = True
    listen_for_user_profile_changes: bool = True
    listen_for_user_position_changes: bool = True
    listen_for_group_changes: bool = False
    listen_for_group_membership: bool = False

    add_to_new_courses: bool = False
    add_to_restored_courses: bool = False

    store_backend: Literal["memory", "dynamodb"] = "memory"
    rulesets_table_name: str = "autogroup-rulesets"
    groups_table_name: str = "autogroup-groups"
    group_keys_table_name: str = "autogroup-group-keys"
    group_members_table_name: str = "autogroup-group-members"
    members_table_name: str = "autogroup-members"
    overrides_table_name: str = "autogroup-manual-overrides"

    @field_validator("default_eligible_roles", mode="before")
    @classmethod
    def parse_roles(cls, v: object) -> object:
        # A bare "5" or 5 from the environment means a single role.
        if isinstance(v, (int, str)) and not isinstance(v, bool):
            return frozenset({int(v)})
        return v


_config: Optional[Config] = None


def get_config() -> Config:
    global _config  # noqa: PLW0603
    if _config is None:
        _config = Config()  # type: ignore # noqa: PGH003
        logger.debug("Loaded autogroup configuration", extra={"config": _config})
    return _config
