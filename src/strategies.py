"""Classification strategies that turn member attributes into candidate keys.

Each strategy variant has its own typed configuration model. The mapping
from a variant tag to its configuration model and strategy class is a
static registry; nothing is loaded by name at runtime.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, ClassVar, Mapping

from pydantic import Field, ValidationError, field_validator

from attributes import STANDARD_FIELDS, AttributeSnapshot
from config import get_logger
from entities import BaseModel
from errors import ConfigInvalid

logger = get_logger(service="strategies")


class StrategyVariant(str, Enum):
    PROFILE_FIELD = "profile_field"
    USER_INFO_FIELD = "user_info_field"
    USER_INFO_FIELD_MULTIVALUE = "user_info_field_multivalue"


DEFAULT_VARIANT = StrategyVariant.PROFILE_FIELD

DELIMITER_OPTIONS = (",", ";", "|", "/", "\n")


def _dedupe(keys: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for key in keys:
        if key not in seen:
            seen.add(key)
            result.append(key)
    return result


class StrategyConfig(BaseModel):
    """Fields shared by every variant's configuration."""

    field: str = Field(min_length=1)
    filter_value: str | None = None

    @field_validator("field")
    @classmethod
    def strip_field(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("field must not be blank")
        return v


class ProfileFieldConfig(StrategyConfig):
    @field_validator("field")
    @classmethod
    def known_standard_field(cls, v: str) -> str:
        if v not in STANDARD_FIELDS:
            raise ValueError(f"unknown profile field '{v}', expected one of {STANDARD_FIELDS}")
        return v


class UserInfoFieldConfig(StrategyConfig):
    ...


class MultiValueFieldConfig(StrategyConfig):
    delimiter: str = ","

    @field_validator("delimiter")
    @classmethod
    def known_delimiter(cls, v: str) -> str:
        if v not in DELIMITER_OPTIONS:
            raise ValueError(f"unsupported delimiter {v!r}")
        return v


class ClassificationStrategy(ABC):
    variant: ClassVar[StrategyVariant]
    config_model: ClassVar[type[StrategyConfig]]

    def __init__(self, config: StrategyConfig | None = None) -> None:
        self._config = config

    def __repr__(self) -> str:
        return f"{type(self).__name__}(field={self.grouping_by()!r})"

    @property
    def config(self) -> StrategyConfig | None:
        return self._config

    @abstractmethod
    def candidate_keys(self, snapshot: AttributeSnapshot) -> list[str]:
        ...

    @abstractmethod
    def config_options(self, catalog: Mapping[str, str]) -> dict[str, str]:
        """Choices for the ``field`` setting, keyed by field name."""

    def delimiter_options(self) -> dict[str, str]:
        return {}

    def delimited_by(self) -> str | None:
        return None

    def grouping_by(self) -> str | None:
        return self._config.field if self._config else None

    @classmethod
    def parse_config(cls, config: Mapping[str, Any] | StrategyConfig | None) -> StrategyConfig:
        """Validate a raw configuration payload into this variant's model.

        Raises:
            ConfigInvalid: If the payload is missing required settings or has invalid values.
        """
        if isinstance(config, cls.config_model):
            return config
        if isinstance(config, StrategyConfig):
            config = config.model_dump()
        if not isinstance(config, Mapping):
            raise ConfigInvalid(f"{cls.variant.value} configuration must be a mapping")
        try:
            return cls.config_model.model_validate(dict(config))
        except ValidationError as e:
            raise ConfigInvalid(f"Invalid {cls.variant.value} configuration: {e}") from e

    @classmethod
    def is_config_valid(cls, config: Mapping[str, Any] | StrategyConfig | None) -> bool:
        try:
            cls.parse_config(config)
        except ConfigInvalid:
            return False
        return True


class ProfileFieldStrategy(ClassificationStrategy):
    variant = StrategyVariant.PROFILE_FIELD
    config_model = ProfileFieldConfig

    def candidate_keys(self, snapshot: AttributeSnapshot) -> list[str]:
        field = self.grouping_by()
        if not field:
            return []
        value = snapshot.standard_value(field)
        return [value] if value and value.strip() else []

    def config_options(self, catalog: Mapping[str, str]) -> dict[str, str]:  # noqa: ARG002
        return {name: name.capitalize() for name in STANDARD_FIELDS}


class UserInfoFieldStrategy(ClassificationStrategy):
    variant = StrategyVariant.USER_INFO_FIELD
    config_model = UserInfoFieldConfig

    def candidate_keys(self, snapshot: AttributeSnapshot) -> list[str]:
        field = self.grouping_by()
        if not field:
            return []
        value = snapshot.custom_value(field)
        return [value] if value and value.strip() else []

    def config_options(self, catalog: Mapping[str, str]) -> dict[str, str]:
        return dict(catalog)


class MultiValueFieldStrategy(UserInfoFieldStrategy):
    variant = StrategyVariant.USER_INFO_FIELD_MULTIVALUE
    config_model = MultiValueFieldConfig

    def candidate_keys(self, snapshot: AttributeSnapshot) -> list[str]:
        field = self.grouping_by()
        if not field:
            return []
        value = snapshot.custom_value(field)
        if not value:
            return []
        parts = [part.strip() for part in value.split(self.delimited_by() or ",")]
        return _dedupe([part for part in parts if part])

    def delimiter_options(self) -> dict[str, str]:
        return {d: d for d in DELIMITER_OPTIONS}

    def delimited_by(self) -> str | None:
        if isinstance(self._config, MultiValueFieldConfig):
            return self._config.delimiter
        return None


STRATEGY_REGISTRY: dict[StrategyVariant, type[ClassificationStrategy]] = {
    StrategyVariant.PROFILE_FIELD: ProfileFieldStrategy,
    StrategyVariant.USER_INFO_FIELD: UserInfoFieldStrategy,
    StrategyVariant.USER_INFO_FIELD_MULTIVALUE: MultiValueFieldStrategy,
}


def parse_variant(tag: str | StrategyVariant) -> StrategyVariant:
    """Resolve a variant tag strictly.

    Raises:
        ConfigInvalid: If the tag names no registered strategy.
    """
    try:
        return StrategyVariant(tag)
    except ValueError as e:
        raise ConfigInvalid(f"Unknown strategy variant '{tag}'") from e


def resolve_variant(tag: str | StrategyVariant | None) -> tuple[StrategyVariant, bool]:
    """Resolve a stored variant tag, falling back to the default.

    Returns:
        Tuple of (variant, fell_back). ``fell_back`` is True when the tag was
        missing or unknown and the default variant was substituted.
    """
    if tag is None or tag == "":
        logger.warning(f"Missing strategy variant, using default '{DEFAULT_VARIANT.value}'")
        return DEFAULT_VARIANT, True
    try:
        return parse_variant(tag), False
    except ConfigInvalid:
        logger.warning(f"Unknown strategy variant '{tag}', using default '{DEFAULT_VARIANT.value}'")
        return DEFAULT_VARIANT, True


def build_strategy(variant: StrategyVariant, config: StrategyConfig | None = None) -> ClassificationStrategy:
    return STRATEGY_REGISTRY[variant](config)
