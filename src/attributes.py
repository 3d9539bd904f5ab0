"""Read-only snapshot of the attributes a member can be classified by.

The snapshot is assembled from the raw member record a store returns:
standard profile fields live at the top level of the record and custom
profile fields are nested under ``profile_field`` keyed by short name.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from config import get_logger
from errors import Err, InvalidMemberArgument, Ok, Result

logger = get_logger(service="attributes")

STANDARD_FIELDS = ("auth", "city", "department", "institution", "lang")

CUSTOM_FIELDS_KEY = "profile_field"


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def _extract_fields(source: Mapping[str, Any], names: tuple[str, ...] | None = None) -> dict[str, str]:
    """Copy the string-convertible, non-empty values of ``source``."""
    target: dict[str, str] = {}
    for name, value in source.items():
        if names is not None and name not in names:
            continue
        text = _as_text(value)
        if text is not None and text != "":
            target[name] = text
    return target


@dataclass(frozen=True)
class AttributeSnapshot:
    """Attributes of one member at one point in time.

    Attributes:
        member_id: The member the attributes belong to.
        standard: Standard profile fields (see ``STANDARD_FIELDS``).
        custom: Custom profile fields keyed by short name.
    """

    member_id: int
    standard: Mapping[str, str] = field(default_factory=dict)
    custom: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "standard", MappingProxyType(dict(self.standard)))
        object.__setattr__(self, "custom", MappingProxyType(dict(self.custom)))

    def standard_value(self, name: str) -> str | None:
        return self.standard.get(name)

    def custom_value(self, shortname: str) -> str | None:
        return self.custom.get(shortname)

    @staticmethod
    def from_record(record: Any) -> Result["AttributeSnapshot"]:
        """Build a snapshot from a raw member record.

        Returns ``Err(InvalidMemberArgument)`` for records without a
        positive integer ``id``.
        """
        if not isinstance(record, Mapping):
            return Err(InvalidMemberArgument(f"Member record must be a mapping, got {type(record).__name__}"))
        raw_id = record.get("id")
        if isinstance(raw_id, bool) or not isinstance(raw_id, int) or raw_id <= 0:
            return Err(InvalidMemberArgument(f"Invalid member id: {raw_id!r}"))

        custom_source = record.get(CUSTOM_FIELDS_KEY) or {}
        if not isinstance(custom_source, Mapping):
            logger.warning(f"Ignoring malformed custom fields for member {raw_id}")
            custom_source = {}

        return Ok(
            AttributeSnapshot(
                member_id=raw_id,
                standard=_extract_fields(record, STANDARD_FIELDS),
                custom=_extract_fields(custom_source),
            )
        )
