import dataclasses
import enum

from pydantic import BaseModel as PydanticBaseModel
from pydantic import ConfigDict


class BaseModel(PydanticBaseModel):
    model_config = ConfigDict(frozen=True)

    def dict(self, *args, **kwargs) -> dict:  # noqa: ANN101, ANN003, ANN002, ARG002
        """JSON-friendly dict: sets become lists, enums become their values."""
        return self.model_dump(mode="json")


def json_default(o: object) -> str | dict | list:
    if isinstance(o, PydanticBaseModel):
        return o.model_dump(mode="json")
    elif dataclasses.is_dataclass(o) and not isinstance(o, type):
        return dataclasses.asdict(o)
    elif isinstance(o, enum.Enum):
        return o.value
    elif isinstance(o, (set, frozenset)):
        return sorted(o, key=str)
    return str(o)
