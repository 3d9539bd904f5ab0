from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class AutogroupError(Exception):
    ...


class InvalidRuleSetArgument(AutogroupError):
    ...


class InvalidGroupArgument(AutogroupError):
    ...


class InvalidMemberArgument(AutogroupError):
    ...


class InvalidContainerArgument(AutogroupError):
    ...


class GroupCreateFailed(AutogroupError):
    ...


class ConfigInvalid(AutogroupError):
    ...


class StoreError(AutogroupError):
    ...


class DuplicateExternalKey(StoreError):
    """The store already holds a group with this external key in the container."""


class NotFound(StoreError):
    ...


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: AutogroupError

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


def unwrap(result: "Result[T]") -> T:
    """Return the value of an Ok, raise the carried error of an Err."""
    if isinstance(result, Err):
        raise result.error
    return result.value
