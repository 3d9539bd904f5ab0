"""Trigger events and their routing to the autogroup entry points.

Events carry an optional ``component`` origin tag. Mutations made by the
engine itself are tagged ``local_autogroup``; events with that tag are
ignored so the engine never reacts to its own changes and never records
its own additions as manual memberships.
"""

from typing import Literal, Union

from pydantic import RootModel, ValidationError

from config import Config, get_config, get_logger
from entities import BaseModel
from registry import ORIGIN_COMPONENT
from service import AutogroupService, create_service

logger = get_logger(service="events")


class BaseEvent(BaseModel):
    component: str | None = None

    def triggered_by_autogroup(self) -> bool:
        return bool(self.component) and "autogroup" in self.component  # type: ignore[operator]


class UserEnrolmentCreated(BaseEvent):
    event: Literal["user_enrolment_created"]
    member_id: int
    container_id: int


class RoleChanged(BaseEvent):
    event: Literal["role_assigned", "role_unassigned"]
    member_id: int
    container_id: int | None = None


class RoleDeleted(BaseEvent):
    event: Literal["role_deleted"]
    role_id: int


class UserUpdated(BaseEvent):
    event: Literal["user_updated", "position_updated"]
    member_id: int


class GroupMemberAdded(BaseEvent):
    event: Literal["group_member_added"]
    member_id: int
    group_id: int
    container_id: int


class GroupMemberRemoved(BaseEvent):
    event: Literal["group_member_removed"]
    member_id: int
    group_id: int
    container_id: int


class GroupCreated(BaseEvent):
    event: Literal["group_created"]
    group_id: int
    container_id: int


class GroupChanged(BaseEvent):
    event: Literal["group_updated", "group_deleted"]
    group_id: int
    container_id: int


class CourseAdded(BaseEvent):
    event: Literal["course_created", "course_restored"]
    container_id: int


Event = RootModel[
    Union[
        UserEnrolmentCreated,
        RoleChanged,
        RoleDeleted,
        UserUpdated,
        GroupMemberAdded,
        GroupMemberRemoved,
        GroupCreated,
        GroupChanged,
        CourseAdded,
    ]
]


def _on_group_member_added(event: GroupMemberAdded, service: AutogroupService, cfg: Config) -> bool:
    if service.is_valid_managed_group(event.group_id):
        service.ledger.record(event.member_id, event.group_id)
    if not cfg.listen_for_group_membership:
        return False
    return service.reconcile_member(event.member_id, event.container_id)


def _on_group_member_removed(event: GroupMemberRemoved, service: AutogroupService, cfg: Config) -> bool:
    service.ledger.forget(event.member_id, event.group_id)
    if not cfg.listen_for_group_membership:
        return False
    return service.reconcile_member(event.member_id, event.container_id)


def _on_group_changed(event: GroupChanged, service: AutogroupService, cfg: Config) -> bool:
    if event.event == "group_deleted":
        service.ledger.forget_group(event.group_id)
    if not cfg.listen_for_group_changes:
        return False
    if service.store.get_group(event.group_id) is not None:
        service.verify_group_key(event.group_id)
    return service.reconcile_all_members(event.container_id)


def handle_event(event: BaseEvent, service: AutogroupService, cfg: Config) -> bool:  # noqa: PLR0911
    """Route a parsed event to the matching entry point.

    Returns:
        True if the event led to a successful operation, False if it was
        ignored or the operation failed.
    """
    if event.triggered_by_autogroup() and not isinstance(event, (RoleDeleted, CourseAdded)):
        logger.debug(f"Ignoring self-originated event from component '{event.component}'")
        return False

    match event:
        case UserEnrolmentCreated():
            if not cfg.listen_for_role_changes:
                return False
            return service.reconcile_member(event.member_id, event.container_id)

        case RoleChanged():
            if not cfg.listen_for_role_changes:
                return False
            return service.reconcile_member(event.member_id, event.container_id)

        case RoleDeleted():
            service.role_deleted(event.role_id)
            return True

        case UserUpdated():
            if event.event == "position_updated":
                enabled = cfg.listen_for_user_position_changes
            else:
                enabled = cfg.listen_for_user_profile_changes
            if not enabled:
                return False
            return service.reconcile_member(event.member_id)

        case GroupMemberAdded():
            return _on_group_member_added(event, service, cfg)

        case GroupMemberRemoved():
            return _on_group_member_removed(event, service, cfg)

        case GroupCreated():
            if not cfg.listen_for_group_changes:
                return False
            service.verify_group_key(event.group_id)
            return True

        case GroupChanged():
            return _on_group_changed(event, service, cfg)

        case CourseAdded():
            enabled = cfg.add_to_new_courses if event.event == "course_created" else cfg.add_to_restored_courses
            if not enabled:
                return False
            service.add_default_ruleset(event.container_id)
            return True

    logger.warning("Unhandled event", extra={"event": event})
    return False


_service: AutogroupService | None = None


def lambda_handler(event: dict, __) -> dict:  # type: ignore # noqa: ANN001, PGH003
    global _service  # noqa: PLW0603
    try:
        parsed_event = Event.model_validate(event).root
    except ValidationError as e:
        logger.warning("Got unexpected event:", extra={"event": event, "exception": e})
        raise e

    cfg = get_config()
    if _service is None:
        _service = create_service(cfg)
    logger.info(f"Handling {parsed_event.event} event", extra={"event": parsed_event})
    handled = handle_event(parsed_event, _service, cfg)
    return {"event": parsed_event.event, "handled": handled}


__all__ = [
    "ORIGIN_COMPONENT",
    "BaseEvent",
    "CourseAdded",
    "Event",
    "GroupChanged",
    "GroupCreated",
    "GroupMemberAdded",
    "GroupMemberRemoved",
    "RoleChanged",
    "RoleDeleted",
    "UserEnrolmentCreated",
    "UserUpdated",
    "handle_event",
    "lambda_handler",
]
