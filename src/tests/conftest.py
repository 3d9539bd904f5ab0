import json
import os

import boto3
import pytest

import config
from service import AutogroupService
from store import InMemoryStore

STUDENT_ROLE = 5
INSTRUCTOR_ROLE = 3


def pytest_sessionstart(session):  # noqa: ANN201, ARG001, ANN001
    mock_env = {
        "LOG_LEVEL": "DEBUG",
        "AUTOGROUP_PRESERVE_MANUAL": "true",
        "AUTOGROUP_DEFAULT_ELIGIBLE_ROLES": json.dumps([STUDENT_ROLE]),
        "AUTOGROUP_DEFAULT_STRATEGY": "profile_field",
        "AUTOGROUP_DEFAULT_GROUP_BY": "department",
        "AUTOGROUP_STORE_BACKEND": "memory",
    }
    os.environ |= mock_env

    boto3.setup_default_session(region_name="us-east-1")


@pytest.fixture
def cfg() -> config.Config:
    return config.Config()  # type: ignore # noqa: PGH003


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def service(store: InMemoryStore, cfg: config.Config) -> AutogroupService:
    return AutogroupService(store, cfg)


@pytest.fixture
def student(store: InMemoryStore):  # noqa: ANN201
    """Member 42 of container 1, a student in the Engineering department."""
    store.put_member({"id": 42, "department": "Engineering", "city": "Perth"})
    store.enrol(42, 1)
    store.assign_role(42, 1, STUDENT_ROLE)
    return 42
