from __future__ import annotations

import allure
import pytest

from edit_relay import errors
from edit_relay.errors import ErrorKind, RelayError

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("Error Taxonomy"),
]


def test_every_kind_has_exactly_one_exception_class() -> None:
    classes = [
        value
        for value in vars(errors).values()
        if isinstance(value, type) and issubclass(value, RelayError) and value is not RelayError
    ]

    assert sorted(cls.kind.value for cls in classes) == sorted(kind.value for kind in ErrorKind)


@pytest.mark.parametrize(
    ("error_cls", "kind"),
    [
        (errors.ClaimConflictError, "claim_conflict"),
        (errors.UnclaimedTimeoutError, "unclaimed_timeout"),
        (errors.LeaseLostError, "lease_lost"),
    ],
)
def test_error_carries_kind_and_detail(error_cls: type[RelayError], kind: str) -> None:
    error = error_cls("pair site1/alice", detail="owner=worker-2")

    assert error.kind.value == kind
    assert error.detail == "owner=worker-2"
    assert str(error) == "pair site1/alice"
