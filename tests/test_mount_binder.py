"""Unit tests for mount descriptor construction and retry delays."""

import pytest

from hostvol.errors import InvalidVolumeSpecError
from hostvol.models import PropagationMode
from hostvol.services.mount_binder import MountBinder
from hostvol.services.retry_policy import ExponentialBackoff


@pytest.mark.parametrize(
    "propagation,flag",
    [
        (PropagationMode.NONE, "rprivate"),
        (PropagationMode.HOST_TO_CONTAINER, "rslave"),
        (PropagationMode.BIDIRECTIONAL, "rshared"),
    ],
)
def test_propagation_maps_to_mount_flag(propagation, flag) -> None:
    descriptor = MountBinder().bind("/data/a", "/var/data", propagation, False)

    assert descriptor.options == ["rbind", "rw", flag]


def test_read_only_descriptor() -> None:
    descriptor = MountBinder().bind("/data/a", "/var/data", PropagationMode.NONE, True)

    assert descriptor.read_only is True
    assert "ro" in descriptor.to_dict()["options"]
    assert descriptor.to_dict()["source"] == "/data/a"


def test_relative_target_rejected() -> None:
    with pytest.raises(InvalidVolumeSpecError):
        MountBinder().bind("/data/a", "var/data", PropagationMode.NONE, False)


def test_non_boolean_read_only_rejected() -> None:
    with pytest.raises(InvalidVolumeSpecError):
        MountBinder().bind("/data/a", "/var/data", PropagationMode.NONE, "yes")


def test_backoff_doubles_then_caps() -> None:
    backoff = ExponentialBackoff()

    delays = [backoff.delay(attempt) for attempt in range(1, 9)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]


def test_backoff_never_overflows() -> None:
    assert ExponentialBackoff().delay(10_000) == 30.0
