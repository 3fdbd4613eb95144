from __future__ import annotations

import os

from hostvol.domain import MountDescriptor
from hostvol.errors import InvalidVolumeSpecError
from hostvol.models import PropagationMode


class MountBinder:
    """
    Builds bind-mount descriptors. No I/O: the lifecycle manager performs the
    mount syscall with what this returns.
    """

    def bind(self, host_path: str, target: str, propagation: PropagationMode, read_only: bool) -> MountDescriptor:
        if not os.path.isabs(host_path) or not os.path.isabs(target):
            raise InvalidVolumeSpecError(
                f"bind source and target must be absolute: {host_path} -> {target}"
            )
        if not isinstance(read_only, bool):
            raise InvalidVolumeSpecError("read_only must be a boolean")
        try:
            mode = PropagationMode(propagation)
        except ValueError as exc:
            raise InvalidVolumeSpecError(str(exc)) from exc

        return MountDescriptor(source=host_path, target=target, propagation=mode, read_only=read_only)
