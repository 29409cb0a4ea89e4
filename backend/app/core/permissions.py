"""Role → capability mapping used to gate API operations."""

import enum
from dataclasses import dataclass

from app.core.exceptions import PermissionDeniedError


class Role(str, enum.Enum):
    viewer = "viewer"
    editor = "editor"
    admin = "admin"


class Capability(str, enum.Enum):
    video_read = "video:read"
    video_upload = "video:upload"
    video_edit = "video:edit"
    video_delete = "video:delete"
    # Cross-user access; without these a caller only sees its own videos
    video_read_any = "video:read_any"
    video_modify_any = "video:modify_any"
    user_manage = "user:manage"
    queue_inspect = "queue:inspect"


_VIEWER = frozenset({Capability.video_read})
_EDITOR = _VIEWER | {Capability.video_upload, Capability.video_edit, Capability.video_delete}
_ADMIN = _EDITOR | {
    Capability.video_read_any,
    Capability.video_modify_any,
    Capability.user_manage,
    Capability.queue_inspect,
}

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.viewer: _VIEWER,
    Role.editor: _EDITOR,
    Role.admin: _ADMIN,
}


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of a service operation."""

    user_id: int
    role: Role

    @property
    def capabilities(self) -> frozenset[Capability]:
        return ROLE_CAPABILITIES[self.role]

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability) -> None:
        if not self.can(capability):
            raise PermissionDeniedError(capability.value)
