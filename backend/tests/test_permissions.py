"""역할 권한 테스트."""

import pytest

from app.core.exceptions import PermissionDeniedError
from app.core.permissions import Capability, Principal, Role, ROLE_CAPABILITIES


def test_roles_are_nested():
    assert ROLE_CAPABILITIES[Role.viewer] < ROLE_CAPABILITIES[Role.editor] < ROLE_CAPABILITIES[Role.admin]


def test_viewer_is_read_only():
    viewer = Principal(user_id=1, role=Role.viewer)
    assert viewer.can(Capability.video_read)
    for capability in (Capability.video_upload, Capability.video_edit, Capability.video_delete):
        with pytest.raises(PermissionDeniedError):
            viewer.require(capability)


def test_only_admin_crosses_ownership():
    editor = Principal(user_id=1, role=Role.editor)
    admin = Principal(user_id=2, role=Role.admin)
    assert not editor.can(Capability.video_read_any)
    assert not editor.can(Capability.queue_inspect)
    assert admin.can(Capability.video_modify_any)
    assert admin.can(Capability.user_manage)
