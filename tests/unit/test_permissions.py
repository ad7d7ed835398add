"""
Unit Tests: Section Targets, Permissions and Typed Errors
========================================================
"""

import pytest

from core.exceptions import AuthorizationError, InvalidTransitionError, ValidationError
from core.identity import CallerIdentity
from services.collaboration import Capability, SectionPermission, SectionTarget
from services.collaboration.permissions import CAPABILITY_GRANTS, permission_flags


@pytest.mark.unit
class TestSectionTarget:

    def test_proposal_target(self):
        target = SectionTarget.for_proposal("p1", "s1")
        assert not target.is_uploaded
        assert target.root_id == "p1"
        assert target.section_ref == "s1"
        assert target.to_dict() == {"proposal_id": "p1", "section_id": "s1"}

    def test_uploaded_target(self):
        target = SectionTarget.for_uploaded("u1", "scope")
        assert target.is_uploaded
        assert target.root_id == "u1"
        assert target.section_ref == "scope"

    @pytest.mark.parametrize("kwargs", [
        {},
        {"proposal_id": "p1"},
        {"proposal_id": "p1", "section_id": "s1", "uploaded_tender_id": "u1", "section_key": "k"},
    ])
    def test_target_needs_exactly_one_kind(self, kwargs):
        with pytest.raises(ValidationError):
            SectionTarget(**kwargs)


@pytest.mark.unit
class TestPermissions:

    @pytest.mark.parametrize("value", ["EDIT", "READ_AND_COMMENT"])
    def test_assignable_permissions(self, value):
        assert SectionPermission.assignable(value).value == value

    @pytest.mark.parametrize("value", ["NONE", "OWNER", "", None])
    def test_non_assignable_permissions(self, value):
        with pytest.raises(ValidationError):
            SectionPermission.assignable(value)

    def test_capability_grants(self):
        assert SectionPermission.READ_AND_COMMENT in CAPABILITY_GRANTS[Capability.COMMENT_SECTION]
        assert SectionPermission.READ_AND_COMMENT not in CAPABILITY_GRANTS[Capability.EDIT_SECTION]
        assert all(SectionPermission.NONE not in grants for grants in CAPABILITY_GRANTS.values())

    def test_flags(self):
        assert permission_flags(SectionPermission.EDIT) == {"can_edit": True, "can_comment": True}
        assert permission_flags(SectionPermission.READ_AND_COMMENT) == {"can_edit": False, "can_comment": True}
        assert permission_flags(SectionPermission.NONE) == {"can_edit": False, "can_comment": False}


@pytest.mark.unit
class TestErrorsAndIdentity:

    def test_validation_error_carries_incomplete_sections(self):
        error = ValidationError("incomplete", incomplete_sections=["s1", "s3"])
        assert error.incomplete_sections == ["s1", "s3"]
        assert error.to_dict() == {
            "detail": "incomplete",
            "code": "validation_error",
            "incomplete_sections": ["s1", "s3"],
        }

    def test_invalid_transition_error_payload(self):
        payload = InvalidTransitionError("nope", current="PUBLISHED", target="PUBLISHED").to_dict()
        assert payload["code"] == "invalid_transition"
        assert payload["current_status"] == "PUBLISHED"

    def test_authorization_error_code(self):
        assert AuthorizationError("denied").to_dict()["code"] == "forbidden"

    def test_identity_roles(self):
        authority = CallerIdentity(user_id="u", organization_id="o", role="AUTHORITY")
        assert authority.is_authority and not authority.is_bidder
        assert authority.to_dict() == {"user_id": "u", "organization_id": "o", "role": "AUTHORITY"}
