"""
Integration Tests: Section Collaboration
=======================================
Assignments, permission gating, delegated editing and comment threads for
both platform proposals and uploaded tenders.
"""

import pytest

from core.exceptions import AuthorizationError, NotFoundError, ValidationError
from database import ProposalSectionResponseDB, SectionActivityDB, UploadedCommentDB
from services.collaboration import CollaborationEngine, PermissionResolver, SectionPermission, SectionTarget


@pytest.fixture
def engine_(db):
    return CollaborationEngine(db)


@pytest.fixture
def s1_target(world):
    return SectionTarget.for_proposal(world.proposal.id, world.s1.id)


@pytest.fixture
def s2_target(world):
    return SectionTarget.for_proposal(world.proposal.id, world.s2.id)


@pytest.mark.integration
class TestAssignments:

    def test_owner_assigns_and_resolver_sees_it(self, engine_, db, world, s1_target):
        assignment = engine_.assign_section(s1_target, world.assister.user_id, "READ_AND_COMMENT", world.bidder)
        assert assignment["permission"] == "READ_AND_COMMENT"
        assert assignment["assigned_by"] == world.bidder.user_id

        resolver = PermissionResolver(db)
        assert resolver.resolve(world.assister.user_id, s1_target) is SectionPermission.READ_AND_COMMENT
        assert resolver.resolve(world.second_assister.user_id, s1_target) is SectionPermission.NONE

    def test_reassigning_replaces_permission(self, engine_, db, world, s1_target):
        engine_.assign_section(s1_target, world.assister.user_id, "READ_AND_COMMENT", world.bidder)
        engine_.assign_section(s1_target, world.assister.user_id, "EDIT", world.bidder)

        grouped = engine_.get_section_assignments(world.proposal.id, world.bidder)
        assert list(grouped) == [world.s1.id]
        assert [entry["permission"] for entry in grouped[world.s1.id]] == ["EDIT"]

    def test_permission_is_exact_match_per_section(self, engine_, db, world, s1_target, s2_target):
        engine_.assign_section(s1_target, world.assister.user_id, "EDIT", world.bidder)
        assert PermissionResolver(db).resolve(world.assister.user_id, s2_target) is SectionPermission.NONE

    def test_organization_membership_grants_nothing(self, db, world, s1_target):
        assert PermissionResolver(db).resolve(world.bidder.user_id, s1_target) is SectionPermission.NONE

    def test_only_owner_can_assign(self, engine_, world, s1_target):
        with pytest.raises(AuthorizationError):
            engine_.assign_section(s1_target, world.assister.user_id, "EDIT", world.rival)
        with pytest.raises(AuthorizationError):
            engine_.assign_section(s1_target, world.assister.user_id, "EDIT", world.assister)

    @pytest.mark.parametrize("permission", ["NONE", "ADMIN", None])
    def test_invalid_permission(self, engine_, world, s1_target, permission):
        with pytest.raises(ValidationError):
            engine_.assign_section(s1_target, world.assister.user_id, permission, world.bidder)

    def test_section_must_belong_to_tender(self, engine_, factory, world):
        foreign = factory.sections(factory.tender(world.authority_org))[0]
        target = SectionTarget.for_proposal(world.proposal.id, foreign.id)
        with pytest.raises(ValidationError):
            engine_.assign_section(target, world.assister.user_id, "EDIT", world.bidder)

    def test_unknown_assignee(self, engine_, world, s1_target):
        with pytest.raises(NotFoundError):
            engine_.assign_section(s1_target, "nobody", "EDIT", world.bidder)

    def test_unassign(self, engine_, db, world, s1_target):
        engine_.assign_section(s1_target, world.assister.user_id, "EDIT", world.bidder)
        engine_.unassign_section(s1_target, world.assister.user_id, world.bidder)

        assert PermissionResolver(db).resolve(world.assister.user_id, s1_target) is SectionPermission.NONE
        with pytest.raises(NotFoundError):
            engine_.unassign_section(s1_target, world.assister.user_id, world.bidder)

        activity = [entry["activity_type"] for entry in engine_.get_activity(world.proposal.id, world.bidder)]
        assert sorted(activity) == ["ASSIGN", "UNASSIGN"]

    def test_assignments_across_proposals_and_uploaded_tenders(self, engine_, factory, world, s1_target):
        uploaded = factory.uploaded_tender(world.bidder_org)
        engine_.assign_section(s1_target, world.assister.user_id, "EDIT", world.bidder)
        engine_.assign_section(
            SectionTarget.for_uploaded(uploaded.id, "scope"), world.assister.user_id, "READ_AND_COMMENT", world.bidder
        )

        result = engine_.list_assignments_for_user(world.assister.user_id)
        assert result["stats"] == {"total": 2, "can_edit": 1, "can_comment": 1}
        by_type = {entry["target_type"]: entry for entry in result["assignments"]}
        assert by_type["proposal"]["section_title"] == "Technical Approach"
        assert by_type["proposal"]["tender_title"] == world.tender.title
        assert by_type["uploaded_tender"]["section_title"] == "Scope of Work"

    def test_stats_count_each_assignment_once(self, engine_, world, s1_target, s2_target):
        engine_.assign_section(s1_target, world.assister.user_id, "EDIT", world.bidder)
        engine_.assign_section(s2_target, world.assister.user_id, "EDIT", world.bidder)

        stats = engine_.list_assignments_for_user(world.assister.user_id)["stats"]
        assert stats == {"total": 2, "can_edit": 2, "can_comment": 0}
        assert stats["can_edit"] + stats["can_comment"] == stats["total"]

    def test_user_without_assignments(self, engine_, world):
        assert engine_.list_assignments_for_user(world.second_assister.user_id) == {
            "assignments": [],
            "stats": {"total": 0, "can_edit": 0, "can_comment": 0},
        }


@pytest.mark.integration
class TestDelegatedEditing:

    def test_read_and_comment_can_view_and_comment_but_not_edit(self, engine_, world, s1_target):
        engine_.assign_section(s1_target, world.assister.user_id, "READ_AND_COMMENT", world.bidder)

        content = engine_.get_section_content(s1_target, world.assister)
        assert content["permission"] == "READ_AND_COMMENT"
        assert content["can_edit"] is False
        assert content["can_comment"] is True
        assert content["section_title"] == "Technical Approach"

        comment = engine_.add_comment(s1_target, "Please cite the standard", world.assister)
        assert comment["user_id"] == world.assister.user_id

        with pytest.raises(AuthorizationError):
            engine_.update_section_content(s1_target, "rewrite", world.assister)

    def test_edit_permission_updates_content(self, engine_, db, world, s1_target):
        engine_.assign_section(s1_target, world.assister.user_id, "EDIT", world.bidder)

        updated = engine_.update_section_content(s1_target, "Drafted by assister", world.assister)
        assert updated["content"] == "Drafted by assister"
        assert updated["last_edited_by"] == world.assister.user_id
        assert updated["can_edit"] is True

        row = db.query(ProposalSectionResponseDB).filter(
            ProposalSectionResponseDB.proposal_id == world.proposal.id,
            ProposalSectionResponseDB.section_id == world.s1.id,
        ).one()
        assert row.content == "Drafted by assister"

        edits = db.query(SectionActivityDB).filter(SectionActivityDB.activity_type == "EDIT").all()
        assert len(edits) == 1
        assert edits[0].activity_metadata == {"content_length": len("Drafted by assister")}

    def test_unassigned_user_is_denied_everything(self, engine_, world, s2_target):
        with pytest.raises(AuthorizationError):
            engine_.get_section_content(s2_target, world.assister)
        with pytest.raises(AuthorizationError):
            engine_.update_section_content(s2_target, "x", world.assister)
        with pytest.raises(AuthorizationError):
            engine_.add_comment(s2_target, "x", world.assister)

    def test_edit_is_refused_once_proposal_leaves_draft(self, engine_, db, world, s1_target):
        engine_.assign_section(s1_target, world.assister.user_id, "EDIT", world.bidder)
        world.proposal.status = "FINAL"
        db.commit()

        with pytest.raises(ValidationError):
            engine_.update_section_content(s1_target, "late", world.assister)

    def test_uploaded_tender_section(self, engine_, factory, world):
        uploaded = factory.uploaded_tender(world.bidder_org)
        target = SectionTarget.for_uploaded(uploaded.id, "eligibility")
        engine_.assign_section(target, world.assister.user_id, "EDIT", world.bidder)

        updated = engine_.update_section_content(target, "Eligibility notes", world.assister)
        assert updated["content"] == "Eligibility notes"
        assert updated["section_title"] == "Eligibility"
        assert updated["uploaded_tender_id"] == uploaded.id

    def test_uploaded_tender_unknown_section_key(self, engine_, factory, world):
        uploaded = factory.uploaded_tender(world.bidder_org)
        target = SectionTarget.for_uploaded(uploaded.id, "financials")
        with pytest.raises(ValidationError):
            engine_.assign_section(target, world.assister.user_id, "EDIT", world.bidder)


@pytest.mark.integration
class TestComments:

    @pytest.fixture
    def commenter(self, engine_, factory, world, s1_target):
        factory.response(world.proposal, world.s1, "Existing content")
        engine_.assign_section(s1_target, world.assister.user_id, "READ_AND_COMMENT", world.bidder)
        return world.assister

    def _comment_count(self, db, world):
        row = db.query(ProposalSectionResponseDB).filter(
            ProposalSectionResponseDB.proposal_id == world.proposal.id,
            ProposalSectionResponseDB.section_id == world.s1.id,
        ).one()
        db.refresh(row)
        return row.comment_count

    def test_threads_and_counts(self, engine_, db, world, s1_target, commenter):
        root = engine_.add_comment(
            s1_target, "Numbers look off", commenter,
            selection_start=0, selection_end=8, quoted_text="Existing",
        )
        reply = engine_.add_comment(s1_target, "Fixed", commenter, parent_comment_id=root["id"])
        assert reply["parent_comment_id"] == root["id"]
        assert self._comment_count(db, world) == 2

        tree = engine_.list_comments(s1_target, commenter)
        assert len(tree) == 1
        assert tree[0]["id"] == root["id"]
        assert tree[0]["selection_start"] == 0
        assert tree[0]["quoted_text"] == "Existing"
        assert [child["id"] for child in tree[0]["replies"]] == [reply["id"]]

        counts = engine_.get_comment_counts(world.proposal.id, world.bidder)
        assert counts[world.s1.id] == {"total": 2, "unresolved": 2}

    def test_owner_reads_comments_without_assignment(self, engine_, world, s1_target, commenter):
        engine_.add_comment(s1_target, "Visible to owner", commenter)
        assert len(engine_.list_comments(s1_target, world.bidder)) == 1
        with pytest.raises(AuthorizationError):
            engine_.list_comments(s1_target, world.second_assister)

    def test_resolve_marks_whole_thread(self, engine_, world, s1_target, commenter):
        root = engine_.add_comment(s1_target, "Question", commenter)
        engine_.add_comment(s1_target, "Answer", commenter, parent_comment_id=root["id"])

        resolved = engine_.resolve_comment(root["id"], world.bidder)
        assert resolved["is_resolved"] is True
        assert resolved["resolved_by"] == world.bidder.user_id
        tree = engine_.list_comments(s1_target, commenter)
        assert tree[0]["replies"][0]["is_resolved"] is True
        assert engine_.get_comment_counts(world.proposal.id, world.bidder)[world.s1.id]["unresolved"] == 0

        reopened = engine_.unresolve_comment(root["id"], commenter)
        assert reopened["is_resolved"] is False
        assert reopened["resolved_at"] is None

    def test_delete_removes_replies_and_decrements(self, engine_, db, world, s1_target, commenter):
        root = engine_.add_comment(s1_target, "Root", commenter)
        engine_.add_comment(s1_target, "Reply", commenter, parent_comment_id=root["id"])

        assert engine_.delete_comment(root["id"], world.bidder) == 2
        assert engine_.list_comments(s1_target, commenter) == []
        assert self._comment_count(db, world) == 0

    def test_only_author_or_owner_deletes(self, engine_, world, s1_target, commenter):
        root = engine_.add_comment(s1_target, "Mine", commenter)
        with pytest.raises(AuthorizationError):
            engine_.delete_comment(root["id"], world.rival)

    def test_only_author_edits(self, engine_, world, s1_target, commenter):
        root = engine_.add_comment(s1_target, "Draft wording", commenter)
        assert engine_.update_comment(root["id"], "Final wording", commenter)["content"] == "Final wording"
        with pytest.raises(AuthorizationError):
            engine_.update_comment(root["id"], "Hijack", world.bidder)

    @pytest.mark.parametrize("start,end", [(5, None), (None, 5), (-1, 3), (9, 2), ("1", 2)])
    def test_invalid_anchors(self, engine_, s1_target, commenter, start, end):
        with pytest.raises(ValidationError):
            engine_.add_comment(s1_target, "anchored", commenter, selection_start=start, selection_end=end)

    def test_empty_comment(self, engine_, s1_target, commenter):
        with pytest.raises(ValidationError):
            engine_.add_comment(s1_target, "  ", commenter)

    def test_parent_must_be_in_same_section(self, engine_, world, s1_target, s2_target, commenter):
        engine_.assign_section(s2_target, world.assister.user_id, "READ_AND_COMMENT", world.bidder)
        other_root = engine_.add_comment(s2_target, "Elsewhere", commenter)
        with pytest.raises(ValidationError):
            engine_.add_comment(s1_target, "Reply", commenter, parent_comment_id=other_root["id"])
        with pytest.raises(ValidationError):
            engine_.add_comment(s1_target, "Reply", commenter, parent_comment_id="missing")

    def test_uploaded_comments_table_missing(self, engine, db, factory, world):
        uploaded = factory.uploaded_tender(world.bidder_org)
        db.commit()
        UploadedCommentDB.__table__.drop(bind=engine)

        target = SectionTarget.for_uploaded(uploaded.id, "scope")
        assert CollaborationEngine(db).list_comments(target, world.bidder) == []
