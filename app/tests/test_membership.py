"""
Tests for the room membership authority and the repository it relies on.
"""
from datetime import datetime, timezone

import pytest

from core.exceptions import AuthorizationError, ConflictError, NotFoundError
from db.models import Conversation, ConversationParticipant, Tenant
from db.repository import Repository
from services.membership import MembershipAuthority


class TestMembershipAuthority:

    def test_participant_is_member(self, test_db, seed):
        membership = MembershipAuthority(test_db)
        assert membership.is_participant(seed.alice, seed.conv1) is True
        assert membership.is_participant(seed.bob, seed.conv1) is True

    def test_non_participant_is_not_member(self, test_db, seed):
        membership = MembershipAuthority(test_db)
        assert membership.is_participant(seed.carol, seed.conv1) is False
        assert membership.is_participant(seed.dave, seed.conv1) is False

    def test_garbage_conversation_id(self, test_db, seed):
        membership = MembershipAuthority(test_db)
        assert membership.is_participant(seed.alice, "") is False
        assert membership.is_participant(seed.alice, None) is False

    def test_soft_deleted_participant_row_revokes_membership(self, test_db, seed):
        row = test_db.query(ConversationParticipant).filter_by(
            conversation_id=seed.conv1, user_id=seed.bob
        ).one()
        row.deleted_at = datetime.now(timezone.utc)
        test_db.commit()

        assert MembershipAuthority(test_db).is_participant(seed.bob, seed.conv1) is False

    def test_conversation_ids_skip_deleted_conversations(self, test_db, seed):
        conversation = test_db.query(Conversation).filter_by(id=seed.conv2).one()
        conversation.deleted_at = datetime.now(timezone.utc)
        test_db.commit()

        ids = MembershipAuthority(test_db).conversation_ids_for(seed.bob)
        assert set(ids) == {seed.conv1, seed.conv3}

    def test_conversation_ids_for_user(self, test_db, seed):
        ids = MembershipAuthority(test_db).conversation_ids_for(seed.alice)
        assert set(ids) == {seed.conv1, seed.conv2, seed.conv3, seed.conv_carol}

    def test_require_participant_unknown_conversation(self, test_db, seed):
        with pytest.raises(NotFoundError):
            MembershipAuthority(test_db).require_participant(seed.alice, "missing")

    def test_require_participant_denies_outsider(self, test_db, seed):
        with pytest.raises(AuthorizationError):
            MembershipAuthority(test_db).require_participant(seed.carol, seed.conv1)

    def test_participants_with_status(self, test_db, seed):
        participants = MembershipAuthority(test_db).participants_with_status(seed.conv_carol)
        assert {p["userId"] for p in participants} == {seed.alice, seed.carol}
        assert all(p["status"] == "offline" for p in participants)


class TestRepositoryTransactions:

    def test_duplicate_tenant_slug_conflicts(self, test_db, seed):
        repository = Repository(test_db)
        with pytest.raises(ConflictError):
            repository.create_tenant_with_admin(
                name="Acme again", slug="acme", domain=None,
                admin_email="new-admin@acme.test", admin_password_hash="x",
                admin_display_name="New Admin"
            )

    def test_failed_tenant_creation_leaves_no_admin(self, test_db, seed):
        repository = Repository(test_db)
        with pytest.raises(ConflictError):
            # email already taken: the tenant insert must be rolled back too
            repository.create_tenant_with_admin(
                name="Initech", slug="initech", domain=None,
                admin_email="alice@acme.test", admin_password_hash="x",
                admin_display_name="Alice Again"
            )
        assert repository.get_user_by_email("alice@acme.test").display_name == "Alice"
        assert test_db.query(Tenant).filter_by(slug="initech").first() is None

    def test_duplicate_participant_conflicts(self, test_db, seed):
        repository = Repository(test_db)
        with pytest.raises(ConflictError):
            with repository.transaction():
                repository.add_participant(seed.conv1, seed.alice)
