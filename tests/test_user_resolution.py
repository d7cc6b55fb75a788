"""
Unit tests for user impact, resolve actions, merge history and
soft-deleted user listing.
"""
import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

from rental_admin.core.api_errors import NotFoundError, PartialFailureError, ValidationError
from rental_admin.core.models import User
from rental_admin.services import merge_history, user_resolution
from rental_admin.services.merge_committer import MergeCommitter
from rental_admin.services.rollback_engine import RollbackEngine


class TestUserImpact:

    @pytest.mark.unit
    def test_counts(self, test_db, make_user, make_booking, make_property):
        user = make_user(role="owner")
        make_booking(user)
        make_property(owner=user)

        impact = user_resolution.user_impact(test_db, user.id)

        assert impact["counts"]["bookings_as_renter"] == 1
        assert impact["owned_properties"] == 1
        assert impact["total_refs"] == 2
        assert impact["safe_to_hard_delete"] is False

    @pytest.mark.unit
    def test_unreferenced_user_is_safe(self, test_db, make_user):
        impact = user_resolution.user_impact(test_db, make_user().id)

        assert impact["total_refs"] == 0
        assert impact["safe_to_hard_delete"] is True

    @pytest.mark.unit
    def test_unknown_user(self, test_db):
        with pytest.raises(NotFoundError):
            user_resolution.user_impact(test_db, 4242)


class TestResolveUser:

    @pytest.mark.unit
    def test_deactivate(self, test_db, make_user, ops_admin):
        user = make_user()
        user_id = user.id

        result = user_resolution.resolve_user(test_db, user_id, "deactivate", ops_admin)

        assert result["merge_status"] == "deactivated"
        user = test_db.get(User, user_id)
        assert user.is_active is False
        assert user.merge_status == "deactivated"

    @pytest.mark.unit
    def test_deactivate_refuses_merged_user(self, test_db, make_user, ops_admin):
        user = make_user(merge_status="merged", is_active=False)

        with pytest.raises(ValidationError):
            user_resolution.resolve_user(test_db, user.id, "deactivate", ops_admin)

    @pytest.mark.unit
    def test_hard_delete_when_safe(self, test_db, make_user, ops_admin):
        user_id = make_user().id

        result = user_resolution.resolve_user(test_db, user_id, "hard_delete_if_safe", ops_admin)

        assert result["deleted"] is True
        assert test_db.get(User, user_id) is None

    @pytest.mark.unit
    def test_hard_delete_refused_with_references(self, test_db, make_user, make_booking, ops_admin):
        user = make_user()
        make_booking(user)

        with pytest.raises(ValidationError):
            user_resolution.resolve_user(test_db, user.id, "hard_delete_if_safe", ops_admin)

        assert test_db.get(User, user.id) is not None

    @pytest.mark.unit
    def test_merge_into_primary_implies_confirmation(self, test_db, make_user, make_booking, ops_admin,
                                                     mock_email_sender, settings):
        source, target = make_user(), make_user()
        make_booking(source)
        committer = MergeCommitter(test_db, email_sender=mock_email_sender, settings=settings)

        result = user_resolution.resolve_user(
            test_db, source.id, "merge_into_primary", ops_admin,
            target_user_id=target.id, committer=committer,
        )

        assert result["action"] == "merge_into_primary"
        assert result["status"] == "completed"
        assert result["total_modified"] == 1

    @pytest.mark.unit
    def test_merge_into_primary_requires_target(self, test_db, make_user, ops_admin):
        with pytest.raises(ValidationError):
            user_resolution.resolve_user(test_db, make_user().id, "merge_into_primary", ops_admin)

    @pytest.mark.unit
    def test_merge_partial_failure_is_raised(self, test_db, make_user, ops_admin):
        committer = MagicMock()
        committer.commit.return_value = {
            "merge_operation_id": 7,
            "moved_refs": [{"label": "bookings_as_renter", "model": "Booking", "field": "renter_id", "ids": [1]}],
            "partial_failure": {"label": "payments_as_renter", "error": "locked"},
        }

        with pytest.raises(PartialFailureError) as exc_info:
            user_resolution.resolve_user(
                test_db, 1, "merge_into_primary", ops_admin, target_user_id=2, committer=committer,
            )

        assert exc_info.value.merge_operation_id == 7
        committer.commit.assert_called_once_with(1, 2, ops_admin, confirmed=True, note="")

    @pytest.mark.unit
    def test_unknown_action(self, test_db, make_user, ops_admin):
        with pytest.raises(ValidationError):
            user_resolution.resolve_user(test_db, make_user().id, "purge", ops_admin)


class TestListings:

    @pytest.fixture
    def two_merges(self, test_db, make_user, ops_admin, mock_email_sender, settings):
        committer = MergeCommitter(test_db, email_sender=mock_email_sender, settings=settings)
        a, b, c, d = make_user(), make_user(), make_user(), make_user()
        first = committer.commit(a.id, b.id, ops_admin, confirmed=True)
        second = committer.commit(c.id, d.id, ops_admin, confirmed=True)
        return {"first": first, "second": second, "users": (a.id, b.id, c.id, d.id)}

    @pytest.mark.unit
    def test_history_newest_first(self, test_db, two_merges):
        page = merge_history.list_merge_operations(test_db)

        assert page["total"] == 2
        assert page["items"][0]["id"] == two_merges["second"]["merge_operation_id"]

    @pytest.mark.unit
    def test_history_user_filter_matches_either_side(self, test_db, two_merges):
        _, b, _, _ = two_merges["users"]

        page = merge_history.list_merge_operations(test_db, user_id=b)

        assert [op["id"] for op in page["items"]] == [two_merges["first"]["merge_operation_id"]]

    @pytest.mark.unit
    def test_history_status_filters(self, test_db, two_merges, ops_admin):
        RollbackEngine(test_db).rollback(two_merges["first"]["merge_operation_id"], ops_admin)
        later = datetime.utcnow() + timedelta(hours=1)

        rolled_back = merge_history.list_merge_operations(test_db, status="rolled_back")
        expired = merge_history.list_merge_operations(test_db, status="expired", now=later)
        completed_later = merge_history.list_merge_operations(test_db, status="completed", now=later)
        completed_now = merge_history.list_merge_operations(test_db, status="completed")

        assert [op["id"] for op in rolled_back["items"]] == [two_merges["first"]["merge_operation_id"]]
        assert [op["id"] for op in expired["items"]] == [two_merges["second"]["merge_operation_id"]]
        assert expired["items"][0]["status"] == "expired"
        assert completed_later["total"] == 0
        assert completed_now["total"] == 1

    @pytest.mark.unit
    def test_history_invalid_status(self, test_db):
        with pytest.raises(ValidationError):
            merge_history.list_merge_operations(test_db, status="done")

    @pytest.mark.unit
    def test_soft_deleted_users(self, test_db, two_merges, make_user):
        make_user(is_active=False, merge_status="deactivated")

        page = user_resolution.list_soft_deleted_users(test_db)

        assert page["total"] == 3
        merged = [u for u in page["items"] if u["merge_status"] == "merged"]
        assert sorted(u["merged_into_user_id"] for u in merged) == sorted(
            [two_merges["users"][1], two_merges["users"][3]]
        )
