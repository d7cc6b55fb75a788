"""
Unit tests for the merge committer.

Uses an in-memory SQLite database and a mocked email sender.
"""
import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from rental_admin.core import audit_service
from rental_admin.core.api_errors import MergeBlockedError, NotFoundError, ValidationError
from rental_admin.core.duplicate_models import DuplicateMergeOperation
from rental_admin.core.models import Booking, Payment, User
from rental_admin.notifications.email_sender import EmailSender
from rental_admin.services.case_store import CaseStore
from rental_admin.services.merge_committer import MergeCommitter
from rental_admin.services.merge_preview import MergePreviewEngine
from rental_admin.services.references import count_user_references
from rental_admin.services.rollback_engine import RollbackEngine


@pytest.fixture
def merge_pair(make_user, make_booking, make_payment):
    """Source with 3 bookings and 2 payments, empty target."""
    source = make_user(name="Ram Thapa", email="ram.thapa@gmail.com")
    target = make_user(name="Ram Thapa", email="ramthapa@gmail.com")
    bookings = [make_booking(source) for _ in range(3)]
    payments = [make_payment(source, booking=bookings[0]), make_payment(source, booking=bookings[1])]
    return source, target, bookings, payments


@pytest.fixture
def committer(test_db, mock_email_sender, settings):
    return MergeCommitter(test_db, email_sender=mock_email_sender, settings=settings)


class TestCommit:

    @pytest.mark.unit
    def test_moves_bookings_and_payments(self, test_db, committer, merge_pair, ops_admin):
        source, target, bookings, payments = merge_pair
        source_id, target_id = source.id, target.id

        result = committer.commit(source_id, target_id, ops_admin, confirmed=True, note="same person")

        assert result["status"] == "completed"
        assert result["partial_failure"] is None
        moved = {ref["model"]: ref["ids"] for ref in result["moved_refs"]}
        assert sorted(moved["Booking"]) == sorted(b.id for b in bookings)
        assert sorted(moved["Payment"]) == sorted(p.id for p in payments)
        assert result["total_modified"] == 5

        assert sum(count_user_references(test_db, target_id).values()) == 5
        assert sum(count_user_references(test_db, source_id).values()) == 0

        merged = test_db.get(User, source_id)
        assert merged.is_active is False
        assert merged.merge_status == "merged"
        assert merged.merged_into_user_id == target_id
        assert merged.merged_at is not None

    @pytest.mark.unit
    def test_operation_records_undo_data(self, test_db, committer, merge_pair, ops_admin):
        source, target, _, _ = merge_pair
        before = datetime.utcnow()

        result = committer.commit(source.id, target.id, ops_admin, confirmed=True)

        operation = test_db.get(DuplicateMergeOperation, result["merge_operation_id"])
        assert operation.status == "completed"
        assert operation.performed_by_id == ops_admin.id
        assert operation.source_snapshot["is_active"] is True
        assert operation.source_snapshot["merge_status"] is None
        assert operation.target_snapshot["id"] == target.id
        assert [ref["label"] for ref in operation.moved_refs] == ["bookings_as_renter", "payments_as_renter"]
        window = operation.rollback_expires_at - before
        assert timedelta(minutes=29) < window <= timedelta(minutes=31)

    @pytest.mark.unit
    def test_preview_counts_match_moved_refs(self, test_db, committer, merge_pair, ops_admin,
                                             make_kyc_document, add_message):
        source, target, _, _ = merge_pair
        make_kyc_document(source)
        add_message(source, target)

        preview = MergePreviewEngine(test_db).preview(source.id, target.id)
        result = committer.commit(source.id, target.id, ops_admin, confirmed=True)

        moved_counts = {ref["label"]: len(ref["ids"]) for ref in result["moved_refs"]}
        assert moved_counts == {label: n for label, n in preview["move_counts"].items() if n}
        assert result["total_modified"] == preview["total_moves"]

    @pytest.mark.unit
    def test_kyc_document_assets_are_recorded(self, test_db, committer, make_user, make_kyc_document, ops_admin):
        source, target = make_user(), make_user()
        doc = make_kyc_document(source, public_id="kyc/ram-front", image_url="https://cdn.example.com/ram.jpg")

        result = committer.commit(source.id, target.id, ops_admin, confirmed=True)

        operation = test_db.get(DuplicateMergeOperation, result["merge_operation_id"])
        assert operation.moved_doc_public_ids == ["kyc/ram-front"]
        assert operation.moved_doc_image_urls == ["https://cdn.example.com/ram.jpg"]
        assert test_db.get(type(doc), doc.id).user_id == target.id

    @pytest.mark.unit
    def test_notifies_both_holders(self, committer, merge_pair, ops_admin, mock_email_sender):
        source, target, _, _ = merge_pair

        result = committer.commit(source.id, target.id, ops_admin, confirmed=True)

        mock_email_sender.send_merge_notifications.assert_called_once()
        source_arg, target_arg, _ = mock_email_sender.send_merge_notifications.call_args[0]
        assert source_arg["email"] == "ram.thapa@gmail.com"
        assert target_arg["email"] == "ramthapa@gmail.com"
        assert result["email_delivery"]["source"]["sent"] is True
        assert result["email_delivery"]["target"]["sent"] is True

    @pytest.mark.unit
    def test_email_failure_does_not_fail_merge(self, test_db, merge_pair, ops_admin, settings):
        source, target, _, _ = merge_pair
        sender = MagicMock()
        sender.send_merge_notifications.side_effect = RuntimeError("mail relay down")

        result = MergeCommitter(test_db, email_sender=sender, settings=settings).commit(
            source.id, target.id, ops_admin, confirmed=True
        )

        assert result["status"] == "completed"
        assert result["email_delivery"]["source"] == {
            "sent": False, "provider": "http", "reason": "mail relay down",
        }

    @pytest.mark.unit
    def test_unconfigured_email_is_reported(self, test_db, merge_pair, ops_admin, settings):
        source, target, _, _ = merge_pair

        result = MergeCommitter(test_db, email_sender=EmailSender(settings), settings=settings).commit(
            source.id, target.id, ops_admin, confirmed=True
        )

        assert result["email_delivery"]["source"]["sent"] is False
        assert result["email_delivery"]["source"]["reason"] == "email_not_configured"

    @pytest.mark.unit
    def test_commit_is_audited(self, test_db, committer, merge_pair, ops_admin):
        source, target, _, _ = merge_pair

        result = committer.commit(source.id, target.id, ops_admin, confirmed=True)

        trail = audit_service.get_audit_trail(test_db, action="duplicate.merge_commit")
        assert len(trail) == 1
        assert trail[0]["entity_id"] == str(result["merge_operation_id"])
        assert trail[0]["details"]["total_modified"] == 5


class TestLinkedCase:

    @pytest.mark.unit
    def test_case_found_by_suggestion_key_is_merged(self, test_db, committer, merge_pair, ops_admin):
        source, target, _, _ = merge_pair
        case = CaseStore(test_db).upsert_from_suggestion(
            {"entity_type": "user", "key": "email:ramthapa@gmail.com", "confidence": 85}
        )

        result = committer.commit(
            source.id, target.id, ops_admin, confirmed=True,
            suggestion_entity_type="user", suggestion_key="email:ramthapa@gmail.com",
        )

        case = CaseStore(test_db).get_case(case.id)
        assert case.status == "merged"
        assert case.reviewed_by_id == ops_admin.id
        assert f"operation {result['merge_operation_id']}" in case.resolution_summary
        operation = test_db.get(DuplicateMergeOperation, result["merge_operation_id"])
        assert operation.duplicate_case_id == case.id

    @pytest.mark.unit
    def test_unknown_case_id(self, test_db, committer, merge_pair, ops_admin):
        source, target, _, _ = merge_pair

        with pytest.raises(NotFoundError):
            committer.commit(source.id, target.id, ops_admin, confirmed=True, duplicate_case_id=4242)

        assert test_db.query(DuplicateMergeOperation).count() == 0


class TestRefusals:

    @pytest.mark.unit
    def test_requires_confirmation(self, test_db, committer, merge_pair, ops_admin):
        source, target, _, _ = merge_pair

        with pytest.raises(ValidationError):
            committer.commit(source.id, target.id, ops_admin, confirmed=False)

        assert test_db.query(DuplicateMergeOperation).count() == 0

    @pytest.mark.unit
    def test_blocking_conflict_changes_nothing(self, test_db, committer, merge_pair, make_property,
                                               ops_admin, mock_email_sender):
        source, target, _, _ = merge_pair
        source_id = source.id
        make_property(owner=source)

        with pytest.raises(MergeBlockedError) as exc_info:
            committer.commit(source_id, target.id, ops_admin, confirmed=True)

        assert "SOURCE_OWNS_LISTINGS" in [c["code"] for c in exc_info.value.conflicts]
        assert exc_info.value.status_code == 409
        assert test_db.query(DuplicateMergeOperation).count() == 0
        assert test_db.query(Booking).filter(Booking.renter_id == source_id).count() == 3
        user = test_db.get(User, source_id)
        assert user.is_active is True
        assert user.merge_status is None
        mock_email_sender.send_merge_notifications.assert_not_called()

    @pytest.mark.unit
    def test_source_claimed_by_another_merge(self, test_db, committer, merge_pair, ops_admin, monkeypatch):
        """A merge that passed preview still loses if another merge holds the source."""
        source, target, _, _ = merge_pair
        source_id, target_id = source.id, target.id
        stale_preview = MergePreviewEngine(test_db).preview(source_id, target_id)
        source.merge_status = "merging"
        test_db.commit()

        monkeypatch.setattr(MergePreviewEngine, "preview", lambda self, s, t: stale_preview)

        with pytest.raises(MergeBlockedError):
            committer.commit(source_id, target_id, ops_admin, confirmed=True)

        assert test_db.query(DuplicateMergeOperation).count() == 0
        assert test_db.query(Booking).filter(Booking.renter_id == source_id).count() == 3


class TestPartialFailure:

    @pytest.fixture
    def failing_payments(self, monkeypatch):
        original = MergeCommitter._move_reference

        def flaky(self, ref, source_id, target_id):
            if ref.label == "payments_as_renter":
                raise SQLAlchemyError("payments table locked")
            return original(self, ref, source_id, target_id)

        monkeypatch.setattr(MergeCommitter, "_move_reference", flaky)

    @pytest.mark.unit
    def test_earlier_steps_stay_applied(self, test_db, committer, merge_pair, ops_admin,
                                        failing_payments, mock_email_sender):
        source, target, bookings, _ = merge_pair
        source_id, target_id = source.id, target.id

        result = committer.commit(source_id, target_id, ops_admin, confirmed=True)

        assert result["partial_failure"] == {"label": "payments_as_renter", "error": "payments table locked"}
        assert [ref["label"] for ref in result["moved_refs"]] == ["bookings_as_renter"]
        assert result["total_modified"] == 3
        assert test_db.query(Booking).filter(Booking.renter_id == target_id).count() == 3
        assert test_db.query(Payment).filter(Payment.renter_id == source_id).count() == 2

        user = test_db.get(User, source_id)
        assert user.merge_status == "partial"
        assert user.is_active is True
        assert user.merged_into_user_id is None

        operation = test_db.get(DuplicateMergeOperation, result["merge_operation_id"])
        assert operation.status == "completed"
        assert operation.partial_failure["label"] == "payments_as_renter"
        assert result["email_delivery"]["source"]["reason"] == "merge_incomplete"
        mock_email_sender.send_merge_notifications.assert_not_called()

    @pytest.mark.unit
    def test_partial_source_blocks_new_merge(self, test_db, committer, merge_pair, make_user, ops_admin,
                                             failing_payments):
        source, target, _, _ = merge_pair
        committer.commit(source.id, target.id, ops_admin, confirmed=True)

        with pytest.raises(MergeBlockedError):
            committer.commit(source.id, make_user().id, ops_admin, confirmed=True)


class TestInterruptedFinalize:

    @pytest.fixture
    def failing_final_commit(self, test_db, monkeypatch):
        """Fail the commit that would mark the operation completed, once."""
        real_commit = test_db.commit
        state = {"failed": False}

        def flaky_commit():
            completing = any(
                isinstance(obj, DuplicateMergeOperation) and obj.status == "completed"
                for obj in test_db.dirty
            )
            if completing and not state["failed"]:
                state["failed"] = True
                raise OperationalError("COMMIT", {}, Exception("database is locked"))
            return real_commit()

        monkeypatch.setattr(test_db, "commit", flaky_commit)
        return state

    @pytest.mark.unit
    def test_failed_final_commit_leaves_rollbackable_operation(self, test_db, committer, merge_pair,
                                                              ops_admin, failing_final_commit,
                                                              mock_email_sender):
        source, target, _, _ = merge_pair
        source_id, target_id = source.id, target.id
        before = count_user_references(test_db, source_id)

        result = committer.commit(source_id, target_id, ops_admin, confirmed=True)

        assert failing_final_commit["failed"] is True
        assert result["status"] == "completed"
        assert result["partial_failure"]["label"] == "finalize"
        assert [ref["label"] for ref in result["moved_refs"]] == ["bookings_as_renter", "payments_as_renter"]
        assert result["email_delivery"]["target"]["reason"] == "merge_incomplete"
        mock_email_sender.send_merge_notifications.assert_not_called()

        operation = test_db.get(DuplicateMergeOperation, result["merge_operation_id"])
        assert operation.status == "completed"
        assert operation.partial_failure["label"] == "finalize"
        user = test_db.get(User, source_id)
        assert user.merge_status == "partial"
        assert user.is_active is True

        undone = RollbackEngine(test_db).rollback(operation.id, ops_admin)

        assert undone["total_restored"] == 5
        assert count_user_references(test_db, source_id) == before
        assert test_db.get(User, source_id).merge_status is None

    @pytest.mark.unit
    def test_unexpected_error_still_closes_operation(self, test_db, committer, merge_pair, ops_admin,
                                                     monkeypatch):
        source, target, bookings, _ = merge_pair
        source_id, target_id = source.id, target.id
        original = MergeCommitter._move_reference

        def broken(self, ref, src, dst):
            if ref.label == "payments_as_renter":
                raise RuntimeError("worker killed")
            return original(self, ref, src, dst)

        monkeypatch.setattr(MergeCommitter, "_move_reference", broken)

        with pytest.raises(RuntimeError, match="worker killed"):
            committer.commit(source_id, target_id, ops_admin, confirmed=True)

        operation = test_db.query(DuplicateMergeOperation).one()
        assert operation.status == "completed"
        assert operation.partial_failure == {"label": "interrupted", "error": "worker killed"}
        assert [ref["label"] for ref in operation.moved_refs] == ["bookings_as_renter"]
        assert test_db.get(User, source_id).merge_status == "partial"

        undone = RollbackEngine(test_db).rollback(operation.id, ops_admin)

        assert undone["total_restored"] == 3
        assert test_db.query(Booking).filter(Booking.renter_id == source_id).count() == len(bookings)
