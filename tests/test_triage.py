"""
Unit tests for hub triage (smart block and hub view).
"""
import pytest
from datetime import datetime, timedelta

from rental_admin.core.duplicate_models import DuplicateCase
from rental_admin.services.case_store import CaseStore
from rental_admin.services.triage import build_hub_view, build_smart_block, severity_for

NOW = datetime(2026, 10, 19, 12, 0, 0)


def _suggestion(confidence=95, created_at=NOW - timedelta(days=3), duplicates=1, signals=None):
    member = {"id": 1, "created_at": created_at.isoformat()}
    return {
        "entity_type": "user",
        "key": "citizenship:KA1",
        "confidence": confidence,
        "primary": member,
        "duplicates": [dict(member, id=i + 2) for i in range(duplicates)],
        "signals": signals or {},
    }


class TestSmartBlock:

    @pytest.mark.unit
    def test_severity_tiers(self):
        assert severity_for(95) == "critical"
        assert severity_for(90) == "critical"
        assert severity_for(80) == "high"
        assert severity_for(60) == "medium"
        assert severity_for(10) == "low"

    @pytest.mark.unit
    def test_new_stale_group_scores_high(self):
        smart = build_smart_block(_suggestion(), now=NOW, stale_case_hours=48)

        assert smart["severity"] == "critical"
        assert smart["stale_hours"] == 72
        assert smart["is_stale"] is True
        # 95 * 0.6 + 5 (one extra member) + 10 (untouched) + 10 (stale)
        assert smart["priority_score"] == 82
        assert smart["recommended_status"] == "reviewing"
        assert smart["next_step"] == "Preview merge into the primary account"

    @pytest.mark.unit
    def test_fresh_group_is_not_stale(self):
        smart = build_smart_block(_suggestion(created_at=NOW - timedelta(hours=2)), now=NOW)

        assert smart["is_stale"] is False
        assert smart["stale_hours"] == 2

    @pytest.mark.unit
    def test_resolved_case_scores_zero(self):
        case = DuplicateCase(status="ignored", updated_at=NOW - timedelta(days=10))

        smart = build_smart_block(_suggestion(), case=case, now=NOW)

        assert smart["priority_score"] == 0
        assert smart["is_stale"] is False
        assert smart["next_step"] == "No action needed"

    @pytest.mark.unit
    def test_recommended_status(self):
        canonical = build_smart_block(_suggestion(signals={"single_canonical_entity": True}), now=NOW)
        weak = build_smart_block(_suggestion(confidence=30), now=NOW)

        assert canonical["recommended_status"] == "ignored"
        assert weak["recommended_status"] == "false_positive"


class TestHubView:

    @pytest.mark.unit
    def test_attaches_workflow_and_hides_resolved(self, test_db, make_user, ops_admin):
        make_user(citizenship_number="KA1")
        make_user(citizenship_number="KA1")
        make_user(citizenship_number="KA2")
        make_user(citizenship_number="KA2")

        hub = build_hub_view(test_db)
        assert len(hub["suggestions"]) == 2
        assert all(s["workflow"] is None for s in hub["suggestions"])
        assert hub["smart_summary"]["critical"] == 2

        ignored = next(s for s in hub["suggestions"] if s["key"] == "citizenship:KA2")
        case = CaseStore(test_db).upsert_from_suggestion(ignored, status="ignored", admin=ops_admin)

        hub = build_hub_view(test_db)
        assert [s["key"] for s in hub["suggestions"]] == ["citizenship:KA1"]

        hub = build_hub_view(test_db, include_resolved=True)
        resolved = next(s for s in hub["suggestions"] if s["key"] == "citizenship:KA2")
        assert resolved["workflow"] == {"case_id": case.id, "status": "ignored", "assignee_id": None}
        assert resolved["smart"]["priority_score"] == 0

    @pytest.mark.unit
    def test_limit(self, test_db, make_user):
        for n in range(3):
            make_user(citizenship_number=f"KA{n}")
            make_user(citizenship_number=f"KA{n}")

        hub = build_hub_view(test_db, limit=2)

        assert len(hub["suggestions"]) == 2
        assert hub["totals"]["all_groups"] == 3

    @pytest.mark.unit
    def test_resolved_phone_group_stays_hidden_when_phone_is_shared(self, test_db, make_user, ops_admin):
        make_user(name="Ram Thapa", phone="9800000001")
        make_user(name="Ram Thapaa", phone="9800000001")
        group = build_hub_view(test_db, entity_type="user")["suggestions"][0]
        case = CaseStore(test_db).upsert_from_suggestion(group, status="false_positive", admin=ops_admin)

        make_user(name="Bob Jones", phone="9800000001")

        assert build_hub_view(test_db, entity_type="user")["suggestions"] == []
        shown = build_hub_view(test_db, entity_type="user", include_resolved=True)["suggestions"]
        assert [s["key"] for s in shown] == [group["key"]]
        assert shown[0]["workflow"]["case_id"] == case.id
