"""
Tests for privilegeflow.progress -- progress snapshots and reports.
"""

from __future__ import annotations

from datetime import timedelta

from privilegeflow.audit import AuditEntry, AuditEventType
from privilegeflow.models import Decision, RequestKind, RequestStatus, ReviewLevel
from privilegeflow.progress import ProgressReport, RequestProgress, generate_progress_report

from conftest import T0


def _make_progress(**overrides) -> RequestProgress:
    data = dict(
        request_id="r1",
        requester_id="dr_ortho",
        request_kind=RequestKind.NEW,
        status=RequestStatus.PENDING,
        created_at=T0,
    )
    data.update(overrides)
    return RequestProgress(**data)


def _make_entry(event_type, hours, **metadata) -> AuditEntry:
    return AuditEntry(
        facility_id="f1",
        actor_id="sec_ortho",
        actor_role="HEAD_OF_SECTION",
        event_type=event_type,
        target_entity="r1",
        metadata=metadata,
        timestamp=T0 + timedelta(hours=hours),
    )


class TestProgressSnapshot:
    def test_draft_snapshot(self, engine):
        progress = engine.create_draft("dr_ortho", "RENEWAL", ["ORTHO-ADV-01"])
        assert progress.status == RequestStatus.DRAFT
        assert progress.request_kind == RequestKind.RENEWAL
        assert progress.levels == []
        assert progress.current_level is None
        assert progress.days_pending is None
        assert [line.privilege_id for line in progress.lines] == ["ORTHO-ADV-01"]

    def test_pending_snapshot_tracks_days(self, engine, clock):
        draft = engine.create_draft("dr_ortho", "NEW", ["ORTHO-ADV-01"])
        engine.submit_request(draft.request_id)
        clock.advance(days=2, hours=20)

        progress = engine.get_progress(draft.request_id)
        assert progress.days_pending == 2
        assert progress.submitted_at == T0
        assert progress.submission_count == 1
        assert [lvl.level for lvl in progress.levels] == [
            ReviewLevel.SUPERVISOR, ReviewLevel.DEPARTMENT_HEAD, ReviewLevel.MEDICAL_DIRECTOR,
        ]
        assert [lvl.is_current for lvl in progress.levels] == [True, False, False]


class TestProgressReport:
    def test_timeline_is_chronological(self):
        entries = [
            _make_entry(AuditEventType.LEVEL_APPROVED, 5, comment="Looks good"),
            _make_entry(AuditEventType.REQUEST_SUBMITTED, 1),
            _make_entry(AuditEventType.REQUEST_CREATED, 0),
        ]
        report = generate_progress_report(_make_progress(), entries, T0 + timedelta(days=1))
        events = [item["event"] for item in report.timeline]
        assert events == ["CREATED", "REQUEST_SUBMITTED", "LEVEL_APPROVED"]
        assert report.timeline[-1]["description"].endswith("Comment: Looks good")
        assert report.generated_at == (T0 + timedelta(days=1)).isoformat()

    def test_to_dict(self):
        report = ProgressReport(
            _make_progress(current_level=ReviewLevel.COMMITTEE, current_reviewer_id="committee_chair"),
            timeline=[],
            generated_at=T0.isoformat(),
        )
        data = report.to_dict()
        assert data["request_id"] == "r1"
        assert data["status"] == "PENDING"
        assert data["current_level"] == "COMMITTEE"
        assert data["chain"] == []
        assert report.request_id == "r1"
        assert "PENDING" in repr(report)

    def test_engine_report(self, engine):
        draft = engine.create_draft("dr_ortho", "NEW", ["ORTHO-ADV-01"])
        engine.submit_request(draft.request_id)
        engine.submit_decision(draft.request_id, "sec_ortho", Decision.APPROVED, "Supervised cases verified")

        data = engine.progress_report(draft.request_id).to_dict()
        assert data["status"] == "IN_REVIEW"
        assert data["current_reviewer_id"] == "hod_ortho"
        assert [c["status"] for c in data["chain"]] == ["APPROVED", "PENDING", "PENDING"]
        assert [t["event"] for t in data["timeline"]] == [
            "CREATED", "REQUEST_SUBMITTED", "LEVEL_APPROVED",
        ]
        assert data["privileges"] == [{"privilege_id": "ORTHO-ADV-01", "decision": "UNDECIDED"}]
