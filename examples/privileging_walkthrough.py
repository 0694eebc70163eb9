"""
Synthetic Scenario: Clinical Privileging Walkthrough
====================================================

Runs the PrivilegeFlow engine end to end against a throwaway SQLite
database, using the synthetic directory and policy next to this script.

Steps demonstrated:
  1. Load the facility policy, directory and privilege catalog from YAML
  2. Preview reviewer chains (in-specialty vs. cross-specialty)
  3. Draft and submit a request
  4. Let the department head sit on it and run escalation sweeps
  5. Walk the request through every review level
  6. Generate a progress report
  7. Export the audit trail

All practitioners and privileges are synthetic.

Usage:
    python examples/privileging_walkthrough.py
"""

from __future__ import annotations

import json
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from privilegeflow.config import load_policy_from_yaml
from privilegeflow.db import Database
from privilegeflow.directory import load_catalog_from_yaml, load_directory_from_yaml
from privilegeflow.engine import WorkflowEngine
from privilegeflow.logging_config import configure_logging
from privilegeflow.models import Decision, RequestKind
from privilegeflow.notifications import RecordingDispatcher


class _Clock:
    """Manually advanced clock so the walkthrough can skip days."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    configure_logging("warning")
    here = Path(__file__).parent

    _banner("Step 1: Load Policy, Directory and Catalog")
    policy = load_policy_from_yaml(here / "workflow_policy.yaml")
    directory = load_directory_from_yaml(here / "directory.yaml")
    catalog = load_catalog_from_yaml(here / "directory.yaml")
    print(f"Facility: {policy.facility_name} ({policy.facility_id})")
    print(f"Practitioners: {len(directory)}, privileges: {len(catalog)}")

    with tempfile.TemporaryDirectory() as tmp:
        db = Database(f"sqlite:///{Path(tmp) / 'privileging.db'}")
        db.create_tables()
        clock = _Clock(datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc))
        dispatcher = RecordingDispatcher()
        engine = WorkflowEngine(db, directory, catalog, policy, dispatcher=dispatcher, clock=clock)

        _banner("Step 2: Preview Reviewer Chains")
        same = engine.build_chain("dr_ortho", ["ORTHO-ADV-01", "ORTHO-ADV-02"], RequestKind.NEW)
        cross = engine.build_chain("dr_ortho", ["ORTHO-ADV-01", "ENDO-ADV-01"], RequestKind.NEW)
        print("In-specialty:    " + " -> ".join(f"{e.level.value}({e.reviewer_id})" for e in same.entries))
        print("Cross-specialty: " + " -> ".join(f"{e.level.value}({e.reviewer_id})" for e in cross.entries))

        _banner("Step 3: Draft and Submit")
        draft = engine.create_draft("dr_ortho", RequestKind.NEW, ["ORTHO-ADV-01", "ENDO-ADV-01"])
        submitted = engine.submit_request(draft.request_id, requester_id="dr_ortho")
        print(f"Request {submitted.request_id}: {submitted.status.value}")

        engine.submit_decision(draft.request_id, "sec_ortho", Decision.APPROVED, "Supervised cases reviewed.")
        print(f"Section head approved; now waiting on {engine.get_progress(draft.request_id).current_level.value}")

        _banner("Step 4: Escalation Sweeps")
        for days in (4, 6, 8, 10):
            clock.now = submitted.submitted_at + timedelta(days=days, hours=1)
            for event in engine.sweep_escalations():
                print(
                    f"Day {days}: {event.kind.value} level={event.level} "
                    f"-> {event.recipient_id} ({event.notification_kind.value})"
                )

        _banner("Step 5: Complete the Review Chain")
        engine.submit_decision(
            draft.request_id, "hod_ortho", Decision.APPROVED, "Approved.",
            line_decisions=[{"privilege_id": "ENDO-ADV-01", "decision": "DENIED",
                             "comment": "Refer to endodontics for proctoring first."}],
        )
        engine.submit_decision(draft.request_id, "committee_chair", Decision.APPROVED, "Committee concurs.")
        final = engine.submit_decision(draft.request_id, "med_director", Decision.APPROVED, "Granted.")
        print(f"Final status: {final.status.value} at {final.completed_at.isoformat()}")

        _banner("Step 6: Progress Report")
        print(json.dumps(engine.progress_report(draft.request_id).to_dict(), indent=2, default=str))

        _banner("Step 7: Audit Trail Export")
        export = engine.export_audit("auditor_1")
        print(json.dumps(export["export_metadata"], indent=2))
        print(f"\nNotifications sent: {len(dispatcher.sent)}")

        db.dispose()

    _banner("Scenario Complete")
    print("All data was synthetic.")


if __name__ == "__main__":
    main()
