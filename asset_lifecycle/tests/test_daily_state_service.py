import sys
import unittest
from datetime import date
from pathlib import Path
from unittest import mock

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from lifecycle_test_support import PASSWORD, build_session_factory, seed_directory

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from models.asset_models import AssetDailyState, AssetIncident, AssetLossRecord, AssetStateAudit, HistoricalAssetRecord
from services import daily_state_service as service
from services import snapshot_service
from services.asset_errors import AuthorizationError, NotFoundError, PersistenceError, ReauthenticationError, ValidationError
from services.incident_service import add_incident, list_incidents, resolve_incident
from services.notification_service import list_pending_notifications


DAY = date(2024, 6, 1)


class DailyStateServiceTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.factory = build_session_factory()
        self.db = self.factory()
        self.users = seed_directory(self.db)
        self.actor = self.users.leader.UserID
        self.agent = self.users.agent.UserID

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _rows(self, model):
        return self.db.execute(select(model)).scalars().all()

    def test_book_in_then_out_then_found(self):
        row = service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        self.assertEqual(row.CurrentState, "collected")
        self.assertEqual(row.ConfirmedBy, self.actor)
        self.assertEqual(row.AgentName, "Alice Agent")

        row = service.book_out(self.db, self.agent, "laptop", DAY, "not_returned", None, self.actor)
        self.assertEqual(row.CurrentState, "not_returned")
        self.assertEqual(self._rows(AssetLossRecord), [])

        row = service.mark_found(self.db, self.agent, "laptop", DAY, "found under desk", self.actor)
        self.assertEqual(row.CurrentState, "returned")
        self.assertEqual(row.Reason, "Found: found under desk")

        states = self._rows(AssetDailyState)
        self.assertEqual(len(states), 1)
        audits = sorted(self._rows(AssetStateAudit), key=lambda item: item.ChangedAt)
        self.assertEqual(
            [(item.PreviousState, item.NewState) for item in audits],
            [("ready_for_collection", "collected"), ("collected", "not_returned"), ("not_returned", "returned")],
        )
        self.assertEqual(audits[0].Reason, "Book in: collected")
        self.assertTrue(all(item.DailyStateID == states[0].StateID for item in audits))

    def test_repeated_book_in_upserts_single_row(self):
        service.book_in(self.db, self.agent, "headsets", DAY, "not_collected", "sick", self.actor)
        service.book_in(self.db, self.agent, "headsets", DAY, "collected", None, self.actor)
        states = self._rows(AssetDailyState)
        self.assertEqual(len(states), 1)
        self.assertEqual(states[0].CurrentState, "collected")
        self.assertEqual(len(self._rows(AssetStateAudit)), 2)

    def test_book_out_without_book_in_is_rejected_and_nothing_written(self):
        with self.assertRaises(ValidationError) as ctx:
            service.book_out(self.db, self.agent, "dongle", DAY, "returned", None, self.actor)
        self.assertEqual(str(ctx.exception), "Asset must be collected before it can be booked out")
        self.assertEqual(self._rows(AssetDailyState), [])
        self.assertEqual(self._rows(AssetStateAudit), [])

    def test_book_in_after_not_returned_is_rejected(self):
        service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        service.book_out(self.db, self.agent, "laptop", DAY, "not_returned", None, self.actor)
        with self.assertRaises(ValidationError) as ctx:
            service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        self.assertEqual(str(ctx.exception), "Cannot book in asset in current state: not_returned")

    def test_unknown_user_is_not_found(self):
        with self.assertRaises(NotFoundError):
            service.book_in(self.db, "missing-user", "laptop", DAY, "collected", None, self.actor)

    def test_lost_creates_loss_record_and_notification(self):
        service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        service.book_out(self.db, self.agent, "laptop", DAY, "lost", "left on train", self.actor)

        records = self._rows(AssetLossRecord)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].DateLost, DAY)
        self.assertEqual(records[0].Reason, "left on train")
        pending = list_pending_notifications(self.db)
        self.assertEqual([item.NotificationType for item in pending], ["AssetLost"])

    def test_returned_clears_manual_loss_record(self):
        service.report_asset_loss(self.db, self.agent, "laptop", DAY, "reported by phone", self.actor)
        self.assertEqual(len(self._rows(AssetLossRecord)), 1)
        service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        self.assertEqual(self._rows(AssetLossRecord), [])

        service.report_asset_loss(self.db, self.agent, "laptop", DAY, "reported again", self.actor)
        service.book_out(self.db, self.agent, "laptop", DAY, "returned", None, self.actor)
        self.assertEqual(self._rows(AssetLossRecord), [])

    def test_mark_found_removes_loss_record_and_resolves_incidents(self):
        service.book_in(self.db, self.agent, "dongle", DAY, "collected", None, self.actor)
        service.book_out(self.db, self.agent, "dongle", DAY, "lost", None, self.actor)
        add_incident(
            self.db,
            user_id=self.agent,
            asset_type="dongle",
            incident_type="lost",
            description="Lost at book out",
            reported_by=self.actor,
        )
        self.db.commit()

        service.mark_found(self.db, self.agent, "dongle", DAY, "returned by security", self.actor)

        self.assertEqual(self._rows(AssetLossRecord), [])
        incidents = list_incidents(self.db, user_id=self.agent)
        self.assertEqual([item.Status for item in incidents], ["resolved"])
        self.assertIn("returned by security", incidents[0].Resolution)

    def test_mark_found_requires_problem_state_and_reason(self):
        service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        with self.assertRaises(ValidationError):
            service.mark_found(self.db, self.agent, "laptop", DAY, "found", self.actor)
        with self.assertRaises(ValidationError):
            service.mark_found(self.db, self.agent, "laptop", DAY, "  ", self.actor)

    def test_snapshot_failure_does_not_fail_booking(self):
        with mock.patch.object(snapshot_service, "sync_historical_record", side_effect=RuntimeError("boom")):
            row = service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        self.assertEqual(row.CurrentState, "collected")
        self.assertEqual(len(self._rows(AssetDailyState)), 1)
        self.assertEqual(self._rows(HistoricalAssetRecord), [])

    def test_commit_failure_is_persistence_error(self):
        with mock.patch.object(self.db, "commit", side_effect=SQLAlchemyError("store unreachable")):
            with self.assertRaises(PersistenceError):
                service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        self.assertEqual(self._rows(AssetDailyState), [])

    def test_snapshot_rebuilt_after_booking(self):
        service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        records = self._rows(HistoricalAssetRecord)
        self.assertEqual([item.Date for item in records], [DAY.isoformat()])

    def test_reset_agent_day_wipes_states_and_records_maintenance(self):
        service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        service.book_in(self.db, self.agent, "headsets", DAY, "not_collected", None, self.actor)

        result = service.reset_agent_day(self.db, self.agent, DAY, self.users.leader.UserID, PASSWORD)

        self.assertEqual(result["statesReset"], 2)
        self.assertEqual(result["resetBy"], "leader")
        self.assertEqual(service.get_states_for_user_and_date(self.db, self.agent, DAY), [])
        audits = self._rows(AssetStateAudit)
        self.assertEqual(len(audits), 2)
        self.assertTrue(all(item.DailyStateID is None for item in audits))
        self.assertTrue(all(item.NewState == "ready_for_collection" for item in audits))
        incidents = self._rows(AssetIncident)
        self.assertEqual(len(incidents), 2)
        self.assertTrue(all(item.IncidentType == "maintenance" and item.Status == "resolved" for item in incidents))
        self.assertTrue(any("Previous state was: collected" in item.Description for item in incidents))

        row = service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        self.assertEqual(row.CurrentState, "collected")

    def test_reset_agent_day_checks(self):
        service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        with self.assertRaises(ReauthenticationError):
            service.reset_agent_day(self.db, self.agent, DAY, self.users.leader.UserID, "wrong")
        with self.assertRaises(AuthorizationError):
            service.reset_agent_day(self.db, self.agent, DAY, self.users.admin.UserID, PASSWORD)
        with self.assertRaises(AuthorizationError):
            service.reset_agent_day(self.db, self.users.outsider.UserID, DAY, self.users.leader.UserID, PASSWORD)
        with self.assertRaises(NotFoundError):
            service.reset_agent_day(self.db, "missing-user", DAY, self.users.leader.UserID, PASSWORD)
        self.assertEqual(len(service.get_states_for_user_and_date(self.db, self.agent, DAY)), 1)

    def test_unreturned_assets_lists_lost_and_not_returned(self):
        other = self.users.other_agent.UserID
        service.book_in(self.db, self.agent, "laptop", DAY, "collected", None, self.actor)
        service.book_out(self.db, self.agent, "laptop", DAY, "lost", "stolen", self.actor)
        service.book_in(self.db, other, "headsets", DAY, "collected", None, self.actor)
        service.book_out(self.db, other, "headsets", DAY, "not_returned", None, self.actor)

        items = service.get_unreturned_assets(self.db)
        self.assertEqual(
            [(item["agentName"], item["assetType"], item["status"]) for item in items],
            [("Alice Agent", "laptop", "Lost"), ("Bob Builder", "headsets", "Not Returned Yet")],
        )
        self.assertTrue(service.has_unreturned_assets(self.db, self.agent))
        self.assertTrue(service.has_unreturned_assets(self.db, other))
        self.assertFalse(service.has_unreturned_assets(self.db, self.users.outsider.UserID))

    def test_loss_record_listing_and_delete(self):
        service.report_asset_loss(self.db, self.agent, "dongle", DAY, "dropped", self.actor)
        service.report_asset_loss(self.db, self.agent, "dongle", DAY, "dropped twice", self.actor)
        records = service.list_asset_loss_records(self.db, DAY)
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].Reason, "dropped twice")
        self.assertEqual(service.list_asset_loss_records(self.db, date(2024, 6, 2)), [])

        removed = service.delete_asset_loss_record(self.db, self.agent, "dongle", DAY)
        self.assertEqual(removed, 1)
        self.assertEqual(service.list_asset_loss_records(self.db), [])

    def test_resolve_incident_is_one_way(self):
        incident = add_incident(
            self.db,
            user_id=self.agent,
            asset_type="laptop",
            incident_type="other",
            description="Cracked screen",
            reported_by=self.actor,
        )
        self.db.commit()
        resolve_incident(self.db, incident.IncidentID, "Replaced screen", self.actor)
        self.db.expire_all()
        self.assertEqual(self.db.get(AssetIncident, incident.IncidentID).Status, "resolved")
        with self.assertRaises(ValidationError):
            resolve_incident(self.db, incident.IncidentID, "Again", self.actor)
        with self.assertRaises(NotFoundError):
            resolve_incident(self.db, "missing", "x", self.actor)

    def test_resolve_incident_commit_failure_is_persistence_error(self):
        incident = add_incident(
            self.db,
            user_id=self.agent,
            asset_type="laptop",
            incident_type="other",
            description="Cracked screen",
            reported_by=self.actor,
        )
        self.db.commit()
        with mock.patch.object(self.db, "commit", side_effect=SQLAlchemyError("store unreachable")):
            with self.assertRaises(PersistenceError):
                resolve_incident(self.db, incident.IncidentID, "Replaced screen", self.actor)
        stored = self.db.get(AssetIncident, incident.IncidentID)
        self.assertEqual(stored.Status, "open")
        self.assertIsNone(stored.Resolution)


if __name__ == "__main__":
    unittest.main()
