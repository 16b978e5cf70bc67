import sys
import unittest
from datetime import datetime
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from lifecycle_test_support import PASSWORD, auth_headers, build_session_factory, seed_directory

from fastapi.testclient import TestClient

import AssetLifecycle as app_module
from services.scheduler_service import DailyResetScheduler


class AssetRouteTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.factory = build_session_factory()
        seed_db = self.factory()
        try:
            self.users = seed_directory(seed_db)
        finally:
            seed_db.close()

        def override_db():
            db = self.factory()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_asset_db] = override_db
        self.original_scheduler = app_module.daily_reset_scheduler
        app_module.daily_reset_scheduler = DailyResetScheduler(
            self.factory,
            clock=lambda: datetime(2024, 6, 2, 9, 0),
        )
        self.client = TestClient(app_module.app)
        self.admin = auth_headers(self.users.admin)
        self.hr = auth_headers(self.users.hr)
        self.leader = auth_headers(self.users.leader)
        self.agent = auth_headers(self.users.agent)

    def tearDown(self):
        app_module.daily_reset_scheduler.stop()
        app_module.daily_reset_scheduler = self.original_scheduler
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()

    def _book(self, path, status, headers=None, asset_type="laptop", day="2024-06-01", **extra):
        body = {"userId": self.users.agent.UserID, "assetType": asset_type, "date": day, "status": status}
        body.update(extra)
        return self.client.post(path, json=body, headers=headers or self.leader)

    def test_healthchecks(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_requires_login(self):
        response = self.client.post("/api/assets/book-in", json={})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"], "Not logged in.")
        self.assertEqual(self.client.get("/api/assets/unreturned").status_code, 401)

    def test_logout_revokes_session_token(self):
        headers = auth_headers(self.users.hr)
        me_before = self.client.get("/api/auth/me", headers=headers)
        self.assertEqual(me_before.status_code, 200)
        self.assertEqual(me_before.json()["user"]["role"], "hr")

        logout = self.client.post("/api/auth/logout", headers=headers)
        self.assertEqual(logout.status_code, 200)

        me_after = TestClient(app_module.app).get("/api/auth/me", headers=headers)
        self.assertEqual(me_after.status_code, 401)

    def test_agent_cannot_book_assets(self):
        response = self._book("/api/assets/book-in", "collected", headers=self.agent)
        self.assertEqual(response.status_code, 403)

    def test_booking_flow(self):
        booked_in = self._book("/api/assets/book-in", "collected")
        self.assertEqual(booked_in.status_code, 200)
        self.assertEqual(booked_in.json()["currentState"], "collected")
        self.assertEqual(booked_in.json()["confirmedBy"], self.users.leader.UserID)

        booked_out = self._book("/api/assets/book-out", "not_returned")
        self.assertEqual(booked_out.status_code, 200)
        self.assertEqual(booked_out.json()["currentState"], "not_returned")

        unreturned = self.client.get(f"/api/assets/unreturned/user/{self.users.agent.UserID}", headers=self.agent)
        self.assertEqual(unreturned.json(), {"hasUnreturnedAssets": True})

        found = self.client.post(
            "/api/assets/mark-found",
            json={
                "userId": self.users.agent.UserID,
                "assetType": "laptop",
                "date": "2024-06-01",
                "recoveryReason": "found under desk",
            },
            headers=self.hr,
        )
        self.assertEqual(found.status_code, 200)
        self.assertEqual(found.json()["currentState"], "returned")

        audit = self.client.get(f"/api/assets/state-audit/{self.users.agent.UserID}", headers=self.agent)
        self.assertEqual(audit.status_code, 200)
        self.assertEqual([item["newState"] for item in audit.json()][0], "returned")
        self.assertEqual(len(audit.json()), 3)

        states = self.client.get(
            f"/api/assets/daily-states/user/{self.users.agent.UserID}/date/2024-06-01",
            headers=self.agent,
        )
        self.assertEqual([item["currentState"] for item in states.json()], ["returned"])

        history = self.client.get("/api/historical-asset-records", params={"date": "2024-06-01"}, headers=self.admin)
        self.assertEqual(history.status_code, 200)
        self.assertEqual(history.json()[0]["bookOutRecords"][self.users.agent.UserID]["laptop"], "returned")

    def test_book_out_without_book_in_is_400(self):
        response = self._book("/api/assets/book-out", "returned")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Asset must be collected before it can be booked out")

    def test_unknown_user_is_404(self):
        response = self.client.post(
            "/api/assets/book-in",
            json={"userId": "nobody", "assetType": "laptop", "date": "2024-06-01", "status": "collected"},
            headers=self.leader,
        )
        self.assertEqual(response.status_code, 404)

    def test_malformed_date_is_rejected(self):
        response = self._book("/api/assets/book-in", "collected", day="06/01/2024")
        self.assertEqual(response.status_code, 422)
        status = self.client.get("/api/assets/daily-reset/status/not-a-date", headers=self.admin)
        self.assertEqual(status.status_code, 422)

    def test_other_agents_data_is_forbidden_to_agents(self):
        response = self.client.get(f"/api/assets/state-audit/{self.users.other_agent.UserID}", headers=self.agent)
        self.assertEqual(response.status_code, 403)

    def test_reset_agent_checks(self):
        self._book("/api/assets/book-in", "collected")
        payload = {"agentId": self.users.agent.UserID, "password": PASSWORD, "date": "2024-06-01"}

        self.assertEqual(self.client.post("/api/assets/reset-agent", json=payload, headers=self.admin).status_code, 403)
        wrong = self.client.post("/api/assets/reset-agent", json={**payload, "password": "nope"}, headers=self.leader)
        self.assertEqual(wrong.status_code, 400)
        self.assertEqual(wrong.json()["detail"], "Invalid password")
        outsider = self.client.post(
            "/api/assets/reset-agent",
            json={**payload, "agentId": self.users.outsider.UserID},
            headers=self.leader,
        )
        self.assertEqual(outsider.status_code, 403)

        response = self.client.post("/api/assets/reset-agent", json=payload, headers=self.leader)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["statesReset"], 1)

    def test_daily_reset_routes(self):
        self._book("/api/assets/book-in", "collected")
        self.assertEqual(
            self.client.post("/api/assets/daily-reset", json={"date": "2024-06-02"}, headers=self.leader).status_code,
            403,
        )

        first = self.client.post("/api/assets/daily-reset", json={"date": "2024-06-02"}, headers=self.hr)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["resetCount"], 1)
        self.assertEqual(first.json()["incidentsCreated"], 1)

        second = self.client.post("/api/assets/daily-reset", json={"date": "2024-06-02"}, headers=self.hr)
        self.assertEqual(second.json()["resetCount"], 0)
        self.assertTrue(second.json()["skipped"])

        status = self.client.get("/api/assets/daily-reset/status/2024-06-02", headers=self.leader)
        self.assertEqual(status.status_code, 200)
        self.assertTrue(status.json()["resetPerformed"])

        incidents = self.client.get("/api/assets/incidents", params={"status": "open"}, headers=self.leader)
        self.assertEqual(len(incidents.json()), 1)
        incident_id = incidents.json()[0]["incidentID"]

        resolved = self.client.post(
            f"/api/assets/incidents/{incident_id}/resolve",
            json={"resolution": "Agent returned it next morning"},
            headers=self.leader,
        )
        self.assertEqual(resolved.status_code, 200)
        self.assertEqual(resolved.json()["status"], "resolved")
        again = self.client.post(
            f"/api/assets/incidents/{incident_id}/resolve",
            json={"resolution": "Twice"},
            headers=self.leader,
        )
        self.assertEqual(again.status_code, 400)

        pending = self.client.get("/api/notifications/pending", headers=self.admin)
        self.assertEqual([item["notificationType"] for item in pending.json()], ["AssetNotReturned"])

    def test_scheduler_routes(self):
        self._book("/api/assets/book-in", "collected")
        status = self.client.get("/api/assets/daily-reset/scheduler/status", headers=self.admin)
        self.assertEqual(status.status_code, 200)
        self.assertFalse(status.json()["isRunning"])
        self.assertEqual(status.json()["resetHour"], 1)

        self.assertEqual(
            self.client.post("/api/assets/daily-reset/scheduler/trigger", json={}, headers=self.agent).status_code,
            403,
        )
        triggered = self.client.post("/api/assets/daily-reset/scheduler/trigger", json={}, headers=self.hr)
        self.assertEqual(triggered.status_code, 200)
        body = triggered.json()
        self.assertEqual(body["date"], "2024-06-02")
        self.assertEqual(body["triggeredBy"], "hr")
        self.assertEqual(body["incidentsCreated"], 1)

    def test_auto_reset_is_admin_only(self):
        self.assertEqual(self.client.post("/api/assets/daily-reset/auto", headers=self.hr).status_code, 403)
        response = self.client.post("/api/assets/daily-reset/auto", headers=self.admin)
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["automated"])
        self.assertEqual(response.json()["processedDate"], response.json()["date"])

    def test_asset_loss_routes(self):
        body = {"userId": self.users.agent.UserID, "assetType": "headsets", "dateLost": "2024-06-01", "reason": "left in taxi"}
        self.assertEqual(self.client.post("/api/asset-loss", json=body, headers=self.agent).status_code, 403)

        created = self.client.post("/api/asset-loss", json=body, headers=self.leader)
        self.assertEqual(created.status_code, 200)
        self.assertEqual(created.json()["status"], "reported")

        listed = self.client.get("/api/asset-loss", params={"date": "2024-06-01"}, headers=self.hr)
        self.assertEqual(len(listed.json()), 1)

        unreturned = self.client.get("/api/assets/unreturned", headers=self.hr)
        self.assertEqual([item["status"] for item in unreturned.json()], ["Lost"])

        removed = self.client.request(
            "DELETE",
            "/api/asset-loss",
            json={"userId": self.users.agent.UserID, "assetType": "headsets", "date": "2024-06-01"},
            headers=self.admin,
        )
        self.assertEqual(removed.json(), {"success": True, "removed": 1})
        self.assertEqual(self.client.get("/api/asset-loss", headers=self.hr).json(), [])


if __name__ == "__main__":
    unittest.main()
