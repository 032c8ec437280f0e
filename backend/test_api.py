import base64
import shutil
import tempfile
import unittest
from datetime import datetime
from zoneinfo import ZoneInfo

from fastapi.testclient import TestClient

from constants import ActionType, Settings
from main import app, get_registry
from models import Action, Patient, Procedure, ScriptStage, TimingRule
from registry import TreatmentRegistry
from store import InMemoryStore, LocalMediaStorage

TZ = ZoneInfo("America/Sao_Paulo")

class TestFollowFlowAPI(unittest.TestCase):

    def setUp(self):
        self.media_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.media_dir, True)

        store = InMemoryStore()
        store.upsert_patient(Patient(id="pat-001", name="Ana Souza"))
        store.upsert_procedure(Procedure(
            id="proc-botox",
            name="Botox",
            scripts=(
                ScriptStage(index=1, title="Day 1", template="Hi #NomePaciente!",
                            actions=(Action(id="ice", description="Ice packs"),),
                            timing=TimingRule.delay(1, "days")),
                ScriptStage(index=2, title="Day 15", template="Photo please, [Nome]",
                            actions=(Action(id="ph", description="Photo", type=ActionType.PHOTO_REQUEST),),
                            timing=TimingRule.delay(15, "days")),
            ),
            has_survey=True,
        ))
        self.registry = TreatmentRegistry(
            store, store, store, store,
            media=LocalMediaStorage(self.media_dir),
            settings=Settings(clinic_name="Bella Clinic"),
            clock=lambda: datetime(2024, 3, 2, 8, 50, tzinfo=TZ),
        )
        app.dependency_overrides[get_registry] = lambda: self.registry
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

    def _create(self):
        response = self.client.post("/treatments", json={
            "patient_id": "pat-001", "procedure_id": "proc-botox", "started_at": "2024-03-01T09:00:00-03:00",
        })
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def _close_stage_one(self, tid):
        self.client.post(f"/treatments/{tid}/stages/1/checklist", json={"action_id": "ice"})
        self.client.post(f"/treatments/{tid}/stages/1/message-sent")
        return self.client.post(f"/treatments/{tid}/stages/1/response/confirm", json={"responded": False})

    def test_01_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "active")

    def test_02_create_and_fetch(self):
        """[API] Created treatment exposes derived active stage"""
        body = self._create()
        self.assertEqual((body["active_stage"], body["progress"], body["status"]), (1, 0, "active"))
        self.assertFalse(body["can_advance"])

        fetched = self.client.get(f"/treatments/{body['id']}").json()
        self.assertEqual(fetched["id"], body["id"])
        listed = self.client.get("/patients/pat-001/treatments").json()
        self.assertEqual([t["id"] for t in listed], [body["id"]])

    def test_03_error_mapping(self):
        """[API] Engine errors map onto HTTP status codes"""
        tid = self._create()["id"]
        self.assertEqual(self.client.get("/treatments/nope").status_code, 404)
        self.assertEqual(self.client.post("/treatments", json={
            "patient_id": "pat-001", "procedure_id": "proc-botox"}).status_code, 409)
        self.assertEqual(self.client.post("/treatments", json={
            "patient_id": "ghost", "procedure_id": "proc-botox"}).status_code, 404)

        blocked = self.client.post(f"/treatments/{tid}/advance")
        self.assertEqual(blocked.status_code, 409)
        self.assertIn("patient response not recorded", blocked.json()["missing"])

        self.assertEqual(self.client.post(f"/treatments/{tid}/stages/2/photo-request").status_code, 409)
        self.assertEqual(self.client.post(f"/treatments/{tid}/survey/send").status_code, 409)
        self.assertEqual(self.client.post(f"/treatments/{tid}/stages/1/checklist",
                                          json={"action_id": "nope"}).status_code, 422)
        self.assertEqual(self.client.delete(f"/treatments/{tid}").status_code, 428)

        stale = self.client.post(f"/treatments/{tid}/stages/1/checklist",
                                 json={"action_id": "ice", "expected_version": 99})
        self.assertEqual(stale.status_code, 409)
        self.assertTrue(stale.json()["retryable"])

    def test_04_walk_through_api(self):
        """[API] Stage 1 -> stage 2 with photo upload -> completed -> survey"""
        tid = self._create()["id"]
        self.assertTrue(self._close_stage_one(tid).json()["can_advance"])
        advanced = self.client.post(f"/treatments/{tid}/advance", json={}).json()
        self.assertEqual((advanced["active_stage"], advanced["progress"]), (2, 50))

        self.client.post(f"/treatments/{tid}/stages/2/photo-request")
        upload = self.client.post(f"/treatments/{tid}/stages/2/photo-upload", json={
            "filename": "day15.jpg", "content_base64": base64.b64encode(b"jpeg").decode(),
        })
        self.assertEqual(upload.status_code, 200, upload.text)
        self.assertEqual(upload.json()["stage_data"]["stage2"]["photo_status"], "received")

        self.client.post(f"/treatments/{tid}/stages/2/response/begin")
        self.client.post(f"/treatments/{tid}/stages/2/response/confirm", json={"responded": True})
        self.client.post(f"/treatments/{tid}/stages/2/response/content", json={"content": "Looks great"})
        done = self.client.post(f"/treatments/{tid}/advance").json()
        self.assertEqual((done["status"], done["progress"]), ("completed", 100))

        self.assertIn("Hello Ana!", self.client.get(f"/treatments/{tid}/survey/message").json()["text"])
        self.assertEqual(self.client.post(f"/treatments/{tid}/survey/send").json()["survey"]["status"], "sent")
        bad = self.client.post(f"/treatments/{tid}/survey/response", json={"rating": 9})
        self.assertEqual(bad.status_code, 422)
        survey = self.client.post(f"/treatments/{tid}/survey/response", json={"rating": 4}).json()["survey"]
        self.assertEqual((survey["status"], survey["rating"]), ("responded", 4))

        actions = [e["action"] for e in self.client.get(f"/treatments/{tid}/logs").json()]
        self.assertEqual(sorted(set(actions)),
                         ["manual_message_registered", "photo_request_registered", "task_completed"])

    def test_05_bad_base64(self):
        tid = self._create()["id"]
        response = self.client.post(f"/treatments/{tid}/stages/1/photo-upload", json={
            "filename": "x.jpg", "content_base64": "***not base64***",
        })
        self.assertEqual(response.status_code, 422)

    def test_06_stages_and_messages(self):
        tid = self._create()["id"]
        stages = self.client.get(f"/treatments/{tid}/stages").json()
        self.assertEqual([s["state"] for s in stages], ["active", "future"])
        self.assertEqual(stages[0]["sla"], "warning")
        self.assertEqual(stages[0]["due_label"], "Today at 09:00")

        message = self.client.get(f"/treatments/{tid}/stages/2/message").json()
        self.assertEqual(message["text"], "Photo please, Ana Souza")

    def test_07_dashboard(self):
        self._create()
        body = self.client.get("/dashboard").json()
        self.assertEqual(body["stats"], {"total_patients": 1, "total_open_protocols": 1, "due_today": 1, "overdue": 0})
        self.assertEqual(body["rows"][0]["status"], "due_today")
        self.assertEqual(self.client.get("/dashboard", params={"status": "late"}).json()["rows"], [])
        self.assertEqual(self.client.get("/dashboard", params={"status": "bogus"}).status_code, 422)

    def test_08_confirmed_delete(self):
        tid = self._create()["id"]
        response = self.client.delete(f"/treatments/{tid}", params={"confirmed": "true"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get(f"/treatments/{tid}").status_code, 404)
        self.assertEqual(self.client.get(f"/treatments/{tid}/logs").status_code, 404)

if __name__ == '__main__':
    unittest.main()
