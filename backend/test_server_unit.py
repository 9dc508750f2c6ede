import json
import unittest

import httpx
from bson import ObjectId
from fastapi import Request
from fastapi.testclient import TestClient

import server
from duplication_service import RecordDuplicator


class FakeCollection:
    def __init__(self, docs):
        self.docs = docs
        self.queries = []

    async def find_one(self, query):
        self.queries.append(query)
        wanted = query["_id"]
        candidates = wanted["$in"] if isinstance(wanted, dict) else [wanted]
        for doc in self.docs:
            if doc["_id"] in candidates:
                return doc
        return None


class FakeDatabase:
    def __init__(self, collections):
        self.collections = collections

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection([]))


class TestDuplicateRoutes(unittest.TestCase):
    def setUp(self):
        self.posts = []
        self.responses = []
        self.student_id = ObjectId()
        self.db = FakeDatabase(
            {
                "students": FakeCollection(
                    [
                        {
                            "_id": self.student_id,
                            "studentCode": "S-0012",
                            "firstName": "Kiran",
                            "lastName": "Das",
                            "classOrBatch": "Grade 8",
                        }
                    ]
                )
            }
        )

        def handler(request: httpx.Request) -> httpx.Response:
            self.posts.append(request)
            status, body = self.responses.pop(0)
            return httpx.Response(status, json=body)

        transport = httpx.MockTransport(handler)

        def duplicator_override(request: Request) -> RecordDuplicator:
            return RecordDuplicator(
                "http://tuition.test",
                auth_token=server.extract_auth_token(request),
                transport=transport,
            )

        server.app.dependency_overrides[server.get_duplicator] = duplicator_override
        server.app.dependency_overrides[server.get_database] = lambda: self.db
        self.client = TestClient(server.app)

    def tearDown(self):
        server.app.dependency_overrides.clear()

    def test_health(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")
        self.assertIn("X-Request-ID", response.headers)

    def test_duplicate_posted_record(self):
        self.responses = [
            (400, {"error": "Email already exists"}),
            (201, {"success": True, "data": {"_id": "t9", "firstName": "Ravi (Copy)", "lastName": "Menon"}}),
        ]
        response = self.client.post(
            "/api/duplicate",
            json={
                "entityType": "Teacher",
                "record": {"_id": "t1", "teacherCode": "T-0001", "firstName": "Ravi", "lastName": "Menon", "email": "ravi@school.in"},
            },
            headers={"Authorization": "Bearer staff-token"},
        )
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["attempts"], 2)
        self.assertEqual(body["editPath"], "/teachers/t9/edit")
        self.assertEqual(body["message"], "Teacher Ravi (Copy) Menon duplicated successfully!")
        self.assertEqual(self.posts[0].headers["authorization"], "Bearer staff-token")
        self.assertEqual(json.loads(self.posts[1].content)["email"], "ravi_copy1@school.in")

    def test_validation_failure_returns_400(self):
        self.responses = [(400, {"error": "Validation failed", "details": {"parentPhone": "Parent phone is required"}})]
        response = self.client.post(
            "/api/duplicate",
            json={"entityType": "Student", "record": {"firstName": "Kiran"}},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json(),
            {"success": False, "error": "parentPhone: Parent phone is required", "attempts": 1},
        )
        self.assertEqual(len(self.posts), 1)

    def test_exhausted_conflict_returns_409(self):
        self.responses = [(400, {"error": "Email already exists"})] * 5
        response = self.client.post(
            "/api/duplicate",
            json={"entityType": "User", "record": {"name": "Ops", "email": "ops@school.in"}},
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["attempts"], 5)
        self.assertEqual(len(self.posts), 5)

    def test_unknown_entity_type_rejected(self):
        response = self.client.post("/api/duplicate", json={"entityType": "Vehicle", "record": {"name": "Bus"}})
        self.assertEqual(response.status_code, 400)
        self.assertIn("Unknown entity type", response.json()["detail"])
        self.assertEqual(self.posts, [])

    def test_duplicate_stored_record_by_id(self):
        self.responses = [(201, {"success": True, "data": {"_id": "s2", "studentCode": "S-0013"}})]
        self.client.cookies.set("token", "cookie-token")
        response = self.client.post(f"/api/duplicate/students/{self.student_id}")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["editPath"], "/students/s2/edit")
        sent = json.loads(self.posts[0].content)
        self.assertEqual(sent["firstName"], "Kiran (Copy)")
        self.assertNotIn("studentCode", sent)
        self.assertNotIn("_id", sent)
        self.assertEqual(self.posts[0].url.path, "/api/students")
        self.assertEqual(self.posts[0].headers["authorization"], "Bearer cookie-token")

    def test_duplicate_stored_record_missing(self):
        response = self.client.post(f"/api/duplicate/Student/{ObjectId()}")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.posts, [])


class TestServerHelpers(unittest.TestCase):
    def test_duplicate_settings_rejected_at_load(self):
        with self.assertRaises(RuntimeError) as ctx:
            server.check_duplicate_settings(0, 5.0)
        self.assertIn("DUPLICATE_MAX_ATTEMPTS", str(ctx.exception))
        with self.assertRaises(RuntimeError):
            server.check_duplicate_settings(5, 0)
        server.check_duplicate_settings(server.DUPLICATE_MAX_ATTEMPTS, server.DUPLICATE_TIMEOUT_SECONDS)

    def test_record_id_filter(self):
        oid = ObjectId()
        self.assertEqual(server.record_id_filter(str(oid)), {"_id": {"$in": [oid, str(oid)]}})
        self.assertEqual(server.record_id_filter("legacy-7"), {"_id": "legacy-7"})


if __name__ == "__main__":
    unittest.main()
