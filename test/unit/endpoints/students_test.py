"""Unit tests for the students router."""

# pylint: disable=missing-function-docstring, import-error
from datetime import timedelta

from api_case import ApiTestCase

from database import NOTIFICATIONS, STUDENTS, USERS, to_object_id, utcnow
from profiles import create_profile
from schemas import UserRole


def profile_payload(**overrides):
    payload = {
        "fiscal_code": "vrdlra05e41f205x",
        "date_of_birth": "2005-05-01T00:00:00",
        "phone": "3339876543",
        "address": "Corso Buenos Aires 12",
        "city": "Milano",
        "province": "mi",
        "postal_code": "20124",
    }
    payload.update(overrides)
    return payload


class StudentProfileTest(ApiTestCase):
    """Students completing their own registry data."""

    def setUp(self):
        super().setUp()
        self.admin = self.make_user(UserRole.ADMIN, name="Admin")
        self.student = self.make_user(name="Laura Verdi")
        create_profile(self.db, self.student, UserRole.STUDENT.value)
        self.headers = self.auth(self.student, UserRole.STUDENT)

    def complete(self, headers=None, **overrides):
        return self.client.post("/students/profile/complete", json=profile_payload(**overrides),
                                headers=headers or self.headers)

    def test_complete_profile_marks_user_and_notifies_admins(self):
        response = self.complete()

        self.assertEqual(response.status_code, 200)
        profile = self.db[STUDENTS].find_one({"user_id": self.student})
        self.assertEqual(profile["fiscal_code"], "VRDLRA05E41F205X")
        self.assertEqual(profile["province"], "MI")
        self.assertTrue(self.db[USERS].find_one({"_id": to_object_id(self.student)})["profile_completed"])
        notification = self.db[NOTIFICATIONS].find_one({"user_id": self.admin})
        self.assertEqual(notification["type"], "PROFILE_COMPLETED")
        self.assertEqual(notification["link_url"], f"/admin/studenti/{self.student}")

    def test_completed_student_leaves_pending_profile_filter(self):
        self.complete()

        body = self.client.get("/users", params={"status": "PENDING_PROFILE"},
                               headers=self.auth(self.admin, UserRole.ADMIN)).json()

        self.assertNotIn(self.student, [u["id"] for u in body["users"]])

    def test_students_may_be_younger_than_staff(self):
        fifteen = (utcnow() - timedelta(days=15 * 366)).isoformat()
        twelve = (utcnow() - timedelta(days=12 * 366)).isoformat()

        self.assertEqual(self.complete(date_of_birth=fifteen).status_code, 200)
        self.assertEqual(self.complete(date_of_birth=twelve).status_code, 422)

    def test_fiscal_code_taken_by_another_student(self):
        other = self.make_user(name="Marco Neri")
        create_profile(self.db, other, UserRole.STUDENT.value)
        self.db[STUDENTS].update_one({"user_id": other}, {"$set": {"fiscal_code": "VRDLRA05E41F205X"}})

        response = self.complete()

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "CONFLICT")

    def test_only_students(self):
        collaborator = self.make_user(UserRole.COLLABORATOR, name="Carla")
        response = self.complete(headers=self.auth(collaborator, UserRole.COLLABORATOR))
        self.assertEqual(response.status_code, 403)

    def test_get_profile(self):
        body = self.client.get("/students/profile", headers=self.headers).json()
        self.assertTrue(body["matricola"].startswith("LS"))
