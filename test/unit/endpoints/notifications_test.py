"""Unit tests for the notifications router."""

# pylint: disable=missing-function-docstring, import-error
from datetime import timedelta

from api_case import ApiTestCase

from database import NOTIFICATIONS, PREFERENCES, USERS, to_object_id, utcnow
from notifier import create_bulk_notifications
from schemas import NotificationType, UserRole


class NotificationsRouterTest(ApiTestCase):
    """Reading, state changes, preferences and admin tools."""

    def setUp(self):
        super().setUp()
        self.admin = self.make_user(UserRole.ADMIN, name="Admin")
        self.student = self.make_user(name="Sara")
        self.other = self.make_user(name="Ugo")
        self.headers = self.auth(self.student, UserRole.STUDENT)

    def notify(self, user_id=None, title="Titolo", **kwargs):
        create_bulk_notifications(self.db, [user_id or self.student], NotificationType.GENERAL, title, "Messaggio",
                                  **kwargs)
        return str(self.db[NOTIFICATIONS].find_one({"title": title})["_id"])

    def test_list_puts_urgent_first_and_counts_unread(self):
        self.notify(title="Normale")
        self.notify(title="Urgente", is_urgent=True)
        self.notify(user_id=self.other, title="Altrui")

        body = self.client.get("/notifications", headers=self.headers).json()

        self.assertEqual([n["title"] for n in body["notifications"]], ["Urgente", "Normale"])
        self.assertEqual(body["unread_count"], 2)

    def test_expired_notifications_are_hidden_even_when_searching(self):
        self.notify(title="Scaduta", expires_at=utcnow() - timedelta(days=1))
        self.notify(title="Valida")

        body = self.client.get("/notifications", params={"search": "a"}, headers=self.headers).json()

        self.assertEqual([n["title"] for n in body["notifications"]], ["Valida"])

    def test_listing_unread_count_skips_expired(self):
        self.notify(title="Scaduta", expires_at=utcnow() - timedelta(days=1))
        self.notify(title="Valida")

        body = self.client.get("/notifications", headers=self.headers).json()
        counts = self.client.get("/notifications/unread-count", headers=self.headers).json()

        self.assertEqual(body["unread_count"], 1)
        self.assertEqual(body["unread_count"], counts["count"])

    def test_read_single_and_ownership(self):
        mine = self.notify()
        theirs = self.notify(user_id=self.other, title="Altrui")

        self.client.post(f"/notifications/{mine}/read", headers=self.headers)

        self.assertTrue(self.db[NOTIFICATIONS].find_one({"_id": to_object_id(mine)})["is_read"])
        self.assertEqual(self.client.get(f"/notifications/{theirs}", headers=self.headers).status_code, 403)
        self.assertEqual(self.client.get("/notifications/xyz", headers=self.headers).status_code, 404)

    def test_bulk_actions_only_touch_own(self):
        mine = self.notify()
        theirs = self.notify(user_id=self.other, title="Altrui")

        self.client.post("/notifications/archive", json={"ids": [mine, theirs]}, headers=self.headers)

        self.assertTrue(self.db[NOTIFICATIONS].find_one({"_id": to_object_id(mine)})["is_archived"])
        self.assertFalse(self.db[NOTIFICATIONS].find_one({"_id": to_object_id(theirs)})["is_archived"])

    def test_read_all_and_unread_count(self):
        self.notify(title="Uno")
        self.notify(title="Due", is_urgent=True)
        self.assertEqual(self.client.get("/notifications/unread-count", headers=self.headers).json(),
                         {"count": 2, "urgent_count": 1})

        self.client.post("/notifications/read-all", headers=self.headers)

        self.assertEqual(self.client.get("/notifications/unread-count", headers=self.headers).json()["count"], 0)

    def test_delete_archived(self):
        nid = self.notify()
        self.client.post("/notifications/archive", json={"ids": [nid]}, headers=self.headers)

        self.client.delete("/notifications/archived", headers=self.headers)

        self.assertEqual(self.db[NOTIFICATIONS].count_documents({}), 0)

    def test_preferences_upsert_and_reset(self):
        response = self.client.put("/notifications/preferences", json={
            "notification_type": "GENERAL", "email_enabled": False, "quiet_hours_start": "22:00",
            "quiet_hours_end": "07:00",
        }, headers=self.headers)

        self.assertEqual(response.status_code, 200)
        pref = self.db[PREFERENCES].find_one({"user_id": self.student, "notification_type": "GENERAL"})
        self.assertFalse(pref["email_enabled"])
        self.assertTrue(pref["in_app_enabled"])

        self.client.post("/notifications/preferences/reset", headers=self.headers)
        self.assertEqual(self.db[PREFERENCES].count_documents({"user_id": self.student}), 0)

    def test_null_switch_keeps_in_app_delivery(self):
        response = self.client.put("/notifications/preferences", json={
            "notification_type": "GENERAL", "in_app_enabled": None, "email_enabled": None,
        }, headers=self.headers)

        self.assertEqual(response.status_code, 200)
        pref = self.db[PREFERENCES].find_one({"user_id": self.student, "notification_type": "GENERAL"})
        self.assertTrue(pref["in_app_enabled"])
        self.assertTrue(pref["email_enabled"])
        self.client.post("/notifications/send", json={"user_id": self.student, "title": "Avviso", "message": "Testo"},
                         headers=self.auth(self.admin, UserRole.ADMIN))
        self.assertEqual(self.db[NOTIFICATIONS].count_documents({"user_id": self.student}), 1)

    def test_quiet_hours_can_be_cleared(self):
        self.client.put("/notifications/preferences", json={
            "notification_type": "GENERAL", "quiet_hours_start": "22:00", "quiet_hours_end": "07:00",
        }, headers=self.headers)

        self.client.put("/notifications/preferences/bulk", json={"preferences": [{
            "notification_type": "GENERAL", "quiet_hours_start": None, "quiet_hours_end": None, "in_app_enabled": None,
        }]}, headers=self.headers)

        pref = self.db[PREFERENCES].find_one({"user_id": self.student, "notification_type": "GENERAL"})
        self.assertIsNone(pref["quiet_hours_start"])
        self.assertIsNone(pref["quiet_hours_end"])
        self.assertTrue(pref["in_app_enabled"])

    def test_bad_quiet_hours_fail_validation(self):
        response = self.client.put("/notifications/preferences", json={
            "notification_type": "GENERAL", "quiet_hours_start": "25:00",
        }, headers=self.headers)
        self.assertEqual(response.status_code, 422)

    def test_disable_all_emails(self):
        self.client.post("/notifications/preferences/disable-emails", headers=self.headers)

        prefs = list(self.db[PREFERENCES].find({"user_id": self.student}))
        self.assertEqual(len(prefs), len(NotificationType))
        self.assertTrue(all(not p["email_enabled"] for p in prefs))

    def test_push_token(self):
        self.client.post("/notifications/push-token", json={"token": "ExponentPushToken[abc]"}, headers=self.headers)
        user = self.db[USERS].find_one({"_id": to_object_id(self.student)})
        self.assertEqual(user["expo_push_token"], "ExponentPushToken[abc]")

    def test_admin_send_by_role(self):
        response = self.client.post("/notifications/send", json={
            "role": "STUDENT", "title": "Avviso", "message": "Scuola chiusa",
        }, headers=self.auth(self.admin, UserRole.ADMIN))

        self.assertEqual(response.json()["count"], 2)

    def test_admin_send_requires_recipient(self):
        response = self.client.post("/notifications/send", json={"title": "Avviso", "message": "Testo"},
                                    headers=self.auth(self.admin, UserRole.ADMIN))
        self.assertEqual(response.status_code, 400)

    def test_send_is_admin_only(self):
        response = self.client.post("/notifications/send", json={"user_id": self.other, "title": "T", "message": "M"},
                                    headers=self.headers)
        self.assertEqual(response.status_code, 403)

    def test_cleanup_only_old_read(self):
        old = self.notify(title="Vecchia")
        self.notify(title="Recente")
        self.db[NOTIFICATIONS].update_many({}, {"$set": {"is_read": True}})
        self.db[NOTIFICATIONS].update_one({"_id": to_object_id(old)},
                                          {"$set": {"created_at": utcnow() - timedelta(days=120)}})

        response = self.client.post("/notifications/cleanup", json={"older_than_days": 90},
                                    headers=self.auth(self.admin, UserRole.ADMIN))

        self.assertEqual(response.json()["deleted_count"], 1)
        self.assertEqual(self.db[NOTIFICATIONS].count_documents({}), 1)
