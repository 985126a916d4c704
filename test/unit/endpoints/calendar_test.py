"""Unit tests for the groups and calendar routers."""

# pylint: disable=missing-function-docstring, import-error
from datetime import datetime, timedelta

from api_case import ApiTestCase

from database import ATTENDANCES, EVENTS, INVITATIONS, NOTIFICATIONS, to_object_id, utcnow
from routers.calendar import month_bounds
from schemas import UserRole

START = datetime(2030, 5, 10, 9, 0)


class GroupsRouterTest(ApiTestCase):
    """Group membership."""

    def setUp(self):
        super().setUp()
        self.collaborator = self.make_user(UserRole.COLLABORATOR, name="Carla")
        self.student = self.make_user(name="Sara")
        self.headers = self.auth(self.collaborator, UserRole.COLLABORATOR)

    def test_create_group_notifies_members(self):
        response = self.client.post("/groups", json={"name": "Medicina A", "member_ids": [self.student, "bogus"]},
                                    headers=self.headers)

        gid = response.json()["id"]
        detail = self.client.get(f"/groups/{gid}", headers=self.headers).json()
        self.assertEqual(detail["member_ids"], [self.student])
        self.assertEqual(self.db[NOTIFICATIONS].find_one({"user_id": self.student})["type"], "GROUP_MEMBER_ADDED")

    def test_students_cannot_create_groups(self):
        response = self.client.post("/groups", json={"name": "X"}, headers=self.auth(self.student, UserRole.STUDENT))
        self.assertEqual(response.status_code, 403)

    def test_add_members_skips_existing(self):
        gid = self.client.post("/groups", json={"name": "G", "member_ids": [self.student]}, headers=self.headers).json()["id"]
        other = self.make_user(name="Luca")

        response = self.client.post(f"/groups/{gid}/members", json={"user_ids": [self.student, other]},
                                    headers=self.headers)

        self.assertEqual(response.json()["added"], 1)

    def test_collaborator_sees_only_own_groups(self):
        admin = self.make_user(UserRole.ADMIN, name="Admin")
        self.client.post("/groups", json={"name": "Altro"}, headers=self.auth(admin, UserRole.ADMIN))
        self.client.post("/groups", json={"name": "Mio", "referent_id": self.collaborator}, headers=self.headers)

        names = [g["name"] for g in self.client.get("/groups", headers=self.headers).json()]

        self.assertEqual(names, ["Mio"])


class CalendarRouterTest(ApiTestCase):
    """Events, invitations, attendance and staff absences."""

    def setUp(self):
        super().setUp()
        self.admin = self.make_user(UserRole.ADMIN, name="Admin")
        self.collaborator = self.make_user(UserRole.COLLABORATOR, name="Carla")
        self.other_collaborator = self.make_user(UserRole.COLLABORATOR, name="Dario")
        self.student = self.make_user(name="Sara")
        self.outsider = self.make_user(name="Ugo")
        self.staff = self.auth(self.collaborator, UserRole.COLLABORATOR)

    def create_event(self, **overrides):
        payload = {
            "title": "Lezione di biologia",
            "type": "LESSON",
            "start_date": START.isoformat(),
            "end_date": (START + timedelta(hours=2)).isoformat(),
            "invited_user_ids": [self.student],
        }
        payload.update(overrides)
        return self.client.post("/calendar/events", json=payload, headers=self.staff)

    def test_create_event_invites_and_notifies(self):
        response = self.create_event()

        self.assertEqual(response.json()["invited"], 1)
        eid = response.json()["id"]
        self.assertEqual(self.db[INVITATIONS].count_documents({"event_id": eid}), 1)
        self.assertEqual(self.db[NOTIFICATIONS].find_one({"user_id": self.student})["type"], "EVENT_INVITATION")

    def test_end_before_start(self):
        response = self.create_event(end_date=(START - timedelta(hours=1)).isoformat())
        self.assertEqual(response.status_code, 400)

    def test_online_link_must_be_url(self):
        response = self.create_event(online_link="meet.example.com")
        self.assertEqual(response.status_code, 422)

    def test_timezone_aware_dates_are_stored_as_utc(self):
        eid = self.create_event(start_date="2030-05-10T11:00:00+02:00",
                                end_date="2030-05-10T12:00:00+02:00").json()["id"]
        self.assertEqual(self.db[EVENTS].find_one({"_id": to_object_id(eid)})["start_date"], START)

    def test_student_visibility(self):
        invited = self.create_event().json()["id"]
        self.create_event(title="Riunione staff", invited_user_ids=[])
        public = self.create_event(title="Open day", is_public=True, invited_user_ids=[]).json()["id"]

        events = self.client.get("/calendar/events", headers=self.auth(self.student, UserRole.STUDENT)).json()["events"]

        self.assertEqual({e["id"] for e in events}, {invited, public})

    def test_invited_through_group(self):
        gid = self.client.post("/groups", json={"name": "G", "member_ids": [self.outsider]},
                               headers=self.staff).json()["id"]
        eid = self.create_event(invited_user_ids=[], invited_group_ids=[gid]).json()["id"]

        response = self.client.get(f"/calendar/events/{eid}", headers=self.auth(self.outsider, UserRole.STUDENT))

        self.assertEqual(response.status_code, 200)

    def test_student_cannot_read_private_event(self):
        eid = self.create_event(invited_user_ids=[]).json()["id"]
        response = self.client.get(f"/calendar/events/{eid}", headers=self.auth(self.student, UserRole.STUDENT))
        self.assertEqual(response.status_code, 403)

    def test_unknown_event(self):
        response = self.client.get("/calendar/events/ffffffffffffffffffffffff", headers=self.staff)
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"], "Evento non trovato")

    def test_only_creator_or_admin_can_update(self):
        eid = self.create_event().json()["id"]

        other = self.client.patch(f"/calendar/events/{eid}", json={"title": "X"},
                                  headers=self.auth(self.other_collaborator, UserRole.COLLABORATOR))
        admin = self.client.patch(f"/calendar/events/{eid}", json={"title": "Nuovo titolo"},
                                  headers=self.auth(self.admin, UserRole.ADMIN))

        self.assertEqual(other.status_code, 403)
        self.assertEqual(admin.json()["title"], "Nuovo titolo")
        self.assertEqual(self.db[NOTIFICATIONS].count_documents({"user_id": self.student, "type": "EVENT_UPDATED"}), 1)

    def test_cancel_hides_event_from_listing(self):
        eid = self.create_event().json()["id"]

        response = self.client.post(f"/calendar/events/{eid}/cancel", json={"reason": "Sciopero"}, headers=self.staff)

        self.assertTrue(response.json()["is_cancelled"])
        listing = self.client.get("/calendar/events", headers=self.staff).json()["events"]
        self.assertEqual(listing, [])
        notification = self.db[NOTIFICATIONS].find_one({"type": "EVENT_CANCELLED"})
        self.assertIn("Sciopero", notification["message"])
        self.assertTrue(notification["is_urgent"])

    def test_respond_to_invitation(self):
        eid = self.create_event().json()["id"]

        response = self.client.post(f"/calendar/events/{eid}/respond", json={"status": "ACCEPTED"},
                                    headers=self.auth(self.student, UserRole.STUDENT))
        not_invited = self.client.post(f"/calendar/events/{eid}/respond", json={"status": "ACCEPTED"},
                                       headers=self.auth(self.outsider, UserRole.STUDENT))

        self.assertEqual(response.json()["status"], "ACCEPTED")
        self.assertEqual(not_invited.status_code, 404)

    def test_attendance_upsert(self):
        eid = self.create_event().json()["id"]
        url = f"/calendar/events/{eid}/attendances"

        self.client.post(url, json={"student_id": self.student, "status": "ABSENT"}, headers=self.staff)
        second = self.client.post(url, json={"student_id": self.student, "status": "LATE"}, headers=self.staff).json()

        self.assertEqual(self.db[ATTENDANCES].count_documents({"event_id": eid}), 1)
        self.assertEqual(second["status"], "LATE")
        self.assertEqual(second["recorded_by_id"], self.collaborator)
        self.assertEqual(second["last_edited_by_id"], self.collaborator)

    def test_bulk_attendance(self):
        eid = self.create_event().json()["id"]
        payload = {"attendances": [{"student_id": self.student, "status": "PRESENT"},
                                   {"student_id": self.outsider, "status": "EXCUSED"}]}

        response = self.client.post(f"/calendar/events/{eid}/attendances/bulk", json=payload, headers=self.staff)

        self.assertEqual(response.json()["recorded"], 2)

    def request_absence(self, **overrides):
        payload = {
            "start_date": START.isoformat(),
            "end_date": (START + timedelta(days=1)).isoformat(),
            "reason": "Visita medica",
        }
        payload.update(overrides)
        return self.client.post("/calendar/absences", json=payload, headers=self.staff)

    def test_absence_request_notifies_admins(self):
        response = self.request_absence(is_urgent=True)

        self.assertEqual(response.json()["status"], "PENDING")
        notification = self.db[NOTIFICATIONS].find_one({"user_id": self.admin})
        self.assertEqual(notification["title"], "Richiesta assenza URGENTE")

    def test_absence_confirmation_notifies_requester_substitute_and_students(self):
        eid = self.create_event().json()["id"]
        aid = self.request_absence(affected_event_id=eid).json()["id"]

        response = self.client.post(
            f"/calendar/absences/{aid}/status",
            json={"status": "CONFIRMED", "substitute_id": self.other_collaborator},
            headers=self.auth(self.admin, UserRole.ADMIN),
        )

        self.assertEqual(response.json()["status"], "CONFIRMED")
        types = {n["user_id"]: n["type"] for n in self.db[NOTIFICATIONS].find({"type": {"$ne": "EVENT_INVITATION"}})
                 if n["user_id"] != self.admin}
        self.assertEqual(types[self.collaborator], "ABSENCE_CONFIRMED")
        self.assertEqual(types[self.other_collaborator], "SUBSTITUTION_ASSIGNED")
        self.assertEqual(types[self.student], "STAFF_ABSENCE")

    def test_only_admin_decides(self):
        aid = self.request_absence().json()["id"]
        response = self.client.post(f"/calendar/absences/{aid}/status", json={"status": "CONFIRMED"}, headers=self.staff)
        self.assertEqual(response.status_code, 403)

    def test_cancelled_absence_is_final(self):
        aid = self.request_absence().json()["id"]

        cancel = self.client.post(f"/calendar/absences/{aid}/cancel", headers=self.staff)
        decide = self.client.post(f"/calendar/absences/{aid}/status", json={"status": "CONFIRMED"},
                                  headers=self.auth(self.admin, UserRole.ADMIN))
        again = self.client.post(f"/calendar/absences/{aid}/cancel", headers=self.staff)

        self.assertEqual(cancel.json()["status"], "CANCELLED")
        self.assertEqual(decide.status_code, 400)
        self.assertEqual(again.status_code, 400)

    def test_cannot_cancel_someone_elses_absence(self):
        aid = self.request_absence().json()["id"]
        response = self.client.post(f"/calendar/absences/{aid}/cancel",
                                    headers=self.auth(self.other_collaborator, UserRole.COLLABORATOR))
        self.assertEqual(response.status_code, 403)

    def test_collaborator_lists_only_own_absences(self):
        self.request_absence()
        self.client.post("/calendar/absences", json={
            "start_date": START.isoformat(), "end_date": START.isoformat(), "reason": "Ferie estive",
        }, headers=self.auth(self.other_collaborator, UserRole.COLLABORATOR))

        mine = self.client.get("/calendar/absences", headers=self.staff).json()
        everything = self.client.get("/calendar/absences", headers=self.auth(self.admin, UserRole.ADMIN)).json()

        self.assertEqual(mine["pagination"]["total"], 1)
        self.assertEqual(everything["pagination"]["total"], 2)

    def test_update_ignores_null_for_required_fields(self):
        eid = self.create_event(online_link="https://meet.example.com/abc").json()["id"]

        response = self.client.patch(f"/calendar/events/{eid}",
                                     json={"start_date": None, "title": None, "type": None, "online_link": None},
                                     headers=self.staff)

        self.assertEqual(response.status_code, 200)
        stored = self.db[EVENTS].find_one({"_id": to_object_id(eid)})
        self.assertEqual(stored["start_date"], START)
        self.assertEqual(stored["title"], "Lezione di biologia")
        self.assertEqual(stored["type"], "LESSON")
        self.assertIsNone(stored["online_link"])
        invite = self.client.post(f"/calendar/events/{eid}/invitations", json={"user_ids": [self.outsider]},
                                  headers=self.staff)
        self.assertEqual(invite.json()["added"], 1)

    def test_update_notifies_every_invitee(self):
        gid = self.client.post("/groups", json={"name": "G", "member_ids": [self.outsider]},
                               headers=self.staff).json()["id"]
        eid = self.create_event(invited_group_ids=[gid]).json()["id"]

        self.client.patch(f"/calendar/events/{eid}", json={"location_details": "Aula 3"}, headers=self.staff)

        updated = {n["user_id"] for n in self.db[NOTIFICATIONS].find({"type": "EVENT_UPDATED"})}
        self.assertEqual(updated, {self.student, self.outsider})

    def test_delete_event_is_admin_only_and_cascades(self):
        eid = self.create_event().json()["id"]
        self.client.post(f"/calendar/events/{eid}/attendances", json={"student_id": self.student, "status": "PRESENT"},
                         headers=self.staff)

        forbidden = self.client.delete(f"/calendar/events/{eid}", headers=self.staff)
        response = self.client.delete(f"/calendar/events/{eid}", headers=self.auth(self.admin, UserRole.ADMIN))

        self.assertEqual(forbidden.status_code, 403)
        self.assertTrue(response.json()["deleted"])
        self.assertIsNone(self.db[EVENTS].find_one({"_id": to_object_id(eid)}))
        self.assertEqual(self.db[INVITATIONS].count_documents({"event_id": eid}), 0)
        self.assertEqual(self.db[ATTENDANCES].count_documents({"event_id": eid}), 0)

    def test_remove_invitation(self):
        eid = self.create_event().json()["id"]
        invitation = str(self.db[INVITATIONS].find_one({"event_id": eid})["_id"])

        missing = self.client.delete("/calendar/invitations/ffffffffffffffffffffffff", headers=self.staff)
        foreign = self.client.delete(f"/calendar/invitations/{invitation}",
                                     headers=self.auth(self.other_collaborator, UserRole.COLLABORATOR))
        removed = self.client.delete(f"/calendar/invitations/{invitation}", headers=self.staff)

        self.assertEqual(missing.status_code, 404)
        self.assertEqual(foreign.status_code, 403)
        self.assertTrue(removed.json()["deleted"])
        self.assertEqual(self.db[INVITATIONS].count_documents({"event_id": eid}), 0)

    def test_attendances_list_invited_students_once(self):
        gid = self.client.post("/groups", json={"name": "G", "member_ids": [self.student, self.outsider,
                                                                          self.other_collaborator]},
                               headers=self.staff).json()["id"]
        eid = self.create_event(invited_group_ids=[gid]).json()["id"]

        body = self.client.get(f"/calendar/events/{eid}/attendances", headers=self.staff).json()

        ids = [s["id"] for s in body["invited_students"]]
        self.assertEqual(sorted(ids), sorted([self.student, self.outsider]))

    def test_withdrawn_absence_notifies_invitees_except_requester(self):
        eid = self.create_event(invited_user_ids=[self.student, self.collaborator]).json()["id"]
        aid = self.request_absence(affected_event_id=eid).json()["id"]

        self.client.post(f"/calendar/absences/{aid}/cancel", headers=self.staff)

        notified = [n["user_id"] for n in self.db[NOTIFICATIONS].find({"type": "EVENT_UPDATED"})]
        self.assertEqual(notified, [self.student])
        self.assertIn("ritirata", self.db[NOTIFICATIONS].find_one({"type": "EVENT_UPDATED"})["message"])

    def test_stats(self):
        month_start, _ = month_bounds(utcnow())
        self.create_event()
        self.create_event(start_date=month_start.isoformat(), end_date=(month_start + timedelta(hours=1)).isoformat())
        self.request_absence()

        stats = self.client.get("/calendar/stats", headers=self.staff).json()

        self.assertEqual(stats["total_events"], 2)
        self.assertEqual(stats["events_this_month"], 1)
        self.assertEqual(stats["my_events"], 2)
        self.assertEqual(stats["pending_absences"], 1)
        self.assertGreaterEqual(stats["upcoming_events"], 1)
