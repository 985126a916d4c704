"""Unit tests for the application entry point."""

# pylint: disable=missing-function-docstring, import-error
import unittest
from unittest.mock import patch

import mongomock
from fastapi.testclient import TestClient

from database import USERS
from main import app, bootstrap_admin
from security import verify_password


class BootstrapAdminTest(unittest.TestCase):
    """First admin created from the environment."""

    def setUp(self):
        self.db = mongomock.MongoClient().get_database("main_test")

    @patch("main.config.BOOTSTRAP_ADMIN_PASSWORD", "changeme123")
    @patch("main.config.BOOTSTRAP_ADMIN_EMAIL", "Admin@Example.com")
    def test_creates_admin_once(self):
        self.assertTrue(bootstrap_admin(self.db))
        self.assertFalse(bootstrap_admin(self.db))

        admin = self.db[USERS].find_one()
        self.assertEqual(admin["email"], "admin@example.com")
        self.assertEqual(admin["role"], "ADMIN")
        self.assertTrue(admin["is_active"])
        self.assertTrue(verify_password("changeme123", admin["password_hash"]))

    @patch("main.config.BOOTSTRAP_ADMIN_EMAIL", None)
    def test_skipped_without_configuration(self):
        self.assertFalse(bootstrap_admin(self.db))
        self.assertEqual(self.db[USERS].count_documents({}), 0)


class MetaEndpointsTest(unittest.TestCase):
    """Liveness and schema endpoints."""

    def setUp(self):
        self.client = TestClient(app)

    def test_root(self):
        self.assertIn("version", self.client.get("/").json())

    def test_schema_lists_models(self):
        schema = self.client.get("/schema").json()
        self.assertIn("Simulation", schema)
        self.assertIn("CalendarEvent", schema)

    @patch("main.database.db", None)
    def test_database_report_without_database(self):
        body = self.client.get("/test").json()
        self.assertEqual(body["connection_status"], "Not Connected")
