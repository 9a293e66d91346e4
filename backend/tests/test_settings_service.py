import unittest

from stockledger import create_app
from stockledger.errors import LedgerValidationError
from stockledger.extensions import db
from stockledger.models import InventoryAuditLog, InventorySettings
from stockledger.services import settings_service
from stockledger.services.audit_service import list_audit_events
from stockledger.services.settings_service import (
    COST_METHOD_FIFO,
    COST_METHOD_LAST_COST,
    COST_METHOD_NONE,
    COST_METHOD_WEIGHTED_AVERAGE,
    SETTINGS_ID,
)


class InventorySettingsTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = create_app({
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "SQLALCHEMY_TRACK_MODIFICATIONS": False,
            "TESTING": True,
            "DEFAULT_COST_UPDATE_METHOD": COST_METHOD_NONE,
        })
        cls.ctx = cls.app.app_context()
        cls.ctx.push()
        db.create_all()

    @classmethod
    def tearDownClass(cls):
        db.session.remove()
        db.drop_all()
        cls.ctx.pop()

    def setUp(self):
        db.session.query(InventoryAuditLog).delete()
        db.session.query(InventorySettings).delete()
        db.session.commit()

    def test_default_comes_from_config_without_writing(self):
        self.assertEqual(settings_service.get_cost_update_method(), COST_METHOD_NONE)
        self.assertEqual(settings_service.get_inventory_settings(), {"cost_update_method": COST_METHOD_NONE})
        self.assertIsNone(db.session.get(InventorySettings, SETTINGS_ID))

    def test_update_round_trip(self):
        for method in (COST_METHOD_WEIGHTED_AVERAGE, COST_METHOD_FIFO, COST_METHOD_LAST_COST):
            result = settings_service.update_inventory_settings(method, actor_id="admin")
            self.assertEqual(result["cost_update_method"], method)
            self.assertEqual(settings_service.get_cost_update_method(), method)

        self.assertEqual(db.session.query(InventorySettings).count(), 1)

    def test_update_is_audited(self):
        settings_service.update_inventory_settings(COST_METHOD_FIFO, actor_id="admin")
        settings_service.update_inventory_settings(COST_METHOD_WEIGHTED_AVERAGE, actor_id="admin")

        events = list_audit_events(entity_type="inventory_settings", entity_id=SETTINGS_ID)
        self.assertEqual([e.action for e in events], ["updated", "updated"])
        last = events[-1].to_dict()
        self.assertEqual(
            last["changes"]["cost_update_method"],
            {"from": COST_METHOD_FIFO, "to": COST_METHOD_WEIGHTED_AVERAGE},
        )
        self.assertEqual(last["actor_id"], "admin")

    def test_invalid_method_rejected(self):
        with self.assertRaises(LedgerValidationError):
            settings_service.update_inventory_settings("lifo")
        self.assertEqual(settings_service.get_cost_update_method(), COST_METHOD_NONE)
        self.assertEqual(db.session.query(InventoryAuditLog).count(), 0)


if __name__ == "__main__":
    unittest.main()
