import unittest
from datetime import timedelta

from sqlalchemy import select

from workflow_fixtures import BASE_TIME, WorkflowTestCase

from models.statuses import ActivityType, ItemStatus, MaintenanceStatus
from models.workflow_models import ActivityLog, Item, Maintenance
from scripts.db_overview import run_integrity_checks
from services.availability_service import check_eligible
from services.errors import ActorRequired, InvalidTransition, ItemUnavailable, MaintenanceNotFound
from services.item_service import retire_item
from services.maintenance_service import (
    complete_maintenance,
    list_maintenance,
    serialize_maintenance,
    start_maintenance,
)


class MaintenanceLifecycleTests(WorkflowTestCase):
    def _start(self, item_id, **kwargs):
        kwargs.setdefault("performed_by", "tech-3")
        kwargs.setdefault("now", BASE_TIME)
        return start_maintenance(
            self.db,
            item_id=item_id,
            settings=self.settings,
            coordinator=self.coordinator,
            **kwargs,
        )

    def _complete(self, maintenance_id, **kwargs):
        kwargs.setdefault("performed_by", "tech-3")
        kwargs.setdefault("now", BASE_TIME + timedelta(days=2))
        return complete_maintenance(
            self.db,
            maintenance_id=maintenance_id,
            settings=self.settings,
            coordinator=self.coordinator,
            **kwargs,
        )

    def test_start_takes_item_out_of_circulation(self):
        item = self.make_item()
        maintenance = self._start(item.ItemID, reason="display flicker")

        self.assertEqual(maintenance.Status, MaintenanceStatus.IN_PROGRESS.value)
        self.assertEqual(maintenance.StartDate, BASE_TIME)
        self.assertIsNone(maintenance.EndDate)
        stored = self.db.get(Item, item.ItemID, populate_existing=True)
        self.assertEqual(stored.Status, ItemStatus.IN_MAINTENANCE.value)
        self.assertEqual(self.history_count(item.ItemID, ActivityType.MAINTENANCE_STARTED.value), 1)

        eligibility = check_eligible(self.db, item.ItemID)
        self.assertFalse(eligibility.ok)
        self.assertEqual(eligibility.reason, "item_unavailable")
        with self.assertRaises(ItemUnavailable):
            self.submit(item.ItemID)
        with self.assertRaises(InvalidTransition):
            retire_item(
                self.db,
                item_id=item.ItemID,
                performed_by="admin",
                settings=self.settings,
                coordinator=self.coordinator,
            )

    def test_start_requires_an_idle_available_item(self):
        item = self.make_item()
        self.submit(item.ItemID)

        with self.assertRaises(ItemUnavailable) as caught:
            self._start(item.ItemID)
        self.assertEqual(caught.exception.reason, "item_unavailable")
        self.assertEqual(self.db.get(Item, item.ItemID, populate_existing=True).Status, ItemStatus.REQUESTED.value)
        self.assertEqual(list_maintenance(self.db, item_id=item.ItemID), [])

    def test_start_refused_while_already_in_maintenance(self):
        item = self.make_item()
        self._start(item.ItemID)
        with self.assertRaises(ItemUnavailable):
            self._start(item.ItemID)
        self.assertEqual(len(list_maintenance(self.db, item_id=item.ItemID)), 1)

    def test_start_requires_actor(self):
        item = self.make_item()
        with self.assertRaises(ActorRequired):
            self._start(item.ItemID, performed_by="  ")

    def test_complete_returns_item_to_service(self):
        item = self.make_item()
        maintenance = self._start(item.ItemID)
        done = self._complete(maintenance.MaintenanceID, findings="loose connector", action_taken="resoldered")

        self.assertEqual(done.Status, MaintenanceStatus.COMPLETED.value)
        self.assertEqual(done.EndDate, BASE_TIME + timedelta(days=2))
        self.assertEqual(done.CompletedBy, "tech-3")
        self.assertEqual(done.Findings, "loose connector")
        self.assertEqual(self.db.get(Item, item.ItemID, populate_existing=True).Status, ItemStatus.AVAILABLE.value)
        self.assertEqual(self.history_count(item.ItemID, ActivityType.MAINTENANCE_COMPLETED.value), 1)

        logged = self.db.execute(
            select(ActivityLog.MaintenanceID).where(ActivityLog.ActivityType == ActivityType.MAINTENANCE_COMPLETED.value)
        ).scalars().all()
        self.db.rollback()
        self.assertEqual(logged, [maintenance.MaintenanceID])

        request = self.submit(item.ItemID, now=BASE_TIME + timedelta(days=3))
        self.assertEqual(request.Status, "pending")

    def test_second_completion_is_refused(self):
        item = self.make_item()
        maintenance = self._start(item.ItemID)
        self._complete(maintenance.MaintenanceID)
        with self.assertRaises(InvalidTransition):
            self._complete(maintenance.MaintenanceID)
        self.assertEqual(self.history_count(item.ItemID, ActivityType.MAINTENANCE_COMPLETED.value), 1)

    def test_unknown_maintenance(self):
        with self.assertRaises(MaintenanceNotFound):
            self._complete(4040)

    def test_listing_filters_by_status(self):
        first = self.make_item(name="Scope A")
        second = self.make_item(name="Scope B")
        done = self._start(first.ItemID)
        self._start(second.ItemID)
        self._complete(done.MaintenanceID)

        open_rows = list_maintenance(self.db, status="in_progress")
        self.assertEqual([row.ItemID for row in open_rows], [second.ItemID])
        self.assertEqual(serialize_maintenance(open_rows[0])["status"], "in_progress")

    def test_integrity_check_flags_open_maintenance_on_idle_item(self):
        item = self.make_item()
        self._start(item.ItemID)
        stored = self.db.get(Item, item.ItemID, populate_existing=True)
        stored.Status = ItemStatus.AVAILABLE.value
        self.db.commit()

        results = {result.name: result for result in run_integrity_checks(self.engine)}
        self.assertFalse(results["maintenance:in_progress_on_idle_item"].ok)
        self.assertEqual(
            self.db.execute(select(Maintenance.Status)).scalar(),
            MaintenanceStatus.IN_PROGRESS.value,
        )


if __name__ == "__main__":
    unittest.main()
