import threading
import unittest
from datetime import timedelta
from unittest import mock

from sqlalchemy import func, select

from workflow_fixtures import BASE_TIME, WorkflowTestCase

from models.statuses import ActivityType, ItemStatus, RequestStatus
from models.workflow_models import Calibration, ItemRequest, Rental
from services.availability_service import Eligibility, check_eligible, evaluate_eligibility
from services.errors import (
    ActorRequired,
    AlreadyDecided,
    ApproverRequired,
    InvalidDateRange,
    InvalidRequestType,
    InvalidTransition,
    ItemNotFound,
    ItemUnavailable,
    RequestNotFound,
    WorkflowIntegrityError,
)
from services.request_service import (
    Approved,
    BorrowOutcome,
    CalibrationOutcome,
    Pending,
    Rejected,
    decide_request,
    resolve_outcome,
)


class EligibilityRuleTests(unittest.TestCase):
    def test_only_idle_available_items_are_eligible(self):
        self.assertEqual(evaluate_eligibility("available", 0), Eligibility(True))
        for status in ("requested", "on_loan", "in_calibration", "in_maintenance", "retired", None):
            self.assertFalse(evaluate_eligibility(status, 0).ok, status)

    def test_open_request_blocks_even_when_status_says_available(self):
        result = evaluate_eligibility("available", 1)
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "item_unavailable")

    def test_same_inputs_give_same_answer(self):
        self.assertEqual(evaluate_eligibility("on_loan", 2), evaluate_eligibility("on_loan", 2))


class ResolveOutcomeTests(unittest.TestCase):
    def test_pending_request_has_no_fulfilment(self):
        self.assertIsInstance(resolve_outcome(ItemRequest(RequestID=1, Status="pending", RequestType="borrow")), Pending)

    def test_rejected_request_carries_reason(self):
        outcome = resolve_outcome(
            ItemRequest(RequestID=1, Status="rejected", RequestType="borrow", DecisionReason="busy")
        )
        self.assertEqual(outcome, Rejected("busy"))

    def test_approved_borrow_owns_rental(self):
        request = ItemRequest(RequestID=1, Status="approved", RequestType="borrow")
        rental = Rental(Request=request, Status="active")
        outcome = resolve_outcome(request)
        self.assertIsInstance(outcome, Approved)
        self.assertIsInstance(outcome.fulfillment, BorrowOutcome)
        self.assertIs(outcome.fulfillment.rental, rental)
        self.assertFalse(outcome.closed)

    def test_closed_calibration_request(self):
        request = ItemRequest(RequestID=1, Status="closed", RequestType="calibration")
        Calibration(Request=request, Status="completed")
        outcome = resolve_outcome(request)
        self.assertIsInstance(outcome.fulfillment, CalibrationOutcome)
        self.assertTrue(outcome.closed)

    def test_approved_without_fulfilment_is_integrity_error(self):
        with self.assertRaises(WorkflowIntegrityError):
            resolve_outcome(ItemRequest(RequestID=1, Status="approved", RequestType="borrow"))

    def test_pending_with_rental_is_integrity_error(self):
        request = ItemRequest(RequestID=1, Status="pending", RequestType="borrow")
        Rental(Request=request, Status="active")
        with self.assertRaises(WorkflowIntegrityError):
            resolve_outcome(request)


class SubmitRequestTests(WorkflowTestCase):
    def test_submit_moves_item_to_requested_and_records_history(self):
        item = self.make_item()
        request = self.submit(item.ItemID, reason="site survey")

        self.assertEqual(request.Status, RequestStatus.PENDING.value)
        self.assertEqual(request.RequestDate, BASE_TIME)
        refreshed = self.db.get(type(item), item.ItemID, populate_existing=True)
        self.assertEqual(refreshed.Status, ItemStatus.REQUESTED.value)
        self.assertEqual(self.history_count(item.ItemID, ActivityType.REQUEST_SUBMITTED.value), 1)

    def test_second_submit_on_requested_item_is_refused(self):
        item = self.make_item()
        self.submit(item.ItemID)
        with self.assertRaises(ItemUnavailable) as ctx:
            self.submit(item.ItemID, user_id="u-200")
        self.assertEqual(ctx.exception.reason, "item_unavailable")
        self.assertEqual(self.history_count(item.ItemID, ActivityType.REQUEST_SUBMITTED.value), 1)

    def test_unknown_item(self):
        with self.assertRaises(ItemNotFound):
            self.submit(999)

    def test_input_validation_happens_before_any_write(self):
        item = self.make_item()
        with self.assertRaises(ActorRequired):
            self.submit(item.ItemID, user_id="  ")
        with self.assertRaises(InvalidRequestType):
            self.submit(item.ItemID, request_type="repair")
        with self.assertRaises(InvalidDateRange):
            self.submit(item.ItemID, start_date=BASE_TIME, end_date=BASE_TIME - timedelta(days=1))
        with self.assertRaises(InvalidDateRange):
            self.submit(item.ItemID, request_type="calibration", end_date=BASE_TIME + timedelta(days=3))
        self.assertTrue(check_eligible(self.db, item.ItemID).ok)

    def test_concurrent_submits_admit_exactly_one(self):
        item = self.make_item()
        item_id = item.ItemID
        self.db.rollback()
        barrier = threading.Barrier(2)
        results = []
        guard = threading.Lock()

        def worker(user_id):
            session = self.SessionLocal()
            try:
                barrier.wait()
                self.submit(item_id, user_id=user_id, db=session)
                outcome = "ok"
            except ItemUnavailable:
                outcome = "unavailable"
            finally:
                session.close()
            with guard:
                results.append(outcome)

        threads = [threading.Thread(target=worker, args=(f"u-{n}",)) for n in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(sorted(results), ["ok", "unavailable"])
        open_requests = self.db.execute(
            select(func.count(ItemRequest.RequestID)).where(ItemRequest.ItemID == item_id)
        ).scalar()
        self.assertEqual(open_requests, 1)


class DecideRequestTests(WorkflowTestCase):
    def test_approve_borrow_creates_one_rental_and_loans_item(self):
        item = self.make_item(default_rental_days=3)
        request = self.submit(item.ItemID)
        decided = self.decide(request.RequestID)

        self.assertEqual(decided.Status, RequestStatus.APPROVED.value)
        self.assertEqual(decided.ApprovedBy, "mgr-1")
        rental = decided.Rental
        self.assertIsNotNone(rental)
        self.assertEqual(rental.Status, "active")
        self.assertEqual(rental.EndDate - rental.StartDate, timedelta(days=3))
        self.assertIsNone(decided.Calibration)
        self.assertEqual(self.db.get(type(item), item.ItemID, populate_existing=True).Status, "on_loan")
        self.assertEqual(self.notifier.sent[-1][:2], ("u-100", "RequestApproved"))

    def test_approve_uses_requested_window(self):
        item = self.make_item()
        start = BASE_TIME + timedelta(days=1)
        request = self.submit(item.ItemID, start_date=start, end_date=start + timedelta(days=10))
        rental = self.decide(request.RequestID).Rental
        self.assertEqual(rental.StartDate, start)
        self.assertEqual(rental.EndDate, start + timedelta(days=10))

    def test_reject_frees_item_without_fulfilment(self):
        item = self.make_item()
        request = self.submit(item.ItemID)
        decided = self.decide(request.RequestID, outcome="reject", reason="calibration due")

        self.assertEqual(decided.Status, RequestStatus.REJECTED.value)
        self.assertEqual(resolve_outcome(decided), Rejected("calibration due"))
        self.assertTrue(check_eligible(self.db, item.ItemID).ok)
        self.assertEqual(self.history_count(item.ItemID, ActivityType.REQUEST_REJECTED.value), 1)
        self.assertEqual(self.notifier.sent[-1][1], "RequestRejected")

    def test_second_decision_is_already_decided(self):
        item = self.make_item()
        request = self.submit(item.ItemID)
        self.decide(request.RequestID)
        with self.assertRaises(AlreadyDecided) as ctx:
            self.decide(request.RequestID)
        self.assertIsInstance(ctx.exception, InvalidTransition)

        rentals = self.db.execute(select(func.count(Rental.RentalID))).scalar()
        self.assertEqual(rentals, 1)
        self.assertEqual(self.history_count(item.ItemID, ActivityType.REQUEST_APPROVED.value), 1)

    def test_reject_after_approve_is_already_decided(self):
        item = self.make_item()
        request = self.submit(item.ItemID)
        self.decide(request.RequestID)
        with self.assertRaises(AlreadyDecided):
            self.decide(request.RequestID, outcome="reject")

    def test_missing_approver_is_refused_before_lookup(self):
        with self.assertRaises(ApproverRequired):
            self.decide(12345, approver_id=None)

    def test_unknown_request(self):
        with self.assertRaises(RequestNotFound):
            self.decide(12345)

    def test_approve_calibration_schedules_calibration(self):
        item = self.make_item(requires_calibration=True, calibration_interval=12)
        request = self.submit(item.ItemID, request_type="calibration")
        decided = self.decide(request.RequestID, calibration_date=BASE_TIME + timedelta(days=2))

        calibration = decided.Calibration
        self.assertEqual(calibration.Status, "scheduled")
        self.assertEqual(calibration.CalibrationDate, BASE_TIME + timedelta(days=2))
        self.assertIsNone(decided.Rental)
        self.assertEqual(self.db.get(type(item), item.ItemID, populate_existing=True).Status, "in_calibration")

    def test_notification_failure_keeps_committed_decision(self):
        item = self.make_item()
        request = self.submit(item.ItemID)

        def broken_notifier(*args):
            raise RuntimeError("mail relay down")

        with self.assertLogs("equipment_workflow.notifications", level="WARNING"):
            self.decide(request.RequestID, notifier=broken_notifier)

        fresh = self.SessionLocal()
        try:
            stored = fresh.get(ItemRequest, request.RequestID)
            self.assertEqual(stored.Status, RequestStatus.APPROVED.value)
            self.assertIsNotNone(stored.Rental)
        finally:
            fresh.close()

    def test_concurrent_decisions_admit_exactly_one(self):
        item = self.make_item()
        request_id = self.submit(item.ItemID).RequestID
        self.db.rollback()
        barrier = threading.Barrier(4)
        results = []
        guard = threading.Lock()

        def worker(outcome, approver_id):
            session = self.SessionLocal()
            try:
                barrier.wait()
                decide_request(
                    session,
                    request_id=request_id,
                    approver_id=approver_id,
                    outcome=outcome,
                    settings=self.settings,
                    coordinator=self.coordinator,
                    now=BASE_TIME + timedelta(hours=1),
                    notifier=self.notifier,
                )
                result = "ok"
            except AlreadyDecided:
                result = "already_decided"
            finally:
                session.close()
            with guard:
                results.append(result)

        threads = [
            threading.Thread(target=worker, args=("approve" if n % 2 == 0 else "reject", f"mgr-{n}"))
            for n in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(sorted(results), ["already_decided"] * 3 + ["ok"])
        stored = self.db.get(ItemRequest, request_id, populate_existing=True)
        self.assertIn(stored.Status, {RequestStatus.APPROVED.value, RequestStatus.REJECTED.value})
        rentals = self.db.execute(select(func.count(Rental.RentalID)).where(Rental.RequestID == request_id)).scalar()
        self.assertLessEqual(rentals, 1)
        self.assertEqual(rentals, 1 if stored.Status == RequestStatus.APPROVED.value else 0)
        decisions = self.history_count(item.ItemID, ActivityType.REQUEST_APPROVED.value) + self.history_count(
            item.ItemID, ActivityType.REQUEST_REJECTED.value
        )
        self.assertEqual(decisions, 1)

    def test_history_failure_rolls_back_the_whole_approval(self):
        item = self.make_item()
        request = self.submit(item.ItemID)

        with mock.patch("services.request_service.record_history", side_effect=RuntimeError("history store down")):
            with self.assertRaises(RuntimeError):
                self.decide(request.RequestID)

        fresh = self.SessionLocal()
        try:
            stored = fresh.get(ItemRequest, request.RequestID)
            self.assertEqual(stored.Status, RequestStatus.PENDING.value)
            self.assertIsNone(stored.ApprovedBy)
            self.assertIsNone(stored.DecisionDate)
            self.assertEqual(fresh.get(type(item), item.ItemID).Status, ItemStatus.REQUESTED.value)
            self.assertEqual(fresh.execute(select(func.count(Rental.RentalID))).scalar(), 0)
        finally:
            fresh.close()
        self.assertEqual(self.notifier.sent, [])

        decided = self.decide(request.RequestID)
        self.assertEqual(decided.Status, RequestStatus.APPROVED.value)
        self.assertIsNotNone(decided.Rental)

    def test_history_failure_rolls_back_a_rejection(self):
        item = self.make_item()
        request = self.submit(item.ItemID)

        with mock.patch("services.request_service.record_history", side_effect=RuntimeError("history store down")):
            with self.assertRaises(RuntimeError):
                self.decide(request.RequestID, outcome="reject", reason="duplicate")

        fresh = self.SessionLocal()
        try:
            stored = fresh.get(ItemRequest, request.RequestID)
            self.assertEqual(stored.Status, RequestStatus.PENDING.value)
            self.assertIsNone(stored.DecisionReason)
            self.assertEqual(fresh.get(type(item), item.ItemID).Status, ItemStatus.REQUESTED.value)
        finally:
            fresh.close()


if __name__ == "__main__":
    unittest.main()
