"""
Sync orchestrator: outbox drain, backoff, recovery and operator retry.

Every test starts from committed stock changes; the ERP is the in-memory
fake, so failures are injected with ``fail_next``.
"""

import time
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest

from stock_kernel.domain.dtos import OrderLineSpec, ReceiptLine
from stock_kernel.domain.enums import MovementSyncStatus, OrderType, SyncStatus
from stock_kernel.domain.order_workflow import (
    PurchaseOrderStatus,
    SalesOrderStatus,
    StoreType,
)
from stock_kernel.exceptions import SyncFailure, SyncLogNotFoundError
from stock_kernel.models.sync_log import SyncLogEntry
from stock_kernel.services.ledger_service import MOVEMENT_REFERENCE
from stock_kernel.services.order_service import (
    PURCHASE_ORDER_REFERENCE,
    SALES_ORDER_REFERENCE,
)
from stock_sync import orchestrator as orchestrator_module
from stock_sync.dispatcher import build_request
from stock_sync.erp_gateway import HttpErpGateway
from stock_sync.orchestrator import SyncOrchestrator


def _only_entry(kernel, movement_id):
    (entry,) = kernel.syncs_for(MOVEMENT_REFERENCE, str(movement_id))
    return entry


def _first_movement(kernel, item_id):
    return next(iter(kernel.iter_movements(item_id)))


class TestBackoff:
    def test_timeout_then_backoff_success_then_manual_retry_noop(
        self, kernel, orchestrator, erp_gateway, stocked_item, deterministic_clock
    ):
        movement = _first_movement(kernel, stocked_item.id)
        erp_gateway.fail_next(SyncFailure("ERP request timed out: /api/stock/adjust"))

        summary = orchestrator.process_due()

        assert (summary.attempted, summary.failed) == (1, 1)
        entry = _only_entry(kernel, movement.id)
        assert entry.sync_status == SyncStatus.FAILED.value
        assert entry.retry_count == 1
        assert entry.next_retry_at == deterministic_clock.now() + timedelta(seconds=30)
        assert "timed out" in entry.error_message
        # The stock change stands; only the mirror records the failure
        assert kernel.get_item(stocked_item.id).stock_quantity == Decimal("10")
        assert kernel.get_movement(movement.id).sync_status == MovementSyncStatus.FAILED.value

        # Not due until the backoff elapses
        assert orchestrator.process_due().attempted == 0

        deterministic_clock.advance(30)
        assert orchestrator.process_due().succeeded == 1
        entry = _only_entry(kernel, movement.id)
        assert entry.sync_status == SyncStatus.SUCCESS.value
        assert entry.erp_doc_no == "ADJ-000001"
        assert entry.retry_count == 1
        assert entry.consecutive_failures == 0
        mirrored = kernel.get_movement(movement.id)
        assert mirrored.sync_status == MovementSyncStatus.SUCCESS.value
        assert mirrored.erp_doc_no == "ADJ-000001"

        again = orchestrator.retry(entry.id)
        assert again.erp_doc_no == "ADJ-000001"
        assert len(erp_gateway.calls_to("post_stock_adjustment")) == 2

    def test_exhausted_after_max_consecutive_failures(
        self, kernel, orchestrator, erp_gateway, stocked_item, deterministic_clock, retry_policy
    ):
        erp_gateway.fail_next(SyncFailure("ERP API error: 503"), times=5)
        for _ in range(retry_policy.max_consecutive_failures):
            orchestrator.process_due()
            deterministic_clock.advance(retry_policy.max_delay_seconds)

        entry = _only_entry(kernel, _first_movement(kernel, stocked_item.id).id)
        assert entry.sync_status == SyncStatus.PERMANENTLY_FAILED.value
        assert entry.retry_count == 5
        assert entry.next_retry_at is None
        # Never picked up automatically again
        assert orchestrator.process_due().attempted == 0

    def test_success_resets_failure_streak(
        self, kernel, orchestrator, erp_gateway, stocked_item, deterministic_clock
    ):
        erp_gateway.fail_next(SyncFailure("boom"), times=2)
        orchestrator.process_due()
        deterministic_clock.advance(30)
        orchestrator.process_due()
        deterministic_clock.advance(60)
        orchestrator.process_due()

        entry = _only_entry(kernel, _first_movement(kernel, stocked_item.id).id)
        assert entry.sync_status == SyncStatus.SUCCESS.value
        assert (entry.retry_count, entry.consecutive_failures) == (2, 0)


class TestPermanentFailures:
    def test_unknown_erp_item_fails_permanently_and_operator_retry_recovers(
        self, kernel, orchestrator, erp_gateway, stocked_item
    ):
        erp_gateway.known_items = set()

        summary = orchestrator.process_due()

        assert summary.permanently_failed == 1
        entry = _only_entry(kernel, _first_movement(kernel, stocked_item.id).id)
        assert entry.sync_status == SyncStatus.PERMANENTLY_FAILED.value
        assert "WIDGET" in entry.error_message
        assert [e.id for e in kernel.failed_syncs()] == [entry.id]
        assert kernel.failed_syncs(include_permanent=False) == []

        erp_gateway.known_items.add("WIDGET")
        retried = orchestrator.retry(entry.id)

        assert retried.sync_status == SyncStatus.SUCCESS.value
        assert retried.retry_count == 1
        assert retried.consecutive_failures == 0

    def test_retry_unknown_entry(self, orchestrator):
        with pytest.raises(SyncLogNotFoundError):
            orchestrator.retry(uuid4())


class TestRecovery:
    def test_existing_erp_document_is_adopted_not_reposted(
        self, kernel, orchestrator, erp_gateway, stocked_item
    ):
        entry = _only_entry(kernel, _first_movement(kernel, stocked_item.id).id)
        erp_gateway.record_document(entry.external_ref, "ADJ-EARLIER")

        orchestrator.process_due()

        entry = _only_entry(kernel, _first_movement(kernel, stocked_item.id).id)
        assert entry.sync_status == SyncStatus.SUCCESS.value
        assert entry.erp_doc_no == "ADJ-EARLIER"
        assert erp_gateway.calls_to("post_stock_adjustment") == []

    def test_stale_in_progress_claim_is_reclaimed(
        self, kernel, orchestrator, stocked_item, session_factory, deterministic_clock
    ):
        entry = _only_entry(kernel, _first_movement(kernel, stocked_item.id).id)
        with session_factory() as s:
            row = s.get(SyncLogEntry, entry.id)
            row.sync_status = SyncStatus.IN_PROGRESS.value
            row.last_attempt_at = deterministic_clock.now() - timedelta(seconds=600)
            s.commit()

        assert orchestrator.process_due().succeeded == 1

    def test_fresh_in_progress_claim_is_left_alone(
        self, kernel, orchestrator, stocked_item, session_factory, deterministic_clock
    ):
        entry = _only_entry(kernel, _first_movement(kernel, stocked_item.id).id)
        with session_factory() as s:
            row = s.get(SyncLogEntry, entry.id)
            row.sync_status = SyncStatus.IN_PROGRESS.value
            row.last_attempt_at = deterministic_clock.now()
            s.commit()

        assert orchestrator.process_due().attempted == 0


class TestPurchaseOrderSync:
    def test_grn_references_erp_po_document(
        self, kernel, orchestrator, erp_gateway, create_item, actor_id
    ):
        bolts = create_item(sku="BOLT")
        order = kernel.create_purchase_order(
            "PO-7", "SUP-1", [OrderLineSpec(bolts.id, Decimal("10"), unit_price=Decimal("2"))],
            actor_id,
        )
        kernel.transition_purchase_order(order.id, PurchaseOrderStatus.APPROVED, actor_id)
        orchestrator.process_due()

        (po_call,) = erp_gateway.calls_to("create_purchase_order")
        assert po_call["po_number"] == "PO-7"
        assert po_call["external_ref"] == f"stock:po_create:{order.id}"

        kernel.receive_purchase_order(
            order.id, [ReceiptLine(order.lines[0].id, Decimal("10"))], actor_id
        )
        orchestrator.process_due()

        (grn_call,) = erp_gateway.calls_to("post_goods_receipt")
        assert grn_call["po_number"] == "PO-000001"
        assert grn_call["quantity"] == Decimal("10")


def _approved_po(kernel, create_item, actor_id, po_number="PO-8"):
    bolts = create_item(sku="BOLT")
    order = kernel.create_purchase_order(
        po_number,
        "SUP-1",
        [OrderLineSpec(bolts.id, Decimal("10"), unit_price=Decimal("2"))],
        actor_id,
    )
    kernel.transition_purchase_order(order.id, PurchaseOrderStatus.APPROVED, actor_id)
    return order


def _po_entries(kernel, order_id):
    return {e.sync_type: e for e in kernel.syncs_for(PURCHASE_ORDER_REFERENCE, str(order_id))}


class TestPurchaseOrderOrdering:
    def test_cancel_while_create_is_failing_never_creates_erp_po(
        self, kernel, orchestrator, erp_gateway, create_item, actor_id, deterministic_clock
    ):
        order = _approved_po(kernel, create_item, actor_id)
        erp_gateway.fail_next(SyncFailure("ERP request timed out: /api/purchase-orders"))
        orchestrator.process_due()

        kernel.transition_purchase_order(order.id, PurchaseOrderStatus.CANCELLED, actor_id)
        orchestrator.process_due()

        entries = _po_entries(kernel, order.id)
        create, cancel = entries["po_create"], entries["po_cancel"]
        assert cancel.sync_status == SyncStatus.PENDING.value
        assert cancel.error_message.startswith("Waiting for po_create")
        assert (cancel.retry_count, cancel.consecutive_failures) == (0, 0)
        assert cancel.next_retry_at == create.next_retry_at

        deterministic_clock.advance(60)
        orchestrator.process_due()

        assert [name for name, _ in erp_gateway.calls] == ["create_purchase_order"]
        assert f"stock:po_create:{order.id}" not in erp_gateway.documents
        assert erp_gateway.cancelled == set()
        entries = _po_entries(kernel, order.id)
        assert entries["po_create"].sync_status == SyncStatus.SUCCESS.value
        assert entries["po_create"].erp_doc_no is None
        assert entries["po_cancel"].sync_status == SyncStatus.SUCCESS.value
        assert kernel.get_order(OrderType.PURCHASE_ORDER, order.id).erp_doc_no is None

    def test_cancel_targets_document_created_by_lost_response(
        self, kernel, orchestrator, erp_gateway, create_item, actor_id, deterministic_clock
    ):
        order = _approved_po(kernel, create_item, actor_id)
        erp_gateway.fail_next(SyncFailure("ERP request timed out: /api/purchase-orders"))
        orchestrator.process_due()
        # The ERP kept the PO although the response never arrived
        erp_gateway.record_document(f"stock:po_create:{order.id}", "PO-LOST")

        kernel.transition_purchase_order(order.id, PurchaseOrderStatus.CANCELLED, actor_id)
        deterministic_clock.advance(30)
        orchestrator.process_due()

        assert len(erp_gateway.calls_to("create_purchase_order")) == 1
        assert erp_gateway.calls_to("cancel_purchase_order") == [
            {"po_number": "PO-8", "doc_no": "PO-LOST"}
        ]
        assert erp_gateway.cancelled == {"PO-LOST"}
        entries = _po_entries(kernel, order.id)
        assert entries["po_create"].erp_doc_no == "PO-LOST"
        assert entries["po_cancel"].sync_status == SyncStatus.SUCCESS.value

    def test_grn_waits_for_failed_po_create(
        self, kernel, orchestrator, erp_gateway, create_item, actor_id, deterministic_clock
    ):
        order = _approved_po(kernel, create_item, actor_id)
        erp_gateway.fail_next(SyncFailure("ERP API error: 503"))
        orchestrator.process_due()

        received = kernel.receive_purchase_order(
            order.id, [ReceiptLine(order.lines[0].id, Decimal("10"))], actor_id
        )
        orchestrator.process_due()

        (grn,) = kernel.syncs_for(MOVEMENT_REFERENCE, str(received.movement_ids[0]))
        assert grn.sync_status == SyncStatus.PENDING.value
        assert grn.error_message == "Waiting for po_create (failed)"
        assert erp_gateway.calls_to("post_goods_receipt") == []

        deterministic_clock.advance(30)
        orchestrator.process_due()

        (grn_call,) = erp_gateway.calls_to("post_goods_receipt")
        assert grn_call["po_number"] == "PO-000001"
        (grn,) = kernel.syncs_for(MOVEMENT_REFERENCE, str(received.movement_ids[0]))
        assert grn.sync_status == SyncStatus.SUCCESS.value
        assert grn.retry_count == 0

    def test_grn_held_behind_permanent_failure_is_released_by_operator_retry(
        self, kernel, orchestrator, erp_gateway, create_item, actor_id
    ):
        order = _approved_po(kernel, create_item, actor_id)
        erp_gateway.known_items = set()
        orchestrator.process_due()
        create = _po_entries(kernel, order.id)["po_create"]
        assert create.sync_status == SyncStatus.PERMANENTLY_FAILED.value

        received = kernel.receive_purchase_order(
            order.id, [ReceiptLine(order.lines[0].id, Decimal("10"))], actor_id
        )
        orchestrator.process_due()
        (grn,) = kernel.syncs_for(MOVEMENT_REFERENCE, str(received.movement_ids[0]))
        assert grn.error_message == "Waiting for po_create (permanently_failed)"

        erp_gateway.known_items.add("BOLT")
        assert orchestrator.retry(create.id).sync_status == SyncStatus.SUCCESS.value
        orchestrator.process_due()

        (grn,) = kernel.syncs_for(MOVEMENT_REFERENCE, str(received.movement_ids[0]))
        assert grn.sync_status == SyncStatus.SUCCESS.value
        (grn_call,) = erp_gateway.calls_to("post_goods_receipt")
        assert grn_call["po_number"] == "PO-000001"


class TestSalesOrderSync:
    def _submit(self, kernel, stocked_item, actor_id, customer_code):
        order = kernel.create_sales_order(
            "SO-21",
            StoreType.OWN_STORE,
            [OrderLineSpec(stocked_item.id, Decimal("2"), unit_price=Decimal("3"))],
            actor_id,
            customer_code=customer_code,
        )
        kernel.transition_sales_order(order.id, SalesOrderStatus.SUBMITTED, actor_id)
        return order

    def test_submitted_order_is_created_in_erp(
        self, kernel, orchestrator, erp_gateway, stocked_item, actor_id
    ):
        order = self._submit(kernel, stocked_item, actor_id, "300-C001")

        orchestrator.process_due()

        (call,) = erp_gateway.calls_to("create_sales_order")
        assert call["order_number"] == "SO-21"
        assert call["customer_code"] == "300-C001"
        assert call["external_ref"] == f"stock:sales_order_create:{order.id}"
        assert kernel.get_order(OrderType.SALES_ORDER, order.id).erp_doc_no == "SO-000001"
        (entry,) = kernel.syncs_for(SALES_ORDER_REFERENCE, str(order.id))
        assert (entry.sync_status, entry.erp_doc_no) == (SyncStatus.SUCCESS.value, "SO-000001")

    def test_order_without_customer_fails_permanently(
        self, kernel, orchestrator, erp_gateway, stocked_item, actor_id
    ):
        order = self._submit(kernel, stocked_item, actor_id, None)

        orchestrator.process_due()

        (entry,) = kernel.syncs_for(SALES_ORDER_REFERENCE, str(order.id))
        assert entry.sync_status == SyncStatus.PERMANENTLY_FAILED.value
        assert "customer code" in entry.error_message
        assert erp_gateway.calls_to("create_sales_order") == []
        assert kernel.get_order(OrderType.SALES_ORDER, order.id).erp_doc_no is None


class TestUnexpectedErrors:
    def test_unexpected_gateway_error_fails_entry_and_pass_continues(
        self, kernel, orchestrator, erp_gateway, create_item, receive, deterministic_clock
    ):
        for sku in ("A", "B"):
            receive(create_item(sku=sku).id, 1)
        erp_gateway.fail_next(RuntimeError("socket closed"))

        summary = orchestrator.process_due()

        assert (summary.attempted, summary.succeeded, summary.failed) == (2, 1, 1)
        (failed,) = kernel.failed_syncs()
        assert failed.sync_status == SyncStatus.FAILED.value
        assert failed.retry_count == 1
        assert failed.next_retry_at == deterministic_clock.now() + timedelta(seconds=30)
        assert "Unexpected ERP gateway error" in failed.error_message
        assert "socket closed" in failed.error_message
        assert kernel.sync_counts()[SyncStatus.IN_PROGRESS.value] == 0

    def test_non_json_lookup_response_is_retried(
        self, kernel, session_factory, retry_policy, deterministic_clock, stocked_item
    ):
        def handler(request):
            return httpx.Response(
                200, text="<html>maintenance</html>", headers={"content-type": "text/html"}
            )

        with HttpErpGateway(
            "http://erp.test/", "svc", "secret", transport=httpx.MockTransport(handler)
        ) as gateway:
            orchestrator = SyncOrchestrator(
                session_factory, gateway, retry_policy, clock=deterministic_clock
            )
            summary = orchestrator.process_due()

        assert summary.failed == 1
        entry = _only_entry(kernel, _first_movement(kernel, stocked_item.id).id)
        assert entry.sync_status == SyncStatus.FAILED.value
        assert "non-JSON" in entry.error_message
        assert entry.next_retry_at is not None

    def test_error_before_the_erp_call_does_not_stop_the_pass(
        self, kernel, orchestrator, erp_gateway, create_item, receive, monkeypatch
    ):
        for sku in ("A", "B"):
            receive(create_item(sku=sku).id, 1)
        seen = []

        def build_or_break(session, entry):
            seen.append(entry.id)
            if len(seen) == 1:
                raise RuntimeError("mapping bug")
            return build_request(session, entry)

        monkeypatch.setattr(orchestrator_module, "build_request", build_or_break)

        summary = orchestrator.process_due()

        assert (summary.attempted, summary.succeeded) == (1, 1)
        assert len(seen) == 2
        counts = kernel.sync_counts()
        assert (counts[SyncStatus.PENDING.value], counts[SyncStatus.SUCCESS.value]) == (1, 1)


class TestRetryAllFailed:
    def test_only_entries_past_backoff_are_retried(
        self, kernel, orchestrator, erp_gateway, create_item, receive, deterministic_clock
    ):
        for sku in ("A", "B"):
            receive(create_item(sku=sku).id, 1)
        erp_gateway.fail_next(SyncFailure("down"), times=2)
        assert orchestrator.process_due().failed == 2

        assert orchestrator.retry_all_failed().attempted == 0

        deterministic_clock.advance(30)
        summary = orchestrator.retry_all_failed()
        assert (summary.attempted, summary.succeeded) == (2, 2)
        assert kernel.sync_counts()[SyncStatus.SUCCESS.value] == 2


class TestBackgroundWorker:
    def test_committed_movements_are_synced_in_background(
        self, kernel, orchestrator, receive, create_item
    ):
        kernel.attach_sync(orchestrator.notify)
        orchestrator.start()
        try:
            for _ in range(3):
                receive(create_item().id, 5)

            deadline = time.monotonic() + 10
            while time.monotonic() < deadline:
                if kernel.sync_counts()[SyncStatus.SUCCESS.value] == 3:
                    break
                time.sleep(0.05)
        finally:
            orchestrator.stop(timeout=5)
            kernel.attach_sync(None)

        counts = kernel.sync_counts()
        assert counts[SyncStatus.SUCCESS.value] == 3
        assert counts[SyncStatus.PENDING.value] == 0
        assert not orchestrator.is_running

    def test_notify_is_ignored_when_stopped(self, orchestrator):
        orchestrator.notify([uuid4()])
        assert orchestrator.submit(uuid4()) is None
