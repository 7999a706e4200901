"""HTTP ERP gateway: payload shape and status-code to error mapping."""

import json
from decimal import Decimal

import httpx
import pytest

from stock_kernel.exceptions import ErpItemNotFoundError, SyncFailure, SyncPermanentFailure
from stock_sync.erp_gateway import ErpOrderLine, HttpErpGateway


def _gateway(handler):
    return HttpErpGateway(
        "http://erp.test/",
        "svc",
        "secret",
        timeout_seconds=1,
        transport=httpx.MockTransport(handler),
    )


def _adjust(gateway, item_code="SKU-1"):
    return gateway.post_stock_adjustment(
        item_code=item_code,
        location="HQ",
        adjustment_type="IN",
        quantity=Decimal("50000.000000000"),
        uom="g",
        batch_number=None,
        external_ref="stock:stock_adjustment:abc",
    )


class TestRequests:
    def test_stock_adjustment_payload(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "docNo": "ADJ-9"})

        with _gateway(handler) as gateway:
            result = _adjust(gateway)

        assert result.doc_no == "ADJ-9"
        assert seen["path"] == "/api/stock/adjust"
        assert seen["auth"].startswith("Basic ")
        assert seen["body"]["Quantity"] == 50000
        assert seen["body"]["ExternalRef"] == "stock:stock_adjustment:abc"
        assert seen["body"]["Reason"] == "Manual Adjustment"

    def test_purchase_order_lines_are_numbered(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"docNo": "PO-1"})

        with _gateway(handler) as gateway:
            gateway.create_purchase_order(
                "PO-100",
                "SUP-1",
                [
                    ErpOrderLine("A", "Bolt", Decimal("10"), Decimal("0.25"), "pcs"),
                    ErpOrderLine("B", "Nut", Decimal("5"), Decimal("0.10"), "pcs"),
                ],
                external_ref="stock:po_create:x",
            )

        details = seen["body"]["Details"]
        assert [d["LineNumber"] for d in details] == [1, 2]
        assert details[0]["UnitPrice"] == 0.25

    def test_find_document_returns_none_on_404(self):
        def handler(request):
            assert request.url.params["externalRef"] == "stock:grn:1"
            return httpx.Response(404, text="no such document")

        with _gateway(handler) as gateway:
            assert gateway.find_document("stock:grn:1") is None

    def test_find_document_returns_doc_no(self):
        with _gateway(lambda request: httpx.Response(200, json={"docNo": "GRN-3"})) as gateway:
            assert gateway.find_document("stock:grn:1") == "GRN-3"

    def test_sales_order_payload(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "docNo": "SO-4"})

        with _gateway(handler) as gateway:
            result = gateway.create_sales_order(
                "SO-100",
                "300-C001",
                [ErpOrderLine("A", "Bolt", Decimal("3"), Decimal("1.50"), "pcs")],
                external_ref="stock:sales_order_create:x",
            )

        assert result.doc_no == "SO-4"
        assert seen["path"] == "/autocount/sales-orders"
        body = seen["body"]
        assert body["DebtorCode"] == "300-C001"
        assert body["RefDocNo"] == "SO-100"
        assert body["ExternalRef"] == "stock:sales_order_create:x"
        assert body["Lines"] == [
            {
                "LineNumber": 1,
                "ItemCode": "A",
                "Description": "Bolt",
                "Quantity": 3,
                "UnitPrice": 1.5,
                "UOM": "pcs",
            }
        ]


class TestErrorMapping:
    @pytest.mark.parametrize("status", [500, 502, 503, 408, 429])
    def test_retryable_statuses(self, status):
        with _gateway(lambda request: httpx.Response(status, text="busy")) as gateway:
            with pytest.raises(SyncFailure) as exc_info:
                _adjust(gateway)
        assert exc_info.value.status_code == status

    def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with _gateway(handler) as gateway:
            with pytest.raises(SyncFailure, match="timed out"):
                _adjust(gateway)

    def test_non_json_lookup_body_is_retryable(self):
        def handler(request):
            return httpx.Response(
                200, text="<html>maintenance</html>", headers={"content-type": "text/html"}
            )

        with _gateway(handler) as gateway:
            with pytest.raises(SyncFailure, match="non-JSON"):
                gateway.find_document("stock:grn:1")

    def test_connection_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with _gateway(handler) as gateway:
            with pytest.raises(SyncFailure):
                _adjust(gateway)

    def test_unknown_item_is_permanent(self):
        with _gateway(lambda request: httpx.Response(404, text="Item not found")) as gateway:
            with pytest.raises(ErpItemNotFoundError) as exc_info:
                _adjust(gateway, item_code="GHOST")
        assert exc_info.value.item_code == "GHOST"

    def test_validation_error_is_permanent(self):
        with _gateway(lambda request: httpx.Response(400, text="bad uom")) as gateway:
            with pytest.raises(SyncPermanentFailure) as exc_info:
                _adjust(gateway)
        assert not isinstance(exc_info.value, SyncFailure)
        assert exc_info.value.status_code == 400

    def test_success_false_body_is_permanent(self):
        handler = lambda request: httpx.Response(200, json={"success": False, "message": "closed period"})
        with _gateway(handler) as gateway:
            with pytest.raises(SyncPermanentFailure, match="closed period"):
                _adjust(gateway)

    def test_item_already_exists_counts_as_created(self):
        handler = lambda request: httpx.Response(409, text="Item already exists")
        with _gateway(handler) as gateway:
            result = gateway.create_item(
                "SKU-1", "Widget", "pcs", True, False, Decimal("1.5"), Decimal("3")
            )
        assert result.doc_no == "SKU-1"
        assert result.raw == {"alreadyExists": True}
