"""
ERP gateway -- the outbound port to the AutoCount-style ERP.

Responsibility:
    Defines the ``ErpGateway`` protocol the SyncOrchestrator talks to, an
    ``HttpErpGateway`` implementation over httpx with Basic auth, and an
    ``InMemoryErpGateway`` used by tests and local runs.

Failure mapping (HttpErpGateway):
    - Timeout, connection error, HTTP 5xx, 408, 429  -> SyncFailure (retryable)
    - HTTP 404 whose body says the item is not found -> ErpItemNotFoundError
    - Any other 4xx, or a 2xx body with success=false -> SyncPermanentFailure
    - HTTP 409 "already exists" on item creation     -> success (idempotent)

Every posting request carries an ``ExternalRef`` so a document created by an
attempt whose local commit was lost can be found again with
``find_document`` instead of being posted twice.
"""

from __future__ import annotations

import itertools
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

import httpx

from stock_kernel.exceptions import (
    ErpItemNotFoundError,
    SyncFailure,
    SyncPermanentFailure,
)
from stock_kernel.logging_config import get_logger

logger = get_logger("sync.erp_gateway")

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class ErpResult:
    doc_no: str | None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ErpOrderLine:
    item_code: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    uom: str


class ErpGateway(Protocol):
    def create_item(
        self,
        item_code: str,
        description: str,
        uom: str,
        stock_control: bool,
        has_batch_no: bool,
        standard_cost: Decimal,
        price: Decimal,
    ) -> ErpResult: ...

    def create_purchase_order(
        self,
        po_number: str,
        supplier_code: str,
        lines: list[ErpOrderLine],
        external_ref: str,
        description: str = "",
    ) -> ErpResult: ...

    def cancel_purchase_order(self, po_number: str, doc_no: str | None) -> ErpResult: ...

    def create_sales_order(
        self,
        order_number: str,
        customer_code: str,
        lines: list[ErpOrderLine],
        external_ref: str,
        description: str = "",
    ) -> ErpResult: ...

    def post_stock_adjustment(
        self,
        item_code: str,
        location: str,
        adjustment_type: str,
        quantity: Decimal,
        uom: str,
        batch_number: str | None,
        external_ref: str,
        description: str = "",
        reason: str | None = None,
    ) -> ErpResult: ...

    def post_goods_receipt(
        self,
        po_number: str,
        supplier_code: str,
        item_code: str,
        description: str,
        quantity: Decimal,
        uom: str,
        batch_number: str | None,
        location: str,
        external_ref: str,
    ) -> ErpResult: ...

    def find_document(self, external_ref: str) -> str | None: ...


def _json_number(value: Decimal) -> float | int:
    # ERP API expects JSON numbers, not strings
    normalized = value.normalize()
    if normalized == normalized.to_integral_value():
        return int(normalized)
    return float(normalized)


class HttpErpGateway:
    """
    httpx client for the ERP REST API.

    One ``httpx.Client`` is shared across calls; it is thread-safe, so the
    sync worker pool can use a single gateway.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=httpx.BasicAuth(username, password),
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpErpGateway:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        item_code: str | None = None,
        allow_conflict: bool = False,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, path, json=payload, params=params)
        except httpx.TimeoutException as exc:
            logger.warning("erp_request_timeout", extra={"path": path})
            raise SyncFailure(f"ERP request timed out: {path}") from exc
        except httpx.TransportError as exc:
            logger.warning("erp_request_transport_error", extra={"path": path, "error": str(exc)})
            raise SyncFailure(f"ERP unreachable: {exc}") from exc

        status = response.status_code
        if status < 400:
            return response
        body = response.text
        logger.warning(
            "erp_request_rejected",
            extra={"path": path, "status_code": status, "body": body[:500]},
        )
        if status >= 500 or status in (408, 429):
            raise SyncFailure(f"ERP API error: {status} - {body}", status_code=status)
        if status == 404 and item_code is not None and "not found" in body.lower():
            raise ErpItemNotFoundError(item_code, f"Item not found in ERP: {item_code} ({body})")
        if status == 409 and allow_conflict and "already exists" in body.lower():
            return response
        raise SyncPermanentFailure(f"ERP API error: {status} - {body}", status_code=status)

    @staticmethod
    def _result(response: httpx.Response, fallback_doc_no: str | None = None) -> ErpResult:
        try:
            data = response.json() if response.content else {}
        except ValueError as exc:
            raise SyncFailure(f"ERP returned a non-JSON body: {response.text[:200]}") from exc
        if not isinstance(data, dict):
            data = {"data": data}
        if data.get("success") is False:
            message = data.get("message") or data.get("error") or "ERP reported failure"
            raise SyncPermanentFailure(str(message), status_code=response.status_code)
        doc_no = data.get("docNo") or data.get("DocNo") or fallback_doc_no
        return ErpResult(doc_no=doc_no, raw=data)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_item(
        self,
        item_code: str,
        description: str,
        uom: str,
        stock_control: bool,
        has_batch_no: bool,
        standard_cost: Decimal,
        price: Decimal,
    ) -> ErpResult:
        payload = {
            "ItemCode": item_code,
            "Description": description,
            "BaseUom": uom,
            "StockControl": stock_control,
            "HasBatchNo": has_batch_no,
            "StandardCost": _json_number(standard_cost),
            "Price": _json_number(price),
            "IsActive": True,
        }
        response = self._request("POST", "/autocount/items", payload, allow_conflict=True)
        if response.status_code == 409:
            logger.info("erp_item_already_exists", extra={"item_code": item_code})
            return ErpResult(doc_no=item_code, raw={"alreadyExists": True})
        return self._result(response, fallback_doc_no=item_code)

    def create_purchase_order(
        self,
        po_number: str,
        supplier_code: str,
        lines: list[ErpOrderLine],
        external_ref: str,
        description: str = "",
    ) -> ErpResult:
        today = date.today().isoformat()
        payload = {
            "DocNo": po_number,
            "SupplierCode": supplier_code,
            "DocDate": today,
            "DeliveryDate": today,
            "Description": description,
            "ExternalRef": external_ref,
            "Details": [
                {
                    "LineNumber": index,
                    "ItemCode": line.item_code,
                    "Description": line.description,
                    "Quantity": _json_number(line.quantity),
                    "UnitPrice": _json_number(line.unit_price),
                    "UOM": line.uom,
                }
                for index, line in enumerate(lines, start=1)
            ],
        }
        return self._result(self._request("POST", "/api/purchase/create", payload))

    def cancel_purchase_order(self, po_number: str, doc_no: str | None) -> ErpResult:
        payload = {"DocNo": doc_no or po_number}
        return self._result(
            self._request("POST", "/api/purchase/cancel", payload),
            fallback_doc_no=doc_no or po_number,
        )

    def create_sales_order(
        self,
        order_number: str,
        customer_code: str,
        lines: list[ErpOrderLine],
        external_ref: str,
        description: str = "",
    ) -> ErpResult:
        today = date.today().isoformat()
        payload = {
            "DebtorCode": customer_code,
            "DocDate": today,
            "DeliveryDate": today,
            "Description": description or f"Sales order {order_number}",
            "RefDocNo": order_number,
            "ExternalRef": external_ref,
            "Lines": [
                {
                    "LineNumber": index,
                    "ItemCode": line.item_code,
                    "Description": line.description,
                    "Quantity": _json_number(line.quantity),
                    "UnitPrice": _json_number(line.unit_price),
                    "UOM": line.uom,
                }
                for index, line in enumerate(lines, start=1)
            ],
        }
        return self._result(self._request("POST", "/autocount/sales-orders", payload))

    def post_stock_adjustment(
        self,
        item_code: str,
        location: str,
        adjustment_type: str,
        quantity: Decimal,
        uom: str,
        batch_number: str | None,
        external_ref: str,
        description: str = "",
        reason: str | None = None,
    ) -> ErpResult:
        payload = {
            "ItemCode": item_code,
            "Location": location,
            "AdjustmentType": adjustment_type,
            "Quantity": _json_number(quantity),
            "UOM": uom,
            "Description": description,
            "BatchNumber": batch_number,
            "Reason": reason or "Manual Adjustment",
            "DocDate": date.today().isoformat(),
            "ExternalRef": external_ref,
        }
        return self._result(
            self._request("POST", "/api/stock/adjust", payload, item_code=item_code)
        )

    def post_goods_receipt(
        self,
        po_number: str,
        supplier_code: str,
        item_code: str,
        description: str,
        quantity: Decimal,
        uom: str,
        batch_number: str | None,
        location: str,
        external_ref: str,
    ) -> ErpResult:
        payload = {
            "CreditorCode": supplier_code,
            "DocNo": po_number,
            "DocDate": date.today().isoformat(),
            "Description": f"GRN for PO {po_number}",
            "Location": location,
            "ExternalRef": external_ref,
            "Detail": [
                {
                    "ItemCode": item_code,
                    "Description": description,
                    "Qty": _json_number(quantity),
                    "UOM": uom,
                    "BatchNo": batch_number,
                }
            ],
        }
        return self._result(
            self._request("POST", "/api/GoodsReceivedNote", payload, item_code=item_code)
        )

    def find_document(self, external_ref: str) -> str | None:
        try:
            response = self._request(
                "GET", "/api/documents/lookup", params={"externalRef": external_ref}
            )
        except SyncPermanentFailure as exc:
            if exc.status_code == 404:
                return None
            raise
        try:
            data = response.json() if response.content else {}
        except ValueError as exc:
            raise SyncFailure(
                f"ERP document lookup returned a non-JSON body: {response.text[:200]}"
            ) from exc
        return data.get("docNo") if isinstance(data, dict) else None


class InMemoryErpGateway:
    """
    Deterministic ERP fake.

    Documents are numbered per kind (``ADJ-000001``, ``PO-000001`` ...) and
    indexed by external reference.  ``fail_next`` queues exceptions raised by
    the next calls, in order, before the call has any effect.
    """

    def __init__(self, known_items: set[str] | None = None):
        self.known_items = known_items
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.documents: dict[str, str] = {}
        self.cancelled: set[str] = set()
        self._failures: deque[Exception] = deque()
        self._counters: dict[str, itertools.count] = {}
        self._lock = threading.Lock()

    def fail_next(self, exc: Exception, times: int = 1) -> None:
        with self._lock:
            for _ in range(times):
                self._failures.append(exc)

    def record_document(self, external_ref: str, doc_no: str) -> None:
        """Pretend a document was created by an earlier, unrecorded attempt."""
        with self._lock:
            self.documents[external_ref] = doc_no

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [args for name, args in self.calls if name == operation]

    def _call(self, operation: str, **arguments) -> None:
        with self._lock:
            self.calls.append((operation, arguments))
            if self._failures:
                raise self._failures.popleft()

    def _issue(self, prefix: str, external_ref: str | None) -> ErpResult:
        with self._lock:
            counter = self._counters.setdefault(prefix, itertools.count(1))
            doc_no = f"{prefix}-{next(counter):06d}"
            if external_ref is not None:
                self.documents[external_ref] = doc_no
        return ErpResult(doc_no=doc_no, raw={"success": True, "docNo": doc_no})

    def _check_item(self, item_code: str) -> None:
        if self.known_items is not None and item_code not in self.known_items:
            raise ErpItemNotFoundError(item_code)

    def create_item(self, item_code, description, uom, stock_control, has_batch_no, standard_cost, price):
        self._call("create_item", item_code=item_code, description=description, uom=uom)
        if self.known_items is not None:
            self.known_items.add(item_code)
        return ErpResult(doc_no=item_code, raw={"success": True, "docNo": item_code})

    def create_purchase_order(self, po_number, supplier_code, lines, external_ref, description=""):
        self._call(
            "create_purchase_order",
            po_number=po_number,
            supplier_code=supplier_code,
            lines=list(lines),
            external_ref=external_ref,
        )
        for line in lines:
            self._check_item(line.item_code)
        return self._issue("PO", external_ref)

    def cancel_purchase_order(self, po_number, doc_no):
        self._call("cancel_purchase_order", po_number=po_number, doc_no=doc_no)
        with self._lock:
            self.cancelled.add(doc_no or po_number)
        return ErpResult(doc_no=doc_no or po_number, raw={"success": True})

    def create_sales_order(self, order_number, customer_code, lines, external_ref, description=""):
        self._call(
            "create_sales_order",
            order_number=order_number,
            customer_code=customer_code,
            lines=list(lines),
            external_ref=external_ref,
        )
        for line in lines:
            self._check_item(line.item_code)
        return self._issue("SO", external_ref)

    def post_stock_adjustment(
        self,
        item_code,
        location,
        adjustment_type,
        quantity,
        uom,
        batch_number,
        external_ref,
        description="",
        reason=None,
    ):
        self._call(
            "post_stock_adjustment",
            item_code=item_code,
            location=location,
            adjustment_type=adjustment_type,
            quantity=quantity,
            uom=uom,
            batch_number=batch_number,
            external_ref=external_ref,
        )
        self._check_item(item_code)
        return self._issue("ADJ", external_ref)

    def post_goods_receipt(
        self,
        po_number,
        supplier_code,
        item_code,
        description,
        quantity,
        uom,
        batch_number,
        location,
        external_ref,
    ):
        self._call(
            "post_goods_receipt",
            po_number=po_number,
            item_code=item_code,
            quantity=quantity,
            uom=uom,
            batch_number=batch_number,
            location=location,
            external_ref=external_ref,
        )
        self._check_item(item_code)
        return self._issue("GRN", external_ref)

    def find_document(self, external_ref):
        with self._lock:
            return self.documents.get(external_ref)
