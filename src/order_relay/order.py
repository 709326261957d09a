"""
Per-call order state.

One `Order` lives for the duration of a call. It is mutated only by the tool
executor of its session and exported to the delivery sinks as an immutable
`OrderSnapshot`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from src.order_relay.menu import DEFAULT_SIZE, MenuService


DEFAULT_TAX_RATE = Decimal("0.08")

_CENTS = Decimal("0.01")

DELIVERY_METHODS = ("pickup", "delivery")


class OrderError(ValueError):
    """Base class for order validation failures (reported back to the caller, never fatal)."""


class ItemNotFound(OrderError):
    pass


class PriceUnavailable(OrderError):
    pass


class InvalidDeliveryMethod(OrderError):
    pass


class EmptyAddress(OrderError):
    pass


class EmptyName(OrderError):
    pass


class InvalidPaymentMethod(OrderError):
    pass


class EmptyOrder(OrderError):
    pass


class MissingCustomerName(OrderError):
    pass


def round2(amount: Decimal) -> Decimal:
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


@dataclass
class LineItem:
    name: str
    size: str
    quantity: int
    unit_price: Decimal
    special_instructions: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def matches(self, name: str, size: Optional[str]) -> bool:
        return (
            self.name.lower() == name.lower()
            and (self.size or DEFAULT_SIZE) == (size or DEFAULT_SIZE)
        )

    def describe(self) -> str:
        size = f" {self.size}" if self.size else ""
        return f"{self.quantity}x{size} {self.name}"


@dataclass(frozen=True)
class LineItemSnapshot:
    name: str
    size: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    special_instructions: Optional[str] = None


@dataclass(frozen=True)
class OrderSnapshot:
    """Frozen export of an order, handed to the delivery sinks."""

    call_sid: str
    stream_sid: str
    from_number: str
    created_at: str
    items: Tuple[LineItemSnapshot, ...]
    delivery_method: Optional[str]
    address: Optional[str]
    customer_name: Optional[str]
    customer_phone: Optional[str]
    payment_method: Optional[str]
    confirmed: bool
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    items_summary: str

    @property
    def idempotency_key(self) -> str:
        return self.call_sid or self.stream_sid

    @property
    def status(self) -> str:
        return "completed" if self.confirmed else "pending"

    def to_record(self) -> Dict[str, Any]:
        """JSON-safe record in the shape the order webhook expects."""
        return {
            "callSid": self.call_sid,
            "streamSid": self.stream_sid,
            "timestamp": self.created_at,
            "from": self.from_number,
            "customerName": self.customer_name,
            "customerPhone": self.customer_phone,
            "items": [
                {
                    "name": item.name,
                    "size": item.size,
                    "quantity": item.quantity,
                    "price": float(item.unit_price),
                    "itemTotal": float(item.line_total),
                    "specialInstructions": item.special_instructions,
                }
                for item in self.items
            ],
            "deliveryMethod": self.delivery_method,
            "address": self.address,
            "paymentMethod": self.payment_method,
            "subtotal": float(self.subtotal),
            "tax": float(self.tax),
            "total": float(self.total),
            "status": self.status,
            "itemsSummary": self.items_summary,
        }


class Order:
    """
    Order aggregate for a single call.

    Totals are derived and recomputed after every item change:
    subtotal = round2(sum(unit_price * qty)), tax = round2(subtotal * tax_rate),
    total = round2(subtotal + tax).
    """

    def __init__(
        self,
        call_sid: str,
        stream_sid: str,
        from_number: str,
        *,
        menu: MenuService,
        tax_rate: Decimal = DEFAULT_TAX_RATE,
    ):
        self.call_sid = call_sid
        self.stream_sid = stream_sid
        self.from_number = from_number
        self.created_at = datetime.now(timezone.utc).isoformat()

        self._menu = menu
        self._tax_rate = Decimal(tax_rate)

        self.items: List[LineItem] = []
        self.delivery_method: Optional[str] = None
        self.address: Optional[str] = None
        self.customer_name: Optional[str] = None
        self.customer_phone: Optional[str] = from_number
        self.payment_method: Optional[str] = None
        self.confirmed: bool = False
        self.logged: bool = False

        self.subtotal = Decimal("0.00")
        self.tax = Decimal("0.00")
        self.total = Decimal("0.00")

    @property
    def tax_rate(self) -> Decimal:
        return self._tax_rate

    def add_item(
        self,
        name: str,
        size: Optional[str] = DEFAULT_SIZE,
        quantity: int = 1,
        special_instructions: Optional[str] = None,
    ) -> LineItem:
        item = self._menu.resolve(name)
        if item is None:
            raise ItemNotFound(f"Menu item not found: {name}")

        size = (size or DEFAULT_SIZE).strip().lower() or DEFAULT_SIZE
        price = item.price_for(size)
        if price is None:
            raise PriceUnavailable(f"Price not found for {item.name} (size: {size})")

        quantity = max(1, int(quantity or 1))

        for line in self.items:
            if line.matches(item.name, size):
                line.quantity += quantity
                self._recalculate_totals()
                return line

        line = LineItem(
            name=item.name,
            size=size,
            quantity=quantity,
            unit_price=price,
            special_instructions=special_instructions or None,
        )
        self.items.append(line)
        self._recalculate_totals()
        return line

    def set_delivery_method(self, method: str) -> None:
        value = (method or "").strip().lower()
        if value not in DELIVERY_METHODS:
            raise InvalidDeliveryMethod(
                f"Invalid delivery method: {method}. Must be 'pickup' or 'delivery'"
            )
        self.delivery_method = value

    def set_address(self, address: str) -> None:
        value = (address or "").strip()
        if not value:
            raise EmptyAddress("Address cannot be empty")
        self.address = value

    def set_customer_name(self, name: str) -> None:
        value = (name or "").strip()
        if not value:
            raise EmptyName("Customer name cannot be empty")
        self.customer_name = value

    def set_customer_phone(self, phone: Optional[str]) -> None:
        self.customer_phone = (phone or "").strip() or self.from_number

    def set_payment_method(self, method: str) -> None:
        value = (method or "").lower()
        if not any(m in value for m in ("cash", "card", "credit", "debit")):
            raise InvalidPaymentMethod(f"Invalid payment method: {method}")
        self.payment_method = "cash" if "cash" in value else "card"

    def confirm(self) -> None:
        if not self.items:
            raise EmptyOrder("Cannot confirm order with no items")
        if not self.customer_name:
            raise MissingCustomerName("Cannot confirm order without customer name")
        self.confirmed = True

    def is_ready_to_log(self) -> bool:
        return bool(self.confirmed and self.items and self.customer_name and not self.logged)

    def mark_logged(self) -> None:
        self.logged = True

    def _recalculate_totals(self) -> None:
        subtotal = round2(sum((line.line_total for line in self.items), Decimal("0")))
        tax = round2(subtotal * self._tax_rate)
        self.subtotal = subtotal
        self.tax = tax
        self.total = round2(subtotal + tax)

    def summary(self) -> str:
        if not self.items:
            return "No items in order yet."
        return ", ".join(line.describe() for line in self.items)

    def full_summary(self) -> str:
        lines = [f"{line.describe()} - ${round2(line.line_total):.2f}" for line in self.items]
        parts = [
            "Order Summary:",
            *lines,
            "",
            f"Subtotal: ${self.subtotal:.2f}",
            f"Tax: ${self.tax:.2f}",
            f"Total: ${self.total:.2f}",
            "",
            f"Delivery Method: {self.delivery_method or 'Not specified'}",
        ]
        if self.address:
            parts.append(f"Address: {self.address}")
        parts.append(f"Customer: {self.customer_name or 'Not provided'}")
        parts.append(f"Payment: {self.payment_method or 'Not specified'}")
        return "\n".join(parts)

    def snapshot_for_delivery(self) -> OrderSnapshot:
        return OrderSnapshot(
            call_sid=self.call_sid,
            stream_sid=self.stream_sid,
            from_number=self.from_number,
            created_at=self.created_at,
            items=tuple(
                LineItemSnapshot(
                    name=line.name,
                    size=line.size,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    line_total=round2(line.line_total),
                    special_instructions=line.special_instructions,
                )
                for line in self.items
            ),
            delivery_method=self.delivery_method,
            address=self.address,
            customer_name=self.customer_name,
            customer_phone=self.customer_phone,
            payment_method=self.payment_method,
            confirmed=self.confirmed,
            subtotal=self.subtotal,
            tax=self.tax,
            total=self.total,
            items_summary=self.summary(),
        )
