"""
Order tools for OpenAI Realtime function calling.

Each tool the model can call maps to exactly one `Order` operation. Arguments
arrive as a JSON string and are validated into a typed request before they
touch the order. Every call produces a `ToolResult`, success or failure, so
the session can always answer the model.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Type, Union

import structlog
from pydantic import BaseModel, Field, ValidationError

from src.order_relay.order import Order, OrderError

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Typed tool requests
# ---------------------------------------------------------------------------


class AddItemRequest(BaseModel):
    name: str = Field(description="The menu item name")
    size: Optional[str] = Field(
        default="single",
        description="Size: single, half-dozen, dozen for donuts; small, medium, large for drinks; regular for bakery",
    )
    quantity: int = Field(default=1, ge=1, description="How many of that size")
    special_instructions: Optional[str] = Field(default=None, description="Optional preparation notes")


class SetDeliveryMethodRequest(BaseModel):
    method: str = Field(description="Pickup or delivery")


class SetAddressRequest(BaseModel):
    address: str = Field(description="Full delivery address")


class SetCustomerNameRequest(BaseModel):
    name: str = Field(description="Customer name")


class SetCustomerPhoneRequest(BaseModel):
    phone: Optional[str] = Field(default=None, description="Customer phone number")


class SetPaymentMethodRequest(BaseModel):
    method: str = Field(description="Payment method")


class ConfirmOrderRequest(BaseModel):
    pass


ToolRequest = Union[
    AddItemRequest,
    SetDeliveryMethodRequest,
    SetAddressRequest,
    SetCustomerNameRequest,
    SetCustomerPhoneRequest,
    SetPaymentMethodRequest,
    ConfirmOrderRequest,
]

TOOL_REQUESTS: Dict[str, Type[BaseModel]] = {
    "add_item_to_order": AddItemRequest,
    "set_delivery_method": SetDeliveryMethodRequest,
    "set_address": SetAddressRequest,
    "set_customer_name": SetCustomerNameRequest,
    "set_customer_phone": SetCustomerPhoneRequest,
    "set_payment_method": SetPaymentMethodRequest,
    "confirm_order": ConfirmOrderRequest,
}


# ---------------------------------------------------------------------------
# Tool results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolSuccess:
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return True

    def to_output(self) -> str:
        return safe_json_dumps({"success": True, **self.data})


@dataclass(frozen=True)
class ToolFailure:
    error: str

    @property
    def ok(self) -> bool:
        return False

    def to_output(self) -> str:
        return safe_json_dumps({"success": False, "error": self.error})


ToolResult = Union[ToolSuccess, ToolFailure]


def safe_json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except Exception:
        return json.dumps({"success": False, "error": "json_encode_failed"})


def _format_validation_error(tool_name: str, exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "arguments"
        problems.append(f"{loc}: {err.get('msg', 'invalid')}")
    return f"Invalid arguments for {tool_name}: " + "; ".join(problems)


def parse_tool_request(tool_name: str, arguments: Union[str, Dict[str, Any], None]) -> ToolRequest:
    """
    Validate raw tool arguments into the request model for `tool_name`.

    Raises:
        KeyError: unknown tool
        ValueError: malformed JSON or arguments that fail validation
    """
    model = TOOL_REQUESTS[tool_name]

    if isinstance(arguments, str):
        text = arguments.strip()
        try:
            payload = json.loads(text) if text else {}
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed arguments for {tool_name}: {e.msg}") from e
    else:
        payload = arguments or {}

    if not isinstance(payload, dict):
        raise ValueError(f"Arguments for {tool_name} must be a JSON object")

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ValueError(_format_validation_error(tool_name, e)) from e


def tool_definitions() -> list[dict[str, Any]]:
    """Realtime `session.tools` schema for the ordering tools."""
    return [
        {
            "type": "function",
            "name": "add_item_to_order",
            "description": "Add an item to the customer's order",
            "parameters": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "The menu item name"},
                    "size": {
                        "type": "string",
                        "description": (
                            "Size: single, half-dozen, dozen for donuts; "
                            "small, medium, large for drinks; regular for bakery"
                        ),
                        "enum": ["single", "half-dozen", "dozen", "small", "medium", "large", "regular", "double"],
                    },
                    "quantity": {
                        "type": "number",
                        "description": "How many of that size",
                        "minimum": 1,
                        "default": 1,
                    },
                    "special_instructions": {
                        "type": "string",
                        "description": "Optional preparation notes (e.g. 'extra glaze')",
                    },
                },
                "required": ["name"],
            },
        },
        {
            "type": "function",
            "name": "set_delivery_method",
            "description": "Set whether order is for pickup or delivery",
            "parameters": {
                "type": "object",
                "properties": {
                    "method": {"type": "string", "enum": ["pickup", "delivery"], "description": "Pickup or delivery"}
                },
                "required": ["method"],
            },
        },
        {
            "type": "function",
            "name": "set_address",
            "description": "Set delivery address",
            "parameters": {
                "type": "object",
                "properties": {"address": {"type": "string", "description": "Full delivery address"}},
                "required": ["address"],
            },
        },
        {
            "type": "function",
            "name": "set_customer_name",
            "description": "Set customer name",
            "parameters": {
                "type": "object",
                "properties": {"name": {"type": "string", "description": "Customer name"}},
                "required": ["name"],
            },
        },
        {
            "type": "function",
            "name": "set_customer_phone",
            "description": "Set customer phone number",
            "parameters": {
                "type": "object",
                "properties": {"phone": {"type": "string", "description": "Customer phone number"}},
                "required": ["phone"],
            },
        },
        {
            "type": "function",
            "name": "set_payment_method",
            "description": "Set payment method",
            "parameters": {
                "type": "object",
                "properties": {
                    "method": {"type": "string", "enum": ["cash", "card"], "description": "Payment method"}
                },
                "required": ["method"],
            },
        },
        {
            "type": "function",
            "name": "confirm_order",
            "description": "Confirm the order is complete and ready to be submitted",
            "parameters": {"type": "object", "properties": {}},
        },
    ]


class OrderToolExecutor:
    """
    Applies realtime tool calls to one call's `Order`.

    `execute()` never raises: validation problems, order rule violations and
    unexpected errors all come back as `ToolFailure`.
    """

    def __init__(self, order: Order):
        self.order = order
        self._handlers: Dict[Type[BaseModel], Callable[[Any], Dict[str, Any]]] = {
            AddItemRequest: self._add_item,
            SetDeliveryMethodRequest: self._set_delivery_method,
            SetAddressRequest: self._set_address,
            SetCustomerNameRequest: self._set_customer_name,
            SetCustomerPhoneRequest: self._set_customer_phone,
            SetPaymentMethodRequest: self._set_payment_method,
            ConfirmOrderRequest: self._confirm_order,
        }

    def execute(self, tool_name: str, arguments: Union[str, Dict[str, Any], None]) -> ToolResult:
        started = time.time()

        if tool_name not in TOOL_REQUESTS:
            logger.warning("Unknown tool requested", tool=tool_name, call_sid=self.order.call_sid)
            return ToolFailure(error=f"Unknown function: {tool_name}")

        try:
            request = parse_tool_request(tool_name, arguments)
        except ValueError as e:
            logger.warning("Tool arguments rejected", tool=tool_name, error=str(e))
            return ToolFailure(error=str(e))

        try:
            data = self._handlers[type(request)](request)
        except OrderError as e:
            logger.info("Tool call refused by order rules", tool=tool_name, error=str(e))
            return ToolFailure(error=str(e))
        except Exception as e:
            logger.exception("Tool execution failed", tool=tool_name)
            return ToolFailure(error=str(e) or e.__class__.__name__)

        logger.info(
            "Tool call applied",
            tool=tool_name,
            call_sid=self.order.call_sid,
            items=len(self.order.items),
            total=str(self.order.total),
            ms=int((time.time() - started) * 1000),
        )
        return ToolSuccess(data=data)

    def _add_item(self, request: AddItemRequest) -> Dict[str, Any]:
        line = self.order.add_item(
            request.name,
            request.size,
            request.quantity,
            request.special_instructions,
        )
        return {
            "message": f"Added {request.quantity}x {line.size} {line.name} to the order",
            "item": {"name": line.name, "size": line.size, "quantity": line.quantity},
            "currentOrder": self.order.summary(),
            "total": f"${self.order.total:.2f}",
        }

    def _set_delivery_method(self, request: SetDeliveryMethodRequest) -> Dict[str, Any]:
        self.order.set_delivery_method(request.method)
        return {"method": self.order.delivery_method}

    def _set_address(self, request: SetAddressRequest) -> Dict[str, Any]:
        self.order.set_address(request.address)
        return {"address": self.order.address}

    def _set_customer_name(self, request: SetCustomerNameRequest) -> Dict[str, Any]:
        self.order.set_customer_name(request.name)
        return {"name": self.order.customer_name}

    def _set_customer_phone(self, request: SetCustomerPhoneRequest) -> Dict[str, Any]:
        self.order.set_customer_phone(request.phone)
        return {"phone": self.order.customer_phone}

    def _set_payment_method(self, request: SetPaymentMethodRequest) -> Dict[str, Any]:
        self.order.set_payment_method(request.method)
        return {"method": self.order.payment_method}

    def _confirm_order(self, request: ConfirmOrderRequest) -> Dict[str, Any]:
        self.order.confirm()
        return {"message": "Order confirmed!", "summary": self.order.full_summary()}
