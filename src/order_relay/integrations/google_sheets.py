"""
Google Sheets integration.

- Reads the menu from a "Menu" sheet (Category | Item Name | Description | Price)
- Appends every finished call to the call log sheet, one row per order:
  Name | Phone Number | Pick Up/Delivery | Delivery Address | Estimated Pick Up Time (EST) | Price | Order Details

Auth uses a service account (base64 JSON in the environment). Tokens are
refreshed with google-auth in a worker thread; the Sheets v4 REST calls go
through the shared httpx client.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Sequence
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx
import structlog
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from src.order_relay.formatting import capitalize_words, format_phone_number
from src.order_relay.integrations.base import (
    DeliveryError,
    OrderSink,
    TransientDeliveryError,
    raise_for_delivery_status,
)
from src.order_relay.menu import MenuCatalog, catalog_from_sheet_rows
from src.order_relay.order import OrderSnapshot

logger = structlog.get_logger(__name__)

SHEETS_SCOPES = ("https://www.googleapis.com/auth/spreadsheets",)
SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"

REQUIRED_CREDENTIAL_FIELDS = ("type", "project_id", "private_key", "client_email")

ORDER_TIMEZONE = "America/New_York"

_UNSIZED = ("single", "regular")


class SheetsConfigError(ValueError):
    """Service-account credentials are missing or malformed."""


def decode_service_account_info(credentials_base64: str) -> dict[str, Any]:
    cleaned = "".join((credentials_base64 or "").split())
    if not cleaned:
        raise SheetsConfigError("GOOGLE_SHEETS_CREDENTIALS_BASE64 is empty")

    try:
        info = json.loads(base64.b64decode(cleaned).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SheetsConfigError(f"Could not decode Google credentials: {e}") from e

    if not isinstance(info, dict):
        raise SheetsConfigError("Google credentials must be a JSON object")

    missing = [f for f in REQUIRED_CREDENTIAL_FIELDS if not info.get(f)]
    if missing:
        raise SheetsConfigError(f"Google credentials missing fields: {', '.join(missing)}")

    return info


class GoogleSheetsClient:
    """Minimal Sheets v4 REST client (values.get / values.append)."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        credentials: Optional[service_account.Credentials] = None,
        token_provider: Optional[Callable[[], Any]] = None,
        timeout_seconds: float = 10.0,
    ):
        if credentials is None and token_provider is None:
            raise SheetsConfigError("GoogleSheetsClient needs credentials or a token provider")
        self._http = http_client
        self._credentials = credentials
        self._token_provider = token_provider
        self._timeout = timeout_seconds
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_base64(
        cls, credentials_base64: str, http_client: httpx.AsyncClient, *, timeout_seconds: float = 10.0
    ) -> "GoogleSheetsClient":
        info = decode_service_account_info(credentials_base64)
        credentials = service_account.Credentials.from_service_account_info(info, scopes=list(SHEETS_SCOPES))
        logger.info("Google Sheets client initialized", service_account=info.get("client_email"))
        return cls(http_client, credentials=credentials, timeout_seconds=timeout_seconds)

    @property
    def service_account_email(self) -> str:
        if self._credentials is None:
            return ""
        return getattr(self._credentials, "service_account_email", "") or ""

    async def _access_token(self) -> str:
        if self._token_provider is not None:
            token = self._token_provider()
            if asyncio.iscoroutine(token):
                token = await token
            return str(token)

        credentials = self._credentials
        async with self._refresh_lock:
            if not credentials.valid:
                try:
                    await asyncio.to_thread(credentials.refresh, Request())
                except Exception as e:
                    raise TransientDeliveryError(f"Google token refresh failed: {e}") from e
        return credentials.token

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = await self._access_token()
        try:
            response = await self._http.request(
                method,
                url,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._timeout,
                **kwargs,
            )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientDeliveryError(f"Google Sheets request failed: {e.__class__.__name__}: {e}") from e

        raise_for_delivery_status(response, sink="google_sheets")
        return response

    async def fetch_values(self, sheet_id: str, range_: str) -> List[List[str]]:
        url = f"{SHEETS_API_BASE}/{sheet_id}/values/{quote(range_, safe='!:')}"
        response = await self._request("GET", url)
        data = response.json()
        return data.get("values") or []

    async def append_row(self, sheet_id: str, range_: str, row: Sequence[Any]) -> dict[str, Any]:
        url = f"{SHEETS_API_BASE}/{sheet_id}/values/{quote(range_, safe='!:')}:append"
        response = await self._request(
            "POST",
            url,
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            json={"values": [list(row)]},
        )
        try:
            return response.json()
        except ValueError:
            return {}


def estimate_ready_minutes(item_count: int, *, is_delivery: bool) -> int:
    minutes = 10
    if item_count > 3:
        minutes += (item_count - 3) * 2
    if is_delivery:
        minutes += 10
    return max(10, math.ceil(minutes / 5) * 5)


def _format_eta(moment: datetime) -> str:
    # "Oct 19, 3:05 PM"
    hour = moment.hour % 12 or 12
    return f"{moment:%b} {moment.day}, {hour}:{moment:%M} {moment:%p}"


def _local_now(now: Optional[datetime]) -> datetime:
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(ZoneInfo(ORDER_TIMEZONE))


def items_text(snapshot: OrderSnapshot) -> str:
    parts = []
    for item in snapshot.items:
        size = f"{item.size} " if item.size and item.size not in _UNSIZED else ""
        parts.append(f"{item.quantity}x {size}{item.name}")
    return "; ".join(parts)


def build_order_row(snapshot: OrderSnapshot, *, now: Optional[datetime] = None) -> List[str]:
    is_delivery = "deliver" in (snapshot.delivery_method or "").lower()

    if is_delivery:
        address = capitalize_words((snapshot.address or "").strip()) or "Address Not Provided"
    else:
        address = "N/A"

    minutes = estimate_ready_minutes(len(snapshot.items), is_delivery=is_delivery)
    eta = _format_eta(_local_now(now) + timedelta(minutes=minutes))

    return [
        capitalize_words(snapshot.customer_name) or "Not Provided",
        format_phone_number(snapshot.customer_phone or snapshot.from_number),
        "Delivery" if is_delivery else "Pickup",
        address,
        eta,
        f"${snapshot.total:.2f}",
        capitalize_words(items_text(snapshot)) or "No Items",
    ]


class SheetsOrderSink(OrderSink):
    """Append each order to the call log sheet."""

    name = "google_sheets"

    def __init__(self, client: GoogleSheetsClient, sheet_id: str, *, range_: str = "Sheet1!A:G"):
        self._client = client
        self.sheet_id = sheet_id
        self.range = range_

    async def send(self, snapshot: OrderSnapshot) -> None:
        if not snapshot.items:
            raise DeliveryError("Order has no items")

        row = build_order_row(snapshot)
        result = await self._client.append_row(self.sheet_id, self.range, row)
        updates = result.get("updates") or {}
        logger.info(
            "Order logged to call log sheet",
            call_sid=snapshot.call_sid,
            updated_cells=updates.get("updatedCells"),
        )


async def load_sheet_menu(client: GoogleSheetsClient, sheet_id: str, sheet_name: str = "Menu") -> Optional[MenuCatalog]:
    """Fetch the menu sheet; None when it is missing, empty or unreadable."""
    if not sheet_id:
        logger.info("Menu sheet not configured; using built-in menu")
        return None

    try:
        rows = await client.fetch_values(sheet_id, f"{sheet_name}!A:D")
    except (DeliveryError, ValueError) as e:
        logger.error("Failed to fetch menu from sheet", error=str(e), sheet=sheet_name)
        return None

    catalog = catalog_from_sheet_rows(rows)
    if catalog is not None:
        logger.info("Menu loaded from Google Sheets", items=len(catalog), sheet=sheet_name)
    return catalog
