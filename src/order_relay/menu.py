"""
Menu catalog and lookup.

The catalog is the source of truth for item names, sizes and prices so the
realtime agent cannot invent prices. A static menu ships with the code; a menu
sheet loaded at startup replaces it wholesale when configured.

Lookup order for a spoken item name:
1. Exact key match (lowercased, trimmed)
2. Case/accent-insensitive match
3. Fuzzy token-subset match: every query word must be a substring of, or contain,
   some word of the candidate name. The first candidate in catalog order wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
import re
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import unicodedata

import structlog

logger = structlog.get_logger(__name__)

_PRICE_CLEAN_RE = re.compile(r"[$,\s]")

DEFAULT_SIZE = "single"


@dataclass(frozen=True)
class MenuItem:
    name: str
    sizes: Tuple[str, ...]
    price_by_size: Mapping[str, Decimal]
    category: str = "Other"
    description: str = ""

    def price_for(self, size: Optional[str]) -> Optional[Decimal]:
        """
        Price for a size, falling back to the first declared size.

        Voice recognition often mishears sizes ("medium" for a muffin); the
        first-available fallback keeps the order going instead of failing.
        """
        key = (size or "").strip().lower()
        if key in self.price_by_size:
            return self.price_by_size[key]
        for declared in self.sizes:
            if declared in self.price_by_size:
                return self.price_by_size[declared]
        return None


@dataclass(frozen=True)
class MenuCatalog:
    items: Mapping[str, MenuItem] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.items)

    def resolve(self, query: Optional[str]) -> Optional[MenuItem]:
        q = (query or "").strip().lower()
        if not q:
            return None

        item = self.items.get(q)
        if item is not None:
            return item

        q_norm = _normalize(q)
        for name, candidate in self.items.items():
            if _normalize(name) == q_norm:
                return candidate

        words = q_norm.split()
        for name, candidate in self.items.items():
            name_words = _normalize(name).split()
            if all(any(mw in word or word in mw for mw in name_words) for word in words):
                return candidate

        return None

    def price_of(self, query: Optional[str], size: Optional[str] = DEFAULT_SIZE) -> Optional[Decimal]:
        item = self.resolve(query)
        if item is None:
            return None
        return item.price_for(size)

    def categories(self) -> Dict[str, List[MenuItem]]:
        grouped: Dict[str, List[MenuItem]] = {}
        for item in self.items.values():
            grouped.setdefault(item.category, []).append(item)
        return grouped

    def to_prompt_lines(self) -> List[str]:
        """
        Render a compact, deterministic representation for prompting.
        """
        lines: List[str] = []
        for category, items in self.categories().items():
            if lines:
                lines.append("")
            lines.append(f"{category.upper()}:")
            for item in items:
                lines.append(f"- {item.name} — {_format_prices(item)}")
        return lines

    def to_prompt_text(self) -> str:
        return "\n".join(self.to_prompt_lines())


def _normalize(text: str) -> str:
    """
    Normalize text for matching: casefold + strip accents + collapse whitespace.
    """
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = " ".join(text.split())
    return text.casefold()


def _format_prices(item: MenuItem) -> str:
    if len(item.sizes) == 1:
        text = f"${item.price_by_size[item.sizes[0]]:.2f}"
    else:
        text = ", ".join(f"{size} ${item.price_by_size[size]:.2f}" for size in item.sizes)
    if item.description:
        text = f"{text} ({item.description})"
    return text


def parse_price(price_text: Optional[str]) -> Optional[Decimal]:
    cleaned = _PRICE_CLEAN_RE.sub("", price_text or "")
    if not cleaned:
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount


def build_catalog(entries: Iterable[Tuple[str, str, Sequence[Tuple[str, str]], str]]) -> MenuCatalog:
    """
    Build a catalog from `(category, name, [(size, price), ...], description)` entries.

    Later duplicates of a name are ignored so catalog order stays stable.
    """
    items: Dict[str, MenuItem] = {}
    for category, name, prices, description in entries:
        key = " ".join(name.split()).lower()
        if not key or key in items:
            continue
        sizes = tuple(size for size, _ in prices)
        items[key] = MenuItem(
            name=key,
            sizes=sizes,
            price_by_size=MappingProxyType({size: Decimal(price) for size, price in prices}),
            category=category,
            description=description,
        )
    return MenuCatalog(items=MappingProxyType(items))


_DONUT_SIZES = ("single", "half-dozen", "dozen")
_DRINK_SIZES = ("small", "medium", "large")


def _sized(sizes: Tuple[str, ...], *prices: str) -> List[Tuple[str, str]]:
    return list(zip(sizes, prices))


DEFAULT_MENU: Tuple[Tuple[str, str, Sequence[Tuple[str, str]], str], ...] = (
    ("Donuts", "glazed donut", _sized(_DONUT_SIZES, "2.49", "12.99", "22.99"), ""),
    ("Donuts", "chocolate frosted donut", _sized(_DONUT_SIZES, "2.99", "15.99", "27.99"), ""),
    ("Donuts", "boston cream donut", _sized(_DONUT_SIZES, "3.49", "18.99", "33.99"), ""),
    ("Donuts", "maple bar", _sized(_DONUT_SIZES, "3.29", "17.99", "31.99"), ""),
    ("Donuts", "jelly filled donut", _sized(_DONUT_SIZES, "3.29", "17.99", "31.99"), ""),
    ("Donuts", "sprinkle donut", _sized(_DONUT_SIZES, "2.79", "14.99", "25.99"), ""),
    ("Donuts", "old fashioned donut", _sized(_DONUT_SIZES, "2.79", "14.99", "25.99"), ""),
    ("Donuts", "apple fritter", _sized(_DONUT_SIZES, "3.99", "21.99", "39.99"), ""),
    ("Donuts", "cruller", _sized(_DONUT_SIZES, "2.99", "15.99", "27.99"), ""),
    ("Donuts", "cinnamon sugar donut", _sized(_DONUT_SIZES, "2.79", "14.99", "25.99"), ""),
    ("Donuts", "blueberry cake donut", _sized(_DONUT_SIZES, "3.29", "17.99", "31.99"), ""),
    ("Donut Holes", "donut holes", [("small", "4.99"), ("large", "8.99")], "small is 25 pieces, large is 50 pieces"),
    ("Bakery", "muffin", [("regular", "3.49")], ""),
    ("Bakery", "croissant", [("regular", "3.99")], ""),
    ("Bakery", "bagel", [("regular", "2.99")], ""),
    ("Bakery", "bagel with cream cheese", [("regular", "4.49")], ""),
    ("Coffee", "coffee", _sized(_DRINK_SIZES, "2.49", "3.29", "3.99"), ""),
    ("Coffee", "iced coffee", _sized(_DRINK_SIZES, "3.29", "3.99", "4.79"), ""),
    ("Coffee", "espresso", [("single", "2.99"), ("double", "3.99")], ""),
    ("Coffee", "latte", _sized(_DRINK_SIZES, "4.29", "4.99", "5.79"), ""),
    ("Coffee", "cappuccino", _sized(_DRINK_SIZES, "4.29", "4.99", "5.79"), ""),
    ("Specialty Drinks", "hot chocolate", _sized(_DRINK_SIZES, "3.49", "4.29", "4.99"), ""),
    ("Specialty Drinks", "chai latte", _sized(_DRINK_SIZES, "4.49", "5.29", "5.99"), ""),
    ("Specialty Drinks", "matcha latte", _sized(_DRINK_SIZES, "4.99", "5.79", "6.49"), ""),
    ("Other Drinks", "orange juice", [("regular", "3.49")], ""),
    ("Other Drinks", "milk", [("regular", "2.49")], ""),
    ("Other Drinks", "water", [("regular", "1.99")], ""),
)


def default_catalog() -> MenuCatalog:
    return build_catalog(DEFAULT_MENU)


def catalog_from_sheet_rows(rows: Sequence[Sequence[str]]) -> Optional[MenuCatalog]:
    """
    Build a catalog from spreadsheet rows (first row is the header).

    Expected columns: Category | Item Name | Description | Price. Only the name
    and price columns are required; sheet items get the single size "regular".
    """
    if not rows or len(rows) < 2:
        logger.warning("Menu sheet is empty or has only headers")
        return None

    headers = [str(h).strip().lower() for h in rows[0]]
    cat_idx = _find_column(headers, ("category",))
    name_idx = _find_column(headers, ("item", "name"))
    desc_idx = _find_column(headers, ("desc",))
    price_idx = _find_column(headers, ("price",))

    if name_idx is None or price_idx is None:
        logger.error("Menu sheet is missing name/price columns", headers=headers)
        return None

    entries = []
    for row in rows[1:]:
        name = _cell(row, name_idx)
        price = parse_price(_cell(row, price_idx))
        if not name or price is None:
            continue
        category = _cell(row, cat_idx) or "Other"
        description = _cell(row, desc_idx)
        entries.append((category, name, [("regular", str(price))], description))

    catalog = build_catalog(entries)
    if not len(catalog):
        return None
    return catalog


def _find_column(headers: List[str], keywords: Tuple[str, ...]) -> Optional[int]:
    for idx, header in enumerate(headers):
        if any(k in header for k in keywords):
            return idx
    return None


def _cell(row: Sequence[str], idx: Optional[int]) -> str:
    if idx is None or idx >= len(row):
        return ""
    return str(row[idx] or "").strip()


class MenuService:
    """
    Shared, read-only view of the menu for every call.

    A dynamic catalog (menu sheet) takes priority over the static one, including
    for fuzzy matches; the static catalog answers anything the dynamic one
    cannot. `replace()` swaps the dynamic table in one assignment, so sessions
    never observe a half-built catalog.
    """

    def __init__(self, static: Optional[MenuCatalog] = None, dynamic: Optional[MenuCatalog] = None):
        self._static = static if static is not None else default_catalog()
        self._dynamic = dynamic

    @property
    def static(self) -> MenuCatalog:
        return self._static

    @property
    def dynamic(self) -> Optional[MenuCatalog]:
        return self._dynamic

    def current(self) -> MenuCatalog:
        return self._dynamic if self._dynamic is not None else self._static

    def replace(self, catalog: Optional[MenuCatalog]) -> None:
        self._dynamic = catalog
        logger.info(
            "Menu catalog replaced",
            source="sheet" if catalog is not None else "static",
            num_items=len(self.current()),
        )

    def resolve(self, query: Optional[str]) -> Optional[MenuItem]:
        if self._dynamic is not None:
            item = self._dynamic.resolve(query)
            if item is not None:
                return item
        return self._static.resolve(query)

    def price_of(self, query: Optional[str], size: Optional[str] = DEFAULT_SIZE) -> Optional[Decimal]:
        item = self.resolve(query)
        if item is None:
            return None
        return item.price_for(size)

    def prompt_text(self) -> str:
        return self.current().to_prompt_text()
