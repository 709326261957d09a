"""
Voice ordering relay package.

Keep imports lightweight so leaf modules like `src.order_relay.menu` can be used
without loading the server stack (dotenv, websockets) at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.order_relay.config import Config

__all__ = ["Config", "get_config"]


def __getattr__(name: str) -> Any:
    if name in __all__:
        from src.order_relay.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    raise AttributeError(name)
