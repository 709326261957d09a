from __future__ import annotations

from pathlib import Path

import structlog

from src.order_relay.config import Config
from src.order_relay.order import Order

logger = structlog.get_logger(__name__)

_DEFAULT_MAX_PROMPT_CHARS = 40_000

_CONVERSATION_RULES = """CONVERSATION RULES:
1. Start by greeting: "Thanks for calling {SHOP_NAME}! What can I get for you today?"
2. When the customer mentions items, use the add_item_to_order tool immediately
3. Ask follow-up questions naturally (single, half-dozen, or dozen for donuts; small/medium/large for drinks)
4. Periodically summarize the order: "So far you have [items]. What else can I get you?"
5. When the customer is done ("that's it", "I'm all set"), ask about pickup or delivery
6. If delivery, ask for the address and repeat it back for confirmation
7. Before finalizing, read back the complete order with totals
8. Ask for the customer's name at the end (REQUIRED)
9. Only call confirm_order after the customer explicitly confirms
10. Be conversational, upbeat, and friendly, like a real donut shop employee
11. If a tool returns success=false, explain the problem briefly and ask again
12. Vary your responses; don't repeat the same question
13. For donuts, default to "single" if size is not specified. Suggest the dozen deal for multiples of the same donut.
14. If a customer says "a dozen donuts" without a type, ask which kind they'd like.

IMPORTANT: Finish complete sentences. Don't cut off mid-sentence."""


def _repo_root() -> Path:
    # src/order_relay/prompt_utils.py -> repo root is ../../
    return Path(__file__).resolve().parents[2]


def _read_text_file(path: str, *, max_chars: int) -> str:
    if not path:
        return ""

    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = _repo_root() / file_path

    try:
        content = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("Prompt file not found", path=str(file_path))
        return ""
    except UnicodeDecodeError:
        try:
            content = file_path.read_text(encoding="utf-8-sig")
        except (OSError, UnicodeDecodeError):
            logger.warning("Prompt file decode failed", path=str(file_path))
            return ""
    except OSError:
        logger.exception("Prompt file read failed", path=str(file_path))
        return ""

    content = content.strip()
    if not content:
        return ""

    if len(content) > max_chars:
        logger.warning("Prompt truncated (too long)", path=str(file_path), max_chars=max_chars)
        content = content[:max_chars]

    return content


def _apply_placeholders(prompt: str, replacements: dict[str, str]) -> str:
    if not prompt:
        return ""

    for key, value in replacements.items():
        prompt = prompt.replace(key, value)

    return prompt


def resolve_prompt(
    *,
    inline_text: str,
    file_path: str,
    max_chars: int = _DEFAULT_MAX_PROMPT_CHARS,
) -> str:
    """
    Resolve a prompt from (1) inline text, else (2) file path, else "".

    Truncates large prompts for safety.
    """
    prompt = (inline_text or "").strip()
    if not prompt:
        prompt = _read_text_file(file_path, max_chars=max_chars)
    return prompt


def order_state_text(order: Order) -> str:
    return "\n".join(
        [
            f"Items: {order.summary()}",
            f"Delivery Method: {order.delivery_method or 'not specified'}",
            f"Address: {order.address or 'not specified'}",
            f"Customer Name: {order.customer_name or 'not provided'}",
            f"Payment Method: {order.payment_method or 'not specified'}",
        ]
    )


def build_instructions(*, config: Config, menu_text: str, order: Order) -> str:
    """
    Build the realtime session instructions.

    A custom prompt (inline or file) may use {SHOP_NAME}, {MENU} and
    {ORDER_STATE}; without one the built-in ordering prompt is used.
    """
    replacements = {
        "{SHOP_NAME}": config.shop_name,
        "{shop_name}": config.shop_name,
        "{MENU}": menu_text,
        "{ORDER_STATE}": order_state_text(order),
    }

    custom = resolve_prompt(
        inline_text=config.openai_realtime_instructions,
        file_path=config.openai_realtime_instructions_file,
    )
    if custom:
        return _apply_placeholders(custom, replacements)

    template = (
        "You are a warm, friendly ordering assistant for {SHOP_NAME}, a beloved neighborhood donut shop. "
        "You help customers place orders over the phone.\n\n"
        "AVAILABLE MENU ITEMS:\n{MENU}\n\n"
        "CURRENT ORDER STATE:\n{ORDER_STATE}\n\n" + _CONVERSATION_RULES
    )
    return _apply_placeholders(template, replacements)
