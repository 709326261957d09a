"""
Configuration management for the voice ordering relay.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Shop
    shop_name: str = "Glazed and Confused"
    tax_rate: Decimal = Decimal("0.08")

    # OpenAI Realtime
    openai_api_key: str = ""
    openai_realtime_model: str = "gpt-4o-realtime-preview-2024-12-17"
    openai_realtime_voice: str = "alloy"
    openai_realtime_temperature: float = 0.8
    openai_realtime_max_output_tokens: int = 4096
    openai_realtime_instructions: str = ""
    openai_realtime_instructions_file: str = ""
    openai_realtime_transcription_model: str = "whisper-1"
    openai_realtime_turn_silence_ms: int = 700
    openai_realtime_prefix_padding_ms: int = 300
    openai_realtime_vad_threshold: float = 0.5
    openai_realtime_connect_timeout_seconds: float = 10.0

    # Order delivery
    order_webhook_url: str = ""
    delivery_max_attempts: int = 3
    delivery_retry_base_ms: int = 1000
    delivery_retry_max_ms: int = 8000
    delivery_timeout_seconds: float = 10.0

    # Google Sheets (call log + optional menu sheet)
    google_sheets_credentials_base64: str = ""
    google_sheets_id: str = ""
    google_sheets_range: str = "Sheet1!A:G"
    google_sheets_menu_id: str = ""
    google_sheets_menu_sheet: str = "Menu"

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio Media Streams."""
        return f"wss://{self.public_host}/media-stream"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def realtime_url(self) -> str:
        return f"wss://api.openai.com/v1/realtime?model={self.openai_realtime_model}"

    @property
    def sheets_enabled(self) -> bool:
        return bool(self.google_sheets_credentials_base64)

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_realtime_model:
            missing.append("OPENAI_REALTIME_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if self.order_webhook_url and not self.order_webhook_url.startswith("http"):
            raise ConfigError("ORDER_WEBHOOK_URL must be a valid HTTP/HTTPS URL")

        if not (Decimal("0") <= self.tax_rate < Decimal("1")):
            raise ConfigError(f"Invalid TAX_RATE '{self.tax_rate}'. Expected a fraction such as 0.08.")

        if self.delivery_max_attempts < 1:
            raise ConfigError("DELIVERY_MAX_ATTEMPTS must be at least 1")
        if self.delivery_retry_base_ms < 0 or self.delivery_retry_max_ms < self.delivery_retry_base_ms:
            raise ConfigError("DELIVERY_RETRY_MAX_MS must be >= DELIVERY_RETRY_BASE_MS >= 0")

        if not self.order_webhook_url and not self.sheets_enabled:
            logger.warning("No order sinks configured; orders will only be logged locally")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            shop_name=self.shop_name,
            tax_rate=str(self.tax_rate),
            realtime_model=self.openai_realtime_model,
            realtime_voice=self.openai_realtime_voice,
            turn_silence_ms=self.openai_realtime_turn_silence_ms,
            vad_threshold=self.openai_realtime_vad_threshold,
            delivery_max_attempts=self.delivery_max_attempts,
            delivery_retry_base_ms=self.delivery_retry_base_ms,
            webhook_set=bool(self.order_webhook_url),
            sheets_enabled=self.sheets_enabled,
            sheets_menu_set=bool(self.google_sheets_menu_id),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_decimal(key: str, default: str) -> Decimal:
    """Get a decimal from environment variable (money and rates stay exact)."""
    try:
        value = Decimal(os.getenv(key, default).strip())
    except InvalidOperation:
        return Decimal(default)
    return value if value.is_finite() else Decimal(default)


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Shop
        shop_name=os.getenv("SHOP_NAME", "Glazed and Confused"),
        tax_rate=_get_decimal("TAX_RATE", "0.08"),

        # OpenAI Realtime
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview-2024-12-17"),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "alloy"),
        openai_realtime_temperature=_get_float("OPENAI_REALTIME_TEMPERATURE", 0.8),
        openai_realtime_max_output_tokens=_get_int("OPENAI_REALTIME_MAX_OUTPUT_TOKENS", 4096),
        openai_realtime_instructions=os.getenv("OPENAI_REALTIME_INSTRUCTIONS", ""),
        openai_realtime_instructions_file=os.getenv("OPENAI_REALTIME_INSTRUCTIONS_FILE", ""),
        openai_realtime_transcription_model=os.getenv("OPENAI_REALTIME_TRANSCRIPTION_MODEL", "whisper-1"),
        openai_realtime_turn_silence_ms=_get_int("OPENAI_REALTIME_TURN_SILENCE_MS", 700),
        openai_realtime_prefix_padding_ms=_get_int("OPENAI_REALTIME_PREFIX_PADDING_MS", 300),
        openai_realtime_vad_threshold=_get_float("OPENAI_REALTIME_VAD_THRESHOLD", 0.5),
        openai_realtime_connect_timeout_seconds=_get_float("OPENAI_REALTIME_CONNECT_TIMEOUT_SECONDS", 10.0),

        # Order delivery
        order_webhook_url=os.getenv("ORDER_WEBHOOK_URL", "").strip(),
        delivery_max_attempts=_get_int("DELIVERY_MAX_ATTEMPTS", 3),
        delivery_retry_base_ms=_get_int("DELIVERY_RETRY_BASE_MS", 1000),
        delivery_retry_max_ms=_get_int("DELIVERY_RETRY_MAX_MS", 8000),
        delivery_timeout_seconds=_get_float("DELIVERY_TIMEOUT_SECONDS", 10.0),

        # Google Sheets
        google_sheets_credentials_base64=os.getenv("GOOGLE_SHEETS_CREDENTIALS_BASE64", "").strip(),
        google_sheets_id=os.getenv("GOOGLE_SHEETS_ID", ""),
        google_sheets_range=os.getenv("GOOGLE_SHEETS_RANGE", "Sheet1!A:G"),
        google_sheets_menu_id=os.getenv("GOOGLE_SHEETS_MENU_ID", ""),
        google_sheets_menu_sheet=os.getenv("GOOGLE_SHEETS_MENU_SHEET", "Menu"),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
