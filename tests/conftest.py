"""
Pytest configuration and fixtures.
"""

import pytest
import os
from unittest.mock import patch


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_REALTIME_MODEL": "gpt-4o-realtime-preview-2024-12-17",
        "TAX_RATE": "0.08",
        "ORDER_WEBHOOK_URL": "",
        "GOOGLE_SHEETS_CREDENTIALS_BASE64": "",
        "GOOGLE_SHEETS_MENU_ID": "",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.order_relay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def menu():
    from src.order_relay.menu import MenuService
    return MenuService()


@pytest.fixture
def order(menu):
    from src.order_relay.order import Order
    return Order("CA789012", "MZ123456", "+15551234567", menu=menu)


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    import json
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "streamSid": "MZ123456",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {"callerPhone": "+15551234567", "callSid": "CA789012"},
        }
    })


@pytest.fixture
def twilio_media_message():
    """Sample Twilio media message (20ms of mu-law silence)."""
    import json
    import base64

    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": 1,
            "timestamp": "12345",
            "payload": base64.b64encode(b"\xff" * 160).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    import json
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
        "stop": {"callSid": "CA789012", "accountSid": "AC345678"},
    })
