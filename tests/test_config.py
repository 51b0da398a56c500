import pytest

import config
from config import Config, ConfigurationError


ENV_KEYS = [
    "APP_ENV", "SUPABASE_URL", "SUPABASE_KEY", "SUPABASE_TIMEOUT",
    "ENABLE_NOTIFICATIONS", "NOTIFICATION_CHANNEL",
    "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER",
    "RESTAURANT_NAME", "PHONE_COUNTRY_CODE", "BUSINESS_TIMEZONE", "MAX_CONFLICT_RETRIES",
    "FEED_RESYNC_INTERVAL", "FEED_RECONNECT_DELAY", "FEED_MAX_RECONNECT_DELAY", "FEED_LEDGER_WINDOW_HOURS",
    "ENABLE_SALES_LEDGER_CONSUMER", "ENABLE_METRICS_ENDPOINT",
    "HOST", "PORT", "LOG_LEVEL",
]


@pytest.fixture
def env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_local_defaults(env):
    env.setenv("APP_ENV", "local")

    cfg = Config()

    assert cfg.is_local
    assert cfg.supabase is None
    assert cfg.restaurant.phone_country_code == "52"
    assert cfg.restaurant.business_timezone == "UTC"
    assert cfg.restaurant.max_conflict_retries == 3
    assert cfg.notifications.enabled is False
    assert cfg.feed.resync_interval == 60.0
    assert cfg.server.port == 8000
    assert cfg.get_safe_summary()["store"] == "memory"


def test_production_requires_supabase(env):
    with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
        Config()


def test_supabase_url_must_be_https(env):
    env.setenv("SUPABASE_URL", "http://example.supabase.co")
    env.setenv("SUPABASE_KEY", "anon")

    with pytest.raises(ConfigurationError, match="https"):
        Config()


def test_production_with_supabase(env):
    env.setenv("SUPABASE_URL", "https://example.supabase.co")
    env.setenv("SUPABASE_KEY", "anon")
    env.setenv("SUPABASE_TIMEOUT", "4")

    cfg = Config()

    assert cfg.supabase.url == "https://example.supabase.co"
    assert cfg.supabase.connection_timeout == 4
    assert "anon" not in str(cfg.get_safe_summary())


def test_enabled_notifications_require_twilio_credentials(env):
    env.setenv("APP_ENV", "local")
    env.setenv("ENABLE_NOTIFICATIONS", "true")

    with pytest.raises(ConfigurationError, match="TWILIO_ACCOUNT_SID"):
        Config()

    env.setenv("TWILIO_ACCOUNT_SID", "AC123")
    env.setenv("TWILIO_AUTH_TOKEN", "secret")
    env.setenv("TWILIO_PHONE_NUMBER", "5550001111")

    with pytest.raises(ConfigurationError, match="E.164"):
        Config()

    env.setenv("TWILIO_PHONE_NUMBER", "+15550001111")
    cfg = Config()
    assert cfg.notifications.from_number == "+15550001111"
    assert cfg.validate_runtime_dependencies() == [
        "Notifications enabled in local mode will send real messages"
    ]


@pytest.mark.parametrize("key, value", [
    ("BUSINESS_TIMEZONE", "Mars/Olympus"),
    ("PHONE_COUNTRY_CODE", "+52"),
    ("MAX_CONFLICT_RETRIES", "-1"),
    ("MAX_CONFLICT_RETRIES", "many"),
    ("NOTIFICATION_CHANNEL", "pager"),
    ("FEED_RECONNECT_DELAY", "0"),
    ("FEED_RECONNECT_DELAY", "60"),
    ("FEED_LEDGER_WINDOW_HOURS", "0"),
    ("LOG_LEVEL", "loud"),
])
def test_invalid_values(env, key, value):
    env.setenv("APP_ENV", "local")
    env.setenv(key, value)

    with pytest.raises(ConfigurationError):
        Config()


def test_reload_config_replaces_singleton(env):
    env.setenv("APP_ENV", "local")
    env.setenv("RESTAURANT_NAME", "La Esquina")

    first = config.reload_config()
    assert config.get_config() is first
    assert first.restaurant.name == "La Esquina"

    env.setenv("RESTAURANT_NAME", "El Rincón")
    assert config.reload_config().restaurant.name == "El Rincón"
