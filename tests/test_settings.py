"""
Tests for settings loading/saving and logging setup.
"""
import json
import logging

import pytest

from pharmastock.config import (
    Settings,
    ForecastSettings,
    AlertSettings,
    load_settings,
    save_settings,
    DEFAULT_EXPIRY_ALERT_DAYS,
    DEFAULT_TARGET_STOCK_DAYS,
)
from pharmastock.utils.logging_config import setup_logging


class TestSettings:

    def test_missing_file_gives_defaults(self, temp_dir):
        settings = load_settings(temp_dir / "settings.json")
        assert settings == Settings()
        assert settings.alerts.expiry_window_days == DEFAULT_EXPIRY_ALERT_DAYS
        assert settings.forecast.target_stock_days == DEFAULT_TARGET_STOCK_DAYS

    def test_save_and_reload(self, temp_dir):
        path = temp_dir / "nested" / "settings.json"
        original = Settings(
            forecast=ForecastSettings(analysis_window_days=60, delivery_lead_days=5),
            alerts=AlertSettings(expiry_window_days=45),
        )

        assert save_settings(original, path) == path
        assert load_settings(path) == original

    def test_partial_override(self, temp_dir):
        path = temp_dir / "settings.json"
        path.write_text(json.dumps({"forecast": {"critical_days": 3}}), encoding="utf-8")

        settings = load_settings(path)

        assert settings.forecast.critical_days == 3
        assert settings.forecast.urgent_days == 14
        assert settings.alerts == AlertSettings()

    def test_unknown_keys_ignored(self, temp_dir, caplog):
        path = temp_dir / "settings.json"
        path.write_text(json.dumps({"alerts": {"expiry_window_days": 30, "colour": "red"}}), encoding="utf-8")

        with caplog.at_level(logging.WARNING, logger="pharmastock.config"):
            settings = load_settings(path)

        assert settings.alerts.expiry_window_days == 30
        assert "colour" in caplog.text

    def test_corrupt_file_gives_defaults(self, temp_dir):
        path = temp_dir / "settings.json"
        path.write_text("{not json", encoding="utf-8")
        assert load_settings(path) == Settings()

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError):
            ForecastSettings(critical_days=20, urgent_days=14)
        with pytest.raises(ValueError):
            ForecastSettings(analysis_window_days=0)
        with pytest.raises(ValueError):
            AlertSettings(expiry_critical_days=15, expiry_urgent_days=14)


class TestLogging:

    def test_setup_logging_writes_warnings(self, temp_dir):
        logger = setup_logging(temp_dir / "logs", app_name="pharmastock_test")
        try:
            logger.info("not written")
            logger.warning("stock ledger warning")
            for handler in logger.handlers:
                handler.flush()

            log_files = list((temp_dir / "logs").glob("pharmastock_test_*.log"))
            assert len(log_files) == 1
            content = log_files[0].read_text(encoding="utf-8")
            assert "stock ledger warning" in content
            assert "not written" not in content

            # Second call reuses the configured handlers
            assert setup_logging(temp_dir / "logs", app_name="pharmastock_test") is logger
            assert len(logger.handlers) == 2
        finally:
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)
