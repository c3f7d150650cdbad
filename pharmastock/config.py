"""
Project configuration and constants.

Defaults live here as module constants; a settings.json file (sections
"forecast" and "alerts") overrides them.  Thresholds are configuration,
never computed by the engines.
"""
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any
import json
import logging

from .utils.paths import get_settings_path

logger = logging.getLogger(__name__)

# Alerts
DEFAULT_EXPIRY_ALERT_DAYS = 90
DEFAULT_STOCK_THRESHOLD = 10
DEFAULT_EXPIRY_CRITICAL_DAYS = 7   # days_remaining < 7  → CRITIQUE
DEFAULT_EXPIRY_URGENT_DAYS = 14    # days_remaining < 14 → URGENT

# Replenishment forecast
DEFAULT_ANALYSIS_WINDOW_DAYS = 90
DEFAULT_DELIVERY_LEAD_DAYS = 3
DEFAULT_SAFETY_MARGIN_DAYS = 7
DEFAULT_TARGET_STOCK_DAYS = 30
DEFAULT_CRITICAL_DAYS = 7          # days_remaining <= 7  → CRITIQUE
DEFAULT_URGENT_DAYS = 14           # days_remaining <= 14 → URGENT

# Stock projection (chart points)
DEFAULT_PROJECTION_HORIZON_DAYS = 60
DEFAULT_PROJECTION_STEP_DAYS = 5


@dataclass(frozen=True)
class ForecastSettings:
    analysis_window_days: int = DEFAULT_ANALYSIS_WINDOW_DAYS
    delivery_lead_days: int = DEFAULT_DELIVERY_LEAD_DAYS
    safety_margin_days: int = DEFAULT_SAFETY_MARGIN_DAYS
    target_stock_days: int = DEFAULT_TARGET_STOCK_DAYS
    critical_days: int = DEFAULT_CRITICAL_DAYS
    urgent_days: int = DEFAULT_URGENT_DAYS

    def __post_init__(self):
        if self.analysis_window_days < 1:
            raise ValueError("analysis_window_days must be >= 1")
        if self.target_stock_days < 0:
            raise ValueError("target_stock_days cannot be negative")
        if self.critical_days > self.urgent_days:
            raise ValueError("critical_days cannot exceed urgent_days")


@dataclass(frozen=True)
class AlertSettings:
    expiry_window_days: int = DEFAULT_EXPIRY_ALERT_DAYS
    expiry_critical_days: int = DEFAULT_EXPIRY_CRITICAL_DAYS
    expiry_urgent_days: int = DEFAULT_EXPIRY_URGENT_DAYS
    default_stock_threshold: int = DEFAULT_STOCK_THRESHOLD

    def __post_init__(self):
        if self.expiry_window_days < 0:
            raise ValueError("expiry_window_days cannot be negative")
        if self.expiry_critical_days > self.expiry_urgent_days:
            raise ValueError("expiry_critical_days cannot exceed expiry_urgent_days")


@dataclass(frozen=True)
class Settings:
    forecast: ForecastSettings = field(default_factory=ForecastSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)

    def to_dict(self) -> Dict[str, Any]:
        return {"forecast": asdict(self.forecast), "alerts": asdict(self.alerts)}


def _section(raw: Dict[str, Any], name: str, cls) -> Any:
    values = raw.get(name) or {}
    known = {k: v for k, v in values.items() if k in cls.__dataclass_fields__}
    unknown = set(values) - set(known)
    if unknown:
        logger.warning(f"Ignoring unknown {name} settings: {', '.join(sorted(unknown))}")
    return cls(**known)


def load_settings(path: Optional[Path] = None) -> Settings:
    """
    Load settings from JSON, falling back to defaults.

    Args:
        path: settings file (default: data_dir/settings.json)

    Returns:
        Settings (defaults when the file is missing or unreadable)
    """
    settings_path = path or get_settings_path()

    if not settings_path.exists():
        return Settings()

    try:
        with open(settings_path, 'r', encoding='utf-8') as f:
            raw = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        logger.warning(f"Could not read settings {settings_path}: {e}; using defaults")
        return Settings()

    return Settings(
        forecast=_section(raw, "forecast", ForecastSettings),
        alerts=_section(raw, "alerts", AlertSettings),
    )


def save_settings(settings: Settings, path: Optional[Path] = None) -> Path:
    """
    Write settings to JSON.

    Returns:
        Path written
    """
    settings_path = path or get_settings_path()
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    with open(settings_path, 'w', encoding='utf-8') as f:
        json.dump(settings.to_dict(), f, indent=2)
    return settings_path
