"""Settings management for brokerledger.

Built-in defaults, deep-merged with an optional JSON file, then environment
overrides.
"""

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from brokerledger.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("config") / "brokerledger.json"

COMMISSION_STRATEGIES = ("bracket", "progressive")

DEFAULT_SETTINGS = {
    "$schema": "brokerledger_settings_v1",
    "version": "1.0",

    "database": {
        "path": "data/brokerledger.db",
        "password": None,
    },

    "statements": {
        "max_batch_size": 5000,
        "processing_deadline_seconds": 30,
        "file_types": ["csv", "xml"],
    },

    "commission": {
        # Strategy used by statement ingestion; must name one explicitly
        "strategy": "bracket",
    },

    "display": {
        "currency_symbol": "₹",
        "decimal_places": 2,
        "negative_in_brackets": True,
    },
}

# Environment variable -> (section, key, cast)
ENV_OVERRIDES = {
    "BROKERLEDGER_DB": ("database", "path", str),
    "BROKERLEDGER_DB_PASSWORD": ("database", "password", str),
    "BROKERLEDGER_MAX_BATCH": ("statements", "max_batch_size", int),
    "BROKERLEDGER_DEADLINE": ("statements", "processing_deadline_seconds", float),
    "BROKERLEDGER_COMMISSION_STRATEGY": ("commission", "strategy", str),
}


@dataclass
class DatabaseConfig:
    path: str = "data/brokerledger.db"
    password: Optional[str] = None


@dataclass
class StatementConfig:
    """Bounds applied to every statement upload."""
    max_batch_size: int = 5000
    processing_deadline_seconds: float = 30
    file_types: List[str] = field(default_factory=lambda: ["csv", "xml"])


@dataclass
class DisplayConfig:
    """Configuration for display formatting."""
    currency_symbol: str = "₹"
    decimal_places: int = 2
    negative_in_brackets: bool = True

    def format_currency(self, amount) -> str:
        """Format amount with currency symbol."""
        if amount < 0 and self.negative_in_brackets:
            return f"({self.currency_symbol}{abs(amount):,.{self.decimal_places}f})"
        return f"{self.currency_symbol}{amount:,.{self.decimal_places}f}"


class Settings:
    """
    Runtime settings for brokerledger.

    Usage:
        settings = Settings.load()                     # defaults + config/brokerledger.json + env
        settings = Settings.load(Path("prod.json"))    # explicit file
        settings.statements.max_batch_size
    """

    def __init__(self, data: Dict[str, Any]):
        self._raw = data

        database = data.get("database", {})
        self.database = DatabaseConfig(
            path=database.get("path") or DatabaseConfig.path,
            password=database.get("password"),
        )

        statements = data.get("statements", {})
        self.statements = StatementConfig(
            max_batch_size=int(statements.get("max_batch_size", 5000)),
            processing_deadline_seconds=float(statements.get("processing_deadline_seconds", 30)),
            file_types=[t.lower() for t in statements.get("file_types", ["csv", "xml"])],
        )
        if self.statements.max_batch_size <= 0:
            raise ValidationError("statements.max_batch_size must be positive", field="max_batch_size")
        if self.statements.processing_deadline_seconds <= 0:
            raise ValidationError(
                "statements.processing_deadline_seconds must be positive",
                field="processing_deadline_seconds",
            )

        strategy = data.get("commission", {}).get("strategy")
        if strategy not in COMMISSION_STRATEGIES:
            raise ValidationError(
                f"commission.strategy must be one of {COMMISSION_STRATEGIES}, got {strategy!r}",
                field="strategy",
            )
        self.commission_strategy = strategy

        display = data.get("display", {})
        self.display = DisplayConfig(
            currency_symbol=display.get("currency_symbol", "₹"),
            decimal_places=display.get("decimal_places", 2),
            negative_in_brackets=display.get("negative_in_brackets", True),
        )

    @classmethod
    def load(cls, config_file: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """
        Load settings with fallback to defaults.

        Args:
            config_file: JSON file to merge over the defaults
                         (default: config/brokerledger.json when present)
            environ: Environment mapping (default: os.environ)

        Returns:
            Settings instance
        """
        data = copy.deepcopy(DEFAULT_SETTINGS)

        path = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
        if path.exists():
            try:
                with open(path, encoding="utf-8") as f:
                    file_data = json.load(f)
                data = cls._deep_merge(data, file_data)
                logger.debug(f"Loaded settings from {path}")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to load settings from {path}: {e}")
        elif config_file:
            logger.warning(f"Settings file not found: {path}; using defaults")

        environ = os.environ if environ is None else environ
        for var, (section, key, cast) in ENV_OVERRIDES.items():
            if var in environ:
                try:
                    data[section][key] = cast(environ[var])
                except ValueError:
                    raise ValidationError(f"Invalid value for {var}: {environ[var]!r}", field=var)

        return cls(data)

    @staticmethod
    def _deep_merge(base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries, override takes precedence."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = Settings._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._raw)

    def save(self, path: Path) -> None:
        """Write the current settings as JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._raw, f, indent=2)
        logger.info(f"Saved settings to {path}")
