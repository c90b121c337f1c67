"""settings.conf loader.

settings.conf is an INI file whose [DEFAULT] section holds the service
settings. Keys left out of the file take the values in DEFAULTS, and a
missing file means "all defaults".

    [DEFAULT]
    db_url = postgresql://root@localhost:26257/cardvault?sslmode=disable
    instant_trust_threshold = 80
    instant_value_threshold = 500
    stale_lock_hours = 72
    integrity_record_issues = true
    api_host = 0.0.0.0
    api_port = 8000

Values are converted on load: thresholds to Decimal, hours and port to int,
integrity_record_issues to bool.
"""
import logging
from configparser import ConfigParser, Error as ConfigParserError
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Any, List

logger = logging.getLogger(__name__)

TRUE_VALUES = ('true', 'yes', 'on', '1')
FALSE_VALUES = ('false', 'no', 'off', '0')

DEFAULTS = {
    'db_url': 'postgresql://root@localhost:26257/cardvault?sslmode=disable',
    'instant_trust_threshold': '80',  # minimum seller trust score for the instant lane
    'instant_value_threshold': '500',  # card values at or above this need verification
    'stale_lock_hours': '72',
    'integrity_record_issues': 'true',
    'api_host': '0.0.0.0',
    'api_port': '8000'
}

class ConfigValidationError:
    """Collects every problem in a settings file before reporting."""

    def __init__(self):
        self.missing_sections: List[str] = []
        self.missing: List[str] = []
        self.invalid_values: List[str] = []

    def has_errors(self) -> bool:
        return bool(self.missing_sections or self.missing or self.invalid_values)

    def format_message(self) -> str:
        blocks = []
        for title, items in (
            ("Missing required sections:", self.missing_sections),
            ("Missing required settings:", self.missing),
            ("Invalid values:", self.invalid_values)
        ):
            if items:
                blocks.append("\n".join([title] + [f"  - {item}" for item in items]))
        return "\n\n".join(blocks)

class SettingsError(Exception):
    """Raised when settings.conf cannot be read or holds invalid values."""
    pass

def load_settings_conf(settings_path: str = ".") -> Dict[str, Any]:
    """Read ``settings_path``/settings.conf and return validated settings.

    Raises:
        SettingsError: If the file cannot be parsed or a value is invalid
    """
    config_path = Path(settings_path) / 'settings.conf'
    settings = dict(DEFAULTS)

    if not config_path.exists():
        logger.warning(
            f"No settings file at {config_path}, using defaults "
            "(see examples/settings.conf.example)"
        )
        return validate_settings(settings)

    parser = ConfigParser()
    try:
        parser.read(config_path)
    except ConfigParserError as e:
        raise SettingsError(f"Error parsing {config_path}: {e}")

    errors = ConfigValidationError()
    if not parser.defaults():
        errors.missing_sections.append('[DEFAULT]')
    else:
        settings.update(parser.defaults())
        if not settings.get('db_url'):
            errors.missing.append('db_url')

    if errors.has_errors():
        raise SettingsError(
            f"Settings Configuration Validation Failed ({config_path})\n\n" +
            errors.format_message()
        )

    return validate_settings(settings)

def _decimal(errors: ConfigValidationError, settings: Dict[str, Any], key: str) -> None:
    try:
        settings[key] = Decimal(str(settings[key]))
    except (InvalidOperation, KeyError):
        errors.invalid_values.append(f"{key} must be a number")
        return
    if not settings[key].is_finite():
        errors.invalid_values.append(f"{key} must be a number")

def _integer(errors: ConfigValidationError, settings: Dict[str, Any], key: str) -> None:
    try:
        settings[key] = int(settings[key])
    except (ValueError, TypeError, KeyError):
        errors.invalid_values.append(f"{key} must be an integer")

def validate_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Convert and range-check settings values in place.

    Raises:
        SettingsError: Listing every invalid value
    """
    errors = ConfigValidationError()

    _decimal(errors, settings, 'instant_trust_threshold')
    if isinstance(settings.get('instant_trust_threshold'), Decimal):
        if not Decimal('0') <= settings['instant_trust_threshold'] <= Decimal('100'):
            errors.invalid_values.append("instant_trust_threshold must be between 0 and 100")

    _decimal(errors, settings, 'instant_value_threshold')
    if isinstance(settings.get('instant_value_threshold'), Decimal):
        if settings['instant_value_threshold'] <= 0:
            errors.invalid_values.append("instant_value_threshold must be positive")

    _integer(errors, settings, 'stale_lock_hours')
    if isinstance(settings.get('stale_lock_hours'), int) and settings['stale_lock_hours'] < 1:
        errors.invalid_values.append("stale_lock_hours must be at least 1")

    _integer(errors, settings, 'api_port')

    record = str(settings.get('integrity_record_issues', 'true')).strip().lower()
    if record not in TRUE_VALUES + FALSE_VALUES:
        errors.invalid_values.append("integrity_record_issues must be true or false")
    settings['integrity_record_issues'] = record in TRUE_VALUES

    if errors.has_errors():
        raise SettingsError("Invalid settings configuration\n\n" + errors.format_message())

    return settings
