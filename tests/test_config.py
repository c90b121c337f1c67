"""Tests for settings loading and validation."""

from decimal import Decimal

import pytest

from config import load_settings_conf, validate_settings, SettingsError, DEFAULTS

def write_settings(tmp_path, body):
    (tmp_path / 'settings.conf').write_text(body)
    return str(tmp_path)

def test_missing_file_uses_defaults(tmp_path):
    settings = load_settings_conf(str(tmp_path))
    assert settings['db_url'] == DEFAULTS['db_url']
    assert settings['instant_trust_threshold'] == Decimal('80')
    assert settings['instant_value_threshold'] == Decimal('500')
    assert settings['stale_lock_hours'] == 72
    assert settings['integrity_record_issues'] is True
    assert settings['api_port'] == 8000

def test_values_are_parsed(tmp_path):
    path = write_settings(tmp_path, """[DEFAULT]
db_url = postgresql://user:pass@db:5432/vault
instant_trust_threshold = 75.5
instant_value_threshold = 250
stale_lock_hours = 24
integrity_record_issues = no
api_port = 9000
""")
    settings = load_settings_conf(path)
    assert settings['db_url'] == 'postgresql://user:pass@db:5432/vault'
    assert settings['instant_trust_threshold'] == Decimal('75.5')
    assert settings['instant_value_threshold'] == Decimal('250')
    assert settings['stale_lock_hours'] == 24
    assert settings['integrity_record_issues'] is False
    assert settings['api_port'] == 9000
    # Unset keys fall back to defaults
    assert settings['api_host'] == DEFAULTS['api_host']

def test_missing_default_section(tmp_path):
    path = write_settings(tmp_path, "[database]\ndb_url = postgresql://x/y\n")
    with pytest.raises(SettingsError, match=r"\[DEFAULT\]"):
        load_settings_conf(path)

def test_empty_db_url(tmp_path):
    path = write_settings(tmp_path, "[DEFAULT]\ndb_url =\ninstant_value_threshold = 500\n")
    with pytest.raises(SettingsError, match="db_url"):
        load_settings_conf(path)

@pytest.mark.parametrize("key,value", [
    ('instant_trust_threshold', '120'),
    ('instant_trust_threshold', 'high'),
    ('instant_value_threshold', '0'),
    ('stale_lock_hours', '0'),
    ('stale_lock_hours', 'soon'),
    ('api_port', 'http'),
    ('integrity_record_issues', 'maybe'),
])
def test_invalid_values(key, value):
    settings = dict(DEFAULTS)
    settings[key] = value
    with pytest.raises(SettingsError, match=key):
        validate_settings(settings)
