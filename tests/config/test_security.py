"""
Unit tests for config.security module.

Tests cover:
- AMI credential injection (environment variables only)
- YAML secrets being discarded
"""

import pytest

from ami_console.config.security import _is_nonempty_string, inject_ami_credentials


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("AMI_USERNAME", raising=False)
    monkeypatch.delenv("AMI_SECRET", raising=False)


class TestIsNonemptyString:
    def test_valid_string_returns_true(self):
        assert _is_nonempty_string("operator") is True

    def test_empty_or_whitespace_returns_false(self):
        assert _is_nonempty_string("") is False
        assert _is_nonempty_string("   ") is False
        assert _is_nonempty_string("\t\n") is False

    def test_non_string_returns_false(self):
        assert _is_nonempty_string(None) is False
        assert _is_nonempty_string(42) is False
        assert _is_nonempty_string({}) is False


class TestInjectAmiCredentials:
    def test_secret_from_env(self, monkeypatch):
        monkeypatch.setenv("AMI_USERNAME", "operator")
        monkeypatch.setenv("AMI_SECRET", "s3cret")
        config_data = {}

        inject_ami_credentials(config_data)

        assert config_data['ami']['username'] == 'operator'
        assert config_data['ami']['secret'] == 's3cret'

    def test_yaml_secret_discarded(self):
        """SECURITY: a secret written into YAML must never be used."""
        config_data = {'ami': {'host': 'pbx.example', 'secret': 'from-yaml'}}

        inject_ami_credentials(config_data)

        assert config_data['ami']['secret'] is None
        assert config_data['ami']['host'] == 'pbx.example'

    def test_env_secret_replaces_yaml_secret(self, monkeypatch):
        monkeypatch.setenv("AMI_SECRET", "from-env")
        config_data = {'ami': {'secret': 'from-yaml'}}

        inject_ami_credentials(config_data)

        assert config_data['ami']['secret'] == 'from-env'

    def test_yaml_username_kept_without_env(self):
        config_data = {'ami': {'username': 'operator'}}

        inject_ami_credentials(config_data)

        assert config_data['ami']['username'] == 'operator'

    def test_env_username_wins_and_is_stripped(self, monkeypatch):
        monkeypatch.setenv("AMI_USERNAME", "  admin  ")
        config_data = {'ami': {'username': 'operator'}}

        inject_ami_credentials(config_data)

        assert config_data['ami']['username'] == 'admin'

    def test_blank_values_become_none(self, monkeypatch):
        monkeypatch.setenv("AMI_SECRET", "   ")
        config_data = {'ami': {'username': '  '}}

        inject_ami_credentials(config_data)

        assert config_data['ami']['username'] is None
        assert config_data['ami']['secret'] is None

    def test_non_mapping_ami_section_replaced(self):
        config_data = {'ami': 'garbage'}

        inject_ami_credentials(config_data)

        assert config_data['ami'] == {'username': None, 'secret': None}
