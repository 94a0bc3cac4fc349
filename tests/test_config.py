"""Tests for configuration loading."""

import pytest

from disk_shrink.config import ShrinkConfig, load_config, load_secrets


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "resource_group: prod-rg\n"
        "vm_name: web01\n"
        "new_size_gb: 64\n"
        "storage_account: shrinkstore\n"
        "copy_timeout: 600\n"
        "start_vm: false\n"
        "tags:\n"
        "  owner: ops\n"
    )
    return str(path)


@pytest.fixture
def missing(tmp_path):
    return str(tmp_path / 'missing')


@pytest.fixture(autouse=True)
def clean_storage_key(monkeypatch):
    # setenv first so the value is restored (removed) after the test
    monkeypatch.setenv('STORAGE_ACCOUNT_KEY', 'placeholder')
    monkeypatch.delenv('STORAGE_ACCOUNT_KEY')


class TestLoadConfig:

    def test_reads_yaml(self, config_file):
        data = load_config(config_file)

        assert data['vm_name'] == 'web01'
        assert data['tags'] == {'owner': 'ops'}

    def test_missing_file_gives_empty_dict(self, missing):
        assert load_config(missing) == {}

    def test_empty_file_gives_empty_dict(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text("")

        assert load_config(str(path)) == {}


class TestLoadSecrets:

    def test_reads_storage_key(self, tmp_path):
        path = tmp_path / '.env.secret'
        path.write_text("STORAGE_ACCOUNT_KEY=c2VjcmV0\n")

        assert load_secrets(str(path))['storage_account_key'] == 'c2VjcmV0'

    def test_missing_file(self, missing):
        assert load_secrets(missing)['storage_account_key'] is None


class TestShrinkConfig:

    def test_values_from_file(self, config_file, missing):
        config = ShrinkConfig(config_file=config_file, secrets_file=missing)

        assert config.resource_group == 'prod-rg'
        assert config.vm_name == 'web01'
        assert config.new_size_gb == 64
        assert config.copy_timeout == 600
        assert config.start_vm is False
        assert config.tags == {'owner': 'ops'}

    def test_explicit_values_override_file(self, config_file, missing):
        config = ShrinkConfig(vm_name='web02', new_size_gb=32, start_vm=True,
                              config_file=config_file, secrets_file=missing)

        assert config.vm_name == 'web02'
        assert config.new_size_gb == 32
        assert config.start_vm is True

    def test_defaults(self, missing):
        config = ShrinkConfig(config_file=missing, secrets_file=missing)

        assert config.container == 'vhds'
        assert config.sas_duration == 3600
        assert config.copy_timeout == 4 * 3600
        assert config.copy_poll_interval == 30
        assert config.footer_retries == 3
        assert config.start_vm is True
        assert config.cleanup_on_failure is True
        assert config.keep_blob is False
        assert config.storage_account_key is None

    def test_zero_footer_retries_kept(self, tmp_path, missing):
        path = tmp_path / 'config.yaml'
        path.write_text("footer_retries: 5\n")

        assert ShrinkConfig(footer_retries=0, config_file=missing, secrets_file=missing).footer_retries == 0
        assert ShrinkConfig(footer_retries=0, config_file=str(path), secrets_file=missing).footer_retries == 0

    def test_storage_resource_group_defaults_to_vm_group(self, config_file, missing):
        config = ShrinkConfig(config_file=config_file, secrets_file=missing)

        assert config.storage_resource_group == 'prod-rg'

    def test_missing_fields(self, missing):
        config = ShrinkConfig(vm_name='web01', config_file=missing, secrets_file=missing)

        assert config.missing_fields() == ['resource_group', 'new_size_gb', 'storage_account']
