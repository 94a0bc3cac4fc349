"""Tests for the command line interface on local images."""

import json

import pytest

from disk_shrink import cli
from disk_shrink.footer import FOOTER_SIZE, VhdFooter

MIB = 1024 * 1024


@pytest.fixture(autouse=True)
def in_tmp_path(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, 'setup_logging', lambda *args, **kwargs: None)


@pytest.fixture
def reference_file(tmp_path):
    path = tmp_path / 'empty.vhd'
    path.write_bytes(bytes(MIB) + VhdFooter.for_fixed_disk(MIB).to_bytes())
    return path


@pytest.fixture
def target_file(tmp_path):
    path = tmp_path / 'truncated.vhd'
    path.write_bytes(b'D' * (3 * MIB))
    return path


class TestInspect:

    def test_prints_footer(self, reference_file, capsys):
        assert cli.main(['inspect', str(reference_file)]) == 0

        out = capsys.readouterr().out
        assert 'type: fixed' in out
        assert f'current_size: {MIB}' in out

    def test_requires_one_image(self, capsys):
        assert cli.main(['inspect']) == 1

    def test_not_a_vhd(self, target_file, capsys):
        assert cli.main(['inspect', str(target_file)]) == 1
        assert 'cookie' in capsys.readouterr().out


class TestTransplant:

    def test_transplants_and_deletes_reference(self, target_file, reference_file):
        footer = reference_file.read_bytes()[-FOOTER_SIZE:]

        assert cli.main(['transplant', str(target_file), str(reference_file), '--yes']) == 0

        data = target_file.read_bytes()
        assert len(data) == MIB + FOOTER_SIZE
        assert data[-FOOTER_SIZE:] == footer
        assert data[:MIB] == b'D' * MIB
        assert not reference_file.exists()

    def test_keep_reference(self, target_file, reference_file):
        assert cli.main(['transplant', str(target_file), str(reference_file), '--yes', '--keep-reference']) == 0

        assert reference_file.exists()

    def test_cancelled_without_confirmation(self, target_file, reference_file, monkeypatch):
        monkeypatch.setattr('builtins.input', lambda prompt: 'no')

        assert cli.main(['transplant', str(target_file), str(reference_file)]) == 0

        assert len(target_file.read_bytes()) == 3 * MIB

    def test_invalid_reference_reports_error(self, target_file, tmp_path, capsys):
        bogus = tmp_path / 'bogus.vhd'
        bogus.write_bytes(bytes(2 * FOOTER_SIZE))

        assert cli.main(['transplant', str(target_file), str(bogus), '--yes']) == 1

        out = capsys.readouterr().out
        assert '❌ Error' in out
        assert '--no-validate' in out
        assert len(target_file.read_bytes()) == 3 * MIB

    def test_no_validate_accepts_any_footer(self, target_file, tmp_path):
        raw = tmp_path / 'raw.img'
        raw.write_bytes(bytes(FOOTER_SIZE) + b'F' * FOOTER_SIZE)

        assert cli.main(['transplant', str(target_file), str(raw), '--yes', '--no-validate']) == 0

        assert target_file.read_bytes() == b'D' * FOOTER_SIZE + b'F' * FOOTER_SIZE


class TestStatus:

    def test_no_state(self, capsys):
        assert cli.main(['status', '--vm-name', 'vm1']) == 0
        assert 'No shrink state' in capsys.readouterr().out

    def test_prints_state(self, tmp_path, capsys):
        state_dir = tmp_path / 'var' / 'state'
        state_dir.mkdir(parents=True)
        (state_dir / 'vm1_shrink.json').write_text(json.dumps({
            'vm_name': 'vm1', 'resource_group': 'rg', 'old_disk_id': '/disks/os',
            'old_disk_name': 'os', 'old_size_gb': 128, 'new_size_gb': 64,
            'started_at': '2026-01-01T00:00:00', 'step': 'swapped',
        }))

        assert cli.main(['status', '--vm-name', 'vm1']) == 0

        out = capsys.readouterr().out
        assert 'step: swapped' in out
        assert 'new_size_gb: 64' in out

    def test_shows_leftover_reference_blob(self, tmp_path, capsys):
        state_dir = tmp_path / 'var' / 'state'
        state_dir.mkdir(parents=True)
        url = 'https://shrinkstore.blob.core.windows.net/vhds/vm1-footer-1.vhd'
        (state_dir / 'vm1_shrink.json').write_text(json.dumps({
            'vm_name': 'vm1', 'resource_group': 'rg', 'old_disk_id': '/disks/os',
            'old_disk_name': 'os', 'old_size_gb': 128, 'new_size_gb': 64,
            'started_at': '2026-01-01T00:00:00', 'step': 'completed',
            'reference_blob_url': url, 'completed': True,
        }))

        assert cli.main(['status', '--vm-name', 'vm1']) == 0

        assert f'reference_blob_url: {url}' in capsys.readouterr().out

    def test_corrupt_state(self, tmp_path, capsys):
        state_dir = tmp_path / 'var' / 'state'
        state_dir.mkdir(parents=True)
        (state_dir / 'vm1_shrink.json').write_text('{not json')

        assert cli.main(['status', '--vm-name', 'vm1']) == 0
        assert 'No shrink state' in capsys.readouterr().out

    def test_requires_vm_name(self):
        assert cli.main(['status']) == 1
