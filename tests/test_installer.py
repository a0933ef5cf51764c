#!/usr/bin/env python3
"""Tests for installer.py - check_conditions and install orchestration."""

import logging
import threading
from unittest.mock import MagicMock

import pytest

from conditions import Assertion
from errors import (
    Cancelled,
    ConditionFailure,
    ManifestMalformed,
    ManifestMissing,
    RemoteRejected,
    SourceNotFound,
    TransportError,
)
from installer import InstallResult, check_conditions, install
from manifest import Manifest
from source import ArchiveSource, DirectorySource


# Reported by the gateway; differs from the nginx 1.2.0 package fixture
INSTALLED = Manifest(name='nginx', version='1.2.1', title='Nginx (registry)')


def _gateway():
    """Gateway test double recording every call."""
    gateway = MagicMock()
    gateway.install_archive.return_value = INSTALLED
    gateway.install_from_directory.return_value = INSTALLED
    return gateway


class TestCheckConditions:
    """Check-only operation."""

    def test_passing_assertions(self, package_dir):
        manifest, report = check_conditions(
            DirectorySource(package_dir), [Assertion('platform.version', '8.9.2')]
        )

        assert manifest.identity == 'nginx-1.2.0'
        assert report.satisfied == ['platform.version']
        assert report.unverified == ['kibana.version']

    def test_never_calls_gateway(self, package_dir):
        """Check-only mode with passing assertions makes no remote call."""
        gateway = _gateway()

        check_conditions(DirectorySource(package_dir), [Assertion('kibana.version', '8.9.0')])

        assert gateway.install_archive.call_count == 0
        assert gateway.install_from_directory.call_count == 0
        assert gateway.method_calls == []

    def test_failing_assertions(self, package_zip):
        with pytest.raises(ConditionFailure) as exc_info:
            check_conditions(ArchiveSource(package_zip), [
                Assertion('platform.version', '9.1.0'),
                Assertion('kibana.version', '7.17.0'),
            ])
        assert exc_info.value.keys == ['kibana.version', 'platform.version']

    def test_discovers_source(self, package_dir, monkeypatch):
        monkeypatch.chdir(package_dir / 'docs')
        manifest, _ = check_conditions(None, [Assertion('kibana.version', '8.9.0')])
        assert manifest.source == DirectorySource(package_dir.resolve())


class TestInstall:
    """Full install orchestration."""

    def test_directory_source(self, package_dir):
        gateway = _gateway()

        result = install(gateway, source=DirectorySource(package_dir))

        assert isinstance(result, InstallResult)
        assert result.success is True
        assert result.manifest is INSTALLED
        assert result.source == DirectorySource(package_dir)
        assert result.conditions is None
        gateway.install_from_directory.assert_called_once_with(
            package_dir, skip_validation=False, timeout=None, cancel_event=None
        )
        gateway.install_archive.assert_not_called()

    def test_archive_source_sends_bytes(self, package_zip):
        gateway = _gateway()

        result = install(gateway, source=ArchiveSource(package_zip), skip_validation=True)

        assert result.manifest.identity == 'nginx-1.2.1'
        gateway.install_archive.assert_called_once_with(
            package_zip.read_bytes(), skip_validation=True, timeout=None, cancel_event=None
        )
        gateway.install_from_directory.assert_not_called()

    def test_result_uses_gateway_manifest(self, package_dir, caplog):
        """The result reports what the gateway installed, and a mismatch is logged."""
        with caplog.at_level(logging.WARNING):
            result = install(_gateway(), source=DirectorySource(package_dir))

        assert result.manifest.identity == 'nginx-1.2.1'
        assert result.manifest.title == 'Nginx (registry)'
        assert 'nginx-1.2.1' in caplog.text
        assert 'nginx-1.2.0' in caplog.text

    def test_matching_gateway_manifest_not_warned(self, package_dir, caplog):
        gateway = _gateway()
        gateway.install_from_directory.return_value = Manifest(name='nginx', version='1.2.0')

        with caplog.at_level(logging.WARNING):
            result = install(gateway, source=DirectorySource(package_dir))

        assert result.manifest.identity == 'nginx-1.2.0'
        assert caplog.text == ''

    def test_string_paths_accepted(self, package_dir, package_zip):
        gateway = _gateway()

        install(gateway, source=DirectorySource(str(package_dir)))
        install(gateway, source=ArchiveSource(str(package_zip)))

        args, _ = gateway.install_from_directory.call_args
        assert args == (package_dir,)
        args, _ = gateway.install_archive.call_args
        assert args == (package_zip.read_bytes(),)

    def test_string_path_missing_directory(self, tmp_path):
        gateway = _gateway()
        with pytest.raises(ManifestMissing, match='not a directory'):
            install(gateway, source=DirectorySource(str(tmp_path / 'nope')))
        assert gateway.method_calls == []

    def test_timeout_and_cancel_passed_through(self, package_dir):
        gateway = _gateway()
        event = threading.Event()

        install(gateway, source=DirectorySource(package_dir), timeout=5.0, cancel_event=event)

        _, kwargs = gateway.install_from_directory.call_args
        assert kwargs['timeout'] == 5.0
        assert kwargs['cancel_event'] is event

    def test_passing_conditions_then_install(self, package_dir):
        gateway = _gateway()

        result = install(
            gateway,
            source=DirectorySource(package_dir),
            assertions=[Assertion('platform.version', '8.9.2')],
        )

        assert result.conditions.satisfied == ['platform.version']
        gateway.install_from_directory.assert_called_once()

    def test_install_and_check_log_same_validation(self, package_dir, caplog):
        assertions = [Assertion('platform.version', '8.9.2')]

        with caplog.at_level(logging.INFO):
            check_conditions(DirectorySource(package_dir), assertions)
        checked = [r.getMessage() for r in caplog.records if 'Conditions satisfied' in r.getMessage()]
        caplog.clear()

        with caplog.at_level(logging.INFO):
            install(_gateway(), source=DirectorySource(package_dir), assertions=assertions)
        installed = [r.getMessage() for r in caplog.records if 'Conditions satisfied' in r.getMessage()]

        assert checked == installed == ['Conditions satisfied for nginx-1.2.0: platform.version']

    def test_failing_conditions_stop_before_install(self, package_dir):
        gateway = _gateway()

        with pytest.raises(ConditionFailure, match='platform.version'):
            install(
                gateway,
                source=DirectorySource(package_dir),
                assertions=[Assertion('platform.version', '9.1.0')],
            )

        assert gateway.method_calls == []

    def test_source_not_found(self, tmp_path, monkeypatch):
        empty = tmp_path / 'empty'
        empty.mkdir()
        monkeypatch.chdir(empty)
        gateway = _gateway()

        with pytest.raises(SourceNotFound):
            install(gateway)
        assert gateway.method_calls == []

    def test_manifest_missing(self, tmp_path):
        gateway = _gateway()
        with pytest.raises(ManifestMissing):
            install(gateway, source=ArchiveSource(tmp_path / 'missing.zip'))
        assert gateway.method_calls == []

    def test_manifest_malformed(self, tmp_path):
        root = tmp_path / 'pkg'
        root.mkdir()
        (root / 'manifest.yml').write_text("name: nginx\n")
        gateway = _gateway()

        with pytest.raises(ManifestMalformed, match='version'):
            install(gateway, source=DirectorySource(root))
        assert gateway.method_calls == []

    @pytest.mark.parametrize('error', [
        RemoteRejected("Kibana rejected the request (400): bad package", status=400),
        TransportError("Cannot connect to https://kibana:5601"),
        Cancelled(),
    ])
    def test_gateway_errors_propagate_unchanged(self, package_dir, error):
        gateway = _gateway()
        gateway.install_from_directory.side_effect = error

        with pytest.raises(type(error)) as exc_info:
            install(gateway, source=DirectorySource(package_dir))

        assert exc_info.value is error

    def test_result_to_dict(self, package_dir):
        result = install(
            _gateway(),
            source=DirectorySource(package_dir),
            assertions=[('kibana.version', '8.9.0')],
        )
        data = result.to_dict()

        assert data['success'] is True
        assert data['package']['name'] == 'nginx'
        assert data['source'] == {'kind': 'directory', 'path': str(package_dir)}
        assert data['conditions']['satisfied'] == ['kibana.version']
