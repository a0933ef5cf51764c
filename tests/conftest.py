"""Shared pytest fixtures for fleetpkg tests."""

import sys
import zipfile
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

NGINX_MANIFEST = """
format_version: 3.0.0
name: nginx
title: Nginx
version: 1.2.0
description: Collect logs and metrics from Nginx HTTP servers.
type: integration
conditions:
  kibana:
    version: "^8.7.0"
  platform.version: ">=8.7.0, <9.0.0"
"""


def write_package(root: Path, manifest_text: str = NGINX_MANIFEST) -> Path:
    """Create a minimal package directory with manifest.yml."""
    root.mkdir(parents=True, exist_ok=True)
    (root / 'manifest.yml').write_text(manifest_text)
    (root / 'docs').mkdir(exist_ok=True)
    (root / 'docs' / 'README.md').write_text("# Nginx\n")
    return root


def build_zip(path: Path, manifest_text: str = NGINX_MANIFEST, folder: str = 'nginx-1.2.0') -> Path:
    """Build a package zip with the package under a top-level folder."""
    prefix = f"{folder}/" if folder else ''
    with zipfile.ZipFile(path, 'w') as zf:
        zf.writestr(f"{prefix}manifest.yml", manifest_text)
        zf.writestr(f"{prefix}docs/README.md", "# Nginx\n")
        zf.writestr(f"{prefix}data_stream/access/manifest.yml", "title: Access logs\ntype: logs\n")
    return path


@pytest.fixture
def package_dir(tmp_path):
    """Package root directory for nginx 1.2.0."""
    return write_package(tmp_path / 'nginx')


@pytest.fixture
def package_zip(tmp_path):
    """Built package zip for nginx 1.2.0."""
    return build_zip(tmp_path / 'nginx-1.2.0.zip')


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolate config: no FLEETPKG_* variables, empty profile directory."""
    for var in (
        'FLEETPKG_KIBANA_HOST',
        'FLEETPKG_KIBANA_USERNAME',
        'FLEETPKG_KIBANA_PASSWORD',
        'FLEETPKG_KIBANA_API_KEY',
        'FLEETPKG_CA_CERT',
        'FLEETPKG_INSECURE',
        'FLEETPKG_TIMEOUT',
        'FLEETPKG_CONDITION_STRICTNESS',
    ):
        monkeypatch.delenv(var, raising=False)
    home = tmp_path / 'fleetpkg-home'
    home.mkdir()
    monkeypatch.setenv('FLEETPKG_HOME', str(home))
    return home
