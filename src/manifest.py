"""Package manifest loading and validation.

Every package carries a manifest.yml at its top level:

    format_version: 3.0.0
    name: nginx
    title: Nginx
    version: 1.2.0
    type: integration
    conditions:
      kibana:
        version: "^8.7.0"

Conditions may be nested (as above) or written with dotted keys
("kibana.version": "^8.7.0"); both flatten to the key kibana.version. Keys
ending in .version must hold a valid version range; other conditions such as
elastic.subscription are kept as plain values.

Built packages are zips with the package under a single top-level folder
(nginx-1.2.0/manifest.yml). The manifest entry is read from the archive
without extracting it.
"""

import json
import logging
import re
import zipfile
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import IO, Any, Mapping, Optional, Union

import yaml

from conditions import is_version_condition, parse_constraint
from errors import ManifestMalformed, ManifestMissing
from source import (
    MANIFEST_FILENAMES,
    ArchiveSource,
    DirectorySource,
    InstallSource,
    find_manifest_file,
)

logger = logging.getLogger(__name__)

# Semantic version (https://semver.org), optional leading 'v'
SEMVER_RE = re.compile(
    r'^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)'
    r'(?:-((?:0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*)'
    r'(?:\.(?:0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*))*))?'
    r'(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$'
)

DEFAULT_PACKAGE_TYPE = 'integration'


@dataclass(frozen=True)
class Manifest:
    """Package self-description.

    Attributes:
        name: Package name
        version: Semantic version string
        conditions: Condition key -> version-range constraint, or an opaque
            value for keys not ending in .version (read-only)
        title: Human-readable title
        description: Optional description
        type: Package type (integration, input, content)
        format_version: Package spec version the manifest follows
        source: Where the manifest was loaded from
    """
    name: str
    version: str
    conditions: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    title: str = ''
    description: str = ''
    type: str = DEFAULT_PACKAGE_TYPE
    format_version: Optional[str] = None
    source: Optional[InstallSource] = field(default=None, compare=False)

    def __post_init__(self):
        if not isinstance(self.conditions, MappingProxyType):
            object.__setattr__(self, 'conditions', MappingProxyType(dict(self.conditions)))

    @property
    def identity(self) -> str:
        """name-version, as used for built package file names."""
        return f"{self.name}-{self.version}"

    def to_dict(self) -> dict:
        """Convert manifest to dictionary (for JSON output)."""
        result: dict[str, Any] = {
            'name': self.name,
            'version': self.version,
            'type': self.type,
            'conditions': dict(self.conditions),
        }
        if self.title:
            result['title'] = self.title
        if self.description:
            result['description'] = self.description
        if self.format_version:
            result['format_version'] = self.format_version
        if self.source is not None:
            result['source'] = {'kind': self.source.kind, 'path': str(self.source.path)}
        return result

    def to_json(self) -> str:
        """Serialize manifest to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any, source: Optional[InstallSource] = None) -> 'Manifest':
        """Create Manifest from a parsed manifest document.

        Raises:
            ManifestMalformed: If a required field is missing or invalid
        """
        if not isinstance(data, dict):
            raise ManifestMalformed("manifest must be a YAML mapping")

        name = data.get('name')
        if name is None:
            raise ManifestMalformed("missing required field", field='name')
        if not isinstance(name, str) or not name.strip():
            raise ManifestMalformed("must be a non-empty string", field='name')

        version = data.get('version')
        if version is None:
            raise ManifestMalformed("missing required field", field='version')
        version = str(version).strip()
        if not SEMVER_RE.match(version):
            raise ManifestMalformed(f"'{version}' is not a semantic version", field='version')

        conditions = _flatten_conditions(data.get('conditions'))
        for key, constraint in conditions.items():
            if not is_version_condition(key):
                continue
            try:
                parse_constraint(constraint)
            except ValueError as e:
                raise ManifestMalformed(str(e), field=f"conditions.{key}")

        format_version = data.get('format_version')

        return cls(
            name=name.strip(),
            version=version,
            conditions=conditions,
            title=str(data.get('title') or ''),
            description=str(data.get('description') or ''),
            type=str(data.get('type') or DEFAULT_PACKAGE_TYPE),
            format_version=str(format_version) if format_version is not None else None,
            source=source,
        )


def _flatten_conditions(conditions: Any, prefix: str = '') -> dict[str, str]:
    """Flatten nested condition mappings into dotted keys.

    Raises:
        ManifestMalformed: If conditions is not a mapping of strings
    """
    if conditions is None:
        return {}
    field_name = f"conditions.{prefix}".rstrip('.')
    if not isinstance(conditions, dict):
        raise ManifestMalformed("must be a mapping", field=field_name)

    flat: dict[str, str] = {}
    for key, value in conditions.items():
        full_key = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten_conditions(value, prefix=f"{full_key}."))
        elif isinstance(value, (str, int, float)) and not isinstance(value, bool):
            flat[full_key] = str(value)
        else:
            raise ManifestMalformed(
                f"constraint must be a string, got {type(value).__name__}",
                field=f"conditions.{full_key}",
            )
    return flat


def _parse_manifest(stream: Union[str, bytes, IO], location: str) -> Any:
    try:
        return yaml.safe_load(stream)
    except yaml.YAMLError as e:
        raise ManifestMalformed(f"invalid YAML in {location}: {e}")


def _load_from_directory(source: DirectorySource) -> Manifest:
    if not source.path.is_dir():
        raise ManifestMissing(f"{source.path} (not a directory)")

    path = find_manifest_file(source.path)
    if path is None:
        raise ManifestMissing(str(source.path / MANIFEST_FILENAMES[0]))

    logger.debug(f"Reading manifest {path}")
    with open(path, encoding='utf-8') as f:
        data = _parse_manifest(f, str(path))
    return Manifest.from_dict(data, source=source)


def _find_archive_entry(names: list[str]) -> Optional[str]:
    """Locate the manifest entry in a package zip.

    Accepts manifest.yml at the archive root or inside the single top-level
    folder. Nested manifests (data streams, fields) are never picked.
    """
    for name in names:
        parts = PurePosixPath(name).parts
        if len(parts) == 1 and parts[0] in MANIFEST_FILENAMES:
            return name
    for name in names:
        parts = PurePosixPath(name).parts
        if len(parts) == 2 and parts[1] in MANIFEST_FILENAMES:
            return name
    return None


def read_archive_manifest(archive: Union[Path, IO[bytes]], location: str = '<archive>') -> Manifest:
    """Read the manifest from a package zip without extracting it.

    Args:
        archive: Path to the zip or a binary file object
        location: Label for error messages

    Raises:
        ManifestMissing: If the archive has no manifest entry
        ManifestMalformed: If the archive is not a zip or the manifest is invalid
    """
    try:
        with zipfile.ZipFile(archive) as zf:
            entry = _find_archive_entry(zf.namelist())
            if entry is None:
                raise ManifestMissing(f"{location}!/{MANIFEST_FILENAMES[0]}")
            logger.debug(f"Reading manifest entry {entry} from {location}")
            with zf.open(entry) as f:
                return Manifest.from_dict(_parse_manifest(f, f"{location}!/{entry}"))
    except zipfile.BadZipFile as e:
        raise ManifestMalformed(f"{location} is not a valid package zip: {e}")


def _load_from_archive(source: ArchiveSource) -> Manifest:
    if not source.path.is_file():
        raise ManifestMissing(f"{source.path} (package archive not found)")
    manifest = read_archive_manifest(source.path, location=str(source.path))
    return replace(manifest, source=source)


def load_manifest(source: InstallSource) -> Manifest:
    """Load the manifest of a package.

    Args:
        source: ArchiveSource or DirectorySource

    Returns:
        Manifest instance tagged with its source

    Raises:
        ManifestMissing: If no manifest file/entry is found
        ManifestMalformed: If parsing or validation fails
    """
    if isinstance(source, ArchiveSource):
        manifest = _load_from_archive(source)
    elif isinstance(source, DirectorySource):
        manifest = _load_from_directory(source)
    else:
        raise TypeError(f"Unsupported install source: {source!r}")

    logger.debug(f"Loaded manifest {manifest.identity} from {source}")
    return manifest
