"""Package installation orchestration.

Two operations, composed by the CLI:

- check_conditions: resolve -> load manifest -> validate
- install:          resolve -> load manifest -> [validate] -> install -> report

Each step's output feeds the next and any failure ends the run with the
step's own error. Nothing is rolled back locally: the gateway either accepts
the whole package or rejects it.
"""

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol, Union

from conditions import (
    STRICTNESS_WARN,
    Assertion,
    ConditionReport,
    evaluate_conditions,
)
from manifest import Manifest, load_manifest
from source import ArchiveSource, InstallSource, resolve_source

logger = logging.getLogger(__name__)

Assertions = Iterable[Union[Assertion, tuple[str, str]]]


class RemoteGateway(Protocol):
    """Management-plane client that performs the install.

    Implementations raise RemoteRejected, AuthenticationError,
    TransportError, Cancelled or DeadlineExceeded; these propagate unchanged.
    """

    def install_archive(
        self,
        data: bytes,
        skip_validation: bool = False,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Manifest:
        ...

    def install_from_directory(
        self,
        path: Union[str, Path],
        skip_validation: bool = False,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Manifest:
        ...


@dataclass
class InstallResult:
    """Outcome of a completed install."""
    success: bool
    manifest: Manifest
    source: InstallSource
    conditions: Optional[ConditionReport] = None
    duration: float = 0.0

    def to_dict(self) -> dict:
        result: dict[str, Any] = {
            'success': self.success,
            'package': self.manifest.to_dict(),
            'source': {'kind': self.source.kind, 'path': str(self.source.path)},
            'duration': round(self.duration, 3),
        }
        if self.conditions is not None:
            result['conditions'] = self.conditions.to_dict()
        return result


def _load(source: Optional[InstallSource]) -> tuple[InstallSource, Manifest]:
    """Resolve (when needed) and load the manifest."""
    if source is None:
        source = resolve_source()
    manifest = load_manifest(source)
    logger.info(f"Package {manifest.identity} ({source})")
    return source, manifest


def _validate(manifest: Manifest, assertions: Assertions, strictness: str) -> ConditionReport:
    """Evaluate assertions and log the satisfied keys."""
    report = evaluate_conditions(manifest, assertions, strictness=strictness)
    logger.info(
        f"Conditions satisfied for {manifest.identity}: "
        f"{', '.join(report.satisfied) if report.satisfied else 'none checked'}"
    )
    return report


def check_conditions(
    source: Optional[InstallSource],
    assertions: Assertions,
    strictness: str = STRICTNESS_WARN,
) -> tuple[Manifest, ConditionReport]:
    """Check that the environment satisfies the package's conditions.

    Never contacts the management plane.

    Args:
        source: Resolved source, or None to auto-discover a package root
        assertions: Facts about the target environment
        strictness: Handling of declared conditions with no assertion

    Returns:
        (manifest, report) tuple

    Raises:
        SourceNotFound, ManifestMissing, ManifestMalformed, ConditionFailure
    """
    source, manifest = _load(source)
    report = _validate(manifest, assertions, strictness)
    return manifest, report


def install(
    gateway: RemoteGateway,
    source: Optional[InstallSource] = None,
    assertions: Assertions = (),
    skip_validation: bool = False,
    strictness: str = STRICTNESS_WARN,
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> InstallResult:
    """Install a package through the gateway.

    When assertions are given they are checked first and a failure stops the
    run before any remote call.

    Args:
        gateway: Management-plane client
        source: Resolved source, or None to auto-discover a package root
        assertions: Optional facts about the target environment
        skip_validation: Passed through to the gateway untouched
        strictness: Handling of declared conditions with no assertion
        timeout: Deadline for the remote call in seconds
        cancel_event: Set to abort the remote call

    Returns:
        InstallResult carrying the manifest the gateway reports as installed

    Raises:
        SourceNotFound, ManifestMissing, ManifestMalformed, ConditionFailure,
        RemoteRejected, AuthenticationError, TransportError, Cancelled
    """
    start = time.time()

    source, manifest = _load(source)

    assertions = list(assertions)
    report = None
    if assertions:
        report = _validate(manifest, assertions, strictness)

    if isinstance(source, ArchiveSource):
        data = source.path.read_bytes()
        installed = gateway.install_archive(
            data,
            skip_validation=skip_validation,
            timeout=timeout,
            cancel_event=cancel_event,
        )
    else:
        installed = gateway.install_from_directory(
            source.path,
            skip_validation=skip_validation,
            timeout=timeout,
            cancel_event=cancel_event,
        )

    if installed.identity != manifest.identity:
        logger.warning(
            f"Gateway reports {installed.identity} installed, "
            f"but the package at {source.path} is {manifest.identity}"
        )

    duration = time.time() - start
    logger.info(f"Installed {installed.identity} in {duration:.1f}s")
    return InstallResult(
        success=True,
        manifest=installed,
        source=source,
        conditions=report,
        duration=duration,
    )
