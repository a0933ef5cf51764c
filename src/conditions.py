"""Condition evaluation for package manifests.

A manifest declares conditions as version-range constraints keyed by a dotted
path (e.g. kibana.version: "^8.7.0"). Callers supply assertions about the
target environment as key=value pairs (e.g. kibana.version=8.9.2). Only
assertions whose key matches a declared condition are evaluated.

Constraint syntax:
    ">=8.7.0, <9.0.0"     comparators joined by commas or whitespace
    "^8.7.0"              caret: >=8.7.0 <9.0.0 (0.x follows semver rules)
    "~8.7.0"              tilde: >=8.7.0 <8.8.0
    "8.7.0"               exact version
    "^7.17.0 || ^8.0.0"   alternatives, any may match

Only keys ending in .version hold version ranges. Any other condition (e.g.
elastic.subscription: basic) is an opaque value matched case-insensitively.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Union

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from errors import ConditionFailure, InvalidAssertion

if TYPE_CHECKING:
    from manifest import Manifest

logger = logging.getLogger(__name__)

# How to treat declared conditions that no assertion covers
STRICTNESS_IGNORE = 'ignore'
STRICTNESS_WARN = 'warn'
STRICTNESS_FAIL = 'fail'
STRICTNESS_LEVELS = (STRICTNESS_IGNORE, STRICTNESS_WARN, STRICTNESS_FAIL)

VERSION_KEY_SUFFIX = '.version'

_SNAPSHOT_SUFFIX_RE = re.compile(r'-SNAPSHOT$', re.IGNORECASE)

_COMPARATOR_RE = re.compile(
    r'\s*(?P<op>\^|~>?|>=|<=|!=|==|=|>|<)?\s*'
    r'(?P<version>v?\d[0-9A-Za-z.+\-]*)'
    r'\s*,?\s*'
)

_RELEASE_RE = re.compile(r'^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?')


@dataclass(frozen=True, order=True)
class Assertion:
    """A caller-supplied fact about the target environment."""
    key: str
    value: str

    def __str__(self) -> str:
        return f"{self.key}={self.value}"


@dataclass(frozen=True)
class VersionConstraint:
    """Parsed version-range constraint.

    Attributes:
        raw: Constraint as written in the manifest
        alternatives: Specifier sets, any of which may match
    """
    raw: str
    alternatives: tuple[SpecifierSet, ...]

    def allows(self, version: Version) -> bool:
        """True if version satisfies at least one alternative."""
        return any(spec.contains(version, prereleases=True) for spec in self.alternatives)

    def __str__(self) -> str:
        return self.raw


@dataclass
class ConditionReport:
    """Outcome of a successful condition evaluation."""
    satisfied: list[str] = field(default_factory=list)
    unverified: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'satisfied': self.satisfied,
            'unverified': self.unverified,
            'ignored': self.ignored,
        }


def parse_version(raw: str) -> Version:
    """Parse a version string as reported by a stack component.

    Accepts a leading 'v', build metadata (ignored) and a -SNAPSHOT suffix
    (stripped).

    Raises:
        ValueError: If the string is not a version
    """
    text = str(raw).strip()
    if text[:1] in ('v', 'V'):
        text = text[1:]
    text = text.split('+', 1)[0]
    text = _SNAPSHOT_SUFFIX_RE.sub('', text)
    try:
        return Version(text)
    except InvalidVersion:
        raise ValueError(f"'{raw}' is not a valid version")


def _release_parts(version_text: str) -> tuple[int, int, int, int]:
    """Return (major, minor, patch, precision) for a possibly partial version."""
    match = _RELEASE_RE.match(version_text)
    if not match:
        raise ValueError(f"'{version_text}' is not a valid version")
    major, minor, patch = match.groups()
    precision = 1 + (minor is not None) + (patch is not None)
    return int(major), int(minor or 0), int(patch or 0), precision


def _caret_specifiers(version_text: str) -> list[str]:
    """Expand ^X.Y.Z into a lower and upper bound.

    ^1.2.3 -> >=1.2.3, <2.0.0
    ^0.2.3 -> >=0.2.3, <0.3.0
    ^0.0.3 -> >=0.0.3, <0.0.4
    """
    lower = parse_version(version_text)
    major, minor, patch, precision = _release_parts(version_text)
    if major > 0 or precision == 1:
        upper = f"{major + 1}.0.0"
    elif minor > 0 or precision == 2:
        upper = f"0.{minor + 1}.0"
    else:
        upper = f"0.0.{patch + 1}"
    return [f">={lower}", f"<{upper}"]


def _tilde_specifiers(version_text: str) -> list[str]:
    """Expand ~X.Y.Z into a lower and upper bound.

    ~1.2.3 -> >=1.2.3, <1.3.0
    ~1     -> >=1.0.0, <2.0.0
    """
    lower = parse_version(version_text)
    major, minor, _, precision = _release_parts(version_text)
    if precision == 1:
        upper = f"{major + 1}.0.0"
    else:
        upper = f"{major}.{minor + 1}.0"
    return [f">={lower}", f"<{upper}"]


def _parse_alternative(text: str, raw: str) -> SpecifierSet:
    """Parse one ||-separated alternative into a SpecifierSet."""
    text = text.strip()
    if text == '*':
        return SpecifierSet('')
    if not text:
        raise ValueError(f"empty range in constraint '{raw}'")

    specifiers: list[str] = []
    pos = 0
    while pos < len(text):
        match = _COMPARATOR_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ValueError(f"invalid constraint '{raw}' near '{text[pos:]}'")
        op = match.group('op') or '=='
        version_text = match.group('version')

        if op == '^':
            specifiers.extend(_caret_specifiers(version_text))
        elif op in ('~', '~>'):
            specifiers.extend(_tilde_specifiers(version_text))
        else:
            if op == '=':
                op = '=='
            specifiers.append(f"{op}{parse_version(version_text)}")
        pos = match.end()

    try:
        return SpecifierSet(','.join(specifiers))
    except InvalidSpecifier as e:
        raise ValueError(f"invalid constraint '{raw}': {e}")


def parse_constraint(raw: str) -> VersionConstraint:
    """Parse a manifest condition into a VersionConstraint.

    Raises:
        ValueError: If the constraint syntax is invalid
    """
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError(f"constraint must be a non-empty string, got {raw!r}")
    alternatives = tuple(_parse_alternative(part, raw) for part in raw.split('||'))
    return VersionConstraint(raw=raw.strip(), alternatives=alternatives)


def is_version_condition(key: str) -> bool:
    """True if the condition key holds a version-range constraint."""
    return key == VERSION_KEY_SUFFIX[1:] or key.endswith(VERSION_KEY_SUFFIX)


def parse_assertions(pairs: Iterable[str]) -> frozenset[Assertion]:
    """Parse key=value strings (as given on the command line).

    Raises:
        InvalidAssertion: If a pair has no '=' separator or an empty key
    """
    assertions = set()
    for pair in pairs:
        if '=' not in pair:
            raise InvalidAssertion(pair, "missing '=' separator")
        key, value = pair.split('=', 1)
        key = key.strip()
        if not key:
            raise InvalidAssertion(pair, "empty key")
        assertions.add(Assertion(key=key, value=value.strip()))
    return frozenset(assertions)


def _coerce(items: Iterable[Union[Assertion, tuple[str, str]]]) -> list[Assertion]:
    coerced = set()
    for item in items:
        if not isinstance(item, Assertion):
            key, value = item
            item = Assertion(key=key, value=value)
        coerced.add(item)
    return sorted(coerced)


def evaluate_conditions(
    manifest: 'Manifest',
    assertions: Iterable[Union[Assertion, tuple[str, str]]],
    strictness: str = STRICTNESS_WARN,
) -> ConditionReport:
    """Check assertions against the conditions declared in a manifest.

    Assertions whose key the manifest does not declare are ignored. Declared
    conditions without an assertion are unverified: ignored, logged, or
    failed depending on strictness.

    Args:
        manifest: Loaded package manifest
        assertions: Assertion objects or (key, value) tuples
        strictness: One of STRICTNESS_LEVELS

    Returns:
        ConditionReport listing satisfied, unverified and ignored keys

    Raises:
        ConditionFailure: Listing every failing key
        ValueError: If strictness is unknown
    """
    if strictness not in STRICTNESS_LEVELS:
        raise ValueError(
            f"Unknown strictness '{strictness}'. Expected one of: {', '.join(STRICTNESS_LEVELS)}"
        )

    declared = manifest.conditions
    failures: dict[str, str] = {}
    evaluated: set[str] = set()
    ignored: set[str] = set()

    for assertion in _coerce(assertions):
        raw_constraint = declared.get(assertion.key)
        if raw_constraint is None:
            logger.debug(f"Ignoring condition {assertion}: not declared by {manifest.name}")
            ignored.add(assertion.key)
            continue

        evaluated.add(assertion.key)
        if not is_version_condition(assertion.key):
            if assertion.value.casefold() != raw_constraint.strip().casefold():
                failures.setdefault(
                    assertion.key, f"{assertion.value} does not match '{raw_constraint}'"
                )
            continue

        constraint = parse_constraint(raw_constraint)
        try:
            version = parse_version(assertion.value)
        except ValueError as e:
            failures.setdefault(assertion.key, str(e))
            continue

        if constraint.allows(version):
            logger.debug(f"Condition {assertion.key}: {assertion.value} satisfies {constraint}")
        else:
            failures.setdefault(
                assertion.key, f"{assertion.value} does not satisfy '{constraint}'"
            )

    unverified = sorted(set(declared) - evaluated)
    for key in unverified:
        if strictness == STRICTNESS_FAIL:
            failures[key] = f"no value given for '{declared[key]}'"
        elif strictness == STRICTNESS_WARN:
            logger.warning(f"Condition {key} ({declared[key]}) not verified: no value given")

    if failures:
        raise ConditionFailure(failures)

    return ConditionReport(
        satisfied=sorted(evaluated),
        unverified=unverified,
        ignored=sorted(ignored),
    )
