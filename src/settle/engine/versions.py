"""
Settle Package Versions

Debian version ordering (``[epoch:]upstream[-revision]``) and the version
constraints accepted by the package modules::

    version: "1.18.0-6"     # exact
    version: "1.18*"        # glob
    version: ">=1.18"       # comparison (>=, <=, >, <, ==, !=)

The same ordering is applied to rpm ``version-release`` strings, which is
accurate for the common numeric cases.
"""

import fnmatch
import re
from dataclasses import dataclass
from typing import Optional

_OPERATORS = ('>=', '<=', '==', '!=', '>', '<', '=')
_EPOCH_RE = re.compile(r'^(\d+):(.*)$')


def _order(char: str) -> int:
    if char == '~':
        return -1
    if char.isdigit():
        return 0
    if char.isalpha():
        return ord(char)
    return ord(char) + 256


def _compare_fragment(a: str, b: str) -> int:
    """dpkg's verrevcmp: alternate non-digit and digit runs."""
    i = j = 0
    while i < len(a) or j < len(b):
        while (i < len(a) and not a[i].isdigit()) or (j < len(b) and not b[j].isdigit()):
            ac = _order(a[i]) if i < len(a) else 0
            bc = _order(b[j]) if j < len(b) else 0
            if ac != bc:
                return -1 if ac < bc else 1
            i += 1
            j += 1

        while i < len(a) and a[i] == '0':
            i += 1
        while j < len(b) and b[j] == '0':
            j += 1

        first_diff = 0
        while i < len(a) and a[i].isdigit() and j < len(b) and b[j].isdigit():
            if not first_diff and a[i] != b[j]:
                first_diff = -1 if a[i] < b[j] else 1
            i += 1
            j += 1

        if i < len(a) and a[i].isdigit():
            return 1
        if j < len(b) and b[j].isdigit():
            return -1
        if first_diff:
            return first_diff
    return 0


def _split(version: str):
    epoch = 0
    match = _EPOCH_RE.match(version)
    if match:
        epoch = int(match.group(1))
        version = match.group(2)
    upstream, sep, revision = version.rpartition('-')
    if not sep:
        upstream, revision = version, ''
    return epoch, upstream, revision


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 as version ``a`` sorts before, equal to, or after ``b``."""
    a_epoch, a_upstream, a_revision = _split(a.strip())
    b_epoch, b_upstream, b_revision = _split(b.strip())
    if a_epoch != b_epoch:
        return -1 if a_epoch < b_epoch else 1
    return _compare_fragment(a_upstream, b_upstream) or _compare_fragment(a_revision, b_revision)


@dataclass(frozen=True)
class VersionConstraint:
    """A parsed ``version`` parameter."""

    operator: str
    version: str

    @property
    def pinnable(self) -> bool:
        """True when the package manager can install this exact spec."""
        return self.operator in ('==', 'glob')

    def satisfied_by(self, installed: Optional[str]) -> bool:
        if installed is None:
            return False
        if self.operator == 'glob':
            return fnmatch.fnmatchcase(installed, self.version)

        cmp = compare_versions(installed, self.version)
        if self.operator == '==':
            # "1.18.0" accepts the installed "1.18.0-6" (revision not given)
            if cmp == 0:
                return True
            return '-' not in self.version and installed.startswith(self.version + '-')
        return {
            '!=': cmp != 0,
            '>=': cmp >= 0,
            '<=': cmp <= 0,
            '>': cmp > 0,
            '<': cmp < 0,
        }[self.operator]

    def __str__(self) -> str:
        if self.operator == 'glob':
            return self.version
        return f"{self.operator}{self.version}"


def parse_constraint(text: Optional[str]) -> Optional[VersionConstraint]:
    """
    Parse a version parameter; None or empty means "any version".

    Raises:
        ValueError: an operator without a version
    """
    if text is None:
        return None
    text = str(text).strip()
    if not text:
        return None

    for operator in _OPERATORS:
        if text.startswith(operator):
            version = text[len(operator):].strip()
            if not version:
                raise ValueError(f"version constraint '{text}' has no version")
            return VersionConstraint('==' if operator == '=' else operator, version)

    if any(ch in text for ch in '*?['):
        return VersionConstraint('glob', text)
    return VersionConstraint('==', text)
