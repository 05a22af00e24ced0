"""
Settle package module

Generic package manager wrapper (apt, dnf, yum).
"""

import logging
import shlex
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Type

from settle.engine.playbook import ModuleKind
from settle.engine.versions import VersionConstraint, compare_versions, parse_constraint
from settle.modules.base import Module, Probe, register_module, to_bool

logger = logging.getLogger(__name__)


class PackageBackend(ABC):
    """Commands for one package manager."""

    name = ""

    def __init__(self, module: Module):
        self.module = module

    @abstractmethod
    async def installed_version(self, package: str) -> Optional[str]:
        """Installed version, or None when the package is absent."""
        pass

    @abstractmethod
    async def is_latest(self, package: str, installed: str) -> bool:
        pass

    @abstractmethod
    async def resolve(self, package: str, constraint: VersionConstraint) -> str:
        """Return the install spec for a pinned package."""
        pass

    @abstractmethod
    async def update_cache(self) -> None:
        pass

    @abstractmethod
    async def install(self, specs: List[str], upgrade: bool = False) -> None:
        pass

    @abstractmethod
    async def remove(self, packages: List[str], purge: bool = False) -> None:
        pass


class AptBackend(PackageBackend):
    """Debian/Ubuntu: dpkg-query for state, apt-get for changes."""

    name = "apt"
    env = "DEBIAN_FRONTEND=noninteractive"

    async def installed_version(self, package: str) -> Optional[str]:
        result = await self.module.run(
            f"dpkg-query -W -f='${{db:Status-Abbrev}}|${{Version}}' {shlex.quote(package)}",
            become=False,
        )
        if result.rc != 0:
            return None
        status, _, version = result.stdout.strip().partition('|')
        if not status.startswith('ii') or not version:
            return None
        return version

    async def _candidate(self, package: str) -> Optional[str]:
        result = await self.module.run(f"apt-cache policy {shlex.quote(package)}", become=False)
        for line in result.stdout.splitlines():
            key, _, value = line.strip().partition(':')
            if key == 'Candidate':
                value = value.strip()
                return None if value in ('', '(none)') else value
        return None

    async def is_latest(self, package: str, installed: str) -> bool:
        candidate = await self._candidate(package)
        return candidate is None or compare_versions(installed, candidate) >= 0

    async def resolve(self, package: str, constraint: VersionConstraint) -> str:
        if constraint.operator == '==':
            return f"{package}={constraint.version}"
        # apt-get has no version globs; pick the highest available match
        result = await self.module.run(f"apt-cache madison {shlex.quote(package)}", become=False)
        versions = []
        for line in result.stdout.splitlines():
            parts = [part.strip() for part in line.split('|')]
            if len(parts) >= 2 and constraint.satisfied_by(parts[1]):
                versions.append(parts[1])
        if not versions:
            raise self.module.fail(f"no available version of {package} matches {constraint}")
        best = versions[0]
        for version in versions[1:]:
            if compare_versions(version, best) > 0:
                best = version
        return f"{package}={best}"

    async def update_cache(self) -> None:
        await self.module.check(f"{self.env} apt-get update -q", "apt cache update failed")

    async def install(self, specs: List[str], upgrade: bool = False) -> None:
        only_upgrade = "--only-upgrade " if upgrade else ""
        packages = " ".join(shlex.quote(spec) for spec in specs)
        await self.module.check(
            f"{self.env} apt-get install -y -q --allow-downgrades {only_upgrade}{packages}",
            "apt-get install failed",
        )

    async def remove(self, packages: List[str], purge: bool = False) -> None:
        action = "purge" if purge else "remove"
        names = " ".join(shlex.quote(name) for name in packages)
        await self.module.check(f"{self.env} apt-get {action} -y -q {names}", f"apt-get {action} failed")


class DnfBackend(PackageBackend):
    """Fedora/RHEL 8+: rpm for state, dnf for changes."""

    name = "dnf"

    async def installed_version(self, package: str) -> Optional[str]:
        result = await self.module.run(
            f"rpm -q --qf '%{{VERSION}}-%{{RELEASE}}\\n' {shlex.quote(package)}",
            become=False,
        )
        if result.rc != 0:
            return None
        lines = result.stdout.strip().splitlines()
        return lines[-1] if lines else None

    async def is_latest(self, package: str, installed: str) -> bool:
        result = await self.module.run(f"{self.name} -q check-update {shlex.quote(package)}")
        # check-update exits 100 when updates are available
        if result.rc == 100:
            return False
        if result.rc != 0:
            raise self.module.fail(f"{self.name} check-update failed", result)
        return True

    async def resolve(self, package: str, constraint: VersionConstraint) -> str:
        # yum/dnf accept name-version globs directly
        return f"{package}-{constraint.version}"

    async def update_cache(self) -> None:
        await self.module.check(f"{self.name} -q makecache", f"{self.name} makecache failed")

    async def install(self, specs: List[str], upgrade: bool = False) -> None:
        action = "upgrade" if upgrade else "install"
        packages = " ".join(shlex.quote(spec) for spec in specs)
        await self.module.check(f"{self.name} {action} -y -q {packages}", f"{self.name} {action} failed")

    async def remove(self, packages: List[str], purge: bool = False) -> None:
        names = " ".join(shlex.quote(name) for name in packages)
        await self.module.check(f"{self.name} remove -y -q {names}", f"{self.name} remove failed")


class YumBackend(DnfBackend):
    """RHEL/CentOS 7."""

    name = "yum"


BACKENDS: Dict[str, Type[PackageBackend]] = {
    "apt": AptBackend,
    "dnf": DnfBackend,
    "yum": YumBackend,
}


@register_module
class PackageModule(Module):
    """
    Manage packages using the host's package manager.

    ``version`` accepts exact versions, globs (``1.18*``) and comparisons
    (``>=1.18``); versions are compared with Debian ordering rather than
    by exact string.
    """

    kind = ModuleKind.PACKAGE
    required_args = ["name"]
    optional_args = {
        "state": "present",
        "version": None,
        "update_cache": False,
        "use": "auto",
    }
    choices = {
        "state": ("present", "absent", "latest"),
        "use": ("auto", "apt", "dnf", "yum"),
    }
    bool_args = ["update_cache"]

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        try:
            constraint = parse_constraint(self.get_arg("version"))
        except ValueError as e:
            return str(e)
        if constraint and self.get_arg("state") != "present":
            return "version is only supported with state=present"
        names = self.args["name"]
        if isinstance(names, list) and not all(isinstance(n, str) and n for n in names):
            return "name must be a string or a list of strings"
        return None

    @property
    def packages(self) -> List[str]:
        names = self.args["name"]
        if isinstance(names, str):
            return [n.strip() for n in names.split(",") if n.strip()]
        return list(names)

    async def _backend(self) -> PackageBackend:
        use = self.get_arg("use")
        if use != "auto":
            return BACKENDS[use](self)

        pkg_mgr = self.facts.get("pkg_mgr")
        if pkg_mgr in BACKENDS:
            return BACKENDS[pkg_mgr](self)

        for name, command in (("apt", "apt-get"), ("dnf", "dnf"), ("yum", "yum")):
            result = await self.run(f"command -v {command}", become=False)
            if result.rc == 0:
                return BACKENDS[name](self)
        raise self.fail("no supported package manager found (apt, dnf, yum)")

    async def probe(self) -> Probe:
        backend = await self._backend()
        state = self.get_arg("state")
        constraint = parse_constraint(self.get_arg("version"))

        installed: Dict[str, Optional[str]] = {}
        pending: List[str] = []
        for package in self.packages:
            version = await backend.installed_version(package)
            installed[package] = version

            if state == "absent":
                ok = version is None
            elif version is None:
                ok = False
            elif state == "latest":
                ok = await backend.is_latest(package, version)
            else:
                ok = constraint is None or constraint.satisfied_by(version)

            if not ok:
                pending.append(package)

        desired = "absent" if state == "absent" else str(constraint) if constraint else state
        self.data["versions"] = dict(installed)
        logger.debug("%s: packages %s pending=%s", self.host_name, installed, pending)

        return Probe(
            matches=not pending,
            diff={
                "before": {p: installed[p] or "absent" for p in pending},
                "after": {p: desired for p in pending},
            },
            current={"backend": backend.name, "installed": installed, "pending": pending},
            msg=f"{', '.join(pending)} not {desired}" if pending else "",
        )

    async def apply(self, probe: Probe) -> None:
        backend = BACKENDS[probe.current["backend"]](self)
        state = self.get_arg("state")
        pending = probe.current["pending"]

        if to_bool(self.get_arg("update_cache"), "update_cache"):
            await backend.update_cache()

        if state == "absent":
            await backend.remove(pending, purge=self._purge())
            return

        constraint = parse_constraint(self.get_arg("version"))
        specs = []
        for package in pending:
            if constraint and constraint.pinnable:
                specs.append(await backend.resolve(package, constraint))
            else:
                specs.append(package)

        # Upgrading only applies to packages that are already installed
        upgrade = state == "latest" and all(probe.current["installed"][p] for p in pending)
        await backend.install(specs, upgrade=upgrade)

    def _purge(self) -> bool:
        return False
