"""
In-memory fake hosts for engine tests.

FakeHost simulates just enough of a Debian/RedHat machine (packages,
systemd units, files) to answer the commands the built-in modules issue.
FakeConnection is a real Connection subclass backed by a FakeHost, with
knobs for injecting transport failures.
"""

import hashlib
import shlex
from typing import Dict, List, Optional, Tuple

from settle.connections.base import Connection, RunResult
from settle.engine.errors import CommandTimeout, TransportError
from settle.engine.inventory import Host

# Packages that ship a systemd unit of the same name
PROVIDES_SERVICE = {"nginx", "apache2", "httpd", "postgresql"}


def ok(stdout: str = "") -> RunResult:
    return RunResult(rc=0, stdout=stdout, stderr="")


def fail(rc: int = 1, stderr: str = "") -> RunResult:
    return RunResult(rc=rc, stdout="", stderr=stderr)


class FakeHost:
    """Mutable state of one simulated machine."""

    def __init__(
        self,
        name: str,
        os_family: str = "Debian",
        packages: Optional[Dict[str, str]] = None,
        repo: Optional[Dict[str, List[str]]] = None,
        services: Optional[Dict[str, Dict[str, bool]]] = None,
        files: Optional[Dict[str, Tuple[bytes, str]]] = None,
        dirs: Optional[Dict[str, str]] = None,
    ):
        self.name = name
        self.os_family = os_family
        self.packages: Dict[str, str] = dict(packages or {})
        self.repo: Dict[str, List[str]] = dict(repo) if repo is not None else {"nginx": ["1.18.0-6", "1.22.1-9"]}
        self.services: Dict[str, Dict[str, bool]] = dict(services or {})
        self.files: Dict[str, Tuple[bytes, str]] = dict(files or {})
        self.dirs: Dict[str, str] = dict(dirs or {"/": "0755", "/etc": "0755", "/tmp": "1777"})
        self.binaries = {"apt-get", "systemctl"} if os_family == "Debian" else {"dnf", "systemctl"}

        # Every command seen (sudo unwrapped), and the ones run through sudo
        self.log: List[str] = []
        self.become_log: List[str] = []
        # Commands that changed state
        self.mutations: List[str] = []
        self.cache_updates = 0
        # Exit codes for arbitrary commands (command module)
        self.command_results: Dict[str, int] = {}
        self.commands_run: List[str] = []

        # Failure injection
        self.connect_failures = 0
        self.run_failures = 0
        self.facts_failures = 0
        self.timeout_commands: List[str] = []
        # Channel drops right after a matching command has run (once each)
        self.drop_after: List[str] = []
        # Raised by put_content
        self.put_error: Optional[Exception] = None
        self.connects = 0

    # -- facts ------------------------------------------------------------

    def facts_output(self) -> str:
        if self.os_family == "Debian":
            os_id, like, version, pkg = "debian", "", "12", "apt-get"
        else:
            os_id, like, version, pkg = "rocky", "rhel centos fedora", "9.3", "dnf"
        return "\n".join([
            "system=Linux",
            "architecture=x86_64",
            f"hostname={self.name}",
            f"os_id={os_id}",
            f"os_id_like={like}",
            f"os_version={version}",
            f"pkg={pkg}",
            "svc=systemd",
        ]) + "\n"

    # -- dispatch ---------------------------------------------------------

    def execute(self, command: str) -> RunResult:
        if "uname -s" in command:
            return ok(self.facts_output())

        command = command.strip()
        if command.startswith("sudo -n "):
            inner = shlex.split(command)[4]
            self.become_log.append(inner)
            return self.execute(inner)

        if " && " in command:
            result = ok()
            for part in command.split(" && "):
                result = self.execute(part)
                if result.rc != 0:
                    break
            return result

        argv = shlex.split(command)

        while argv and "=" in argv[0] and not argv[0].startswith("-"):
            argv.pop(0)

        self.log.append(command)
        handler = getattr(self, "_cmd_" + argv[0].replace("-", "_"), None)
        if handler is None:
            return self._other(command)
        return handler([a for a in argv[1:]])

    def _mutate(self, description: str) -> None:
        self.mutations.append(description)

    def _other(self, command: str) -> RunResult:
        self.commands_run.append(command)
        self._mutate(command)
        rc = self.command_results.get(command, 0)
        if rc:
            return RunResult(rc=rc, stdout="", stderr=f"{command}: failed")
        return ok(f"ran {command}\n")

    # -- shell builtins ---------------------------------------------------

    def _cmd_true(self, args):
        return ok()

    def _cmd_false(self, args):
        return fail()

    def _cmd_cd(self, args):
        return ok() if args[0] in self.dirs else fail(stderr=f"cd: {args[0]}: No such file or directory")

    def _cmd_command(self, args):
        return ok(f"/usr/bin/{args[-1]}\n") if args[-1] in self.binaries else fail()

    def _cmd_touch(self, args):
        path = args[-1]
        self.commands_run.append(f"touch {path}")
        if path not in self.files:
            self.files[path] = (b"", "0644")
            self._mutate(f"touch {path}")
        return ok()

    # -- files ------------------------------------------------------------

    def _cmd_stat(self, args):
        path = args[-1]
        if path in self.dirs:
            return ok(f"directory|{self.dirs[path].lstrip('0') or '0'}|4096\n")
        if path in self.files:
            content, mode = self.files[path]
            return ok(f"regular file|{mode.lstrip('0') or '0'}|{len(content)}\n")
        return fail(stderr=f"stat: cannot statx '{path}': No such file or directory")

    def _cmd_sha1sum(self, args):
        path = args[-1]
        if path not in self.files:
            return fail(stderr=f"sha1sum: {path}: No such file or directory")
        return ok(f"{hashlib.sha1(self.files[path][0]).hexdigest()}  {path}\n")

    def _cmd_install(self, args):
        mode, src, dest = args[1], args[2], args[3]
        self.files[dest] = (self.files[src][0], mode)
        self._mutate(f"install {dest}")
        return ok()

    def _cmd_rm(self, args):
        for path in (a for a in args if not a.startswith("-")):
            removed = self.files.pop(path, None) is not None
            if path in self.dirs:
                removed = True
                for child in [d for d in self.dirs if d == path or d.startswith(path + "/")]:
                    del self.dirs[child]
                for child in [f for f in self.files if f.startswith(path + "/")]:
                    del self.files[child]
            if removed and not path.startswith("/tmp/.settle-"):
                self._mutate(f"rm {path}")
        return ok()

    def _cmd_mkdir(self, args):
        path = args[-1]
        if path in self.files:
            return fail(stderr=f"mkdir: cannot create directory '{path}': File exists")
        self.dirs[path] = "0755"
        self._mutate(f"mkdir {path}")
        return ok()

    def _cmd_chmod(self, args):
        mode, path = args[0], args[1]
        if path in self.dirs:
            self.dirs[path] = mode
        elif path in self.files:
            self.files[path] = (self.files[path][0], mode)
        else:
            return fail(stderr=f"chmod: cannot access '{path}': No such file or directory")
        self._mutate(f"chmod {mode} {path}")
        return ok()

    # -- apt --------------------------------------------------------------

    def _cmd_dpkg_query(self, args):
        name = args[-1]
        if name not in self.packages:
            return fail(stderr=f"dpkg-query: no packages found matching {name}")
        return ok(f"ii |{self.packages[name]}")

    def _cmd_apt_cache(self, args):
        action, name = args[0], args[-1]
        versions = self.repo.get(name, [])
        if action == "policy":
            if not versions:
                return ok()
            installed = self.packages.get(name, "(none)")
            return ok(f"{name}:\n  Installed: {installed}\n  Candidate: {versions[-1]}\n")
        return ok("".join(f" {name} | {v} | http://deb.example.org stable/main amd64 Packages\n"
                          for v in reversed(versions)))

    def _install(self, name: str, version: Optional[str]) -> Optional[RunResult]:
        versions = self.repo.get(name, [])
        if not versions or (version and version not in versions):
            spec = f"{name}={version}" if version else name
            return RunResult(rc=100, stdout="", stderr=f"E: Unable to locate package {spec}")
        self.packages[name] = version or versions[-1]
        if name in PROVIDES_SERVICE:
            self.services.setdefault(name, {"running": False, "enabled": False})
        self._mutate(f"install {name}={self.packages[name]}")
        return None

    def _remove(self, name: str) -> None:
        if self.packages.pop(name, None) is not None:
            self.services.pop(name, None)
            self._mutate(f"remove {name}")

    def _cmd_apt_get(self, args):
        words = [a for a in args if not a.startswith("-")]
        action, targets = words[0], words[1:]
        if action == "update":
            self.cache_updates += 1
            return ok()
        if action == "install":
            for spec in targets:
                name, _, version = spec.partition("=")
                error = self._install(name, version or None)
                if error:
                    return error
            return ok()
        if action in ("remove", "purge"):
            for name in targets:
                self._remove(name)
            return ok()
        return fail(stderr=f"E: Invalid operation {action}")

    # -- rpm / dnf --------------------------------------------------------

    def _cmd_rpm(self, args):
        name = args[-1]
        if name not in self.packages:
            return RunResult(rc=1, stdout=f"package {name} is not installed\n", stderr="")
        return ok(f"{self.packages[name]}\n")

    def _cmd_dnf(self, args):
        words = [a for a in args if not a.startswith("-")]
        action, targets = words[0], words[1:]
        if action == "makecache":
            self.cache_updates += 1
            return ok()
        if action == "check-update":
            name = targets[0]
            if name in self.packages and self.repo.get(name) and self.packages[name] != self.repo[name][-1]:
                return RunResult(rc=100, stdout=f"{name} {self.repo[name][-1]}\n", stderr="")
            return ok()
        if action in ("install", "upgrade"):
            for spec in targets:
                name, version = spec, None
                for known in self.repo:
                    if spec.startswith(known + "-"):
                        name, version = known, spec[len(known) + 1:]
                error = self._install(name, version)
                if error:
                    return RunResult(rc=1, stdout="", stderr=f"No match for argument: {spec}")
            return ok()
        if action == "remove":
            for name in targets:
                self._remove(name)
            return ok()
        return fail(stderr=f"No such command: {action}")

    _cmd_yum = _cmd_dnf

    # -- systemd ----------------------------------------------------------

    def _cmd_systemctl(self, args):
        words = [a for a in args if not a.startswith("-")]
        action, name = words[0], words[1]
        unit = self.services.get(name)
        if action == "is-active":
            return ok() if unit and unit["running"] else RunResult(rc=3, stdout="", stderr="")
        if action == "is-enabled":
            return ok() if unit and unit["enabled"] else RunResult(rc=1, stdout="", stderr="")
        if unit is None:
            return RunResult(rc=5, stdout="", stderr=f"Failed to {action} {name}.service: Unit {name}.service not found.")
        key, value = {
            "start": ("running", True),
            "stop": ("running", False),
            "enable": ("enabled", True),
            "disable": ("enabled", False),
        }[action]
        unit[key] = value
        self._mutate(f"systemctl {action} {name}")
        return ok()


class FakeConnection(Connection):
    """Connection whose remote end is a FakeHost."""

    def __init__(self, host: Host, state: FakeHost, connect_timeout: float = 30.0,
                 command_timeout: Optional[float] = None):
        super().__init__(host, connect_timeout, command_timeout)
        self.state = state
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.state.connects += 1
        if self.state.connect_failures > 0:
            self.state.connect_failures -= 1
            raise TransportError(self.host.name, "Connection refused", connection_type="fake")
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    async def run(self, command: str, timeout: Optional[float] = None) -> RunResult:
        if not self._connected:
            raise TransportError(self.host.name, "not connected", connection_type="fake")
        if self.state.run_failures > 0:
            self.state.run_failures -= 1
            self._connected = False
            raise TransportError(self.host.name, "channel lost", connection_type="fake")
        if "uname -s" in command and self.state.facts_failures > 0:
            self.state.facts_failures -= 1
            return fail(rc=127, stderr="sh: uname: not found")
        if any(pattern in command for pattern in self.state.timeout_commands):
            raise CommandTimeout(self.host.name, command, timeout or self.command_timeout or 0)
        result = self.state.execute(command)
        for pattern in self.state.drop_after:
            if pattern in command:
                self.state.drop_after.remove(pattern)
                self._connected = False
                raise TransportError(self.host.name, "channel lost", connection_type="fake")
        return result

    async def put_content(self, data: bytes, remote_path: str, mode: Optional[str] = None) -> None:
        if not self._connected:
            raise TransportError(self.host.name, "not connected", connection_type="fake")
        if self.state.put_error is not None:
            raise self.state.put_error
        self.state.files[remote_path] = (data, mode or "0600")


class FakeWorld:
    """A set of FakeHosts plus a connection factory for the executor."""

    def __init__(self, *hosts: FakeHost):
        self.hosts: Dict[str, FakeHost] = {h.name: h for h in hosts}
        self.connections: List[FakeConnection] = []

    def __getitem__(self, name: str) -> FakeHost:
        return self.hosts[name]

    def add(self, state: FakeHost) -> FakeHost:
        self.hosts[state.name] = state
        return state

    def factory(self, host: Host, connect_timeout: float = 30.0,
                command_timeout: Optional[float] = None) -> FakeConnection:
        if host.name not in self.hosts:
            self.hosts[host.name] = FakeHost(host.name)
        conn = FakeConnection(host, self.hosts[host.name], connect_timeout, command_timeout)
        self.connections.append(conn)
        return conn
