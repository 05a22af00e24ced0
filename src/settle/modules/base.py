"""
Settle Module Base

Base class and registry for all modules.

Every module is a small probe/apply pair: ``probe`` inspects the host
read-only and reports whether it already matches the desired parameters,
``apply`` performs the change the probe found missing. The engine drives
the pair (see ``settle.engine.reconcile``); modules never decide on their
own whether to act.
"""

import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Type

from settle.connections.base import RunResult
from settle.engine.errors import ModuleError
from settle.engine.playbook import ModuleKind

if TYPE_CHECKING:
    from settle.engine.scheduler import HostContext

logger = logging.getLogger(__name__)

BOOL_TRUE = ('yes', 'true', 'on', '1')
BOOL_FALSE = ('no', 'false', 'off', '0')


@dataclass
class Probe:
    """Outcome of a read-only state inspection."""

    matches: bool
    # {'before': ..., 'after': ...} describing what apply would change
    diff: Dict[str, Any] = field(default_factory=dict)
    # Observed state, handed back to apply
    current: Dict[str, Any] = field(default_factory=dict)
    msg: str = ""


def to_bool(value: Any, name: str = "value") -> bool:
    """Coerce a YAML-ish boolean parameter."""
    if isinstance(value, bool):
        return value
    if str(value).lower() in BOOL_TRUE:
        return True
    if str(value).lower() in BOOL_FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def normalize_mode(mode: Any) -> Optional[str]:
    """Normalize a file mode to four octal digits ('644' -> '0644')."""
    if mode is None:
        return None
    if isinstance(mode, bool):
        raise ValueError(f"invalid file mode: {mode!r}")
    if isinstance(mode, int):
        # YAML reads an unquoted 0644 as the int 420
        text = oct(mode)[2:]
    else:
        text = str(mode).strip()
        if text.startswith('0o'):
            text = text[2:]
    if not text or not all(ch in '01234567' for ch in text) or len(text) > 4:
        raise ValueError(f"invalid file mode: {mode!r}")
    return text.zfill(4)


class Module(ABC):
    """
    Base class for all modules.

    Subclasses set ``kind`` and argument metadata, then implement
    ``probe`` and ``apply``.
    """

    # Module tag (used for registration)
    kind: ModuleKind

    # Required arguments
    required_args: List[str] = []

    # Optional arguments with defaults
    optional_args: Dict[str, Any] = {}

    # Allowed values for enumerated arguments
    choices: Dict[str, tuple] = {}

    # Arguments coerced with to_bool
    bool_args: List[str] = []

    # Re-probe after apply to confirm the desired state was reached
    verify_after_apply: bool = True

    def __init__(self, args: Mapping[str, Any], context: 'HostContext', become: bool = False):
        self.args = dict(args)
        self.context = context
        self.connection = context.connection
        self.become = become
        # Module-specific result data (versions, checksums, command output)
        self.data: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def host_name(self) -> str:
        return self.context.host.name

    @property
    def facts(self) -> Mapping[str, Any]:
        return self.context.facts

    def validate_args(self) -> Optional[str]:
        """
        Validate module arguments.

        Returns:
            Error message if validation fails, None otherwise
        """
        for required in self.required_args:
            if self.args.get(required) in (None, ''):
                return f"Missing required argument: {required}"

        known = set(self.required_args) | set(self.optional_args)
        unknown = sorted(set(self.args) - known)
        if unknown:
            return f"Unsupported parameters: {', '.join(unknown)}"

        for arg, allowed in self.choices.items():
            value = self.get_arg(arg)
            if value is not None and value not in allowed:
                return f"{arg} must be one of {', '.join(allowed)}, got {value!r}"

        try:
            for arg in self.bool_args:
                if self.get_arg(arg) is not None:
                    to_bool(self.get_arg(arg), arg)
            if self.get_arg('mode') is not None:
                normalize_mode(self.get_arg('mode'))
        except ValueError as e:
            return str(e)
        return None

    def get_arg(self, name: str, default: Any = None) -> Any:
        """Get an argument value with optional default."""
        if name in self.args:
            return self.args[name]
        if name in self.optional_args:
            return self.optional_args[name]
        return default

    def wrap_become(self, cmd: str) -> str:
        """Wrap command with non-interactive sudo if become is enabled."""
        if not self.become:
            return cmd
        return f"sudo -n /bin/sh -c {shlex.quote(cmd)}"

    def fail(self, message: str, result: Optional[RunResult] = None) -> ModuleError:
        """Build a ModuleError for this module and host."""
        if result is None:
            return ModuleError(self.name, self.host_name, message)
        return ModuleError(
            self.name, self.host_name, message,
            rc=result.rc, stdout=result.stdout, stderr=result.stderr,
        )

    async def run(self, cmd: str, become: bool = True) -> RunResult:
        """Run a command, escalating when become is enabled and requested."""
        command = self.wrap_become(cmd) if become else cmd
        logger.debug("%s [%s]: %s", self.host_name, self.name, command)
        return await self.connection.run(command)

    async def check(self, cmd: str, message: str, become: bool = True) -> RunResult:
        """Run a command and raise ModuleError unless it exits 0."""
        result = await self.run(cmd, become=become)
        if result.rc != 0:
            detail = (result.stderr or result.stdout).strip().splitlines()
            reason = detail[-1] if detail else f"exit status {result.rc}"
            raise self.fail(f"{message}: {reason}", result)
        return result

    @abstractmethod
    async def probe(self) -> Probe:
        """Inspect current state against the desired parameters (read-only)."""

    @abstractmethod
    async def apply(self, probe: Probe) -> None:
        """
        Perform the change described by a non-matching probe.

        Raises:
            ModuleError: the change could not be made
        """


# Module registry: one implementation per closed module tag
_modules: Dict[ModuleKind, Type[Module]] = {}
_modules_imported = False


def register_module(cls: Type[Module]) -> Type[Module]:
    """Decorator to register a module class."""
    if not isinstance(getattr(cls, 'kind', None), ModuleKind):
        raise TypeError(f"{cls.__name__} must declare a ModuleKind")
    _modules[cls.kind] = cls
    return cls


def get_module(kind: ModuleKind) -> Type[Module]:
    """Get a module class by tag."""
    _ensure_modules_imported()
    return _modules[kind]


def list_modules() -> List[str]:
    """List all registered module names."""
    _ensure_modules_imported()
    return sorted(kind.value for kind in _modules)


def _ensure_modules_imported() -> None:
    """Ensure all modules have been imported."""
    global _modules_imported
    if not _modules_imported:
        _import_builtin_modules()
        _modules_imported = True


def _import_builtin_modules() -> None:
    """Import all built-in modules to register them."""
    # These imports trigger the @register_module decorators
    from settle.modules import builtin_apt  # noqa: F401
    from settle.modules import builtin_command  # noqa: F401
    from settle.modules import builtin_copy  # noqa: F401
    from settle.modules import builtin_file  # noqa: F401
    from settle.modules import builtin_package  # noqa: F401
    from settle.modules import builtin_ping  # noqa: F401
    from settle.modules import builtin_service  # noqa: F401
