"""
Settle Play Parser

Parses YAML play files into immutable Play and Task objects.
"""

import enum
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from settle.engine.errors import ParseError, PlanError
from settle.engine.guards import Guard, compile_guard


class ModuleKind(str, enum.Enum):
    """The closed set of modules a task may invoke."""

    PING = "ping"
    PACKAGE = "package"
    APT = "apt"
    SERVICE = "service"
    COPY = "copy"
    FILE = "file"
    COMMAND = "command"

    def __str__(self) -> str:
        return self.value


# Fully-qualified spellings accepted for compatibility with Ansible plays
MODULE_ALIASES = {
    f"ansible.builtin.{kind.value}": kind.value for kind in ModuleKind
}
MODULE_ALIASES['ansible.builtin.systemd'] = ModuleKind.SERVICE.value
MODULE_ALIASES['ansible.builtin.shell'] = ModuleKind.COMMAND.value

# Modules whose string argument is a free-form command
FREE_FORM_MODULES = {ModuleKind.COMMAND}

TASK_KEYWORDS = {'name', 'when', 'become', 'args'}
PLAY_KEYWORDS = {'name', 'hosts', 'become', 'gather_facts', 'vars', 'tasks'}

_ARG_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')


@dataclass(frozen=True)
class Task:
    """One declarative unit of desired state."""

    position: int
    name: str
    module: ModuleKind
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    guard: Optional[Guard] = None
    become: Optional[bool] = None  # None = inherit from play

    def __repr__(self) -> str:
        return f"Task(position={self.position}, name={self.name!r}, module={self.module.value!r})"


@dataclass(frozen=True)
class Play:
    """A named, ordered task list targeted at a host pattern."""

    name: str
    hosts: str
    tasks: Tuple[Task, ...] = ()
    become: bool = False
    gather_facts: Optional[bool] = None  # None = use run config
    vars: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.tasks)})"


class PlaybookParser:
    """
    Parse a YAML play file into Play and Task objects.

    Every structural problem is reported as a PlanError naming the play file
    and, where known, the task.
    """

    def __init__(self, playbook_path: Union[str, Path]):
        self.playbook_path = Path(playbook_path)
        self.plays: List[Play] = []

    def parse(self) -> List[Play]:
        """
        Parse the play file.

        Returns:
            List of Play objects

        Raises:
            ParseError: If the file is missing or not valid YAML
            PlanError: If a play or task is malformed
        """
        if not self.playbook_path.exists():
            raise ParseError(
                f"Play file not found: {self.playbook_path}",
                file_path=str(self.playbook_path)
            )

        content = self.playbook_path.read_text(encoding='utf-8')
        return self.parse_string(content)

    def parse_string(self, content: str) -> List[Play]:
        """Parse play file text."""
        try:
            documents = list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            line = None
            mark = getattr(e, 'problem_mark', None)
            if mark is not None:
                line = mark.line + 1
            raise ParseError(
                f"YAML syntax error: {e}",
                file_path=str(self.playbook_path),
                line=line,
            )

        all_plays: List[Any] = []
        for doc in documents:
            if doc is None:
                continue
            if not isinstance(doc, list):
                raise self._error("a play file must be a list of plays")
            all_plays.extend(doc)

        self.plays = [self._parse_play(index, data) for index, data in enumerate(all_plays)]
        return self.plays

    def _error(self, message: str, task: Optional[str] = None) -> PlanError:
        return PlanError(message, file_path=str(self.playbook_path), task=task)

    def _parse_play(self, index: int, data: Any) -> Play:
        """Parse a single play from YAML data."""
        if not isinstance(data, dict):
            raise self._error(f"play #{index + 1} must be a mapping")

        unknown = set(data) - PLAY_KEYWORDS
        if unknown:
            raise self._error(f"unsupported play keyword(s): {', '.join(sorted(unknown))}")

        hosts = data.get('hosts')
        if not hosts:
            raise self._error(f"play #{index + 1} is missing required 'hosts' field")
        if isinstance(hosts, list):
            hosts = ','.join(str(h) for h in hosts)

        play_vars = data.get('vars') or {}
        if not isinstance(play_vars, dict):
            raise self._error(f"'vars' must be a mapping, got {type(play_vars).__name__}")

        tasks_data = data.get('tasks') or []
        if not isinstance(tasks_data, list):
            raise self._error("'tasks' must be a list")

        gather_facts = data.get('gather_facts')
        if gather_facts is not None:
            gather_facts = self._ensure_bool(gather_facts, 'gather_facts')

        return Play(
            name=str(data.get('name') or hosts),
            hosts=str(hosts),
            tasks=tuple(self._parse_task(pos, task) for pos, task in enumerate(tasks_data)),
            become=self._ensure_bool(data.get('become', False), 'become'),
            gather_facts=gather_facts,
            vars=MappingProxyType(dict(play_vars)),
        )

    def _parse_task(self, position: int, data: Any) -> Task:
        """Parse a single task from YAML data."""
        if not isinstance(data, dict):
            raise self._error(f"task #{position + 1} must be a mapping")

        label = str(data.get('name') or f"task #{position + 1}")

        module_keys = [k for k in data if k not in TASK_KEYWORDS]
        if not module_keys:
            raise self._error("no module given", task=label)
        if len(module_keys) > 1:
            raise self._error(
                f"exactly one module per task, found: {', '.join(map(str, module_keys))}",
                task=label,
            )

        key = str(module_keys[0])
        normalized = MODULE_ALIASES.get(key, key)
        try:
            module = ModuleKind(normalized)
        except ValueError:
            supported = ', '.join(kind.value for kind in ModuleKind)
            raise self._error(f"unknown module '{key}' (supported: {supported})", task=label)

        params = self._normalize_args(module, data[key], label)
        extra_args = data.get('args')
        if extra_args is not None:
            if not isinstance(extra_args, dict):
                raise self._error("'args' must be a mapping", task=label)
            params = {**extra_args, **params}

        guard = None
        if data.get('when') is not None:
            try:
                guard = compile_guard(data['when'])
            except PlanError as e:
                raise PlanError(e.reason, file_path=str(self.playbook_path), task=label)

        become = data.get('become')
        if become is not None:
            become = self._ensure_bool(become, 'become', label)

        return Task(
            position=position,
            name=str(data.get('name') or f"{module.value} #{position + 1}"),
            module=module,
            params=MappingProxyType(params),
            guard=guard,
            become=become,
        )

    def _normalize_args(self, module: ModuleKind, args: Any, label: str) -> Dict[str, Any]:
        """Normalize module arguments to a dictionary."""
        if args is None:
            return {}

        if isinstance(args, dict):
            return dict(args)

        if isinstance(args, str):
            if module in FREE_FORM_MODULES:
                return {'cmd': args}
            parsed = {}
            for match in _ARG_PATTERN.finditer(args):
                value = match.group(2) or match.group(3) or match.group(4)
                parsed[match.group(1)] = value
            if not parsed:
                raise self._error(f"cannot parse arguments {args!r}", task=label)
            return parsed

        raise self._error(
            f"module arguments must be a mapping or string, got {type(args).__name__}",
            task=label,
        )

    def _ensure_bool(self, value: Any, key: str, task: Optional[str] = None) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ('yes', 'true', 'no', 'false'):
            return value.lower() in ('yes', 'true')
        raise self._error(f"'{key}' must be a boolean, got {value!r}", task=task)
