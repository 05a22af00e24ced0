"""
Settle Inventory Resolver

Parses inventory from INI files, YAML files, and host/group vars directories,
validates it, and resolves an immutable, deduplicated host set annotated
with group ancestry.
"""

import fnmatch
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple, Union

import yaml

from settle.engine.errors import InventoryError

logger = logging.getLogger(__name__)

# Connection settings and the variable names they may be declared under.
# The short names win over the ansible_* spellings.
CONNECTION_VARS: Dict[str, Tuple[str, ...]] = {
    'address': ('address', 'ansible_host'),
    'port': ('port', 'ansible_port'),
    'user': ('user', 'ansible_user'),
    'private_key': ('private_key', 'ansible_ssh_private_key_file'),
    'password': ('password', 'ansible_password', 'ansible_ssh_pass'),
    'connection': ('connection', 'ansible_connection'),
}

CONNECTION_TYPES = ('ssh', 'local')
IMPLICIT_GROUPS = ('all', 'ungrouped')


def _lookup(variables: Mapping[str, Any], setting: str, default: Any = None) -> Any:
    for name in CONNECTION_VARS[setting]:
        if variables.get(name) is not None:
            return variables[name]
    return default


@dataclass(frozen=True, eq=False)
class Host:
    """
    A resolved inventory host.

    Immutable once resolved for a run: ``vars`` is a read-only mapping of
    group vars (along the ancestry) overlaid with host vars, and ``groups``
    holds every group the host belongs to, directly or through nesting.
    """

    name: str
    address: str
    port: int = 22
    user: Optional[str] = None
    private_key: Optional[str] = None
    connection: str = 'ssh'
    vars: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    groups: FrozenSet[str] = frozenset()

    @classmethod
    def from_vars(
        cls,
        name: str,
        variables: Optional[Mapping[str, Any]] = None,
        groups: Optional[Set[str]] = None,
    ) -> 'Host':
        """Build a host from a flat variable mapping."""
        variables = dict(variables or {})
        connection = _lookup(variables, 'connection')
        if connection is None:
            connection = 'local' if name in ('localhost', '127.0.0.1') else 'ssh'
        key = _lookup(variables, 'private_key')
        return cls(
            name=name,
            address=str(_lookup(variables, 'address', name)),
            port=int(_lookup(variables, 'port', 22)),
            user=_lookup(variables, 'user'),
            private_key=str(key) if key else None,
            connection=str(connection),
            vars=MappingProxyType(variables),
            groups=frozenset(groups or {'all'}),
        )

    @property
    def password(self) -> Optional[str]:
        return _lookup(self.vars, 'password')

    def get_variable(self, key: str, default: Any = None) -> Any:
        """Get a host variable."""
        return self.vars.get(key, default)

    def get_vars(self) -> Dict[str, Any]:
        """Return all host variables including computed ones."""
        result = dict(self.vars)
        result['inventory_hostname'] = self.name
        result['inventory_hostname_short'] = self.name.split('.')[0]
        result['address'] = self.address
        result['group_names'] = sorted(g for g in self.groups if g not in IMPLICIT_GROUPS)
        return result

    def __repr__(self) -> str:
        return f"Host({self.name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Host):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)


class Group:
    """A group of hosts, as declared (before resolution)."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = variables.copy() if variables else {}
        self._hosts: Set[str] = set()
        self._children: Set[str] = set()
        self._parents: Set[str] = set()

    @property
    def hosts(self) -> List[str]:
        """Return sorted host names directly in this group."""
        return sorted(self._hosts)

    @property
    def children(self) -> List[str]:
        """Return sorted child group names."""
        return sorted(self._children)

    @property
    def parents(self) -> List[str]:
        """Return sorted parent group names."""
        return sorted(self._parents)

    def add_host(self, host_name: str) -> None:
        self._hosts.add(host_name)

    def add_child(self, group_name: str) -> None:
        self._children.add(group_name)

    def add_parent(self, group_name: str) -> None:
        self._parents.add(group_name)

    def set_variable(self, key: str, value: Any) -> None:
        self.vars[key] = value

    def __repr__(self) -> str:
        return f"Group({self.name!r}, hosts={len(self._hosts)})"


@dataclass
class _HostEntry:
    """Accumulated declarations of one host identifier."""

    name: str
    vars: Dict[str, Any] = field(default_factory=dict)
    groups: Set[str] = field(default_factory=set)
    sources: List[str] = field(default_factory=list)


class InventoryManager:
    """
    Manages inventory parsing and host resolution.

    Supports:
    - INI format inventory files
    - YAML format inventory files
    - host_vars/ and group_vars/ directories
    - Host patterns for plays and --limit
    """

    # Pattern for host range expansion: web[01:10].example.com
    RANGE_PATTERN = re.compile(r'\[(\d+):(\d+)\]')
    # Pattern for INI variable assignment: key=value
    VAR_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')

    def __init__(self):
        self._entries: Dict[str, _HostEntry] = {}
        self.groups: Dict[str, Group] = {}
        self._inventory_dir: Optional[Path] = None
        self._resolved: Optional[Dict[str, Host]] = None

        for name in IMPLICIT_GROUPS:
            self.groups[name] = Group(name)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse(self, source: Union[str, Path]) -> 'InventoryManager':
        """
        Parse an inventory source.

        Args:
            source: Path to inventory file or directory

        Returns:
            self for chaining
        """
        source_path = Path(source)

        if not source_path.exists():
            raise InventoryError(f"Inventory path does not exist: {source_path}")

        if source_path.is_file():
            self._inventory_dir = source_path.parent
            self._parse_file(source_path)
        elif source_path.is_dir():
            self._inventory_dir = source_path
            self._parse_directory(source_path)
        else:
            raise InventoryError(f"Invalid inventory source: {source_path}")

        self._load_vars_directories(self._inventory_dir)
        self._resolved = None
        return self

    def parse_string(self, content: str, fmt: str = 'yaml') -> 'InventoryManager':
        """Parse inventory text directly ('yaml' or 'ini')."""
        if fmt == 'ini':
            self._parse_ini_string(content, '<string>')
        else:
            self._parse_yaml_string(content, '<string>')
        self._resolved = None
        return self

    def _parse_file(self, path: Path) -> None:
        """Parse a single inventory file."""
        try:
            content = path.read_text(encoding='utf-8')
        except OSError as e:
            raise InventoryError(f"Cannot read inventory: {e}", file_path=str(path))

        if path.suffix in ('.yml', '.yaml'):
            self._parse_yaml_string(content, str(path))
        elif path.suffix == '.json':
            try:
                data = json.loads(content)
            except json.JSONDecodeError as e:
                raise InventoryError(f"Invalid JSON: {e}", file_path=str(path))
            self._parse_yaml_data(data, str(path))
        elif content.lstrip().startswith(('---', 'all:')):
            self._parse_yaml_string(content, str(path))
        else:
            self._parse_ini_string(content, str(path))

    def _parse_directory(self, path: Path) -> None:
        """Parse all inventory files in a directory."""
        for item in sorted(path.iterdir()):
            if not item.is_file() or item.name.startswith('.'):
                continue
            if item.suffix in ('.bak', '.orig', '.pyc', '.cfg', '.md'):
                continue
            self._parse_file(item)

    def _load_vars_directories(self, base_path: Optional[Path]) -> None:
        """Load variables from host_vars/ and group_vars/ directories."""
        if base_path is None:
            return

        group_vars_dir = base_path / 'group_vars'
        if group_vars_dir.is_dir():
            for item in sorted(group_vars_dir.iterdir()):
                group = self._ensure_group(item.stem)
                for key, value in self._read_vars_source(item).items():
                    group.set_variable(key, value)

        host_vars_dir = base_path / 'host_vars'
        if host_vars_dir.is_dir():
            for item in sorted(host_vars_dir.iterdir()):
                entry = self._entries.get(item.stem)
                if entry is None:
                    logger.debug("host_vars for undeclared host %s ignored", item.stem)
                    continue
                self._merge_host_vars(entry, self._read_vars_source(item), str(item))

    def _read_vars_source(self, item: Path) -> Dict[str, Any]:
        """Read a vars file, or every YAML file in a vars directory."""
        if item.is_dir():
            files = sorted(list(item.glob('*.yml')) + list(item.glob('*.yaml')))
        elif item.suffix in ('.yml', '.yaml'):
            files = [item]
        else:
            return {}

        merged: Dict[str, Any] = {}
        for vars_file in files:
            try:
                data = yaml.safe_load(vars_file.read_text(encoding='utf-8')) or {}
            except yaml.YAMLError as e:
                raise InventoryError(f"Invalid YAML: {e}", file_path=str(vars_file))
            if not isinstance(data, dict):
                raise InventoryError("Vars file must contain a mapping", file_path=str(vars_file))
            merged.update(data)
        return merged

    def _ensure_group(self, name: str) -> Group:
        if name not in self.groups:
            self.groups[name] = Group(name)
        return self.groups[name]

    def _declare_host(
        self,
        name: str,
        variables: Dict[str, Any],
        group_name: Optional[str],
        source: str,
    ) -> None:
        """Record one declaration of a host, merging with earlier ones."""
        entry = self._entries.get(name)
        if entry is None:
            entry = self._entries[name] = _HostEntry(name)
        self._merge_host_vars(entry, variables, source)
        if group_name:
            entry.groups.add(group_name)
            self._ensure_group(group_name).add_host(name)

    def _merge_host_vars(self, entry: _HostEntry, variables: Dict[str, Any], source: str) -> None:
        new_address = _lookup(variables, 'address')
        old_address = _lookup(entry.vars, 'address')
        if new_address is not None and old_address is not None and str(new_address) != str(old_address):
            raise InventoryError(
                f"Host '{entry.name}' declared with conflicting addresses: "
                f"{old_address} ({', '.join(entry.sources)}) and {new_address} ({source})"
            )
        entry.vars.update(variables)
        entry.sources.append(source)

    def _parse_ini_string(self, content: str, source: str) -> None:
        """Parse INI format inventory."""
        current_group: Optional[str] = None
        current_section: Optional[str] = None  # 'hosts', 'vars', 'children'

        for line_num, line in enumerate(content.splitlines(), 1):
            line = line.strip()

            if not line or line.startswith('#') or line.startswith(';'):
                continue

            if line.startswith('[') and line.endswith(']'):
                header = line[1:-1].strip()

                if header.endswith(':vars'):
                    current_group = header[:-len(':vars')].strip()
                    current_section = 'vars'
                elif header.endswith(':children'):
                    current_group = header[:-len(':children')].strip()
                    current_section = 'children'
                else:
                    current_group = header
                    current_section = 'hosts'
                self._ensure_group(current_group)
                continue

            location = f"{source}:{line_num}"

            if current_section == 'vars':
                if '=' not in line:
                    raise InventoryError(f"Expected key=value at line {line_num}", file_path=source)
                key, value = self._parse_variable_line(line)
                self.groups[current_group].set_variable(key, value)

            elif current_section == 'children':
                self._link_groups(current_group, line)

            else:
                host_names, variables = self._parse_host_line(line)
                for name in host_names:
                    self._declare_host(name, dict(variables), current_group, location)

    def _link_groups(self, parent: str, child: str) -> None:
        self._ensure_group(parent).add_child(child)
        self._ensure_group(child).add_parent(parent)

    def _parse_host_line(self, line: str) -> Tuple[List[str], Dict[str, Any]]:
        """Parse a single host line, handling ranges and variables."""
        parts = line.split(None, 1)
        host_pattern = parts[0]
        var_string = parts[1] if len(parts) > 1 else ''

        variables: Dict[str, Any] = {}
        for match in self.VAR_PATTERN.finditer(var_string):
            key = match.group(1)
            value = match.group(2) or match.group(3) or match.group(4)
            variables[key] = self._convert_value(value)

        return self._expand_host_pattern(host_pattern), variables

    def _expand_host_pattern(self, pattern: str) -> List[str]:
        """Expand host patterns like web[01:03].example.com."""
        match = self.RANGE_PATTERN.search(pattern)
        if not match:
            return [pattern]

        start = int(match.group(1))
        end = int(match.group(2))
        width = len(match.group(1))

        results = []
        for i in range(start, end + 1):
            expanded = pattern[:match.start()] + str(i).zfill(width) + pattern[match.end():]
            results.extend(self._expand_host_pattern(expanded))
        return results

    def _parse_variable_line(self, line: str) -> Tuple[str, Any]:
        """Parse a variable assignment line."""
        key, _, value = line.partition('=')
        value = value.strip()

        if (value.startswith('"') and value.endswith('"')) or \
           (value.startswith("'") and value.endswith("'")):
            value = value[1:-1]

        return key.strip(), self._convert_value(value)

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate Python type."""
        if not isinstance(value, str):
            return value

        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False
        if value.lower() in ('null', 'none', '~'):
            return None

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _parse_yaml_string(self, content: str, source: str) -> None:
        """Parse YAML format inventory."""
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise InventoryError(f"YAML syntax error: {e}", file_path=source)
        if data:
            self._parse_yaml_data(data, source)

    def _parse_yaml_data(self, data: Any, source: str) -> None:
        """Parse YAML inventory data structure."""
        if not isinstance(data, dict):
            raise InventoryError("Inventory must be a mapping of groups", file_path=source)

        for group_name, group_data in data.items():
            self._parse_yaml_group(str(group_name), group_data or {}, source, ())

    def _parse_yaml_group(
        self,
        name: str,
        data: Any,
        source: str,
        lineage: Tuple[str, ...],
    ) -> None:
        """Parse a single group from YAML inventory."""
        if name in lineage:
            cycle = ' -> '.join(lineage[lineage.index(name):] + (name,))
            raise InventoryError(f"Cyclic group nesting: {cycle}", file_path=source)

        group = self._ensure_group(name)

        if not isinstance(data, dict):
            raise InventoryError(f"Group '{name}' must be a mapping", file_path=source)

        hosts_data = data.get('hosts') or {}
        if isinstance(hosts_data, list):
            hosts_data = {h: {} for h in hosts_data}
        if not isinstance(hosts_data, dict):
            raise InventoryError(f"Group '{name}' hosts must be a mapping", file_path=source)
        for host_pattern, host_vars in hosts_data.items():
            if host_vars is not None and not isinstance(host_vars, dict):
                raise InventoryError(
                    f"Host '{host_pattern}' vars must be a mapping", file_path=source
                )
            for host_name in self._expand_host_pattern(str(host_pattern)):
                self._declare_host(host_name, dict(host_vars or {}), name, source)

        vars_data = data.get('vars') or {}
        if not isinstance(vars_data, dict):
            raise InventoryError(f"Group '{name}' vars must be a mapping", file_path=source)
        for key, value in vars_data.items():
            group.set_variable(key, value)

        children_data = data.get('children') or {}
        if isinstance(children_data, list):
            children_data = {c: {} for c in children_data}
        for child_name, child_data in children_data.items():
            self._link_groups(name, str(child_name))
            self._parse_yaml_group(str(child_name), child_data or {}, source, lineage + (name,))

    # ------------------------------------------------------------------
    # Validation and resolution
    # ------------------------------------------------------------------

    def _check_cycles(self) -> None:
        """Reject cyclic group nesting (a group that is its own ancestor)."""
        visiting: Set[str] = set()
        done: Set[str] = set()

        def visit(name: str, path: List[str]) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = path[path.index(name):] + [name]
                raise InventoryError(f"Cyclic group nesting: {' -> '.join(cycle)}")
            visiting.add(name)
            for child in self.groups[name].children:
                visit(child, path + [name])
            visiting.discard(name)
            done.add(name)

        for name in sorted(self.groups):
            visit(name, [])

    def _ancestors(self, group_name: str) -> Set[str]:
        result: Set[str] = set()
        stack = list(self.groups[group_name].parents)
        while stack:
            parent = stack.pop()
            if parent not in result:
                result.add(parent)
                stack.extend(self.groups[parent].parents)
        return result

    def _depth(self, group_name: str, memo: Dict[str, int]) -> int:
        """Nesting depth of a group: 0 for top-level groups."""
        if group_name not in memo:
            parents = [p for p in self.groups[group_name].parents if p != 'all']
            memo[group_name] = 1 + max(self._depth(p, memo) for p in parents) if parents else 0
        return memo[group_name]

    def resolve(self) -> Dict[str, Host]:
        """
        Validate the parsed inventory and produce the resolved host set.

        Group vars merge from 'all' down the nesting (shallow groups first,
        deeper groups override, ties broken by name); host vars win.

        Returns:
            Dict of host name -> Host

        Raises:
            InventoryError: cyclic nesting or missing connection fields
        """
        if self._resolved is not None:
            return self._resolved

        self._check_cycles()

        depth_memo: Dict[str, int] = {}
        resolved: Dict[str, Host] = {}
        missing: List[str] = []

        for name in sorted(self._entries):
            entry = self._entries[name]
            groups: Set[str] = set()
            for group_name in entry.groups:
                groups.add(group_name)
                groups |= self._ancestors(group_name)
            groups.discard('all')
            if not groups:
                groups.add('ungrouped')
                self.groups['ungrouped'].add_host(name)
            self.groups['all'].add_host(name)

            merged: Dict[str, Any] = dict(self.groups['all'].vars)
            for group_name in sorted(groups, key=lambda g: (self._depth(g, depth_memo), g)):
                merged.update(self.groups[group_name].vars)
            merged.update(entry.vars)

            host = Host.from_vars(name, merged, groups | {'all'})
            if host.connection not in CONNECTION_TYPES:
                raise InventoryError(
                    f"Host '{name}' has unknown connection type '{host.connection}'"
                )
            if host.connection == 'ssh' and not host.user:
                missing.append(name)
            resolved[name] = host

        if missing:
            raise InventoryError(
                "Missing required connection field 'user' for host(s): " + ", ".join(missing)
            )

        self._resolved = resolved
        return resolved

    @property
    def hosts(self) -> Dict[str, Host]:
        return self.resolve()

    def get_host(self, name: str) -> Optional[Host]:
        return self.resolve().get(name)

    def get_hosts(self, pattern: str = "all") -> List[Host]:
        """
        Get hosts matching a pattern, sorted by name.

        Supported patterns:
        - "all" - all hosts
        - "group_name" - all hosts in a group (including children)
        - "host_name" - single host
        - "web*" - shell-style wildcard over host and group names
        - "host1,host2" - multiple hosts/groups
        - "group1:&group2" - intersection
        - "!group" - exclusion

        Args:
            pattern: Host pattern string

        Returns:
            List of matching Host objects
        """
        hosts = self.resolve()
        names = self._match(pattern, hosts)
        return [hosts[name] for name in sorted(names)]

    def _match(self, pattern: str, hosts: Dict[str, Host]) -> Set[str]:
        pattern = (pattern or 'all').strip()

        if ',' in pattern:
            includes: Set[str] = set()
            excludes: Set[str] = set()
            restricts: List[Set[str]] = []
            for sub in (p.strip() for p in pattern.split(',')):
                if not sub:
                    continue
                if sub.startswith('!'):
                    excludes |= self._match(sub[1:], hosts)
                elif sub.startswith('&'):
                    restricts.append(self._match(sub[1:], hosts))
                else:
                    includes |= self._match(sub, hosts)
            for restrict in restricts:
                includes &= restrict
            return includes - excludes

        if pattern.startswith('!'):
            return set(hosts) - self._match(pattern[1:], hosts)

        if ':&' in pattern:
            left, _, right = pattern.partition(':&')
            return self._match(left, hosts) & self._match(right, hosts)

        if pattern == 'all' or pattern == '*':
            return set(hosts)

        if pattern in self.groups:
            return {h for h, host in hosts.items() if pattern in host.groups}

        if pattern in hosts:
            return {pattern}

        if any(c in pattern for c in '*?['):
            matched = {h for h in hosts if fnmatch.fnmatchcase(h, pattern)}
            for group_name in fnmatch.filter(self.groups, pattern):
                matched |= {h for h, host in hosts.items() if group_name in host.groups}
            return matched

        return set()

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _top_groups(self) -> List[str]:
        """Groups directly under 'all' (explicitly or by having no parent)."""
        return [
            g for g in sorted(self.groups)
            if g != 'all' and not [p for p in self.groups[g].parents if p != 'all']
        ]

    def to_dict(self) -> Dict[str, Any]:
        """Inventory in the `--list` JSON layout."""
        hosts = self.resolve()
        result: Dict[str, Any] = {
            '_meta': {
                'hostvars': {name: dict(host.vars) for name, host in hosts.items()},
            },
        }
        for name in sorted(self.groups):
            group = self.groups[name]
            entry: Dict[str, Any] = {}
            if group.hosts:
                entry['hosts'] = group.hosts
            if name == 'all':
                entry['children'] = self._top_groups()
            elif group.children:
                entry['children'] = group.children
            if group.vars:
                entry['vars'] = dict(group.vars)
            result[name] = entry
        return result

    def graph(self) -> str:
        """Render the group tree like `ansible-inventory --graph`."""
        self.resolve()
        lines: List[str] = ['@all:']

        def walk(group_name: str, indent: str) -> None:
            group = self.groups[group_name]
            for child in group.children:
                lines.append(f"{indent}|--@{child}:")
                walk(child, indent + '|  ')
            for host in group.hosts:
                lines.append(f"{indent}|--{host}")

        for name in self._top_groups():
            if name == 'ungrouped' and not self.groups[name].hosts:
                continue
            lines.append(f"  |--@{name}:")
            walk(name, '  |  ')
        return '\n'.join(lines)
