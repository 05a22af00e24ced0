"""
Settle setup module (gather_facts)

Collect minimal system facts from target hosts.
"""

import logging
from typing import Dict, Optional

from settle.connections.base import Connection
from settle.engine.errors import ModuleError

logger = logging.getLogger(__name__)

# One round trip: every fact source printed as key=value
FACTS_SCRIPT = r"""
echo "system=$(uname -s)"
echo "architecture=$(uname -m)"
echo "hostname=$(hostname -s 2>/dev/null || uname -n)"
if [ -r /etc/os-release ]; then
  (. /etc/os-release; echo "os_id=$ID"; echo "os_id_like=$ID_LIKE"; echo "os_version=$VERSION_ID")
fi
for m in apt-get dnf yum zypper apk pacman; do
  if command -v $m >/dev/null 2>&1; then echo "pkg=$m"; break; fi
done
if [ -d /run/systemd/system ]; then echo "svc=systemd";
elif command -v service >/dev/null 2>&1; then echo "svc=sysvinit"; fi
"""

DISTRIBUTIONS = {
    "debian": "Debian",
    "ubuntu": "Ubuntu",
    "linuxmint": "Linuxmint",
    "raspbian": "Debian",
    "rhel": "RedHat",
    "centos": "CentOS",
    "fedora": "Fedora",
    "rocky": "Rocky",
    "almalinux": "AlmaLinux",
    "ol": "OracleLinux",
    "amzn": "Amazon",
    "sles": "SLES",
    "opensuse-leap": "openSUSE Leap",
    "alpine": "Alpine",
    "arch": "Archlinux",
}

OS_FAMILIES = {
    "Debian": ("debian", "ubuntu", "linuxmint", "raspbian", "pop"),
    "RedHat": ("rhel", "centos", "fedora", "rocky", "almalinux", "ol", "amzn"),
    "Suse": ("sles", "opensuse", "opensuse-leap", "suse"),
    "Alpine": ("alpine",),
    "Archlinux": ("arch", "manjaro"),
}

PKG_MGRS = {
    "apt-get": "apt",
    "dnf": "dnf",
    "yum": "yum",
    "zypper": "zypper",
    "apk": "apk",
    "pacman": "pacman",
}


def os_family(os_id: str, id_like: str = "", system: str = "Linux") -> str:
    """Map an os-release ID (and ID_LIKE fallbacks) to an OS family."""
    for candidate in [os_id] + id_like.split():
        for family, ids in OS_FAMILIES.items():
            if candidate.lower() in ids:
                return family
    if system == "Darwin":
        return "Darwin"
    return system or "Linux"


def parse_facts(output: str) -> Dict[str, Optional[str]]:
    """Turn the fact script output into the discovered fact mapping."""
    raw: Dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            raw[key.strip()] = value.strip().strip('"\'')

    system = raw.get("system") or "Linux"
    os_id = raw.get("os_id", "").lower()
    return {
        "os_family": os_family(os_id, raw.get("os_id_like", ""), system),
        "system": system,
        "distribution": DISTRIBUTIONS.get(os_id, os_id.capitalize() or system),
        "distribution_version": raw.get("os_version", ""),
        "hostname": raw.get("hostname", ""),
        "architecture": raw.get("architecture", ""),
        "pkg_mgr": PKG_MGRS.get(raw.get("pkg", ""), "unknown"),
        "service_mgr": raw.get("svc", "unknown"),
    }


async def gather_facts(connection: Connection) -> Dict[str, Optional[str]]:
    """
    Gather facts about the target system.

    Raises:
        TransportError: the channel failed (retryable)
        ModuleError: the fact script could not run
    """
    result = await connection.run(FACTS_SCRIPT)
    if result.rc != 0:
        raise ModuleError("setup", connection.host.name, "fact gathering failed",
                          rc=result.rc, stdout=result.stdout, stderr=result.stderr)
    facts = parse_facts(result.stdout)
    logger.debug("%s: facts %s", connection.host.name, facts)
    return facts
