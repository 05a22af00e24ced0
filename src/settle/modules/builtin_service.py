"""
Settle service module

Manage services on Linux/Unix systems.
"""

import shlex
from typing import Optional

from settle.engine.playbook import ModuleKind
from settle.modules.base import Module, Probe, register_module, to_bool


@register_module
class ServiceModule(Module):
    """
    Manage services (start, stop, enable, disable).

    Supports systemd and sysvinit ``service`` scripts.
    """

    kind = ModuleKind.SERVICE
    required_args = ["name"]
    optional_args = {
        "state": None,      # started, stopped
        "enabled": None,    # yes/no
        "use": "auto",      # auto, systemd, sysvinit
    }
    choices = {
        "state": ("started", "stopped"),
        "use": ("auto", "systemd", "sysvinit"),
    }
    bool_args = ["enabled"]

    def validate_args(self) -> Optional[str]:
        error = super().validate_args()
        if error:
            return error
        if self.get_arg("state") is None and self.get_arg("enabled") is None:
            return "Either 'state' or 'enabled' must be specified"
        return None

    async def _service_manager(self) -> str:
        """Pick the service manager from facts, falling back to detection."""
        use = self.get_arg("use")
        if use != "auto":
            return use

        fact = self.facts.get("service_mgr")
        if fact in ("systemd", "sysvinit"):
            return fact

        result = await self.run("command -v systemctl", become=False)
        if result.rc == 0:
            return "systemd"

        result = await self.run("command -v service", become=False)
        if result.rc == 0:
            return "sysvinit"

        raise self.fail("no supported service manager found (systemd, sysvinit)")

    async def _is_running(self, name: str, mgr: str) -> bool:
        if mgr == "systemd":
            result = await self.run(f"systemctl is-active --quiet {name}")
        else:
            result = await self.run(f"service {name} status")
        return result.rc == 0

    async def _is_enabled(self, name: str, mgr: str) -> bool:
        if mgr == "systemd":
            result = await self.run(f"systemctl is-enabled --quiet {name}")
        else:
            result = await self.run(f"ls /etc/rc[2345].d/S[0-9][0-9]{name} >/dev/null 2>&1", become=False)
        return result.rc == 0

    async def probe(self) -> Probe:
        name = shlex.quote(self.args["name"])
        state = self.get_arg("state")
        enabled = self.get_arg("enabled")
        mgr = await self._service_manager()

        before = {}
        after = {}
        current = {"manager": mgr}

        if state is not None:
            running = await self._is_running(name, mgr)
            current["running"] = running
            before["state"] = "started" if running else "stopped"
            after["state"] = state

        if enabled is not None:
            is_enabled = await self._is_enabled(name, mgr)
            current["enabled"] = is_enabled
            before["enabled"] = is_enabled
            after["enabled"] = to_bool(enabled, "enabled")

        self.data.update({"name": self.args["name"], **before})
        return Probe(
            matches=before == after,
            diff={"before": before, "after": after},
            current=current,
        )

    async def apply(self, probe: Probe) -> None:
        name = shlex.quote(self.args["name"])
        mgr = probe.current["manager"]
        after = probe.diff["after"]
        before = probe.diff["before"]

        # Enable first so a started service also survives reboot
        if "enabled" in after and after["enabled"] != before["enabled"]:
            if mgr == "systemd":
                action = "enable" if after["enabled"] else "disable"
                await self.check(f"systemctl {action} {name}", f"cannot {action} service")
            else:
                action = "defaults" if after["enabled"] else "remove"
                await self.check(
                    f"if command -v update-rc.d >/dev/null 2>&1; then update-rc.d -f {name} {action}; "
                    f"else chkconfig {name} {'on' if after['enabled'] else 'off'}; fi",
                    "cannot change boot status",
                )

        if "state" in after and after["state"] != before["state"]:
            action = "start" if after["state"] == "started" else "stop"
            if mgr == "systemd":
                cmd = f"systemctl {action} {name}"
            else:
                cmd = f"service {name} {action}"
            await self.check(cmd, f"cannot {action} service")
