"""
Settle file module

Manage directories, file modes and removal on target hosts.
"""

import shlex

from settle.engine.playbook import ModuleKind
from settle.modules.base import Module, Probe, normalize_mode, register_module


@register_module
class FileModule(Module):
    """
    Manage file system objects.

    States:
    - directory: create (with parents) if missing
    - absent: remove recursively
    - file: assert the path is an existing regular file; only its mode is managed
    """

    kind = ModuleKind.FILE
    required_args = ["path"]
    optional_args = {
        "state": "file",
        "mode": None,
    }
    choices = {
        "state": ("directory", "absent", "file"),
    }

    async def probe(self) -> Probe:
        path = self.args["path"]
        state = self.get_arg("state")
        mode = normalize_mode(self.get_arg("mode"))

        stat = await self.connection.stat(path)
        current = {"exists": bool(stat)}
        if stat:
            current["type"] = "directory" if stat["isdir"] else "file" if stat["isreg"] else "other"
            current["mode"] = stat["mode"]
        before = {"path": path, "state": current.get("type", "absent")}
        after = {"path": path, "state": state}

        if state == "absent":
            return Probe(matches=not stat, diff={"before": before, "after": after}, current=current)

        if state == "file" and not stat:
            raise self.fail(f"file {path} does not exist")
        if state == "file" and current["type"] != "file":
            raise self.fail(f"{path} is not a regular file")

        matches = bool(stat) and current["type"] == state
        if mode:
            before["mode"] = current.get("mode")
            after["mode"] = mode
            matches = matches and current.get("mode") == mode

        return Probe(matches=matches, diff={"before": before, "after": after}, current=current)

    async def apply(self, probe: Probe) -> None:
        path = shlex.quote(self.args["path"])
        state = self.get_arg("state")
        mode = normalize_mode(self.get_arg("mode"))

        if state == "absent":
            await self.check(f"rm -rf {path}", "cannot remove")
            return

        if state == "directory" and probe.current.get("type") != "directory":
            if probe.current.get("exists"):
                raise self.fail(f"{self.args['path']} exists and is not a directory")
            await self.check(f"mkdir -p {path}", "cannot create directory")

        if mode:
            await self.check(f"chmod {mode} {path}", "cannot set mode")
