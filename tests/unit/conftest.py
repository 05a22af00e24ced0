"""
Shared fixtures for unit tests.
"""

from pathlib import Path

import pytest

from fake_host import FakeConnection, FakeHost, FakeWorld
from settle.engine.facts import build_facts
from settle.engine.inventory import Host
from settle.engine.scheduler import HostContext
from settle.modules.builtin_setup import parse_facts


@pytest.fixture
def debian():
    """A Debian host with nothing installed."""
    return FakeHost("server-1")


@pytest.fixture
def make_context(tmp_path: Path):
    """Build a connected HostContext whose remote end is a FakeHost."""

    def factory(state: FakeHost, check_mode: bool = False, **host_vars) -> HostContext:
        host = Host.from_vars(state.name, {"user": "deploy", **host_vars})
        conn = FakeConnection(host, state)
        conn._connected = True
        discovered = parse_facts(state.facts_output())
        return HostContext(
            host=host,
            facts=build_facts(host, None, discovered),
            connection=conn,
            check_mode=check_mode,
            base_dir=tmp_path,
            discovered=discovered,
        )

    return factory


@pytest.fixture
def world():
    """Two Debian web servers and one RedHat server."""
    return FakeWorld(
        FakeHost("server-1"),
        FakeHost("server-2"),
        FakeHost("server-3", os_family="RedHat"),
    )


INVENTORY = """
all:
  vars:
    user: deploy
  children:
    web:
      hosts:
        server-1:
          address: 10.0.0.1
        server-2:
          address: 10.0.0.2
    legacy:
      hosts:
        server-3:
          address: 10.0.0.3
"""

NGINX_PLAY = """
- name: Configure web servers
  hosts: all
  become: true
  tasks:
    - name: Install nginx
      package:
        name: nginx
        state: present
      when: os_family == "Debian"

    - name: Start nginx
      service:
        name: nginx
        state: started
        enabled: true
      when: os_family == "Debian"
"""


@pytest.fixture
def project(tmp_path: Path):
    """Inventory and play file on disk; returns (play_path, inventory_path)."""
    inventory = tmp_path / "hosts.yml"
    inventory.write_text(INVENTORY)
    play = tmp_path / "site.yml"
    play.write_text(NGINX_PLAY)
    return play, inventory
