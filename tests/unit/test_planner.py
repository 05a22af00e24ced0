"""
Tests for per-host task planning.
"""

import pytest

from settle.engine.errors import PlanError, TemplateError
from settle.engine.facts import build_facts
from settle.engine.inventory import Host
from settle.engine.planner import TaskPlanner, plan_play
from settle.engine.playbook import PlaybookParser

PLAY = """
- name: Web
  hosts: all
  become: true
  vars:
    pkg: nginx
  tasks:
    - name: Install
      package:
        name: "{{ pkg }}"
      when: os_family == "Debian"
    - name: Ping
      ping:
      become: false
    - name: Write config
      copy:
        dest: /etc/app.conf
        content: "listen {{ address }}\\n"
"""


def play_from(content: str):
    return PlaybookParser("site.yml").parse_string(content)[0]


def facts_for(name: str, family: str, **extra):
    host = Host.from_vars(name, {"user": "deploy", "address": f"{name}.local", **extra})
    return host, build_facts(host, {"pkg": "nginx"}, {"os_family": family})


class TestTaskPlanner:
    """Test guard evaluation and parameter rendering per host."""

    def test_plan_per_host(self):
        """Test each host gets its own ordered steps."""
        play = play_from(PLAY)
        debian = facts_for("b-debian", "Debian")
        redhat = facts_for("a-redhat", "RedHat")

        plans = TaskPlanner().plan(play, dict([debian, redhat]))

        assert [p.host.name for p in plans] == ["a-redhat", "b-debian"]
        redhat_plan, debian_plan = plans

        assert [s.position for s in debian_plan.steps] == [0, 1, 2]
        assert [s.run for s in debian_plan.steps] == [True, True, True]
        assert [s.run for s in redhat_plan.steps] == [False, True, True]
        assert debian_plan.steps[0].params == {"name": "nginx"}
        assert debian_plan.steps[2].params["content"] == "listen b-debian.local\n"
        assert [s.name for s in redhat_plan.runnable] == ["Ping", "Write config"]

    def test_skipped_steps_are_not_rendered(self):
        """Test parameters of a guarded-out task are never templated."""
        play = play_from("""
- hosts: all
  tasks:
    - name: Only on Debian
      command: "echo {{ debian_only_var }}"
      when: os_family == "Debian"
""")
        host, facts = facts_for("rh", "RedHat")

        plan = TaskPlanner().plan_host(play, host, facts)

        assert plan.steps[0].run is False
        assert plan.steps[0].params == {}

    def test_skipped_steps_keep_guard_facts(self):
        """Test a false guard records the facts it read, and only for skipped steps."""
        play = play_from("""
- hosts: all
  tasks:
    - name: Debian web only
      ping:
      when:
        - os_family == "Debian"
        - role is not defined or role == "web"
""")
        redhat_host, redhat_facts = facts_for("rh", "RedHat", role="db")
        debian_host, debian_facts = facts_for("deb", "Debian")

        skipped = TaskPlanner().plan_host(play, redhat_host, redhat_facts).steps[0]
        ran = TaskPlanner().plan_host(play, debian_host, debian_facts).steps[0]

        assert skipped.run is False
        assert skipped.guard_facts == {"os_family": "RedHat", "role": "db"}
        assert ran.run is True
        assert ran.guard_facts == {}

    def test_become_inheritance(self):
        """Test task-level become overrides the play default."""
        play = play_from(PLAY)
        host, facts = facts_for("h", "Debian")

        steps = TaskPlanner().plan_host(play, host, facts).steps

        assert [s.become for s in steps] == [True, False, True]

    def test_undefined_guard_fact_aborts(self):
        """Test a guard on an undefined fact is a plan error naming task and host."""
        play = play_from("""
- hosts: all
  tasks:
    - name: Guarded
      ping:
      when: role == "web"
""")
        host, facts = facts_for("web1", "Debian")

        with pytest.raises(PlanError) as exc_info:
            plan_play(play, {host: facts})

        assert exc_info.value.task == "Guarded"
        assert exc_info.value.host == "web1"
        assert "undefined fact 'role'" in str(exc_info.value)

    def test_undefined_template_variable_aborts(self):
        """Test a parameter referencing an undefined variable is a template error."""
        play = play_from("""
- hosts: all
  tasks:
    - name: Render
      copy:
        dest: /tmp/x
        content: "{{ nope }}"
""")
        host, facts = facts_for("web1", "Debian")

        with pytest.raises(TemplateError) as exc_info:
            TaskPlanner().plan(play, {host: facts})

        assert exc_info.value.host == "web1"
        assert "Undefined variable" in str(exc_info.value)

    def test_unplanned_host(self):
        """Test hosts that cannot run get steps without evaluation."""
        play = play_from(PLAY)
        host = Host.from_vars("down", {"user": "deploy"})

        plan = TaskPlanner().unplanned(play, host)

        assert [s.run for s in plan.steps] == [False, False, False]
        assert plan.facts == {}


class TestFacts:
    """Test fact assembly precedence."""

    def test_precedence(self):
        """Test inventory < play vars < discovered facts."""
        host = Host.from_vars("web1", {"user": "deploy", "color": "red", "os_family": "x"})

        facts = build_facts(host, {"color": "blue", "extra": 1}, {"os_family": "Debian"})

        assert facts["color"] == "blue"
        assert facts["extra"] == 1
        assert facts["os_family"] == "Debian"
        assert facts["facts"]["os_family"] == "Debian"
        assert facts["inventory_hostname"] == "web1"

    def test_facts_are_read_only(self):
        """Test the fact set cannot be mutated by tasks."""
        host = Host.from_vars("web1", {"user": "deploy"})
        facts = build_facts(host)

        with pytest.raises(TypeError):
            facts["os_family"] = "Debian"
        assert "facts" not in facts
