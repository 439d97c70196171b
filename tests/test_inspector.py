import dataclasses

import pytest

from conftest import raw
from portexec import Command, KillOutcome, Phase, PortEntry

LISTENERS = [raw(22, 100), raw(80, 200), raw(5432, 300)]


def test_start_runs_initial_build(make_inspector):
    inspector = make_inspector(LISTENERS)

    state = inspector.start()

    assert [e.port for e in state.table] == [22, 80, 5432]
    assert state.selected_index == 0
    assert state.phase is Phase.IDLE
    assert state.last_message == "Found 3 listening ports"
    assert inspector.running


def test_start_with_nothing_listening(make_inspector):
    inspector = make_inspector([])

    state = inspector.start()

    assert state.table == ()
    assert state.selected_index is None
    assert inspector.selected_entry() is None
    assert state.last_message == "Found 0 listening ports"


def test_refresh_replaces_table_and_reports(make_inspector):
    inspector = make_inspector(LISTENERS, [raw(443, 200)])
    inspector.start()
    before = inspector.state.table

    inspector.dispatch(Command.REFRESH)

    assert inspector.state.table == (PortEntry(443, 200, "nginx"),)
    assert inspector.state.table is not before
    assert inspector.state.last_message == "List refreshed"
    assert inspector.state.message_severity == "info"


def test_refresh_clamps_selection(make_inspector):
    inspector = make_inspector(LISTENERS, [raw(22, 100)])
    inspector.start()
    inspector.select(2)

    inspector.refresh()

    assert inspector.state.selected_index == 0
    assert inspector.selected_entry() == PortEntry(22, 100, "sshd")


def test_refresh_to_empty_clears_selection(make_inspector):
    inspector = make_inspector(LISTENERS, [])
    inspector.start()

    inspector.refresh()

    assert inspector.state.selected_index is None


def test_refresh_message_replaces_previous_message(make_inspector, resolver):
    resolver.outcome = KillOutcome.PERMISSION_DENIED
    inspector = make_inspector(LISTENERS)
    inspector.start()
    inspector.kill()

    inspector.refresh()

    assert inspector.state.last_message == "List refreshed"
    assert inspector.state.message_severity == "info"


def test_kill_success_refreshes_and_names_process_and_port(make_inspector, resolver):
    inspector = make_inspector(LISTENERS, [raw(22, 100), raw(5432, 300)])
    inspector.start()
    inspector.select(1)

    inspector.dispatch(Command.KILL)

    assert resolver.killed == [200]
    assert [e.port for e in inspector.state.table] == [22, 5432]
    assert "nginx" in inspector.state.last_message
    assert "80" in inspector.state.last_message
    assert inspector.state.last_message == "Successfully killed nginx (Port 80)"
    assert inspector.state.message_severity == "info"
    assert inspector.state.selected_index == 1


def test_kill_not_found_behaves_like_success(make_inspector, resolver):
    resolver.outcome = KillOutcome.NOT_FOUND
    inspector = make_inspector(LISTENERS, [raw(80, 200), raw(5432, 300)])
    inspector.start()

    inspector.kill()

    assert resolver.killed == [100]
    assert [e.port for e in inspector.state.table] == [80, 5432]
    assert inspector.state.last_message == "Successfully killed sshd (Port 22)"
    assert inspector.state.message_severity == "info"


@pytest.mark.parametrize("outcome", [KillOutcome.PERMISSION_DENIED, KillOutcome.OTHER])
def test_kill_failure_leaves_table_untouched(make_inspector, resolver, outcome):
    resolver.outcome = outcome
    resolver.detail = "permission denied"
    inspector = make_inspector(LISTENERS, [])
    inspector.start()
    inspector.select(2)
    before = inspector.state.table

    inspector.kill()

    assert inspector.state.table is before
    assert inspector.state.selected_index == 2
    assert inspector.state.last_message == "Failed to kill 300: permission denied"
    assert inspector.state.message_severity == "error"


def test_kill_failure_does_not_rebuild(make_inspector, resolver):
    resolver.outcome = KillOutcome.PERMISSION_DENIED
    inspector = make_inspector(LISTENERS)
    inspector.start()
    calls = inspector.builder.provider.calls

    inspector.kill()

    assert inspector.builder.provider.calls == calls


def test_kill_on_empty_table_is_a_no_op(make_inspector, resolver):
    inspector = make_inspector([])
    inspector.start()
    before = dataclasses.replace(inspector.state)
    logged = len(inspector.log)

    inspector.dispatch(Command.KILL)
    inspector.kill(PortEntry(22, 100, "sshd"))

    assert resolver.killed == []
    assert inspector.state == before
    assert len(inspector.log) == logged


def test_kill_explicit_entry_overrides_selection(make_inspector, resolver):
    inspector = make_inspector(LISTENERS)
    inspector.start()

    inspector.dispatch(Command.KILL, PortEntry(5432, 300, "postgres"))

    assert resolver.killed == [300]
    assert inspector.state.last_message == "Successfully killed postgres (Port 5432)"


def test_kill_entry_without_pid_reports_dash(make_inspector, resolver):
    resolver.outcome = KillOutcome.OTHER
    resolver.detail = "no owning process"
    inspector = make_inspector([raw(631, None)])
    inspector.start()

    inspector.kill()

    assert inspector.state.last_message == "Failed to kill -: no owning process"


def test_quit_terminates_and_ignores_later_commands(make_inspector, resolver):
    inspector = make_inspector(LISTENERS, [])
    inspector.start()

    state = inspector.dispatch(Command.QUIT)
    inspector.dispatch(Command.REFRESH)
    inspector.dispatch(Command.KILL)

    assert state.phase is Phase.TERMINATED
    assert not inspector.running
    assert len(inspector.state.table) == 3
    assert resolver.killed == []


def test_selection_is_clamped(make_inspector):
    inspector = make_inspector(LISTENERS)
    inspector.start()

    inspector.move_selection(10)
    assert inspector.state.selected_index == 2
    inspector.move_selection(-10)
    assert inspector.state.selected_index == 0
    inspector.select(1)
    assert inspector.selected_entry() == PortEntry(80, 200, "nginx")


def test_actions_are_logged(make_inspector, resolver):
    inspector = make_inspector(LISTENERS)
    inspector.start()
    inspector.refresh()
    resolver.outcome = KillOutcome.PERMISSION_DENIED
    inspector.kill()

    records = inspector.log.recent(10)

    assert [r.action for r in records] == ["scan", "refresh", "kill"]
    assert records[-1].severity == "error"
    assert records[-1].details["pid"] == 100
    assert records[-1].details["outcome"] == "permission_denied"
