from typing import Dict, List, Optional, Sequence

import pytest

import portexec
from portexec import (
    ActionLog,
    KillOutcome,
    KillResult,
    PortInspector,
    PortTableBuilder,
    RawConnection,
)


def raw(port: int, pid: Optional[int], status: str = "LISTEN") -> RawConnection:
    return RawConnection(local_port=port, pid=pid, status=status)


class FakeProvider:
    """Serves queued snapshots in order, repeating the last one."""

    def __init__(self, *snapshots: Sequence[RawConnection]) -> None:
        self.snapshots: List[List[RawConnection]] = [list(s) for s in snapshots] or [[]]
        self.calls = 0

    def snapshot(self) -> List[RawConnection]:
        self.calls += 1
        if len(self.snapshots) > 1:
            return self.snapshots.pop(0)
        return list(self.snapshots[0])


class FakeResolver:
    def __init__(self, names: Optional[Dict[int, str]] = None, outcome: KillOutcome = KillOutcome.SUCCESS) -> None:
        self.names = names or {}
        self.outcome = outcome
        self.detail = ""
        self.killed: List[Optional[int]] = []

    def resolve_name(self, pid: Optional[int]) -> str:
        return self.names.get(pid, portexec.UNKNOWN_NAME)

    def kill(self, pid: Optional[int]) -> KillResult:
        self.killed.append(pid)
        return KillResult(self.outcome, self.detail)


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver({100: "sshd", 200: "nginx", 300: "postgres"})


@pytest.fixture
def make_inspector(resolver):
    def factory(*snapshots: Sequence[RawConnection]) -> PortInspector:
        provider = FakeProvider(*snapshots)
        return PortInspector(PortTableBuilder(provider, resolver), resolver, ActionLog())

    return factory
