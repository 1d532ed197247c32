"""Fold unit outcomes into a RunResult."""

from typing import Dict, Iterable, List

from itest_matrix.models import (
    RunResult,
    RunStatus,
    TopologyKind,
    UnitOutcome,
    UnitStatus,
)


def aggregate(outcomes: Iterable[UnitOutcome]) -> RunResult:
    """Group outcomes by topology and derive the overall status.

    The run fails iff some outcome is a hard failure. Tolerated failures never
    count. An empty sequence is a passed run.
    """
    per_topology: Dict[TopologyKind, List[UnitOutcome]] = {}
    failed = False
    for outcome in outcomes:
        per_topology.setdefault(outcome.unit.topology, []).append(outcome)
        if outcome.status == UnitStatus.FAILED:
            failed = True
    return RunResult(
        per_topology=per_topology,
        overall_status=RunStatus.FAILED if failed else RunStatus.PASSED,
    )
