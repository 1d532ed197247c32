"""
Matrix planning and execution.

Planning turns the declarative topology x test matrix into an explicit list
of ExecutionUnit objects and rejects bad entries before anything runs.
Execution fans the units out: topologies run side by side, and units within
a topology run on a bounded pool where one failure never cancels siblings.
"""

import concurrent.futures
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from itest_matrix.command import log_to_file, run_command, substitute
from itest_matrix.diagnostics import DiagnosticsCollector
from itest_matrix.errors import InvalidMatrixEntry, StartupError
from itest_matrix.models import (
    ExecutionUnit,
    FailureReason,
    RunSettings,
    TopologyKind,
    TopologySpec,
    UnitOutcome,
    UnitStatus,
)
from itest_matrix.topology import TopologyController


def build_test_index(specs: Iterable[TopologySpec]) -> Dict[str, Set[TopologyKind]]:
    """Lookup table from test identifier to the topology kinds that run it."""
    index: Dict[str, Set[TopologyKind]] = {}
    for spec in specs:
        for test in spec.tests:
            index.setdefault(test, set()).add(spec.kind)
    return index


def plan_units(
    specs: Sequence[TopologySpec],
    include: Sequence[Dict[str, Any]] = (),
    only_topologies: Optional[Set[str]] = None,
    only_tests: Optional[Set[str]] = None,
) -> List[ExecutionUnit]:
    """Expand the matrix into execution units.

    Args:
        specs: One spec per topology kind; each lists its assigned tests.
        include: Explicit extra (topology, test) entries, each a dict with
            'topology', 'test' and optional 'tolerated' / 'env'.
        only_topologies: Restrict the plan to these topology names.
        only_tests: Restrict the plan to these test identifiers.

    Raises:
        InvalidMatrixEntry: for unknown or unassigned topologies, duplicate
            pairs, tolerated tests outside their topology, or filters that
            match nothing.
    """
    by_kind: Dict[TopologyKind, TopologySpec] = {}
    for spec in specs:
        if spec.kind in by_kind:
            raise InvalidMatrixEntry(f"Topology '{spec.name}' is defined more than once")
        by_kind[spec.kind] = spec

    index = build_test_index(specs)
    planned: List[ExecutionUnit] = []
    seen: Set[str] = set()

    def add(unit: ExecutionUnit):
        if unit.unit_id in seen:
            raise InvalidMatrixEntry(
                f"Duplicate matrix entry: topology '{unit.topology.value}', test '{unit.test_identifier}'"
            )
        seen.add(unit.unit_id)
        planned.append(unit)

    for spec in specs:
        unknown_tolerated = set(spec.tolerated) - set(spec.tests)
        if unknown_tolerated:
            raise InvalidMatrixEntry(
                f"Tolerated test(s) not assigned to topology '{spec.name}': "
                f"{', '.join(sorted(unknown_tolerated))}"
            )
        for test in spec.tests:
            add(ExecutionUnit(
                topology=spec.kind,
                test_identifier=test,
                test_prefix=spec.prefix,
                environment_overrides=dict(spec.environment),
                tolerated=test in spec.tolerated,
            ))

    for entry in include:
        topology_name = str(entry.get('topology', ''))
        test = str(entry.get('test', '')).strip()
        if not test:
            raise InvalidMatrixEntry(f"Matrix entry without a test identifier: {entry}")
        try:
            kind = TopologyKind.parse(topology_name)
        except ValueError as e:
            raise InvalidMatrixEntry(f"Test '{test}': {e}") from e
        spec = by_kind.get(kind)
        if spec is None:
            raise InvalidMatrixEntry(
                f"Test '{test}' has no matching topology assignment ('{kind.value}' is not configured)"
            )
        index.setdefault(test, set()).add(kind)
        overrides = dict(spec.environment)
        overrides.update({k: str(v) for k, v in entry.get('env', {}).items()})
        add(ExecutionUnit(
            topology=kind,
            test_identifier=test,
            test_prefix=spec.prefix,
            environment_overrides=overrides,
            tolerated=bool(entry.get('tolerated', False)),
        ))

    wanted: Set[TopologyKind] = set(by_kind)
    if only_topologies:
        wanted = set()
        for name in only_topologies:
            try:
                kind = TopologyKind.parse(name)
            except ValueError as e:
                raise InvalidMatrixEntry(str(e)) from e
            if kind not in by_kind:
                raise InvalidMatrixEntry(f"Topology '{kind.value}' is not configured")
            wanted.add(kind)
        planned = [unit for unit in planned if unit.topology in wanted]

    if only_tests:
        missing = sorted(test for test in only_tests if not index.get(test, set()) & wanted)
        if missing:
            raise InvalidMatrixEntry(
                f"Test(s) with no matching topology assignment: {', '.join(missing)}"
            )
        planned = [unit for unit in planned if unit.test_identifier in only_tests]

    return planned


class MatrixScheduler:
    """Runs planned units against their topology controllers."""

    def __init__(
        self,
        settings: RunSettings,
        collector: Optional[DiagnosticsCollector] = None,
        logger: Optional[logging.Logger] = None,
        on_outcome: Optional[Callable[[UnitOutcome], None]] = None,
    ):
        self.settings = settings
        self.results_dir = Path(settings.results_dir)
        self.units_dir = self.results_dir / 'units'
        self.collector = collector or DiagnosticsCollector(self.results_dir / 'artifacts')
        self.logger = logger or logging.getLogger(__name__)
        self.on_outcome = on_outcome

    def schedule(
        self,
        controllers: Sequence[TopologyController],
        units: Sequence[ExecutionUnit],
    ) -> List[UnitOutcome]:
        """Execute every unit and return outcomes in planned order.

        Controllers that are not yet started are started here. Each
        controller is torn down once all of its units have finished, whatever
        their outcome. A controller that fails to start yields failed
        outcomes with reason TopologyUnavailable for all of its units.
        """
        by_kind = {controller.kind: controller for controller in controllers}
        grouped: Dict[TopologyKind, List[ExecutionUnit]] = {}
        for unit in units:
            if unit.topology not in by_kind:
                raise InvalidMatrixEntry(
                    f"Test '{unit.test_identifier}' has no matching topology assignment "
                    f"('{unit.topology.value}' has no controller)"
                )
            grouped.setdefault(unit.topology, []).append(unit)

        if not grouped:
            self.logger.warning("No units to execute.")
            return []

        outcomes: Dict[str, UnitOutcome] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(grouped)) as executor:
            future_to_kind = {
                executor.submit(self._run_topology, by_kind[kind], group): kind
                for kind, group in grouped.items()
            }
            for future in concurrent.futures.as_completed(future_to_kind):
                for outcome in future.result():
                    outcomes[outcome.unit.unit_id] = outcome

        return [outcomes[unit.unit_id] for unit in units]

    def _run_topology(
        self,
        controller: TopologyController,
        units: List[ExecutionUnit],
    ) -> List[UnitOutcome]:
        with controller:
            if not controller.is_ready:
                try:
                    controller.start()
                except StartupError as e:
                    return [self._unavailable(unit, str(e)) for unit in units]

            controller.mark_running()
            results = []
            max_workers = max(1, min(self.settings.max_parallel_units, len(units)))
            with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = [executor.submit(self._run_unit, unit, controller) for unit in units]
                for future in concurrent.futures.as_completed(futures):
                    results.append(future.result())
            return results

    def _unavailable(self, unit: ExecutionUnit, error: str) -> UnitOutcome:
        outcome = UnitOutcome(
            unit=unit,
            status=UnitStatus.FAILED,
            reason=FailureReason.TOPOLOGY_UNAVAILABLE,
            detail=error,
        )
        self.logger.error(f"Unit {unit.unit_id} not dispatched: topology unavailable ({error})")
        self._notify(outcome)
        return outcome

    def _unit_env(self, unit: ExecutionUnit, controller: TopologyController, unit_dir: Path) -> Dict[str, str]:
        env = self.settings.unit_env()
        if controller.connection is not None:
            env.update(controller.connection.as_env())
        env.update(unit.environment_overrides)
        env['ITEST_UNIT_ID'] = unit.unit_id
        env['ITEST_UNIT_DIR'] = str(unit_dir)
        return env

    def _run_unit(self, unit: ExecutionUnit, controller: TopologyController) -> UnitOutcome:
        """Run one unit; errors inside the engine become a failed outcome for that unit only."""
        try:
            outcome = self._execute_unit(unit, controller)
        except Exception as e:
            self.logger.error(f"Unit {unit.unit_id} could not be executed: {e}", exc_info=True)
            outcome = UnitOutcome(
                unit=unit,
                status=UnitStatus.FAILED,
                reason=FailureReason.ENGINE_ERROR,
                detail=f"{type(e).__name__}: {e}",
            )
        self._notify(outcome)
        return outcome

    def _execute_unit(self, unit: ExecutionUnit, controller: TopologyController) -> UnitOutcome:
        unit_dir = self.units_dir / unit.unit_id
        unit_dir.mkdir(parents=True, exist_ok=True)
        log_file = self.units_dir / f"{unit.unit_id}.log"
        log_to_file(log_file, f"Starting unit {unit.unit_id} ({unit.test_name})")

        cmd = substitute(self.settings.command, {
            'test_name': unit.test_name,
            'unit_id': unit.unit_id,
            'topology': unit.topology.value,
            'test': unit.test_identifier,
        })
        cwd = Path(self.settings.command_cwd) if self.settings.command_cwd else unit_dir

        start_time = time.time()
        exit_code: Optional[int] = None
        reason: Optional[FailureReason] = None
        detail: Optional[str] = None
        try:
            result = run_command(
                cmd,
                log_file,
                env=self._unit_env(unit, controller, unit_dir),
                cwd=cwd,
                timeout=self.settings.unit_timeout_seconds,
            )
            exit_code = result.returncode
            if result.timed_out:
                reason = FailureReason.COMMAND_TIMEOUT
                detail = f"timed out after {self.settings.unit_timeout_seconds:.0f}s"
            elif result.returncode != 0:
                reason = FailureReason.COMMAND_FAILED
                detail = f"exited with {result.returncode}"
        except OSError as e:
            reason = FailureReason.LAUNCH_ERROR
            detail = f"command could not be launched: {e}"
            log_to_file(log_file, detail)

        if reason is None:
            status = UnitStatus.PASSED
        elif unit.tolerated:
            status = UnitStatus.FAILED_TOLERATED
        else:
            status = UnitStatus.FAILED

        outcome = UnitOutcome(
            unit=unit,
            status=status,
            exit_code=exit_code,
            log_reference=str(log_file),
            reason=reason,
            duration=time.time() - start_time,
            detail=detail,
        )
        log_to_file(log_file, f"Unit {unit.unit_id} {status.value} ({outcome.duration:.1f}s)")

        if status == UnitStatus.FAILED:
            bundle = self.collector.collect(outcome, controller)
            if bundle is not None:
                outcome = replace(outcome, artifact=bundle)
            self.logger.warning(f"Unit {unit.unit_id} FAILED - {detail}")
        elif status == UnitStatus.FAILED_TOLERATED:
            self.logger.warning(f"Unit {unit.unit_id} failed (tolerated) - {detail}")
        else:
            self.logger.info(f"Unit {unit.unit_id} passed ({outcome.duration:.1f}s)")
        return outcome

    def _notify(self, outcome: UnitOutcome):
        if self.on_outcome is not None:
            self.on_outcome(outcome)
