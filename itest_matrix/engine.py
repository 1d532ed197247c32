"""
Integration Test Matrix Engine

Runs the client library's integration tests against every configured
database topology:
- Resolve the docker image for the run once (provisioning)
- Plan one execution unit per (topology, test) pair
- Start topologies side by side and fan their units out
- Keep logs of hard failures as named artifact bundles
- Write results.json / results.html and report a binary pass/fail
"""

import atexit
import logging
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from itest_matrix.aggregator import aggregate
from itest_matrix.config_schema import (
    DEFAULT_COMMAND,
    DEFAULT_ENV,
    build_topology_specs,
    load_matrix_config,
)
from itest_matrix.diagnostics import DiagnosticsCollector
from itest_matrix.models import (
    EnvironmentReference,
    ExecutionUnit,
    RunResult,
    RunSettings,
    UnitOutcome,
    UnitStatus,
)
from itest_matrix.provisioner import DEFAULT_PROVISION_TIMEOUT, DEFAULT_RUNTIME_ENV, EnvironmentProvisioner
from itest_matrix.reporting import build_summary, format_summary, save_results
from itest_matrix.scheduler import MatrixScheduler, plan_units
from itest_matrix.topology import TopologyController, create_controller


class MatrixEngine:
    """Drives one matrix run from provisioning to the final status."""

    def __init__(
        self,
        config_path: str,
        esdb_version: str,
        runtime_env: str = DEFAULT_RUNTIME_ENV,
        results_dir: Optional[Path] = None,
        max_parallel: int = 0,
        probe: Optional[Callable[[str], bool]] = None,
        verbose: bool = False,
    ):
        self.config_path = Path(config_path)
        self.esdb_version = esdb_version
        self.runtime_env = runtime_env or DEFAULT_RUNTIME_ENV
        self.max_parallel = max_parallel
        self.probe = probe
        self.verbose = verbose

        # ./tmp/itest/itest-YYYYMMDD-HHMMSS/ unless told otherwise
        self.execution_timestamp = datetime.now().strftime('%Y%m%d-%H%M%S')
        base_dir = Path('./tmp/itest').resolve()
        self.results_dir = Path(results_dir) if results_dir else (base_dir / f'itest-{self.execution_timestamp}')
        self.results_dir.mkdir(parents=True, exist_ok=True)

        self._progress_lock = threading.Lock()
        self._completed_units = 0
        self._total_units = 0

        self._setup_logging()
        self.config = load_matrix_config(self.config_path, self.logger)
        self.specs = build_topology_specs(self.config)
        self.environment: Optional[EnvironmentReference] = None
        self.controllers: List[TopologyController] = []

        atexit.register(self._cleanup)

    def _setup_logging(self):
        """Log to <results>/itest_<timestamp>.log and, if nothing else does, stdout."""
        log_file = self.results_dir / f"itest_{self.execution_timestamp}.log"
        level = logging.DEBUG if self.verbose else logging.INFO

        self.logger = logging.getLogger('itest_matrix')
        self.logger.setLevel(level)

        for handler in self.logger.handlers[:]:
            handler.close()
            self.logger.removeHandler(handler)

        formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
        self.file_handler = logging.FileHandler(log_file)
        self.file_handler.setFormatter(formatter)
        self.file_handler.setLevel(level)
        self.logger.addHandler(self.file_handler)
        self.execution_log_file = log_file

        class ProgressAwareHandler(logging.StreamHandler):
            """StreamHandler that clears progress line before logging"""
            def __init__(self, progress_lock, stream=None):
                super().__init__(stream)
                self.progress_lock = progress_lock

            def emit(self, record):
                try:
                    with self.progress_lock:
                        self.stream.write('\r\033[K')
                        super().emit(record)
                        self.stream.flush()
                except Exception:
                    self.handleError(record)

        root_logger = logging.getLogger()
        if not root_logger.handlers:
            stdout_handler = ProgressAwareHandler(self._progress_lock, sys.stdout)
            stdout_handler.setFormatter(formatter)
            stdout_handler.setLevel(level)
            root_logger.addHandler(stdout_handler)
            root_logger.setLevel(level)

    def generate_plan(
        self,
        only_topologies: Optional[Set[str]] = None,
        only_tests: Optional[Set[str]] = None,
        dry_run: bool = False,
    ) -> List[ExecutionUnit]:
        """Expand the configured matrix into execution units."""
        units = plan_units(
            self.specs,
            include=self.config.get('include', []),
            only_topologies=only_topologies,
            only_tests=only_tests,
        )
        if dry_run:
            print(f"Dry run: planned {len(units)} execution units")
            for i, unit in enumerate(units):
                flag = ' (tolerated)' if unit.tolerated else ''
                print(f"  {i+1}: {unit.unit_id} -> {unit.test_name}{flag}")
        return units

    def provision(self) -> EnvironmentReference:
        """Resolve the environment reference; ProvisionError ends the run."""
        provision_cfg = self.config.get('provision', {})
        provisioner = EnvironmentProvisioner(
            self.esdb_version,
            runtime_envs=self.config.get('runtime_envs'),
            provision_command=provision_cfg.get('command'),
            provision_timeout=float(provision_cfg.get('timeout_seconds', DEFAULT_PROVISION_TIMEOUT)),
            log_file=self.results_dir / 'provision.log',
            logger=self.logger,
        )
        self.environment = provisioner.resolve(self.runtime_env)
        return self.environment

    def build_settings(self, environment: EnvironmentReference) -> RunSettings:
        env: Dict[str, str] = dict(DEFAULT_ENV)
        env.update({k: str(v) for k, v in self.config.get('env', {}).items()})
        max_parallel = self.max_parallel if self.max_parallel > 0 else self.config.get('max_parallel_units', 4)
        return RunSettings(
            environment=environment,
            command=tuple(self.config.get('command', DEFAULT_COMMAND)),
            base_env=env,
            command_cwd=self.config.get('command_cwd'),
            unit_timeout_seconds=float(self.config.get('unit_timeout_seconds', 1800)),
            max_parallel_units=int(max_parallel),
            results_dir=str(self.results_dir),
        )

    def run(self, units: List[ExecutionUnit]) -> RunResult:
        """Provision, run every unit, persist results, return the RunResult."""
        start_time = time.time()
        print(f"Results will be saved to: {self.results_dir.absolute()}")

        environment = self.provision()
        settings = self.build_settings(environment)

        kinds = {unit.topology for unit in units}
        topology_dir = self.results_dir / 'topologies'
        self.controllers = [
            create_controller(spec, settings, topology_dir, probe=self.probe, logger=self.logger)
            for spec in self.specs
            if spec.kind in kinds
        ]

        with self._progress_lock:
            self._completed_units = 0
            self._total_units = len(units)
        self.logger.info(
            f"Starting matrix with {len(units)} units across {len(self.controllers)} topologies, "
            f"max_parallel_units={settings.max_parallel_units}"
        )
        self._render_progress(0, len(units))

        scheduler = MatrixScheduler(
            settings,
            collector=DiagnosticsCollector(self.results_dir / 'artifacts', logger=self.logger),
            logger=self.logger,
            on_outcome=self._record_outcome,
        )
        outcomes = scheduler.schedule(self.controllers, units)
        run_result = aggregate(outcomes)

        total_time = time.time() - start_time
        print()
        summary = build_summary(
            run_result,
            environment,
            [controller.report for controller in self.controllers],
            total_time,
            self.results_dir,
        )
        results_file = save_results(summary, self.results_dir)
        self.logger.info(f"Results saved to {results_file}")
        print(format_summary(run_result, total_time))
        return run_result

    def _record_outcome(self, outcome: UnitOutcome):
        with self._progress_lock:
            self._completed_units += 1
            completed = self._completed_units
            total = self._total_units
        self._render_progress(completed, total, outcome.unit.unit_id, outcome.status.value)

    def _render_progress(self, completed: int, total: int, current_unit: Optional[str] = None, current_status: Optional[str] = None):
        """Render a progress bar with the most recently finished unit."""
        if total == 0:
            return
        bar_length = 30
        fraction = min(1.0, completed / total)
        filled = int(bar_length * fraction)
        bar = '#' * filled + '-' * (bar_length - filled)

        message = f"Progress: [{bar}] {completed}/{total} units completed"
        if current_unit:
            display_id = current_unit[:24] + "..." if len(current_unit) > 24 else current_unit
            message += f" | {display_id}"
        if current_status:
            message += f" - {current_status}"

        with self._progress_lock:
            print(f"\r\033[K{message}", end='', flush=True)

    def _cleanup(self):
        """Clean up resources on exit."""
        if hasattr(self, 'file_handler'):
            self.file_handler.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._cleanup()
        return False


def count_by_status(run_result: RunResult) -> Dict[str, int]:
    counts = {status.value: 0 for status in UnitStatus}
    for outcome in run_result.outcomes:
        counts[outcome.status.value] += 1
    return counts
