"""
Topology controllers.

One controller per deployment shape. A controller launches the shape, waits
for readiness, exposes connection parameters to the units, and tears the
shape down exactly once no matter how the units under it went.

Lifecycle:
    UNINITIALIZED -> STARTING -> READY -> RUNNING -> TEARING_DOWN -> TERMINATED
                        \\-> FAILED_START -> TEARING_DOWN -> TERMINATED
"""

import logging
import socket
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Type

from itest_matrix.command import log_to_file, run_command, substitute
from itest_matrix.errors import StartupError, StartupTimeout, TeardownFailure
from itest_matrix.models import (
    ConnectionParams,
    EnvironmentReference,
    RunSettings,
    TopologyKind,
    TopologyReport,
    TopologySpec,
    TopologyState,
)


def check_tcp_endpoint(endpoint: str, timeout: float = 5.0) -> bool:
    """Return True if host:port accepts a TCP connection."""
    host, _, port = endpoint.rpartition(':')
    if not host or not port.isdigit():
        return False
    try:
        with socket.create_connection((host, int(port)), timeout=timeout):
            return True
    except OSError:
        return False


class TopologyController:
    """Base controller. Subclasses add shape-specific launch steps."""

    def __init__(
        self,
        spec: TopologySpec,
        settings: RunSettings,
        work_dir: Path,
        probe: Optional[Callable[[str], bool]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.spec = spec
        self.settings = settings
        self.work_dir = Path(work_dir)
        self.probe = probe or check_tcp_endpoint
        self.logger = logger or logging.getLogger(__name__)
        self.state = TopologyState.UNINITIALIZED
        self.report = TopologyReport(kind=spec.kind)
        self.connection: Optional[ConnectionParams] = None
        self.service_log = self.work_dir / f"{spec.name}-service.log"
        self._lock = threading.Lock()

    @property
    def kind(self) -> TopologyKind:
        return self.spec.kind

    @property
    def is_ready(self) -> bool:
        return self.state in (TopologyState.READY, TopologyState.RUNNING)

    def _set_state(self, state: TopologyState):
        self.state = state
        self.report.state = state

    def _procedure_env(self) -> Dict[str, str]:
        env = self.settings.unit_env()
        env.update(self.spec.environment)
        return env

    def _placeholders(self) -> Dict[str, str]:
        environment = self.settings.environment
        return {
            'topology': self.spec.name,
            'image': environment.image,
            'version': environment.version_tag,
            'work_dir': str(self.work_dir),
        }

    def _run_procedure(self, label: str, procedure: Sequence[str], timeout: float):
        """Run a startup-side procedure, translating failures to StartupError."""
        cmd = substitute(procedure, self._placeholders())
        log_to_file(self.service_log, f"{label}: {' '.join(cmd)}")
        try:
            result = run_command(
                cmd,
                self.service_log,
                env=self._procedure_env(),
                cwd=self.settings.command_cwd,
                timeout=timeout,
            )
        except OSError as e:
            raise StartupError(self.spec.name, f"{label} could not be launched: {e}") from e
        if result.timed_out:
            raise StartupTimeout(self.spec.name, timeout)
        if result.returncode != 0:
            raise StartupError(self.spec.name, f"{label} exited with {result.returncode}")

    def start(self, environment: Optional[EnvironmentReference] = None) -> ConnectionParams:
        """Launch the topology and block until it is ready.

        Raises StartupError on launch failure and StartupTimeout when
        readiness is not reached in time. Either way the controller ends in
        FAILED_START and teardown is still required.
        """
        if environment is not None and environment != self.settings.environment:
            raise StartupError(self.spec.name, "environment reference does not match run settings")
        if self.state != TopologyState.UNINITIALIZED:
            raise StartupError(self.spec.name, f"cannot start from state {self.state.value}")

        self._set_state(TopologyState.STARTING)
        self.logger.info(f"Starting topology {self.spec.name}")
        start_time = time.time()
        try:
            self._bring_up(start_time)
        except StartupError as e:
            self._set_state(TopologyState.FAILED_START)
            self.report.startup_error = str(e)
            self.report.startup_duration = time.time() - start_time
            self.logger.error(f"Topology {self.spec.name} failed to start: {e}")
            raise

        self.connection = self._connection_params()
        self.report.startup_duration = time.time() - start_time
        self._set_state(TopologyState.READY)
        self.logger.info(
            f"Topology {self.spec.name} ready in {self.report.startup_duration:.1f}s"
        )
        return self.connection

    def _bring_up(self, start_time: float):
        try:
            self.work_dir.mkdir(parents=True, exist_ok=True)
            self._launch()
            self._await_ready(start_time)
        except OSError as e:
            raise StartupError(self.spec.name, f"local I/O failed during startup: {e}") from e

    def _launch(self):
        if self.spec.startup_procedure:
            self._run_procedure(
                'startup', self.spec.startup_procedure, self.spec.readiness_timeout_seconds
            )

    def _await_ready(self, start_time: float):
        """Poll every endpoint until all respond or the readiness bound expires."""
        pending = list(self.spec.endpoints)
        deadline = start_time + self.spec.readiness_timeout_seconds
        while pending:
            pending = [endpoint for endpoint in pending if not self.probe(endpoint)]
            if not pending:
                break
            if time.time() >= deadline:
                raise StartupTimeout(
                    self.spec.name, self.spec.readiness_timeout_seconds, pending
                )
            log_to_file(self.service_log, f"Waiting for {', '.join(pending)}")
            time.sleep(self.spec.readiness_interval_seconds)

    def _connection_params(self) -> ConnectionParams:
        return ConnectionParams(topology=self.kind, endpoints=self.spec.endpoints)

    def mark_running(self):
        if self.state == TopologyState.READY:
            self._set_state(TopologyState.RUNNING)

    def teardown(self) -> Optional[TeardownFailure]:
        """Release the topology. Runs at most once; failures are only logged."""
        with self._lock:
            if self.state in (
                TopologyState.UNINITIALIZED,
                TopologyState.TEARING_DOWN,
                TopologyState.TERMINATED,
            ):
                return None
            failed_start = self.state == TopologyState.FAILED_START
            self._set_state(TopologyState.TEARING_DOWN)

        self.report.teardown_calls += 1
        failure = None
        if self.spec.teardown_procedure:
            failure = self._run_teardown()

        self._set_state(TopologyState.TERMINATED)
        if failed_start:
            self.report.state = TopologyState.FAILED_START
        if failure is not None:
            self.report.teardown_error = str(failure)
            self.logger.warning(f"Teardown of {self.spec.name} failed: {failure}")
        else:
            self.logger.info(f"Topology {self.spec.name} torn down")
        return failure

    def _run_teardown(self) -> Optional[TeardownFailure]:
        cmd = substitute(self.spec.teardown_procedure, self._placeholders())
        try:
            result = run_command(
                cmd,
                self.service_log,
                env=self._procedure_env(),
                cwd=self.settings.command_cwd,
                timeout=self.spec.readiness_timeout_seconds,
            )
        except OSError as e:
            return TeardownFailure(self.spec.name, f"teardown could not be launched: {e}")
        if not result.ok:
            return TeardownFailure(self.spec.name, f"teardown exited with {result.returncode}")
        return None

    def log_paths(self) -> List[Path]:
        """Files worth keeping when a unit under this topology fails."""
        base = Path(self.settings.command_cwd) if self.settings.command_cwd else Path.cwd()
        paths = []
        if self.spec.artifacts:
            for raw in self.spec.artifacts.paths:
                path = Path(raw)
                paths.append(path if path.is_absolute() else base / path)
        paths.append(self.service_log)
        return paths

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.teardown()
        return False


class SingleNodeController(TopologyController):
    """One instance, minimal configuration."""


class SecureController(TopologyController):
    """Single instance with TLS. Certificates are generated before startup."""

    def _launch(self):
        if self.spec.certificate_procedure:
            self._run_procedure(
                'certificates',
                self.spec.certificate_procedure,
                self.spec.readiness_timeout_seconds,
            )
        super()._launch()

    def _connection_params(self) -> ConnectionParams:
        return ConnectionParams(
            topology=self.kind,
            endpoints=self.spec.endpoints,
            secure=True,
            tls_material=dict(self.spec.tls_material),
        )


class ClusterController(TopologyController):
    """N members behind one logical deployment; ready when all are reachable."""

    def _launch(self):
        if not self.spec.endpoints:
            raise StartupError(self.spec.name, "cluster topology has no members")
        super()._launch()


CONTROLLER_TYPES: Dict[TopologyKind, Type[TopologyController]] = {
    TopologyKind.SINGLE_NODE: SingleNodeController,
    TopologyKind.SECURE: SecureController,
    TopologyKind.CLUSTER: ClusterController,
}


def create_controller(
    spec: TopologySpec,
    settings: RunSettings,
    work_dir: Path,
    probe: Optional[Callable[[str], bool]] = None,
    logger: Optional[logging.Logger] = None,
) -> TopologyController:
    controller_cls = CONTROLLER_TYPES[spec.kind]
    return controller_cls(spec, settings, work_dir, probe=probe, logger=logger)
