"""
Value objects shared across the matrix engine.

Everything that crosses a thread boundary is a frozen dataclass: the
environment reference, the run settings, topology specs, execution units and
their outcomes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class TopologyKind(Enum):
    """Deployment shapes the engine knows how to stand up."""
    SINGLE_NODE = "single_node"
    SECURE = "secure"
    CLUSTER = "cluster"

    @classmethod
    def parse(cls, value: str) -> "TopologyKind":
        normalized = value.strip().lower().replace('-', '_')
        for kind in cls:
            if kind.value == normalized:
                return kind
        raise ValueError(f"Unknown topology kind: {value}")


class TopologyState(Enum):
    """Lifecycle of a topology controller"""
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    TEARING_DOWN = "tearing_down"
    TERMINATED = "terminated"
    FAILED_START = "failed_start"


class UnitStatus(Enum):
    """Tri-state outcome of an execution unit"""
    PASSED = "passed"
    FAILED = "failed"
    FAILED_TOLERATED = "failed_tolerated"


class FailureReason(Enum):
    """Why a unit did not pass"""
    COMMAND_FAILED = "UnitFailure"
    COMMAND_TIMEOUT = "CommandTimeout"
    LAUNCH_ERROR = "LaunchError"
    TOPOLOGY_UNAVAILABLE = "TopologyUnavailable"
    ENGINE_ERROR = "EngineError"


class RunStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"


@dataclass(frozen=True)
class EnvironmentReference:
    """Resolved deployable image shared read-only by every topology."""
    repository_identifier: str
    image_identifier: str
    version_tag: str
    runtime_env: str = "release"

    @property
    def image(self) -> str:
        return f"{self.repository_identifier}/{self.image_identifier}:{self.version_tag}"

    def as_env(self) -> Dict[str, str]:
        return {
            'ESDB_DOCKER_REPO': self.repository_identifier,
            'ESDB_DOCKER_CONTAINER': self.image_identifier,
            'ESDB_DOCKER_CONTAINER_VERSION': self.version_tag,
        }


@dataclass(frozen=True)
class ArtifactPolicy:
    """Which files to keep when a unit under a topology fails."""
    name: str = "esdb-logs"
    paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TopologySpec:
    """Declarative description of one topology in the matrix."""
    kind: TopologyKind
    tests: Tuple[str, ...] = ()
    tolerated: Tuple[str, ...] = ()
    test_prefix: str = ""
    startup_procedure: Tuple[str, ...] = ()
    teardown_procedure: Tuple[str, ...] = ()
    certificate_procedure: Tuple[str, ...] = ()
    endpoints: Tuple[str, ...] = ()
    tls_material: Dict[str, str] = field(default_factory=dict)
    environment: Dict[str, str] = field(default_factory=dict)
    readiness_timeout_seconds: float = 300.0
    readiness_interval_seconds: float = 2.0
    artifacts: Optional[ArtifactPolicy] = None

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def prefix(self) -> str:
        return self.test_prefix or self.kind.value

    @property
    def capture_artifacts(self) -> bool:
        return self.artifacts is not None


@dataclass(frozen=True)
class RunSettings:
    """Immutable per-run configuration handed to controllers and units."""
    environment: EnvironmentReference
    command: Tuple[str, ...]
    base_env: Dict[str, str] = field(default_factory=dict)
    command_cwd: Optional[str] = None
    unit_timeout_seconds: float = 1800.0
    max_parallel_units: int = 4
    results_dir: str = "."

    def unit_env(self) -> Dict[str, str]:
        env = dict(self.base_env)
        env.update(self.environment.as_env())
        return env


@dataclass(frozen=True)
class ConnectionParams:
    """What a live topology exposes to the units running against it."""
    topology: TopologyKind
    endpoints: Tuple[str, ...] = ()
    secure: bool = False
    tls_material: Dict[str, str] = field(default_factory=dict)

    def as_env(self) -> Dict[str, str]:
        env = {
            'ITEST_TOPOLOGY': self.topology.value,
            'ITEST_ENDPOINTS': ','.join(self.endpoints),
        }
        if self.secure:
            env['SECURE'] = 'true'
        for key, value in sorted(self.tls_material.items()):
            env[f"ITEST_TLS_{key.upper()}"] = value
        return env


@dataclass(frozen=True)
class ExecutionUnit:
    """One (topology, test) pair. Planned before any work is dispatched."""
    topology: TopologyKind
    test_identifier: str
    test_prefix: str
    environment_overrides: Dict[str, str] = field(default_factory=dict)
    tolerated: bool = False

    @property
    def unit_id(self) -> str:
        return f"{self.topology.value}_{self.test_identifier}"

    @property
    def test_name(self) -> str:
        return f"{self.test_prefix}_{self.test_identifier}"


@dataclass(frozen=True)
class ArtifactBundle:
    unit_id: str
    collected_paths: Tuple[str, ...]
    storage_key: str
    location: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'unit_id': self.unit_id,
            'storage_key': self.storage_key,
            'location': self.location,
            'collected_paths': list(self.collected_paths),
        }


@dataclass(frozen=True)
class UnitOutcome:
    unit: ExecutionUnit
    status: UnitStatus
    exit_code: Optional[int] = None
    log_reference: Optional[str] = None
    reason: Optional[FailureReason] = None
    duration: float = 0.0
    detail: Optional[str] = None
    artifact: Optional[ArtifactBundle] = None

    @property
    def is_hard_failure(self) -> bool:
        return self.status == UnitStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'unit_id': self.unit.unit_id,
            'topology': self.unit.topology.value,
            'test': self.unit.test_identifier,
            'test_name': self.unit.test_name,
            'tolerated': self.unit.tolerated,
            'status': self.status.value,
            'exit_code': self.exit_code,
            'reason': self.reason.value if self.reason else None,
            'duration': self.duration,
            'detail': self.detail,
            'log_file': self.log_reference,
            'artifact': self.artifact.to_dict() if self.artifact else None,
        }


@dataclass
class TopologyReport:
    """Lifecycle facts about a topology, kept alongside its unit outcomes."""
    kind: TopologyKind
    state: TopologyState = TopologyState.UNINITIALIZED
    startup_error: Optional[str] = None
    teardown_error: Optional[str] = None
    teardown_calls: int = 0
    startup_duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'topology': self.kind.value,
            'state': self.state.value,
            'startup_error': self.startup_error,
            'teardown_error': self.teardown_error,
            'teardown_calls': self.teardown_calls,
            'startup_duration': self.startup_duration,
        }


@dataclass(frozen=True)
class RunResult:
    per_topology: Dict[TopologyKind, List[UnitOutcome]]
    overall_status: RunStatus

    @property
    def outcomes(self) -> List[UnitOutcome]:
        return [o for kind in self.per_topology for o in self.per_topology[kind]]

    @property
    def passed(self) -> List[UnitOutcome]:
        return [o for o in self.outcomes if o.status == UnitStatus.PASSED]

    @property
    def hard_failures(self) -> List[UnitOutcome]:
        return [o for o in self.outcomes if o.status == UnitStatus.FAILED]

    @property
    def tolerated_failures(self) -> List[UnitOutcome]:
        return [o for o in self.outcomes if o.status == UnitStatus.FAILED_TOLERATED]

    @property
    def artifacts(self) -> List[ArtifactBundle]:
        return [o.artifact for o in self.outcomes if o.artifact is not None]

    @property
    def success(self) -> bool:
        return self.overall_status == RunStatus.PASSED
