"""
Matrix Configuration Schema and Validation

Defines the supported topology kinds, the fields each topology section may
carry, and the validators used when a matrix file is loaded. Validators
return lists of error strings so every problem in a file is reported at once.
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from itest_matrix.errors import InvalidMatrixEntry
from itest_matrix.models import ArtifactPolicy, TopologyKind, TopologySpec


@dataclass
class TopologySchema:
    """Schema for a topology section"""
    name: str
    description: str
    required_fields: List[str]
    optional_fields: List[str]


COMMON_TOPOLOGY_FIELDS = [
    'tests', 'tolerated', 'test_prefix', 'startup', 'teardown', 'endpoints',
    'env', 'readiness_timeout_seconds', 'readiness_interval_seconds',
    'artifacts', 'description',
]

TOPOLOGIES = {
    'single_node': TopologySchema(
        name='single_node',
        description='One database instance with minimal configuration',
        required_fields=['tests'],
        optional_fields=COMMON_TOPOLOGY_FIELDS,
    ),
    'secure': TopologySchema(
        name='secure',
        description='One TLS-enabled instance; certificates generated before startup',
        required_fields=['tests'],
        optional_fields=COMMON_TOPOLOGY_FIELDS + ['certificates', 'tls'],
    ),
    'cluster': TopologySchema(
        name='cluster',
        description='Multi-node cluster; ready when every member is reachable',
        required_fields=['tests', 'endpoints'],
        optional_fields=COMMON_TOPOLOGY_FIELDS,
    ),
}

SUPPORTED_TOPOLOGIES = set(TOPOLOGIES)

# Placeholders substituted into the unit command template
COMMAND_PLACEHOLDERS = {
    'test_name': '<prefix>_<test>, the argument that selects one integration test',
    'unit_id': '<topology>_<test>, unique within a run',
    'topology': 'Topology kind name',
    'test': 'Bare test identifier',
}

# {name} placeholders; ${VAR} shell syntax is left alone
PLACEHOLDER_PATTERN = re.compile(r"(?<!\$)\{(\w+)\}")

DEFAULT_COMMAND = [
    'cargo', 'test', '--package', 'eventstore', '--test', 'integration', '{test_name}'
]

DEFAULT_ENV = {
    'RUST_LOG': 'integration=debug,eventstore=debug',
    'RUST_BACKTRACE': '1',
}

MIN_CLUSTER_MEMBERS = 3

VALID_KEYS = {
    'description',
    'runtime_envs',
    'docker_repo',
    'docker_container',
    'provision',
    'command',
    'command_cwd',
    'env',
    'max_parallel_units',
    'unit_timeout_seconds',
    'topologies',
    'timeout_seconds',
    'include',
    'topology',
    'test',
    'tolerated',
} | set(COMMON_TOPOLOGY_FIELDS) | {'certificates', 'tls', 'name', 'paths'}

COMMON_TYPOS = {
    'topolgies': 'topologies',
    'toplogies': 'topologies',
    'tolerate': 'tolerated',
    'tolarated': 'tolerated',
    'endpionts': 'endpoints',
    'artefacts': 'artifacts',
    'artifact': 'artifacts',
    'teardwon': 'teardown',
    'start_up': 'startup',
    'runtime_env': 'runtime_envs',
    'max_parallel': 'max_parallel_units',
}


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def validate_topology(name: str, section: Dict[str, Any]) -> List[str]:
    """Validate one topology section

    Args:
        name: Topology kind name (section key)
        section: Topology configuration

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    if name not in TOPOLOGIES:
        errors.append(f"Unknown topology: {name}")
        errors.append(f"Supported topologies: {', '.join(sorted(SUPPORTED_TOPOLOGIES))}")
        return errors

    if not isinstance(section, dict):
        return [f"Topology '{name}' must be an object"]

    schema = TOPOLOGIES[name]
    for field_name in schema.required_fields:
        if field_name not in section:
            errors.append(f"Topology '{name}' missing required field: {field_name}")

    allowed = set(schema.required_fields) | set(schema.optional_fields)
    for field_name in section:
        if field_name not in allowed:
            errors.append(f"Topology '{name}' has unknown field: {field_name}")

    for list_field in ('tests', 'tolerated', 'startup', 'teardown', 'certificates', 'endpoints'):
        if list_field in section and not _is_str_list(section[list_field]):
            errors.append(f"Topology '{name}' field '{list_field}' must be a list of strings")

    tests = section.get('tests', [])
    if _is_str_list(tests):
        duplicates = sorted({t for t in tests if tests.count(t) > 1})
        if duplicates:
            errors.append(f"Topology '{name}' lists duplicate tests: {', '.join(duplicates)}")

    for number_field in ('readiness_timeout_seconds', 'readiness_interval_seconds'):
        value = section.get(number_field)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0):
            errors.append(f"Topology '{name}' field '{number_field}' must be a positive number")

    env = section.get('env', {})
    if not isinstance(env, dict):
        errors.append(f"Topology '{name}' field 'env' must be an object")

    tls = section.get('tls', {})
    if not isinstance(tls, dict) or not all(isinstance(v, str) for v in tls.values()):
        errors.append(f"Topology '{name}' field 'tls' must map names to path strings")

    artifacts = section.get('artifacts')
    if artifacts is not None:
        if not isinstance(artifacts, dict):
            errors.append(f"Topology '{name}' field 'artifacts' must be an object or null")
        else:
            if 'paths' in artifacts and not _is_str_list(artifacts['paths']):
                errors.append(f"Topology '{name}' artifacts.paths must be a list of strings")
            if 'name' in artifacts and (not isinstance(artifacts['name'], str) or not artifacts['name'].strip()):
                errors.append(f"Topology '{name}' artifacts.name must be a non-empty string")

    if name == 'cluster' and _is_str_list(section.get('endpoints', [])):
        if not section.get('endpoints'):
            errors.append("Topology 'cluster' needs at least one endpoint")

    return errors


def validate_matrix_entry(entry: Any) -> List[str]:
    """Validate one explicit (topology, test) entry from 'include'."""
    if not isinstance(entry, dict):
        return [f"Matrix entry must be an object, got: {type(entry).__name__}"]
    errors = []
    if not entry.get('topology'):
        errors.append(f"Matrix entry missing 'topology': {entry}")
    if not entry.get('test'):
        errors.append(f"Matrix entry missing 'test': {entry}")
    if 'tolerated' in entry and not isinstance(entry['tolerated'], bool):
        errors.append(f"Matrix entry 'tolerated' must be a boolean: {entry}")
    if 'env' in entry and not isinstance(entry['env'], dict):
        errors.append(f"Matrix entry 'env' must be an object: {entry}")
    return errors


def validate_matrix_config(config: Dict[str, Any]) -> List[str]:
    """Validate a complete matrix configuration

    Returns:
        List of validation errors (empty if valid)
    """
    errors = []

    topologies = config.get('topologies')
    if not isinstance(topologies, dict) or not topologies:
        errors.append("Configuration must define at least one topology under 'topologies'")
        topologies = {}

    for name, section in topologies.items():
        errors.extend(validate_topology(name, section))

    command = config.get('command', DEFAULT_COMMAND)
    if not _is_str_list(command) or not command:
        errors.append("'command' must be a non-empty list of strings")
    else:
        used = {match for part in command for match in PLACEHOLDER_PATTERN.findall(part)}
        unknown = sorted(used - set(COMMAND_PLACEHOLDERS))
        if unknown:
            errors.append(
                f"'command' uses unknown placeholder(s): {', '.join('{' + p + '}' for p in unknown)}; "
                f"supported: {', '.join('{' + p + '}' for p in sorted(COMMAND_PLACEHOLDERS))}"
            )
        if not used & {'test_name', 'unit_id'}:
            errors.append("'command' must reference {test_name} or {unit_id}")

    if not isinstance(config.get('env', {}), dict):
        errors.append("'env' must be an object")

    for int_field in ('max_parallel_units',):
        value = config.get(int_field)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
            errors.append(f"'{int_field}' must be a positive integer")

    timeout = config.get('unit_timeout_seconds')
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
        errors.append("'unit_timeout_seconds' must be a positive number")

    runtime_envs = config.get('runtime_envs', {})
    if not isinstance(runtime_envs, dict):
        errors.append("'runtime_envs' must be an object")
    else:
        for selector, channel in runtime_envs.items():
            if not isinstance(channel, dict) or not channel.get('docker_repo') or not channel.get('docker_container'):
                errors.append(f"Runtime environment '{selector}' must define docker_repo and docker_container")

    provision = config.get('provision', {})
    if provision:
        if not isinstance(provision, dict) or not _is_str_list(provision.get('command', [])):
            errors.append("'provision.command' must be a list of strings")
        else:
            timeout = provision.get('timeout_seconds')
            if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
                errors.append("'provision.timeout_seconds' must be a positive number")

    include = config.get('include', [])
    if not isinstance(include, list):
        errors.append("'include' must be a list of matrix entries")
    else:
        for entry in include:
            errors.extend(validate_matrix_entry(entry))

    return errors


def find_misspelled_keys(config: Dict[str, Any], logger: Optional[logging.Logger] = None) -> None:
    """Raise on well-known typos and warn about unknown keys."""
    logger = logger or logging.getLogger(__name__)

    def check_keys(obj, path=""):
        if isinstance(obj, dict):
            for key, value in obj.items():
                current_path = f"{path}.{key}" if path else key
                if key in COMMON_TYPOS:
                    raise InvalidMatrixEntry(
                        f"Possible misspelling in config at {current_path}: '{key}' should be '{COMMON_TYPOS[key]}'"
                    )
                # Free-form maps: topology names, env vars, channels, tls material
                free_form = (
                    path in ('topologies', 'runtime_envs')
                    or path.endswith('.env') or path == 'env'
                    or path.endswith('.tls')
                )
                if not free_form and key not in VALID_KEYS:
                    logger.warning(f"Unknown key in config at {current_path}: '{key}'")
                check_keys(value, current_path)
        elif isinstance(obj, list):
            for i, item in enumerate(obj):
                check_keys(item, f"{path}[{i}]")

    check_keys(config)


def load_matrix_config(config_path: Path, logger: Optional[logging.Logger] = None) -> Dict[str, Any]:
    """Load and validate a JSON matrix file."""
    logger = logger or logging.getLogger(__name__)
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            config = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidMatrixEntry(f"Configuration file {config_path} is not valid JSON: {e}") from e

    if not isinstance(config, dict):
        raise InvalidMatrixEntry(f"Configuration file {config_path} must contain a JSON object")

    find_misspelled_keys(config, logger)
    errors = validate_matrix_config(config)
    if errors:
        error_msg = "\n" + "=" * 80 + "\n"
        error_msg += "CONFIGURATION VALIDATION FAILED\n"
        error_msg += "=" * 80 + "\n"
        error_msg += "\n".join(f"  - {err}" for err in errors)
        error_msg += "\n" + "=" * 80 + "\n"
        logger.error(error_msg)
        raise InvalidMatrixEntry("Configuration validation failed: " + "; ".join(errors))

    cluster = config['topologies'].get('cluster')
    if isinstance(cluster, dict) and len(cluster.get('endpoints', [])) < MIN_CLUSTER_MEMBERS:
        logger.warning(
            f"Cluster topology has {len(cluster.get('endpoints', []))} member(s); "
            f"{MIN_CLUSTER_MEMBERS} or more is typical"
        )
    return config


def build_topology_specs(config: Dict[str, Any]) -> List[TopologySpec]:
    """Turn validated topology sections into TopologySpec objects."""
    specs = []
    for name, section in config.get('topologies', {}).items():
        kind = TopologyKind.parse(name)
        artifacts_cfg = section.get('artifacts')
        artifacts = None
        if artifacts_cfg is not None:
            artifacts = ArtifactPolicy(
                name=artifacts_cfg.get('name', 'esdb-logs'),
                paths=tuple(artifacts_cfg.get('paths', [])),
            )
        environment = {k: str(v) for k, v in section.get('env', {}).items()}
        if kind == TopologyKind.SECURE:
            environment.setdefault('SECURE', 'true')
        specs.append(TopologySpec(
            kind=kind,
            tests=tuple(section.get('tests', [])),
            tolerated=tuple(section.get('tolerated', [])),
            test_prefix=section.get('test_prefix', ''),
            startup_procedure=tuple(section.get('startup', [])),
            teardown_procedure=tuple(section.get('teardown', [])),
            certificate_procedure=tuple(section.get('certificates', [])),
            endpoints=tuple(section.get('endpoints', [])),
            tls_material={k: str(v) for k, v in section.get('tls', {}).items()},
            environment=environment,
            readiness_timeout_seconds=float(section.get('readiness_timeout_seconds', 300)),
            readiness_interval_seconds=float(section.get('readiness_interval_seconds', 2)),
            artifacts=artifacts,
        ))
    return specs
