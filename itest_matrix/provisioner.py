"""
Environment provisioning.

Maps a runtime environment selector (release channel) plus a database version
onto the docker repository/container pair every topology in the run uses.
Resolution happens once; all topology starts wait on it.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

from itest_matrix.command import run_command, substitute
from itest_matrix.errors import ProvisionError
from itest_matrix.models import EnvironmentReference


# Channel -> (docker repo, docker container)
DEFAULT_RUNTIME_ENVS: Dict[str, Dict[str, str]] = {
    'release': {
        'docker_repo': 'docker.eventstore.com/eventstore-ce',
        'docker_container': 'eventstoredb-ce',
    },
    'staging': {
        'docker_repo': 'docker.eventstore.com/eventstore-staging-ce',
        'docker_container': 'eventstoredb-ce',
    },
}

DEFAULT_RUNTIME_ENV = 'release'

DEFAULT_PROVISION_TIMEOUT = 1800.0


class EnvironmentProvisioner:
    """Resolves and caches EnvironmentReference objects for a run."""

    def __init__(
        self,
        environment_version: str,
        runtime_envs: Optional[Dict[str, Dict[str, str]]] = None,
        provision_command: Optional[Sequence[str]] = None,
        provision_timeout: float = DEFAULT_PROVISION_TIMEOUT,
        log_file: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.environment_version = (environment_version or '').strip()
        self.runtime_envs = {**DEFAULT_RUNTIME_ENVS, **(runtime_envs or {})}
        self.provision_command = list(provision_command or [])
        self.provision_timeout = provision_timeout
        self.log_file = log_file or Path('provision.log')
        self.logger = logger or logging.getLogger(__name__)
        self._cache: Dict[Tuple[str, str], EnvironmentReference] = {}
        self._lock = threading.Lock()

    def resolve(self, runtime_env_selector: Optional[str] = None) -> EnvironmentReference:
        """Return the reference for a selector, building it on first use."""
        selector = (runtime_env_selector or DEFAULT_RUNTIME_ENV).strip().lower()
        key = (selector, self.environment_version)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                return cached
            reference = self._build_reference(selector)
            self._prepare_image(reference)
            self._cache[key] = reference
            self.logger.info(f"Provisioned environment {reference.image} (runtime_env={selector})")
            return reference

    def _build_reference(self, selector: str) -> EnvironmentReference:
        channel = self.runtime_envs.get(selector)
        if channel is None:
            known = ', '.join(sorted(self.runtime_envs))
            raise ProvisionError(f"Unknown runtime environment '{selector}'. Known: {known}")
        if not self.environment_version:
            raise ProvisionError("Database version is required to provision an environment")

        repo = channel.get('docker_repo')
        container = channel.get('docker_container')
        if not repo or not container:
            raise ProvisionError(
                f"Runtime environment '{selector}' must define docker_repo and docker_container"
            )
        return EnvironmentReference(
            repository_identifier=repo,
            image_identifier=container,
            version_tag=self.environment_version,
            runtime_env=selector,
        )

    def _prepare_image(self, reference: EnvironmentReference):
        """Run the optional build/fetch command for a freshly resolved image."""
        if not self.provision_command:
            return
        cmd = substitute(self.provision_command, {
            'image': reference.image,
            'docker_repo': reference.repository_identifier,
            'docker_container': reference.image_identifier,
            'version': reference.version_tag,
        })
        try:
            result = run_command(
                cmd, self.log_file, env=reference.as_env(), timeout=self.provision_timeout
            )
        except OSError as e:
            raise ProvisionError(f"Provision command could not be launched: {e}") from e
        if result.timed_out:
            raise ProvisionError(
                f"Provision command timed out after {self.provision_timeout:.0f}s for {reference.image}"
            )
        if not result.ok:
            raise ProvisionError(
                f"Provision command exited with {result.returncode} for {reference.image}"
            )
