"""
Failure diagnostics.

When a unit fails hard, copy whatever logs its topology exposes (plus the
unit's own log) into a bundle directory keyed by topology and test, so
failures across the matrix never overwrite each other.
"""

import json
import logging
import shutil
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set

from itest_matrix.models import (
    ArtifactBundle,
    FailureReason,
    UnitOutcome,
    UnitStatus,
)


def slugify(value: str) -> str:
    slug = ''.join(c.lower() if c.isalnum() or c in ('-', '_') else '-' for c in str(value))
    while '--' in slug:
        slug = slug.replace('--', '-')
    return slug.strip('-') or 'value'


class DiagnosticsCollector:
    """Persists artifact bundles for hard failures under <results>/artifacts."""

    def __init__(self, artifacts_dir: Path, logger: Optional[logging.Logger] = None):
        self.artifacts_dir = Path(artifacts_dir)
        self.logger = logger or logging.getLogger(__name__)
        self.generated_keys: Set[str] = set()
        self.keys_by_unit: Dict[str, str] = {}
        self._lock = threading.Lock()

    def storage_key(self, bundle_name: str, outcome: UnitOutcome) -> str:
        """Key for a unit's bundle, unique within this collector.

        Identifiers that slugify alike get a numeric suffix; asking again for
        the same unit returns the same key.
        """
        unit = outcome.unit
        candidate = slugify(f"{bundle_name}-{unit.topology.value}-{unit.test_identifier}")
        with self._lock:
            if unit.unit_id in self.keys_by_unit:
                return self.keys_by_unit[unit.unit_id]
            final_key = candidate
            suffix = 2
            while final_key in self.generated_keys:
                final_key = f"{candidate}-{suffix}"
                suffix += 1
            self.generated_keys.add(final_key)
            self.keys_by_unit[unit.unit_id] = final_key
            return final_key

    def collect(self, outcome: UnitOutcome, topology) -> Optional[ArtifactBundle]:
        """Bundle the logs of a failed unit, or return None when policy says skip.

        Skipped for passed and tolerated units, for units that never ran
        because their topology was unavailable, and for topologies without
        artifact capture. A bundle that cannot be written is logged and
        skipped; it never fails the run.
        """
        if outcome.status != UnitStatus.FAILED:
            return None
        if outcome.reason == FailureReason.TOPOLOGY_UNAVAILABLE:
            return None
        policy = topology.spec.artifacts
        if policy is None:
            return None

        key = self.storage_key(policy.name, outcome)
        bundle_dir = self.artifacts_dir / key
        sources: List[Path] = list(topology.log_paths())
        if outcome.log_reference:
            sources.append(Path(outcome.log_reference))

        try:
            bundle_dir.mkdir(parents=True, exist_ok=True)
            collected = self._copy_sources(outcome, sources, bundle_dir)
            self._write_manifest(bundle_dir, policy.name, key, outcome, collected)
        except OSError as e:
            self.logger.error(f"Failed to write artifact bundle {key} for {outcome.unit.unit_id}: {e}")
            return None

        self.logger.info(f"Collected {len(collected)} artifact(s) for {outcome.unit.unit_id} into {bundle_dir}")
        return ArtifactBundle(
            unit_id=outcome.unit.unit_id,
            collected_paths=tuple(collected),
            storage_key=key,
            location=str(bundle_dir),
        )

    def _copy_sources(self, outcome: UnitOutcome, sources: List[Path], bundle_dir: Path) -> List[str]:
        collected = []
        for source in sources:
            if not source.exists():
                self.logger.warning(f"Artifact path missing for {outcome.unit.unit_id}: {source}")
                continue
            target = bundle_dir / source.name
            try:
                if source.is_dir():
                    if target.exists():
                        shutil.rmtree(target)
                    shutil.copytree(str(source), str(target))
                else:
                    shutil.copy2(str(source), str(target))
            except OSError as e:
                self.logger.error(f"Failed to collect {source} for {outcome.unit.unit_id}: {e}")
                continue
            collected.append(str(target))
        return collected

    @staticmethod
    def _write_manifest(bundle_dir: Path, name: str, key: str, outcome: UnitOutcome, collected: List[str]):
        manifest = {
            'name': name,
            'storage_key': key,
            'unit_id': outcome.unit.unit_id,
            'topology': outcome.unit.topology.value,
            'test': outcome.unit.test_identifier,
            'exit_code': outcome.exit_code,
            'reason': outcome.reason.value if outcome.reason else None,
            'collected_paths': collected,
            'created_at': datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ'),
        }
        with open(bundle_dir / 'manifest.json', 'w', encoding='utf-8') as handle:
            json.dump(manifest, handle, indent=2)
