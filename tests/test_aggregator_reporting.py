#!/usr/bin/env python3
"""Unit tests for outcome aggregation and run reports"""

import json
import shutil
import sys
import unittest
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
for path in (TESTS_DIR, TESTS_DIR.parent):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from matrix_fixtures import make_environment, make_temp_dir
from itest_matrix.aggregator import aggregate
from itest_matrix.models import (
    ArtifactBundle,
    ExecutionUnit,
    FailureReason,
    RunStatus,
    TopologyKind,
    TopologyReport,
    TopologyState,
    UnitOutcome,
    UnitStatus,
)
from itest_matrix.reporting import build_summary, format_summary, save_results


def outcome(kind, test, status, reason=None, artifact=None, tolerated=False):
    unit = ExecutionUnit(topology=kind, test_identifier=test, test_prefix=kind.value, tolerated=tolerated)
    detail = None if status == UnitStatus.PASSED else 'exited with 1'
    return UnitOutcome(
        unit=unit,
        status=status,
        exit_code=0 if status == UnitStatus.PASSED else 1,
        log_reference=f"/tmp/units/{unit.unit_id}.log",
        reason=reason,
        detail=detail,
        artifact=artifact,
    )


class TestAggregate(unittest.TestCase):

    def test_empty_run_passes(self):
        result = aggregate([])
        self.assertEqual(result.overall_status, RunStatus.PASSED)
        self.assertEqual(result.outcomes, [])

    def test_tolerated_failures_do_not_fail_run(self):
        result = aggregate([
            outcome(TopologyKind.SINGLE_NODE, 'streams', UnitStatus.PASSED),
            outcome(TopologyKind.SINGLE_NODE, 'flaky', UnitStatus.FAILED_TOLERATED,
                    FailureReason.COMMAND_FAILED, tolerated=True),
        ])
        self.assertEqual(result.overall_status, RunStatus.PASSED)
        self.assertTrue(result.success)
        self.assertEqual(len(result.tolerated_failures), 1)

    def test_single_hard_failure_fails_run(self):
        result = aggregate([
            outcome(TopologyKind.SINGLE_NODE, 'streams', UnitStatus.PASSED),
            outcome(TopologyKind.CLUSTER, 'streams', UnitStatus.FAILED, FailureReason.COMMAND_FAILED),
        ])
        self.assertEqual(result.overall_status, RunStatus.FAILED)
        self.assertEqual([o.unit.unit_id for o in result.hard_failures], ['cluster_streams'])

    def test_groups_by_topology(self):
        result = aggregate([
            outcome(TopologyKind.SINGLE_NODE, 'a', UnitStatus.PASSED),
            outcome(TopologyKind.CLUSTER, 'a', UnitStatus.PASSED),
            outcome(TopologyKind.SINGLE_NODE, 'b', UnitStatus.PASSED),
        ])
        self.assertEqual(
            [o.unit.test_identifier for o in result.per_topology[TopologyKind.SINGLE_NODE]], ['a', 'b']
        )
        self.assertEqual(len(result.per_topology[TopologyKind.CLUSTER]), 1)

    def test_aggregate_is_deterministic(self):
        outcomes = [
            outcome(TopologyKind.SECURE, 'operations', UnitStatus.FAILED, FailureReason.TOPOLOGY_UNAVAILABLE),
            outcome(TopologyKind.SINGLE_NODE, 'streams', UnitStatus.PASSED),
        ]
        self.assertEqual(aggregate(outcomes), aggregate(outcomes))


class TestReporting(unittest.TestCase):

    def setUp(self):
        self.temp_dir = make_temp_dir()
        bundle = ArtifactBundle(
            unit_id='single_node_projections',
            collected_paths=('esdb_logs',),
            storage_key='esdb-logs-single-node-projections',
            location=str(self.temp_dir / 'artifacts' / 'esdb-logs-single-node-projections'),
        )
        self.result = aggregate([
            outcome(TopologyKind.SINGLE_NODE, 'streams', UnitStatus.PASSED),
            outcome(TopologyKind.SINGLE_NODE, 'projections', UnitStatus.FAILED,
                    FailureReason.COMMAND_FAILED, artifact=bundle),
            outcome(TopologyKind.SINGLE_NODE, 'flaky_reconnect', UnitStatus.FAILED_TOLERATED,
                    FailureReason.COMMAND_FAILED, tolerated=True),
        ])

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_format_summary_separates_tolerated_failures(self):
        text = format_summary(self.result, 12.5)
        self.assertIn('PASS              single_node_streams', text)
        self.assertIn('FAIL (tolerated)  single_node_flaky_reconnect', text)
        self.assertIn('FAILED UNITS:', text)
        self.assertIn('esdb-logs-single-node-projections', text)
        self.assertIn('TOLERATED FAILURES (not counted):', text)
        self.assertIn('Failed (tolerated): 1', text)
        self.assertTrue(text.endswith('OVERALL: FAILED'))

    def test_passed_summary_has_no_failure_sections(self):
        text = format_summary(aggregate([outcome(TopologyKind.CLUSTER, 'streams', UnitStatus.PASSED)]))
        self.assertNotIn('FAILED UNITS:', text)
        self.assertTrue(text.endswith('OVERALL: PASSED'))

    def test_save_results_writes_json_and_html(self):
        report = TopologyReport(kind=TopologyKind.SINGLE_NODE, state=TopologyState.TERMINATED, teardown_calls=1)
        summary = build_summary(self.result, make_environment(), [report], 3.0, self.temp_dir)
        results_file = save_results(summary, self.temp_dir)

        data = json.loads(results_file.read_text())
        self.assertEqual(data['overall_status'], 'failed')
        self.assertEqual(data['total_units'], 3)
        self.assertEqual(data['failed'], 1)
        self.assertEqual(data['failed_tolerated'], 1)
        self.assertEqual(data['environment']['version'], '23.10.0-bookworm-slim')
        self.assertEqual(data['topologies'][0]['teardown_calls'], 1)
        statuses = {r['unit_id']: r['status'] for r in data['results']}
        self.assertEqual(statuses['single_node_flaky_reconnect'], 'failed_tolerated')

        html_text = (self.temp_dir / 'results.html').read_text()
        self.assertIn('single_node_projections', html_text)
        self.assertIn('Summary: FAILED', html_text)
        self.assertTrue((self.temp_dir / 'latest_results.html').exists())


if __name__ == '__main__':
    unittest.main()
