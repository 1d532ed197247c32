#!/usr/bin/env python3
"""
Integration tests for the matrix engine and its command line

Full runs against a matrix file whose unit command is the fake test script,
with topologies that need no external services.
"""

import io
import json
import logging
import shutil
import sys
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
for path in (TESTS_DIR, TESTS_DIR.parent):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from matrix_fixtures import FAKE_TEST_SCRIPT, always_reachable, make_temp_dir
from itest_matrix import cli
from itest_matrix.engine import MatrixEngine, count_by_status
from itest_matrix.errors import ProvisionError
from itest_matrix.models import RunStatus, TopologyKind, UnitStatus


class EngineTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = make_temp_dir()
        self.results_dir = self.temp_dir / 'results'
        logs = self.temp_dir / 'eventstore' / 'esdb_logs'
        logs.mkdir(parents=True)
        (logs / 'node.log').write_text('node log\n')

    def tearDown(self):
        logger = logging.getLogger('itest_matrix')
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
        shutil.rmtree(self.temp_dir)

    def write_config(self, fail_tests=(), **overrides):
        config = {
            'command': [sys.executable, '-c', FAKE_TEST_SCRIPT, '{test_name}'],
            'command_cwd': str(self.temp_dir),
            'env': {'FAIL_TESTS': ','.join(fail_tests)},
            'max_parallel_units': 2,
            'unit_timeout_seconds': 60,
            'topologies': {
                'single_node': {
                    'tests': ['streams', 'projections', 'auto_resub_on_connection_drop'],
                    'tolerated': ['auto_resub_on_connection_drop'],
                    'artifacts': {'name': 'esdb-logs', 'paths': ['eventstore/esdb_logs']},
                },
                'secure': {
                    'tests': ['operations'],
                    'test_prefix': 'single_node',
                    'tls': {'ca': 'certs/ca/ca.crt'},
                    'artifacts': {'name': 'esdb-logs', 'paths': ['eventstore/esdb_logs']},
                },
                'cluster': {
                    'tests': ['streams'],
                    'endpoints': ['localhost:2111', 'localhost:2112', 'localhost:2113'],
                    'artifacts': None,
                },
            },
        }
        config.update(overrides)
        path = self.temp_dir / 'matrix.json'
        path.write_text(json.dumps(config))
        return path

    def run_engine(self, config_path, **kwargs):
        engine = MatrixEngine(
            str(config_path),
            '23.10.0-bookworm-slim',
            results_dir=self.results_dir,
            probe=always_reachable,
            **kwargs
        )
        with redirect_stdout(io.StringIO()), engine:
            units = engine.generate_plan()
            return engine, engine.run(units)


class TestMatrixEngine(EngineTestCase):

    def test_full_run_with_hard_failure(self):
        config = self.write_config(fail_tests=('single_node_projections', 'single_node_auto_resub_on_connection_drop'))
        engine, result = self.run_engine(config)

        self.assertEqual(result.overall_status, RunStatus.FAILED)
        counts = count_by_status(result)
        self.assertEqual(counts, {'passed': 3, 'failed': 1, 'failed_tolerated': 1})
        self.assertEqual([b.unit_id for b in result.artifacts], ['single_node_projections'])

        data = json.loads((self.results_dir / 'results.json').read_text())
        self.assertEqual(data['overall_status'], 'failed')
        self.assertEqual(data['environment']['docker_repo'], 'docker.eventstore.com/eventstore-ce')
        self.assertEqual({t['topology']: t['teardown_calls'] for t in data['topologies']},
                         {'single_node': 1, 'secure': 1, 'cluster': 1})
        self.assertTrue((self.results_dir / 'results.html').exists())
        self.assertTrue(engine.execution_log_file.exists())

    def test_tolerated_only_failures_pass(self):
        config = self.write_config(fail_tests=('single_node_auto_resub_on_connection_drop',))
        _, result = self.run_engine(config)
        self.assertEqual(result.overall_status, RunStatus.PASSED)
        self.assertEqual(result.artifacts, [])

    def test_secure_units_receive_prefixed_name(self):
        config = self.write_config(fail_tests=('secure_operations',))
        _, result = self.run_engine(config)
        secure = result.per_topology[TopologyKind.SECURE][0]
        # the secure test runs as single_node_operations, so the failure list does not match it
        self.assertEqual(secure.status, UnitStatus.PASSED)

    def test_unused_topologies_are_not_started(self):
        config = self.write_config()
        engine = MatrixEngine(str(config), '24.2', results_dir=self.results_dir, probe=always_reachable)
        with redirect_stdout(io.StringIO()), engine:
            units = engine.generate_plan(only_topologies={'cluster'})
            result = engine.run(units)
        self.assertEqual(list(result.per_topology), [TopologyKind.CLUSTER])
        self.assertEqual([c.kind for c in engine.controllers], [TopologyKind.CLUSTER])

    def test_parallel_override(self):
        config = self.write_config()
        engine = MatrixEngine(str(config), '24.2', results_dir=self.results_dir, max_parallel=7)
        with engine:
            settings = engine.build_settings(engine.provision())
        self.assertEqual(settings.max_parallel_units, 7)
        self.assertEqual(settings.base_env['RUST_BACKTRACE'], '1')

    def test_unknown_runtime_env_aborts_run(self):
        config = self.write_config()
        engine = MatrixEngine(str(config), '24.2', runtime_env='nightly', results_dir=self.results_dir)
        with redirect_stdout(io.StringIO()), engine:
            units = engine.generate_plan()
            with self.assertRaises(ProvisionError):
                engine.run(units)
        self.assertFalse((self.results_dir / 'units').exists())


class TestCli(EngineTestCase):

    def run_cli(self, *args):
        argv = list(args) + ['--esdb-version', '23.10.0-bookworm-slim', '--results-dir', str(self.results_dir)]
        with redirect_stdout(io.StringIO()) as out, redirect_stderr(io.StringIO()) as err:
            code = cli.main(argv)
        return code, out.getvalue(), err.getvalue()

    def test_plan_lists_units(self):
        code, out, _ = self.run_cli('plan', '--config', str(self.write_config()))
        self.assertEqual(code, 0)
        self.assertIn('planned 5 execution units', out)
        self.assertIn('secure_operations -> single_node_operations', out)
        self.assertIn('(tolerated)', out)
        self.assertFalse((self.results_dir / 'units').exists())

    def test_dry_run_does_not_execute(self):
        code, _, _ = self.run_cli('run', '--dry-run', '--config', str(self.write_config()))
        self.assertEqual(code, 0)
        self.assertFalse((self.results_dir / 'results.json').exists())

    def test_hard_failure_exit_code(self):
        config = self.write_config(fail_tests=('single_node_streams',))
        code, out, _ = self.run_cli('run', '--config', str(config), '--topologies', 'single_node')
        self.assertEqual(code, 1)
        self.assertIn('OVERALL: FAILED', out)

    def test_tolerated_failure_exit_code(self):
        config = self.write_config(fail_tests=('single_node_auto_resub_on_connection_drop',))
        code, out, _ = self.run_cli('run', '--config', str(config), '--topologies', 'single-node')
        self.assertEqual(code, 0)
        self.assertIn('TOLERATED FAILURES', out)

    def test_test_filter(self):
        code, out, _ = self.run_cli('run', '--config', str(self.write_config()), '--tests', 'operations')
        self.assertEqual(code, 0)
        self.assertIn('1/1 units passed', out)

    def test_invalid_config_exit_code(self):
        config = self.write_config(topologies={'sharded': {'tests': ['streams']}})
        code, _, err = self.run_cli('plan', '--config', str(config))
        self.assertEqual(code, 1)
        self.assertIn('Configuration error', err)

    def test_unknown_test_filter_exit_code(self):
        code, _, err = self.run_cli('plan', '--config', str(self.write_config()), '--tests', 'nope')
        self.assertEqual(code, 1)
        self.assertIn('nope', err)

    def test_missing_config_exit_code(self):
        code, _, _ = self.run_cli('plan', '--config', str(self.temp_dir / 'missing.json'))
        self.assertEqual(code, 1)

    def test_unknown_runtime_env_exit_code(self):
        code, _, err = self.run_cli('run', '--config', str(self.write_config()), '--runtime-env', 'nightly')
        self.assertEqual(code, 1)
        self.assertIn('Provisioning failed', err)


if __name__ == '__main__':
    unittest.main()
