"""Command line entry point: plan or run the integration test matrix."""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from itest_matrix.engine import MatrixEngine, count_by_status
from itest_matrix.errors import InvalidMatrixEntry, ProvisionError
from itest_matrix.provisioner import DEFAULT_RUNTIME_ENV

DEFAULT_CONFIG = 'configs/esdb_matrix.json'


def _split(value: Optional[str]):
    if not value:
        return None
    return {item.strip() for item in value.split(',') if item.strip()} or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Integration test matrix runner')
    parser.add_argument('action', choices=['plan', 'run'], help='Action to perform')
    parser.add_argument('--config', default=DEFAULT_CONFIG, help=f'Path to matrix configuration (default: {DEFAULT_CONFIG})')
    parser.add_argument('--runtime-env', default=DEFAULT_RUNTIME_ENV, help='Runtime environment channel (default: release)')
    parser.add_argument('--esdb-version', required=True, help='Database container version tag')
    parser.add_argument('--results-dir', default=None, help='Path to results directory (default: auto-generated itest-{timestamp})')
    parser.add_argument('--parallel', type=int, default=0, help='Maximum concurrent units per topology (0=use config)')
    parser.add_argument('--topologies', help='Comma separated topologies to include (e.g. single_node,cluster)')
    parser.add_argument('--tests', help='Comma separated test identifiers to include')
    parser.add_argument('--dry-run', action='store_true', help='Print the plan without executing')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        engine = MatrixEngine(
            args.config,
            args.esdb_version,
            runtime_env=args.runtime_env,
            results_dir=Path(args.results_dir) if args.results_dir else None,
            max_parallel=args.parallel,
            verbose=args.verbose,
        )
        units = engine.generate_plan(
            only_topologies=_split(args.topologies),
            only_tests=_split(args.tests),
            dry_run=args.action == 'plan' or args.dry_run,
        )
    except (InvalidMatrixEntry, FileNotFoundError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.action == 'plan' or args.dry_run:
        return 0

    with engine:
        try:
            run_result = engine.run(units)
        except ProvisionError as e:
            engine.logger.error(f"Provisioning failed: {e}")
            print(f"Provisioning failed: {e}", file=sys.stderr)
            return 1

    counts = count_by_status(run_result)
    print(
        f"\nResults: {counts['passed']}/{len(run_result.outcomes)} units passed, "
        f"{counts['failed']} failed, {counts['failed_tolerated']} tolerated"
    )
    return 0 if run_result.success else 1


if __name__ == '__main__':
    sys.exit(main())
