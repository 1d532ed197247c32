"""
Run reporting: results.json, an HTML report, and the console summary.
"""

import html
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from itest_matrix.models import (
    EnvironmentReference,
    RunResult,
    TopologyReport,
    UnitStatus,
)

STATUS_LABELS = {
    UnitStatus.PASSED: 'PASS',
    UnitStatus.FAILED: 'FAIL',
    UnitStatus.FAILED_TOLERATED: 'FAIL (tolerated)',
}


def build_summary(
    run_result: RunResult,
    environment: Optional[EnvironmentReference],
    topology_reports: List[TopologyReport],
    total_time: float,
    results_dir: Path,
) -> Dict[str, Any]:
    """Serializable view of a run, written to results.json."""
    outcomes = run_result.outcomes
    return {
        'timestamp': datetime.now().strftime('%Y%m%d_%H%M%S'),
        'execution_dir': str(results_dir),
        'overall_status': run_result.overall_status.value,
        'environment': {
            'runtime_env': environment.runtime_env,
            'docker_repo': environment.repository_identifier,
            'docker_container': environment.image_identifier,
            'version': environment.version_tag,
        } if environment else None,
        'total_units': len(outcomes),
        'passed': len(run_result.passed),
        'failed': len(run_result.hard_failures),
        'failed_tolerated': len(run_result.tolerated_failures),
        'total_time': total_time,
        'topologies': [report.to_dict() for report in topology_reports],
        'results': [outcome.to_dict() for outcome in outcomes],
    }


def save_results(summary: Dict[str, Any], results_dir: Path) -> Path:
    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)
    results_file = results_dir / 'results.json'
    with open(results_file, 'w', encoding='utf-8') as f:
        json.dump(summary, f, indent=2, default=str)
    HTMLReportGenerator(results_dir).generate(summary, 'results.html')
    return results_file


def format_summary(run_result: RunResult, total_time: float = 0.0) -> str:
    """Human-readable summary: every unit, tolerated failures flagged apart."""
    lines = [
        '=' * 50,
        'INTEGRATION TEST MATRIX SUMMARY',
        '=' * 50,
    ]
    for kind, outcomes in run_result.per_topology.items():
        lines.append(f"[{kind.value}]")
        for outcome in outcomes:
            line = f"  {STATUS_LABELS[outcome.status]:<17} {outcome.unit.unit_id}"
            if outcome.status != UnitStatus.PASSED and outcome.detail:
                line += f" - {outcome.detail}"
            lines.append(line)

    lines.append('-' * 50)
    lines.append(f"Total Units: {len(run_result.outcomes)}")
    lines.append(f"Passed: {len(run_result.passed)}")
    lines.append(f"Failed: {len(run_result.hard_failures)}")
    lines.append(f"Failed (tolerated): {len(run_result.tolerated_failures)}")
    lines.append(f"Total Time: {total_time:.1f}s")

    if run_result.hard_failures:
        lines.append('=' * 50)
        lines.append('FAILED UNITS:')
        lines.append('=' * 50)
        for outcome in run_result.hard_failures:
            reason = outcome.reason.value if outcome.reason else 'unknown'
            lines.append(f"- {outcome.unit.unit_id}: {reason}")
            if outcome.artifact:
                lines.append(f"    artifacts: {outcome.artifact.storage_key} ({outcome.artifact.location})")
            elif outcome.log_reference:
                lines.append(f"    log: {outcome.log_reference}")

    if run_result.tolerated_failures:
        lines.append('TOLERATED FAILURES (not counted):')
        for outcome in run_result.tolerated_failures:
            lines.append(f"- {outcome.unit.unit_id}: {outcome.detail or 'failed'}")

    lines.append(f"OVERALL: {run_result.overall_status.value.upper()}")
    return '\n'.join(lines)


class HTMLReportGenerator:
    """Creates HTML reports alongside JSON summaries."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def generate(self, summary: Dict[str, Any], filename: str):
        self.output_dir.mkdir(parents=True, exist_ok=True)
        rows = []
        for result in summary.get('results', []):
            status = result.get('status', 'failed')
            row_class = {'passed': 'pass', 'failed_tolerated': 'tolerated'}.get(status, 'fail')
            artifact = result.get('artifact') or {}
            artifact_display = html.escape(artifact.get('storage_key', '')) if artifact else ''
            rows.append(
                f"<tr class='{row_class}'>"
                f"<td><strong>{html.escape(result.get('unit_id', 'n/a'))}</strong></td>"
                f"<td>{html.escape(result.get('topology') or '')}</td>"
                f"<td>{html.escape(result.get('test') or '')}</td>"
                f"<td>{result.get('duration', 0):.1f}s</td>"
                f"<td>{html.escape(status)}</td>"
                f"<td>{html.escape(result.get('reason') or '')}</td>"
                f"<td>{html.escape(result.get('detail') or '')}</td>"
                f"<td>{artifact_display}</td>"
                "</tr>"
            )
        topology_rows = []
        for report in summary.get('topologies', []):
            topology_rows.append(
                f"<li><strong>{html.escape(report.get('topology', ''))}</strong>: "
                f"{html.escape(report.get('state', ''))}"
                f"{(' - ' + html.escape(report['startup_error'])) if report.get('startup_error') else ''}"
                f"{(' (teardown: ' + html.escape(report['teardown_error']) + ')') if report.get('teardown_error') else ''}"
                "</li>"
            )
        environment = summary.get('environment') or {}
        rows_html = '\n'.join(rows)
        topologies_html = '\n'.join(topology_rows)
        html_content = f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<title>Integration Test Matrix Report</title>
<style>
body {{ font-family: Arial, sans-serif; margin: 2rem; }}
table {{ border-collapse: collapse; width: 100%; margin-top: 1rem; }}
th, td {{ border: 1px solid #ddd; padding: 8px; text-align: left; }}
th {{ background-color: #4CAF50; color: white; }}
tr.pass {{ background-color: #f6ffed; }}
tr.fail {{ background-color: #fff1f0; }}
tr.tolerated {{ background-color: #fffbe6; }}
.summary-box {{ background: #f0f0f0; padding: 1rem; border-radius: 5px; margin-bottom: 1rem; }}
.summary-box h2 {{ margin-top: 0; }}
</style>
</head>
<body>
<h1>Integration Test Matrix Report</h1>
<div class="summary-box">
<h2>Summary: {html.escape(str(summary.get('overall_status', 'n/a')).upper())}</h2>
<p><strong>Execution:</strong> {html.escape(str(summary.get('execution_dir', 'N/A')))}</p>
<p><strong>Runtime env:</strong> {html.escape(str(environment.get('runtime_env', 'N/A')))} |
   <strong>Image:</strong> {html.escape(str(environment.get('docker_repo', '')))}/{html.escape(str(environment.get('docker_container', '')))}:{html.escape(str(environment.get('version', '')))}</p>
<p><strong>Total units:</strong> {summary.get('total_units', 0)} |
   <strong>Passed:</strong> {summary.get('passed', 0)} |
   <strong>Failed:</strong> {summary.get('failed', 0)} |
   <strong>Tolerated:</strong> {summary.get('failed_tolerated', 0)} |
   <strong>Total time:</strong> {summary.get('total_time', 0):.1f}s</p>
<ul>
{topologies_html}
</ul>
</div>
<table>
<thead><tr><th>Unit</th><th>Topology</th><th>Test</th><th>Duration</th><th>Status</th><th>Reason</th><th>Detail</th><th>Artifacts</th></tr></thead>
<tbody>
{rows_html}
</tbody>
</table>
</body>
</html>"""
        report_path = self.output_dir / filename
        with open(report_path, 'w', encoding='utf-8') as handle:
            handle.write(html_content)
        latest_path = self.output_dir / 'latest_results.html'
        with open(latest_path, 'w', encoding='utf-8') as handle:
            handle.write(html_content)
