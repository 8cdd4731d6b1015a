"""Report generator for evaluation results.

Produces markdown and JSON reports with per-group summaries, failure
breakdowns and per-run stage diagnostics.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..models import RunGroupSummary, RunOutcome


class ReportGenerator:
    """Generates evaluation reports from outcomes and group summaries."""

    def __init__(self, output_dir: str | Path) -> None:
        self._output_dir = Path(output_dir)

    def generate(
        self,
        outcomes: list[RunOutcome],
        summaries: list[RunGroupSummary],
        run_id: str,
        config_summary: dict[str, Any] | None = None,
    ) -> tuple[Path, Path]:
        """Generate both markdown and JSON reports.

        Returns:
            Tuple of (markdown_path, json_path).
        """
        self._output_dir.mkdir(parents=True, exist_ok=True)

        md_path = self._output_dir / f"{run_id}.md"
        json_path = self._output_dir / f"{run_id}.json"

        md_path.write_text(
            self._generate_markdown(outcomes, summaries, run_id, config_summary)
        )
        json_path.write_text(
            json.dumps(
                self._generate_json(outcomes, summaries, run_id, config_summary),
                indent=2,
            )
        )
        return md_path, json_path

    def _generate_markdown(
        self,
        outcomes: list[RunOutcome],
        summaries: list[RunGroupSummary],
        run_id: str,
        config_summary: dict[str, Any] | None = None,
    ) -> str:
        lines: list[str] = []
        now = datetime.now(UTC).isoformat()

        lines.append(f"# Evaluation Report: {run_id}")
        lines.append(f"\nGenerated: {now}\n")

        if config_summary:
            lines.append("## Configuration\n")
            for key, val in config_summary.items():
                lines.append(f"- **{key}**: {val}")
            lines.append("")

        lines.append("## Summary\n")
        lines.append(
            "| Task | Variant | Attempts | Passed | Pass Rate "
            "| Duration (s) | First Pass | Stopped Early |"
        )
        lines.append(
            "|------|---------|----------|--------|-----------"
            "|--------------|------------|---------------|"
        )
        for s in summaries:
            first = s.first_pass_index if s.first_pass_index is not None else "-"
            lines.append(
                f"| {s.task_name} | {s.variant_name} | {s.total_attempts} "
                f"| {s.passed_count} | {s.pass_rate:.0%} "
                f"| {s.duration.mean:.1f} "
                f"({s.duration.ci_lower:.1f}-{s.duration.ci_upper:.1f}) "
                f"| {first} | {'yes' if s.stopped_early else 'no'} |"
            )
        lines.append("")

        failing = [s for s in summaries if s.failure_breakdown or s.cancelled_count]
        if failing:
            lines.append("## Failure Breakdown\n")
            for s in failing:
                reasons = ", ".join(
                    f"{stage}: {count}" for stage, count in s.failure_breakdown.items()
                )
                if s.cancelled_count:
                    cancelled = f"{s.cancelled_count} cancelled (not attempts)"
                    reasons = f"{reasons}, {cancelled}" if reasons else cancelled
                lines.append(f"- **{s.task_name} / {s.variant_name}**: {reasons}")
            lines.append("")

        lines.append("## Runs\n")
        for o in sorted(outcomes, key=lambda o: (o.task_name, o.variant_name, o.repetition)):
            status = "PASSED" if o.passed else f"FAILED ({o.failure_stage.value})"
            lines.append(
                f"### {o.task_name} / {o.variant_name} #{o.repetition}: {status}\n"
            )
            if o.failure_detail:
                lines.append(f"- **Detail**: {o.failure_detail}")
            lines.append(f"- **Duration**: {o.duration_seconds:.1f}s")
            for stage in o.stages:
                mark = "ok" if stage.passed else "FAIL"
                exit_code = f" exit={stage.exit_code}" if stage.exit_code is not None else ""
                lines.append(
                    f"  - `{stage.label}` {mark}{exit_code} ({stage.duration_seconds:.1f}s)"
                )
                if stage.failed_assertions:
                    for name in stage.failed_assertions:
                        lines.append(f"    - {name}")
            lines.append("")

        return "\n".join(lines)

    def _generate_json(
        self,
        outcomes: list[RunOutcome],
        summaries: list[RunGroupSummary],
        run_id: str,
        config_summary: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "metadata": {
                "run_id": run_id,
                "timestamp": datetime.now(UTC).isoformat(),
                "config": config_summary or {},
            },
            "summaries": [s.to_dict() for s in summaries],
            "runs": [o.to_dict() for o in outcomes],
        }
