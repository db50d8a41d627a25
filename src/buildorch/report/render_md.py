from __future__ import annotations

from typing import Any


def _cell(value: object) -> str:
    return "-" if value is None else str(value)


def render_markdown(summary: dict[str, Any]) -> str:
    pipeline = summary["pipeline"]
    stages = summary["stages"]
    problems = summary["problems"]

    lines: list[str] = []
    lines.append("# Build Report")
    lines.append("")
    lines.append("## Pipeline Overview")
    lines.append("")
    lines.append(f"- name: {pipeline['name'] or '(none)'}")
    lines.append(f"- status: **{pipeline['status']}**")
    lines.append(f"- executed: {pipeline['executed']}")
    lines.append(f"- up to date: {pipeline['skipped']}")
    if pipeline["failed_stage"] is not None:
        lines.append(f"- failed stage: `{pipeline['failed_stage']}`")
    lines.append("")
    lines.append("## Stage Results")
    lines.append("")
    lines.append("| stage | status | started | ended | duration_sec |")
    lines.append("|---|---:|---|---|---:|")
    for row in stages:
        lines.append(
            f"| {row['name']} | {row['status']} | {_cell(row['started_at'])} | "
            f"{_cell(row['ended_at'])} | {_cell(row['duration_sec'])} |"
        )
    lines.append("")
    lines.append("## Failure Details")
    lines.append("")
    if problems:
        for row in problems:
            lines.append(f"### {row['name']} ({row['status']})")
            if row["error"]:
                lines.append("```")
                lines.append(row["error"])
                lines.append("```")
            else:
                lines.append("- not started after an earlier failure")
            lines.append("")
    else:
        lines.append("No failed stages.")
        lines.append("")
    if pipeline["exit_code"] is not None:
        lines.append(f"Last process exit code: {pipeline['exit_code']}")
        lines.append("")
    return "\n".join(lines)
