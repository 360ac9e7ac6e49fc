"""
Migration summary: console table and HTML report.
"""

from html import escape
from pathlib import Path

from rich.markup import escape as escape_markup
from rich.panel import Panel
from rich.table import Table
from rich import box

from pg2pg import console

OUTCOME_STYLES = {
    "verified": ("green", "✓ migrated + verified"),
    "unverified": ("yellow", "⚠ migrated, unverified"),
    "failed": ("red", "✗ failed"),
}

TUNING_STYLES = {
    "reverted": ("green", "reverted to original values"),
    "revert-failed": ("red", "REVERT FAILED — target still in fast-restore mode"),
    "disabled": ("dim", "disabled"),
    "not-applied": ("dim", "not applied"),
    "applied": ("red", "still applied"),
}


def print_summary(summary, verbose: bool = False):
    """Enumerate per-database outcome and the tuning state."""
    if summary.databases:
        table = Table(box=box.ROUNDED, show_lines=False, pad_edge=True, title="Migration Summary")
        table.add_column("Database", style="cyan", min_width=20)
        table.add_column("Outcome")
        table.add_column("Tables", justify="right", style="green")
        table.add_column("Rows", justify="right", style="yellow")
        if verbose or any(d.error for d in summary.databases.values()):
            table.add_column("Details", style="dim", max_width=60)
            with_details = True
        else:
            with_details = False

        for name, item in summary.databases.items():
            color, label = OUTCOME_STYLES.get(item.outcome, ("white", item.outcome))
            tables = rows = "-"
            if item.report is not None and item.report.tables:
                tables = str(len(item.report.tables))
                rows = f"{item.report.total_rows:,}"
            cells = [escape_markup(name), f"[{color}]{label}[/{color}]", tables, rows]
            if with_details:
                details = item.error or ""
                if not details and item.report is not None and not item.report.verified:
                    parts = []
                    if item.report.missing_on_target:
                        parts.append(f"missing: {', '.join(item.report.missing_on_target)}")
                    if item.report.extra_on_target:
                        parts.append(f"extra: {', '.join(item.report.extra_on_target)}")
                    if item.report.mismatched:
                        parts.append(f"row mismatch: {', '.join(item.report.mismatched)}")
                    details = "; ".join(parts)
                cells.append(escape_markup(details))
            table.add_row(*cells)
        console.print(table)

    color, label = TUNING_STYLES.get(summary.tuning_status, ("white", summary.tuning_status))
    console.print(f"  Target tuning: [{color}]{label}[/{color}]")

    if summary.state == "aborted":
        console.print(
            Panel(
                f"[bold red]✗ Migration aborted[/bold red] at stage [cyan]{summary.aborted_stage}[/cyan]\n"
                f"{escape_markup(str(summary.error))}\n\n"
                "[dim]Fix the problem and re-run; completed stages are skipped.[/dim]",
                border_style="red",
                padding=(1, 2),
            )
        )
    elif summary.fully_verified:
        console.print(
            Panel(
                "[bold green]✓ Migration completed successfully![/bold green]\n"
                f"[green]{len(summary.databases)} database(s) migrated and verified.[/green]",
                border_style="green",
                padding=(1, 2),
            )
        )
    else:
        console.print(
            Panel(
                "[bold yellow]⚠ Migration finished with issues[/bold yellow]\n"
                f"verified: {summary.count('verified')}, "
                f"unverified: {summary.count('unverified')}, "
                f"failed: {summary.count('failed')}\n\n"
                "[dim]Re-run to retry only the databases that did not finish.[/dim]",
                border_style="yellow",
                padding=(1, 2),
            )
        )


def generate_html_report(summary, source_uri: str, target_uri: str, path: Path) -> Path:
    """Generate a detailed HTML migration report."""
    path = Path(path)

    # CSS for a modern look
    css = """
    body { font-family: 'Inter', -apple-system, sans-serif; line-height: 1.5; color: #333; max-width: 1200px; margin: 0 auto; padding: 40px 20px; background-color: #f8f9fa; }
    h1, h2, h3 { color: #1a202c; }
    .header { border-bottom: 2px solid #e2e8f0; padding-bottom: 20px; margin-bottom: 40px; display: flex; justify-content: space-between; align-items: center; }
    .status { padding: 8px 16px; border-radius: 9999px; font-weight: 600; font-size: 0.875rem; }
    .status-pass { background-color: #c6f6d5; color: #22543d; }
    .status-warn { background-color: #feebc8; color: #744210; }
    .status-fail { background-color: #fed7d7; color: #822727; }
    .card { background: white; border-radius: 8px; box-shadow: 0 1px 3px rgba(0,0,0,0.1); padding: 24px; margin-bottom: 32px; }
    table { width: 100%; border-collapse: collapse; margin-top: 16px; }
    th { text-align: left; padding: 12px; background: #f7fafc; border-bottom: 2px solid #edf2f7; font-size: 0.75rem; text-transform: uppercase; letter-spacing: 0.05em; color: #4a5568; }
    td { padding: 12px; border-bottom: 1px solid #edf2f7; font-size: 0.875rem; }
    .table-name { font-weight: 600; color: #2d3748; }
    .src-val { color: #b7791f; }
    .dst-val { color: #2f855a; }
    .badge { padding: 2px 8px; border-radius: 4px; font-size: 0.75rem; font-weight: 600; }
    .badge-ok { background: #c6f6d5; color: #22543d; }
    .badge-err { background: #fed7d7; color: #822727; }
    .badge-warn { background: #feebc8; color: #744210; }
    """

    if summary.state == "aborted":
        status_class, status_text = "status-fail", "ABORTED"
    elif summary.fully_verified:
        status_class, status_text = "status-pass", "PASSED"
    else:
        status_class, status_text = "status-warn", "ISSUES DETECTED"

    badge_for = {"verified": "badge-ok", "unverified": "badge-warn", "failed": "badge-err"}
    tuning_color, tuning_label = TUNING_STYLES.get(summary.tuning_status, ("", summary.tuning_status))
    tuning_class = "badge-err" if tuning_color == "red" else "badge-ok"

    html = f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>Migration Report - {escape(source_uri)} to {escape(target_uri)}</title>
    <style>{css}</style>
</head>
<body>
    <div class="header">
        <div>
            <h1>Migration Report</h1>
            <p style="color: #718096; margin-top: 4px;">{escape(source_uri)} &rarr; {escape(target_uri)}</p>
        </div>
        <div class="status {status_class}">{status_text}</div>
    </div>

    <div style="display: grid; grid-template-columns: repeat(auto-fit, minmax(200px, 1fr)); gap: 20px; margin-bottom: 40px;">
        <div class="card" style="margin-bottom: 0; text-align: center;">
            <div style="color: #718096; font-size: 0.875rem;">Verified</div>
            <div style="font-size: 2rem; font-weight: 700; color: #2d3748;">{summary.count('verified')}/{len(summary.databases)}</div>
        </div>
        <div class="card" style="margin-bottom: 0; text-align: center;">
            <div style="color: #718096; font-size: 0.875rem;">Failed</div>
            <div style="font-size: 2rem; font-weight: 700; color: #2d3748;">{summary.count('failed')}</div>
        </div>
        <div class="card" style="margin-bottom: 0; text-align: center;">
            <div style="color: #718096; font-size: 0.875rem;">Target Tuning</div>
            <div style="margin-top: 12px;"><span class="badge {tuning_class}">{escape(tuning_label)}</span></div>
        </div>
    </div>
"""

    if summary.error is not None:
        html += f"""
    <div class="card" style="border-left: 4px solid #f56565;"><h3>Aborted</h3><p style="color: #c53030;">{escape(str(summary.error))}</p></div>
"""

    html += """
    <div class="card">
        <h3>Databases</h3>
        <table>
            <thead>
                <tr>
                    <th>Database</th>
                    <th>Outcome</th>
                    <th>Details</th>
                </tr>
            </thead>
            <tbody>
    """

    for name, item in summary.databases.items():
        html += f"""
                <tr>
                    <td class="table-name">{escape(name)}</td>
                    <td><span class="badge {badge_for.get(item.outcome, 'badge-warn')}">{escape(item.outcome)}</span></td>
                    <td>{escape(item.error or '')}</td>
                </tr>"""

    html += """
            </tbody>
        </table>
    </div>
    """

    for name, item in summary.databases.items():
        report = item.report
        if report is None or not (report.tables or report.missing_on_target or report.extra_on_target):
            continue
        html += f"""
    <div class="card">
        <h3>Row Count Comparison &mdash; {escape(name)}</h3>
        <table>
            <thead>
                <tr>
                    <th>Table Name</th>
                    <th>Source Count</th>
                    <th>Target Count</th>
                    <th>Status</th>
                </tr>
            </thead>
            <tbody>
    """
        rows = [(t, "?", "MISSING", "badge-err", "MISSING") for t in report.missing_on_target]
        rows += [(t, "MISSING", "?", "badge-warn", "EXTRA") for t in report.extra_on_target]
        for t, count in report.tables.items():
            rows.append((
                t,
                "-" if count.source_rows is None else str(count.source_rows),
                "-" if count.target_rows is None else str(count.target_rows),
                "badge-ok" if count.match else "badge-err",
                "OK" if count.match else "MISMATCH",
            ))
        for t, src, dst, b_class, status in rows:
            html += f"""
                <tr>
                    <td class="table-name">{escape(t)}</td>
                    <td class="src-val">{src}</td>
                    <td class="dst-val">{dst}</td>
                    <td><span class="badge {b_class}">{status}</span></td>
                </tr>"""
        html += """
            </tbody>
        </table>
    </div>
    """

    html += """
    <footer style="text-align: center; color: #a0aec0; font-size: 0.75rem; margin-top: 40px;">
        Generated by pg2pg migration tool
    </footer>
</body>
</html>
"""

    path.write_text(html)
    return path
