"""
Rolling markdown status file, rewritten after every cycle:
  - State line (running / stopped) and session counters
  - Per-venue fetch outcomes for the last cycle
  - Approved opportunities for the last cycle
  - History of the last N cycles

mark_stopped() writes the final state so a reader can tell a clean exit
from a process that died.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field

from pipeline.orchestrator import CycleReport

RUNNING = "running"
STOPPED = "stopped"


@dataclass
class CycleSummary:
    """One cycle's row in the history table."""

    cycle: int
    timestamp: float
    markets: int
    groups: int
    opportunities: int
    approved: int
    best_margin_pct: float
    best_event: str
    next_interval_sec: float


@dataclass
class StatusWriter:
    file_path: str = "status.md"
    mode: str = "DRY-RUN"
    max_history: int = 20

    state: str = RUNNING
    _session_start: float = field(default_factory=time.time)
    _history: list[CycleSummary] = field(default_factory=list)
    _last: CycleReport | None = None
    _stop_reason: str = ""
    totals: dict = field(default_factory=lambda: {"cycles": 0, "opportunities": 0, "approved": 0, "executed": 0})

    def write_cycle(self, report: CycleReport) -> None:
        if report.skipped:
            return
        self._last = report
        self.totals["cycles"] += 1
        self.totals["opportunities"] += len(report.opportunities)
        self.totals["approved"] += len(report.approved)
        self.totals["executed"] += report.executed

        best = report.best
        self._history.append(CycleSummary(
            cycle=report.cycle,
            timestamp=report.started_at,
            markets=report.markets,
            groups=len(report.groups),
            opportunities=len(report.opportunities),
            approved=len(report.approved),
            best_margin_pct=best.profit_margin if best else 0.0,
            best_event=best.group_key if best else "",
            next_interval_sec=report.next_interval_sec,
        ))
        if len(self._history) > self.max_history:
            self._history = self._history[-self.max_history:]
        self._flush()

    def mark_stopped(self, reason: str = "shutdown") -> None:
        self.state = STOPPED
        self._stop_reason = reason
        self._flush()

    def _flush(self) -> None:
        # Replace atomically so readers never see a half-written file
        tmp = f"{self.file_path}.tmp"
        with open(tmp, "w") as f:
            f.write("\n".join(self.render()) + "\n")
        os.replace(tmp, self.file_path)

    def render(self) -> list[str]:
        uptime = _format_duration(time.time() - self._session_start)
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        state = self.state.upper() + (f" ({self._stop_reason})" if self.state == STOPPED and self._stop_reason else "")

        lines = ["# Cross-Venue Sports Arbitrage -- Status", "", f"*Updated {ts}*", ""]

        lines.append("## Current State")
        lines.append("")
        rows = [
            ["State", state],
            ["Mode", self.mode],
            ["Uptime", uptime],
            ["Cycles", str(self.totals["cycles"])],
            ["Opportunities (session)", str(self.totals["opportunities"])],
            ["Approved (session)", str(self.totals["approved"])],
            ["Executed (session)", str(self.totals["executed"])],
        ]
        if self._last is not None:
            rows.extend([
                ["Markets (last cycle)", f"{self._last.markets:,}"],
                ["Matched groups", f"{len(self._last.groups)} ({self._last.live_groups} live)"],
                ["Next interval", f"{self._last.next_interval_sec:.0f}s"],
            ])
        lines.extend(_padded_table(["Field", "Value"], rows))
        lines.append("")

        lines.append("## Venues")
        lines.append("")
        if self._last is not None and self._last.venues:
            venue_rows = []
            for outcome in self._last.venues:
                if outcome.error:
                    note = _truncate(outcome.error, 50)
                elif outcome.skipped:
                    note = f"skipped: {outcome.skipped}"
                else:
                    note = "--"
                venue_rows.append([
                    outcome.venue.value,
                    f"{outcome.markets:,}",
                    outcome.source or "none",
                    "yes" if outcome.stale else "no",
                    f"{outcome.elapsed_ms:.0f}ms",
                    note,
                ])
            lines.extend(_padded_table(["Venue", "Markets", "Source", "Stale", "Time", "Note"], venue_rows))
        else:
            lines.append("*No cycle completed yet.*")
        lines.append("")

        lines.append("## Approved This Cycle")
        lines.append("")
        if self._last is not None and self._last.approved:
            opp_rows = []
            for i, (opp, safety) in enumerate(self._last.approved, 1):
                legs = " / ".join(f"{leg.venue.value}:{leg.side.value}@{leg.price:g}" for leg in opp.legs)
                opp_rows.append([
                    str(i),
                    _truncate(opp.group_key, 40),
                    legs,
                    f"${opp.total_cost:.2f}",
                    f"${opp.net_profit:.2f}",
                    f"{opp.profit_margin:.2f}%",
                    str(len(safety.warnings)),
                ])
            lines.extend(_padded_table(["#", "Event", "Legs", "Cost", "Net", "Margin", "Warnings"], opp_rows))
        else:
            lines.append("*None.*")
        lines.append("")

        lines.append("## Recent Cycles")
        lines.append("")
        if self._history:
            history_rows = []
            for snap in reversed(self._history):
                found = snap.opportunities > 0
                history_rows.append([
                    str(snap.cycle),
                    time.strftime("%H:%M:%S", time.localtime(snap.timestamp)),
                    f"{snap.markets:,}",
                    str(snap.groups),
                    str(snap.opportunities),
                    str(snap.approved),
                    f"{snap.best_margin_pct:.2f}%" if found else "--",
                    _truncate(snap.best_event, 36) if found else "--",
                    f"{snap.next_interval_sec:.0f}s",
                ])
            lines.extend(_padded_table(
                ["Cycle", "Time", "Markets", "Groups", "Opps", "Approved", "Best", "Best Event", "Next"],
                history_rows,
            ))
        else:
            lines.append("*No history yet.*")
        lines.append("")
        return lines


def _padded_table(headers: list[str], rows: list[list[str]]) -> list[str]:
    """Markdown table with padded columns."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    def _fmt(cells: list[str]) -> str:
        return "|" + "|".join(f" {c:<{widths[i]}} " for i, c in enumerate(cells)) + "|"

    lines = [_fmt(headers), "|" + "|".join("-" * (w + 2) for w in widths) + "|"]
    lines.extend(_fmt(row) for row in rows)
    return lines


def _format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    minutes = int(seconds) // 60
    if minutes < 60:
        return f"{minutes}m {seconds - minutes * 60:.0f}s"
    return f"{minutes // 60}h {minutes % 60}m"


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."
