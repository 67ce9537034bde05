"""Rich console output and markdown file save for forge sessions."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from forge.models import (
    ConvergenceRound,
    CritiqueRound,
    DraftRound,
    RefinementRound,
    Round,
    Session,
    SynthesisRound,
)

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def slugify(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(text: str, words: int = 50) -> str:
    """Return first N words of a text."""
    all_words = text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def print_round_summary(rnd: Round) -> None:
    """Print a brief summary of one round to the console."""
    console.print(Rule(f"[bold cyan]Round {rnd.number}: {rnd.kind.value.title()}[/bold cyan]"))
    footer = f"{rnd.tokens.total} tokens | ${rnd.cost_usd:.4f}"

    if isinstance(rnd, DraftRound):
        console.print(Panel(_preview(rnd.content), title=f"[bold]{rnd.drafter.display_name}[/bold]",
                            subtitle=footer, border_style="dim"))
    elif isinstance(rnd, CritiqueRound):
        table = Table(show_header=True, header_style="bold")
        table.add_column("Critic")
        table.add_column("Score", justify="right")
        table.add_column("Strengths", justify="right")
        table.add_column("Weaknesses", justify="right")
        table.add_column("Suggestions", justify="right")
        for c in rnd.critiques:
            table.add_row(c.critic.display_name, str(c.score), str(len(c.strengths)),
                          str(len(c.weaknesses)), str(len(c.suggestions)))
        console.print(table)
        console.print(Text(footer, style="dim"))
    elif isinstance(rnd, SynthesisRound):
        body = "\n".join(f"- {change}" for change in rnd.changes) or _preview(rnd.content)
        subtitle = f"{len(rnd.resolved_conflicts)} conflicts resolved | {footer}"
        console.print(Panel(body, title=f"[bold]{rnd.synthesizer.display_name}[/bold]",
                            subtitle=subtitle, border_style="dim"))
    elif isinstance(rnd, RefinementRound):
        console.print(Panel(_preview(rnd.content),
                            title=f"[bold]{rnd.refiner.display_name}[/bold] focus: {rnd.focus_area} (depth {rnd.depth})",
                            subtitle=footer, border_style="dim"))
    elif isinstance(rnd, ConvergenceRound):
        style = "green" if rnd.converged else "yellow"
        verdict = "converged" if rnd.converged else "not converged"
        agrees = sum(1 for v in rnd.votes if v.agrees)
        console.print(Text(
            f"Score {rnd.score:.3f} ({verdict}) | {agrees}/{len(rnd.votes)} agree | trend {rnd.trend}"
            + (" | stalled" if rnd.stalled else ""),
            style=style,
        ))
        for issue in rnd.remaining_issues:
            console.print(f"  [dim]- {issue}[/dim]")


def print_final(session: Session) -> None:
    """Print the final artifact to the console using Rich markdown."""
    console.print(Rule("[bold green]Final Artifact[/bold green]"))
    reason = session.terminal_reason.value if session.terminal_reason else "unknown"
    console.print(
        Text(
            f"Status: {session.status.value} ({reason}) | "
            f"Rounds: {len(session.rounds)} | "
            f"Tokens: {session.total_tokens.total} | "
            f"Cost: ${session.total_cost_usd:.4f}",
            style="dim",
        )
    )
    if session.final_content:
        console.print(Markdown(session.final_content))
    else:
        console.print("[yellow]No artifact was produced.[/yellow]")


def _round_markdown(rnd: Round) -> list[str]:
    lines = [f"## Round {rnd.number}: {rnd.kind.value.title()}", ""]
    if isinstance(rnd, DraftRound):
        lines += [f"*Drafted by {rnd.drafter.display_name} ({rnd.drafter.model_id})*", "", rnd.content, ""]
    elif isinstance(rnd, CritiqueRound):
        for c in rnd.critiques:
            lines += [f"### {c.critic.display_name} ({c.critic.model_id}): {c.score}/100", ""]
            lines += [f"- **Strength:** {s}" for s in c.strengths]
            lines += [f"- **Weakness:** {w}" for w in c.weaknesses]
            for s in c.suggestions:
                where = f" [{s.section}]" if s.section else ""
                lines.append(f"- **Suggestion** (P{s.priority}, {s.category.value}){where}: {s.text}")
            lines.append("")
    elif isinstance(rnd, SynthesisRound):
        lines += [f"*Synthesized by {rnd.synthesizer.display_name} ({rnd.synthesizer.model_id})*", ""]
        if rnd.resolved_conflicts:
            lines += ["### Resolved conflicts", ""]
            lines += [
                f"- **{r.issue}** ({r.strategy.value}): {r.resolution} *{r.rationale}*"
                for r in rnd.resolved_conflicts
            ]
            lines.append("")
        if rnd.changes:
            lines += ["### Changes", ""] + [f"- {change}" for change in rnd.changes] + [""]
        lines += [rnd.content, ""]
    elif isinstance(rnd, RefinementRound):
        lines += [
            f"*Refined by {rnd.refiner.display_name}, focus: {rnd.focus_area}, depth {rnd.depth}*",
            "",
            rnd.content,
            "",
        ]
    elif isinstance(rnd, ConvergenceRound):
        lines += [f"**Score:** {rnd.score:.3f} | **Converged:** {'yes' if rnd.converged else 'no'} | "
                  f"**Trend:** {rnd.trend}", ""]
        for name, value in rnd.metrics.items():
            lines.append(f"- {name}: {value:.3f}")
        for v in rnd.votes:
            verdict = "AGREE" if v.agrees else "DISAGREE"
            lines.append(f"- {v.participant.display_name}: {verdict} ({v.score}/100)")
        if rnd.remaining_issues:
            lines += ["", "### Remaining issues", ""] + [f"- {issue}" for issue in rnd.remaining_issues]
        lines.append("")
    lines.append(f"*Tokens: {rnd.tokens.total} | Cost: ${rnd.cost_usd:.4f}*")
    lines.append("")
    return lines


def render_markdown(session: Session) -> str:
    """Full session transcript as a Markdown document."""
    participants = ", ".join(f"{p.display_name} ({p.role.value})" for p in session.participants)
    reason = session.terminal_reason.value if session.terminal_reason else "n/a"
    lines: list[str] = [
        f"# Forge Session: {session.topic.title[:80]}",
        "",
        f"**Date:** {session.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Participants:** {participants}",
        f"**Status:** {session.status.value} ({reason})",
        f"**Rounds:** {len(session.rounds)}",
        f"**Tokens:** {session.total_tokens.total} "
        f"({session.total_tokens.input} in / {session.total_tokens.output} out)",
        f"**Cost:** ${session.total_cost_usd:.4f}",
        "",
        "---",
        "",
    ]
    if session.topic.description:
        lines += ["## Topic", "", session.topic.description, ""]
    for rnd in session.rounds:
        lines += _round_markdown(rnd)
    lines += ["## Final Artifact", "", session.final_content or "*No artifact was produced.*", ""]
    return "\n".join(lines)


def output_stem(session: Session) -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{timestamp}_{slugify(session.topic.title) or session.id[:8]}"


def save_to_file(session: Session, output_dir: Path, stem: str | None = None) -> Path:
    """Save the full session transcript as a markdown file.

    Args:
        session: The finished session.
        output_dir: Directory to save the file in.
        stem: Filename stem; derived from a timestamp and the topic when omitted.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / f"{stem or output_stem(session)}.md"
    filepath.write_text(render_markdown(session), encoding="utf-8")
    logger.info("Session saved to: %s", filepath)
    return filepath
