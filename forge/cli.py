"""Click CLI: loads config, selects providers, runs a forge session, saves output."""

import asyncio
import logging
import signal
import sys
import uuid
from dataclasses import replace
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, SessionConfig, load_config
from forge.control import ABORT
from forge.directory import ParticipantDirectory
from forge.events import ErrorEvent, RoundCompleted, RoundStarted, SessionCompleted, Subscription
from forge.healthcheck import run_health_checks
from forge.models import Session, SessionStatus, Topic
from forge.orchestrator import RoundOrchestrator
from forge.output import output_stem, print_final, print_round_summary, save_to_file, slugify
from forge.providers.anthropic import AnthropicProvider
from forge.providers.base import AIProvider
from forge.providers.gemini import GeminiProvider
from forge.providers.openai_provider import OpenAIProvider
from forge.providers.xai import XAIProvider
from forge.serialization import load_session, save_session, truncate_rounds
from forge.topic import parse_topic_file

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

# keyed by the ``sdk`` field of each model in settings.yaml
PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "google": GeminiProvider,
    "xai": XAIProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_all_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build all available providers. Returns dict keyed by configured model name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(config.available_providers):
        model_cfg = config.models[name]
        provider_cls = PROVIDER_CLASSES.get(model_cfg.sdk)
        if provider_cls is None:
            logging.warning("Provider '%s' uses unknown sdk '%s', skipping", name, model_cfg.sdk)
            continue
        try:
            providers[name] = provider_cls(model_cfg)
        except Exception as exc:
            logging.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


def _select_models(providers: dict[str, AIProvider], models_arg: str | None) -> dict[str, AIProvider]:
    """Restrict providers to a comma-separated list of model names."""
    if not models_arg:
        return providers
    wanted = [m.strip() for m in models_arg.split(",") if m.strip()]
    unknown = [m for m in wanted if m not in providers]
    if unknown:
        console.print(f"[yellow]Unavailable models ignored:[/yellow] {', '.join(unknown)}")
    return {name: providers[name] for name in wanted if name in providers}


def _check_and_filter_providers(all_providers: dict[str, AIProvider]) -> dict[str, AIProvider]:
    """Run health checks, print results, and ask user what to do on failures.

    Returns the filtered dict of working providers. Exits if the user
    declines to continue or no providers pass.
    """
    console.print("\n[bold]Checking providers...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(all_providers))

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return all_providers

    working = {n: p for n, p in all_providers.items() if n not in failed_names}

    if not working:
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)

    console.print(
        f"\n[yellow]{len(failed_names)} provider(s) failed:[/yellow] {', '.join(failed_names)}"
    )
    console.print(f"Working providers: {', '.join(sorted(working))}")

    if not click.confirm("Continue with working providers only?", default=True):
        sys.exit(0)

    console.print()
    return working


def _session_settings(
    base: SessionConfig,
    max_rounds: int | None,
    threshold: float | None,
    serial: bool,
) -> SessionConfig:
    changes: dict = {}
    if max_rounds is not None:
        changes["max_rounds"] = max_rounds
    if threshold is not None:
        changes["convergence_threshold"] = threshold
    if serial:
        changes["parallel"] = False
    return replace(base, **changes)


def _new_session(topic: Topic, settings: SessionConfig) -> Session:
    return Session(id=uuid.uuid4().hex, name=slugify(topic.title) or "session", topic=topic, config=settings)


async def _follow(subscription: Subscription, progress: Progress, task_id) -> None:
    """Mirror bus events onto the progress display until the session completes."""
    async for event in subscription:
        if isinstance(event, RoundStarted):
            progress.update(task_id, description=f"Round {event.round_number}: {event.kind.value}...")
        elif isinstance(event, RoundCompleted):
            progress.print(
                f"[green]OK[/green] Round {event.round_number} ({event.kind.value}) complete, "
                f"{event.tokens.total} tokens"
            )
        elif isinstance(event, ErrorEvent):
            colour = "yellow" if event.recoverable else "red"
            progress.print(f"[{colour}]{event.message}[/{colour}]")
        elif isinstance(event, SessionCompleted):
            return


async def _run_session(session: Session, directory: ParticipantDirectory, config: AppConfig) -> Session:
    orchestrator = RoundOrchestrator(session, directory, config.prompts)
    subscription = orchestrator.events.subscribe()

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.commands.send, ABORT)
    except NotImplementedError:
        logger.debug("Signal handlers unsupported on this platform; Ctrl-C will not abort cleanly")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task_id = progress.add_task("Starting session...", total=None)
        follower = asyncio.create_task(_follow(subscription, progress, task_id))
        try:
            result = await orchestrator.run()
        finally:
            subscription.close()
            await follower
    return result


@click.command()
@click.argument("topic", required=False)
@click.option("--file", "topic_file", type=click.Path(exists=True), help="Read topic from .md file")
@click.option("--max-rounds", default=None, type=int, help="Round budget (default: from config)")
@click.option("--threshold", default=None, type=float, help="Convergence threshold in [0, 1]")
@click.option("--models", default=None, help="Comma-separated model names to use")
@click.option("--serial", is_flag=True, help="Call participants one at a time instead of in parallel")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--resume", "resume_file", type=click.Path(exists=True), default=None,
              help="Resume a saved session JSON file")
@click.option("--from-round", default=None, type=int,
              help="With --resume: keep rounds before this index and continue from it")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(
    topic: str | None,
    topic_file: str | None,
    max_rounds: int | None,
    threshold: float | None,
    models: str | None,
    serial: bool,
    output_path: str | None,
    resume_file: str | None,
    from_round: int | None,
    skip_health_check: bool,
    verbose: bool,
) -> None:
    """Forge -- multi-model drafting, critique and convergence.

    \b
    Examples:
      python -m forge.cli "Design a rate limiter for our public API"
      python -m forge.cli --file topic.md --max-rounds 8
      python -m forge.cli "Write a caching RFC" --models claude,openai --serial
      python -m forge.cli --resume output/session.json --from-round 3
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model responses containing
    # Unicode chars (e.g. non-breaking hyphens) don't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    if from_round is not None and not resume_file:
        console.print("[bold red]Error:[/bold red] --from-round requires --resume.")
        sys.exit(1)

    # CLI flags win; front matter only fills in when a flag is not set
    if resume_file:
        try:
            session = load_session(Path(resume_file))
            truncate_rounds(session, len(session.rounds) if from_round is None else from_round)
        except ValueError as exc:
            console.print(f"[bold red]Resume error:[/bold red] {exc}")
            sys.exit(1)
        session.config = _session_settings(session.config, max_rounds, threshold, serial)
    else:
        overrides: dict = {}
        if topic_file:
            parsed_topic, overrides = parse_topic_file(Path(topic_file))
        elif topic:
            parsed_topic = Topic(title=topic)
        else:
            console.print("[bold red]Error:[/bold red] Provide a TOPIC argument, --file, or --resume.")
            sys.exit(1)
        if models is None and "models" in overrides:
            listed = overrides["models"]
            models = ",".join(listed) if isinstance(listed, list) else str(listed)
        settings = _session_settings(
            config.session,
            max_rounds if max_rounds is not None else overrides.get("max_rounds"),
            threshold if threshold is not None else overrides.get("threshold"),
            serial,
        )
        session = _new_session(parsed_topic, settings)

    effective_output = Path(output_path) if output_path else config.defaults.output_dir

    all_providers = _select_models(_build_all_providers(config), models)
    if not all_providers:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    if not skip_health_check:
        all_providers = _check_and_filter_providers(all_providers)

    directory = ParticipantDirectory(all_providers, config.defaults.roles)

    console.print(
        f"\n[bold cyan]Forge[/bold cyan] -- {len(all_providers)} models, "
        f"up to {session.config.max_rounds} rounds"
    )
    console.print(f"Models: {', '.join(sorted(all_providers))}")
    title = session.topic.title
    console.print(f"Topic: [italic]{title[:80]}{'...' if len(title) > 80 else ''}[/italic]\n")

    result = asyncio.run(_run_session(session, directory, config))

    for rnd in result.rounds:
        print_round_summary(rnd)
    print_final(result)

    stem = output_stem(result)
    saved_md = save_to_file(result, effective_output, stem=stem)
    saved_json = save_session(result, effective_output / f"{stem}.json")
    console.print(f"\n[dim]Saved to: {saved_md} and {saved_json}[/dim]")

    if result.status is SessionStatus.ABORTED:
        sys.exit(1)


if __name__ == "__main__":
    main()
