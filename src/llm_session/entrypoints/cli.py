# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Yakov Shkolnikov and contributors
"""CLI entrypoint for llm-session.

Usage:
    llm-session chat mlx-community/Qwen2.5-0.5B-Instruct-4bit
    llm-session generate mlx-community/Qwen2.5-0.5B-Instruct-4bit "Hello"
"""

import sys

import typer

from llm_session import __version__
from llm_session.adapters.config.logging import LogLevel, configure_logging, get_logger
from llm_session.adapters.config.settings import SessionConfig, get_settings
from llm_session.application.session import LlmSession
from llm_session.domain.errors import SessionError
from llm_session.domain.value_objects import GenerationResult, StopReason, TemplatingMode
from llm_session.ports.inbound import StreamCallbacks
from llm_session.ports.outbound import EngineLoaderPort

app = typer.Typer(
    name="llm-session",
    help="Conversational streaming generation on top of a local LLM engine",
    add_completion=False,
)


def create_loader() -> EngineLoaderPort:
    """Engine loader used by the commands (MLX, imported on demand)."""
    from llm_session.adapters.outbound.mlx_engine_adapter import MLXEngineLoader

    return MLXEngineLoader()


def _build_session(
    model: str,
    max_new_tokens: int | None,
    system_prompt: str | None,
    reasoning: bool,
    no_history: bool,
    log_level: LogLevel | None,
) -> LlmSession:
    settings = get_settings()
    level = log_level.value if log_level is not None else settings.logging.level
    configure_logging(level, settings.logging.json_output)

    overrides: dict[str, object] = {}
    if max_new_tokens is not None:
        overrides["max_new_tokens"] = max_new_tokens
    if system_prompt is not None:
        overrides["system_prompt"] = system_prompt
    if reasoning:
        overrides["templating_mode"] = TemplatingMode.REASONING
    if no_history:
        overrides["retain_history"] = False
    config = SessionConfig.model_validate({**SessionConfig.from_settings().model_dump(), **overrides})

    session = LlmSession(model, create_loader(), config=config)
    session.load()
    return session


def _print_unit(unit: str) -> None:
    sys.stdout.write(unit)
    sys.stdout.flush()


def _print_metrics(result: GenerationResult) -> None:
    decode_s = result.decode_us / 1_000_000
    rate = result.generated_tokens / decode_s if decode_s > 0 else 0.0
    typer.echo(
        f"[prompt {result.prompt_tokens} tok, prefill {result.prefill_us / 1000:.0f}ms, "
        f"{result.generated_tokens} tok @ {rate:.1f} tok/s]",
        err=True,
    )


@app.command()
def chat(
    model: str = typer.Argument(..., help="Model path or HuggingFace model ID"),
    max_new_tokens: int = typer.Option(None, "--max-new-tokens", "-n", help="Step budget per request"),
    system_prompt: str = typer.Option(None, "--system", "-s", help="System prompt"),
    reasoning: bool = typer.Option(False, "--reasoning", help="Use reasoning templating"),
    no_history: bool = typer.Option(False, "--no-history", help="Forget earlier exchanges"),
    log_level: LogLevel = typer.Option(
        None, "--log-level", "-l", case_sensitive=False, help="Log level (default: from settings)"
    ),
) -> None:
    """Interactive chat.

    Commands: /reset clears history, /debug prints the last prompt and
    response, /quit exits.
    """
    try:
        session = _build_session(model, max_new_tokens, system_prompt, reasoning, no_history, log_level)
    except SessionError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    logger = get_logger(__name__)
    callbacks = StreamCallbacks(on_unit=_print_unit, on_complete=_print_metrics)
    try:
        while True:
            try:
                prompt = input("> ")
            except EOFError:
                break
            command = prompt.strip()
            if not command:
                continue
            if command == "/quit":
                break
            if command == "/reset":
                session.clear_history()
                typer.echo("History cleared.")
                continue
            if command == "/debug":
                typer.echo(session.debug_info())
                continue

            try:
                session.submit(prompt, callbacks)
            except KeyboardInterrupt:
                session.stop_generation()
                typer.echo("\n[interrupted]", err=True)
                continue
            except SessionError as e:
                logger.error("Generation failed", kind=e.kind.value, error=str(e))
                typer.echo(f"\nError: {e}", err=True)
                continue
            typer.echo()
    finally:
        session.release()


@app.command()
def generate(
    model: str = typer.Argument(..., help="Model path or HuggingFace model ID"),
    prompt: str = typer.Argument(..., help="Prompt text"),
    max_new_tokens: int = typer.Option(None, "--max-new-tokens", "-n", help="Step budget per request"),
    system_prompt: str = typer.Option(None, "--system", "-s", help="System prompt"),
    reasoning: bool = typer.Option(False, "--reasoning", help="Use reasoning templating"),
    log_level: LogLevel = typer.Option(
        None, "--log-level", "-l", case_sensitive=False, help="Log level (default: from settings)"
    ),
) -> None:
    """Generate a single reply and exit."""
    try:
        session = _build_session(model, max_new_tokens, system_prompt, reasoning, True, log_level)
    except SessionError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    try:
        outcome = session.submit(prompt, StreamCallbacks(on_unit=_print_unit, on_complete=_print_metrics))
    except SessionError as e:
        typer.echo(f"\nError: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        session.release()

    typer.echo()
    if outcome.stop_reason is StopReason.MAX_TOKENS:
        typer.echo("[stopped at max_new_tokens]", err=True)


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"llm-session v{__version__}")


@app.command()
def config() -> None:
    """Show current configuration."""
    settings = get_settings()

    typer.echo("=" * 60)
    typer.echo("llm-session - Configuration")
    typer.echo("=" * 60)
    typer.echo()
    typer.echo("[Session]")
    typer.echo(f"  Max new tokens: {settings.session.max_new_tokens}")
    typer.echo(f"  System prompt: {settings.session.system_prompt}")
    typer.echo(f"  Retain history: {settings.session.retain_history}")
    typer.echo(f"  Templating mode: {settings.session.templating_mode.value}")
    typer.echo(f"  Mmap dir: {settings.session.mmap_dir or '(disabled)'}")
    typer.echo()
    typer.echo("[Logging]")
    typer.echo(f"  Level: {settings.logging.level}")
    typer.echo(f"  JSON output: {settings.logging.json_output}")


def main() -> None:
    """Main entrypoint for CLI."""
    app()


if __name__ == "__main__":
    main()
