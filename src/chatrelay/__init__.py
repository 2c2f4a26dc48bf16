"""chatrelay - Branching conversations with web chat models, over HTTP and the command line."""

import asyncio
import logging
from pathlib import Path

import click
from click_default_group import DefaultGroup
import uvicorn

from .config import Config, get_config_paths, load_config
from .errors import LLMError, describe

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _load(config_path: Path | None) -> Config:
    paths = get_config_paths()
    if config_path is not None:
        paths.append(config_path)
    return load_config(paths)


def _run(config: Config, operation):
    """Install the configured backends, run ``operation(registry)`` and stop them.

    Backend failures are printed as localized messages and exit with status 1.
    """
    from .backends.registry import ProviderRegistry, install_backends

    async def main_async():
        registry = ProviderRegistry()
        await install_backends(registry, config)
        try:
            if not registry.names():
                click.echo("Error: no provider could be started, check your configuration", err=True)
                raise SystemExit(1)
            return await operation(registry)
        finally:
            await registry.shutdown()

    try:
        return asyncio.run(main_async())
    except LLMError as e:
        click.echo(f"Error: {describe(e, config.conversation.locale)}", err=True)
        raise SystemExit(1)
    except (NotImplementedError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Extra config file, overriding the default locations",
)

provider_option = click.option(
    "--provider",
    type=str,
    default=None,
    help="Provider to use (default: the configured or first available provider)",
)


@click.group(cls=DefaultGroup, default="serve", default_if_no_args=True)
@click.version_option(__version__, "-v", "--version")
def main() -> None:
    """chatrelay - Branching conversations with web chat models.

    When run without a subcommand, starts the HTTP API server.
    """
    pass


@main.command()
@click.option(
    "--port",
    "-p",
    type=int,
    default=None,
    help="Port to run the server on (default: 8765)",
)
@click.option(
    "--host",
    type=str,
    default=None,
    help="Host to bind to (default: 127.0.0.1)",
)
@click.option(
    "--debug",
    is_flag=True,
    help="Enable debug logging",
)
@config_option
def serve(port: int | None, host: str | None, debug: bool, config_path: Path | None) -> None:
    """Start the HTTP API server."""
    config = _load(config_path)

    # CLI arguments take precedence over config file values
    if port is not None:
        config.serve.port = port
    if host is not None:
        config.serve.host = host
    if debug:
        config.serve.debug = True

    _configure_logging(config.serve.debug)

    from . import server

    server.set_config(config)

    click.echo(f"Server running at http://{config.serve.host}:{config.serve.port}")
    uvicorn.run(
        server.app,
        host=config.serve.host,
        port=config.serve.port,
        log_level="debug" if config.serve.debug else "warning",
    )


@main.command()
@config_option
@click.option("--debug", is_flag=True, help="Enable debug logging")
def providers(config_path: Path | None, debug: bool) -> None:
    """List the providers that start with the current configuration."""
    _configure_logging(debug)
    config = _load(config_path)

    async def operation(registry):
        return registry.names()

    names = _run(config, operation)
    for i, name in enumerate(names):
        suffix = " (default)" if i == 0 else ""
        click.echo(f"{name}{suffix}")


@main.command()
@click.argument("prompt", type=str)
@provider_option
@click.option("--model", "-m", type=str, default=None, help="Model (or tone) for a new conversation")
@click.option(
    "--conversation",
    "-c",
    "conversation_id",
    type=str,
    default=None,
    help="Continue an existing conversation instead of starting a new one",
)
@config_option
@click.option("--debug", is_flag=True, help="Enable debug logging")
def ask(
    prompt: str,
    provider: str | None,
    model: str | None,
    conversation_id: str | None,
    config_path: Path | None,
    debug: bool,
) -> None:
    """Ask a single prompt and print the answer.

    The conversation id is printed to stderr so it can be passed to
    --conversation for a follow-up.

    Example:
        chatrelay ask "What is a ChainMap?"
        chatrelay ask -c 51D|BingProd|... "Show an example"
    """
    _configure_logging(debug)
    config = _load(config_path)
    provider = provider or config.conversation.provider

    async def operation(registry):
        from .conversation import ConversationOptions

        if conversation_id is not None:
            conversation = await registry.query(conversation_id, provider)
            if conversation is None:
                click.echo(f"Error: conversation not found: {conversation_id}", err=True)
                raise SystemExit(1)
        else:
            conversation = await registry.create(
                ConversationOptions(
                    model=model,
                    provider=provider,
                    initial_prompts=list(config.conversation.initial_prompts),
                )
            )
            if conversation is None:
                click.echo(f"Error: provider not available: {provider}", err=True)
                raise SystemExit(1)
        return await conversation.ask(prompt)

    conversation = _run(config, operation)
    click.echo(conversation.latest.text)
    if conversation.id is not None:
        click.echo(f"[conversation {conversation.id}]", err=True)


REPL_HELP = """Commands:
  /retry     ask for another answer to the last prompt
  /continue  continue a truncated answer
  /edit TEXT replace the last prompt
  /quit      leave the chat"""


@main.command()
@provider_option
@click.option("--model", "-m", type=str, default=None, help="Model (or tone) for the conversation")
@config_option
@click.option("--debug", is_flag=True, help="Enable debug logging")
def chat(provider: str | None, model: str | None, config_path: Path | None, debug: bool) -> None:
    """Start an interactive chat."""
    _configure_logging(debug)
    config = _load(config_path)
    provider = provider or config.conversation.provider

    async def operation(registry):
        from .conversation import ConversationOptions

        conversation = await registry.create(
            ConversationOptions(
                model=model,
                provider=provider,
                initial_prompts=list(config.conversation.initial_prompts),
            )
        )
        if conversation is None:
            click.echo(f"Error: provider not available: {provider}", err=True)
            raise SystemExit(1)
        click.echo(f"Chatting with {conversation.backend.name}. Type /help for commands.")

        while True:
            line = await asyncio.to_thread(click.prompt, "You", prompt_suffix="> ")
            line = line.strip()
            if not line:
                continue
            if line in ("/quit", "/exit"):
                return conversation
            if line == "/help":
                click.echo(REPL_HELP)
                continue

            try:
                if line == "/retry":
                    conversation = await conversation.retry()
                elif line == "/continue":
                    conversation = await conversation.continue_()
                elif line.startswith("/edit "):
                    conversation = await conversation.edit(line[len("/edit "):])
                else:
                    conversation = await conversation.ask(line)
            except LLMError as e:
                click.echo(f"Error: {describe(e, config.conversation.locale)}", err=True)
                continue
            except (NotImplementedError, ValueError) as e:
                click.echo(f"Error: {e}", err=True)
                continue
            click.echo(f"{conversation.backend.name}> {conversation.latest.text}")

    try:
        conversation = _run(config, operation)
    except click.Abort:
        click.echo()
        return
    if conversation is not None and conversation.id is not None:
        click.echo(f"[conversation {conversation.id}]", err=True)


@main.command()
@click.argument("conversation_id", type=str)
@provider_option
@config_option
def clear(conversation_id: str, provider: str | None, config_path: Path | None) -> None:
    """Delete a conversation."""
    _configure_logging(False)
    config = _load(config_path)
    provider = provider or config.conversation.provider

    async def operation(registry):
        return await registry.clear(conversation_id, provider)

    if not _run(config, operation):
        click.echo(f"Error: provider not available: {provider}", err=True)
        raise SystemExit(1)
    click.echo(f"Cleared conversation {conversation_id}")


if __name__ == "__main__":
    main()
