"""CLI entry point for localchat."""

from __future__ import annotations

import argparse
import asyncio
import sys

from localchat.ai.events import stream_as_events
from localchat.ai.orchestrator import SendResult
from localchat.app import LocalChatApp
from localchat.config import AppConfig, load_config
from localchat.errors import LocalChatError
from localchat.log import setup_logging

EXIT_COMMANDS = {"/quit", "/exit"}


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="localchat",
        description="Chat with a locally hosted language model, with optional image generation",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Interactive chat session")
    _add_config_args(chat_parser)
    chat_parser.add_argument("-u", "--user", default="local", help="User id owning the session")
    chat_parser.add_argument("-s", "--session", default=None, help="Continue an existing session")
    chat_parser.add_argument("-m", "--model", default=None, help="Override the provider model")
    output = chat_parser.add_mutually_exclusive_group()
    output.add_argument(
        "--no-stream", action="store_true", help="Wait for complete replies instead of streaming"
    )
    output.add_argument(
        "--events", action="store_true", help="Print replies as server-sent-event frames"
    )

    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    _add_config_args(check_parser)

    model_parser = subparsers.add_parser("model-info", help="Show provider and renderer status")
    _add_config_args(model_parser)

    images_parser = subparsers.add_parser("images", help="Manage generated images")
    _add_config_args(images_parser)
    images_sub = images_parser.add_subparsers(dest="images_command", required=True)
    images_sub.add_parser("list", help="List saved images, newest first")
    cleanup_parser = images_sub.add_parser("cleanup", help="Delete old images")
    cleanup_parser.add_argument(
        "--max-age-hours", type=float, default=24, help="Delete images older than this"
    )

    args = parser.parse_args()

    if args.command is None:
        args.command = "chat"
        args.config = "config.yaml"
        args.env = ".env"
        args.user = "local"
        args.session = None
        args.model = None
        args.no_stream = False
        args.events = False

    if args.command == "config-check":
        _check_config(args.config, args.env)
        return

    config = _load(args.config, args.env)
    setup_logging(config.log_level)

    if args.command == "model-info":
        asyncio.run(_model_info(config))
    elif args.command == "images":
        asyncio.run(_images(config, args.images_command, getattr(args, "max_age_hours", 24)))
    elif args.command == "chat":
        try:
            asyncio.run(
                _chat(config, args.user, args.session, args.model, not args.no_stream, args.events)
            )
        except KeyboardInterrupt:
            print()


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path, required=False)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    try:
        config = load_config(config_path, env_path)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Configuration valid: {config_path}")
    print(f"  Data directory: {config.data_dir}")
    print(f"  Storage: {config.storage.db_path}")
    print(f"  Provider: {config.provider.base_url} [{config.provider.default_model}]")
    renderer = config.renderer
    state = "enabled" if renderer.enabled else "disabled"
    print(f"  Renderer: {renderer.base_url} [{renderer.default_model}] ({state})")
    print(f"  Images: {renderer.images_dir} -> {renderer.url_prefix}/")
    print(f"  Context: last {config.chat.context_messages} messages")


async def _model_info(config: AppConfig) -> None:
    """Show provider and renderer reachability plus their models."""
    app = LocalChatApp(config)
    try:
        provider_up = await app.provider.is_available()
        print("Provider")
        print("=" * 50)
        print(f"  URL       : {config.provider.base_url}")
        print(f"  Available : {provider_up}")
        print(f"  Default   : {config.provider.default_model}")
        if provider_up:
            models = await app.provider.list_models()
            print(f"  Models    : {', '.join(models) if models else '(none)'}")

        print("\nRenderer")
        print("=" * 50)
        renderer_up = await app.images.probe() if config.renderer.enabled else False
        status = app.images.config_status()
        print(f"  URL       : {status['base_url']}")
        print(f"  Enabled   : {status['enabled']}")
        print(f"  Available : {renderer_up}")
        print(f"  Default   : {status['default_model']}")
        if renderer_up:
            models = await app.images.list_models()
            names = [m["model_name"] for m in models if m.get("model_name")]
            print(f"  Models    : {', '.join(names) if names else '(none)'}")
            info = await app.images.get_system_info()
            if info and "ram" in info:
                print(f"  RAM       : {info['ram']}")
        print()
    finally:
        await app.stop()


async def _images(config: AppConfig, command: str, max_age_hours: float) -> None:
    app = LocalChatApp(config)
    try:
        if command == "list":
            files = await app.images.list_saved_images()
            for name in files:
                print(f"{config.renderer.url_prefix.rstrip('/')}/{name}")
            print(f"{len(files)} image(s) in {app.image_store.directory}")
        elif command == "cleanup":
            removed = await app.images.cleanup_old_images(max_age_hours)
            print(f"Removed {removed} image(s) older than {max_age_hours}h")
    finally:
        await app.stop()


async def _chat(
    config: AppConfig,
    user_id: str,
    session_id: str | None,
    model: str | None,
    stream: bool,
    events: bool = False,
) -> None:
    """Interactive REPL; /quit or Ctrl-D exits.

    With *events* every reply is written to stdout as `data: {...}` frames, the
    same stream an HTTP front end would relay to its clients.
    """
    async with LocalChatApp(config) as app:
        orchestrator = app.orchestrator
        if session_id:
            session, history = await orchestrator.get_session_with_messages(user_id, session_id)
            print(f"Resuming '{session.title}' ({len(history)} messages)")
        print("Type a message, /quit to exit.")

        while True:
            try:
                text = await asyncio.to_thread(input, "you> ")
            except EOFError:
                print()
                break
            text = text.strip()
            if not text:
                continue
            if text in EXIT_COMMANDS:
                break

            if events:
                result = await stream_as_events(
                    orchestrator,
                    lambda frame: print(frame, end="", flush=True),
                    user_id,
                    text,
                    session_id,
                    model=model,
                )
                if result is not None:
                    session_id = result.session.id
                continue

            try:
                if stream:
                    print("bot> ", end="", flush=True)
                    result = await orchestrator.send_message_streaming(
                        user_id,
                        text,
                        session_id,
                        on_token=lambda delta, _full: print(delta, end="", flush=True),
                        model=model,
                    )
                    if result.is_image_generation:
                        print(result.assistant_message.content, end="")
                    print()
                else:
                    result = await orchestrator.send_message(user_id, text, session_id, model=model)
                    print(f"bot> {result.assistant_message.content}")
            except LocalChatError as e:
                print(f"Error: {e}", file=sys.stderr)
                continue

            session_id = result.session.id
            _print_outcome(result)


def _print_outcome(result: SendResult) -> None:
    message = result.assistant_message
    for attachment in message.image_attachments():
        print(f"  [image] {attachment.url}")
    if result.failed:
        print(f"  [error] {message.error}", file=sys.stderr)


if __name__ == "__main__":
    main()
