"""
agentloop CLI entry point.

Provides command-line interface for chatting with the agent, serving the
HTTP API and inspecting configuration.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from agentloop import __version__
from agentloop.agent.events import EventType, StreamingResponder
from agentloop.components import AgentComponents, AgentRuntime
from agentloop.config.logging import get_logger, setup_logging
from agentloop.config.settings import Settings, load_settings
from agentloop.errors import ConversationNotFoundError


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog="agentloop",
        description="LLM tool-calling orchestration engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"agentloop {__version__}",
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: .env in current directory)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level from config",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Config command
    subparsers.add_parser(
        "config",
        help="Show current configuration",
    )

    # Tools command
    tools_parser = subparsers.add_parser(
        "tools",
        help="List the tools the agent can call",
    )
    tools_parser.add_argument(
        "--workspace",
        type=Path,
        default=None,
        help="Workspace root for the file tools (default: TOOLS__WORKSPACE_ROOT from config)",
    )
    tools_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the provider tool schemas as JSON instead of the catalogue",
    )

    # Chat command
    chat_parser = subparsers.add_parser(
        "chat",
        help="Chat with the agent in the terminal",
    )
    chat_parser.add_argument(
        "message",
        nargs="?",
        default=None,
        help="Send a single message and exit. Omit for an interactive session.",
    )
    chat_parser.add_argument(
        "--workspace",
        type=Path,
        default=None,
        help="Workspace root for the file tools (default: TOOLS__WORKSPACE_ROOT from config)",
    )
    chat_parser.add_argument(
        "--conversation",
        default=None,
        help="Continue an existing conversation (needs STORAGE__BACKEND=json)",
    )
    chat_parser.add_argument(
        "--user",
        default="cli",
        help="User id that owns new conversations (default: cli)",
    )
    chat_parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only print the final answer, no progress events",
    )

    # Serve command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Run the HTTP API with streamed turns",
    )
    serve_parser.add_argument(
        "--host",
        default=None,
        help="Bind address (default: SERVER__HOST from config)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Bind port (default: SERVER__PORT from config)",
    )

    return parser


def _apply_workspace(settings: Settings, workspace: Path | None) -> Settings:
    if workspace is None:
        return settings
    tools = settings.tools.model_copy(update={"workspace_root": str(workspace)})
    return settings.model_copy(update={"tools": tools})


def cmd_config(settings: Settings) -> int:
    """Show current configuration."""
    logger = get_logger(__name__)

    logger.info("Current Configuration:")
    logger.info("\n=== agentloop Configuration ===\n")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Log Level: {settings.log_level}")
    logger.info(f"Log File: {settings.log_file or 'None (console only)'}")
    logger.info(f"\nLLM Model: {settings.llm.model}")
    logger.info(f"LLM API Key: {'Set' if settings.llm.api_key else 'Not set'}")
    logger.info(f"LLM API Base: {settings.llm.api_base or 'provider default'}")
    logger.info(f"Supported Tools: {settings.llm.supported_tools or 'all'}")
    logger.info(f"\nMax Iterations: {settings.agent.max_iterations}")
    logger.info(f"Turn Timeout: {settings.agent.turn_timeout}s")
    logger.info(f"Single Tool Per Step: {settings.agent.single_tool_per_step}")
    logger.info(f"\nContext Max Messages: {settings.context.max_messages}")
    logger.info(f"Context Token Budget: {settings.context.max_context_tokens or 'None'}")
    logger.info(
        f"\nBreaker: {settings.breaker.max_failures} failures, "
        f"{settings.breaker.reset_timeout}s reset, {settings.breaker.half_open_max} trials"
    )
    logger.info(f"\nStorage: {settings.storage.backend} ({settings.storage.data_path})")
    logger.info(f"Workspace Root: {settings.tools.workspace_root or 'None (file tools disabled)'}")
    logger.info(f"MCP Server: {settings.tools.mcp_server_command or 'None'}")

    return 0


async def cmd_tools(args, settings: Settings) -> int:
    """List registered tools."""
    logger = get_logger(__name__)
    settings = _apply_workspace(settings, args.workspace)

    try:
        async with AgentComponents(settings).create_runtime() as runtime:
            if not len(runtime.registry):
                print("No tools registered. Set TOOLS__WORKSPACE_ROOT or TOOLS__MCP_SERVER_COMMAND.")
                return 0
            if args.json:
                print(json.dumps(runtime.registry.provider_tools(settings.llm.supported_tools), indent=2))
            else:
                print(runtime.registry.describe_all())
            return 0
    except Exception as e:
        logger.error(f"Listing tools failed: {e}", exc_info=True)
        return 1


async def _print_events(responder: StreamingResponder, quiet: bool) -> bool:
    """Render a turn's events in the terminal. Returns False if the turn ended in error."""
    succeeded = False
    async for event in responder.events():
        if event.event is EventType.CHUNK:
            print(event.data, end="", flush=True)
        elif event.event is EventType.COMPLETE:
            print()
            if not quiet:
                metrics = json.loads(event.data).get("metrics", {})
                if metrics:
                    print(f"\n{metrics['summary']}", file=sys.stderr)
        elif event.event is EventType.DONE:
            succeeded = True
        elif event.event is EventType.ERROR:
            print(f"\nError: {event.data}", file=sys.stderr)
        elif quiet:
            continue
        elif event.event is EventType.THINKING:
            print(f"💭 {event.data}", file=sys.stderr)
        elif event.event is EventType.TOOL:
            payload = json.loads(event.data)
            mark = "✓" if payload["success"] else "✗"
            print(
                f"🔧 [{payload['ordinal']}/{payload['total']}] {payload['tool']} {mark}",
                file=sys.stderr,
            )
        elif event.event is EventType.STATUS and event.data:
            print(event.data, file=sys.stderr)
    return succeeded


async def _chat_turn(runtime: AgentRuntime, conversation_id: str, message: str, quiet: bool) -> bool:
    responder = runtime.components.create_responder()
    turn = asyncio.create_task(runtime.controller.run_turn(conversation_id, message, responder))
    succeeded = await _print_events(responder, quiet)
    await turn
    return succeeded


async def cmd_chat(args, settings: Settings) -> int:
    """
    Chat with the agent.

    With a message argument, runs one turn and exits (exit code 1 if the
    turn ended in an error). Without one, reads messages from stdin until
    EOF or 'exit'.
    """
    logger = get_logger(__name__)
    settings = _apply_workspace(settings, args.workspace)

    try:
        async with AgentComponents(settings).create_runtime() as runtime:
            if args.conversation:
                try:
                    conversation = await runtime.store.get_conversation(args.conversation)
                except ConversationNotFoundError as e:
                    print(str(e), file=sys.stderr)
                    return 1
            else:
                conversation = await runtime.store.create_conversation(args.user)

            if args.message:
                ok = await _chat_turn(runtime, conversation.id, args.message, args.quiet)
                return 0 if ok else 1

            print(f"agentloop {__version__} - model {settings.llm.model}")
            print(f"Conversation {conversation.id}. Type 'exit' to quit.\n")
            while True:
                try:
                    message = await asyncio.to_thread(input, "> ")
                except EOFError:
                    print()
                    return 0
                message = message.strip()
                if not message:
                    continue
                if message.lower() in ("exit", "quit"):
                    return 0
                await _chat_turn(runtime, conversation.id, message, args.quiet)
                print()

    except Exception as e:
        logger.error(f"Chat failed: {e}", exc_info=True)
        return 1


def cmd_serve(args, settings: Settings) -> int:
    """Run the HTTP API."""
    import uvicorn

    from agentloop.server import create_app

    logger = get_logger(__name__)
    host = args.host or settings.server.host
    port = args.port or settings.server.port

    logger.info(f"Serving agentloop on http://{host}:{port}")
    # log_config=None: keep our logging setup instead of uvicorn's
    uvicorn.run(create_app(settings), host=host, port=port, log_config=None)
    return 0


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    # Load settings
    try:
        settings = load_settings(env_file=args.env_file)
    except Exception as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        return 1

    # Override log level if specified
    if args.log_level:
        settings.log_level = args.log_level

    # Setup logging
    setup_logging(settings)

    # Execute command
    if args.command == "config":
        return cmd_config(settings)
    elif args.command == "tools":
        return asyncio.run(cmd_tools(args, settings))
    elif args.command == "chat":
        return asyncio.run(cmd_chat(args, settings))
    elif args.command == "serve":
        return cmd_serve(args, settings)
    else:
        # Default: show help
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
