"""
Entry point for the clion command-line interface (exposed as `clion`).

clion expands `@file <path>` directives in a prompt into file contents
(or summaries, for files judged irrelevant to the prompt), sends the
result to the configured LLM provider within a persisted conversation
session, and prints the reply.

Usage examples::

    # Ask about a file; the reply is appended to the current session
    clion ask "Explain @file src/parser.cpp"

    # Continue a specific session with a system instruction
    clion ask --session session_20250101_120000_abcd1234 \\
        --system "Answer briefly." "And @file src/lexer.cpp?"

    # Only print the assembled context (no API key needed)
    clion context "Review @file src/a.cpp and @file src/b.cpp --force"

    # Session management
    clion sessions list
    clion sessions tree session_20250101_120000_abcd1234
    clion sessions checkpoint session_20250101_120000_abcd1234 before-refactor
    clion sessions cleanup 30

Without an API key (`CLION_API_KEY` or the provider's own variable) only
context assembly and session management are available.

Exit codes: 0 on success, 1 on errors, 2 when an over-limit request was
declined.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from .checkpoints import JsonCheckpointStore
from .config import ClionConfig
from .context_builder import ContextBuilder
from .errors import ClionError, UserDeclinedError
from .llm_client import RequestAnalysis, RequestGovernor
from .memory import JsonMemoryStore
from .session import Session, SessionStore, format_timestamp

logger = logging.getLogger("clion.cli")


def _prompt_yes_no(message: str) -> bool:
    while True:
        resp = input(message).strip().lower()
        if resp in ("y", "n"):
            return resp == "y"


def _confirm_over_limit(analysis: RequestAnalysis) -> bool:
    print(
        f"Warning: request needs ~{analysis.total_tokens} tokens "
        f"(limit {analysis.max_context_tokens}), estimated cost ${analysis.estimated_cost:.4f}.",
        file=sys.stderr,
    )
    if not sys.stdin.isatty():
        logger.error("Cannot ask for confirmation without a terminal; pass --yes to proceed.")
        return False
    return _prompt_yes_no("Send anyway (Y/N)? ")


def _configure_logging(log_level: str) -> None:
    # Align httpx/openai loggers with the chosen level
    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="[%(levelname)s] %(asctime)s %(name)s:%(lineno)d - %(message)s",
    )
    logging.getLogger().setLevel(level)
    logging.getLogger("httpx").setLevel(level)
    logging.getLogger("openai").setLevel(level)
    if level <= logging.DEBUG:
        logging.getLogger("httpcore").setLevel(level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clion", description="Ask an LLM about your code with @file context and persistent sessions."
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=Path("."),
        help="Project root; @file references may not escape it and clion_config.json is read from it.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.environ.get("CLION_LOGLEVEL", "INFO").upper(),
        help="Logging verbosity (default from env CLION_LOGLEVEL or INFO).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="Expand @file directives and send the prompt to the LLM.")
    ask.add_argument("prompt", nargs="+", help="Prompt text; may contain '@file <path>' directives.")
    ask.add_argument("--session", default=None, help="Session id to continue (default: current session).")
    ask.add_argument("--system", default="", help="System instruction sent before the history.")
    ask.add_argument("--temperature", type=float, default=None, help="Sampling temperature override.")
    ask.add_argument("--max-output-tokens", type=int, default=None, help="Output token cap override.")
    ask.add_argument("--smart", action="store_true", help="Summarize files with low relevance to the prompt.")
    ask.add_argument("--memory", action="store_true", help="Prepend context from relevant memory nodes.")
    ask.add_argument("--yes", action="store_true", help="Send over-limit requests without asking.")

    context = sub.add_parser("context", help="Print the assembled context without calling the LLM.")
    context.add_argument("prompt", nargs="+")
    context.add_argument("--smart", action="store_true", help="Summarize files with low relevance to the prompt.")
    context.add_argument("--relevance-info", action="store_true", help="Show relevance scores.")
    context.add_argument("--line-numbers", action="store_true", help="Number included lines.")

    sessions = sub.add_parser("sessions", help="Manage conversation sessions.")
    ssub = sessions.add_subparsers(dest="action", required=True)
    ssub.add_parser("list", help="List sessions, newest first.")
    show = ssub.add_parser("show", help="Print a session's history.")
    show.add_argument("session_id")
    delete = ssub.add_parser("delete", help="Delete a session and its checkpoints.")
    delete.add_argument("session_id")
    tree = ssub.add_parser("tree", help="Show the ancestors and children of a session.")
    tree.add_argument("session_id")
    new = ssub.add_parser("new", help="Create a session and make it current.")
    new.add_argument("--name", default="")
    new.add_argument("--description", default="")
    new.add_argument("--tag", action="append", default=[])
    new.add_argument("--parent", default=None)
    checkpoint = ssub.add_parser("checkpoint", help="Snapshot a session.")
    checkpoint.add_argument("session_id")
    checkpoint.add_argument("name")
    checkpoint.add_argument("--description", default="")
    restore = ssub.add_parser("restore", help="Print the session stored in a checkpoint.")
    restore.add_argument("checkpoint_id")
    cleanup = ssub.add_parser("cleanup", help="Delete sessions not modified for DAYS days.")
    cleanup.add_argument("days", type=int)
    remember = ssub.add_parser("remember", help="Distil a session into a memory node.")
    remember.add_argument("session_id")
    remember.add_argument("name")
    return parser


def _print_session(session: Session) -> None:
    print(f"Session: {session.id}")
    if session.name:
        print(f"Name: {session.name}")
    if session.description:
        print(f"Description: {session.description}")
    if session.tags:
        print(f"Tags: {', '.join(sorted(session.tags))}")
    print(f"Created: {format_timestamp(session.created_at)}  Updated: {format_timestamp(session.updated_at)}")
    print(f"Tokens: {session.total_tokens}")
    for entry in session.entries:
        print(f"\n[{entry.role}] {format_timestamp(entry.timestamp)}\n{entry.content}")


def _sessions_command(args: argparse.Namespace, store: SessionStore) -> int:
    if args.action == "list":
        current = store.get_current()
        for session_id in store.list_sessions():
            session = store.load(session_id)
            marker = "*" if session_id == current else " "
            name = session.name if session else ""
            count = len(session.entries) if session else 0
            print(f"{marker} {session_id}  {count:4d} entries  {name}")
    elif args.action == "show":
        _print_session(store.require(args.session_id))
    elif args.action == "delete":
        if not store.delete(args.session_id):
            logger.error("Session not found: %s", args.session_id)
            return 1
        print(f"Deleted {args.session_id}")
    elif args.action == "tree":
        store.require(args.session_id)
        for depth, session_id in enumerate(store.get_hierarchy(args.session_id)):
            print("  " * depth + session_id)
        depth = len(store.get_hierarchy(args.session_id))
        for child_id in store.get_children(args.session_id):
            print("  " * depth + child_id)
    elif args.action == "new":
        session_id = store.create_with_metadata(args.name, args.description, args.tag, args.parent)
        store.set_current(session_id)
        print(session_id)
    elif args.action == "checkpoint":
        print(store.create_checkpoint(args.session_id, args.name, args.description))
    elif args.action == "restore":
        _print_session(store.restore_from_checkpoint(args.checkpoint_id))
    elif args.action == "cleanup":
        print(f"Removed {store.cleanup_older_than(args.days)} sessions")
    elif args.action == "remember":
        print(store.create_memory_from_session(args.session_id, args.name))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Primary CLI entry point.  Returns an exit code."""
    args = build_parser().parse_args(argv)
    _configure_logging(args.log_level)

    root = args.root.resolve()
    if not root.is_dir():
        logger.error("The specified root directory %s does not exist or is not a directory.", root)
        return 1

    config = ClionConfig.load(root)
    logger.info("Loaded configuration from %s", config.config_path or "defaults")

    memory = JsonMemoryStore(config.memory_dir)
    store = SessionStore(config.session_dir, JsonCheckpointStore(config.checkpoint_dir), memory)
    builder = ContextBuilder(memory=memory, sessions=store)

    try:
        if args.command == "sessions":
            return _sessions_command(args, store)

        options = config.context
        options.enable_intelligent_selection = options.enable_intelligent_selection or args.smart
        prompt = " ".join(args.prompt)

        if args.command == "context":
            options.show_relevance_info = options.show_relevance_info or args.relevance_info
            options.include_line_numbers = options.include_line_numbers or args.line_numbers
            print(builder.build_context(prompt, root, options))
            return 0

        if not config.llm_enabled:
            logger.error(
                "No API key configured for provider '%s'. Set CLION_API_KEY or the provider's key variable.",
                config.provider.provider.value,
            )
            return 1
        options.enable_memory_integration = options.enable_memory_integration or args.memory
        governor = RequestGovernor(
            config.provider,
            store,
            confirm=(lambda analysis: True) if args.yes else _confirm_over_limit,
        )
        session_id = args.session or store.get_current()
        expanded = builder.build_context(prompt, root, options, session_id=session_id)
        response = governor.dispatch(
            expanded,
            session_id=args.session,
            system_instruction=args.system,
            temperature=args.temperature,
            max_output_tokens=args.max_output_tokens,
        )
        print(response.content)
        return 0
    except UserDeclinedError as exc:
        logger.error("%s", exc)
        return 2
    except (ClionError, ValueError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
