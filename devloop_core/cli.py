"""Command line entry point.

    devloop -p "fix the failing test"
    devloop dev-loop run plan.md
    devloop dev-loop init
    echo "context" | devloop -o stream-json "summarise this"
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from devloop_core.config.settings import OUTPUT_FORMATS, settings
from devloop_core.infrastructure.logging.logger import enable_console_logging
from devloop_core.tasks.task_runner import run_non_interactive


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devloop",
        description="Run a non-interactive agent session or an autonomous dev loop.",
    )
    parser.add_argument("words", nargs="*", help="prompt text, or 'dev-loop run <plan.md>' / 'dev-loop init'")
    parser.add_argument("-p", "--prompt", help="prompt text (appended after piped stdin)")
    parser.add_argument("-o", "--output-format", choices=OUTPUT_FORMATS, help="output format")
    parser.add_argument("--provider", choices=("openai", "gemini"), help="model backend")
    parser.add_argument("-m", "--model", help="logical or backend model name")
    parser.add_argument("--max-session-turns", type=int, help="model call limit, -1 for unlimited")
    parser.add_argument("--workspace", help="working directory for tools and verification")
    parser.add_argument("--debug", action="store_true", help="also log to stderr")
    return parser


def compose_input(words: List[str], prompt: Optional[str], stdin_text: Optional[str]) -> str:
    if words and words[0] == "dev-loop":
        return " ".join(["/dev-loop", *words[1:]])
    text = prompt if prompt is not None else " ".join(words)
    if stdin_text:
        text = f"{stdin_text.rstrip()}\n\n{text}" if text else stdin_text
    return text


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.prompt is not None and args.words:
        parser.error("pass the prompt either with -p or as positional words, not both")

    stdin_text = None
    if not sys.stdin.isatty():
        stdin_text = sys.stdin.read()
    input_text = compose_input(args.words, args.prompt, stdin_text)
    if not input_text.strip():
        parser.error("no input provided; pass a prompt or pipe text on stdin")

    overrides = {}
    if args.provider:
        overrides["default_provider"] = args.provider
    if args.model:
        overrides["default_model"] = args.model
    if args.max_session_turns is not None:
        overrides["max_session_turns"] = args.max_session_turns
    if args.workspace:
        overrides["workspace_root"] = args.workspace
    if args.output_format:
        overrides["output_format"] = args.output_format
    cfg = settings.model_copy(update=overrides) if overrides else settings

    if args.debug:
        enable_console_logging()
    return run_non_interactive(input_text, cfg=cfg)


if __name__ == "__main__":
    raise SystemExit(main())
