"""Command-line entry point used by the PopClip extension script."""

from __future__ import annotations

import argparse
import logging
import sys

from PySide6.QtWidgets import QApplication

from askpop import __version__
from askpop.config import (
    MODE_ASK,
    MODE_MERMAID,
    MODES,
    AppConfig,
    decode_argument_text,
    mode_for_action,
    window_title_for_action,
)
from askpop.renderer import RenderMode
from askpop.window import RendererWindow

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="askpop",
        description="Ask a chat model about selected text, or preview it as Markdown or Mermaid.",
    )
    parser.add_argument(
        "--mode",
        choices=MODES,
        default=None,
        help="Window mode (default: derived from POPCLIP_ACTION_IDENTIFIER, else ask).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("prompt", nargs="?", default="", help="Instruction prepended to the text in ask mode.")
    parser.add_argument("text", nargs="?", default="", help="Selected text; may be passed as base64:<payload>.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config = AppConfig.from_environment()
    mode = args.mode or mode_for_action(config.action)
    prompt = decode_argument_text(args.prompt)
    text = decode_argument_text(args.text)
    if mode != MODE_ASK and not text:
        # Preview actions are invoked with the selection only.
        text, prompt = prompt, ""

    if mode == MODE_ASK and not (prompt + text).strip():
        print("Usage: askpop PROMPT TEXT", file=sys.stderr)
        return 2

    log.info("Starting askpop %s in %s mode (action=%s)", __version__, mode, config.action or "-")
    app = QApplication(sys.argv[:1])
    app.setApplicationName("askpop")

    render_mode = RenderMode.MERMAID if mode == MODE_MERMAID else RenderMode.MARKDOWN
    window = RendererWindow(
        config,
        render_mode,
        title=window_title_for_action(config.action),
        initial_text=text,
        ask_mode=mode == MODE_ASK,
    )
    window.show()
    window.render_current()
    if mode == MODE_ASK:
        window.ask(prompt, text)
    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())
