"""Preview window: loads images through the pipeline and shows their textures."""

from __future__ import annotations

import argparse
import os
import sys
from concurrent.futures import Future

from PySide6.QtCore import Qt
from PySide6.QtWidgets import QApplication, QHBoxLayout, QLabel, QScrollArea, QWidget

from async_image.image_engine import ImageEngine, ImageRequest, TextStyle, ValidationFailure
from async_image.logger import get_logger
from async_image.settings_manager import SettingsManager

logger = get_logger("main")

_TEXT_MARGIN = 8


def _apply_cli_logging_options(args: list[str]) -> list[str]:
    """Move --log-level/--log-cats into the environment; return the other args."""
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--log-level", help="Set log level")
    parser.add_argument("--log-cats", help="Set log categories")
    known, remaining = parser.parse_known_args(args)
    if known.log_level:
        os.environ["ASYNC_IMAGE_LOG_LEVEL"] = known.log_level
    if known.log_cats:
        os.environ["ASYNC_IMAGE_LOG_CATS"] = known.log_cats
    return remaining


def parse_args(args: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="async-image", description="Load and preview images asynchronously")
    parser.add_argument("sources", nargs="+", help="Image file paths or http(s) URLs")
    parser.add_argument("--resize-factor", type=int, default=None, help="Shrink each image by this factor")
    parser.add_argument("--text", default=None, help="Caption drawn in the top-left corner")
    parser.add_argument("--text-size", type=float, default=24.0)
    parser.add_argument("--settings", default=None, help="Path to a JSON settings file")
    parser.add_argument(
        "--queue-textures", action="store_true", help="Build at most one texture per frame"
    )
    return parser.parse_args(args)


def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


class PreviewWindow(QScrollArea):
    def __init__(self) -> None:
        super().__init__()
        self.setWindowTitle("async-image")
        self._row = QWidget()
        self._layout = QHBoxLayout(self._row)
        self.setWidget(self._row)
        self.setWidgetResizable(True)

    def add_slot(self, source: str) -> QLabel:
        label = QLabel(f"loading {source}")
        label.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self._layout.addWidget(label)
        return label


def build_request(engine: ImageEngine, source: str, args: argparse.Namespace) -> ImageRequest:
    request = engine.new_request(url=source) if _is_url(source) else engine.new_request(path=source)
    if args.queue_textures:
        request.queue_texture_process = True
    if args.resize_factor:
        request.resize(args.resize_factor)
    if args.text:
        request.draw_text(args.text, (_TEXT_MARGIN, _TEXT_MARGIN), TextStyle(size=args.text_size))
    return request


def _watch(engine: ImageEngine, future: Future, source: str, label: QLabel) -> None:
    def _done(fut: Future) -> None:
        # runs on a worker thread; hand UI updates to the owning thread
        error = fut.exception()
        if error is None or isinstance(error, ValidationFailure):
            return
        logger.error("failed to load %s: %s", source, error)
        engine.dispatcher.execute(lambda: label.setText(f"failed: {source}"))

    future.add_done_callback(_done)


def run(argv: list[str] | None = None) -> int:
    """Application entrypoint (packaging-friendly)."""
    if argv is None:
        argv = sys.argv
    args = parse_args(_apply_cli_logging_options(argv[1:]))

    app = QApplication.instance() or QApplication([argv[0]])
    engine = ImageEngine(SettingsManager(args.settings))
    engine.start()
    app.aboutToQuit.connect(engine.shutdown)

    window = PreviewWindow()
    for source in args.sources:
        label = window.add_slot(source)
        request = build_request(engine, source, args)
        request.set_on_texture_ready(lambda r=request, lbl=label: lbl.setPixmap(r.texture))
        request.set_on_validated(lambda ok, s=source, lbl=label: ok or lbl.setText(f"not found: {s}"))
        _watch(engine, engine.load(request), source, label)
        logger.debug("queued %s", source)

    window.resize(960, 540)
    window.show()
    return app.exec()


if __name__ == "__main__":
    sys.exit(run())
