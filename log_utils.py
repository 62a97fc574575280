#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Copyright 2025 Minorli
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Logging helpers shared by the clone scripts.

Console output goes through rich's RichHandler; the optional log file uses a
plain pipe-separated format that also carries the pass / batch fields the
deployment engine attaches to its records via ``extra``.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
LOG_FILE_DEPLOY_FORMAT = (
    "%(asctime)s | %(levelname)-8s | pass=%(fixup_pass)s batch=%(batch_index)s | %(message)s"
)
LOG_SECTION_WIDTH = 80

# Attribute names carried on records through ``extra``.
PASS_FIELD = "fixup_pass"
BATCH_FIELD = "batch_index"


class DeployFieldsFilter(logging.Filter):
    """Fill in the structured deploy fields for records that do not carry them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, PASS_FIELD):
            setattr(record, PASS_FIELD, "-")
        if not hasattr(record, BATCH_FIELD):
            setattr(record, BATCH_FIELD, "-")
        return True


def deploy_fields(pass_num: Optional[int] = None, batch_index: Optional[int] = None) -> dict:
    fields = {}
    if pass_num is not None:
        fields[PASS_FIELD] = pass_num
    if batch_index is not None:
        fields[BATCH_FIELD] = batch_index
    return fields


def _build_console_handler(level: int) -> logging.Handler:
    try:
        from rich.logging import RichHandler
        handler = RichHandler(
            level=level,
            show_time=True,
            omit_repeated_times=False,
            show_level=True,
            show_path=False,
            rich_tracebacks=False,
            log_time_format=LOG_TIME_FORMAT
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        return handler
    except Exception as exc:
        logging.getLogger(__name__).debug("RichHandler init failed, fallback to StreamHandler: %s", exc)
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FILE_FORMAT, datefmt=LOG_TIME_FORMAT))
        return handler


def init_console_logging(level: int = logging.INFO) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            continue
        root_logger.removeHandler(handler)
    root_logger.addHandler(_build_console_handler(level))


def set_console_log_level(level: int) -> None:
    root_logger = logging.getLogger()
    # file handlers keep their own level
    file_levels = [h.level for h in root_logger.handlers if isinstance(h, logging.FileHandler)]
    root_logger.setLevel(min([level] + file_levels))
    for handler in root_logger.handlers:
        if isinstance(handler, logging.FileHandler):
            continue
        handler.setLevel(level)


def resolve_console_log_level(level_name: Optional[str], *, is_tty: Optional[bool] = None) -> int:
    if is_tty is None:
        try:
            is_tty = sys.stdout.isatty()
        except Exception as exc:
            logging.getLogger(__name__).debug("TTY detection failed, defaulting to non-tty: %s", exc)
            is_tty = False
    name = (level_name or "AUTO").strip().upper()
    if name == "AUTO":
        return logging.INFO if is_tty else logging.WARNING
    level = logging.getLevelName(name)
    if isinstance(level, int):
        return level
    return logging.INFO


def attach_file_handler(log_path: Path, level: int = logging.DEBUG) -> logging.Handler:
    """Append a file handler to the root logger; the file always gets the deploy fields."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(level)
    handler.addFilter(DeployFieldsFilter())
    handler.setFormatter(logging.Formatter(LOG_FILE_DEPLOY_FORMAT, datefmt=LOG_TIME_FORMAT))
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    if root_logger.level > level:
        root_logger.setLevel(level)
    return handler


def log_section(logger: logging.Logger, title: str, fill_char: str = "=") -> None:
    clean = f" {title.strip()} "
    if len(clean) >= LOG_SECTION_WIDTH:
        logger.info("%s", title.strip())
        return
    logger.info("%s", clean.center(LOG_SECTION_WIDTH, fill_char))


def log_subsection(logger: logging.Logger, title: str, fill_char: str = "-") -> None:
    log_section(logger, title, fill_char)


def format_progress_label(current: int, total: int, width: Optional[int] = None) -> str:
    if width is None:
        width = len(str(total)) or 1
    return f"[进度 {current:0{width}}/{total}]"


def safe_first_line(text: Optional[str], limit: int = 160, default: str = "") -> str:
    if not text:
        return default
    for line in text.splitlines():
        if line.strip():
            return line.strip()[:limit]
    return default
