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
Split T-SQL scripts into GO-delimited batches.

A batch boundary is a line holding only ``GO`` (any case), optionally followed
by a semicolon. The match is line-wise and does not look inside string
literals or comments, so a ``GO`` line inside a multi-line string literal
splits the script there. Generated clone scripts never contain one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Pattern, Union

from clone_errors import SplitError

DEFAULT_DELIMITER = "GO"
GO_DELIMITER_PATTERN = re.compile(r"^\s*GO\s*;?\s*$", re.IGNORECASE)


class BatchStatus:
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


@dataclass
class Batch:
    index: int
    text: str
    status: str = BatchStatus.PENDING
    last_error: Optional[str] = None
    start_line: int = 0

    @property
    def first_line(self) -> str:
        for line in self.text.splitlines():
            if line.strip():
                return line.strip()
        return ""


def _compile_delimiter(delimiter_pattern: Union[str, Pattern, None]) -> Pattern:
    if delimiter_pattern is None:
        return GO_DELIMITER_PATTERN
    if isinstance(delimiter_pattern, str):
        try:
            return re.compile(delimiter_pattern, re.IGNORECASE)
        except re.error as exc:
            raise SplitError(f"批次分隔符正则无效: {delimiter_pattern!r}: {exc}") from exc
    return delimiter_pattern


def normalize_script_text(script_text: str) -> str:
    text = script_text or ""
    if text.startswith("\ufeff"):
        text = text[1:]
    return text.replace("\r\n", "\n").replace("\r", "\n")


def check_script_terminated(script_text: str) -> None:
    """
    Raise SplitError when a block comment or quoted construct is never closed.

    Block comments nest as in T-SQL; ``--`` comments run to end of line.
    """
    block_depth = 0
    block_open_line = 0
    quote_char = ""
    quote_open_line = 0
    line_no = 1
    idx = 0
    text = script_text
    length = len(text)

    while idx < length:
        ch = text[idx]
        nxt = text[idx + 1] if idx + 1 < length else ""
        if ch == "\n":
            line_no += 1
            idx += 1
            continue

        if block_depth > 0:
            if ch == "/" and nxt == "*":
                block_depth += 1
                idx += 2
                continue
            if ch == "*" and nxt == "/":
                block_depth -= 1
                idx += 2
                continue
            idx += 1
            continue

        if quote_char:
            if ch == quote_char:
                # doubled closer is an escaped literal char
                if nxt == quote_char:
                    idx += 2
                    continue
                quote_char = ""
            idx += 1
            continue

        if ch == "-" and nxt == "-":
            eol = text.find("\n", idx)
            idx = length if eol < 0 else eol
            continue
        if ch == "/" and nxt == "*":
            block_depth = 1
            block_open_line = line_no
            idx += 2
            continue
        if ch in ("'", '"'):
            quote_char = ch
            quote_open_line = line_no
        elif ch == "[":
            quote_char = "]"
            quote_open_line = line_no
        idx += 1

    if block_depth > 0:
        raise SplitError("块注释 /* 未闭合", block_open_line)
    if quote_char:
        raise SplitError(f"引号 {quote_char} 未闭合", quote_open_line)


def split_batches(
    script_text: str,
    delimiter_pattern: Union[str, Pattern, None] = None,
) -> List[Batch]:
    """
    Split script text into ordered, 0-indexed batches.

    Delimiter lines are dropped from batch text and whitespace-only segments
    are discarded. Leading blank lines and trailing whitespace are trimmed;
    indentation of the first statement line is kept. A custom
    ``delimiter_pattern`` is matched against each line with ``re.match``, so
    it should anchor itself.
    """
    pattern = _compile_delimiter(delimiter_pattern)
    text = normalize_script_text(script_text)
    check_script_terminated(text)

    batches: List[Batch] = []
    buffer: List[str] = []
    buffer_start = 1

    def flush_buffer() -> None:
        leading_blank = 0
        for line in buffer:
            if line.strip():
                break
            leading_blank += 1
        segment = "\n".join(buffer[leading_blank:]).rstrip()
        if segment:
            batches.append(
                Batch(index=len(batches), text=segment, start_line=buffer_start + leading_blank)
            )
        buffer.clear()

    for line_no, line in enumerate(text.split("\n"), start=1):
        if pattern.match(line):
            flush_buffer()
            buffer_start = line_no + 1
            continue
        buffer.append(line)

    flush_buffer()
    return batches


def join_batches(batches: Iterable[Union[Batch, str]], delimiter: str = DEFAULT_DELIMITER) -> str:
    texts = [item.text if isinstance(item, Batch) else str(item) for item in batches]
    if not texts:
        return ""
    return "".join(f"{text}\n{delimiter}\n" for text in texts)
