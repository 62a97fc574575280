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
"""Exception types shared by the clone scripts."""

from __future__ import annotations

from typing import Optional


class CloneError(Exception):
    """Base class for errors raised by the clone tooling."""


class ConfigError(CloneError):
    """Custom exception for configuration issues."""


class SplitError(CloneError):
    """A script could not be split into batches (fatal to its stage only)."""

    def __init__(self, message: str, line_no: Optional[int] = None):
        if line_no is not None:
            message = f"{message} (line {line_no})"
        super().__init__(message)
        self.line_no = line_no


class SetupError(CloneError):
    """
    Destination session, database or stage script is unusable.

    Aborts the remaining pipeline. StagePipeline records the stage that was
    running as ``stage_outcome`` and attaches the partial run as
    ``pipeline_run`` before re-raising.
    """

    pipeline_run = None
    stage_outcome = None
