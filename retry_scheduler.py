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
Multi-pass batch deployment with retry of failed batches.

Solves the forward-reference problem of generated clone scripts: a foreign key
or view may be emitted before the object it depends on. Every pending batch is
attempted once per pass, only failures are carried into the next pass, and the
run stops when everything succeeded, the pass budget is spent, or a pass made
no progress (the failure count did not drop).

The no-progress check compares counts, not batch identities. Succeeded batches
are never retried, so an unchanged count means the same batches failed again.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from batch_splitter import Batch, BatchStatus
from log_utils import deploy_fields, safe_first_line

ExecuteFn = Callable[[Batch], Tuple[bool, Optional[str]]]

DEFAULT_MAX_PASSES = 10


@dataclass(frozen=True)
class DeploymentOutcome:
    success: bool
    passes_used: int
    failed_batches: List[Batch] = field(default_factory=list)
    cancelled: bool = False
    total_batches: int = 0
    executed: int = 0

    @property
    def succeeded_count(self) -> int:
        return self.total_batches - len(self.failed_batches)


class RetryScheduler:
    """
    Run batches against one executor, retrying failures pass by pass.

    ``execute`` reports ordinary SQL errors as ``(False, message)``. Anything
    it raises is treated as catastrophic and propagates unchanged.
    ``cancel_event`` is only consulted between two batch executions.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.log = logger or logging.getLogger(__name__)
        self.cancel_event = cancel_event
        # pass in progress, readable after execute raised out of run()
        self.current_pass = 0

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def run(self, batches: Sequence[Batch], execute: ExecuteFn, max_passes: int) -> DeploymentOutcome:
        self.current_pass = 0
        pending: List[Batch] = list(batches)
        total = len(pending)
        if not pending:
            return DeploymentOutcome(success=True, passes_used=0, failed_batches=[], total_batches=0)

        if max_passes <= 0:
            self.log.warning("max_passes=%d，未执行任何批次，%d 个批次保持待执行。", max_passes, total)
            return DeploymentOutcome(
                success=False,
                passes_used=0,
                failed_batches=pending,
                total_batches=total,
            )

        pass_num = 0
        executed = 0
        cancelled = False

        while pending and pass_num < max_passes:
            pass_num += 1
            self.current_pass = pass_num
            self.log.info(
                "第 %d/%d 轮: 待执行批次 %d",
                pass_num,
                max_passes,
                len(pending),
                extra=deploy_fields(pass_num),
            )
            new_pending: List[Batch] = []
            for pos, batch in enumerate(pending):
                if self._cancelled():
                    new_pending.extend(pending[pos:])
                    cancelled = True
                    break
                ok, error = execute(batch)
                executed += 1
                if ok:
                    batch.status = BatchStatus.SUCCEEDED
                    batch.last_error = None
                    self.log.debug(
                        "批次 #%d -> OK",
                        batch.index,
                        extra=deploy_fields(pass_num, batch.index),
                    )
                    continue
                batch.status = BatchStatus.FAILED
                batch.last_error = error or "执行失败"
                new_pending.append(batch)
                self.log.warning(
                    "批次 #%d -> FAIL: %s",
                    batch.index,
                    safe_first_line(batch.last_error, 200, "执行失败"),
                    extra=deploy_fields(pass_num, batch.index),
                )

            succeeded = len(pending) - len(new_pending)
            self.log.info(
                "第 %d 轮结果: 成功 %d, 失败 %d",
                pass_num,
                succeeded,
                len(new_pending),
                extra=deploy_fields(pass_num),
            )

            if cancelled:
                self.log.warning("收到取消信号，停止执行，剩余 %d 个批次。", len(new_pending))
                pending = new_pending
                break

            if new_pending and len(new_pending) == len(pending):
                self.log.warning(
                    "本轮无新成功批次，停止重试 (剩余 %d 个)。",
                    len(new_pending),
                    extra=deploy_fields(pass_num),
                )
                pending = new_pending
                break

            pending = new_pending

        return DeploymentOutcome(
            success=not pending,
            passes_used=pass_num,
            failed_batches=pending,
            cancelled=cancelled,
            total_batches=total,
            executed=executed,
        )
