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
Staged schema cloning pipeline.

Stages run in a fixed order (base schema, constraints, indexes, keys,
programmables, users) because later stages assume the objects of earlier ones
exist. Each stage asks an external generator for its script, splits it into
GO batches and deploys them through RetryScheduler.

A stage that ends with failed batches does not stop the pipeline. Setup
problems (no destination session, script cannot be generated or read) abort
the remaining stages with SetupError; the partial run is attached to the
exception as ``pipeline_run``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from batch_splitter import Batch, BatchStatus, split_batches
from clone_errors import SetupError, SplitError
from log_utils import format_progress_label, log_section, log_subsection
from retry_scheduler import DEFAULT_MAX_PASSES, DeploymentOutcome, ExecuteFn, RetryScheduler

DEFAULT_STAGE_NAMES = (
    "base_schema",
    "constraints",
    "indexes",
    "keys",
    "programmables",
    "users",
)

STAGE_LABELS = {
    "base_schema": "基础对象 (表/类型/架构)",
    "constraints": "约束",
    "indexes": "索引",
    "keys": "主键/外键",
    "programmables": "视图/存储过程/函数/触发器",
    "users": "用户/角色/权限",
}


@dataclass
class Stage:
    name: str
    order: int
    script_path: Path
    max_passes: int = DEFAULT_MAX_PASSES

    @property
    def label(self) -> str:
        return STAGE_LABELS.get(self.name, self.name)


@dataclass
class StageOutcome:
    stage: Stage
    outcome: DeploymentOutcome
    error: Optional[str] = None
    # script actually deployed; the generator may return another path than stage.script_path
    script_path: Optional[Path] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.outcome.success


@dataclass
class PipelineRun:
    source: str
    destination: str
    stages: List[StageOutcome] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    aborted: Optional[str] = None

    @property
    def success(self) -> bool:
        return (
            not self.cancelled
            and self.aborted is None
            and all(item.success for item in self.stages)
        )

    @property
    def failed_stages(self) -> List[StageOutcome]:
        return [item for item in self.stages if not item.success]

    @property
    def failed_batch_count(self) -> int:
        return sum(len(item.outcome.failed_batches) for item in self.stages)

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()


GeneratorFn = Callable[[Stage], Union[str, Path, None]]
ExecutorFactory = Callable[[], ExecuteFn]


def build_default_stages(
    script_dir: Path,
    max_passes: int = DEFAULT_MAX_PASSES,
    overrides: Optional[Dict[str, int]] = None,
    names: Sequence[str] = DEFAULT_STAGE_NAMES,
) -> List[Stage]:
    """Build stages in the given order with scripts named ``NN_<stage>.sql``."""
    overrides = overrides or {}
    stages: List[Stage] = []
    for order, name in enumerate(names, start=1):
        stages.append(
            Stage(
                name=name,
                order=order,
                script_path=Path(script_dir) / f"{order:02d}_{name}.sql",
                max_passes=overrides.get(name, max_passes),
            )
        )
    return stages


def read_stage_script(script_path: Path, max_bytes: Optional[int] = None) -> str:
    """Read a generated stage script in full; any problem is a SetupError."""
    path = Path(script_path)
    if not path.is_file():
        raise SetupError(f"阶段脚本不存在: {path}")
    try:
        if max_bytes and max_bytes > 0:
            size = path.stat().st_size
            if size > max_bytes:
                raise SetupError(f"文件过大 ({size} bytes) 超过限制 {max_bytes} bytes: {path}")
        return path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as exc:
        raise SetupError(f"读取阶段脚本失败: {path}: {exc}") from exc


class StagePipeline:
    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        cancel_event: Optional[threading.Event] = None,
        max_script_bytes: Optional[int] = None,
    ):
        self.log = logger or logging.getLogger(__name__)
        self.cancel_event = cancel_event
        self.max_script_bytes = max_script_bytes
        self.scheduler = RetryScheduler(logger=self.log, cancel_event=cancel_event)

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def run(
        self,
        source: str,
        destination: str,
        stages: Sequence[Stage],
        generator: GeneratorFn,
        executor_factory: ExecutorFactory,
    ) -> PipelineRun:
        run = PipelineRun(source=source, destination=destination)
        ordered = sorted(stages, key=lambda s: s.order)
        log_section(self.log, f"克隆 {source} -> {destination}")
        self.log.info("阶段数: %d", len(ordered))

        executor = None
        try:
            try:
                executor = executor_factory()
            except SetupError:
                raise
            except Exception as exc:
                raise SetupError(f"无法建立目标会话: {exc}") from exc

            width = len(str(len(ordered))) or 1
            for idx, stage in enumerate(ordered, start=1):
                if self._cancelled():
                    self.log.warning("收到取消信号，跳过剩余 %d 个阶段。", len(ordered) - idx + 1)
                    run.cancelled = True
                    break
                label = format_progress_label(idx, len(ordered), width)
                log_subsection(self.log, f"{label} 阶段 {stage.name}: {stage.label}")
                stage_outcome = self._run_stage(stage, generator, executor)
                run.stages.append(stage_outcome)
                if stage_outcome.outcome.cancelled:
                    run.cancelled = True
                    break
        except SetupError as exc:
            if exc.stage_outcome is not None:
                run.stages.append(exc.stage_outcome)
            run.aborted = str(exc)
            run.finished_at = datetime.now()
            self.log.error("致命错误，终止剩余阶段: %s", exc)
            exc.pipeline_run = run
            raise
        finally:
            close = getattr(executor, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as exc:
                    self.log.warning("关闭目标会话失败: %s", exc)

        run.finished_at = datetime.now()
        return run

    def _aborted_stage(self, stage: Stage, exc: SetupError, batches: Sequence[Batch] = (),
                       script_path: Optional[Path] = None) -> SetupError:
        """Attach what ran of ``stage`` to ``exc`` so the aborted run still lists it."""
        unfinished = [batch for batch in batches if batch.status != BatchStatus.SUCCEEDED]
        exc.stage_outcome = StageOutcome(
            stage=stage,
            outcome=DeploymentOutcome(
                success=False,
                passes_used=self.scheduler.current_pass if batches else 0,
                failed_batches=unfinished,
                total_batches=len(batches),
            ),
            error=str(exc),
            script_path=script_path,
        )
        return exc

    def _run_stage(self, stage: Stage, generator: GeneratorFn, executor: ExecuteFn) -> StageOutcome:
        try:
            generated = generator(stage)
        except SetupError as exc:
            raise self._aborted_stage(stage, exc)
        except Exception as exc:
            raise self._aborted_stage(stage, SetupError(f"阶段 {stage.name} 脚本生成失败: {exc}")) from exc
        script_path = Path(generated) if generated else stage.script_path
        try:
            script_text = read_stage_script(script_path, self.max_script_bytes)
        except SetupError as exc:
            raise self._aborted_stage(stage, exc, script_path=script_path)

        try:
            batches = split_batches(script_text)
        except SplitError as exc:
            self.log.error("阶段 %s 脚本解析失败: %s (%s)", stage.name, exc, script_path)
            return StageOutcome(
                stage=stage,
                outcome=DeploymentOutcome(success=False, passes_used=0, failed_batches=[]),
                error=str(exc),
                script_path=script_path,
            )

        self.log.info("脚本: %s, 批次数: %d, 最大轮次: %d", script_path, len(batches), stage.max_passes)
        try:
            outcome = self.scheduler.run(batches, executor, stage.max_passes)
        except SetupError as exc:
            raise self._aborted_stage(stage, exc, batches, script_path)
        except Exception as exc:
            setup_exc = SetupError(f"阶段 {stage.name} 执行中断: {exc}")
            raise self._aborted_stage(stage, setup_exc, batches, script_path) from exc

        if outcome.success:
            self.log.info("阶段 %s -> OK (%d 轮)", stage.name, outcome.passes_used)
        else:
            self.log.warning(
                "阶段 %s -> FAIL (%d/%d 批次失败, %d 轮)",
                stage.name,
                len(outcome.failed_batches),
                outcome.total_batches,
                outcome.passes_used,
            )
        return StageOutcome(stage=stage, outcome=outcome, script_path=script_path)
