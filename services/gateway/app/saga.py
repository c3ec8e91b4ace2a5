"""
Stock Gateway — Saga ランナー

Saga パターン（オーケストレーション型）:
  Saga は名前付きステップの順序付きリストとして定義する。
  ランナーがリストを先頭から実行し、必須ステップが失敗したら
  それまでに完了したステップの補償を逆順に実行する。

  ┌──────────────────────────────────────────────────────────┐
  │  step 1 ──▶ step 2 ──▶ step 3 ──▶ 完了                    │
  │                          │                               │
  │                          └─ 失敗 → step 2 の補償          │
  │                                    → step 1 の補償        │
  └──────────────────────────────────────────────────────────┘

  各ステップは StepResult を返し、実行の経過は saga_log と
  states (状態遷移の履歴) から確認できる。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from .errors import GatewayError

logger = logging.getLogger(__name__)


class SagaState(str, Enum):
    INIT = "Init"
    # 在庫変更 Saga
    INVENTORY_ADJUSTED = "InventoryAdjusted"
    PRODUCT_SYNCED = "ProductSynced"
    # 商品作成 Saga
    PRODUCT_CREATED = "ProductCreated"
    INVENTORY_CREATED = "InventoryCreated"
    # 失敗時
    ABORTED = "Aborted"
    COMPENSATION_ATTEMPTED = "CompensationAttempted"
    ROLLED_BACK = "RolledBack"
    INCONSISTENT = "Inconsistent"
    ORPHANED = "Orphaned"


class StepStatus(str, Enum):
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


Action = Callable[[dict], Awaitable[Any]]


@dataclass
class StepResult:
    status: StepStatus
    value: Any = None
    error: GatewayError | None = None

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.COMPLETED


@dataclass
class SagaStep:
    """
    Saga の 1 ステップ

    required=False のステップは失敗しても Saga を止めない (ログのみ)。
    can_compensate が False を返すと補償はスキップされる。
    reached は完了時に遷移する状態。
    """

    name: str
    action: Action
    compensation: Action | None = None
    can_compensate: Callable[[dict], bool] | None = None
    required: bool = True
    reached: SagaState | None = None


@dataclass
class SagaOutcome:
    results: dict[str, StepResult]
    failed_step: str | None = None
    error: GatewayError | None = None
    compensations: dict[str, StepResult] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.failed_step is None

    @property
    def compensated(self) -> bool:
        """すべての補償が実行され、成功した。"""
        return bool(self.compensations) and all(
            r.ok for r in self.compensations.values()
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SagaRun:
    """
    1 回分の Saga 実行

    context はステップ間で値を受け渡すための dict。
    ステップの action / compensation は context を受け取り、
    必要な値を書き込む。
    """

    def __init__(
        self,
        name: str,
        steps: list[SagaStep],
        context: dict | None = None,
    ) -> None:
        self.name = name
        self.steps = list(steps)
        self.context: dict = dict(context or {})
        self.saga_log: list[dict] = []
        self.states: list[SagaState] = [SagaState.INIT]
        self._step_no = 0

    @property
    def state(self) -> SagaState:
        return self.states[-1]

    def transition(self, state: SagaState) -> None:
        self.states.append(state)
        self.saga_log.append({"state": state.value, "timestamp": _now()})
        logger.debug("[%s] -> %s", self.name, state.value)

    async def execute(self) -> SagaOutcome:
        results: dict[str, StepResult] = {}
        completed: list[SagaStep] = []

        for step in self.steps:
            result = await self._run(step.name, step.action)
            results[step.name] = result

            if result.ok:
                completed.append(step)
                if step.reached is not None:
                    self.transition(step.reached)
                continue

            if not step.required:
                logger.warning(
                    "[%s] optional step %s failed: %s",
                    self.name, step.name, result.error.message,
                )
                continue

            logger.error(
                "[%s] step %s failed: %s", self.name, step.name, result.error.message
            )
            outcome = SagaOutcome(results, step.name, result.error)
            await self._compensate(completed, outcome)
            return outcome

        return SagaOutcome(results)

    async def _compensate(self, completed: list[SagaStep], outcome: SagaOutcome) -> None:
        pending = [s for s in reversed(completed) if s.compensation is not None]
        if not pending:
            # 下流への書き込みがまだない → 補償不要
            self.transition(SagaState.ABORTED)
            return

        self.transition(SagaState.COMPENSATION_ATTEMPTED)
        for step in pending:
            action = f"{step.name} (COMPENSATING)"
            if step.can_compensate is not None and not step.can_compensate(self.context):
                self._step_no += 1
                self.saga_log.append(
                    {
                        "step": self._step_no,
                        "action": action,
                        "status": StepStatus.SKIPPED.value,
                        "timestamp": _now(),
                    }
                )
                logger.error("[%s] compensation for %s skipped", self.name, step.name)
                outcome.compensations[step.name] = StepResult(StepStatus.SKIPPED)
                continue

            result = await self._run(action, step.compensation)
            outcome.compensations[step.name] = result
            if not result.ok:
                logger.error(
                    "[%s] compensation for %s failed: %s",
                    self.name, step.name, result.error.message,
                )

    async def _run(self, action: str, fn: Action) -> StepResult:
        self._step_no += 1
        entry = {
            "step": self._step_no,
            "action": action,
            "status": StepStatus.EXECUTING.value,
            "timestamp": _now(),
        }
        self.saga_log.append(entry)

        try:
            value = await fn(self.context)
        except GatewayError as e:
            entry["status"] = StepStatus.FAILED.value
            entry["error"] = e.message
            return StepResult(StepStatus.FAILED, error=e)

        entry["status"] = StepStatus.COMPLETED.value
        return StepResult(StepStatus.COMPLETED, value)
