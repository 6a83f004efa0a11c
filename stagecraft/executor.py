"""Pipeline execution engine for stagecraft runs."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from .auth import CredentialBroker, get_broker
from .config import StagecraftConfig
from .constants import DEFAULT_CALL_TIMEOUT
from .contracts import (
    Credential,
    ReconcileResult,
    ResourceDescriptor,
    Run,
    RunReport,
    RunStatus,
    Stage,
    StageKind,
    StageStatus,
    utcnow,
)
from .definitions import RunDefinition
from .errors import AuthError, ReconcileError, ReconcileReason, StagecraftError
from .graph import StageGraph
from .persistence import RunRepository, get_repository
from .reconcile import ProvisioningBackend, ResourceReconciler, get_backend
from .rollout import RolloutController, RolloutPlan
from .utils.retry import RetryPolicy, schedule_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _skip_reason(reason: str, message: str) -> Dict[str, str]:
    return {"type": "Skipped", "reason": reason, "message": message}


class PipelineExecutor:
    """Runs a stage graph wave by wave.

    Every wave dispatches all ready stages concurrently and waits for all of
    them to settle before readiness is recomputed. A failed stage skips the
    stages that transitively depend on it while independent branches carry
    on. Stages never rerun within a run; re-executing a run id is the retry
    unit and re-checks stages that already succeeded.
    """

    def __init__(
        self,
        broker: CredentialBroker,
        backend: ProvisioningBackend,
        repository: RunRepository | None = None,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        rollout_controller: RolloutController | None = None,
    ) -> None:
        self._broker = broker
        self._backend = backend
        self._repository = repository or get_repository()
        self._reconciler = ResourceReconciler(backend, default_timeout=call_timeout)
        self._rollouts = rollout_controller or RolloutController(self._reconciler)
        self.call_timeout = call_timeout
        self.retry_policy = retry_policy or RetryPolicy()

    @classmethod
    def from_config(
        cls,
        config: StagecraftConfig,
        broker: CredentialBroker | None = None,
        backend: ProvisioningBackend | None = None,
        repository: RunRepository | None = None,
    ) -> "PipelineExecutor":
        """Build an executor from loaded configuration."""
        return cls(
            broker=broker or get_broker(config),
            backend=backend or get_backend(config=config),
            repository=repository or get_repository(config=config),
            call_timeout=config.execution.call_timeout,
            retry_policy=config.execution.retry,
        )

    # ------------------------------------------------------------------
    async def execute(
        self,
        definition: RunDefinition,
        run_id: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> RunReport:
        """Execute ``definition`` and return the final report.

        Passing the ``run_id`` of an earlier run re-invokes it as a new
        attempt. Setting ``cancel`` stops dispatching further waves; stages
        already in flight finish and everything not started is skipped.

        Raises:
            DefinitionError: When the definition is malformed.
            CycleError: When stage dependencies contain a cycle.
        """
        graph = definition.graph()
        run = Run(
            run_id=run_id or str(uuid.uuid4()),
            name=definition.name,
            scope=definition.scope,
            stages={name: Stage(definition=graph[name]) for name in graph.topological_order()},
        )
        await self._repository.create_run(run.run_id, run.name, definition.to_document())
        run.attempt = await self._repository.start_attempt(run.run_id)
        logger.info(
            f"Starting run {run.run_id} ({run.name}) attempt {run.attempt} "
            f"with {len(graph)} stages"
        )

        try:
            await self._backend.connect()
            try:
                try:
                    await self._credential(run.scope)
                except AuthError as exc:
                    logger.error(f"Run {run.run_id} aborted before any stage ran: {exc}")
                    run.error = exc.to_dict()
                else:
                    run.status = RunStatus.RUNNING
                    await self._drive(run, graph, cancel)
            finally:
                self._broker.clear()
                await self._backend.disconnect()
        except BaseException as exc:
            logger.exception(f"Run {run.run_id} attempt {run.attempt} crashed")
            run.status = RunStatus.FAILED
            run.error = {"type": type(exc).__name__, "reason": None, "message": str(exc)}
            await self._repository.mark_run_completed(
                run.run_id, run.status.value, run.error
            )
            raise

        for stage in run.stages.values():
            if stage.status == StageStatus.PENDING:
                reason = (
                    _skip_reason("cancelled", "run was cancelled before this stage started")
                    if run.error and run.error.get("reason") == "cancelled"
                    else _skip_reason("run-aborted", "run aborted before this stage started")
                )
                await self._mark_skipped(run, stage, reason)

        status = run.settle()
        await self._repository.mark_run_completed(run.run_id, status.value, run.error)
        log = logger.info if status == RunStatus.SUCCEEDED else logger.error
        log(
            f"Run {run.run_id} attempt {run.attempt} {status.value}: "
            + ", ".join(f"{name}={stage.status.value}" for name, stage in run.stages.items())
        )
        return RunReport.from_run(run)

    async def _drive(
        self, run: Run, graph: StageGraph, cancel: Optional[asyncio.Event]
    ) -> None:
        completed: set[str] = set()
        dispatched: set[str] = set()
        wave = 0
        while True:
            ready = [
                name
                for name in graph.ready(completed, dispatched)
                if run.stages[name].status == StageStatus.PENDING
            ]
            if not ready:
                return

            if cancel is not None and cancel.is_set():
                logger.warning(f"Run {run.run_id} cancelled; no further waves dispatched")
                run.error = {
                    "type": "Cancelled",
                    "reason": "cancelled",
                    "message": "run cancelled by caller",
                }
                return

            try:
                await self._credential(run.scope)
            except AuthError as exc:
                logger.error(f"Run {run.run_id} lost its credential: {exc}")
                run.error = exc.to_dict()
                return

            wave += 1
            dispatched.update(ready)
            logger.info(f"Run {run.run_id} wave {wave}: {', '.join(ready)}")
            fatal = await asyncio.gather(
                *(self._run_stage(run, run.stages[name]) for name in ready)
            )

            for name in ready:
                status = run.stages[name].status
                if status == StageStatus.SUCCEEDED:
                    completed.add(name)
                elif status == StageStatus.FAILED:
                    await self._skip_dependents(run, graph, name)

            auth_errors = [error for error in fatal if error is not None]
            if auth_errors:
                run.error = auth_errors[0].to_dict()
                return

    # ------------------------------------------------------------------
    async def _credential(self, scope: str) -> Credential:
        return await self._broker.acquire(scope, min_validity=self.call_timeout)

    async def _run_stage(self, run: Run, stage: Stage) -> Optional[AuthError]:
        """Execute one stage and record its outcome.

        Returns the :class:`AuthError` that stopped it, if any, so the caller
        can abort the run.
        """
        stage.status = StageStatus.RUNNING
        stage.started_at = utcnow()
        await self._repository.mark_stage_started(run.run_id, stage.name, run.attempt)
        logger.info(f"Stage {stage.name} started")

        fatal: Optional[AuthError] = None
        try:
            if stage.definition.kind == StageKind.ROLLOUT:
                result = await self._rollout_stage(run, stage)
            else:
                result = await self._reconcile_stage(run, stage)
        except AuthError as exc:
            fatal = exc
            self._fail(stage, exc.to_dict())
        except StagecraftError as exc:
            self._fail(stage, exc.to_dict())
        except Exception as exc:
            logger.exception(f"Stage {stage.name} raised an unexpected error")
            self._fail(stage, {"type": type(exc).__name__, "reason": None, "message": str(exc)})
        else:
            stage.status = StageStatus.SUCCEEDED
            stage.resource_id = result.resource_id
            stage.changed = result.changed
            logger.info(
                f"Stage {stage.name} succeeded "
                f"({'changed' if result.changed else 'unchanged'}, {result.resource_id})"
            )

        stage.finished_at = utcnow()
        await self._repository.mark_stage_completed(
            run.run_id,
            stage.name,
            stage.status.value,
            output=self._stage_output(stage),
            attempt=run.attempt,
        )
        return fatal

    def _fail(self, stage: Stage, error: Dict) -> None:
        stage.status = StageStatus.FAILED
        stage.error = error
        logger.error(f"Stage {stage.name} failed: {error['reason']}: {error['message']}")

    @staticmethod
    def _stage_output(stage: Stage) -> Dict:
        return {
            "resource_id": stage.resource_id,
            "changed": stage.changed,
            "error": stage.error,
        }

    async def _mark_skipped(self, run: Run, stage: Stage, reason: Dict[str, str]) -> None:
        stage.status = StageStatus.SKIPPED
        stage.error = reason
        stage.finished_at = utcnow()
        await self._repository.mark_stage_completed(
            run.run_id,
            stage.name,
            stage.status.value,
            output=self._stage_output(stage),
            attempt=run.attempt,
        )

    async def _skip_dependents(self, run: Run, graph: StageGraph, failed: str) -> None:
        for name in graph.descendants(failed):
            stage = run.stages[name]
            if stage.status != StageStatus.PENDING:
                continue
            logger.warning(f"Skipping stage {name}: dependency {failed} failed")
            await self._mark_skipped(
                run, stage, _skip_reason("dependency-failed", f"dependency {failed} failed")
            )

    async def _with_retry(
        self, label: str, scope: str, call: Callable[[Credential], Awaitable[T]]
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            credential = await self._credential(scope)
            try:
                return await call(credential)
            except ReconcileError as exc:
                if not exc.retryable or attempt >= self.retry_policy.max_attempts:
                    raise
                logger.warning(
                    f"{label} failed with {exc.reason.value} "
                    f"(attempt {attempt}/{self.retry_policy.max_attempts}); retrying"
                )
                await schedule_retry(attempt, self.retry_policy)

    async def _reconcile_stage(self, run: Run, stage: Stage) -> ReconcileResult:
        descriptor = stage.definition.resource
        return await self._with_retry(
            f"Stage {stage.name}",
            run.scope,
            lambda credential: self._reconciler.reconcile(
                descriptor, credential, timeout=self.call_timeout
            ),
        )

    async def _rollout_stage(self, run: Run, stage: Stage) -> ReconcileResult:
        spec = stage.definition.rollout
        endpoint_ref = ResourceDescriptor(kind=spec.endpoint_kind, name=spec.endpoint)
        observed = await self._with_retry(
            f"Stage {stage.name}",
            run.scope,
            lambda credential: self._reconciler.observe(
                endpoint_ref, credential, timeout=self.call_timeout
            ),
        )
        if observed is None:
            raise ReconcileError(
                ReconcileReason.INVALID_DESIRED_STATE,
                f"endpoint {spec.endpoint} does not exist",
            )

        current = {name: 0 for name in spec.deployments}
        current.update(observed.properties.get("traffic") or {})
        plan = self._rollouts.plan(spec.endpoint, current, spec.traffic, spec.steps)

        changed = False
        try:
            while (snapshot := self._rollouts.advance(plan)) is not None:
                if plan.committed and spec.interval:
                    await asyncio.sleep(spec.interval)
                result = await self._with_retry(
                    f"Stage {stage.name} step {snapshot.index}",
                    run.scope,
                    lambda credential: self._rollouts.commit(
                        plan, snapshot, credential, timeout=self.call_timeout
                    ),
                )
                changed = changed or result.changed
        except BaseException:
            await self._abort_rollout(run, plan)
            raise
        return ReconcileResult(changed=changed, resource_id=observed.resource_id)

    async def _abort_rollout(self, run: Run, plan: RolloutPlan) -> None:
        try:
            credential = await self._credential(run.scope)
            await self._rollouts.abort(plan, credential, timeout=self.call_timeout)
        except Exception as exc:
            logger.error(
                f"Could not restore last committed traffic on {plan.endpoint}: {exc}"
            )
        finally:
            self._rollouts.release(plan)
