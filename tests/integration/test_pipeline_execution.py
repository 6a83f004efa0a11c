"""End-to-end pipeline runs against the in-memory provisioning backend."""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest
import requests

from stagecraft.auth import CredentialBroker, ExchangeConfig, OAuthTokenExchange, TokenGrant
from stagecraft.contracts import ResourceDescriptor, RunStatus, StageDefinition, StageStatus
from stagecraft.definitions import RunDefinition
from stagecraft.errors import AuthError, AuthReason, ReconcileError, ReconcileReason
from stagecraft.executor import PipelineExecutor
from stagecraft.reconcile import InMemoryProvisioningBackend
from stagecraft.utils.retry import RetryPolicy


def _stage(name, *deps, **properties):
    return StageDefinition(
        name=name,
        depends_on=list(deps),
        resource=ResourceDescriptor(
            kind="thing", name=name, properties=properties or {"owner": "ml-platform"}
        ),
    )


def _definition(*stages, name="pipeline"):
    return RunDefinition(name=name, stages=list(stages))


class RationedProvider:
    """Issues short-lived tokens until its ration runs out."""

    def __init__(self, ration: int, lifetime: float = 30) -> None:
        self.ration = ration
        self.lifetime = lifetime
        self.calls = 0

    async def exchange(self, assertion: str, scope: str) -> TokenGrant:
        self.calls += 1
        if self.calls > self.ration:
            raise AuthError(AuthReason.ISSUER_UNREACHABLE, "identity provider down")
        return TokenGrant(
            access_token=f"short-{self.calls}",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.lifetime),
        )


class BrokenBackend(InMemoryProvisioningBackend):
    async def apply_diff(self, descriptor, diff, credential):
        if descriptor.name == "broken":
            raise RuntimeError("backend client bug")
        return await super().apply_diff(descriptor, diff, credential)


@pytest.mark.asyncio
async def test_independent_branch_survives_failure(executor, backend, repository):
    backend.fail("thing/a", ReconcileReason.QUOTA_EXCEEDED)
    definition = _definition(_stage("a"), _stage("b", "a"), _stage("c"))

    report = await executor.execute(definition)

    assert report.status == RunStatus.FAILED
    assert report.stage("a").status == StageStatus.FAILED
    assert report.stage("a").error["reason"] == "quota-exceeded"
    assert report.stage("b").status == StageStatus.SKIPPED
    assert report.stage("b").error["reason"] == "dependency-failed"
    assert report.stage("c").status == StageStatus.SUCCEEDED
    assert report.stage("c").changed is True
    assert backend.state("thing/b") is None

    run = await repository.get_run(report.run_id)
    assert run.status == "failed"
    assert {n: r.status for n, r in run.latest_stages().items()} == {
        "a": "failed",
        "b": "skipped",
        "c": "succeeded",
    }


@pytest.mark.asyncio
async def test_skip_cascades_transitively(executor, backend):
    backend.fail("thing/root", ReconcileReason.INVALID_DESIRED_STATE)
    definition = _definition(
        _stage("root"), _stage("mid", "root"), _stage("leaf", "mid"), _stage("other", "leaf")
    )

    report = await executor.execute(definition)
    assert [s.status for s in report.stages] == [
        StageStatus.FAILED,
        StageStatus.SKIPPED,
        StageStatus.SKIPPED,
        StageStatus.SKIPPED,
    ]
    assert backend.count("get") == 1


@pytest.mark.asyncio
async def test_rerun_resumes_idempotently(executor, backend, repository):
    backend.fail("thing/c", ReconcileReason.BACKEND_UNREACHABLE)
    definition = _definition(_stage("a"), _stage("b"), _stage("c", "a", "b"))

    first = await executor.execute(definition)
    assert first.status == RunStatus.FAILED
    assert first.stage("c").error["reason"] == "backend-unreachable"
    assert first.stage("a").changed is True

    second = await executor.execute(definition, run_id=first.run_id)
    assert second.succeeded
    assert second.run_id == first.run_id
    assert second.attempt == 2
    assert second.stage("a").changed is False
    assert second.stage("b").changed is False
    assert second.stage("c").changed is True
    assert backend.count("apply", "thing/a") == 1

    run = await repository.get_run(first.run_id)
    assert run.attempt == 2
    assert run.status == "succeeded"
    assert run.latest_stages()["c"].status == "succeeded"


@pytest.mark.asyncio
async def test_drift_is_corrected_on_rerun(executor, backend):
    definition = _definition(_stage("a", size="small"))
    first = await executor.execute(definition)
    backend.drift("thing/a", size="large")

    second = await executor.execute(definition)
    assert second.stage("a").changed is True
    assert second.stage("a").resource_id == first.stage("a").resource_id
    assert backend.state("thing/a").properties["size"] == "small"


@pytest.mark.asyncio
async def test_wave_stages_run_concurrently(executor, backend):
    for name in ("a", "b", "c"):
        backend.slow(f"thing/{name}", 0.2)
    definition = _definition(_stage("a"), _stage("b"), _stage("c"))

    started = time.monotonic()
    report = await executor.execute(definition)
    elapsed = time.monotonic() - started

    assert report.succeeded
    # each stage observes then applies, so sequential execution takes >= 1.2s
    assert elapsed < 1.0


@pytest.mark.asyncio
async def test_cancellation_finishes_wave_and_skips_the_rest(executor, backend):
    backend.slow("thing/a", 0.2)
    cancel = asyncio.Event()
    definition = _definition(_stage("a"), _stage("b", "a"))

    async def cancel_soon():
        await asyncio.sleep(0.05)
        cancel.set()

    canceller = asyncio.create_task(cancel_soon())
    report = await executor.execute(definition, cancel=cancel)
    await canceller

    assert report.status == RunStatus.FAILED
    assert report.error["reason"] == "cancelled"
    assert report.stage("a").status == StageStatus.SUCCEEDED
    assert report.stage("b").status == StageStatus.SKIPPED
    assert report.stage("b").error["reason"] == "cancelled"


@pytest.mark.asyncio
async def test_auth_failure_before_start_aborts_run(executor, backend, provider, repository):
    provider.error = AuthError(AuthReason.SCOPE_DENIED, "no role assignment")
    definition = _definition(_stage("a"), _stage("b", "a"))

    report = await executor.execute(definition)

    assert report.status == RunStatus.FAILED
    assert report.error["type"] == "AuthError"
    assert report.error["reason"] == "scope-denied"
    assert all(s.status == StageStatus.SKIPPED for s in report.stages)
    assert backend.calls == []
    run = await repository.get_run(report.run_id)
    assert run.error["reason"] == "scope-denied"


@pytest.mark.asyncio
async def test_auth_failure_between_waves_aborts_run(backend, repository, assertion_source):
    # every acquire re-exchanges: run start, wave 1, stage a, then wave 2 fails
    provider = RationedProvider(ration=3)
    broker = CredentialBroker(provider, assertion_source)
    executor = PipelineExecutor(broker, backend, repository=repository, call_timeout=5)
    definition = _definition(_stage("a"), _stage("b", "a"))

    report = await executor.execute(definition)

    assert report.stage("a").status == StageStatus.SUCCEEDED
    assert report.stage("b").status == StageStatus.SKIPPED
    assert report.stage("b").error["reason"] == "run-aborted"
    assert report.error["reason"] == "issuer-unreachable"
    assert report.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_retry_policy_retries_transient_errors(broker, backend, repository):
    executor = PipelineExecutor(
        broker,
        backend,
        repository=repository,
        call_timeout=5,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.01, jitter=0),
    )
    backend.fail("thing/a", ReconcileReason.CONFLICT, times=2)
    backend.fail("thing/b", ReconcileReason.QUOTA_EXCEEDED)

    report = await executor.execute(_definition(_stage("a"), _stage("b")))

    assert report.stage("a").status == StageStatus.SUCCEEDED
    assert backend.count("apply", "thing/a") == 3
    assert report.stage("b").status == StageStatus.FAILED
    assert backend.count("apply", "thing/b") == 1


@pytest.mark.asyncio
async def test_default_policy_does_not_retry(executor, backend):
    backend.fail("thing/a", ReconcileReason.CONFLICT)
    report = await executor.execute(_definition(_stage("a")))
    assert report.stage("a").error["reason"] == "conflict"
    assert backend.count("apply", "thing/a") == 1


@pytest.mark.asyncio
async def test_unexpected_backend_error_fails_stage(broker, repository):
    backend = BrokenBackend()
    executor = PipelineExecutor(broker, backend, repository=repository, call_timeout=5)

    report = await executor.execute(_definition(_stage("broken"), _stage("fine")))

    assert report.stage("broken").status == StageStatus.FAILED
    assert report.stage("broken").error["type"] == "RuntimeError"
    assert report.stage("fine").status == StageStatus.SUCCEEDED
    assert report.status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_stage_timeout_fails_only_that_stage(broker, backend, repository):
    executor = PipelineExecutor(broker, backend, repository=repository, call_timeout=0.05)
    backend.slow("thing/slow", 1.0)

    report = await executor.execute(_definition(_stage("slow"), _stage("quick")))

    assert report.stage("slow").error["reason"] == "backend-unreachable"
    assert report.stage("quick").status == StageStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_credentials_are_not_persisted(executor, repository):
    report = await executor.execute(_definition(_stage("a")))
    run = await repository.get_run(report.run_id)
    dumped = run.model_dump_json()
    assert "token-1" not in dumped
    assert "eyJ" not in dumped


@pytest.mark.asyncio
async def test_broker_cache_is_cleared_after_run(executor, broker):
    await executor.execute(_definition(_stage("a")))
    assert broker.cached("https://management.azure.com/.default") is None


@pytest.mark.asyncio
async def test_garbled_token_response_fails_run_cleanly(
    backend, repository, assertion_source, monkeypatch
):
    class HtmlResp:
        status_code = 200

        def json(self):
            raise ValueError("Expecting value: line 1 column 1")

    monkeypatch.setattr(requests, "post", lambda *a, **kw: HtmlResp())
    provider = OAuthTokenExchange(ExchangeConfig("https://login.example/token", "client"))
    executor = PipelineExecutor(
        CredentialBroker(provider, assertion_source), backend, repository=repository
    )

    report = await executor.execute(_definition(_stage("a")))

    assert report.status == RunStatus.FAILED
    assert report.error["reason"] == "issuer-unreachable"
    run = await repository.get_run(report.run_id)
    assert run.status == "failed"


@pytest.mark.asyncio
async def test_crash_still_records_terminal_status(executor, provider, repository):
    provider.error = RuntimeError("identity client bug")

    with pytest.raises(RuntimeError):
        await executor.execute(_definition(_stage("a")), run_id="crashing-run")

    run = await repository.get_run("crashing-run")
    assert run.status == "failed"
    assert run.error["type"] == "RuntimeError"
