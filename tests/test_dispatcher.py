from __future__ import annotations

import os
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import chronojob.db.session as db_session_module
from chronojob.auth.gate import ActorSnapshot, AuthorizationGate
from chronojob.core.config import get_settings
from chronojob.db.init_db import initialize_database
from chronojob.db.models import JobStatus, PlatformRole
from chronojob.jobs.dispatcher import DueJobDispatcher, summary_to_dict
from chronojob.jobs.executor import UNKNOWN_JOB_TYPE, JobExecutor
from chronojob.jobs.registry import HandlerRegistry, HandlerResult
from chronojob.jobs.store import JobAlreadyClaimedError, JobStore
from chronojob.jobs.trigger import ManualTriggerService


def setup_env(tmp_path: Path) -> tuple[JobStore, HandlerRegistry]:
    state_root = tmp_path / "state"
    state_root.mkdir(parents=True, exist_ok=True)
    os.environ["CHRONOJOB_ENVIRONMENT"] = "test"
    os.environ["CHRONOJOB_STATE_ROOT"] = state_root.as_posix()
    os.environ["CHRONOJOB_DISPATCH_SECRET"] = ""
    os.environ["CHRONOJOB_AUTH_SOFT_FAIL"] = "false"
    os.environ["CHRONOJOB_HANDLER_TIMEOUT_SECONDS"] = "5"
    os.environ["CHRONOJOB_RETRY_BACKOFF_STRATEGY"] = "exponential"
    os.environ["CHRONOJOB_RETRY_BASE_SECONDS"] = "30"
    os.environ["CHRONOJOB_RETRY_MAX_SECONDS"] = "3600"
    os.environ["CHRONOJOB_RECOVER_STALE_ON_DISPATCH"] = "true"

    get_settings.cache_clear()
    db_session_module.reset_engine()
    initialize_database()
    return JobStore(get_settings(), db_session_module.get_session_factory()), HandlerRegistry()


def make_dispatcher(store: JobStore, registry: HandlerRegistry, claimant: str) -> DueJobDispatcher:
    settings = get_settings()
    return DueJobDispatcher(settings, store, JobExecutor(settings, store, registry), claimant=claimant)


def test_one_shot_due_job_succeeds_and_future_job_is_untouched(tmp_path: Path) -> None:
    store, registry = setup_env(tmp_path)
    registry.register("noop", lambda payload: None)
    now = datetime.now(tz=timezone.utc)
    due = store.create_job("noop", next_run_at=now - timedelta(seconds=1))
    future = store.create_job("noop", next_run_at=now + timedelta(minutes=1))

    summary = make_dispatcher(store, registry, "dispatch-a").process_due_jobs(now)

    assert summary.attempted == 1
    assert summary.succeeded == 1
    assert summary.failed == 0
    assert summary.skipped == 0
    assert summary.errors == []
    finished = store.get(due.id)
    assert finished.status == JobStatus.SUCCEEDED
    assert finished.next_run_at is None
    untouched = store.get(future.id)
    assert untouched.status == JobStatus.PENDING
    assert untouched.last_run_at is None


def test_failures_are_isolated_and_reported(tmp_path: Path) -> None:
    store, registry = setup_env(tmp_path)

    def broken(payload):
        raise RuntimeError("boom")

    registry.register("broken", broken)
    registry.register("noop", lambda payload: None)
    registry.register("refuse", lambda payload: HandlerResult.failure("quota exhausted upstream"))
    now = datetime.now(tz=timezone.utc)
    store.create_job("broken", max_retries=0, next_run_at=now - timedelta(minutes=3))
    unknown = store.create_job("unregistered", next_run_at=now - timedelta(minutes=2))
    store.create_job("refuse", max_retries=2, next_run_at=now - timedelta(minutes=1))
    ok_job = store.create_job("noop", next_run_at=now)

    summary = make_dispatcher(store, registry, "dispatch-a").process_due_jobs(now)

    assert summary.attempted == 4
    assert summary.succeeded == 1
    assert summary.failed == 3
    assert store.get(ok_job.id).status == JobStatus.SUCCEEDED

    errors = {entry.job_type: entry for entry in summary.errors}
    assert errors["broken"].status == JobStatus.FAILED
    assert errors["unregistered"].error_code == UNKNOWN_JOB_TYPE
    assert errors["unregistered"].job_id == unknown.id
    assert errors["refuse"].status == JobStatus.PENDING
    assert errors["refuse"].retry_count == 1
    assert errors["refuse"].message == "quota exhausted upstream"

    payload = summary_to_dict(summary)
    assert payload["failed"] == 3
    assert {entry["status"] for entry in payload["errors"]} == {"failed", "pending"}


def test_scenario_b_recurring_failure_reaches_failed_after_three_cycles(tmp_path: Path) -> None:
    store, registry = setup_env(tmp_path)
    registry.register("flaky", lambda payload: {"ok": False, "error": "still down"})
    dispatcher = make_dispatcher(store, registry, "dispatch-a")
    now = datetime.now(tz=timezone.utc)
    job = store.create_job("flaky", recurrence_rule="every 5m", max_retries=2, next_run_at=now)

    cycle_at = now
    for _ in range(3):
        summary = dispatcher.process_due_jobs(cycle_at)
        assert summary.failed == 1
        current = store.get(job.id)
        cycle_at = current.next_run_at or cycle_at

    final = store.get(job.id)
    assert final.status == JobStatus.FAILED
    assert final.retry_count == 2
    assert final.next_run_at is None


def test_concurrent_dispatches_execute_each_job_once(tmp_path: Path) -> None:
    store, registry = setup_env(tmp_path)
    executions: list[str] = []
    lock = threading.Lock()

    def record(payload):
        with lock:
            executions.append(payload["key"])
        return None

    registry.register("record", record)
    now = datetime.now(tz=timezone.utc)
    for index in range(12):
        store.create_job("record", payload={"key": f"job-{index}"}, next_run_at=now - timedelta(seconds=index))

    barrier = threading.Barrier(2)
    summaries = []

    def run(claimant: str) -> None:
        dispatcher = make_dispatcher(store, registry, claimant)
        barrier.wait(timeout=5)
        summary = dispatcher.process_due_jobs(now)
        with lock:
            summaries.append(summary)

    threads = [threading.Thread(target=run, args=(name,)) for name in ("dispatch-a", "dispatch-b")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(executions) == sorted(f"job-{index}" for index in range(12))
    assert sum(summary.succeeded for summary in summaries) == 12
    assert sum(summary.attempted for summary in summaries) == 12
    # a job the other dispatcher finished first is either skipped or never selected
    assert all(summary.failed == 0 for summary in summaries)


def test_scenario_d_manual_trigger_races_periodic_dispatch(tmp_path: Path) -> None:
    store, registry = setup_env(tmp_path)
    runs: list[str] = []
    lock = threading.Lock()

    def record(payload):
        with lock:
            runs.append("run")
        return None

    registry.register("record", record)
    now = datetime.now(tz=timezone.utc)
    job = store.create_job("record", next_run_at=now - timedelta(seconds=1))
    settings = get_settings()
    dispatcher = make_dispatcher(store, registry, "dispatch-a")
    trigger = ManualTriggerService(
        settings,
        store,
        JobExecutor(settings, store, registry),
        AuthorizationGate(settings, db_session_module.get_session_factory()),
    )
    operator = ActorSnapshot(
        id="operator-1",
        email="ops@example.com",
        display_name="Ops",
        platform_role=PlatformRole.PLATFORM_ADMIN,
        is_active=True,
    )

    barrier = threading.Barrier(2)
    outcomes: list[str] = []

    def manual() -> None:
        barrier.wait(timeout=5)
        try:
            trigger.trigger(job.id, operator, now=now)
        except JobAlreadyClaimedError:
            with lock:
                outcomes.append("manual-conflict")
        else:
            with lock:
                outcomes.append("manual-ran")

    def periodic() -> None:
        barrier.wait(timeout=5)
        summary = dispatcher.process_due_jobs(now)
        with lock:
            outcomes.append("dispatch-ran" if summary.succeeded else "dispatch-skipped")

    threads = [threading.Thread(target=manual), threading.Thread(target=periodic)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert runs == ["run"]
    assert len(outcomes) == 2
    assert ("manual-ran" in outcomes) != ("dispatch-ran" in outcomes)
    assert store.get(job.id).status == JobStatus.SUCCEEDED


def test_later_jobs_in_a_pass_are_timed_from_their_own_start(tmp_path: Path) -> None:
    store, registry = setup_env(tmp_path)
    observed: dict[str, datetime] = {}

    def slow(payload):
        time.sleep(0.5)
        observed["slow_done"] = datetime.now(tz=timezone.utc)
        return None

    def tick(payload):
        observed["tick"] = datetime.now(tz=timezone.utc)
        return None

    def refuse(payload):
        observed["refuse"] = datetime.now(tz=timezone.utc)
        return HandlerResult.failure("upstream unavailable")

    registry.register("slow", slow)
    registry.register("tick", tick)
    registry.register("refuse", refuse)
    now = datetime.now(tz=timezone.utc)
    store.create_job("slow", next_run_at=now - timedelta(seconds=3))
    recurring = store.create_job("tick", recurrence_rule="every 1s", next_run_at=now - timedelta(seconds=2))
    retried = store.create_job("refuse", max_retries=3, next_run_at=now - timedelta(seconds=1))

    summary = make_dispatcher(store, registry, "dispatch-a").process_due_jobs(now)

    assert summary.attempted == 3
    ticked = store.get(recurring.id)
    assert ticked.status == JobStatus.PENDING
    assert ticked.last_run_at >= observed["slow_done"]
    assert ticked.next_run_at > observed["tick"]

    backed_off = store.get(retried.id)
    assert backed_off.retry_count == 1
    assert backed_off.last_run_at >= observed["slow_done"]
    assert backed_off.next_run_at >= observed["refuse"] + timedelta(seconds=29)
