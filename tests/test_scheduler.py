from apscheduler.triggers.cron import CronTrigger

from app.jobs import scheduler as scheduler_module
from app.jobs.scheduler import (
    register_sync_runner,
    run_external_sync,
    run_startup_processing,
    schedule_jobs,
    start_scheduler,
)


class _FakeScheduler:
    def __init__(self):
        self.jobs = {}
        self.running = False
        self.started = False

    def add_job(self, func, trigger=None, **kwargs):
        self.jobs[kwargs["id"]] = (func, trigger, kwargs)

    def get_jobs(self):
        return list(self.jobs)

    def start(self):
        self.started = True
        self.running = True


def _install_fake_scheduler(monkeypatch):
    fake = _FakeScheduler()
    monkeypatch.setattr(scheduler_module, "scheduler", fake)
    return fake


def test_schedule_jobs_registers_drain_and_startup_jobs(app, monkeypatch):
    fake = _install_fake_scheduler(monkeypatch)

    schedule_jobs(app)

    assert set(fake.jobs) == {"ai_processing", "ai_processing_startup"}
    func, trigger, kwargs = fake.jobs["ai_processing"]
    assert func is scheduler_module.run_ai_processing
    assert isinstance(trigger, CronTrigger)
    assert str(trigger.fields[6]) == "*/15"
    assert kwargs["kwargs"] == {"app": app}
    assert kwargs["max_instances"] == 1
    assert fake.jobs["ai_processing_startup"][1] == "date"


def test_sync_job_only_exists_with_a_runner(app, monkeypatch):
    fake = _install_fake_scheduler(monkeypatch)

    register_sync_runner(app, lambda _app: None)
    schedule_jobs(app)

    func, trigger, _kwargs = fake.jobs["external_sync"]
    assert func is run_external_sync
    assert str(trigger.fields[5]) == "0,12"


def test_registering_runner_on_running_scheduler_adds_job(app, monkeypatch):
    fake = _install_fake_scheduler(monkeypatch)
    fake.running = True

    register_sync_runner(app, lambda _app: None)

    assert "external_sync" in fake.jobs


def test_start_scheduler_respects_config(app, monkeypatch):
    fake = _install_fake_scheduler(monkeypatch)

    start_scheduler(app)
    assert not fake.started

    app.config["SCHEDULER_ENABLED"] = True
    start_scheduler(app)
    assert fake.started
    assert "ai_processing" in fake.jobs


def test_external_sync_runs_drain_even_when_runner_fails(app, monkeypatch):
    calls = []

    def _runner(_app):
        calls.append("sync")
        raise RuntimeError("upstream offline")

    monkeypatch.setattr(
        app.extensions["ai_processor"],
        "process_after_sync",
        lambda user_id=None: calls.append("drain"),
    )
    register_sync_runner(app, _runner)

    run_external_sync(app)

    assert calls == ["sync", "drain"]


def test_startup_job_recovers_then_drains(app, monkeypatch):
    calls = []
    processor = app.extensions["ai_processor"]
    monkeypatch.setattr(processor, "recover_interrupted", lambda: calls.append("recover"))
    monkeypatch.setattr(
        processor,
        "process_pending_bookmarks",
        lambda user_id=None: calls.append("drain"),
    )

    run_startup_processing(app)

    assert calls == ["recover", "drain"]
