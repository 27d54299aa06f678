"""Tests for the Celery retry task wiring."""

import pytest

from hookrelay.tasks import retry_tasks
from hookrelay.tasks.celery_app import celery_app


def test_task_registered():
    assert "hookrelay.tasks.retry_tasks.process_webhook_retries" in celery_app.tasks


def test_beat_schedule_runs_retry_sweep():
    entry = celery_app.conf.beat_schedule["process-webhook-retries"]
    assert entry["task"] == "hookrelay.tasks.retry_tasks.process_webhook_retries"
    assert entry["schedule"] > 0


@pytest.mark.asyncio
async def test_process_retries_runs_one_sweep(monkeypatch):
    calls = []

    async def fake_run_once(self, now=None):
        calls.append(self.batch_size)
        return 2

    monkeypatch.setattr("hookrelay.services.retry_scheduler.RetryScheduler.run_once", fake_run_once)
    assert await retry_tasks._process_retries() == 2
    assert len(calls) == 1
