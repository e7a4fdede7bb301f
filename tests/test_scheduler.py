"""Tests for the optimization maintenance scheduler."""

import json
from unittest.mock import Mock

import pytest

from scheduler import OptimizationScheduler


@pytest.fixture
def mock_logger():
    return Mock()


@pytest.fixture
def scheduler(tmp_path, mock_logger):
    """Create a scheduler writing task summaries to a temporary file."""
    return OptimizationScheduler(logger=mock_logger, tasks_file=str(tmp_path / "tasks.json"))


def test_add_daily_task(scheduler, tmp_path):
    task_id = scheduler.add_task("Nightly", lambda: "done", "daily", at_time="02:00")

    task = scheduler.get_tasks()[task_id]
    assert task.next_run is not None
    assert task.next_run.strftime("%H:%M") == "02:00"

    summary = task.to_dict()
    assert summary["name"] == "Nightly"
    assert summary["schedule_type"] == "daily"
    assert summary["status"] == "scheduled"

    with open(tmp_path / "tasks.json") as f:
        saved = json.load(f)
    assert task_id in saved


def test_weekly_task_needs_day(scheduler):
    with pytest.raises(ValueError):
        scheduler.add_task("Weekly", lambda: None, "weekly")


def test_unsupported_schedule_type(scheduler):
    with pytest.raises(ValueError):
        scheduler.add_task("Monthly", lambda: None, "monthly")


def test_run_task_now_records_history(scheduler):
    task_id = scheduler.add_task("Echo", lambda x: x * 2, "hourly", args=[21])

    assert scheduler.run_task_now(task_id) is True

    task = scheduler.get_tasks()[task_id]
    assert task.status == "completed"
    assert task.result == 42
    history = scheduler.get_task_history()
    assert history[-1]["status"] == "completed"
    assert "error" not in history[-1]


def test_failed_task_is_recorded(scheduler, mock_logger):
    def boom():
        raise RuntimeError("store unavailable")

    task_id = scheduler.add_task("Boom", boom, "hourly")
    scheduler.run_task_now(task_id)

    task = scheduler.get_tasks()[task_id]
    assert task.status == "failed"
    assert task.error == "store unavailable"
    assert scheduler.get_task_history()[-1]["error"] == "store unavailable"
    mock_logger.error.assert_called()


def test_run_unknown_task(scheduler):
    assert scheduler.run_task_now("missing") is False


def test_remove_task(scheduler):
    task_id = scheduler.add_task("Nightly", lambda: None, "daily")

    assert scheduler.remove_task(task_id) is True
    assert task_id not in scheduler.get_tasks()
    assert scheduler.scheduler.jobs == []
    assert scheduler.remove_task(task_id) is False


def test_schedule_priors_jobs(scheduler):
    priors = Mock()
    priors.update_all_priors.return_value = {"global_priors": 2}

    refresh_id = scheduler.schedule_priors_refresh(priors, "03:30")
    cleanup_id = scheduler.schedule_priors_cleanup(priors, "sunday", retention_days=90)

    scheduler.run_task_now(refresh_id)
    scheduler.run_task_now(cleanup_id)

    priors.update_all_priors.assert_called_once_with()
    priors.clean_old_priors.assert_called_once_with(retention_days=90)
    assert scheduler.get_tasks()[refresh_id].result == {"global_priors": 2}
    assert scheduler.get_tasks()[cleanup_id].day_of_week == "sunday"


def test_schedule_rollout_step(scheduler):
    flags = Mock()
    flags.gradual_rollout.return_value = {"success": True, "current_percentage": 20.0}

    task_id = scheduler.schedule_rollout_step(flags, "hierarchical_empirical_bayes", 50, increment=10)
    scheduler.run_task_now(task_id)

    flags.gradual_rollout.assert_called_once_with("hierarchical_empirical_bayes", 50, increment_per_step=10)
    assert scheduler.get_tasks()[task_id].interval_hours == 2


def test_start_and_stop(scheduler):
    scheduler.start()
    assert scheduler.is_running()
    assert scheduler.thread.daemon

    scheduler.start()
    scheduler.logger.warning.assert_called_with("Scheduler is already running")

    scheduler.stop()
    assert not scheduler.is_running()
    assert not scheduler.thread.is_alive()
