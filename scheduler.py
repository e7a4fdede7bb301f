import schedule
import time
import threading
import json
import os
import uuid
from datetime import datetime


class ScheduledTask:
    """
    A recurring optimizer job: prior refresh, prior cleanup or a rollout step.
    """
    def __init__(self, task_id, name, function, schedule_type,
                 args=None, kwargs=None, at_time="02:00", day_of_week=None, interval_hours=None):
        """
        Initialize a scheduled task.

        Args:
            task_id (str): Unique identifier for the task
            name (str): Human-readable name for the task
            function (callable): Function to call when scheduled
            schedule_type (str): 'daily', 'weekly' or 'hourly'
            args (list, optional): Positional arguments for the function
            kwargs (dict, optional): Keyword arguments for the function
            at_time (str): HH:MM for daily and weekly tasks
            day_of_week (str, optional): Day name for weekly tasks
            interval_hours (int, optional): Period for hourly tasks
        """
        self.task_id = task_id
        self.name = name
        self.function = function
        self.schedule_type = schedule_type
        self.args = args or []
        self.kwargs = kwargs or {}
        self.at_time = at_time
        self.day_of_week = day_of_week
        self.interval_hours = interval_hours
        self.job = None
        self.last_run = None
        self.created_at = datetime.now()
        self.status = "scheduled"  # scheduled, running, completed, failed
        self.result = None
        self.error = None

    @property
    def next_run(self):
        return self.job.next_run if self.job is not None else None

    def to_dict(self):
        """Convert task to a dictionary for serialization."""
        return {
            'task_id': self.task_id,
            'name': self.name,
            'schedule_type': self.schedule_type,
            'at_time': self.at_time,
            'day_of_week': self.day_of_week,
            'interval_hours': self.interval_hours,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'next_run': self.next_run.isoformat() if self.next_run else None,
            'created_at': self.created_at.isoformat(),
            'status': self.status,
            'error': self.error
        }


class OptimizationScheduler:
    """
    Runs the optimizer's maintenance jobs on a background thread.
    """
    def __init__(self, logger=None, tasks_file=None):
        """
        Initialize the scheduler.

        Args:
            logger (object, optional): Logger object for recording events
            tasks_file (str, optional): Where task summaries are written
        """
        self.scheduler = schedule.Scheduler()
        self.tasks = {}
        self.running = False
        self.thread = None
        self.logger = logger
        self.task_history = []
        self.tasks_file = tasks_file

    def add_task(self, name, function, schedule_type, args=None, kwargs=None,
                 at_time="02:00", day_of_week=None, interval_hours=None):
        """
        Add a new task to the scheduler.

        Returns:
            str: The task ID
        """
        task = ScheduledTask(
            task_id=str(uuid.uuid4()),
            name=name,
            function=function,
            schedule_type=schedule_type,
            args=args,
            kwargs=kwargs,
            at_time=at_time,
            day_of_week=day_of_week,
            interval_hours=interval_hours,
        )

        self._schedule_task(task)
        self.tasks[task.task_id] = task

        if self.logger:
            self.logger.info(f"Task {name} (ID: {task.task_id}) scheduled {schedule_type}, next run {task.next_run}")

        self._save_tasks()
        return task.task_id

    def _run_task(self, task):
        task.status = "running"
        task.last_run = datetime.now()

        if self.logger:
            self.logger.info(f"Running task: {task.name} (ID: {task.task_id})")

        try:
            task.result = task.function(*task.args, **task.kwargs)
            task.status = "completed"
            task.error = None
        except Exception as e:
            task.status = "failed"
            task.error = str(e)
            if self.logger:
                self.logger.error(f"Task failed: {task.name} (ID: {task.task_id}). Error: {str(e)}")

        entry = {
            'task_id': task.task_id,
            'name': task.name,
            'status': task.status,
            'start_time': task.last_run.isoformat(),
            'end_time': datetime.now().isoformat()
        }
        if task.error:
            entry['error'] = task.error
        self.task_history.append(entry)

        if self.logger and task.status == "completed":
            self.logger.info(f"Task completed: {task.name} (ID: {task.task_id})")

    def _schedule_task(self, task):
        if task.schedule_type == 'daily':
            job = self.scheduler.every().day.at(task.at_time)
        elif task.schedule_type == 'weekly':
            if not task.day_of_week:
                raise ValueError("Weekly tasks need a day_of_week")
            job = getattr(self.scheduler.every(), task.day_of_week.lower()).at(task.at_time)
        elif task.schedule_type == 'hourly':
            job = self.scheduler.every(task.interval_hours or 1).hours
        else:
            raise ValueError(f"Unsupported schedule type: {task.schedule_type}")

        task.job = job.do(self._run_task, task)

    def schedule_priors_refresh(self, priors_service, at_time="02:00"):
        """Rebuild hierarchical priors every day."""
        return self.add_task(
            name="Refresh hierarchical priors",
            function=priors_service.update_all_priors,
            schedule_type='daily',
            at_time=at_time,
        )

    def schedule_priors_cleanup(self, priors_service, day_of_week="sunday", at_time="03:00", retention_days=None):
        """Drop stale priors once a week."""
        return self.add_task(
            name="Clean old priors",
            function=priors_service.clean_old_priors,
            schedule_type='weekly',
            kwargs={"retention_days": retention_days} if retention_days else None,
            at_time=at_time,
            day_of_week=day_of_week,
        )

    def schedule_rollout_step(self, flag_service, flag_name, target_percentage, increment=10.0, interval_hours=2):
        """Advance a flag's rollout by one increment every interval."""
        return self.add_task(
            name=f"Gradual rollout of {flag_name}",
            function=flag_service.gradual_rollout,
            schedule_type='hourly',
            args=[flag_name, target_percentage],
            kwargs={"increment_per_step": increment},
            interval_hours=interval_hours,
        )

    def remove_task(self, task_id):
        """
        Remove a task from the scheduler.

        Returns:
            bool: True if the task was removed, False otherwise
        """
        task = self.tasks.pop(task_id, None)
        if task is None:
            return False

        self.scheduler.cancel_job(task.job)

        if self.logger:
            self.logger.info(f"Task {task.name} (ID: {task_id}) removed from scheduler")

        self._save_tasks()
        return True

    def run_task_now(self, task_id):
        """Run a task immediately, outside its schedule."""
        task = self.tasks.get(task_id)
        if task is None:
            return False
        self._run_task(task)
        return True

    def get_tasks(self):
        return self.tasks

    def get_task_history(self, limit=10):
        return self.task_history[-limit:] if limit else self.task_history

    def start(self):
        """Start the scheduler loop on a daemon thread."""
        if self.running:
            if self.logger:
                self.logger.warning("Scheduler is already running")
            return

        self.running = True
        if self.logger:
            self.logger.info("Scheduler started")

        self.thread = threading.Thread(target=self._run_scheduler)
        self.thread.daemon = True
        self.thread.start()

    def _run_scheduler(self):
        try:
            while self.running:
                self.scheduler.run_pending()
                time.sleep(1)
        except Exception as e:
            if self.logger:
                self.logger.error(f"Scheduler error: {str(e)}")
            self.running = False

    def stop(self):
        if not self.running:
            if self.logger:
                self.logger.warning("Scheduler is not running")
            return

        self.running = False

        # Wait for the loop to finish its current pass
        if self.thread:
            self.thread.join(timeout=5)

        if self.logger:
            self.logger.info("Scheduler stopped")

    def is_running(self):
        return self.running

    def _save_tasks(self):
        """Save scheduled task summaries to file."""
        if not self.tasks_file:
            return
        try:
            directory = os.path.dirname(self.tasks_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.tasks_file, 'w') as f:
                json.dump({task_id: task.to_dict() for task_id, task in self.tasks.items()}, f, indent=2)
        except OSError as e:
            if self.logger:
                self.logger.error(f"Error saving tasks to file: {str(e)}")
