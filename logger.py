import logging
import os
from datetime import datetime
import sys
import traceback
import glob


class OptimizerLogger:
    """
    Logger for the budget optimizer runner and scheduler. Writes to a
    timestamped file and stdout and keeps a buffer of recent entries.
    """
    def __init__(self, log_dir="logs", name="BudgetOptimizer"):
        os.makedirs(log_dir, exist_ok=True)
        self.log_dir = log_dir

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        self.log_file = os.path.join(log_dir, f"budget_optimizer_{timestamp}.log")

        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)

        # Reinitialization replaces handlers
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        file_handler = logging.FileHandler(self.log_file, encoding='utf-8', mode='w')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        self.logger.addHandler(file_handler)

        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(logging.INFO)
        stream_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        self.logger.addHandler(stream_handler)

        self.recent_logs = []
        self.max_recent_logs = 100
        self.error_logs = []

    def info(self, message):
        message = str(message)
        self.logger.info(message)
        self._add_recent_log("INFO", message)

    def warning(self, message):
        message = str(message)
        self.logger.warning(message)
        self._add_recent_log("WARNING", message)

    def error(self, message, include_traceback=True):
        """Log error level message with optional traceback"""
        message = str(message)
        if include_traceback:
            tb = traceback.format_exc()
            if tb and tb != "NoneType: None\n":
                message = f"{message}\nTraceback: {tb}"

        self.logger.error(message)
        self._add_recent_log("ERROR", message)
        self.error_logs.append((datetime.now(), message))

    def debug(self, message):
        message = str(message)
        self.logger.debug(message)
        self._add_recent_log("DEBUG", message)

    def _add_recent_log(self, level, message):
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.recent_logs.append((timestamp, level, message))

        if len(self.recent_logs) > self.max_recent_logs:
            self.recent_logs.pop(0)

    def get_recent_logs(self, level=None, limit=None):
        """
        Get recent logs, optionally filtered by level

        Args:
            level (str, optional): Log level to filter by
            limit (int, optional): Maximum number of logs to return

        Returns:
            list: List of recent log tuples (timestamp, level, message)
        """
        if level:
            logs = [log for log in self.recent_logs if log[1] == level.upper()]
        else:
            logs = self.recent_logs.copy()

        if limit and len(logs) > limit:
            logs = logs[-limit:]

        return logs

    def get_error_logs(self):
        return self.error_logs.copy()

    def get_latest_log_file(self):
        """Get the path to the most recent log file"""
        log_files = glob.glob(os.path.join(self.log_dir, "budget_optimizer_*.log"))
        if not log_files:
            return None

        log_files.sort(key=lambda x: os.path.getmtime(x))
        return log_files[-1]
