"""
Base Service for the Budget Optimization System

This module provides the BaseService class that all other services inherit from.
It handles common functionality like logging, configuration, storage access
and execution metrics.
"""

import logging
from typing import Dict, Any, Optional
from datetime import datetime
import json
import os


class BaseService:
    """Base class for all services in the budget optimization system"""

    def __init__(
        self,
        store=None,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the base service.

        Args:
            store: OptimizationStore holding priors, lag profiles, flags and measurements
            config: Configuration dictionary
            logger: Logger instance
        """
        self.store = store
        self.config = config or {}
        self.data_path = self.config.get("data_path", "data/optimizer")
        self.log_dir = self.config.get("log_dir", "logs")

        # Setup logging
        if logger:
            self.logger = logger
        else:
            self.logger = self._setup_logger()

        # Create output directories if they don't exist
        self._ensure_directories()

        # Track metrics for this service
        self.metrics = {
            "invocations": 0,
            "success_count": 0,
            "failure_count": 0,
            "last_run": None,
            "avg_execution_time_ms": 0,
        }

    def _setup_logger(self) -> logging.Logger:
        """Set up a logger for this service"""
        logger_name = self.__class__.__name__
        logger = logging.getLogger(logger_name)

        # Only set handlers if they don't exist
        if not logger.handlers:
            os.makedirs(self.log_dir, exist_ok=True)

            file_handler = logging.FileHandler(
                os.path.join(
                    self.log_dir,
                    f"{logger_name.lower()}_{datetime.now().strftime('%Y%m%d')}.log",
                )
            )

            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            file_handler.setFormatter(formatter)

            logger.addHandler(file_handler)
            logger.setLevel(logging.INFO)

        return logger

    def _ensure_directories(self):
        """Ensure that necessary directories exist"""
        for directory in [self.data_path, self.log_dir]:
            os.makedirs(directory, exist_ok=True)

    def _track_execution(self, start_time: datetime, success: bool):
        """
        Track execution metrics for this service

        Args:
            start_time: When the execution started
            success: Whether the execution was successful
        """
        self.metrics["invocations"] += 1

        if success:
            self.metrics["success_count"] += 1
        else:
            self.metrics["failure_count"] += 1

        execution_time_ms = (datetime.now() - start_time).total_seconds() * 1000

        prev_avg = self.metrics["avg_execution_time_ms"]
        prev_count = self.metrics["invocations"] - 1

        if prev_count > 0:
            self.metrics["avg_execution_time_ms"] = (
                prev_avg * prev_count + execution_time_ms
            ) / self.metrics["invocations"]
        else:
            self.metrics["avg_execution_time_ms"] = execution_time_ms

        self.metrics["last_run"] = datetime.now().isoformat()

        self.logger.debug(
            f"Execution tracked: success={success}, "
            f"time={execution_time_ms:.2f}ms, "
            f"avg={self.metrics['avg_execution_time_ms']:.2f}ms"
        )

    def get_metrics(self) -> Dict[str, Any]:
        """Get the current metrics for this service"""
        return self.metrics.copy()

    def save_data(self, data: Any, filename: str, directory: Optional[str] = None) -> bool:
        """
        Save data to a JSON file

        Args:
            data: Data to save
            filename: Name of the file
            directory: Directory to save in (defaults to the service data path)

        Returns:
            True if the file was written
        """
        directory = directory or self.data_path
        try:
            os.makedirs(directory, exist_ok=True)
            path = os.path.join(directory, filename)

            with open(path, "w") as f:
                json.dump(data, f, indent=2, default=str)

            self.logger.info(f"Data saved to {path}")
            return True
        except (OSError, TypeError, ValueError) as e:
            self.logger.error(f"Error saving data: {str(e)}")
            return False

    def load_data(self, filename: str, directory: Optional[str] = None) -> Any:
        """
        Load data from a JSON file

        Args:
            filename: Name of the file
            directory: Directory to load from (defaults to the service data path)

        Returns:
            The loaded data or None if file doesn't exist or error
        """
        directory = directory or self.data_path
        try:
            path = os.path.join(directory, filename)

            if not os.path.exists(path):
                self.logger.warning(f"File not found: {path}")
                return None

            with open(path, "r") as f:
                data = json.load(f)

            self.logger.info(f"Data loaded from {path}")
            return data
        except (OSError, ValueError) as e:
            self.logger.error(f"Error loading data: {str(e)}")
            return None
