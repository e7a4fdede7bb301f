import os
import logging
from dotenv import load_dotenv

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

DEFAULT_CONSTRAINTS = {
    "min_daily_budget": 2.0,
    "max_daily_budget": 100.0,
    "risk_tolerance": 0.3,
    "max_change_percent": 25.0,
    "exploration_floor": 0.1,
}


def _get_float(name, default):
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logging.warning(f"Invalid value for {name}: {value!r}, using {default}")
        return default


def _get_int(name, default):
    value = _get_float(name, default)
    return None if value is None else int(value)


def load_config():
    """
    Load configuration from environment variables.
    Prioritizes .env file if it exists.
    """
    env_path = ".env"
    if os.path.exists(env_path):
        logging.info("Loading configuration from .env file...")
        load_dotenv(dotenv_path=env_path)
    else:
        logging.info("No .env file found, relying on system environment variables.")

    config = {
        "optimizer": {
            "data_path": os.getenv("OPTIMIZER_DATA_PATH", "data/optimizer"),
            "log_dir": os.getenv("OPTIMIZER_LOG_DIR", "logs"),
            "random_seed": _get_int("OPTIMIZER_RANDOM_SEED", None),
            "constraints": {
                "min_daily_budget": _get_float("OPTIMIZER_MIN_DAILY_BUDGET", 2.0),
                "max_daily_budget": _get_float("OPTIMIZER_MAX_DAILY_BUDGET", 100.0),
                "risk_tolerance": _get_float("OPTIMIZER_RISK_TOLERANCE", 0.3),
                "max_change_percent": _get_float("OPTIMIZER_MAX_CHANGE_PERCENT", 25.0),
                "exploration_floor": _get_float("OPTIMIZER_EXPLORATION_FLOOR", 0.1),
            },
        },
        "rollout": {
            "max_percentage_increase_per_hour": _get_float("ROLLOUT_MAX_INCREASE_PER_HOUR", 10.0),
            "min_stability_period_hours": _get_float("ROLLOUT_MIN_STABILITY_HOURS", 2.0),
            "max_target_campaigns": _get_int("ROLLOUT_MAX_TARGET_CAMPAIGNS", 100),
            "emergency_disable_threshold": _get_float("ROLLOUT_EMERGENCY_THRESHOLD", 0.05),
        },
        "priors": {
            "global_prior_strength": _get_float("PRIORS_GLOBAL_STRENGTH", 10),
            "campaign_prior_strength": _get_float("PRIORS_CAMPAIGN_STRENGTH", 5),
            "action_prior_strength": _get_float("PRIORS_ACTION_STRENGTH", 2),
            "campaign_min_trials": _get_int("PRIORS_CAMPAIGN_MIN_TRIALS", 50),
            "action_min_trials": _get_int("PRIORS_ACTION_MIN_TRIALS", 25),
            "global_window_days": _get_int("PRIORS_GLOBAL_WINDOW_DAYS", 90),
            "campaign_window_days": _get_int("PRIORS_CAMPAIGN_WINDOW_DAYS", 90),
            "action_window_days": _get_int("PRIORS_ACTION_WINDOW_DAYS", 30),
            "retention_days": _get_int("PRIORS_RETENTION_DAYS", 180),
        },
        "scheduler": {
            "log_file": os.getenv("SCHEDULER_LOG_FILE", "logs/scheduler.log"),
            "priors_refresh_time": os.getenv("SCHEDULER_PRIORS_REFRESH_TIME", "02:00"),
            "cleanup_day": os.getenv("SCHEDULER_CLEANUP_DAY", "sunday"),
        },
    }

    # Basic validation (can be expanded)
    constraints = config["optimizer"]["constraints"]
    if constraints["min_daily_budget"] > constraints["max_daily_budget"]:
        logging.warning("Minimum daily budget is greater than maximum daily budget.")
    if config["optimizer"]["random_seed"] is None:
        logging.info("No random seed configured, allocations will not be reproducible.")

    return config


def parse_constraints(raw=None):
    """Merge caller-supplied constraint values over the defaults."""
    constraints = dict(DEFAULT_CONSTRAINTS)
    for key, value in (raw or {}).items():
        if value is not None:
            constraints[key] = value
    return constraints


def service_config(config):
    """Flatten the nested configuration into the dict the services read."""
    flat = dict(config.get("optimizer", {}))
    flat.update(config.get("priors", {}))
    flat["constraints"] = parse_constraints(flat.get("constraints"))
    flat["rollout"] = dict(config.get("rollout", {}))
    return flat
