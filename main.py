import argparse
import json
import logging
import time

from config import load_config, service_config
from logger import OptimizerLogger
from scheduler import OptimizationScheduler
from services import (
    FeatureFlagService,
    HierarchicalPriorsService,
    LagAwareAllocationService,
    OptimizationStore,
)
from services.feature_flag_service import HIERARCHICAL_EMPIRICAL_BAYES

# Basic logging configuration
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


def build_services(config):
    """Create the store and the services that share it."""
    settings = service_config(config)
    window_days = max(
        settings.get("global_window_days", 90),
        settings.get("campaign_window_days", 90),
        settings.get("action_window_days", 30),
    )
    store = OptimizationStore(settings.get("data_path", "data/optimizer"), measurement_window_days=window_days)
    flags = FeatureFlagService(store, settings)

    # Prior strengths rolled out with the hierarchical flag win over the environment
    prior_settings = dict(settings)
    hierarchical_config = flags.get_feature_flag_config(HIERARCHICAL_EMPIRICAL_BAYES) or {}
    for key in ("global_prior_strength", "campaign_prior_strength"):
        if hierarchical_config.get(key) is not None:
            prior_settings[key] = hierarchical_config[key]
    priors = HierarchicalPriorsService(store, prior_settings)
    allocator = LagAwareAllocationService(store, settings, flag_service=flags, priors_service=priors)
    return store, flags, priors, allocator


def run_allocation(allocator, arms_file, total_budget, seed=None):
    """Allocate a budget across the arms listed in a JSON file."""
    with open(arms_file, 'r') as f:
        arms = json.load(f)

    outcome = allocator.allocate_budget(arms, total_budget, seed=seed)
    if outcome.success:
        path = allocator.save_allocation(outcome)
        print(f"Allocated ${outcome.total_allocated:.2f} across {len(outcome.allocations)} arms.")
        if outcome.fallback_used:
            print(f"Base allocator used: {outcome.metadata.get('fallback_reason')}")
        for allocation in outcome.allocations:
            print(f"  {allocation.arm_name}: ${allocation.current_daily_budget:.2f} -> "
                  f"${allocation.proposed_daily_budget:.2f}")
        if path:
            print(f"Proposal saved to {path}")
    else:
        print(f"Allocation failed ({outcome.error_kind.value}): {outcome.reasoning}")
    return outcome


def main():
    parser = argparse.ArgumentParser(description="Thompson Sampling budget optimizer")
    parser.add_argument('--refresh-priors', action='store_true', help="Rebuild hierarchical priors now")
    parser.add_argument('--rollout-status', action='store_true', help="Print feature flag rollout status")
    parser.add_argument('--emergency-disable', metavar='REASON', help="Disable every feature flag")
    parser.add_argument('--allocate', metavar='ARMS_FILE', help="Allocate budget across arms in a JSON file")
    parser.add_argument('--budget', type=float, default=0.0, help="Total daily budget for --allocate")
    parser.add_argument('--seed', type=int, default=None, help="Random seed for --allocate")
    parser.add_argument('--schedule', action='store_true', help="Run the maintenance scheduler")
    args = parser.parse_args()

    config = load_config()
    _, flags, priors, allocator = build_services(config)

    if args.emergency_disable:
        flags.emergency_disable_all(args.emergency_disable)
        print(f"All feature flags disabled: {args.emergency_disable}")

    if args.refresh_priors:
        counts = priors.update_all_priors()
        print(f"Priors refreshed: {counts}")

    if args.rollout_status:
        print(json.dumps(flags.get_rollout_status(), indent=2, default=str))

    if args.allocate:
        run_allocation(allocator, args.allocate, args.budget, args.seed)

    if args.schedule:
        scheduler_config = config["scheduler"]
        optimizer_logger = OptimizerLogger(log_dir=config["optimizer"].get("log_dir", "logs"))
        scheduler = OptimizationScheduler(
            logger=optimizer_logger,
            tasks_file=f"{config['optimizer']['data_path']}/scheduled_tasks.json",
        )
        scheduler.schedule_priors_refresh(priors, scheduler_config["priors_refresh_time"])
        scheduler.schedule_priors_cleanup(priors, scheduler_config["cleanup_day"])
        scheduler.start()

        print("Scheduler running. Press Ctrl+C to stop.")
        try:
            while scheduler.is_running():
                time.sleep(1)
        except KeyboardInterrupt:
            scheduler.stop()


if __name__ == "__main__":
    main()
