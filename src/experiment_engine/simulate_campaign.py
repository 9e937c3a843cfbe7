"""
Traffic simulator for experiments.

Drives synthetic users through assign() and track_event() with known true
conversion rates per variant, optionally running the decision cycle as data
arrives so sequential stopping and bandit reallocation can act mid-stream.
"""

import logging
from typing import Dict, Optional

import numpy as np

from .config import EngineConfig
from .report import DEFAULT_ARTIFACTS_DIR, render_exec_summary, save_analysis
from .schema import (
    Event,
    EventType,
    Experiment,
    ExperimentStatus,
    StatisticalConfig,
    Variant,
)
from .service import ExperimentService

logger = logging.getLogger(__name__)

SIMULATOR_SEED = 42


def simulate_traffic(
    service: ExperimentService,
    experiment_id: str,
    true_rates: Dict[str, float],
    n_users: int,
    revenue_per_conversion: Optional[float] = None,
    evaluate_every: Optional[int] = None,
    user_prefix: str = "user",
    start_index: int = 0,
    random_seed: int = SIMULATOR_SEED,
) -> Dict:
    """
    Simulate users arriving at a running experiment.

    Args:
        service: ExperimentService holding the experiment
        experiment_id: Experiment identifier
        true_rates: variant_id -> true conversion probability
        n_users: Number of users to send
        revenue_per_conversion: Record conversions as purchases with this value
        evaluate_every: Flush and run the decision cycle every N users
        user_prefix: Prefix for generated user ids
        start_index: First user index (to continue a previous run)
        random_seed: Random seed for reproducibility

    Returns:
        Dict with n_users, n_assigned, per-variant assigned/converted counts,
        stopped_after (users sent before the experiment left running) and status
    """
    rng = np.random.default_rng(random_seed)
    assigned: Dict[str, int] = {vid: 0 for vid in true_rates}
    converted: Dict[str, int] = {vid: 0 for vid in true_rates}
    stopped_after = None

    for i in range(start_index, start_index + n_users):
        user_id = f"{user_prefix}_{i}"
        variant_id = service.assign(experiment_id, user_id)
        if variant_id is not None:
            assigned[variant_id] = assigned.get(variant_id, 0) + 1
            if rng.random() < true_rates.get(variant_id, 0.0):
                converted[variant_id] = converted.get(variant_id, 0) + 1
                is_purchase = revenue_per_conversion is not None
                service.track_event(Event(
                    experiment_id=experiment_id,
                    variant_id=variant_id,
                    user_id=user_id,
                    event_type=EventType.PURCHASE if is_purchase else EventType.CONVERSION,
                    event_name="purchase" if is_purchase else "conversion",
                    value=revenue_per_conversion,
                ))

        sent = i - start_index + 1
        if evaluate_every and sent % evaluate_every == 0:
            service.flush(experiment_id)
            service.run_cycle()
            if service.get_experiment(experiment_id).status != ExperimentStatus.RUNNING:
                stopped_after = sent
                break

    service.flush(experiment_id)
    status = service.get_experiment(experiment_id).status
    summary = {
        "experiment_id": experiment_id,
        "n_users": stopped_after or n_users,
        "n_assigned": sum(assigned.values()),
        "assigned": assigned,
        "converted": converted,
        "stopped_after": stopped_after,
        "status": status.value,
        "random_seed": random_seed,
    }
    logger.info(f"Simulation complete: {summary}")
    return summary


def build_demo_experiment(
    experiment_id: str,
    minimum_sample_size: int = 1000,
) -> Experiment:
    """Two-arm checkout experiment with sequential testing enabled."""
    return Experiment(
        experiment_id=experiment_id,
        name=f"Checkout button experiment {experiment_id}",
        hypothesis="A single-page checkout raises conversion",
        variants=[
            Variant("control", name="Current checkout", traffic_percentage=50.0, is_control=True),
            Variant("single_page", name="Single-page checkout", traffic_percentage=50.0),
        ],
        statistical_config=StatisticalConfig(
            minimum_detectable_effect=0.2,
            minimum_sample_size=minimum_sample_size,
            sequential_testing=True,
            bayesian_analysis=True,
        ),
    )


def run_demo(
    experiment_id: str = "demo_sequential_001",
    n_users: int = 40000,
    true_rates: Optional[Dict[str, float]] = None,
    evaluate_every: int = 1000,
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR,
    random_seed: int = SIMULATOR_SEED,
) -> Dict:
    """
    End-to-end demo: create, start, simulate, stop, analyse, report.

    Returns:
        Run summary dict with the final status, stop reason, winner and the
        paths of the written artifacts
    """
    true_rates = true_rates or {"control": 0.05, "single_page": 0.065}
    service = ExperimentService.in_memory(EngineConfig(), seed=random_seed)
    service.create_experiment(build_demo_experiment(experiment_id))
    service.start(experiment_id)

    summary = simulate_traffic(
        service,
        experiment_id,
        true_rates,
        n_users,
        revenue_per_conversion=25.0,
        evaluate_every=evaluate_every,
        random_seed=random_seed,
    )

    experiment = service.get_experiment(experiment_id)
    if experiment.status == ExperimentStatus.RUNNING:
        experiment = service.stop(experiment_id, reason="demo traffic exhausted")

    analysis = service.get_analysis(experiment_id)
    analysis_path = save_analysis(analysis, artifacts_dir)
    summary_path = render_exec_summary(analysis.to_dict(), experiment_id, artifacts_dir)

    summary.update({
        "status": experiment.status.value,
        "stop_reason": experiment.stop_reason,
        "winner": analysis.winner,
        "analysis_path": str(analysis_path),
        "exec_summary_path": str(summary_path),
    })
    return summary
