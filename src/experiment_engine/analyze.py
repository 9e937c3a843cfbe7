"""
Experiment analysis entrypoint.

Input: an Experiment definition and its per-variant AggregateMetrics.
Output: ExperimentAnalysis with one AnalysisResult per treatment vs control,
multiple-comparison adjusted significance, optional Bayesian and sequential
verdicts, SRM check, sample-size analysis and recommendations.
"""

import logging
from typing import Dict, List, Mapping, Optional

import numpy as np

from .config import EngineConfig
from .errors import ValidationError
from .schema import (
    AggregateMetrics,
    AnalysisResult,
    Experiment,
    ExperimentAnalysis,
    Recommendation,
    RecommendationType,
    SampleSizeAnalysis,
)
from .stats import (
    bayesian_posterior,
    check_srm,
    confidence_interval,
    effect_size,
    mde_proportion,
    multiple_comparisons_correction,
    power_proportion,
    probability_treatment_better,
    sample_size,
    sequential_test,
    two_proportion_power,
    two_proportion_test,
)

logger = logging.getLogger(__name__)


def _arm_metrics(
    experiment: Experiment,
    metrics: Mapping[str, AggregateMetrics],
) -> Dict[str, AggregateMetrics]:
    """Metrics for every variant, empty counters for arms without data."""
    return {
        v.variant_id: metrics.get(v.variant_id) or AggregateMetrics(experiment.experiment_id, v.variant_id)
        for v in experiment.variants
    }


def compare_to_control(
    experiment: Experiment,
    control: AggregateMetrics,
    treatment: AggregateMetrics,
    config: EngineConfig,
) -> AnalysisResult:
    """Frequentist comparison of one treatment arm against the control."""
    stat_config = experiment.statistical_config
    test = two_proportion_test(
        control.conversions,
        control.participants,
        treatment.conversions,
        treatment.participants,
        confidence_level=stat_config.confidence_level,
    )
    return AnalysisResult(
        experiment_id=experiment.experiment_id,
        variant_id=treatment.variant_id,
        control_variant_id=control.variant_id,
        control_rate=test.control_rate,
        treatment_rate=test.treatment_rate,
        control_participants=control.participants,
        treatment_participants=treatment.participants,
        p_value=test.p_value,
        z_score=test.z_score,
        confidence_interval=confidence_interval(
            treatment.conversions, treatment.participants, stat_config.confidence_level
        ),
        difference_interval=test.ci,
        effect_size=effect_size(test.control_rate, test.treatment_rate),
        lift=test.lift,
        is_significant=test.is_significant,
        practical_significance=abs(test.lift) > config.practical_significance_threshold,
    )


def analyze_sample_size(
    experiment: Experiment,
    arms: Mapping[str, AggregateMetrics],
    results: List[AnalysisResult],
) -> SampleSizeAnalysis:
    """
    Sample size and power against the configured MDE and the observed effect.

    current_sample_size is the smallest arm; sample_size_reached compares it
    with minimum_sample_size.
    """
    stat_config = experiment.statistical_config
    control = arms[experiment.control.variant_id]
    baseline = control.conversion_rate
    current = min(m.participants for m in arms.values())
    mde = stat_config.minimum_detectable_effect

    required = stat_config.minimum_sample_size
    power_achieved = 0.0
    mde_achieved = None
    if 0 < baseline < 1:
        try:
            required = sample_size(mde, stat_config.confidence_level, stat_config.power, baseline)
            power_achieved = power_proportion(baseline, mde, current, stat_config.alpha)
        except ValidationError:
            logger.debug(f"MDE {mde} not reachable from baseline {baseline:.4f}")
        if current > 0:
            mde_achieved = mde_proportion(baseline, current, stat_config.alpha, stat_config.power)

    observed_power = 0.0
    if results:
        strongest = max(results, key=lambda r: abs(r.effect_size))
        observed_power = two_proportion_power(
            strongest.control_rate,
            strongest.treatment_rate,
            strongest.control_participants,
            strongest.treatment_participants,
            stat_config.alpha,
        )

    return SampleSizeAnalysis(
        current_sample_size=current,
        required_sample_size=int(required),
        sample_size_reached=current >= stat_config.minimum_sample_size,
        power_achieved=power_achieved,
        observed_power=observed_power,
        mde_achieved=mde_achieved,
    )


def generate_recommendations(
    results: List[AnalysisResult],
    sample: SampleSizeAnalysis,
    srm_passed: bool,
    config: EngineConfig,
) -> List[Recommendation]:
    """Turn analysis results into continue/stop/extend/winner/inconclusive advice."""
    recommendations = []

    if not srm_passed:
        recommendations.append(Recommendation(
            type=RecommendationType.INCONCLUSIVE,
            reason="Sample ratio mismatch: observed split deviates from the configured traffic",
            confidence=0.99,
            suggested_action="Investigate assignment and event logging before trusting results",
        ))

    winners = [r for r in results if r.is_significant and r.practical_significance and r.lift > 0]
    losers = [r for r in results if r.is_significant and r.lift < 0]

    for loser in losers:
        recommendations.append(Recommendation(
            type=RecommendationType.STOP,
            reason=f"Variant {loser.variant_id} significantly underperforms control",
            confidence=1 - (loser.adjusted_p_value if loser.adjusted_p_value is not None else loser.p_value),
            suggested_action=f"Stop serving variant {loser.variant_id}",
            impact_estimate=loser.lift,
            variant_id=loser.variant_id,
        ))

    if winners:
        best = max(winners, key=lambda r: abs(r.effect_size))
        p = best.adjusted_p_value if best.adjusted_p_value is not None else best.p_value
        recommendations.append(Recommendation(
            type=RecommendationType.WINNER,
            reason=f"Variant {best.variant_id} shows significant improvement",
            confidence=0.99 if p < 0.01 else 0.95,
            suggested_action=f"Implement variant {best.variant_id} to all users",
            impact_estimate=best.lift,
            variant_id=best.variant_id,
        ))
    elif not sample.sample_size_reached:
        recommendations.append(Recommendation(
            type=RecommendationType.CONTINUE,
            reason="No statistically significant results found",
            confidence=0.7,
            suggested_action=(
                f"Continue running experiment; smallest arm has "
                f"{sample.current_sample_size} participants"
            ),
        ))
    elif sample.observed_power < config.futility_power_floor:
        recommendations.append(Recommendation(
            type=RecommendationType.INCONCLUSIVE,
            reason=f"Observed effect too small to detect (power {sample.observed_power:.2f})",
            confidence=1 - sample.observed_power,
            suggested_action="Stop the experiment and keep the control",
        ))
    else:
        recommendations.append(Recommendation(
            type=RecommendationType.EXTEND,
            reason="Minimum sample reached without a significant result",
            confidence=sample.observed_power,
            suggested_action=(
                f"Extend experiment to {sample.required_sample_size} participants per arm"
            ),
        ))
    return recommendations


def analyze_experiment(
    experiment: Experiment,
    metrics: Mapping[str, AggregateMetrics],
    config: Optional[EngineConfig] = None,
    seed: Optional[int] = None,
) -> ExperimentAnalysis:
    """
    Run full experiment analysis from aggregate counts.

    Args:
        experiment: Experiment definition (control chosen by is_control)
        metrics: variant_id -> AggregateMetrics
        config: Engine thresholds (practical significance, SRM alpha, draws)
        seed: Seed for Bayesian Monte-Carlo draws

    Returns:
        ExperimentAnalysis
    """
    config = config or EngineConfig()
    stat_config = experiment.statistical_config
    control_variant = experiment.control
    arms = _arm_metrics(experiment, metrics)
    control = arms[control_variant.variant_id]

    results = [
        compare_to_control(experiment, control, arms[v.variant_id], config)
        for v in experiment.treatments
    ]

    adjusted = multiple_comparisons_correction(
        [r.p_value for r in results], stat_config.multiple_comparisons_correction
    )
    for result, p_adj in zip(results, adjusted):
        result.adjusted_p_value = p_adj
        result.is_significant = p_adj < stat_config.alpha

    if stat_config.bayesian_analysis:
        rng = np.random.default_rng(seed)
        control_post = bayesian_posterior(control.conversions, control.participants)
        for result in results:
            arm = arms[result.variant_id]
            treatment_post = bayesian_posterior(arm.conversions, arm.participants)
            result.probability_to_beat_control = probability_treatment_better(
                treatment_post, control_post, draws=config.bayesian_draws, rng=rng
            )
            result.credible_interval = treatment_post.credible_interval(stat_config.confidence_level)

    if stat_config.sequential_testing and len(results) == 1:
        result = results[0]
        treatment = arms[result.variant_id]
        sprt = sequential_test(
            control.conversions,
            control.participants,
            treatment.conversions,
            treatment.participants,
            alpha=config.sequential_alpha,
            beta=config.sequential_beta,
            min_observations=config.min_sequential_observations,
        )
        result.sequential_decision = sprt.decision

    srm_passed, srm_p = True, None
    if experiment.bandit is None:
        srm_passed, _, srm_p = check_srm(
            [arms[v.variant_id].participants for v in experiment.variants],
            [v.traffic_percentage for v in experiment.variants],
            alpha=config.srm_alpha,
        )
        if not srm_passed:
            logger.warning(
                f"SRM detected for {experiment.experiment_id} (p={srm_p:.4g}); "
                "results should not be interpreted"
            )

    sample = analyze_sample_size(experiment, arms, results)
    analysis = ExperimentAnalysis(
        experiment_id=experiment.experiment_id,
        analysis_type="bayesian" if stat_config.bayesian_analysis else "frequentist",
        results=results,
        recommendations=generate_recommendations(results, sample, srm_passed, config),
        sample_size_analysis=sample,
        variant_metrics=list(arms.values()),
        srm_passed=srm_passed,
        srm_p_value=srm_p,
    )
    logger.info(
        f"Analysed {experiment.experiment_id}: "
        + ", ".join(
            f"{r.variant_id} lift={r.lift:.2f}% p_adj={r.adjusted_p_value:.4f}" for r in results
        )
    )
    return analysis
