"""Tests for the experiment service facade."""
from concurrent.futures import ThreadPoolExecutor

import pytest

from src.experiment_engine.config import EngineConfig
from src.experiment_engine.errors import (
    ExperimentNotFoundError,
    ExperimentStateError,
    ValidationError,
)
from src.experiment_engine.schema import (
    Event,
    EventType,
    Experiment,
    ExperimentStatus,
    PricingConfig,
    RecommendationType,
    StatisticalConfig,
    Variant,
)
from src.experiment_engine.service import ExperimentService


def _experiment(exp_id="checkout_v2", **kwargs):
    return Experiment(
        experiment_id=exp_id,
        name="Checkout v2",
        variants=[
            Variant(
                "discount",
                traffic_percentage=50.0,
                config=PricingConfig(product_id="sku_1", discount_percentage=10.0),
            ),
            Variant("control", traffic_percentage=50.0, is_control=True, config=PricingConfig(product_id="sku_1")),
        ],
        statistical_config=StatisticalConfig(minimum_sample_size=500),
        **kwargs,
    )


@pytest.fixture
def service():
    svc = ExperimentService.in_memory(EngineConfig(), seed=42)
    svc.create_experiment(_experiment())
    return svc


def test_create_requires_draft():
    svc = ExperimentService.in_memory()
    with pytest.raises(ExperimentStateError):
        svc.create_experiment(_experiment(status=ExperimentStatus.RUNNING))


def test_create_validates():
    svc = ExperimentService.in_memory()
    exp = _experiment()
    exp.variants[0].traffic_percentage = 20.0
    with pytest.raises(ValidationError):
        svc.create_experiment(exp)
    with pytest.raises(ExperimentNotFoundError):
        svc.get_experiment("checkout_v2")


def test_unknown_experiment(service):
    with pytest.raises(ExperimentNotFoundError) as exc_info:
        service.assign("missing", "u1")
    assert isinstance(exc_info.value, KeyError)
    assert str(exc_info.value) == "Experiment missing not found"


def test_assign_before_start(service):
    assert service.assign("checkout_v2", "u1") is None


def test_assign_and_track(service):
    service.start("checkout_v2")
    variant = service.assign("checkout_v2", "u1")
    assert variant in ("discount", "control")
    assert service.track_event(Event("checkout_v2", variant, "u1", EventType.PURCHASE, value=19.0))

    service.flush()
    arm = service.get_metrics("checkout_v2")[variant]
    assert arm.participants == 1
    assert arm.conversions == 1
    assert arm.revenue_total == pytest.approx(19.0)


def test_track_unknown_variant(service):
    service.start("checkout_v2")
    with pytest.raises(ValidationError):
        service.track_event(Event("checkout_v2", "nope", "u1", EventType.CONVERSION))


def test_get_variant_config(service):
    service.start("checkout_v2")
    config = service.get_variant_config("checkout_v2", "u1")
    assert isinstance(config, PricingConfig)
    assert config.product_id == "sku_1"


def test_assign_all(service):
    service.create_experiment(_experiment("search_v3"))
    service.create_experiment(_experiment("onboarding_v1"))
    service.start("checkout_v2")
    service.start("search_v3")
    assignments = service.assign_all("u1")
    assert set(assignments) == {"checkout_v2", "search_v3"}


def test_reset_assignment(service):
    service.start("checkout_v2")
    service.assign("checkout_v2", "u1")
    assert service.reset_assignment("checkout_v2", "u1")
    assert not service.reset_assignment("checkout_v2", "u1")
    with pytest.raises(ExperimentNotFoundError):
        service.reset_assignment("missing", "u1")


def test_concurrent_assignment_single_exposure(service):
    """Parallel requests for one user agree on a variant and expose once."""
    service.start("checkout_v2")
    with ThreadPoolExecutor(max_workers=16) as pool:
        variants = list(pool.map(lambda _: service.assign("checkout_v2", "u1"), range(64)))
    assert len(set(variants)) == 1

    service.flush()
    metrics = service.get_metrics("checkout_v2")
    assert sum(m.participants for m in metrics.values()) == 1
    exposures = service.query_events("checkout_v2")
    assert (exposures["event_type"] == "exposure").sum() == 1


def test_end_to_end_results(service):
    """Assign users, record conversions and read back the analysis."""
    service.start("checkout_v2")
    for i in range(2000):
        user = f"user_{i}"
        variant = service.assign("checkout_v2", user)
        rate_every = 10 if variant == "discount" else 20
        if i % rate_every == 0:
            service.track_event(Event("checkout_v2", variant, user, EventType.CONVERSION))

    service.flush()
    results = service.get_results("checkout_v2")
    assert len(results) == 1
    assert results[0].variant_id == "discount"
    assert results[0].control_variant_id == "control"
    assert results[0].treatment_participants + results[0].control_participants == 2000


def test_pause_blocks_new_assignments(service):
    service.start("checkout_v2")
    assert service.assign("checkout_v2", "u1") is not None
    service.pause("checkout_v2")
    assert service.assign("checkout_v2", "u2") is None
    service.resume("checkout_v2")
    assert service.assign("checkout_v2", "u2") is not None


def test_stop_and_archive(service):
    service.start("checkout_v2")
    service.assign("checkout_v2", "u1")
    completed = service.stop("checkout_v2")
    assert completed.status == ExperimentStatus.COMPLETED
    assert completed.stop_reason == "manual"
    assert service.assign("checkout_v2", "u2") is None

    analysis = service.get_analysis("checkout_v2")
    assert analysis.recommendations[0].type == RecommendationType.CONTINUE

    assert service.archive("checkout_v2").status == ExperimentStatus.ARCHIVED
    assert service.list_experiments(ExperimentStatus.ARCHIVED)[0].experiment_id == "checkout_v2"


def test_analyses_flush_first(service):
    service.start("checkout_v2")
    variant = service.assign("checkout_v2", "u1")
    service.track_event(Event("checkout_v2", variant, "u1", EventType.CUSTOM, event_name="view"))

    funnel = service.conversion_funnel("checkout_v2", ["exposure", "view"])
    assert funnel[funnel["variant_id"] == variant]["users"].tolist() == [1, 1]
    assert service.daily_trends("checkout_v2")["exposures"].sum() == 1
    assert service.cohort_analysis("checkout_v2")["users"].sum() == 1


def test_track_goal(service):
    service.start("checkout_v2")
    variant = service.assign("checkout_v2", "u1")
    assert service.track_goal("checkout_v2", variant, "u1", "newsletter", value=2.5,
                              properties={"session_id": "s1"})
    service.flush()

    goal = service.get_goal_metrics("checkout_v2", "newsletter", variant)
    assert goal.total_events == 1
    assert goal.unique_users == 1
    assert goal.goal_name == "goal_newsletter"
    assert service.get_goal_results("checkout_v2")["newsletter"][variant].total_value == 2.5
    assert service.get_metrics("checkout_v2")[variant].conversions == 0
    with pytest.raises(ValidationError):
        service.track_goal("checkout_v2", "nope", "u1", "newsletter")
    with pytest.raises(ExperimentNotFoundError):
        service.get_goal_metrics("missing", "newsletter", variant)


def test_background_scheduler(service):
    service.start_background()
    assert service.scheduler.running
    service.stop_background()
    assert not service.scheduler.running
