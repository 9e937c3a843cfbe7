"""
Deterministic, sticky variant assignment for A/B/n experiments.

Hashing of (user_id, experiment_id, salt) gives each user a stable sample in
[0, 100). One salt decides traffic inclusion, an independent one picks the
variant from the current traffic split. The first assignment written for a
user wins; later calls return it unchanged.
"""

import hashlib
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .schema import (
    Assignment,
    Event,
    EventType,
    Experiment,
    ExperimentStatus,
    Variant,
    VariantConfig,
)
from .stores import AssignmentStore
from .targeting import evaluate_targeting

logger = logging.getLogger(__name__)

TRAFFIC_SALT = "traffic"
VARIANT_SALT = "variant"


def deterministic_sample(user_id: str, experiment_id: str, salt: str = "") -> float:
    """
    Deterministic hash to a float in [0, 100).

    Same user + experiment + salt always maps to the same value.
    """
    key = f"{user_id}:{experiment_id}:{salt}"
    h = hashlib.sha256(key.encode()).hexdigest()
    return int(h[:8], 16) / 2 ** 32 * 100


def select_variant(variants: List[Variant], sample: float) -> Variant:
    """
    Pick the variant whose cumulative traffic range contains ``sample``.

    The sample is rescaled to the actual weight total so splits summing to
    100 +/- 0.1 cover the whole range.

    Args:
        variants: Variants in definition order
        sample: Value in [0, 100)

    Returns:
        Selected Variant (the control if rounding leaves a gap)
    """
    total = sum(max(v.traffic_percentage, 0.0) for v in variants)
    if total <= 0:
        return next((v for v in variants if v.is_control), variants[0])

    point = sample / 100 * total
    cumulative = 0.0
    for variant in variants:
        cumulative += max(variant.traffic_percentage, 0.0)
        if point < cumulative:
            return variant
    return next((v for v in variants if v.is_control), variants[-1])


class AssignmentEngine:
    """
    Assigns users to variants and emits an exposure event per new assignment.

    Args:
        assignment_store: Sticky assignment store (compare-and-set insert)
        on_exposure: Callable receiving the exposure Event of each new assignment
    """

    def __init__(
        self,
        assignment_store: AssignmentStore,
        on_exposure: Optional[Callable[[Event], Any]] = None,
    ):
        self.assignment_store = assignment_store
        self.on_exposure = on_exposure

    def assign(
        self,
        experiment: Experiment,
        user_id: str,
        user_properties: Optional[Dict[str, Any]] = None,
        session_properties: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Assign a user to a variant of a running experiment.

        Args:
            experiment: Experiment definition with the current traffic split
            user_id: Stable user identifier
            user_properties: Properties for user_property targeting rules
            session_properties: Properties for session/device/geo rules

        Returns:
            variant_id, or None when the experiment is not running or the user
            is not eligible. Nothing is persisted for ineligible users.
        """
        if experiment.status != ExperimentStatus.RUNNING:
            return None

        existing = self.assignment_store.get(experiment.experiment_id, user_id)
        if existing is not None:
            return existing.variant_id

        user_properties = user_properties or {}
        session_properties = session_properties or {}

        eligible, failed_rule = evaluate_targeting(
            experiment.targeting_rules, user_properties, session_properties
        )
        if not eligible:
            logger.debug(
                f"User {user_id} excluded from {experiment.experiment_id} "
                f"by rule on '{failed_rule.field}'"
            )
            return None

        traffic_sample = deterministic_sample(user_id, experiment.experiment_id, TRAFFIC_SALT)
        if traffic_sample >= experiment.traffic_allocation:
            logger.debug(
                f"User {user_id} outside traffic allocation of {experiment.experiment_id}"
            )
            return None

        variant = select_variant(
            experiment.variants,
            deterministic_sample(user_id, experiment.experiment_id, VARIANT_SALT),
        )
        stored, inserted = self.assignment_store.insert_if_absent(
            Assignment(
                experiment_id=experiment.experiment_id,
                user_id=user_id,
                variant_id=variant.variant_id,
                user_properties=user_properties,
                session_properties=session_properties,
            )
        )
        if not inserted:
            logger.warning(
                f"Concurrent assignment for user {user_id} in {experiment.experiment_id}; "
                f"keeping {stored.variant_id}"
            )
            return stored.variant_id

        if self.on_exposure is not None:
            self.on_exposure(
                Event(
                    experiment_id=experiment.experiment_id,
                    variant_id=stored.variant_id,
                    user_id=user_id,
                    event_type=EventType.EXPOSURE,
                    event_name="exposure",
                    session_id=str(session_properties.get("session_id", "unknown")),
                    timestamp=stored.assigned_at,
                )
            )
        return stored.variant_id

    def get_variant_config(
        self,
        experiment: Experiment,
        user_id: str,
        user_properties: Optional[Dict[str, Any]] = None,
        session_properties: Optional[Dict[str, Any]] = None,
    ) -> Optional[VariantConfig]:
        """Assign (or look up) the user's variant and return its typed payload."""
        variant_id = self.assign(experiment, user_id, user_properties, session_properties)
        if variant_id is None:
            return None
        variant = experiment.get_variant(variant_id)
        return variant.config if variant is not None else None

    def assign_all(
        self,
        experiments: Iterable[Experiment],
        user_id: str,
        user_properties: Optional[Dict[str, Any]] = None,
        session_properties: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        """
        Assign a user across experiments.

        Returns:
            Dict of experiment_id -> variant_id for experiments the user is in
        """
        assignments = {}
        for experiment in experiments:
            variant_id = self.assign(experiment, user_id, user_properties, session_properties)
            if variant_id is not None:
                assignments[experiment.experiment_id] = variant_id
        logger.debug(f"User {user_id} assigned to {len(assignments)} experiments")
        return assignments

    def reset_assignment(self, experiment_id: str, user_id: str) -> bool:
        """Forget a sticky assignment so the next assign() re-buckets the user."""
        removed = self.assignment_store.delete(experiment_id, user_id)
        if removed:
            logger.info(f"Reset assignment of user {user_id} in {experiment_id}")
        return removed
