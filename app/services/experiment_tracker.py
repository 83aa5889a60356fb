# services/experiment_tracker.py
"""
Sticky A/B variant assignment and experiment event tracking for one visitor.

A tracker lives for a single request (one page view). The first variant it
resolves for an experiment is the one it keeps answering with, whatever the
store does afterwards. Nothing here raises into the page: missing consent,
bad arguments, an unavailable store or a failing analytics sink all degrade
to "tracking silently does nothing".
"""
import logging
import random
from typing import Callable, Dict, Mapping, Optional, TypeVar

from app.core.context import TrackingContext
from app.models.schemas.assignment import AssignmentModel
from app.models.schemas.event import TrackingEvent
from app.models.schemas.experiment import ExperimentDefinition
from app.repositories.assignment_store import StorageUnavailableError
from app.services.analytics_sink import AnalyticsSink

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_VARIANTS = ("A", "B")


class ExperimentTracker:
    def __init__(
        self,
        context: TrackingContext,
        sink: AnalyticsSink,
        definitions: Optional[Callable[[str], ExperimentDefinition]] = None,
        default_variant: str = "A",
        rng: Optional[random.Random] = None,
    ):
        self.context = context
        self.sink = sink
        self.definitions = definitions or (
            lambda name: ExperimentDefinition.with_equal_split(name, list(DEFAULT_VARIANTS))
        )
        self.default_variant = default_variant
        self.rng = rng or random.Random()
        # experiment name -> assignment handed out during this request
        self._resolved: Dict[str, AssignmentModel] = {}
        self._definitions: Dict[str, ExperimentDefinition] = {}

    def _definition(self, experiment_name: str) -> ExperimentDefinition:
        if experiment_name in self._definitions:
            return self._definitions[experiment_name]
        try:
            definition = self.definitions(experiment_name)
        except Exception:
            logger.exception("Could not load experiment %s, using default variants", experiment_name)
            definition = ExperimentDefinition.with_equal_split(experiment_name, list(DEFAULT_VARIANTS))
        self._definitions[experiment_name] = definition
        return definition

    def _fallback_variant(self, experiment_name: str) -> str:
        if not experiment_name:
            return self.default_variant
        return self._definition(experiment_name).fallback_variant(self.default_variant)

    def _allocate_variant(self, definition: ExperimentDefinition) -> str:
        """
        Selects a variant based on the configured traffic allocation.
        Equal weights make this a uniform draw.
        """
        choices = [(v.weight, v.name) for v in definition.variants if v.weight > 0]
        if not choices:
            return definition.fallback_variant(self.default_variant)

        total_weight = sum(w for w, _ in choices)
        r = self.rng.uniform(0, total_weight)

        cumulative_weight = 0.0
        for weight, name in choices:
            cumulative_weight += weight
            if r <= cumulative_weight:
                return name

        # Floating point leftovers land on the last variant
        return choices[-1][1]

    def _ephemeral(self, experiment_name: str, variant: str) -> AssignmentModel:
        return AssignmentModel(experiment=experiment_name, variant=variant, persisted=False)

    def assignment(self, experiment_name: str) -> AssignmentModel:
        """
        Returns the visitor's assignment for an experiment, creating and
        storing one on first sight.

        1. Reuse what this request already resolved.
        2. Reuse a stored assignment if it names a defined variant.
        3. Otherwise draw a variant and persist it. If another request
           stored one first, that one is kept.

        Whenever no assignment can be made the experiment's fallback variant
        is served and nothing is stored.
        """
        if not experiment_name:
            logger.warning("Variant requested without an experiment name")
            return self._ephemeral(experiment_name, self.default_variant)

        if experiment_name in self._resolved:
            return self._resolved[experiment_name]

        definition = self._definition(experiment_name)
        fallback = definition.fallback_variant(self.default_variant)

        if not self.context.has_consented:
            # No tracking state may be read or created without consent
            return self._ephemeral(experiment_name, fallback)

        store = self.context.store
        if store is None:
            resolved = self._ephemeral(experiment_name, fallback)
            self._resolved[experiment_name] = resolved
            return resolved

        try:
            stored = store.get(experiment_name)
        except StorageUnavailableError as e:
            logger.warning("Assignment store unavailable for %s: %s", experiment_name, e)
            resolved = self._ephemeral(experiment_name, fallback)
            self._resolved[experiment_name] = resolved
            return resolved

        if stored and stored in definition.variant_names:
            logger.debug("Visitor %s keeps variant %s for %s", self.context.visitor_id, stored, experiment_name)
            resolved = AssignmentModel(experiment=experiment_name, variant=stored, persisted=True)
            self._resolved[experiment_name] = resolved
            return resolved

        if not definition.is_running:
            logger.info("%s is not running, serving %s without assigning", experiment_name, fallback)
            resolved = self._ephemeral(experiment_name, fallback)
            self._resolved[experiment_name] = resolved
            return resolved

        if stored:
            logger.warning(
                "Stored variant %r is not defined for %s, reassigning", stored, experiment_name
            )

        variant = self._allocate_variant(definition)
        persisted = True
        try:
            kept = store.set(experiment_name, variant)
        except StorageUnavailableError as e:
            logger.warning("Could not persist %s for %s: %s", variant, experiment_name, e)
            persisted = False
        else:
            if kept != variant:
                logger.info(
                    "Visitor %s was already assigned %s for %s", self.context.visitor_id, kept, experiment_name
                )
                variant = kept

        logger.info("Assigned visitor %s to variant %s for %s", self.context.visitor_id, variant, experiment_name)
        resolved = AssignmentModel(experiment=experiment_name, variant=variant, persisted=persisted)
        self._resolved[experiment_name] = resolved
        return resolved

    def get_variant(self, experiment_name: str) -> str:
        return self.assignment(experiment_name).variant

    def record_event(
        self, experiment_name: str, action: str, properties: Optional[Mapping] = None
    ) -> bool:
        """
        Dispatches an experiment event tagged with the visitor's variant.

        Returns whether the event was handed to the sink. Sink failures are
        logged and dropped.
        """
        if not experiment_name or not action:
            logger.warning(
                "Ignoring experiment event with experiment=%r action=%r", experiment_name, action
            )
            return False

        if not self.context.has_consented:
            return False

        event = TrackingEvent(
            action=action,
            experiment=experiment_name,
            variant=self.get_variant(experiment_name),
            visitor_id=self.context.visitor_id,
            properties=dict(properties or {}),
        )
        try:
            self.sink.dispatch(event)
        except Exception:
            logger.exception("Failed to dispatch %r for experiment %s", action, experiment_name)
            return False
        return True

    def render_variant(self, experiment_name: str, contents: Mapping[str, T]) -> Optional[T]:
        """Picks the content for the visitor's variant and records an impression."""
        variant = self.get_variant(experiment_name)
        self.record_event(experiment_name, "impression")
        if variant in contents:
            return contents[variant]
        return contents.get(self._fallback_variant(experiment_name))

    def track_interaction(
        self,
        experiment_name: str,
        handler: Optional[Callable[..., T]] = None,
        action: str = "click",
    ) -> Callable[..., Optional[T]]:
        """Wraps an interaction handler so every call is recorded as ``action`` first."""

        def tracked(*args, **kwargs):
            self.record_event(experiment_name, action)
            if handler is not None:
                return handler(*args, **kwargs)
            return None

        return tracked