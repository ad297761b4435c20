"""
Telemetry emission for job lifecycle transitions and governor decisions.
"""

from collections import Counter
from typing import Any, Protocol

from portal_jobs.config.logging import get_logger
from portal_jobs.infra.database import utcnow
from portal_jobs.v1.infra.jobs.models import Job, JobState, is_legal_transition
from portal_jobs.v1.infra.jobs.schemas import TransitionEvent

logger = get_logger(__name__)


class TelemetryEmitter(Protocol):
    """Collector interface for lifecycle spans and governor counters."""

    def transition(self, event: TransitionEvent) -> None:
        ...

    def governor_decision(self, governor: str, decision: str, job_type: str) -> None:
        ...


class StructlogTelemetryEmitter:
    """Writes one structured event per transition and keeps process-local counters."""

    def __init__(self):
        self.transitions: Counter[tuple[str, str]] = Counter()
        self.decisions: Counter[tuple[str, str]] = Counter()

    def transition(self, event: TransitionEvent) -> None:
        self.transitions[(event.queue, event.to_state.value)] += 1
        logger.info(
            "job.transition",
            job_id=event.job_id,
            job_type=event.job_type,
            queue=event.queue,
            attempt=event.attempt,
            from_state=event.from_state.value if event.from_state else None,
            to_state=event.to_state.value,
            outcome=event.outcome,
            worker_id=event.worker_id,
            **event.attributes,
        )

    def governor_decision(self, governor: str, decision: str, job_type: str) -> None:
        self.decisions[(governor, decision)] += 1
        logger.info(
            "governor.decision",
            governor=governor,
            decision=decision,
            job_type=job_type,
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "transitions": {
                f"{queue}.{state}": count
                for (queue, state), count in sorted(self.transitions.items())
            },
            "governor_decisions": {
                f"{governor}.{decision}": count
                for (governor, decision), count in sorted(self.decisions.items())
            },
        }


def transition_event(
    job: Job,
    from_state: JobState | None,
    to_state: JobState,
    outcome: str,
    worker_id: str | None = None,
    **attributes: Any,
) -> TransitionEvent:
    if from_state is not None and not is_legal_transition(from_state, to_state):
        logger.error(
            "Illegal job transition",
            job_id=job.id,
            from_state=from_state.value,
            to_state=to_state.value,
            outcome=outcome,
        )
    return TransitionEvent(
        job_id=job.id,
        job_type=job.job_type,
        queue=job.queue,
        attempt=job.attempt_count,
        from_state=from_state,
        to_state=to_state,
        outcome=outcome,
        worker_id=worker_id,
        at=utcnow(),
        attributes=attributes,
    )


# Process-wide default emitter
default_emitter = StructlogTelemetryEmitter()
