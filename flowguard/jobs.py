"""Workflow jobs: recurring scans, delayed transitions and notifications."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from .collaborators import Notifier, notification_recipient
from .config import SchedulerConfig
from .constants import (
    BRANCH_DONE,
    JOB_AUTOMATION_SCAN,
    JOB_DELAYED_TRANSITION,
    JOB_ESCALATION_ACTION,
    JOB_NOTIFICATION_DELIVERY_SCAN,
    JOB_NOTIFICATION_DISPATCH,
    JOB_SLA_CHECK,
    JOB_STUCK_DETECTION,
    SLA_BREACHED,
    SLA_ESCALATION,
    STATE_CHANGED,
    STUCK_DETECTED,
)
from .contracts import EventEnvelope
from .engine import WorkflowEngine
from .errors import FlowguardError, IllegalTransition
from .escalation import EscalationHandler
from .events.bus import EventBus
from .scheduler import DeadLetter, Job, JobBackoff, JobHandler, JobQueue, QueueStats
from .sla import SlaMonitor
from .utils.json_safe import json_safe

logger = logging.getLogger(__name__)


class WorkflowJobs:
    """Enqueue and run the workflow engine's background jobs."""

    def __init__(
        self,
        queue: JobQueue,
        engine: WorkflowEngine,
        sla: SlaMonitor,
        notifier: Notifier,
        escalation: EscalationHandler,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self.queue = queue
        self.engine = engine
        self.repository = engine.repository
        self.policies = engine.policies
        self.sla = sla
        self.notifier = notifier
        self.escalation = escalation
        self.config = config or SchedulerConfig()
        engine.jobs = self

    # ------------------------------------------------------------------
    # recurring scans
    async def ensure_schedulers(self) -> List[Job]:
        """Register the recurring scans under stable ``workflow:<name>`` ids."""
        cfg = self.config
        schedules = [
            (JOB_AUTOMATION_SCAN, cfg.automation_scan_interval_ms, 500),
            (JOB_SLA_CHECK, cfg.sla_check_interval_ms, 1000),
            (JOB_STUCK_DETECTION, cfg.stuck_detection_interval_ms, 2000),
            (JOB_NOTIFICATION_DELIVERY_SCAN, cfg.notification_delivery_scan_interval_ms, 1500),
        ]
        jobs = []
        for name, every_ms, backoff_ms in schedules:
            jobs.append(
                await self.queue.add(
                    name,
                    {},
                    job_id=f"workflow:{name}",
                    delay_ms=every_ms,
                    attempts=3,
                    backoff=JobBackoff(delay_ms=backoff_ms),
                    repeat_every_ms=every_ms,
                )
            )
        return jobs

    async def run_automation_scan(self) -> List[int]:
        """Advance every instance whose current state has exactly one automatic edge."""
        moved = []
        for instance in await self.repository.list_active_instances():
            graph = await self.engine.graph(instance.workflow_id)
            transition = graph.automatic_transition(instance.current_state)
            if transition is None:
                continue
            try:
                await self.engine.move_workflow(instance.id, transition.to_state)
            except FlowguardError as e:
                logger.warning(f"Automatic transition failed for instance {instance.id}: {e}")
                continue
            moved.append(instance.id)
        return moved

    async def run_sla_check(self):
        return await self.sla.check_sla()

    async def run_stuck_detection(self) -> List[int]:
        return await self.sla.detect_stuck()

    async def run_notification_delivery_scan(self, limit: int = 100) -> int:
        return await self.notifier.deliver_pending(limit)

    # ------------------------------------------------------------------
    # enqueueing
    async def enqueue_delayed_transition(
        self,
        instance_id: int,
        next_state_id: int,
        actor_id: Optional[str] = None,
        delay_ms: int = 0,
        meta: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        expected_from: Optional[int] = None,
    ) -> Job:
        """Queue a transition to run after ``delay_ms``.

        With ``expected_from`` the job is skipped if the instance has left that
        state by the time it fires.
        """
        job_id = dedupe_key or (
            f"workflow:transition:{instance_id}:{next_state_id}:{int(time.time() * 1000)}"
        )
        payload = json_safe(
            {
                "instanceId": instance_id,
                "nextStateId": next_state_id,
                "fromStateId": expected_from,
                "actorId": actor_id,
                "meta": meta or {},
            }
        )
        return await self.queue.add(
            JOB_DELAYED_TRANSITION,
            payload,
            job_id=job_id,
            delay_ms=max(0, delay_ms or 0),
            attempts=5,
            backoff=JobBackoff(delay_ms=5000),
        )

    async def enqueue_notification_job(
        self, event_type: str, payload: Dict[str, Any], severity: str = "MEDIUM"
    ) -> Job:
        return await self.queue.add(
            JOB_NOTIFICATION_DISPATCH,
            json_safe({"eventType": event_type, "payload": payload, "severity": severity}),
            attempts=5,
            backoff=JobBackoff(delay_ms=2000),
        )

    async def enqueue_escalation_action_job(self, payload: Dict[str, Any]) -> Job:
        payload = json_safe(payload)
        instance_id = payload.get("instanceId") or "unknown"
        state_name = payload.get("stateName") or "unknown"
        action = payload.get("action") or "unknown"
        return await self.queue.add(
            JOB_ESCALATION_ACTION,
            payload,
            job_id=f"workflow:escalation:{instance_id}:{state_name}:{action}",
            attempts=6,
            backoff=JobBackoff(delay_ms=5000),
        )

    async def schedule_policy_auto_transition(
        self, instance_id: int, state_id: int, state_name: Optional[str]
    ) -> Optional[Job]:
        """Schedule the state's auto-transition policy, once per instance and state."""
        policy = self.policies.get(state_name)
        if policy is None or policy.auto_transition is None:
            return None
        auto = policy.auto_transition
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            return None
        graph = await self.engine.graph(instance.workflow_id)
        transition = graph.find_transition(state_id, event=auto.event)
        if transition is None:
            return None
        return await self.enqueue_delayed_transition(
            instance_id,
            transition.to_state,
            None,
            int(auto.delay_seconds * 1000),
            {"event": auto.event, "source": "policy.autoTransition"},
            dedupe_key=f"workflow:auto:{instance_id}:{state_id}:{auto.event}",
            expected_from=state_id,
        )

    # ------------------------------------------------------------------
    # operations
    async def queue_stats(self) -> QueueStats:
        return await self.queue.counts()

    async def list_dead_letters(self, limit: int = 20) -> List[DeadLetter]:
        return await self.queue.list_dead(limit)

    async def requeue_dead_letter(self, dead_letter_id: str) -> Job:
        job = await self.queue.requeue_dead(dead_letter_id)
        logger.info(f"Requeued dead letter {dead_letter_id} as job {job.id} ({job.name})")
        return job

    # ------------------------------------------------------------------
    # job handlers
    async def _delayed_transition(self, job: Job) -> None:
        p = job.payload
        from_state = p.get("fromStateId")
        try:
            await self.engine.apply_transition(
                int(p["instanceId"]),
                int(p["nextStateId"]),
                p.get("actorId"),
                p.get("meta") or {},
                expected_from=int(from_state) if from_state is not None else None,
            )
        except IllegalTransition as e:
            logger.info(f"Skipping stale delayed transition {job.id}: {e}")

    async def _notification_dispatch(self, job: Job) -> None:
        p = job.payload
        inner = p.get("payload") or {}
        await self.notifier.notify(
            notification_recipient(inner), p["eventType"], p.get("severity", "MEDIUM"), inner
        )

    async def _escalation_action(self, job: Job) -> None:
        await self.escalation.run(job.payload)

    def handlers(self) -> Dict[str, JobHandler]:
        async def automation_scan(job: Job) -> None:
            await self.run_automation_scan()

        async def sla_check(job: Job) -> None:
            await self.run_sla_check()

        async def stuck_detection(job: Job) -> None:
            await self.run_stuck_detection()

        async def notification_delivery_scan(job: Job) -> None:
            await self.run_notification_delivery_scan()

        return {
            JOB_AUTOMATION_SCAN: automation_scan,
            JOB_SLA_CHECK: sla_check,
            JOB_STUCK_DETECTION: stuck_detection,
            JOB_NOTIFICATION_DELIVERY_SCAN: notification_delivery_scan,
            JOB_DELAYED_TRANSITION: self._delayed_transition,
            JOB_NOTIFICATION_DISPATCH: self._notification_dispatch,
            JOB_ESCALATION_ACTION: self._escalation_action,
        }

    # ------------------------------------------------------------------
    # event wiring
    def subscribe(self, bus: EventBus) -> None:
        """Wire the engine's facts to the jobs that react to them."""

        async def on_sla_breached(envelope: EventEnvelope) -> None:
            await self.enqueue_notification_job(SLA_BREACHED, envelope.payload, "HIGH")

        async def on_stuck(envelope: EventEnvelope) -> None:
            await self.enqueue_notification_job(STUCK_DETECTED, envelope.payload, "HIGH")

        async def on_escalation(envelope: EventEnvelope) -> None:
            await self.enqueue_escalation_action_job(envelope.payload)

        async def on_state_changed(envelope: EventEnvelope) -> None:
            p = envelope.payload
            await self.schedule_policy_auto_transition(
                int(p["instanceId"]), int(p["toState"]), p.get("toStateName")
            )

        bus.subscribe(SLA_BREACHED, _local_only(on_sla_breached))
        bus.subscribe(STUCK_DETECTED, _local_only(on_stuck))
        bus.subscribe(SLA_ESCALATION, _local_only(on_escalation))
        bus.subscribe(STATE_CHANGED, _local_only(on_state_changed))
        bus.subscribe(BRANCH_DONE, _local_only(self.engine.on_branch_done))


def _local_only(handler):
    """Skip envelopes ingested from another process; its publisher already reacted."""

    async def wrapper(envelope: EventEnvelope) -> None:
        if envelope.ingested_from:
            return
        await handler(envelope)

    wrapper.__name__ = getattr(handler, "__name__", "handler")
    return wrapper
