"""Event names, reserved trigger events and job names."""

SLA_BREACH_EVENT = "SLA_BREACH"
JOIN_EVENT = "JOIN"

STATE_CHANGED = "WORKFLOW.STATE_CHANGED"
PARALLEL_STARTED = "WORKFLOW.PARALLEL_STARTED"
BRANCH_STARTED = "WORKFLOW.BRANCH_STARTED"
BRANCH_DONE = "WORKFLOW.BRANCH_DONE"
BRANCH_FAILED = "WORKFLOW.BRANCH_FAILED"
SLA_BREACHED = "WORKFLOW.SLA_BREACHED"
SLA_ESCALATION = "WORKFLOW.SLA_ESCALATION"
SLA_ESCALATION_HANDLED = "WORKFLOW.SLA_ESCALATION_HANDLED"
STUCK_DETECTED = "WORKFLOW.STUCK_DETECTED"
RETRY_ATTEMPT = "RETRY.ATTEMPT"
RETRY_FAILURE = "RETRY.FAILURE"
SAGA_COMPENSATION = "SAGA.COMPENSATION"

PAYMENT_HELD = "ORDER.PAYMENT_HELD"
PAYMENT_RELEASED = "ORDER.PAYMENT_RELEASED"
PAYMENT_REFUNDED = "ORDER.PAYMENT_REFUNDED"

# Event type -> topic suffix on the durable log. Types missing here stay local.
EVENT_TOPICS = {
    STATE_CHANGED: "events",
    SLA_BREACHED: "events",
    SLA_ESCALATION: "events",
    SLA_ESCALATION_HANDLED: "events",
    STUCK_DETECTED: "events",
    PAYMENT_HELD: "events",
    PAYMENT_RELEASED: "events",
    PAYMENT_REFUNDED: "events",
    "SERVICE_REQUEST.CREATED": "events",
    "SERVICE_REQUEST.ASSIGNED": "events",
    "SERVICE_REQUEST.CANCELLED": "events",
    "SERVICE_REQUEST.COMPLETED": "events",
    RETRY_ATTEMPT: "retry",
    RETRY_FAILURE: "retry",
    SAGA_COMPENSATION: "saga",
}

SIGNAL_ESCALATION = SLA_ESCALATION
SIGNAL_STUCK = STUCK_DETECTED

JOB_AUTOMATION_SCAN = "automation-scan"
JOB_SLA_CHECK = "sla-check"
JOB_STUCK_DETECTION = "stuck-detection"
JOB_NOTIFICATION_DELIVERY_SCAN = "notification-delivery-scan"
JOB_DELAYED_TRANSITION = "delayed-transition"
JOB_NOTIFICATION_DISPATCH = "notification-dispatch"
JOB_ESCALATION_ACTION = "sla-escalation-action"

TRANSITION_BREAKER_KEY = "workflow.applyTransition"

JOB_NAMES = (
    JOB_AUTOMATION_SCAN,
    JOB_SLA_CHECK,
    JOB_STUCK_DETECTION,
    JOB_NOTIFICATION_DELIVERY_SCAN,
    JOB_DELAYED_TRANSITION,
    JOB_NOTIFICATION_DISPATCH,
    JOB_ESCALATION_ACTION,
)
