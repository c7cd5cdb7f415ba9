"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Reuse the registered collector when the module is imported twice (tests, reloads)
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Application metrics
applications_submitted_counter = _counter(
    'camp_applications_submitted_total',
    'Total number of submitted applications',
    ['initial_status']
)

ops_decisions_counter = _counter(
    'camp_ops_decisions_total',
    'Total number of ops review decisions',
    ['decision']
)

# Payment metrics
checkouts_created_counter = _counter(
    'camp_checkouts_created_total',
    'Total number of Stripe checkout sessions created'
)

payments_confirmed_counter = _counter(
    'camp_payments_confirmed_total',
    'Total number of confirmed reservation payments',
    ['source']
)

refunds_counter = _counter(
    'camp_refunds_total',
    'Total number of over-capacity refund attempts',
    ['outcome']
)

webhook_events_counter = _counter(
    'camp_webhook_events_total',
    'Total number of Stripe webhook events received',
    ['event_type', 'outcome']
)
