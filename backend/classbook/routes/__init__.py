# Every router is mounted without a version prefix; paths match the scheduler
# and Stripe dashboard configuration.
from . import (
    bookings as bookings,
    health as health,
    jobs as jobs,
    prometheus as prometheus,
    stripe_webhooks as stripe_webhooks,
)
