from prometheus_client import Counter

from ..monitoring.prometheus_metrics import REGISTRY

rl_decisions = Counter(
    "classbook_rl_decisions_total",
    "rate-limit decisions",
    ["bucket", "action"],
    registry=REGISTRY,
)

rl_eval_errors = Counter(
    "classbook_rl_eval_errors_total",
    "rate-limit store errors that fell back to allow",
    ["bucket"],
    registry=REGISTRY,
)
