from dataclasses import dataclass


@dataclass(frozen=True)
class BucketPolicy:
    capacity: int
    refill_per_min: float
    cost: int = 1

    @property
    def refill_rate_per_second(self) -> float:
        return self.refill_per_min / 60.0


# Keys are composed as "<namespace>:<prefix>:<identity>"
BUCKETS = {
    "book": BucketPolicy(capacity=5, refill_per_min=5),
    "book:user": BucketPolicy(capacity=3, refill_per_min=3),
    "cancel": BucketPolicy(capacity=10, refill_per_min=10),
}
