from dataclasses import dataclass

BUCKET_ORDER_CREATE = "order_create"
BUCKET_ORDER_QUERY = "order_query"


@dataclass(frozen=True)
class Bucket:
    points: int          # calls allowed per window
    duration: float      # window length in seconds

    def __post_init__(self):
        if self.points < 1 or self.duration <= 0:
            raise ValueError("bucket needs points >= 1 and duration > 0")
