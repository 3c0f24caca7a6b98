import random

PREFIX = "BR"


class TrackingNumberGenerator:
    """Builds ``BR-YYYYMMDD-HHMMSS-XXXX`` tracking numbers.

    Uniqueness is not guaranteed here; callers check the candidate against
    storage and ask again on a collision.
    """

    def __init__(self, rng=None):
        self._rng = rng or random.SystemRandom()

    def tracking_number(self, when):
        return f"{PREFIX}-{when:%Y%m%d-%H%M%S}-{self._rng.randrange(10000):04d}"
