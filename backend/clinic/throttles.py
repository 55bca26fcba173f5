from rest_framework.throttling import UserRateThrottle

# Rates live in REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"], keyed by scope.


class LookupRateThrottle(UserRateThrottle):
    scope = "lookup"


class QrRateThrottle(UserRateThrottle):
    scope = "qr"


class StatsRateThrottle(UserRateThrottle):
    scope = "stats"
