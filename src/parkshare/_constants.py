"""Internal constants shared across the library."""

USER_AGENT = "parkshare/1"

# ------------------------------------------------------------------
# Collections
# ------------------------------------------------------------------

SPOTS_COLLECTION = "parkingSpots"
HISTORY_COLLECTION = "parkHistory"
ACCOUNTS_COLLECTION = "accounts"
REWARD_OUTBOX_COLLECTION = "rewardOutbox"
LEAVING_SOON_LOCKS_COLLECTION = "leavingSoonLocks"

# ------------------------------------------------------------------
# Geometry
# ------------------------------------------------------------------

EARTH_RADIUS_M = 6_371_000.0
GEOHASH_PRECISION = 9
# Sorts after every geohash base32 character; closes prefix ranges.
GEOHASH_RANGE_SENTINEL = "~"

# ------------------------------------------------------------------
# Ledger
# ------------------------------------------------------------------

MAX_RELIABILITY = 100
MIN_RELIABILITY = 0
RELIABILITY_SUCCESS_DELTA = 2
RELIABILITY_FAILURE_DELTA = 1
MAX_PRIORITY_SCORE = 150
PREMIUM_PRIORITY_BOOST = 20
LEAVING_SOON_PRIORITY_BOOST = 15
POINTS_PER_LEVEL_UNIT = 100

MS_PER_MINUTE = 60_000
