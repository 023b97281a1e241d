from bisect import bisect_right
from datetime import date, datetime, timedelta

# Telegram does not expose account creation dates. User ids are handed out
# roughly in order, so a few (id, registration month) anchors give a usable
# estimate. Anchors are approximate.
ID_DATE_ANCHORS = (
    (0, date(2013, 8, 1)),
    (100_000_000, date(2015, 3, 1)),
    (500_000_000, date(2018, 1, 1)),
    (1_000_000_000, date(2019, 11, 1)),
    (2_000_000_000, date(2021, 6, 1)),
    (5_000_000_000, date(2022, 4, 1)),
    (6_000_000_000, date(2023, 1, 1)),
    (7_000_000_000, date(2024, 3, 1)),
)


def estimate_registration_date(user_id: int) -> date:
    ids = [a[0] for a in ID_DATE_ANCHORS]
    i = bisect_right(ids, user_id) - 1
    if i < 0:
        return ID_DATE_ANCHORS[0][1]
    if i >= len(ID_DATE_ANCHORS) - 1:
        # newer than the last anchor: treat as brand new
        return date.today()
    (lo_id, lo_date), (hi_id, hi_date) = ID_DATE_ANCHORS[i], ID_DATE_ANCHORS[i + 1]
    frac = (user_id - lo_id) / (hi_id - lo_id)
    return lo_date + timedelta(days=int((hi_date - lo_date).days * frac))


def estimate_account_age_days(user_id: int, today: date | None = None) -> int:
    today = today or date.today()
    return max(0, (today - estimate_registration_date(user_id)).days)


def looks_like_fake(user) -> bool:
    # bots never get keys
    if getattr(user, "is_bot", False):
        return True

    # no username and no name at all is suspicious
    if not getattr(user, "username", None) and not getattr(user, "first_name", None):
        return True

    return False

class SimpleRateLimit:
    def __init__(self):
        self._events = {}

    def allow(self, key: str, limit: int, per_seconds: int) -> bool:
        now = datetime.now()
        arr = self._events.get(key, [])
        arr = [t for t in arr if now - t < timedelta(seconds=per_seconds)]
        if len(arr) >= limit:
            self._events[key] = arr
            return False
        arr.append(now)
        self._events[key] = arr
        return True

rate_limiter = SimpleRateLimit()
