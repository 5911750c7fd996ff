# cache.py
import json
import logging
from datetime import date, timedelta

from redis.exceptions import RedisError


def daily_slots_key(provider_id, day):
    return f"provider:{provider_id}:timeslots:{day.isoformat()}"


def statistics_key(entity_type, entity_id):
    return f"statistics:{entity_type}:{entity_id}"


def days_between(start, end):
    """Every calendar day touched by [start, end)."""
    day = start.date()
    last = (end - timedelta(microseconds=1)).date() if end > start else start.date()
    days = []
    while day <= last:
        days.append(day)
        day += timedelta(days=1)
    return days


class SlotCache:
    """
    Read-model cache for slot listings and workflow statistics.

    Entries expire after their TTL and are dropped explicitly by the
    invalidation hooks whenever slots or windows change. Redis being down
    degrades to cache misses; it never fails a booking operation.
    """

    def __init__(self, redis_client, ttl=3600, statistics_ttl=300):
        self.redis = redis_client
        self.ttl = ttl
        self.statistics_ttl = statistics_ttl

    def get_daily_slots(self, provider_id, day: date):
        return self._get(daily_slots_key(provider_id, day))

    def set_daily_slots(self, provider_id, day: date, slots):
        self._set(daily_slots_key(provider_id, day), slots, self.ttl)

    def get_statistics(self, entity_type, entity_id):
        return self._get(statistics_key(entity_type, entity_id))

    def set_statistics(self, entity_type, entity_id, statistics):
        self._set(statistics_key(entity_type, entity_id), statistics, self.statistics_ttl)

    def invalidate_days(self, provider_id, days):
        keys = [daily_slots_key(provider_id, day) for day in sorted(set(days))]
        self._delete(keys)

    def invalidate_window(self, window):
        """Drop everything derived from a window: its days and its owners' statistics."""
        self.invalidate_owner(window.provider_id, window.organization_id, window.start_time, window.end_time)

    def invalidate_owner(self, provider_id, organization_id, start, end):
        self.invalidate_days(provider_id, days_between(start, end))
        keys = [statistics_key("provider", provider_id)]
        if organization_id is not None:
            keys.append(statistics_key("organization", organization_id))
        self._delete(keys)

    def invalidate_slots(self, provider_id, slots):
        days = set()
        for slot in slots:
            days.update(days_between(slot.start_time, slot.end_time))
        if days:
            self.invalidate_days(provider_id, days)

    def _get(self, key):
        try:
            cached = self.redis.get(key)
        except RedisError as e:
            logging.warning(f"Cache read failed for {key}: {e}")
            return None
        if not cached:
            return None
        logging.info(f"Retrieved from Redis: {key}")
        return json.loads(cached)

    def _set(self, key, value, ttl):
        try:
            self.redis.setex(key, int(ttl), json.dumps(value))
        except RedisError as e:
            logging.warning(f"Cache write failed for {key}: {e}")

    def _delete(self, keys):
        if not keys:
            return
        try:
            self.redis.delete(*keys)
        except RedisError as e:
            logging.warning(f"Cache invalidation failed for {keys}: {e}")
