# cache_checker.py
from datetime import timedelta
from fastapi_sqlalchemy import db
from .models import User, utcnow
from .utils import get_slots_from_db
from .dependencies import get_redis_client, get_slot_cache, UserRole
import logging

DEFAULT_DAYS_AHEAD = 14


def acquire_lock(redis_client, lock_key, ttl=10):
    return redis_client.set(lock_key, "locked", nx=True, ex=ttl)


def release_lock(redis_client, lock_key):
    redis_client.delete(lock_key)


def compare_time_slots(correct_time_slots, cached_time_slots):
    discrepancies = []
    correct_set = {tuple(sorted(slot.items())) for slot in correct_time_slots}
    cached_set = {tuple(sorted(slot.items())) for slot in cached_time_slots}

    for item in correct_set - cached_set:
        discrepancies.append(f"Missing in cache: {dict(item)}")
        logging.info(f"Missing in cache: {dict(item)}")

    for item in cached_set - correct_set:
        discrepancies.append(f"Unexpected in cache: {dict(item)}")
        logging.info(f"Unexpected in cache: {dict(item)}")

    return discrepancies


def sync_provider_cache(session, cache, provider_id, days):
    """Rewrite every cached day listing of a provider that no longer matches the database.

    Days with nothing cached are left alone. Returns the days that were corrected.
    """
    corrected = []
    for day in days:
        cached_time_slots = cache.get_daily_slots(provider_id, day)
        if cached_time_slots is None:
            continue
        correct_time_slots = get_slots_from_db(session, provider_id, day)
        if compare_time_slots(correct_time_slots, cached_time_slots):
            cache.set_daily_slots(provider_id, day, correct_time_slots)
            corrected.append(day)
    return corrected


def check_and_sync_cache(days_ahead=DEFAULT_DAYS_AHEAD):
    redis_client = get_redis_client()
    cache = get_slot_cache()
    today = utcnow().date()
    days = [today + timedelta(days=offset) for offset in range(days_ahead + 1)]

    with db():
        providers = db.session.query(User).filter(User.role == UserRole.PROVIDER.value).all()

        for provider in providers:
            lock_key = f"lock:provider:{provider.id}:timeslots"

            if acquire_lock(redis_client, lock_key):
                try:
                    corrected = sync_provider_cache(db.session, cache, provider.id, days)
                    if corrected:
                        logging.info(f"Cache updated for provider {provider.id}: {[d.isoformat() for d in corrected]}")
                    else:
                        logging.info(f"Cache is consistent for provider {provider.id}.")
                finally:
                    release_lock(redis_client, lock_key)
            else:
                logging.info(f"Cache check skipped for provider {provider.id} because another process is running.")
