"""
Fan-out alert job: one payload per location, delivered to every eligible user there
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from . import repository
from .config import settings
from .dispatcher import DispatchClient, NotificationPayload
from .metrics import broadcast_runs_total, broadcast_dispatch_total
from .models import UserProfile
from .registry import EndpointRegistry
from .schemas import BroadcastSummary
from .weather import PayloadResolver, WeatherProvider, default_resolver
from agrinotify.utils.timezone import utc_now

logger = logging.getLogger(__name__)

ALERT_CLASSES = ("weather", "pest")


def location_key(city: str) -> str:
    return " ".join(city.split()).casefold()


def cooldown_for(alert_class: str) -> timedelta:
    if alert_class == "pest":
        return timedelta(minutes=settings.PEST_COOLDOWN_MINUTES)
    return timedelta(minutes=settings.WEATHER_COOLDOWN_MINUTES)


def is_logged_in(profile: UserProfile) -> bool:
    if profile.last_logout_at is None:
        return True
    return profile.last_login_at is not None and profile.last_login_at >= profile.last_logout_at


class FanOutAlertJob:
    def __init__(
        self,
        db: Session,
        client: DispatchClient,
        registry: Optional[EndpointRegistry] = None,
        weather_provider: Optional[WeatherProvider] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.client = client
        self.registry = registry or EndpointRegistry(db)
        self.weather_provider = weather_provider or WeatherProvider()
        self.clock = clock

    def eligible_users(self, alert_class: str, now: datetime) -> List[UserProfile]:
        cutoff = now - cooldown_for(alert_class)
        cooldowns = repository.get_cooldowns(self.db, alert_class)
        eligible = []
        for profile in repository.list_user_profiles(self.db):
            if not profile.is_active or not (profile.preferred_city or "").strip():
                continue
            if not is_logged_in(profile):
                continue
            last = cooldowns.get(profile.user_id)
            if last is not None and last > cutoff:
                continue
            eligible.append(profile)
        return eligible

    def run_broadcast(
        self,
        alert_class: str,
        payload_resolver: Optional[PayloadResolver] = None,
        force: bool = False,
    ) -> BroadcastSummary:
        if alert_class not in ALERT_CLASSES:
            raise ValueError(f"Unknown alert class: {alert_class}")

        now = self.clock()
        guard = timedelta(seconds=settings.BROADCAST_MIN_INTERVAL_SECONDS)
        if not force and not repository.claim_marker(self.db, f"broadcast:{alert_class}", now, guard):
            return BroadcastSummary(alert_class=alert_class, message="Broadcast ran recently")

        broadcast_runs_total.labels(alert_class=alert_class).inc()
        resolver = payload_resolver or default_resolver(alert_class, self.weather_provider)
        self.registry.deduplicate()

        users = self.eligible_users(alert_class, now)
        summary = BroadcastSummary(alert_class=alert_class, ran=True, eligible=len(users))
        if not users:
            summary.message = "No eligible users"
            return summary

        groups: Dict[str, List[UserProfile]] = {}
        for profile in users:
            groups.setdefault(location_key(profile.preferred_city), []).append(profile)
        summary.locations = len(groups)

        payloads = self._resolve_locations(groups, resolver, summary)

        jobs: List[Tuple[Tuple[str, object], str, NotificationPayload]] = []
        for key, members in groups.items():
            payload = payloads.get(key)
            if payload is None:
                summary.skipped += len(members)
                continue
            for profile in members:
                endpoints = self.registry.active_endpoints(profile.user_id)
                if not endpoints:
                    summary.skipped += 1
                    continue
                for endpoint in endpoints:
                    jobs.append(((profile.user_id, endpoint), endpoint.token, payload))

        delivered_users = set()
        for outcome in self.client.send_many(jobs, max_workers=settings.DISPATCH_MAX_WORKERS):
            user_id, endpoint = outcome.key
            if outcome.ok:
                summary.sent += 1
                delivered_users.add(user_id)
                broadcast_dispatch_total.labels(alert_class=alert_class, outcome="sent").inc()
                continue
            summary.failed += 1
            broadcast_dispatch_total.labels(alert_class=alert_class, outcome="failed").inc()
            if outcome.error.endpoint_invalid:
                self.registry.prune_invalid(endpoint.user_id, endpoint.device_id)

        for user_id in sorted(delivered_users):
            repository.touch_cooldown(self.db, user_id, alert_class, now)

        summary.message = f"Sent {summary.sent} {alert_class} alerts across {summary.locations} locations"
        logger.info(
            f"📣 [Broadcast] {alert_class}: eligible={summary.eligible} sent={summary.sent} "
            f"failed={summary.failed} skipped={summary.skipped} locations={summary.locations}"
        )
        return summary

    def _resolve_locations(
        self,
        groups: Dict[str, List[UserProfile]],
        resolver: PayloadResolver,
        summary: BroadcastSummary,
    ) -> Dict[str, Optional[NotificationPayload]]:
        """Resolve each location once; a failing location is skipped, never fatal."""
        cities = {key: members[0].preferred_city.strip() for key, members in groups.items()}

        def _resolve(key: str):
            try:
                return key, resolver(cities[key]), None
            except Exception as e:
                return key, None, e

        keys = list(cities)
        with ThreadPoolExecutor(max_workers=max(1, min(settings.DISPATCH_MAX_WORKERS, len(keys)))) as pool:
            results = list(pool.map(_resolve, keys))

        payloads: Dict[str, Optional[NotificationPayload]] = {}
        for key, payload, error in results:
            if error is not None:
                logger.warning(f"⚠️ [Broadcast] Payload resolution failed for {cities[key]}: {error!r}")
                summary.resolver_failures.append(cities[key])
                payloads[key] = None
            else:
                payloads[key] = payload
        return payloads
