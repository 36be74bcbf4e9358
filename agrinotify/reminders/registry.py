"""
Device/endpoint registry: multi-device push endpoints per user, legacy-shape
migration, token deduplication and pruning of dead or stale endpoints.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union
import logging

from sqlalchemy import select, delete, update
from sqlalchemy.orm import Session

from .config import settings
from .metrics import endpoints_pruned_total
from .models import DeviceEndpoint, LegacyUserToken, UserProfile
from agrinotify.utils.timezone import utc_now

logger = logging.getLogger(__name__)

LEGACY_DEVICE_PREFIX = "legacy"


@dataclass(frozen=True)
class Endpoint:
    user_id: str
    device_id: str
    token: str
    platform: str = "android"
    active: bool = True
    last_seen_at: Optional[datetime] = None


@dataclass(frozen=True)
class LegacyEndpoint:
    """Deprecated bare-token entry: one token per user, no device id"""
    user_id: str
    token: str
    platform: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeviceMap:
    user_id: str
    devices: Dict[str, Endpoint] = field(default_factory=dict)

    def active(self) -> List[Endpoint]:
        return [e for e in self.devices.values() if e.active]


RegistryEntry = Union[LegacyEndpoint, DeviceMap]


def legacy_device_id(platform: Optional[str]) -> str:
    return f"{LEGACY_DEVICE_PREFIX}-{(platform or 'android').lower()}"


def migrate_legacy_entry(entry: LegacyEndpoint) -> DeviceMap:
    """Pure conversion of the legacy shape into a single-device map."""
    device_id = legacy_device_id(entry.platform)
    endpoint = Endpoint(
        user_id=entry.user_id,
        device_id=device_id,
        token=entry.token,
        platform=(entry.platform or "android").lower(),
        active=True,
        last_seen_at=entry.updated_at,
    )
    return DeviceMap(user_id=entry.user_id, devices={device_id: endpoint})


def _to_endpoint(row: DeviceEndpoint) -> Endpoint:
    return Endpoint(
        user_id=row.user_id,
        device_id=row.device_id,
        token=row.token,
        platform=row.platform,
        active=row.active,
        last_seen_at=row.last_seen_at,
    )


class EndpointRegistry:
    """Registry and pruner for push endpoints"""

    def __init__(self, db: Session, stale_after: Optional[timedelta] = None):
        self.db = db
        self.stale_after = stale_after or timedelta(days=settings.ENDPOINT_STALE_DAYS)

    # --- reads ---

    def load_entry(self, user_id: str) -> Optional[RegistryEntry]:
        rows = list(self.db.execute(
            select(DeviceEndpoint).where(DeviceEndpoint.user_id == user_id)
        ).scalars())
        if rows:
            return DeviceMap(user_id=user_id, devices={r.device_id: _to_endpoint(r) for r in rows})
        legacy = self.db.get(LegacyUserToken, user_id)
        if legacy and legacy.fcm_token:
            return LegacyEndpoint(
                user_id=user_id,
                token=legacy.fcm_token,
                platform=legacy.platform,
                updated_at=legacy.updated_at,
            )
        return None

    def resolve(self, user_id: str) -> DeviceMap:
        """Device map for a user, reading the legacy shape when that is all there is."""
        entry = self.load_entry(user_id)
        if entry is None:
            return DeviceMap(user_id=user_id)
        if isinstance(entry, LegacyEndpoint):
            return migrate_legacy_entry(entry)
        return entry

    def active_endpoints(self, user_id: str) -> List[Endpoint]:
        return self.resolve(user_id).active()

    # --- writes ---

    def register_endpoint(self, user_id: str, device_id: str, token: str, platform: str = "android") -> Endpoint:
        """Upsert the (user, device) endpoint and mark it active."""
        self.migrate_legacy(user_id)
        now = utc_now()
        row = self.db.execute(
            select(DeviceEndpoint)
            .where(DeviceEndpoint.user_id == user_id)
            .where(DeviceEndpoint.device_id == device_id)
        ).scalars().first()
        if row is None:
            row = DeviceEndpoint(
                user_id=user_id,
                device_id=device_id,
                token=token,
                platform=platform,
                active=True,
                last_seen_at=now,
                created_at=now,
                updated_at=now,
            )
            self.db.add(row)
        else:
            row.token = token
            row.platform = platform
            row.active = True
            row.last_seen_at = now
            row.updated_at = now
        self.db.commit()
        self.db.refresh(row)
        logger.info(f"📱 [Registry] Endpoint registered | user={user_id} device={device_id} token={token[:10]}...")
        return _to_endpoint(row)

    def migrate_legacy(self, user_id: str) -> bool:
        """Rewrite a legacy bare-token entry into the device-map shape."""
        legacy = self.db.get(LegacyUserToken, user_id)
        if legacy is None:
            return False
        entry = migrate_legacy_entry(LegacyEndpoint(
            user_id=user_id,
            token=legacy.fcm_token,
            platform=legacy.platform,
            updated_at=legacy.updated_at,
        ))
        now = utc_now()
        for endpoint in entry.devices.values():
            exists = self.db.execute(
                select(DeviceEndpoint.id)
                .where(DeviceEndpoint.user_id == user_id)
                .where(DeviceEndpoint.device_id == endpoint.device_id)
            ).first()
            if exists:
                continue
            self.db.add(DeviceEndpoint(
                user_id=user_id,
                device_id=endpoint.device_id,
                token=endpoint.token,
                platform=endpoint.platform,
                active=True,
                last_seen_at=endpoint.last_seen_at or now,
                created_at=now,
                updated_at=legacy.updated_at or now,
            ))
        self.db.delete(legacy)
        self.db.commit()
        logger.info(f"🔁 [Registry] Migrated legacy token entry | user={user_id}")
        return True

    def prune_invalid(self, user_id: str, device_id: str) -> bool:
        """Delete one endpoint the gateway proved invalid."""
        result = self.db.execute(
            delete(DeviceEndpoint)
            .where(DeviceEndpoint.user_id == user_id)
            .where(DeviceEndpoint.device_id == device_id)
        )
        removed = result.rowcount
        if device_id.startswith(LEGACY_DEVICE_PREFIX):
            removed += self.db.execute(
                delete(LegacyUserToken).where(LegacyUserToken.user_id == user_id)
            ).rowcount
        self.db.commit()
        if removed:
            endpoints_pruned_total.labels(reason="invalid").inc(removed)
            logger.info(f"🗑️ [Registry] Removed invalid endpoint | user={user_id} device={device_id}")
        return removed > 0

    def deactivate_user_endpoints(self, user_id: str) -> int:
        """Mark all endpoints of a user inactive (explicit logout)."""
        result = self.db.execute(
            update(DeviceEndpoint)
            .where(DeviceEndpoint.user_id == user_id)
            .where(DeviceEndpoint.active.is_(True))
            .values(active=False, updated_at=utc_now())
        )
        self.db.commit()
        return result.rowcount

    def deduplicate(self) -> Dict[str, int]:
        """Keep only the most recently updated holder of each token.

        Legacy bare-token entries take part too; a losing legacy entry is
        deleted outright.
        """
        holders: Dict[str, List[Union[DeviceEndpoint, LegacyUserToken]]] = {}
        for row in self.db.execute(select(DeviceEndpoint)).scalars():
            holders.setdefault(row.token, []).append(row)
        for legacy in self.db.execute(select(LegacyUserToken)).scalars():
            if legacy.fcm_token:
                holders.setdefault(legacy.fcm_token, []).append(legacy)

        merged = 0
        for token, group in holders.items():
            if len(group) < 2:
                continue
            keeper = max(group, key=lambda r: r.updated_at)
            for row in group:
                if row is keeper:
                    continue
                if isinstance(row, LegacyUserToken):
                    self.db.execute(delete(LegacyUserToken).where(LegacyUserToken.user_id == row.user_id))
                else:
                    self.db.execute(delete(DeviceEndpoint).where(DeviceEndpoint.id == row.id))
                merged += 1
            kept_device = keeper.device_id if isinstance(keeper, DeviceEndpoint) else legacy_device_id(keeper.platform)
            logger.info(
                f"🧹 [Registry] Token shared by {len(group)} endpoints, kept user={keeper.user_id} device={kept_device}"
            )
        self.db.commit()
        if merged:
            endpoints_pruned_total.labels(reason="duplicate").inc(merged)
        return {"merged": merged}

    def prune_stale(self, now: Optional[datetime] = None) -> int:
        """Delete endpoints unseen past the horizon that are inactive or whose user logged out."""
        now = now or utc_now()
        cutoff = now - self.stale_after
        logged_out = {
            p.user_id
            for p in self.db.execute(
                select(UserProfile).where(UserProfile.last_logout_at.is_not(None))
            ).scalars()
            if p.last_login_at is None or p.last_logout_at > p.last_login_at
        }
        candidates = self.db.execute(
            select(DeviceEndpoint).where(DeviceEndpoint.last_seen_at < cutoff)
        ).scalars()
        stale_ids = [
            row.id for row in candidates
            if not row.active or row.user_id in logged_out
        ]
        for endpoint_id in stale_ids:
            self.db.execute(delete(DeviceEndpoint).where(DeviceEndpoint.id == endpoint_id))
        self.db.commit()
        if stale_ids:
            endpoints_pruned_total.labels(reason="stale").inc(len(stale_ids))
            logger.info(f"🗑️ [Registry] Pruned {len(stale_ids)} stale endpoints (cutoff={cutoff.isoformat()})")
        return len(stale_ids)
