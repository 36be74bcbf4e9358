from datetime import timedelta

from agrinotify.reminders.models import DeviceEndpoint, LegacyUserToken, UserProfile
from agrinotify.reminders.registry import (
    DeviceMap,
    EndpointRegistry,
    LegacyEndpoint,
    legacy_device_id,
    migrate_legacy_entry,
)
from conftest import manila


def _add_legacy(db, user_id="farmer-1", token="tok-legacy", platform="android"):
    db.add(LegacyUserToken(user_id=user_id, fcm_token=token, platform=platform, updated_at=manila(2024, 1, 1)))
    db.commit()


def test_migrate_legacy_entry_is_pure():
    entry = LegacyEndpoint(user_id="farmer-1", token="tok", platform="iOS")
    device_map = migrate_legacy_entry(entry)
    assert isinstance(device_map, DeviceMap)
    assert list(device_map.devices) == ["legacy-ios"]
    assert device_map.active()[0].token == "tok"
    assert legacy_device_id(None) == "legacy-android"


def test_legacy_entry_is_readable_without_migration(db):
    _add_legacy(db)
    registry = EndpointRegistry(db)

    assert isinstance(registry.load_entry("farmer-1"), LegacyEndpoint)
    endpoints = registry.active_endpoints("farmer-1")
    assert [(e.device_id, e.token) for e in endpoints] == [("legacy-android", "tok-legacy")]


def test_unknown_user_has_no_endpoints(db):
    registry = EndpointRegistry(db)
    assert registry.load_entry("nobody") is None
    assert registry.active_endpoints("nobody") == []


def test_register_endpoint_migrates_legacy_entry(db):
    _add_legacy(db)
    registry = EndpointRegistry(db)

    registry.register_endpoint("farmer-1", "tablet", "tok-tablet", "android")

    assert db.get(LegacyUserToken, "farmer-1") is None
    devices = registry.resolve("farmer-1").devices
    assert set(devices) == {"legacy-android", "tablet"}
    assert devices["legacy-android"].token == "tok-legacy"


def test_register_endpoint_upserts_same_device(db):
    registry = EndpointRegistry(db)
    registry.register_endpoint("farmer-1", "phone", "tok-old")
    registry.deactivate_user_endpoints("farmer-1")
    assert registry.active_endpoints("farmer-1") == []

    registry.register_endpoint("farmer-1", "phone", "tok-new", "ios")

    rows = db.query(DeviceEndpoint).filter_by(user_id="farmer-1").all()
    assert len(rows) == 1
    assert rows[0].token == "tok-new"
    assert rows[0].platform == "ios"
    assert rows[0].active


def test_prune_invalid_removes_only_that_device(db):
    registry = EndpointRegistry(db)
    registry.register_endpoint("farmer-1", "phone", "tok-phone")
    registry.register_endpoint("farmer-1", "tablet", "tok-tablet")

    assert registry.prune_invalid("farmer-1", "phone")
    assert not registry.prune_invalid("farmer-1", "phone")
    assert [e.device_id for e in registry.active_endpoints("farmer-1")] == ["tablet"]


def test_prune_invalid_legacy_endpoint_deletes_legacy_entry(db):
    _add_legacy(db)
    registry = EndpointRegistry(db)

    assert registry.prune_invalid("farmer-1", "legacy-android")
    assert registry.load_entry("farmer-1") is None


def test_deduplicate_keeps_most_recently_updated_pair(db):
    registry = EndpointRegistry(db)
    registry.register_endpoint("farmer-1", "shared-phone", "tok-shared")
    registry.register_endpoint("farmer-2", "shared-phone", "tok-shared")
    registry.register_endpoint("farmer-3", "phone", "tok-own")
    older = db.query(DeviceEndpoint).filter_by(user_id="farmer-1").one()
    older.updated_at = older.updated_at - timedelta(days=1)
    db.commit()

    assert registry.deduplicate() == {"merged": 1}

    assert registry.active_endpoints("farmer-1") == []
    assert [e.token for e in registry.active_endpoints("farmer-2")] == ["tok-shared"]
    assert [e.token for e in registry.active_endpoints("farmer-3")] == ["tok-own"]
    assert registry.deduplicate() == {"merged": 0}


def test_prune_stale_endpoints(db):
    registry = EndpointRegistry(db)
    now = manila(2024, 3, 1)
    long_ago = now - timedelta(days=30)

    registry.register_endpoint("inactive-user", "phone", "tok-a")
    registry.register_endpoint("logged-out-user", "phone", "tok-b")
    registry.register_endpoint("active-user", "phone", "tok-c")
    registry.register_endpoint("recent-user", "phone", "tok-d")
    registry.deactivate_user_endpoints("inactive-user")
    for row in db.query(DeviceEndpoint).filter(DeviceEndpoint.user_id != "recent-user"):
        row.last_seen_at = long_ago
    registry.deactivate_user_endpoints("recent-user")
    db.add(UserProfile(
        user_id="logged-out-user",
        last_login_at=long_ago - timedelta(days=1),
        last_logout_at=long_ago,
    ))
    db.add(UserProfile(user_id="active-user", last_login_at=long_ago, last_logout_at=long_ago - timedelta(days=1)))
    db.commit()

    removed = registry.prune_stale(now)

    assert removed == 2
    remaining = {row.user_id for row in db.query(DeviceEndpoint)}
    assert remaining == {"active-user", "recent-user"}


def test_deduplicate_includes_legacy_entries(db):
    _add_legacy(db, user_id="old-user", token="tok-shared")
    registry = EndpointRegistry(db)
    registry.register_endpoint("new-user", "phone", "tok-shared")

    assert registry.deduplicate() == {"merged": 1}

    assert registry.load_entry("old-user") is None
    assert [e.token for e in registry.active_endpoints("new-user")] == ["tok-shared"]


def test_deduplicate_keeps_newer_legacy_entry(db):
    registry = EndpointRegistry(db)
    registry.register_endpoint("old-user", "phone", "tok-shared")
    row = db.query(DeviceEndpoint).filter_by(user_id="old-user").one()
    row.updated_at = manila(2023, 6, 1)
    db.commit()
    _add_legacy(db, user_id="new-user", token="tok-shared")

    assert registry.deduplicate() == {"merged": 1}

    assert registry.active_endpoints("old-user") == []
    assert isinstance(registry.load_entry("new-user"), LegacyEndpoint)
