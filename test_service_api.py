from fastapi import FastAPI
from fastapi.testclient import TestClient
import httpx
import pytest

from agrinotify.db.session import get_db
from agrinotify.reminders import repository
from agrinotify.reminders.api import get_dispatch_client, get_weather_provider, router
from agrinotify.reminders.models import ReminderStatus, Task, TaskStatus, UserProfile
from agrinotify.reminders.schemas import CreateTaskRequest, SendTestAlertRequest, TaskData
from agrinotify.reminders.service import ReminderEngineService, task_snapshot
from agrinotify.reminders.weather import WeatherProvider
from conftest import manila


@pytest.fixture
def service(db, client, clock):
    return ReminderEngineService(db, client=client, clock=clock)


def _create(service, time="7:00 AM", days="Everyday", name="Water plants", user_id="farmer-1"):
    result = service.handle(CreateTaskRequest(user_id=user_id, task=TaskData(name=name, time=time, days=days)))
    assert result.success, result.message
    return result


def _pending(db, task_id):
    return repository.list_reminders_for_task(db, task_id, status=ReminderStatus.PENDING)


def test_create_task_schedules_first_reminder(service):
    result = _create(service)
    assert result.scheduled.trigger_at == manila(2024, 1, 2, 6, 55)
    assert result.task.days == "Everyday"


def test_complete_task_is_not_scheduled(service, db):
    result = service.handle(CreateTaskRequest(
        user_id="farmer-1",
        task=TaskData(name="Done already", time="7:00 AM", days="Once", status="Complete"),
    ))
    assert result.success
    assert result.scheduled is None
    assert _pending(db, result.task.id) == []


def test_time_change_replaces_pending_reminder(service, db):
    task = db.get(Task, _create(service).task.id)
    old = task_snapshot(task)
    task.time = "9:30 AM"
    db.commit()

    result = service.on_task_updated(task, old)

    assert result.cancelled == 1
    assert [r.trigger_at for r in _pending(db, task.id)] == [manila(2024, 1, 1, 9, 25)]


def test_name_change_keeps_reminder_and_renames_it(service, db):
    task = db.get(Task, _create(service).task.id)
    old = task_snapshot(task)
    task.name = "Water mango trees"
    db.commit()

    result = service.on_task_updated(task, old)

    assert result.cancelled == 0
    pending = _pending(db, task.id)
    assert len(pending) == 1
    assert pending[0].task_name == "Water mango trees"


def test_completed_task_cancels_reminder_and_notifies(service, db, gateway):
    service.register_endpoint("farmer-1", "phone", "tok-phone")
    task_id = _create(service).task.id
    task = db.get(Task, task_id)
    task.status = TaskStatus.COMPLETE
    db.commit()

    result = service.on_task_completed(task)

    assert result.cancelled == 1
    assert result.data["notified"] == 1
    assert gateway.sent[0][1].title == "✅ Task Completed"
    assert _pending(db, task_id) == []


def test_completion_push_failure_does_not_fail_completion(service, db, gateway):
    service.register_endpoint("farmer-1", "phone", "tok-dead")
    gateway.invalid_tokens.add("tok-dead")
    task = db.get(Task, _create(service).task.id)

    result = service.on_task_completed(task)

    assert result.success
    assert result.data["notified"] == 0
    assert service.registry.active_endpoints("farmer-1") == []


def test_tasks_cleared_removes_all_pending(service, db):
    first = _create(service).task.id
    second = _create(service, time="5:00 PM", name="Feed chickens").task.id

    result = service.on_tasks_cleared("farmer-1")

    assert result.cancelled == 2
    assert _pending(db, first) == [] and _pending(db, second) == []


def test_purge_history_drops_old_terminal_records(service, db, clock):
    reminder = _create(service, days="Once").scheduled
    repository.mark_processing(db, reminder.id, clock())
    repository.mark_sent(db, reminder.id, clock(), message_id="m-1")

    assert service.purge_history().data["purged"] == 0
    clock.advance(days=31)
    assert service.purge_history().data["purged"] == 1
    assert repository.get_reminder(db, reminder.id) is None


def test_unexpected_errors_become_failure_results(service, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(service.scanner, "scan_and_dispatch", boom)
    monkeypatch.setattr(service.broadcaster, "run_broadcast", boom)

    scan = service.scan_and_dispatch(force_scan=True)
    broadcast = service.run_broadcast("pest")
    assert not scan.success and "store unavailable" in scan.message
    assert not broadcast.success and broadcast.alert_class == "pest"


def test_maintenance_runs_dedup_prune_and_purge(service):
    result = service.run_maintenance()
    assert result.success
    assert set(result.data) == {"merged", "stale_pruned", "purged"}


def test_logout_deactivates_endpoints_and_records_logout(service, db, clock):
    db.add(UserProfile(user_id="farmer-1", preferred_city="Manila", last_login_at=clock()))
    db.commit()
    service.register_endpoint("farmer-1", "phone", "tok-phone")
    service.register_endpoint("farmer-1", "tablet", "tok-tablet")
    clock.advance(hours=2)

    result = service.on_user_logged_out("farmer-1")

    assert result.success
    assert result.data["deactivated"] == 2
    assert service.registry.active_endpoints("farmer-1") == []
    assert db.get(UserProfile, "farmer-1").last_logout_at == clock()
    assert service.broadcaster.eligible_users("weather", clock()) == []


def test_send_test_reminder_pushes_now_and_saves_notification(service, db, gateway):
    service.register_endpoint("farmer-1", "phone", "tok-phone")
    task_id = _create(service).task.id

    result = service.send_test_reminder("farmer-1", task_id)

    assert result.success
    assert result.data["sent"] == 1
    payload = gateway.sent[0][1]
    assert payload.title == "⏰ Task Reminder: Water plants"
    assert payload.data["test"] == "true"
    assert [n.task_id for n in repository.list_notifications(db, "farmer-1")] == [task_id]
    # The scheduled occurrence is untouched
    assert len(_pending(db, task_id)) == 1


def test_send_test_reminder_for_unknown_task(service, gateway):
    result = service.send_test_reminder("farmer-1", "missing")
    assert not result.success
    assert result.message == "Task not found"
    assert gateway.sent == []


def test_send_test_reminder_prunes_dead_endpoint(service, gateway):
    service.register_endpoint("farmer-1", "phone", "tok-dead")
    gateway.invalid_tokens.add("tok-dead")
    task_id = _create(service).task.id

    result = service.send_test_reminder("farmer-1", task_id)

    assert not result.success
    assert service.registry.active_endpoints("farmer-1") == []


def _weather_provider():
    def handler(request):
        return httpx.Response(200, json={
            "weather": [{"main": "Rain"}],
            "main": {"temp": 27, "humidity": 80},
            "wind": {"speed": 2},
        })

    return WeatherProvider(
        api_key="test-key",
        base_url="https://weather.test/data",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_send_test_alert_pushes_to_one_user(db, client, gateway, clock):
    service = ReminderEngineService(db, client=client, weather_provider=_weather_provider(), clock=clock)
    service.register_endpoint("farmer-1", "phone", "tok-phone")

    result = service.send_test_alert("Davao", user_id="farmer-1")

    assert result.success
    assert result.data["sent"] == 1
    assert result.data["condition"] == "Rainy"
    payload = gateway.sent[0][1]
    assert payload.title == "🧪 Weather Test: Davao"
    assert payload.data["test"] == "true"
    # Test sends leave the broadcast cooldown alone
    assert repository.get_cooldowns(db, "weather") == {}


def test_quick_alert_test_only_fetches_weather(db, client, gateway, clock):
    service = ReminderEngineService(db, client=client, weather_provider=_weather_provider(), clock=clock)

    result = service.handle(SendTestAlertRequest(city="Davao", push=False))

    assert result.success
    assert result.data["city"] == "Davao"
    assert result.data["pests"] == ["Cecid Fly", "Anthracnose", "Fungal diseases"]
    assert gateway.sent == []


def test_test_alert_lookup_failure_is_reported(db, client, clock):
    service = ReminderEngineService(db, client=client, weather_provider=WeatherProvider(api_key=""), clock=clock)
    result = service.send_test_alert("Manila", user_id="farmer-1")
    assert "not configured" in result.message
    assert not result.success


# --- HTTP routing ---

@pytest.fixture
def api(db, client):
    app = FastAPI()
    app.include_router(router, prefix="/api/v1/engine")
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_dispatch_client] = lambda: client
    app.dependency_overrides[get_weather_provider] = lambda: WeatherProvider(api_key="")
    return TestClient(app)


def test_api_create_update_delete_flow(api, db):
    response = api.post("/api/v1/engine/", json={
        "action": "create",
        "user_id": "farmer-1",
        "task": {"name": "Spray fungicide", "time": "6:00 pm", "days": "mon, wed, fri"},
    })
    assert response.status_code == 200
    body = response.json()
    assert body["success"]
    assert body["task"]["time"] == "6:00 PM"
    assert body["task"]["days"] == "Mon,Wed,Fri"
    task_id = body["task"]["id"]
    assert len(_pending(db, task_id)) == 1

    response = api.post("/api/v1/engine/", json={
        "action": "update", "user_id": "farmer-1", "task_id": task_id, "task": {"days": "Everyday"},
    })
    assert response.json()["cancelled"] == 1
    assert len(_pending(db, task_id)) == 1

    response = api.post("/api/v1/engine/", json={"action": "delete", "user_id": "farmer-1", "task_id": task_id})
    assert response.json()["cancelled"] == 1
    assert _pending(db, task_id) == []
    assert api.get("/api/v1/engine/tasks", params={"user_id": "farmer-1"}).json() == []


def test_api_rejects_unparseable_time(api):
    response = api.post("/api/v1/engine/", json={
        "action": "create",
        "user_id": "farmer-1",
        "task": {"name": "Water plants", "time": "7 o'clock", "days": "Everyday"},
    })
    assert response.status_code == 422


def test_api_rejects_unknown_action(api):
    response = api.post("/api/v1/engine/", json={"action": "teleport"})
    assert response.status_code == 422


def test_api_other_users_task_is_not_found(api):
    created = api.post("/api/v1/engine/", json={
        "action": "create",
        "user_id": "farmer-1",
        "task": {"name": "Water plants", "time": "7:00 AM", "days": "Once"},
    }).json()

    response = api.post("/api/v1/engine/", json={
        "action": "complete", "user_id": "farmer-2", "task_id": created["task"]["id"],
    })
    assert response.status_code == 200
    body = response.json()
    assert not body["success"]
    assert body["message"] == "Task not found"


def test_api_register_endpoint_and_scan(api):
    response = api.post("/api/v1/engine/", json={
        "action": "register_endpoint", "user_id": "farmer-1", "device_id": "phone", "token": "tok-1",
    })
    assert response.json()["data"]["device_id"] == "phone"

    response = api.post("/api/v1/engine/", json={"action": "scan", "force": True})
    body = response.json()
    assert body["success"] and body["scanned"]


def test_api_broadcast_with_unconfigured_weather_skips_locations(api, db):
    db.add(UserProfile(user_id="farmer-1", preferred_city="Manila"))
    db.commit()

    body = api.post("/api/v1/engine/", json={"action": "broadcast", "alert_class": "weather", "force": True}).json()

    assert body["ran"]
    assert body["resolver_failures"] == ["Manila"]
    assert body["sent"] == 0


def test_health(api):
    assert api.get("/api/v1/engine/health").json() == {"status": "ok"}


def test_api_rejects_overlong_task_name(api):
    response = api.post("/api/v1/engine/", json={
        "action": "create",
        "user_id": "farmer-1",
        "task": {"name": "x" * 5000, "time": "7:00 AM", "days": "Everyday"},
    })
    assert response.status_code == 422


def test_api_logout_and_test_reminder(api, gateway):
    api.post("/api/v1/engine/", json={
        "action": "register_endpoint", "user_id": "farmer-1", "device_id": "phone", "token": "tok-1",
    })
    created = api.post("/api/v1/engine/", json={
        "action": "create",
        "user_id": "farmer-1",
        "task": {"name": "Water plants", "time": "7:00 AM", "days": "Everyday"},
    }).json()

    body = api.post("/api/v1/engine/", json={
        "action": "test_reminder", "user_id": "farmer-1", "task_id": created["task"]["id"],
    }).json()
    assert body["success"] and body["data"]["sent"] == 1

    body = api.post("/api/v1/engine/", json={"action": "logout", "user_id": "farmer-1"}).json()
    assert body["data"]["deactivated"] == 1
    assert gateway.tokens() == ["tok-1"]
