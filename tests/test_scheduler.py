"""Tests for the reconcile scheduler.

Covers:
- run_once: create, observe, persist, dry run, name filters
- Invalid or undeclared resources reported per resource
- References resolved against statuses loaded at the start of the pass
- Cycle deadlines (timeouts persist nothing)
- run_forever pass limits and stop events
- Operator commands: render and delete
"""

import asyncio
import time

import pytest

from conftest import BASE_URL, ITEM_URL, FakeHttpClient, make_spec
from http_reconciler.config import Config
from http_reconciler.config_schema import build_config
from http_reconciler.errors import FieldNotFound, MappingNotFound, ReconcilerError
from http_reconciler.reconcile.models import (
    Action,
    DisposableStatus,
    ResourceState,
    ResourceStatus,
    Response,
    RequestSnapshot,
)
from http_reconciler.reconcile.scheduler import ReconcileScheduler
from http_reconciler.reconcile.state import ResourceStore

LIVE_BODY = '{"id":"123","username":"john_doe","email":"a@b.com"}'
MEMBERS_URL = "https://api.example.com/members"
JOB_URL = "https://api.example.com/jobs"


def _spec_dict(**overrides) -> dict:
    return make_spec(**overrides).model_dump(mode="json", by_alias=True)


def _member_dict() -> dict:
    return {
        "name": "member",
        "spec": _spec_dict(
            payload={"baseUrl": MEMBERS_URL, "body": {"username": "m"}},
            mappings={
                "create": {
                    "method": "POST",
                    "url": ".payload.baseUrl",
                    "body": '{"username": ".payload.body.username", "groupId": ".payload.body.groupId"}',
                },
                "get": {"method": "GET", "url": ".payload.baseUrl"},
            },
        ),
        "references": [
            {
                "dependsOn": {"name": "demo-user"},
                "patchesFrom": {"name": "demo-user", "fieldPath": "status.response.body.id"},
                "toFieldPath": "spec.payload.body.groupId",
            }
        ],
    }


def _created_status() -> ResourceStatus:
    return ResourceStatus(
        state=ResourceState.SYNCED,
        synced=True,
        response=Response(status_code=201, body=LIVE_BODY),
        request_details=RequestSnapshot(action=Action.CREATE, method="POST", url=BASE_URL),
        spec_hash=make_spec().spec_hash(),
    )


def _scheduler(tmp_path, client, resources, **config_overrides):
    unified = build_config({"resources": resources})
    config = Config(state_dir=str(tmp_path / "state"), **config_overrides)
    return ReconcileScheduler(unified, config, client=client)


@pytest.fixture
def scheduler(tmp_path, fake_client):
    return _scheduler(tmp_path, fake_client, [{"name": "demo-user", "spec": _spec_dict()}])


# -------------------------------------------------------------------------
# run_once
# -------------------------------------------------------------------------


class TestRunOnce:
    """Single passes."""

    async def test_creates_and_persists(self, scheduler, fake_client):
        fake_client.add("POST", BASE_URL, 201, LIVE_BODY)

        report = await scheduler.run_once()

        assert len(report.results) == 1
        assert len(report.created) == 1
        assert report.errors == []
        assert report.completed_at is not None
        saved = scheduler.store.load("demo-user")
        assert saved.state == ResourceState.OBSERVING
        assert saved.response.body == LIVE_BODY

    async def test_second_pass_observes(self, scheduler, fake_client):
        fake_client.add("POST", BASE_URL, 201, LIVE_BODY)
        fake_client.add("GET", ITEM_URL, 200, LIVE_BODY)

        await scheduler.run_once()
        report = await scheduler.run_once()

        assert [r.state for r in report.results] == [ResourceState.SYNCED]
        assert scheduler.store.load("demo-user").synced
        assert fake_client.methods == ["POST", "GET"]

    async def test_dry_run_persists_nothing(self, scheduler, fake_client):
        report = await scheduler.run_once(dry_run=True)

        assert report.dry_run
        assert report.results[0].action == Action.CREATE
        assert fake_client.calls == []
        assert scheduler.store.load("demo-user") is None

    async def test_dry_run_from_config(self, tmp_path, fake_client):
        scheduler = _scheduler(
            tmp_path, fake_client, [{"name": "demo-user", "spec": _spec_dict()}], dry_run=True
        )
        report = await scheduler.run_once()
        assert report.dry_run
        assert fake_client.calls == []

    async def test_undeclared_name(self, scheduler, fake_client):
        report = await scheduler.run_once(names=["ghost"])

        assert len(report.errors) == 1
        assert report.errors[0].name == "ghost"
        assert report.errors[0].error == "resource 'ghost' is not declared"
        assert fake_client.calls == []

    async def test_name_filter(self, tmp_path, fake_client):
        scheduler = _scheduler(
            tmp_path,
            fake_client,
            [{"name": "demo-user", "spec": _spec_dict()}, _member_dict()],
        )
        fake_client.add("POST", BASE_URL, 201, LIVE_BODY)

        report = await scheduler.run_once(names=["demo-user"])

        assert [r.name for r in report.results] == ["demo-user"]

    async def test_invalid_declaration_reported(self, tmp_path, fake_client):
        scheduler = _scheduler(
            tmp_path,
            fake_client,
            [{"name": "broken", "spec": {"mappings": {}}}, {"name": "demo-user", "spec": _spec_dict()}],
        )
        fake_client.add("POST", BASE_URL, 201, LIVE_BODY)

        report = await scheduler.run_once()

        errors = {r.name: r.error for r in report.errors}
        assert list(errors) == ["broken"]
        assert errors["broken"].startswith("invalid resource")
        assert len(report.created) == 1

    async def test_disposable_persisted_by_kind(self, tmp_path, fake_client):
        scheduler = _scheduler(
            tmp_path,
            fake_client,
            [{"name": "job", "kind": "disposable", "spec": {"url": JOB_URL, "method": "POST"}}],
        )
        fake_client.add("POST", JOB_URL, 200, "{}")

        report = await scheduler.run_once()

        assert report.results[0].kind == "disposable"
        assert scheduler.store.load("job", kind="disposable").synced
        assert scheduler.store.load("job") is None

    async def test_unexpected_error_stays_per_resource(self, tmp_path, fake_client):
        scheduler = _scheduler(
            tmp_path,
            fake_client,
            [
                {"name": "job", "kind": "disposable", "spec": {"url": JOB_URL, "method": "POST"}},
                {"name": "demo-user", "spec": _spec_dict()},
            ],
        )
        fake_client.fail("POST", JOB_URL, RuntimeError("boom"))
        fake_client.add("POST", BASE_URL, 201, LIVE_BODY)

        report = await scheduler.run_once()

        results = {r.name: r for r in report.results}
        assert not results["job"].success
        assert results["job"].error == "unexpected error: RuntimeError: boom"
        assert results["job"].status is None
        assert scheduler.store.load("job", kind="disposable") is None
        assert results["demo-user"].success
        assert scheduler.store.load("demo-user").state == ResourceState.OBSERVING


# -------------------------------------------------------------------------
# References
# -------------------------------------------------------------------------


class TestReferences:
    """dependsOn / patchesFrom inside a pass."""

    async def test_dependency_not_ready(self, tmp_path, fake_client):
        scheduler = _scheduler(
            tmp_path,
            fake_client,
            [{"name": "demo-user", "spec": _spec_dict()}, _member_dict()],
        )
        fake_client.add("POST", BASE_URL, 201, LIVE_BODY)

        report = await scheduler.run_once()

        member = next(r for r in report.results if r.name == "member")
        assert not member.success
        assert member.error == "dependency 'demo-user' is not ready"
        assert member.status is None
        assert scheduler.store.load("member") is None
        assert fake_client.methods == ["POST"]

    async def test_patch_applied_from_synced_source(self, tmp_path, fake_client):
        scheduler = _scheduler(
            tmp_path,
            fake_client,
            [{"name": "demo-user", "spec": _spec_dict()}, _member_dict()],
        )
        scheduler.store.save("demo-user", _created_status())
        fake_client.add("GET", ITEM_URL, 200, LIVE_BODY)
        fake_client.add("POST", MEMBERS_URL, 201, '{"id":"9"}')

        report = await scheduler.run_once()

        assert report.errors == []
        member_call = next(c for c in fake_client.calls if c.url == MEMBERS_URL)
        assert member_call.body == '{"groupId":"123","username":"m"}'

    async def test_unknown_source(self, tmp_path, fake_client):
        scheduler = _scheduler(tmp_path, fake_client, [_member_dict()])

        report = await scheduler.run_once()

        assert report.errors[0].error == "referenced resource 'demo-user' not found"


# -------------------------------------------------------------------------
# Deadlines and loops
# -------------------------------------------------------------------------


class _SlowClient(FakeHttpClient):
    def send(self, *args, **kwargs):
        time.sleep(0.3)
        return super().send(*args, **kwargs)


class TestDeadlines:
    """Cycles are bounded by twice the request timeout."""

    async def test_timeout_persists_nothing(self, tmp_path):
        client = _SlowClient()
        client.add("POST", BASE_URL, 201, LIVE_BODY)
        scheduler = _scheduler(
            tmp_path, client, [{"name": "demo-user", "spec": _spec_dict(waitTimeout=0.05)}]
        )

        report = await scheduler.run_once()

        result = report.results[0]
        assert not result.success
        assert result.error == "reconcile timed out after 0.1s"
        assert scheduler.store.load("demo-user") is None

    def test_deadline_defaults_to_configured_timeout(self, tmp_path, fake_client):
        scheduler = _scheduler(
            tmp_path,
            fake_client,
            [{"name": "demo-user", "spec": _spec_dict()}],
            default_timeout=7.0,
        )
        resource = scheduler.load(scheduler.unified.resources[0])
        assert scheduler._deadline(resource) == 14.0


class TestRunForever:
    """run_forever loop control."""

    async def test_max_passes(self, tmp_path, fake_client):
        scheduler = _scheduler(tmp_path, fake_client, [], poll_interval=0.01)
        reports = await scheduler.run_forever(max_passes=3)
        assert len(reports) == 3

    async def test_stop_event(self, tmp_path, fake_client):
        scheduler = _scheduler(tmp_path, fake_client, [], poll_interval=0.01)
        stop = asyncio.Event()
        stop.set()
        assert await scheduler.run_forever(stop_event=stop) == []

    async def test_stop_during_wait(self, tmp_path, fake_client):
        scheduler = _scheduler(tmp_path, fake_client, [], poll_interval=60)
        stop = asyncio.Event()

        async def _stop_soon():
            await asyncio.sleep(0.05)
            stop.set()

        reports, _ = await asyncio.gather(scheduler.run_forever(stop_event=stop), _stop_soon())
        assert len(reports) == 1


# -------------------------------------------------------------------------
# Operator commands
# -------------------------------------------------------------------------


class TestRender:
    """render() builds requests without sending them."""

    def test_render_create(self, scheduler, fake_client):
        details = scheduler.render("demo-user", Action.CREATE)
        assert details.url == BASE_URL
        assert details.body == '{"email":"a@b.com","username":"john_doe"}'
        assert fake_client.calls == []

    def test_render_get_uses_saved_response(self, scheduler):
        scheduler.store.save("demo-user", _created_status())
        assert scheduler.render("demo-user", Action.GET).url == ITEM_URL

    def test_render_get_before_create(self, scheduler):
        with pytest.raises(FieldNotFound):
            scheduler.render("demo-user", Action.GET)

    def test_render_missing_mapping(self, tmp_path, fake_client):
        spec = _spec_dict(
            mappings={
                "create": {"method": "POST", "url": ".payload.baseUrl"},
                "get": {"method": "GET", "url": ".payload.baseUrl"},
            }
        )
        scheduler = _scheduler(tmp_path, fake_client, [{"name": "x", "spec": spec}])
        with pytest.raises(MappingNotFound):
            scheduler.render("x", Action.DELETE)

    def test_render_undeclared(self, scheduler):
        with pytest.raises(ReconcilerError, match="not declared"):
            scheduler.render("ghost", Action.CREATE)

    def test_render_disposable(self, tmp_path, fake_client):
        scheduler = _scheduler(
            tmp_path,
            fake_client,
            [{"name": "job", "kind": "disposable", "spec": {"url": JOB_URL, "method": "POST", "body": "{}"}}],
        )
        details = scheduler.render("job", Action.CREATE)
        assert details.url == JOB_URL
        assert details.body == "{}"


class TestDelete:
    """delete() removes the remote resource and its state."""

    def test_delete_removes_state(self, scheduler, fake_client):
        scheduler.store.save("demo-user", _created_status())
        fake_client.add("DELETE", ITEM_URL, 204, "")

        result = scheduler.delete("demo-user")

        assert result.success
        assert scheduler.store.load("demo-user") is None

    def test_failed_delete_keeps_state(self, scheduler, fake_client):
        scheduler.store.save("demo-user", _created_status())
        fake_client.add("DELETE", ITEM_URL, 500, "")

        result = scheduler.delete("demo-user")

        assert not result.success
        saved = scheduler.store.load("demo-user")
        assert saved.failed == 1
        assert saved.state == ResourceState.FAILED

    def test_delete_disposable_forgets_state(self, tmp_path, fake_client):
        scheduler = _scheduler(
            tmp_path,
            fake_client,
            [{"name": "job", "kind": "disposable", "spec": {"url": JOB_URL, "method": "POST"}}],
        )
        scheduler.store.save("job", DisposableStatus(synced=True), kind="disposable")

        assert scheduler.delete("job").success
        assert scheduler.store.load("job", kind="disposable") is None
        assert fake_client.calls == []

    def test_delete_resolves_references(self, tmp_path, fake_client):
        member = _member_dict()
        member["spec"]["mappings"]["delete"] = {
            "method": "DELETE",
            "url": '(.payload.baseUrl + "/" + .payload.body.groupId)',
        }
        scheduler = _scheduler(
            tmp_path, fake_client, [{"name": "demo-user", "spec": _spec_dict()}, member]
        )
        scheduler.store.save("demo-user", _created_status())
        scheduler.store.save(
            "member",
            ResourceStatus(
                state=ResourceState.SYNCED,
                synced=True,
                response=Response(status_code=201, body='{"id":"9"}'),
                request_details=RequestSnapshot(
                    action=Action.CREATE, method="POST", url=MEMBERS_URL
                ),
            ),
        )
        fake_client.add("DELETE", MEMBERS_URL + "/123", 204, "")

        result = scheduler.delete("member")

        assert result.success
        assert [c.url for c in fake_client.calls] == [MEMBERS_URL + "/123"]
        assert scheduler.store.load("member") is None

    def test_delete_with_unready_dependency(self, tmp_path, fake_client):
        scheduler = _scheduler(
            tmp_path, fake_client, [{"name": "demo-user", "spec": _spec_dict()}, _member_dict()]
        )
        with pytest.raises(ReconcilerError, match="not ready"):
            scheduler.delete("member")
        assert fake_client.calls == []

    def test_default_store_location(self, tmp_path, fake_client):
        scheduler = _scheduler(tmp_path, fake_client, [])
        assert isinstance(scheduler.store, ResourceStore)
        assert scheduler.store.state_dir == tmp_path / "state"
