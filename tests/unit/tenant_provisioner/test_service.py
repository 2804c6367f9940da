"""DeploymentService: validation, background runs, progress reporting."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from tenant_provisioner.app.errors import NotFoundError, ValidationError
from tenant_provisioner.app.inmemory import (
    InMemoryConfigStore,
    InMemoryControlPlane,
    InMemoryDeploymentStore,
    InMemorySecretStore,
)
from tenant_provisioner.app.provisioning.service import DeploymentService, ProgressRegistry
from tenant_provisioner.app.provisioning.state_machine import (
    DEPLOYMENT_SEQUENCE,
    StepRecord,
    apply_step_record,
    create_deployment,
)


class BlockingControlPlane(InMemoryControlPlane):
    """Never finishes opening a change set."""

    async def create_change_set(self, name):
        self.calls.append(('create_change_set', name))
        await asyncio.Event().wait()


class RecordingRegistry(ProgressRegistry):
    """Keeps every snapshot it is handed."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.snapshots: dict[str, list[tuple]] = {}

    def update(self, deployment):
        self.snapshots.setdefault(deployment.id, []).append(deployment.steps)
        super().update(deployment)


class FlakyDeploymentStore(InMemoryDeploymentStore):
    """Accepts ``ok_appends`` step appends, then fails every write."""

    def __init__(self, ok_appends: int) -> None:
        super().__init__()
        self.ok_appends = ok_appends

    async def append_step(self, deployment, record):
        if len(self.appended) >= self.ok_appends:
            raise RuntimeError('database unavailable')
        await super().append_step(deployment, record)


@pytest_asyncio.fixture
async def configs():
    store = InMemoryConfigStore()
    await store.save_config({'id': 'cfg-1', 'name': 'standard', 'root_ou': 'r-123'})
    return store


def _service(configs, clock, *, control_plane=None, tokens=None, **kwargs):
    control_plane = control_plane or InMemoryControlPlane()

    def factory(token):
        if tokens is not None:
            tokens.append(token)
        return control_plane

    kwargs.setdefault('secret_store', InMemorySecretStore())
    kwargs.setdefault('deployment_store', InMemoryDeploymentStore())
    kwargs.setdefault('operator_token', 'operator-token')
    return DeploymentService(
        config_store=configs,
        control_plane_factory=factory,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_start_returns_id_and_runs_to_completion(configs, clock):
    store = InMemoryDeploymentStore()
    service = _service(configs, clock, deployment_store=store)

    deployment_id = await service.start_deployment('cfg-1', '  acme  ')
    result = await service.wait(deployment_id)

    assert result.success is True
    progress = await service.get_progress(deployment_id)
    assert progress['completed'] is True
    assert progress['success'] is True
    assert progress['error'] is None
    assert progress['status'] == 'completed'
    assert len(progress['steps']) == 19

    stored = await store.get_deployment(deployment_id)
    assert stored.config_id == 'cfg-1'
    assert stored.config_snapshot['account_name'] == 'acme'
    assert stored.config_snapshot['root_ou'] == 'r-123'
    assert service.running == 0


@pytest.mark.asyncio
async def test_unknown_config_rejected_before_any_record(configs, clock):
    store = InMemoryDeploymentStore()
    service = _service(configs, clock, deployment_store=store)

    with pytest.raises(ValidationError) as exc_info:
        await service.start_deployment('cfg-missing', 'acme')

    assert exc_info.value.field == 'config_id'
    assert await store.list_deployments() == []


@pytest.mark.asyncio
@pytest.mark.parametrize('account_name', ['', '   ', '-leading-dash', 'has space', 'x' * 64])
async def test_invalid_account_name_rejected(configs, clock, account_name):
    service = _service(configs, clock)

    with pytest.raises(ValidationError) as exc_info:
        await service.start_deployment('cfg-1', account_name)

    assert exc_info.value.field == 'account_name'


@pytest.mark.asyncio
async def test_missing_operator_token_rejected(configs, clock):
    service = _service(configs, clock, operator_token='', operator_workspace_id='ws-ops')

    with pytest.raises(ValidationError) as exc_info:
        await service.start_deployment('cfg-1', 'acme')

    assert exc_info.value.field == 'workspace'
    assert 'ws-ops' in str(exc_info.value)


@pytest.mark.asyncio
async def test_operator_token_prefers_secret_store(configs, clock):
    secrets = InMemorySecretStore()
    await secrets.save_secret('ws-ops', 'stored-token')
    tokens: list[str] = []
    service = _service(
        configs,
        clock,
        secret_store=secrets,
        operator_workspace_id='ws-ops',
        tokens=tokens,
    )

    await service.wait(await service.start_deployment('cfg-1', 'acme'))

    assert tokens == ['stored-token']


@pytest.mark.asyncio
async def test_operator_token_falls_back_to_settings(configs, clock):
    tokens: list[str] = []
    service = _service(configs, clock, operator_workspace_id='ws-ops', tokens=tokens)

    await service.wait(await service.start_deployment('cfg-1', 'acme'))

    assert tokens == ['operator-token']


@pytest.mark.asyncio
async def test_concurrent_deployments_are_isolated(configs, clock):
    secrets = InMemorySecretStore()
    service = _service(configs, clock, secret_store=secrets)

    first = await service.start_deployment('cfg-1', 'acme')
    second = await service.start_deployment('cfg-1', 'globex')
    results = await asyncio.gather(service.wait(first), service.wait(second))

    assert first != second
    assert all(r.success for r in results)
    keys = []
    for deployment_id in (first, second):
        progress = await service.get_progress(deployment_id)
        final = progress['steps'][-1]
        assert final['step'] == 'complete'
        keys.append(final['details']['tenant_key'])
    assert len(set(keys)) == 2
    for key in keys:
        assert (await secrets.get_secret(key))['token'] == key.replace('ws_', 'tok_')


def _expected_sequence():
    expected = []
    for step in DEPLOYMENT_SEQUENCE[:-1]:
        expected += [(step, 'in_progress'), (step, 'completed')]
    return expected + [('complete', 'completed')]


@pytest.mark.asyncio
async def test_concurrent_logs_follow_sequence_without_interleaving(configs, clock):
    store = InMemoryDeploymentStore()
    service = _service(configs, clock, deployment_store=store)

    ids = [
        await service.start_deployment('cfg-1', name)
        for name in ('acme', 'globex', 'initech')
    ]
    await asyncio.gather(*(service.wait(i) for i in ids))

    unit_ids = set()
    tenant_keys = set()
    for deployment_id in ids:
        steps = (await service.get_deployment(deployment_id)).steps
        assert [(s.step, s.status) for s in steps] == _expected_sequence()
        timestamps = [s.timestamp for s in steps]
        assert timestamps == sorted(timestamps)
        unit_ids.add(steps[3].details['unit_id'])
        tenant_keys.add(steps[-1].details['tenant_key'])
    assert len(unit_ids) == len(ids)
    assert len(tenant_keys) == len(ids)


@pytest.mark.asyncio
async def test_progress_snapshots_match_final_log(configs, clock):
    registry = RecordingRegistry()
    service = _service(configs, clock, registry=registry)

    first = await service.start_deployment('cfg-1', 'acme')
    second = await service.start_deployment('cfg-1', 'globex')
    await asyncio.gather(service.wait(first), service.wait(second))

    for deployment_id in (first, second):
        final = (await service.get_deployment(deployment_id)).steps
        final_view = [(s.step, s.status, s.message, s.timestamp) for s in final]
        seen = registry.snapshots[deployment_id]
        assert [len(steps) for steps in seen if steps] == list(range(1, len(final) + 1))
        for steps in seen:
            view = [(s.step, s.status, s.message, s.timestamp) for s in steps]
            assert view == final_view[: len(view)]


@pytest.mark.asyncio
async def test_pipeline_timeout_marks_deployment_failed(configs, clock):
    service = _service(
        configs,
        clock,
        control_plane=BlockingControlPlane(),
        pipeline_timeout_seconds=0.05,
    )

    deployment_id = await service.start_deployment('cfg-1', 'acme')
    assert await service.wait(deployment_id) is None

    progress = await service.get_progress(deployment_id)
    assert progress['completed'] is True
    assert progress['success'] is False
    assert progress['error'] == 'Deployment timed out after 0.05s'
    assert progress['current_step'] == 'open_unit'
    assert progress['steps'][-1]['status'] == 'failed'


@pytest.mark.asyncio
async def test_progress_store_outage_still_reports_failure(configs, clock):
    store = FlakyDeploymentStore(ok_appends=3)
    service = _service(configs, clock, deployment_store=store)

    deployment_id = await service.start_deployment('cfg-1', 'acme')
    assert await service.wait(deployment_id) is None

    progress = await service.get_progress(deployment_id)
    assert progress['status'] == 'failed'
    assert progress['error'] == 'Deployment aborted by an unexpected error'
    assert len(store.appended) == 3


@pytest.mark.asyncio
async def test_progress_for_unknown_deployment(configs, clock):
    service = _service(configs, clock)

    with pytest.raises(NotFoundError):
        await service.get_progress('nope')
    with pytest.raises(NotFoundError):
        await service.get_deployment('nope')


@pytest.mark.asyncio
async def test_progress_served_from_store_after_eviction(configs, clock, make_clock):
    registry_clock = make_clock()
    registry = ProgressRegistry(retention_seconds=600, clock=registry_clock)
    service = _service(configs, clock, registry=registry)

    deployment_id = await service.start_deployment('cfg-1', 'acme')
    await service.wait(deployment_id)
    assert deployment_id in registry

    registry_clock.now += 600
    assert registry.get(deployment_id) is None

    progress = await service.get_progress(deployment_id)
    assert progress['success'] is True
    assert len(progress['steps']) == 19


@pytest.mark.asyncio
async def test_shutdown_cancels_running_pipelines(configs, clock):
    store = InMemoryDeploymentStore()
    control_plane = BlockingControlPlane()
    service = _service(configs, clock, control_plane=control_plane, deployment_store=store)

    deployment_id = await service.start_deployment('cfg-1', 'acme')
    while not control_plane.calls:
        await asyncio.sleep(0)
    assert service.running == 1

    await service.shutdown()

    assert service.running == 0
    stored = await store.get_deployment(deployment_id)
    assert stored.status == 'failed'
    assert stored.error == 'Deployment cancelled during shutdown'
    last = stored.steps[-1]
    assert (last.step, last.status) == ('open_unit', 'failed')
    progress = await service.get_progress(deployment_id)
    assert progress['completed'] is True
    assert progress['success'] is False


@pytest.mark.asyncio
async def test_default_registry_is_created_when_none_given(configs, clock):
    service = _service(configs, clock)

    assert isinstance(service.registry, ProgressRegistry)


@pytest.mark.asyncio
async def test_empty_registry_is_kept(configs, clock):
    registry = ProgressRegistry(retention_seconds=5, clock=clock)
    assert len(registry) == 0

    service = _service(configs, clock, registry=registry)

    assert service.registry is registry


@pytest.mark.asyncio
async def test_list_deployments_newest_first(configs, clock):
    service = _service(configs, clock)

    first = await service.start_deployment('cfg-1', 'acme')
    await service.wait(first)
    second = await service.start_deployment('cfg-1', 'globex')
    await service.wait(second)

    listed = await service.list_deployments()
    assert {d.id for d in listed} == {first, second}


class TestProgressRegistry:
    T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _deployment(self, deployment_id, *, finished):
        deployment = create_deployment(deployment_id=deployment_id, config_id='c', now=self.T0)
        if finished:
            deployment = apply_step_record(
                deployment,
                StepRecord(step='complete', status='completed', message='', timestamp=self.T0),
            )
        return deployment

    def test_running_deployments_are_kept(self, clock):
        registry = ProgressRegistry(retention_seconds=10, clock=clock)
        registry.update(self._deployment('a', finished=False))

        clock.now += 10_000

        assert registry.get('a') is not None

    def test_finished_deployments_expire_after_retention(self, clock):
        registry = ProgressRegistry(retention_seconds=10, clock=clock)
        registry.update(self._deployment('a', finished=True))

        clock.now += 9.9
        assert 'a' in registry
        clock.now += 0.1

        assert registry.evict_expired() == ['a']
        assert len(registry) == 0

    def test_retention_counts_from_first_terminal_update(self, clock):
        registry = ProgressRegistry(retention_seconds=10, clock=clock)
        finished = self._deployment('a', finished=True)
        registry.update(finished)
        clock.now += 6
        registry.update(finished)
        clock.now += 4

        assert registry.get('a') is None
