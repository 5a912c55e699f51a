from __future__ import annotations

from decimal import Decimal

import pytest

from factories import make_plan, make_services, make_user
from panel_billing.errors import InstanceNotFoundError, ProvisioningError
from panel_billing.models.instance import InstanceStatus
from panel_billing.models.provisioning import InstanceResources
from panel_billing.services.instance_service import InstanceService


async def _buy(services, user, plan, name="box"):
    outcome = await services.purchases.purchase(user, plan.id, name)
    assert outcome.success, outcome.message
    return outcome.instance


@pytest.mark.asyncio
async def test_sync_requires_linked_account(billing):
    user = await make_user(billing)

    result = await billing.instances.sync_instances(user)

    assert result.success is False
    assert result.error == "No panel account linked"


@pytest.mark.asyncio
async def test_sync_sums_allocated_resources(billing):
    user = await make_user(billing, credits=Decimal("20"))
    plan = await billing.plans.create_plan(make_plan(cpu=100, ram=1024, disk=5120))
    await _buy(billing, user, plan, "one")
    await _buy(billing, user, plan, "two")

    result = await billing.instances.sync_instances(user)

    assert result.success is True
    assert sorted(s.name for s in result.servers) == ["one", "two"]
    assert result.resources.cpu == 200
    assert result.resources.memory == 2048
    assert result.resources.disk == 10240


@pytest.mark.asyncio
async def test_sync_reports_panel_failure(billing):
    user = await make_user(billing, credits=Decimal("20"))
    plan = await billing.plans.create_plan(make_plan())
    await _buy(billing, user, plan)
    billing.gateway.list_error = "Panel request timed out"

    result = await billing.instances.sync_instances(user, bypass_cache=True)

    assert result.success is False
    assert result.error == "Panel request timed out"


@pytest.mark.asyncio
async def test_live_stats(billing):
    user = await make_user(billing, credits=Decimal("20"))
    plan = await billing.plans.create_plan(make_plan())
    record = await _buy(billing, user, plan)
    billing.gateway.resources[record.server_identifier] = InstanceResources(
        memory_bytes=512, cpu_absolute=12.5, disk_bytes=1024, state="starting"
    )

    stats = await billing.instances.live_stats(user)

    assert stats.servers == 1
    assert stats.cpu_absolute == 12.5
    assert stats.memory_bytes == 512
    assert stats.statuses[0].state == "starting"


@pytest.mark.asyncio
async def test_live_stats_without_panel_account(billing):
    user = await make_user(billing)
    stats = await billing.instances.live_stats(user)
    assert stats.servers == 0
    assert billing.gateway.calls == []


@pytest.mark.asyncio
async def test_remove_instance_returns_stock(billing):
    user = await make_user(billing, credits=Decimal("20"))
    plan = await billing.plans.create_plan(make_plan(stock_limit=1))
    record = await _buy(billing, user, plan)

    removed = await billing.instances.remove_instance(record.id)

    assert removed.status == InstanceStatus.DELETED
    assert record.panel_server_id not in billing.gateway.instances
    assert (await billing.plans.require_plan(plan.id)).stock_used == 0
    assert [p.id for p in await billing.plans.list_enabled_plans()] == [plan.id]
    # Credits are not refunded on removal.
    assert await billing.credits.get_balance(user.user_id) == Decimal("15")

    with pytest.raises(InstanceNotFoundError):
        await billing.instances.remove_instance(record.id)


@pytest.mark.asyncio
async def test_remove_instance_panel_refusal_changes_nothing(billing):
    user = await make_user(billing, credits=Decimal("20"))
    plan = await billing.plans.create_plan(make_plan(stock_limit=2))
    record = await _buy(billing, user, plan)
    billing.gateway.delete_error = "Server is being transferred"

    with pytest.raises(ProvisioningError, match="being transferred"):
        await billing.instances.remove_instance(record.id)

    stored = (await billing.instances.list_user_instances(user))[0]
    assert stored.status == InstanceStatus.ACTIVE
    assert (await billing.plans.require_plan(plan.id)).stock_used == 1


@pytest.mark.asyncio
async def test_remove_unknown_instance(billing):
    with pytest.raises(InstanceNotFoundError):
        await billing.instances.remove_instance("missing")


@pytest.mark.asyncio
async def test_usage_stats_in_chunks(tmp_path):
    services = make_services(tmp_path)
    instances = InstanceService(
        db=services.db,
        ledger=services.ledger,
        gateway=services.gateway,
        accounts=services.accounts,
        plan_service=services.plans,
        chunk_size=2,
        chunk_delay=0,
    )
    plan = await services.plans.create_plan(make_plan())
    for i in range(5):
        user = await make_user(services, f"user{i}@example.com", credits=Decimal("5"))
        await _buy(services, user, plan, f"box{i}")
    await make_user(services, "unlinked@example.com")

    stats = await instances.usage_stats()

    assert stats.total_users == 6
    assert stats.linked_users == 5
    assert stats.active_instances == 5
    assert stats.panel_servers == 5
    assert stats.unreachable_accounts == 0


@pytest.mark.asyncio
async def test_usage_stats_counts_unreachable_accounts(billing):
    user = await make_user(billing, credits=Decimal("5"))
    plan = await billing.plans.create_plan(make_plan())
    await _buy(billing, user, plan)
    billing.gateway.list_error = "Panel request timed out"

    stats = await billing.instances.usage_stats()

    assert stats.unreachable_accounts == 1
    assert stats.panel_servers == 0
