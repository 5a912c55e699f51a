from __future__ import annotations

import asyncio
import json
from decimal import Decimal

import pytest

from factories import make_plan, make_services, make_user
from panel_billing.db.memory import InMemoryDBManager
from panel_billing.errors import ReconciliationError, UserNotFoundError
from panel_billing.models.instance import InstanceStatus
from panel_billing.models.outcomes import OutcomeReason
from panel_billing.models.provisioning import PanelAccount
from panel_billing.models.transaction import TransactionType
from panel_billing.models.user import AuthenticatedVerifiedUser
from panel_billing.provisioning.memory import InMemoryProvisioningGateway


class FailingInstanceDB(InMemoryDBManager):
    async def add_server_instance(self, instance):
        raise RuntimeError("disk full")


async def _link(services, user, account_id=77):
    services.gateway.accounts[account_id] = PanelAccount(id=account_id, email=user.email)
    await services.db.link_panel_account(user.user_id, account_id)


async def _fill_stock(services, plan):
    for _ in range(plan.stock_limit):
        assert await services.db.increment_plan_stock(plan.id)


def _ledger_events(tmp_path):
    lines = (tmp_path / "ledger.log").read_text().splitlines()
    return [json.loads(line) for line in lines]


@pytest.mark.asyncio
async def test_scenario_b_out_of_stock(billing):
    user = await make_user(billing, credits=Decimal("20"))
    plan = await billing.plans.create_plan(make_plan(price=Decimal("5"), stock_limit=2))
    await _fill_stock(billing, plan)

    outcome = await billing.purchases.purchase(user, plan.id, "survival")

    assert outcome.success is False
    assert outcome.reason == OutcomeReason.OUT_OF_STOCK
    assert await billing.credits.get_balance(user.user_id) == Decimal("20")
    assert list(await billing.instances.list_user_instances(user)) == []
    assert billing.gateway.calls == []


@pytest.mark.asyncio
async def test_scenario_c_insufficient_credits_before_provisioning(billing):
    user = await make_user(billing, credits=Decimal("3"))
    plan = await billing.plans.create_plan(make_plan(price=Decimal("5")))

    outcome = await billing.purchases.purchase(user, plan.id, "survival")

    assert outcome.reason == OutcomeReason.INSUFFICIENT_CREDITS
    assert outcome.message == "Insufficient credits"
    assert billing.gateway.calls == []


@pytest.mark.asyncio
async def test_scenario_d_instance_failure_changes_nothing(billing, tmp_path):
    user = await make_user(billing, credits=Decimal("20"))
    plan = await billing.plans.create_plan(make_plan(price=Decimal("5"), stock_limit=3))
    await _link(billing, user)
    billing.gateway.instance_error = "No suitable node found"

    outcome = await billing.purchases.purchase(user, plan.id, "survival")

    assert outcome.reason == OutcomeReason.PROVISIONING_INSTANCE_FAILED
    assert outcome.provisioning_error == "No suitable node found"
    assert outcome.message == "Server creation failed: No suitable node found"
    assert await billing.credits.get_balance(user.user_id) == Decimal("20")
    assert (await billing.plans.require_plan(plan.id)).stock_used == 0
    assert billing.gateway.calls_to("get_account_by_email") == []
    errors = [e for e in _ledger_events(tmp_path) if e["event_type"] == "error"]
    assert errors[-1]["message"] == "Server creation failed"


@pytest.mark.asyncio
async def test_scenario_e_successful_purchase(billing):
    user = await make_user(billing, credits=Decimal("20"))
    plan = await billing.plans.create_plan(make_plan(price=Decimal("5"), stock_limit=3))

    outcome = await billing.purchases.purchase(user, plan.id, "  survival  ")

    assert outcome.success is True
    assert outcome.message == 'Server "survival" created successfully!'
    assert outcome.new_balance == Decimal("15")
    assert await billing.credits.get_balance(user.user_id) == Decimal("15")
    assert (await billing.plans.require_plan(plan.id)).stock_used == 1

    records = list(await billing.instances.list_user_instances(user))
    assert len(records) == 1
    record = records[0]
    panel_instance = billing.gateway.instances[record.panel_server_id]
    assert record.server_identifier == panel_instance.identifier
    assert record.server_name == "survival"
    assert record.status == InstanceStatus.ACTIVE
    assert record.next_billing_date is not None

    request = billing.gateway.calls_to("create_instance")[0]
    assert request.limits.memory == 1024
    assert request.deploy.locations == [1, 2]

    history = list(await billing.credits.get_credit_history(user.user_id))
    purchase_tx = history[-1]
    assert purchase_tx.transaction_type == TransactionType.PURCHASE
    assert purchase_tx.credits_deducted == Decimal("5")
    assert purchase_tx.reference_id == plan.id
    assert billing.queue.of_type("low_credits") == []


@pytest.mark.asyncio
async def test_first_purchase_links_panel_account(billing):
    user = await make_user(billing, credits=Decimal("10"))
    plan = await billing.plans.create_plan(make_plan())

    assert (await billing.purchases.purchase(user, plan.id, "first")).success
    account = await billing.accounts.get_user(user.user_id)
    assert account.panel_user_id is not None
    assert billing.gateway.accounts[account.panel_user_id].email == user.email

    assert (await billing.purchases.purchase(user, plan.id, "second")).success
    assert len(billing.gateway.calls_to("create_account")) == 1


@pytest.mark.asyncio
async def test_existing_panel_account_is_reused(billing):
    user = await make_user(billing, credits=Decimal("10"))
    billing.gateway.accounts[5] = PanelAccount(id=5, email=user.email.upper())
    plan = await billing.plans.create_plan(make_plan())

    assert (await billing.purchases.purchase(user, plan.id, "box")).success
    assert (await billing.accounts.get_user(user.user_id)).panel_user_id == 5
    assert billing.gateway.calls_to("create_account") == []


@pytest.mark.asyncio
async def test_account_failure_writes_nothing(billing):
    user = await make_user(billing, credits=Decimal("10"))
    plan = await billing.plans.create_plan(make_plan())
    billing.gateway.account_error = "Panel request timed out"

    outcome = await billing.purchases.purchase(user, plan.id, "box")

    assert outcome.reason == OutcomeReason.PROVISIONING_ACCOUNT_FAILED
    assert outcome.message == "Failed to create panel account: Panel request timed out"
    assert (await billing.accounts.get_user(user.user_id)).panel_user_id is None
    assert billing.gateway.calls_to("create_instance") == []
    assert await billing.credits.get_balance(user.user_id) == Decimal("10")


@pytest.mark.asyncio
async def test_instance_failure_keeps_new_account_link(billing):
    user = await make_user(billing, credits=Decimal("10"))
    plan = await billing.plans.create_plan(make_plan())
    billing.gateway.instance_error = "Egg not found"

    outcome = await billing.purchases.purchase(user, plan.id, "box")

    assert outcome.reason == OutcomeReason.PROVISIONING_INSTANCE_FAILED
    assert (await billing.accounts.get_user(user.user_id)).panel_user_id is not None
    assert await billing.credits.get_balance(user.user_id) == Decimal("10")


@pytest.mark.asyncio
async def test_provisioning_timeout_is_an_instance_failure(tmp_path):
    gateway = InMemoryProvisioningGateway(delay=1.0)
    services = make_services(tmp_path, gateway=gateway, PROVISIONING_TIMEOUT_SECONDS=0.05)
    user = await make_user(services, credits=Decimal("10"))
    plan = await services.plans.create_plan(make_plan())
    await _link(services, user)

    outcome = await services.purchases.purchase(user, plan.id, "slow")

    assert outcome.reason == OutcomeReason.PROVISIONING_INSTANCE_FAILED
    assert outcome.provisioning_error == "Panel did not respond within 0.05 seconds"
    assert await services.credits.get_balance(user.user_id) == Decimal("10")
    assert (await services.plans.require_plan(plan.id)).stock_used == 0


@pytest.mark.asyncio
async def test_commit_failure_raises_reconciliation_and_alerts(tmp_path):
    services = make_services(tmp_path, db=FailingInstanceDB())
    user = await make_user(services, credits=Decimal("20"))
    plan = await services.plans.create_plan(make_plan(stock_limit=5))

    with pytest.raises(ReconciliationError) as excinfo:
        await services.purchases.purchase(user, plan.id, "orphan", correlation_id="req-1")

    error = excinfo.value
    assert error.user_id == user.user_id
    assert error.plan_id == plan.id
    assert error.panel_server_id in services.gateway.instances

    # The unit of work rolled back as a whole.
    assert await services.credits.get_balance(user.user_id) == Decimal("20")
    assert (await services.plans.require_plan(plan.id)).stock_used == 0
    assert len(list(await services.credits.get_credit_history(user.user_id))) == 1

    alerts = services.queue.of_type("reconciliation_required")
    assert len(alerts) == 1
    assert alerts[0]["payload"]["panel_server_id"] == error.panel_server_id
    assert alerts[0]["payload"]["error"] == "disk full"
    notices = services.queue.of_type("transaction_error")
    assert notices[0]["user_id"] == user.user_id
    assert notices[0]["payload"]["details"]["panel_server_id"] == error.panel_server_id

    reconciliation = [e for e in _ledger_events(tmp_path) if e["event_type"] == "reconciliation"]
    assert len(reconciliation) == 1
    assert reconciliation[0]["correlation_id"] == "req-1"

    # Entries from the rolled back commit never reach the ledger file.
    messages = [e["message"] for e in _ledger_events(tmp_path)]
    assert "Credits deducted" not in messages
    assert "Server purchased" not in messages


@pytest.mark.asyncio
async def test_concurrent_purchases_of_last_unit(tmp_path):
    services = make_services(tmp_path)
    alice = await make_user(services, "alice@example.com", credits=Decimal("10"))
    bob = await make_user(services, "bob@example.com", credits=Decimal("10"))
    plan = await services.plans.create_plan(make_plan(stock_limit=1))

    results = await asyncio.gather(
        services.purchases.purchase(alice, plan.id, "a"),
        services.purchases.purchase(bob, plan.id, "b"),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, BaseException) and r.success]
    failures = [r for r in results if isinstance(r, ReconciliationError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert (await services.plans.require_plan(plan.id)).stock_used == 1
    balances = {
        await services.credits.get_balance(alice.user_id),
        await services.credits.get_balance(bob.user_id),
    }
    assert balances == {Decimal("5"), Decimal("10")}


@pytest.mark.asyncio
async def test_user_limit(billing):
    user = await make_user(billing, credits=Decimal("20"))
    plan = await billing.plans.create_plan(make_plan(user_limit=1))

    assert (await billing.purchases.purchase(user, plan.id, "one")).success
    outcome = await billing.purchases.purchase(user, plan.id, "two")

    assert outcome.reason == OutcomeReason.USER_LIMIT_REACHED
    assert await billing.credits.get_balance(user.user_id) == Decimal("15")


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "   ", None])
async def test_blank_name_rejected(billing, name):
    user = await make_user(billing, credits=Decimal("20"))
    plan = await billing.plans.create_plan(make_plan())

    outcome = await billing.purchases.purchase(user, plan.id, name)

    assert outcome.reason == OutcomeReason.INVALID_NAME
    assert billing.gateway.calls == []


@pytest.mark.asyncio
async def test_unknown_and_disabled_plans_unavailable(billing):
    user = await make_user(billing, credits=Decimal("20"))
    disabled = await billing.plans.create_plan(make_plan(enabled=False))

    assert (await billing.purchases.purchase(user, "missing", "x")).reason == (
        OutcomeReason.PLAN_UNAVAILABLE
    )
    assert (await billing.purchases.purchase(user, disabled.id, "x")).reason == (
        OutcomeReason.PLAN_UNAVAILABLE
    )


@pytest.mark.asyncio
async def test_low_credit_notification_after_purchase(billing):
    user = await make_user(billing, credits=Decimal("5.50"))
    plan = await billing.plans.create_plan(make_plan(price=Decimal("5")))

    assert (await billing.purchases.purchase(user, plan.id, "box")).success

    notices = billing.queue.of_type("low_credits")
    assert len(notices) == 1
    assert notices[0]["payload"]["current_credits"] == "0.50"


@pytest.mark.asyncio
async def test_unknown_user_raises(billing):
    plan = await billing.plans.create_plan(make_plan())
    ghost = AuthenticatedVerifiedUser(user_id="ghost", email="ghost@example.com")

    with pytest.raises(UserNotFoundError):
        await billing.purchases.purchase(ghost, plan.id, "box")


@pytest.mark.asyncio
async def test_concurrent_purchases_respect_user_limit_at_commit(tmp_path):
    gateway = InMemoryProvisioningGateway(delay=0.01)
    services = make_services(tmp_path, gateway=gateway)
    user = await make_user(services, credits=Decimal("20"))
    plan = await services.plans.create_plan(make_plan(user_limit=1))
    await _link(services, user)

    results = await asyncio.gather(
        services.purchases.purchase(user, plan.id, "a"),
        services.purchases.purchase(user, plan.id, "b"),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, BaseException) and r.success]
    failures = [r for r in results if isinstance(r, ReconciliationError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert await services.db.count_active_instances(user.user_id, plan.id) == 1
    assert await services.credits.get_balance(user.user_id) == Decimal("15")
    assert len(services.queue.of_type("reconciliation_required")) == 1


@pytest.mark.asyncio
async def test_concurrent_first_purchases_share_one_panel_link(tmp_path):
    gateway = InMemoryProvisioningGateway(delay=0.01)
    services = make_services(tmp_path, gateway=gateway)
    user = await make_user(services, credits=Decimal("20"))
    plan = await services.plans.create_plan(make_plan())

    outcomes = await asyncio.gather(
        services.purchases.purchase(user, plan.id, "a"),
        services.purchases.purchase(user, plan.id, "b"),
    )

    assert all(outcome.success for outcome in outcomes)
    linked = (await services.accounts.get_user(user.user_id)).panel_user_id
    assert linked is not None
    assert len(gateway.instances) == 2
    assert {instance.user for instance in gateway.instances.values()} == {linked}
