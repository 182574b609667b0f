import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from models.billing_history import BillingHistory
from models.credit_ledger import CreditLedger
from models.daily_usage import DailyUsage
from models.referral_stats import ReferralStats
from models.subscription import STATUS_ACTIVE, STATUS_CANCELED, Subscription
from models.user import User
from services.credits import get_credit_balance
from services.errors import (
    DailyLimitExceededError,
    InsufficientCreditsError,
    InvalidInputError,
    InvalidReferrerError,
    NoActiveSubscriptionError,
    NotFoundError,
)
from services.referrals import get_referral_stats
from services.renewals import run_renewal_cycle
from services.subscriptions import cancel_subscription, confirm_payment, get_subscription_details
from services.usage import consume_credits
from services.users import delete_user, get_user_profile, signup_user


PAID_AT = datetime(2024, 1, 31, 9, 0, tzinfo=timezone.utc)


async def _signup(session_maker, external_id, **kwargs):
    async with session_maker() as db:
        return await signup_user(external_id, db, email=f"{external_id}@local.invalid", **kwargs)


async def _confirm(session_maker, external_id, **kwargs):
    kwargs.setdefault("plan_code", "Pro")
    kwargs.setdefault("paid_at", PAID_AT)
    async with session_maker() as db:
        return await confirm_payment(external_id, db, **kwargs)


async def _balance(session_maker, user_id):
    async with session_maker() as db:
        return await get_credit_balance(user_id, db)


async def _count(session_maker, model, *criteria):
    async with session_maker() as db:
        result = await db.execute(select(func.count()).select_from(model).where(*criteria))
        return int(result.scalar() or 0)


@pytest.mark.asyncio
async def test_signup_creates_free_subscription_with_starter_credits(session_maker):
    result = await _signup(session_maker, "auth|alice", name="Alice")

    assert result["created"] is True
    assert result["plan"]["name"] == "Free"
    assert result["credits_granted"] == 2
    assert result["reference_code"].startswith("AURA-REF-")
    assert len(result["reference_code"]) == len("AURA-REF-") + 8

    user_id = result["user"]["id"]
    assert await _balance(session_maker, user_id) == 2
    assert await _count(session_maker, Subscription, Subscription.user_id == user_id, Subscription.status == STATUS_ACTIVE) == 1

    again = await _signup(session_maker, "auth|alice")
    assert again["created"] is False
    assert again["user"]["id"] == user_id
    assert again["reference_code"] == result["reference_code"]
    assert await _balance(session_maker, user_id) == 2


@pytest.mark.asyncio
async def test_signup_with_referral_code_links_referrer(session_maker):
    referrer = await _signup(session_maker, "auth|referrer")
    referred = await _signup(session_maker, "auth|referred", referral_code=referrer["reference_code"])

    assert referred["user"]["referred_by_id"] == referrer["user"]["id"]
    async with session_maker() as db:
        stats = await get_referral_stats(referrer["user"]["id"], db)
    assert stats.total_users_signed == 1
    assert stats.total_paid_subscribers == 0


@pytest.mark.asyncio
async def test_signup_with_unknown_referral_code_creates_nothing(session_maker):
    with pytest.raises(InvalidReferrerError) as exc_info:
        await _signup(session_maker, "auth|orphan", referral_code="AURA-REF-missing0")

    assert exc_info.value.code == "invalid_referrer"
    assert exc_info.value.status_code == 400
    assert await _count(session_maker, User, User.external_id == "auth|orphan") == 0


@pytest.mark.asyncio
async def test_confirm_payment_activates_plan_and_grants_credits(session_maker):
    signup = await _signup(session_maker, "auth|payer")
    user_id = signup["user"]["id"]

    result = await _confirm(
        session_maker,
        "auth|payer",
        external_payment_id="pi_payer_1",
        amount="9.99",
    )

    assert result["duplicate"] is False
    assert result["credits_granted"] == 100
    assert result["subscription"]["plan"]["name"] == "Pro"
    assert result["subscription"]["current_period_start"].startswith("2024-01-31")
    assert result["subscription"]["current_period_end"].startswith("2024-02-29")
    assert await _balance(session_maker, user_id) == 102
    assert await _count(session_maker, BillingHistory, BillingHistory.user_id == user_id) == 1
    assert await _count(session_maker, Subscription, Subscription.user_id == user_id, Subscription.status == STATUS_ACTIVE) == 1


@pytest.mark.asyncio
async def test_confirm_payment_replays_are_acknowledged_once(session_maker):
    signup = await _signup(session_maker, "auth|replay")
    user_id = signup["user"]["id"]

    await _confirm(session_maker, "auth|replay", external_payment_id="pi_replay", amount="9.99")
    replay = await _confirm(session_maker, "auth|replay", external_payment_id="pi_replay", amount="9.99")

    assert replay["duplicate"] is True
    assert replay["credits_granted"] == 0
    assert await _balance(session_maker, user_id) == 102
    assert await _count(session_maker, BillingHistory, BillingHistory.external_payment_id == "pi_replay") == 1

    await _signup(session_maker, "auth|someone-else")
    with pytest.raises(InvalidInputError):
        await _confirm(session_maker, "auth|someone-else", external_payment_id="pi_replay", amount="9.99")


@pytest.mark.asyncio
async def test_confirm_payment_rejects_bad_cycle_and_unknown_plan(session_maker):
    signup = await _signup(session_maker, "auth|strict")
    user_id = signup["user"]["id"]

    with pytest.raises(InvalidInputError):
        await _confirm(session_maker, "auth|strict", billing_cycle="weekly", external_payment_id="pi_weekly")
    with pytest.raises(NotFoundError):
        await _confirm(session_maker, "auth|strict", plan_code="Enterprise", external_payment_id="pi_enterprise")
    with pytest.raises(NotFoundError):
        await _confirm(session_maker, "auth|nobody", external_payment_id="pi_nobody")

    assert await _balance(session_maker, user_id) == 2
    assert await _count(session_maker, BillingHistory) == 0


@pytest.mark.asyncio
async def test_second_active_subscription_is_rejected_by_store(session_maker):
    signup = await _signup(session_maker, "auth|single")
    user_id = signup["user"]["id"]

    async with session_maker() as db:
        db.add(
            Subscription(
                user_id=user_id,
                plan_id="plan-pro",
                billing_cycle="monthly",
                status=STATUS_CANCELED,
                current_period_start=PAID_AT,
                current_period_end=PAID_AT,
            )
        )
        await db.commit()

    async with session_maker() as db:
        db.add(
            Subscription(
                user_id=user_id,
                plan_id="plan-pro",
                billing_cycle="monthly",
                status=STATUS_ACTIVE,
                current_period_start=PAID_AT,
                current_period_end=PAID_AT,
            )
        )
        with pytest.raises(IntegrityError):
            await db.commit()


@pytest.mark.asyncio
async def test_referral_commission_accrues_only_for_paid_confirmations(session_maker):
    referrer = await _signup(session_maker, "auth|ref-owner")
    await _signup(session_maker, "auth|ref-paid", referral_code=referrer["reference_code"])
    await _signup(session_maker, "auth|ref-free", referral_code=referrer["reference_code"])

    await _confirm(session_maker, "auth|ref-paid", external_payment_id="pi_ref_paid", amount="9.99")
    await _confirm(session_maker, "auth|ref-free", external_payment_id="pi_ref_free", amount="0")

    async with session_maker() as db:
        stats = await get_referral_stats(referrer["user"]["id"], db)
    assert stats.total_users_signed == 2
    assert stats.total_paid_subscribers == 1
    assert float(stats.total_earning) == pytest.approx(1.998)


@pytest.mark.asyncio
async def test_consume_rejects_overdraft_without_writing(session_maker):
    signup = await _signup(session_maker, "auth|spender")
    user_id = signup["user"]["id"]
    entries_before = await _count(session_maker, CreditLedger, CreditLedger.user_id == user_id)

    async with session_maker() as db:
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await consume_credits("auth|spender", db, credits=3)

    assert exc_info.value.available == 2
    assert exc_info.value.required == 3
    assert exc_info.value.to_payload()["code"] == "insufficient_credits"
    assert await _balance(session_maker, user_id) == 2
    assert await _count(session_maker, CreditLedger, CreditLedger.user_id == user_id) == entries_before

    async with session_maker() as db:
        result = await consume_credits("auth|spender", db, credits=2)
    assert result == {"credits_consumed": 2, "remaining_credits": 0}
    assert await _balance(session_maker, user_id) == 0


@pytest.mark.asyncio
async def test_consume_validates_credit_amount(session_maker):
    await _signup(session_maker, "auth|validator")
    for bad in (0, -1, True, 1.5):
        async with session_maker() as db:
            with pytest.raises(InvalidInputError):
                await consume_credits("auth|validator", db, credits=bad)


@pytest.mark.asyncio
async def test_daily_plan_enforces_daily_quota(session_maker):
    signup = await _signup(session_maker, "auth|daily")
    user_id = signup["user"]["id"]
    await _confirm(session_maker, "auth|daily", plan_code="plan-daily", external_payment_id="pi_daily", amount="4.99")
    assert await _balance(session_maker, user_id) == 27

    today = datetime(2024, 2, 1, 15, 0, tzinfo=timezone.utc)
    async with session_maker() as db:
        first = await consume_credits("auth|daily", db, credits=20, now=today)
    assert first["remaining_credits"] == 7
    entries_after_first = await _count(session_maker, CreditLedger, CreditLedger.user_id == user_id)

    async with session_maker() as db:
        with pytest.raises(DailyLimitExceededError) as exc_info:
            await consume_credits("auth|daily", db, credits=10, now=today)
    assert exc_info.value.message == "Daily limit exceeded. Used: 20/25"
    assert await _count(session_maker, CreditLedger, CreditLedger.user_id == user_id) == entries_after_first
    assert await _balance(session_maker, user_id) == 7

    async with session_maker() as db:
        usage = await db.execute(select(DailyUsage).where(DailyUsage.user_id == user_id))
        rows = usage.scalars().all()
    assert len(rows) == 1
    assert rows[0].usage_count == 20

    async with session_maker() as db:
        await consume_credits("auth|daily", db, credits=5, now=today)
    async with session_maker() as db:
        details = await get_subscription_details("auth|daily", db, now=today)
    assert details["daily_usage"] == 25
    assert details["daily_limit"] == 25
    assert details["available_credits"] == 2


@pytest.mark.asyncio
async def test_ledger_balance_matches_entry_history(session_maker):
    signup = await _signup(session_maker, "auth|history")
    user_id = signup["user"]["id"]
    await _confirm(session_maker, "auth|history", external_payment_id="pi_history", amount="9.99")
    async with session_maker() as db:
        await consume_credits("auth|history", db, credits=5, description="export")

    async with session_maker() as db:
        result = await db.execute(select(CreditLedger).where(CreditLedger.user_id == user_id))
        entries = result.scalars().all()
    assert sum(entry.amount for entry in entries) == await _balance(session_maker, user_id) == 97
    assert sorted(entry.balance_after for entry in entries) == [2, 97, 102]
    assert {entry.entry_type for entry in entries} == {"granted", "consumed"}

    async with session_maker() as db:
        details = await get_subscription_details("auth|history", db)
    descriptions = [entry["description"] for entry in details["recent_credits"]]
    assert "export" in descriptions
    assert "Credits granted for Pro subscription" in descriptions


@pytest.mark.asyncio
async def test_cancel_then_expire_ends_subscription(session_maker):
    signup = await _signup(session_maker, "auth|leaver")
    user_id = signup["user"]["id"]
    await _confirm(session_maker, "auth|leaver", external_payment_id="pi_leaver", amount="9.99")

    async with session_maker() as db:
        canceled = await cancel_subscription("auth|leaver", db, now=datetime(2024, 2, 10, tzinfo=timezone.utc))
    assert canceled["subscription"]["cancel_at_period_end"] is True
    assert canceled["subscription"]["status"] == STATUS_ACTIVE

    before_end = await run_renewal_cycle(session_maker, now=datetime(2024, 2, 20, tzinfo=timezone.utc))
    assert before_end["expired"] == 0
    async with session_maker() as db:
        await consume_credits("auth|leaver", db, credits=1)

    after_end = await run_renewal_cycle(session_maker, now=datetime(2024, 3, 1, tzinfo=timezone.utc))
    assert after_end["expired"] == 1
    assert after_end["renewed"] == 0
    assert await _balance(session_maker, user_id) == 101

    async with session_maker() as db:
        with pytest.raises(NoActiveSubscriptionError):
            await consume_credits("auth|leaver", db, credits=1)
    async with session_maker() as db:
        with pytest.raises(NoActiveSubscriptionError):
            await cancel_subscription("auth|leaver", db)
    async with session_maker() as db:
        details = await get_subscription_details("auth|leaver", db)
    assert details["subscription"] is None
    assert details["available_credits"] == 0


@pytest.mark.asyncio
async def test_delete_user_removes_owned_rows_and_detaches_referrals(session_maker):
    owner = await _signup(session_maker, "auth|owner")
    child = await _signup(session_maker, "auth|child", referral_code=owner["reference_code"])
    owner_id = owner["user"]["id"]
    await _confirm(session_maker, "auth|owner", external_payment_id="pi_owner", amount="9.99")

    async with session_maker() as db:
        result = await delete_user("auth|owner", db)
    assert result == {"deleted": True, "user_id": "auth|owner", "detached_referrals": 1}

    for model in (CreditLedger, BillingHistory, Subscription, ReferralStats, DailyUsage):
        assert await _count(session_maker, model, model.user_id == owner_id) == 0
    assert await _count(session_maker, User, User.id == owner_id) == 0

    async with session_maker() as db:
        profile = await get_user_profile("auth|child", db)
    assert profile["id"] == child["user"]["id"]
    assert profile["referred_by_id"] is None
    assert profile["referred_by"] is None

    async with session_maker() as db:
        with pytest.raises(NotFoundError):
            await delete_user("auth|owner", db)


@pytest.mark.asyncio
async def test_user_profile_lists_billing_and_referrals(session_maker):
    owner = await _signup(session_maker, "auth|profile")
    await _signup(session_maker, "auth|profile-child", referral_code=owner["reference_code"])
    await _confirm(session_maker, "auth|profile", external_payment_id="pi_profile", amount="9.99", billing_cycle="yearly")

    async with session_maker() as db:
        profile = await get_user_profile("auth|profile", db)

    assert profile["referral_stats"]["reference_code"] == owner["reference_code"]
    assert profile["referral_stats"]["total_users_signed"] == 1
    assert [row["external_payment_id"] for row in profile["billing_history"]] == ["pi_profile"]
    assert profile["billing_history"][0]["amount"] == pytest.approx(9.99)
    assert [ref["external_id"] for ref in profile["referrals"]] == ["auth|profile-child"]
    active = [sub for sub in profile["subscriptions"] if sub["status"] == STATUS_ACTIVE]
    assert len(active) == 1
    assert active[0]["billing_cycle"] == "yearly"
    assert active[0]["current_period_end"].startswith("2025-01-31")


@pytest.mark.asyncio
async def test_concurrent_signups_for_one_identity_create_one_user(session_maker):
    await _signup(session_maker, "auth|warmup")

    first, second = await asyncio.gather(
        _signup(session_maker, "auth|double-click"),
        _signup(session_maker, "auth|double-click"),
    )

    assert sorted([first["created"], second["created"]]) == [False, True]
    assert first["user"]["id"] == second["user"]["id"]
    assert first["reference_code"] == second["reference_code"]
    assert await _count(session_maker, User, User.external_id == "auth|double-click") == 1
    assert await _count(session_maker, ReferralStats, ReferralStats.user_id == first["user"]["id"]) == 1
    assert await _balance(session_maker, first["user"]["id"]) == 2


@pytest.mark.asyncio
async def test_concurrent_reuse_of_payment_id_by_another_user_is_invalid_input(session_maker):
    owner = await _signup(session_maker, "auth|receipt-owner")
    other = await _signup(session_maker, "auth|receipt-other")

    outcomes = await asyncio.gather(
        _confirm(session_maker, "auth|receipt-owner", external_payment_id="pi_shared", amount="9.99"),
        _confirm(session_maker, "auth|receipt-other", external_payment_id="pi_shared", amount="9.99"),
        return_exceptions=True,
    )

    confirmed = [outcome for outcome in outcomes if isinstance(outcome, dict)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
    assert len(confirmed) == 1
    assert confirmed[0]["duplicate"] is False
    assert len(rejected) == 1
    assert isinstance(rejected[0], InvalidInputError)
    assert rejected[0].status_code == 400

    assert await _count(session_maker, BillingHistory, BillingHistory.external_payment_id == "pi_shared") == 1
    balances = sorted(
        [await _balance(session_maker, owner["user"]["id"]), await _balance(session_maker, other["user"]["id"])]
    )
    assert balances == [2, 102]


@pytest.mark.asyncio
async def test_yearly_referred_payment_earns_commission_on_yearly_price(session_maker):
    referrer = await _signup(session_maker, "auth|yearly-ref")
    await _signup(session_maker, "auth|yearly-payer", referral_code=referrer["reference_code"])

    await _confirm(
        session_maker,
        "auth|yearly-payer",
        external_payment_id="pi_yearly_ref",
        amount="99.90",
        billing_cycle="yearly",
    )

    async with session_maker() as db:
        stats = await get_referral_stats(referrer["user"]["id"], db)
    assert stats.total_paid_subscribers == 1
    assert float(stats.total_earning) == pytest.approx(19.98)


@pytest.mark.asyncio
async def test_returning_referred_payer_earns_commission_again(session_maker):
    referrer = await _signup(session_maker, "auth|loyal-ref")
    await _signup(session_maker, "auth|loyal-payer", referral_code=referrer["reference_code"])

    await _confirm(session_maker, "auth|loyal-payer", external_payment_id="pi_loyal_1", amount="9.99")
    await _confirm(
        session_maker,
        "auth|loyal-payer",
        external_payment_id="pi_loyal_2",
        amount="9.99",
        paid_at=datetime(2024, 2, 29, 9, 0, tzinfo=timezone.utc),
    )

    async with session_maker() as db:
        stats = await get_referral_stats(referrer["user"]["id"], db)
    assert stats.total_users_signed == 1
    assert stats.total_paid_subscribers == 2
    assert float(stats.total_earning) == pytest.approx(3.996)
