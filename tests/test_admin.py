from datetime import timedelta

import pytest

from models import AccessLinkType, UserRole
from schemas import AccessLinkIn, AccessLinkUpdate, PlanIn, PlanUpdate
from services import (
    AccessLinkService,
    AccountLifecycleService,
    CouponService,
    NotFoundError,
    PlanService,
    UserService,
    normalize_access_code,
)


@pytest.fixture
def admin(session):
    user = UserService(session).ensure_user("root@hivebudget.app", "Root")
    return UserService(session).update_role(user.id, UserRole.admin)


def test_normalize_access_code():
    assert normalize_access_code("abcd efgh jkmn") == "ABCD-EFGH-JKMN"
    assert normalize_access_code("ABCD-EFGH-JKMN") == "ABCD-EFGH-JKMN"
    assert normalize_access_code("short") == "SHORT"


def test_access_link_redeem_grants_role_and_plan(session, admin, owner):
    solo = PlanService(session, admin.id).create(PlanIn(name="Solo", codename="solo"))
    links = AccessLinkService(session, admin.id).create(AccessLinkIn(count=2, note="amigos"))
    assert len(links) == 2
    assert len({link.code for link in links}) == 2

    code = links[0].code
    service = AccessLinkService(session, owner.id)
    assert service.check(code.replace("-", "").lower()) == {
        "valid": True,
        "type": "lifetime",
        "planType": "solo",
    }

    user = service.redeem(code)
    assert user.role == UserRole.lifetime
    assert user.plan_id == solo.id
    assert user.trial_ends_at is None
    assert user.access_link_id == links[0].id
    with pytest.raises(NotFoundError):
        service.redeem(code)

    stats = AccessLinkService(session, admin.id).list_with_stats()["stats"]
    assert stats == {"total": 2, "available": 1, "used": 1, "expired": 0}


def test_beta_links_grant_beta_role(session, admin, owner):
    link = AccessLinkService(session, admin.id).create(
        AccessLinkIn(type=AccessLinkType.beta, plan_type="duo")
    )[0]
    user = AccessLinkService(session, owner.id).redeem(link.code)
    assert user.role == UserRole.beta
    assert user.plan_id is None


def test_access_link_update_and_delete(session, admin, owner):
    admin_links = AccessLinkService(session, admin.id)
    used, spare = admin_links.create(AccessLinkIn(count=2))
    AccessLinkService(session, owner.id).redeem(used.code)

    with pytest.raises(ValueError, match="already used"):
        admin_links.update(used.id, AccessLinkUpdate(expired=True))
    with pytest.raises(ValueError, match="No valid fields"):
        admin_links.update(spare.id, AccessLinkUpdate())

    admin_links.update(spare.id, AccessLinkUpdate(expired=True, note="revogado"))
    with pytest.raises(NotFoundError):
        AccessLinkService(session, owner.id).check(spare.code)
    assert admin_links.list_with_stats()["stats"]["expired"] == 1

    admin_links.delete(used.id)
    session.refresh(owner)
    assert owner.access_link_id is None
    with pytest.raises(NotFoundError):
        admin_links.delete(used.id)


def test_coupons_unlock_plan_by_count(session, admin, owner):
    familia = PlanService(session, admin.id).create(
        PlanIn(name="Família", codename="familia", required_coupon_count=2)
    )
    coupons = CouponService(session, admin.id).generate("hb", 3)
    assert all(c.code.startswith("HB-") and len(c.code) == 11 for c in coupons)

    redeemer = CouponService(session, owner.id)
    first = redeemer.redeem(coupons[0].code.lower())
    assert first == {"couponCount": 1, "plan": None}
    second = redeemer.redeem(coupons[1].code)
    assert second["couponCount"] == 2
    assert second["plan"].id == familia.id
    assert owner.plan_id == familia.id

    with pytest.raises(ValueError, match="already used"):
        redeemer.redeem(coupons[0].code)
    with pytest.raises(NotFoundError):
        redeemer.redeem("HB-NOPE")


def test_coupon_listing_and_expiry(session, admin, owner):
    admin_coupons = CouponService(session, admin.id)
    used, spare, other = admin_coupons.generate("promo", 3)
    CouponService(session, owner.id).redeem(used.code)

    assert admin_coupons.list_coupons(status="used")["totalItems"] == 1
    assert admin_coupons.list_coupons(status="unused")["totalItems"] == 2

    admin_coupons.expire(spare.id)
    assert admin_coupons.list_coupons(status="expired")["totalItems"] == 1
    assert admin_coupons.list_coupons(status="unused")["totalItems"] == 1
    with pytest.raises(ValueError, match="already used"):
        admin_coupons.expire(used.id)
    with pytest.raises(ValueError, match="Status must be"):
        admin_coupons.list_coupons(status="weird")

    page = admin_coupons.list_coupons(search=other.code[-4:].lower(), limit=1)
    assert page["totalItems"] >= 1
    assert page["totalPages"] == page["totalItems"]

    admin_coupons.delete(other.id)
    assert admin_coupons.list_coupons()["totalItems"] == 2
    with pytest.raises(NotFoundError):
        CouponService(session, owner.id).redeem(other.code)
    with pytest.raises(ValueError, match="expired"):
        CouponService(session, owner.id).redeem(spare.code)


def test_plans_keep_a_single_default(session, admin):
    plans = PlanService(session, admin.id)
    solo = plans.create(PlanIn(name="Solo", codename="solo", is_default=True))
    duo = plans.create(PlanIn(name="Duo", codename="duo", is_default=True))
    session.refresh(solo)
    assert solo.is_default is False
    assert duo.is_default is True

    with pytest.raises(ValueError, match="already exists"):
        plans.create(PlanIn(name="Outro", codename="solo"))
    with pytest.raises(ValueError, match="No valid fields"):
        plans.update(duo.id, PlanUpdate())
    with pytest.raises(NotFoundError):
        plans.update(999, PlanUpdate(name="x"))

    newcomer = UserService(session).ensure_user("novo@example.com")
    assert newcomer.plan_id == duo.id

    public = plans.public_plans()
    assert [plan.codename for plan, _ in public["plans"]] == ["solo", "duo"]
    assert "Acesso para parceiro(a)" in public["plans"][1][1]


def test_trial_status(session, owner):
    lifecycle = AccountLifecycleService(session, owner.id)
    ends = owner.trial_ends_at

    status = lifecycle.trial_status(now=ends - timedelta(days=2, hours=1))
    assert status["hasTrial"] is True
    assert status["isTrialing"] is True
    assert status["daysRemaining"] == 3

    status = lifecycle.trial_status(now=ends + timedelta(seconds=1))
    assert status["isTrialing"] is False
    assert status["daysRemaining"] == 0

    owner.trial_ends_at = None
    session.commit()
    assert lifecycle.trial_status()["hasTrial"] is False


def test_account_deletion_request_and_cancel(session, owner):
    lifecycle = AccountLifecycleService(session, owner.id)
    user = lifecycle.request_deletion("  mudando de app ")
    assert user.deletion_reason == "mudando de app"
    assert user.deleted_at - user.deletion_requested_at == timedelta(days=30)

    user = lifecycle.cancel_deletion()
    assert user.deleted_at is None
    with pytest.raises(ValueError, match="No deletion request"):
        lifecycle.cancel_deletion()


def test_export_data_covers_user_budgets(session, owner, budget, checking):
    data = AccountLifecycleService(session, owner.id).export_data()
    assert data["user"].id == owner.id
    assert [b.id for b in data["budgets"]] == [budget.id]
    assert [a.name for a in data["accounts"]] == ["Conta Corrente"]
    assert len(data["categories"]) == 12
    assert data["transactions"] == []


def test_list_users_and_update_role(session, admin, owner):
    users = UserService(session, admin.id)
    page = users.list_users(search="ANA")
    assert [u.email for u in page["items"]] == ["ana@example.com"]
    assert page["totalItems"] == 1

    updated = users.update_role(owner.id, UserRole.beta)
    assert updated.role == UserRole.beta
    with pytest.raises(NotFoundError):
        users.update_role(999, UserRole.user)
