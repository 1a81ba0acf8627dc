from datetime import timedelta

import pytest
from sqlalchemy import select

from models import (
    AuditLog,
    BudgetMember,
    Category,
    Group,
    GroupCode,
    InviteStatus,
    MemberType,
    UserRole,
)
from schemas import BudgetUpdate, DependentIn, InviteIn, MemberUpdate
from services import (
    BudgetService,
    ForbiddenError,
    InviteService,
    MemberService,
    NotFoundError,
    UserService,
    expire_stale_invites,
    has_partner_access,
    utcnow,
)


def _pleasure_categories(session, budget):
    return session.scalars(
        select(Category)
        .join(Group, Group.id == Category.group_id)
        .where(Category.budget_id == budget.id, Group.code == GroupCode.pleasures)
        .order_by(Category.id)
    ).all()


def _partner(session, owner, budget, email="bruno@example.com", name="bruno lima"):
    invite = InviteService(session, owner.id).create(
        InviteIn(budget_id=budget.id, email=email, name=name)
    )
    partner = UserService(session).ensure_user(email)
    member = InviteService(session, partner.id).accept(invite.token)
    return partner, member


def test_ensure_user_is_idempotent_and_normalizes_email(session, owner):
    again = UserService(session).ensure_user("  ANA@Example.com ")
    assert again.id == owner.id
    assert owner.role == UserRole.user
    assert owner.trial_ends_at is not None


def test_create_budget_seeds_owner_and_categories(session, owner, budget):
    assert budget.name == "Casa Da Ana"
    assert budget.currency == "BRL"

    members = MemberService(session, owner.id).list_members(budget.id)
    assert [(m.name, m.type) for m in members] == [("Ana Souza", MemberType.owner)]

    categories = session.scalars(
        select(Category).where(Category.budget_id == budget.id)
    ).all()
    assert len(categories) == 12
    assert "Mercado" in {c.name for c in categories}

    listed = BudgetService(session, owner.id).list_all()
    assert listed == [(budget, MemberType.owner)]

    audit = session.scalar(select(AuditLog).where(AuditLog.action == "budget.create"))
    assert audit.resource_id == str(budget.id)


def test_budget_access_is_limited_to_members(session, owner, budget):
    stranger = UserService(session).ensure_user("carla@example.com")
    with pytest.raises(NotFoundError):
        BudgetService(session, stranger.id).get(budget.id)
    assert BudgetService(session, stranger.id).list_all() == []


def test_only_owner_updates_or_deletes_budget(session, owner, budget):
    partner, _ = _partner(session, owner, budget)
    with pytest.raises(ForbiddenError):
        BudgetService(session, partner.id).update(budget.id, BudgetUpdate(name="nossa casa"))
    with pytest.raises(ForbiddenError):
        BudgetService(session, partner.id).delete(budget.id)

    updated = BudgetService(session, owner.id).update(
        budget.id, BudgetUpdate(name="nossa casa", currency="usd")
    )
    assert updated.name == "Nossa Casa"
    assert updated.currency == "USD"


def test_delete_budget_removes_everything(session, owner, budget, checking):
    budget_id = budget.id
    BudgetService(session, owner.id).delete(budget_id)

    assert BudgetService(session, owner.id).list_all() == []
    assert (
        session.scalars(select(Category).where(Category.budget_id == budget_id)).all()
        == []
    )


def test_dependents_get_a_pleasure_category(session, owner, budget):
    members = MemberService(session, owner.id)
    kid = members.add_dependent(
        DependentIn(
            budget_id=budget.id,
            name="joão",
            type="child",
            monthly_pleasure_budget_cents=5000,
        )
    )
    pet = members.add_dependent(DependentIn(budget_id=budget.id, name="rex", type="pet"))

    categories = _pleasure_categories(session, budget)
    assert [(c.name, c.planned_amount_cents, c.member_id) for c in categories] == [
        ("Prazeres - João", 5000, kid.id),
        ("Prazeres - Rex", 0, pet.id),
    ]
    assert categories[1].icon == "🐾"

    members.update(kid.id, MemberUpdate(name="joãozinho", monthly_pleasure_budget_cents=8000))
    session.refresh(categories[0])
    assert categories[0].name == "Prazeres - Joãozinho"
    assert categories[0].planned_amount_cents == 8000


def test_dependent_type_must_be_child_or_pet():
    with pytest.raises(ValueError):
        DependentIn(budget_id=1, name="Bia", type="partner")


def test_owner_profile_cannot_be_edited_as_member(session, owner, budget):
    member = MemberService(session, owner.id).list_members(budget.id)[0]
    with pytest.raises(ForbiddenError):
        MemberService(session, owner.id).update(member.id, MemberUpdate(name="Outra"))
    with pytest.raises(ValueError, match="cannot be removed"):
        MemberService(session, owner.id).remove(member.id)


def test_remove_member_archives_pleasure_category(session, owner, budget):
    members = MemberService(session, owner.id)
    kid = members.add_dependent(DependentIn(budget_id=budget.id, name="lia", type="child"))
    members.remove(kid.id)

    category = _pleasure_categories(session, budget)[0]
    assert category.is_archived is True
    assert category.member_id is None
    assert session.get(BudgetMember, kid.id) is None


def test_invite_accept_creates_partner(session, owner, budget):
    partner, member = _partner(session, owner, budget)

    assert member.type == MemberType.partner
    assert member.name == "Bruno Lima"
    assert [c.name for c in _pleasure_categories(session, budget)] == [
        "Prazeres - Bruno Lima"
    ]
    assert BudgetService(session, partner.id).list_all() == [(budget, MemberType.partner)]
    assert InviteService(session, owner.id).list_pending(budget.id) == []


def test_invite_rejects_duplicates_and_members(session, owner, budget):
    invites = InviteService(session, owner.id)
    invites.create(InviteIn(budget_id=budget.id, email="bruno@example.com"))
    with pytest.raises(ValueError, match="pending invite"):
        invites.create(InviteIn(budget_id=budget.id, email="BRUNO@example.com"))
    with pytest.raises(ValueError, match="already a member"):
        invites.create(InviteIn(budget_id=budget.id, email="ana@example.com"))


def test_invite_for_other_email_is_forbidden(session, owner, budget):
    invite = InviteService(session, owner.id).create(
        InviteIn(budget_id=budget.id, email="bruno@example.com")
    )
    intruder = UserService(session).ensure_user("eve@example.com")
    with pytest.raises(ForbiddenError):
        InviteService(session, intruder.id).accept(invite.token)


def test_invite_lookup_reports_budget_and_inviter(session, owner, budget):
    invite = InviteService(session, owner.id).create(
        InviteIn(budget_id=budget.id, email="bruno@example.com")
    )
    info = InviteService(session).lookup(invite.token)
    assert info["budgetName"] == "Casa Da Ana"
    assert info["inviterName"] == "Ana Souza"
    assert info["status"] == "pending"

    with pytest.raises(NotFoundError):
        InviteService(session).lookup("missing")


def test_expired_invite_cannot_be_accepted(session, owner, budget):
    invite = InviteService(session, owner.id).create(
        InviteIn(budget_id=budget.id, email="bruno@example.com")
    )
    invite.expires_at = utcnow() - timedelta(minutes=1)
    session.commit()

    partner = UserService(session).ensure_user("bruno@example.com")
    with pytest.raises(ValueError, match="expired"):
        InviteService(session, partner.id).accept(invite.token)
    session.refresh(invite)
    assert invite.status == InviteStatus.expired


def test_expire_stale_invites(session, owner, budget):
    invites = InviteService(session, owner.id)
    stale = invites.create(InviteIn(budget_id=budget.id, email="a@example.com"))
    fresh = invites.create(InviteIn(budget_id=budget.id, email="b@example.com"))
    stale.expires_at = utcnow() - timedelta(days=1)
    session.commit()

    assert expire_stale_invites(session) == 1
    session.refresh(stale)
    session.refresh(fresh)
    assert stale.status == InviteStatus.expired
    assert fresh.status == InviteStatus.pending


def test_cancel_invite(session, owner, budget):
    invites = InviteService(session, owner.id)
    invite = invites.create(InviteIn(budget_id=budget.id, email="bruno@example.com"))
    invites.cancel(invite.id)
    assert invite.status == InviteStatus.cancelled
    with pytest.raises(ValueError, match="Only pending"):
        invites.cancel(invite.id)


def test_partner_can_leave_but_owner_cannot(session, owner, budget):
    partner, _ = _partner(session, owner, budget)
    with pytest.raises(ForbiddenError):
        MemberService(session, owner.id).leave(budget.id)

    MemberService(session, partner.id).leave(budget.id)
    assert BudgetService(session, partner.id).list_all() == []
    assert _pleasure_categories(session, budget)[0].is_archived is True


def test_partner_access_follows_owner_role(session, owner, budget):
    partner, _ = _partner(session, owner, budget)
    assert has_partner_access(session, partner) is False

    UserService(session).update_role(owner.id, UserRole.lifetime)
    assert has_partner_access(session, partner) is True
