import hmac
import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import bearer_token, issue_session_token, read_session_token
from config import get_settings
from database import SessionLocal
from logging_utils import configure_logging
from models import User, UserRole
from periods import local_today, resolve_month
from rate_limit import RateLimitExceeded, rate_limit
from recurrence import get_billing_cycle_dates, get_transaction_billing_month
from scheduler import SchedulerManager
from schemas import (
    AcceptInviteIn,
    AccessLinkIn,
    AccessLinkOut,
    AccessLinkUpdate,
    AccountIn,
    AccountOut,
    AccountUpdate,
    AllocationIn,
    BudgetIn,
    BudgetOut,
    BudgetUpdate,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    ConfirmScheduledIn,
    ContributionIn,
    ContributionOut,
    CopyAllocationsIn,
    CouponGenerateIn,
    CouponOut,
    DeletionRequestIn,
    DependentIn,
    GoalIn,
    GoalOut,
    GoalUpdate,
    GroupOut,
    IncomeAllocationIn,
    IncomeSourceIn,
    IncomeSourceOut,
    IncomeSourceUpdate,
    InviteIn,
    InviteOut,
    MemberOut,
    MemberUpdate,
    MonthIn,
    MonthStatusOut,
    OnboardingIn,
    PlanIn,
    PlanOut,
    PlanUpdate,
    ProfileUpdate,
    QuickExpenseIn,
    RecurringBillIn,
    RecurringBillOut,
    RecurringBillUpdate,
    RedeemCodeIn,
    SessionIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
    UserOut,
    UserRoleIn,
)
from services import (
    AccessLinkService,
    AccountLifecycleService,
    AccountService,
    AllocationService,
    BudgetService,
    CategoryService,
    ConflictError,
    CouponService,
    DashboardService,
    ForbiddenError,
    GoalService,
    IncomeSourceService,
    InviteService,
    MemberService,
    MonthService,
    NotFoundError,
    OnboardingService,
    PlanService,
    RecurringBillService,
    TransactionService,
    UserService,
    calculate_goal_metrics,
    has_partner_access,
    utcnow,
)

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="HiveBudget")

ERROR_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    429: "RATE_LIMITED",
}

api_limit = Depends(rate_limit("api"))
admin_limit = Depends(rate_limit("admin"))
public_limit = Depends(rate_limit("public"))
auth_limit = Depends(rate_limit("auth"))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().enable_scheduler:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def error_body(status_code: int, message: str, details=None) -> dict:
    body = {
        "error": message,
        "code": ERROR_CODES.get(
            status_code, "INTERNAL_ERROR" if status_code >= 500 else "BAD_REQUEST"
        ),
    }
    if details is not None:
        body["details"] = details
    return body


@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        detail = dict(exc.detail)
        body = error_body(exc.status_code, str(detail.pop("error", "Error")))
        body.update(detail)
    else:
        body = error_body(exc.status_code, str(exc.detail))
    return JSONResponse(body, status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "path": ".".join(str(part) for part in error["loc"][1:]),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(error_body(400, "Validation failed", details), status_code=400)


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    body = error_body(429, "Too many requests")
    body["retryAfter"] = exc.retry_after
    return JSONResponse(body, status_code=429, headers=exc.headers())


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error: path=%s", request.url.path)
    return JSONResponse(error_body(500, "Internal server error"), status_code=500)


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail={"error": str(exc), **exc.payload})
    return HTTPException(status_code=400, detail=str(exc))


def dump(schema, obj) -> dict:
    return schema.model_validate(obj).model_dump(by_alias=True, mode="json")


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    token = bearer_token(authorization)
    user_id = read_session_token(token) if token else None
    if user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    user = db.get(User, user_id)
    if not user or (user.deleted_at is not None and user.deleted_at <= utcnow()):
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_super_admin(user: User = Depends(get_current_user)) -> User:
    settings = get_settings()
    if user.email.lower() in settings.super_admin_emails or user.role == UserRole.admin:
        return user
    raise HTTPException(status_code=403, detail="Super admin access required")


# --- identity ---


@app.post("/api/auth/session", dependencies=[auth_limit])
def api_issue_session(
    payload: SessionIn,
    x_provision_key: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    if not x_provision_key or not hmac.compare_digest(
        x_provision_key, get_settings().secret_key
    ):
        raise HTTPException(status_code=401, detail="Invalid provisioning key")
    try:
        user = UserService(db).ensure_user(payload.email, payload.name)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"token": issue_session_token(user.id), "user": dump(UserOut, user)}


@app.get("/api/app/me")
def api_me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    settings = get_settings()
    return {
        "user": dump(UserOut, user),
        "plan": dump(PlanOut, user.plan) if user.plan else None,
        "hasPartnerAccess": has_partner_access(db, user),
        "isSuperAdmin": user.email in settings.super_admin_emails
        or user.role == UserRole.admin,
    }


@app.patch("/api/app/me", dependencies=[api_limit])
def api_update_me(
    payload: ProfileUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    updated = UserService(db, user.id).update_profile(payload)
    return {"user": dump(UserOut, updated)}


@app.get("/api/app/trial-status")
def api_trial_status(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return AccountLifecycleService(db, user.id).trial_status()


@app.post("/api/app/account/deletion", dependencies=[api_limit])
def api_request_deletion(
    payload: DeletionRequestIn,
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    updated = AccountLifecycleService(db, user.id).request_deletion(
        payload.reason, ip_address=client_ip(request)
    )
    return {
        "deletionRequestedAt": updated.deletion_requested_at.isoformat(),
        "deletedAt": updated.deleted_at.isoformat(),
    }


@app.delete("/api/app/account/deletion", dependencies=[api_limit])
def api_cancel_deletion(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        AccountLifecycleService(db, user.id).cancel_deletion()
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


@app.get("/api/app/account/export")
def api_export_data(
    request: Request, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    data = AccountLifecycleService(db, user.id).export_data(ip_address=client_ip(request))
    return {
        "exportedAt": data["exported_at"].isoformat(),
        "user": dump(UserOut, data["user"]),
        "memberships": [dump(MemberOut, m) for m in data["memberships"]],
        "budgets": [dump(BudgetOut, b) for b in data["budgets"]],
        "accounts": [dump(AccountOut, a) for a in data["accounts"]],
        "categories": [dump(CategoryOut, c) for c in data["categories"]],
        "transactions": [dump(TransactionOut, t) for t in data["transactions"]],
    }


# --- budgets and members ---


@app.get("/api/app/budgets")
def api_budgets(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {
        "budgets": [
            {**dump(BudgetOut, budget), "memberType": member_type.value}
            for budget, member_type in BudgetService(db, user.id).list_all()
        ]
    }


@app.post("/api/app/budgets", status_code=201, dependencies=[api_limit])
def api_create_budget(
    payload: BudgetIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        budget = BudgetService(db, user.id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"budget": dump(BudgetOut, budget)}


@app.get("/api/app/budget/{budget_id}")
def api_budget(
    budget_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        budget = BudgetService(db, user.id).get(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"budget": dump(BudgetOut, budget)}


@app.patch("/api/app/budget/{budget_id}", dependencies=[api_limit])
def api_update_budget(
    budget_id: int,
    payload: BudgetUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        budget = BudgetService(db, user.id).update(budget_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"budget": dump(BudgetOut, budget)}


@app.delete("/api/app/budget/{budget_id}", dependencies=[api_limit])
def api_delete_budget(
    budget_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        BudgetService(db, user.id).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


@app.post("/api/app/budgets/{budget_id}/leave", dependencies=[api_limit])
def api_leave_budget(
    budget_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        MemberService(db, user.id).leave(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


@app.post("/api/app/onboarding", status_code=201, dependencies=[api_limit])
def api_onboarding(
    payload: OnboardingIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        budget = OnboardingService(db, user.id).complete(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True, "budgetId": budget.id, "budget": dump(BudgetOut, budget)}


@app.get("/api/app/members")
def api_members(
    budget_id: Optional[int] = Query(default=None, alias="budgetId"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        members = MemberService(db, user.id).list_members(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"members": [dump(MemberOut, m) for m in members]}


@app.post("/api/app/members", status_code=201, dependencies=[api_limit])
def api_add_dependent(
    payload: DependentIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        member = MemberService(db, user.id).add_dependent(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"member": dump(MemberOut, member)}


@app.patch("/api/app/members/{member_id}", dependencies=[api_limit])
def api_update_member(
    member_id: int,
    payload: MemberUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        member = MemberService(db, user.id).update(member_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"member": dump(MemberOut, member)}


@app.delete("/api/app/members/{member_id}", dependencies=[api_limit])
def api_remove_member(
    member_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        MemberService(db, user.id).remove(member_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


# --- accounts, categories, recurring bills, income sources ---


@app.get("/api/app/accounts")
def api_accounts(
    budget_id: Optional[int] = Query(default=None, alias="budgetId"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        accounts = AccountService(db, user.id).list_accounts(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"accounts": [dump(AccountOut, a) for a in accounts]}


@app.get("/api/app/accounts/{account_id}")
def api_account(
    account_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        account = AccountService(db, user.id).get(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"account": dump(AccountOut, account)}


@app.post("/api/app/accounts", status_code=201, dependencies=[api_limit])
def api_create_account(
    payload: AccountIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        account = AccountService(db, user.id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"account": dump(AccountOut, account)}


@app.patch("/api/app/accounts/{account_id}", dependencies=[api_limit])
def api_update_account(
    account_id: int,
    payload: AccountUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, user.id).update(account_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"account": dump(AccountOut, account)}


@app.delete("/api/app/accounts/{account_id}", dependencies=[api_limit])
def api_delete_account(
    account_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        AccountService(db, user.id).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


@app.get("/api/app/categories")
def api_categories(
    budget_id: int = Query(..., alias="budgetId"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        data = CategoryService(db, user.id).list_grouped(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "groups": [
            {**dump(GroupOut, group), "categories": [dump(CategoryOut, c) for c in items]}
            for group, items in data["groups"]
        ],
        "flatCategories": [dump(CategoryOut, c) for c in data["flat_categories"]],
    }


@app.post("/api/app/categories", status_code=201, dependencies=[api_limit])
def api_create_category(
    payload: CategoryIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        category = CategoryService(db, user.id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"category": dump(CategoryOut, category)}


@app.patch("/api/app/categories/{category_id}", dependencies=[api_limit])
def api_update_category(
    category_id: int,
    payload: CategoryUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user.id).update(category_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"category": dump(CategoryOut, category)}


@app.delete("/api/app/categories/{category_id}", dependencies=[api_limit])
def api_delete_category(
    category_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        CategoryService(db, user.id).archive(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


@app.get("/api/app/recurring-bills")
def api_recurring_bills(
    budget_id: int = Query(..., alias="budgetId"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        bills, totals = RecurringBillService(db, user.id).list_bills(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "bills": [dump(RecurringBillOut, b) for b in bills],
        "totalsByCategory": {str(key): value for key, value in totals.items()},
    }


@app.post("/api/app/recurring-bills", status_code=201, dependencies=[api_limit])
def api_create_recurring_bill(
    payload: RecurringBillIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        bill = RecurringBillService(db, user.id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"bill": dump(RecurringBillOut, bill)}


@app.patch("/api/app/recurring-bills/{bill_id}", dependencies=[api_limit])
def api_update_recurring_bill(
    bill_id: int,
    payload: RecurringBillUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        bill = RecurringBillService(db, user.id).update(bill_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"bill": dump(RecurringBillOut, bill)}


@app.delete("/api/app/recurring-bills/{bill_id}", dependencies=[api_limit])
def api_delete_recurring_bill(
    bill_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        RecurringBillService(db, user.id).deactivate(bill_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


@app.get("/api/app/income-sources")
def api_income_sources(
    budget_id: int = Query(..., alias="budgetId"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        sources, total = IncomeSourceService(db, user.id).list_sources(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "incomeSources": [dump(IncomeSourceOut, s) for s in sources],
        "totalMonthlyIncome": total,
    }


@app.post("/api/app/income-sources", status_code=201, dependencies=[api_limit])
def api_create_income_source(
    payload: IncomeSourceIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        source = IncomeSourceService(db, user.id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"incomeSource": dump(IncomeSourceOut, source)}


@app.patch("/api/app/income-sources/{source_id}", dependencies=[api_limit])
def api_update_income_source(
    source_id: int,
    payload: IncomeSourceUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        source = IncomeSourceService(db, user.id).update(source_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"incomeSource": dump(IncomeSourceOut, source)}


@app.delete("/api/app/income-sources/{source_id}", dependencies=[api_limit])
def api_delete_income_source(
    source_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        IncomeSourceService(db, user.id).deactivate(source_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


# --- transactions ---


def transaction_payload(txn) -> dict:
    return {
        **dump(TransactionOut, txn),
        "accountName": txn.account.name if txn.account else None,
        "categoryName": txn.category.name if txn.category else None,
        "incomeSourceName": txn.income_source.name if txn.income_source else None,
    }


@app.get("/api/app/transactions")
def api_transactions(
    budget_id: Optional[int] = Query(default=None, alias="budgetId"),
    account_id: Optional[int] = Query(default=None, alias="accountId"),
    category_id: Optional[int] = Query(default=None, alias="categoryId"),
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        items = TransactionService(db, user.id).list_transactions(
            budget_id=budget_id,
            account_id=account_id,
            category_id=category_id,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "transactions": [transaction_payload(txn) for txn in items],
        "limit": limit,
        "offset": offset,
    }


@app.post("/api/app/transactions", status_code=201, dependencies=[api_limit])
def api_create_transaction(
    payload: TransactionIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user.id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"transaction": dump(TransactionOut, txn)}


@app.post("/api/app/transactions/quick", status_code=201, dependencies=[api_limit])
def api_quick_expense(
    payload: QuickExpenseIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user.id).quick_expense(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"transaction": transaction_payload(txn)}


@app.get("/api/app/transactions/scheduled")
def api_scheduled_transactions(
    budget_id: int = Query(..., alias="budgetId"),
    year: Optional[int] = Query(default=None),
    month: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        period = resolve_month(year, month)
        return TransactionService(db, user.id).scheduled(
            budget_id, period.year, period.month
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/app/transactions/confirm-scheduled", dependencies=[api_limit])
def api_confirm_scheduled(
    payload: ConfirmScheduledIn,
    response: Response,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        txn, action = TransactionService(db, user.id).confirm_scheduled(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    response.status_code = 201 if action == "created" else 200
    return {"transaction": dump(TransactionOut, txn), "action": action}


@app.get("/api/app/transactions/export")
def api_export_transactions(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    content = TransactionService(db, user.id).export_csv()
    filename = f"transacoes-{local_today().isoformat()}.csv"
    return Response(
        content="\ufeff" + content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/app/transactions/{transaction_id}")
def api_transaction(
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user.id).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"transaction": transaction_payload(txn)}


@app.patch("/api/app/transactions/{transaction_id}", dependencies=[api_limit])
def api_update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user.id).update(transaction_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"transaction": dump(TransactionOut, txn)}


@app.delete("/api/app/transactions/{transaction_id}", dependencies=[api_limit])
def api_delete_transaction(
    transaction_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user.id).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


# --- monthly cycle and allocations ---


@app.post("/api/app/month/ensure-pending", dependencies=[api_limit])
def api_ensure_pending(
    payload: MonthIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        result = MonthService(db, user.id).ensure_pending(
            payload.budget_id, payload.year, payload.month
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return result.as_dict()


@app.post("/api/app/month/start", dependencies=[api_limit])
def api_start_month(
    payload: MonthIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        result = MonthService(db, user.id).start(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True, **result.as_dict()}


@app.get("/api/app/month/status")
def api_month_status(
    budget_id: int = Query(..., alias="budgetId"),
    year: Optional[int] = Query(default=None),
    month: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        period = resolve_month(year, month)
        status = MonthService(db, user.id).status(budget_id, period.year, period.month)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(MonthStatusOut, status)


@app.post("/api/app/month/close", dependencies=[api_limit])
def api_close_month(
    payload: MonthIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        row = MonthService(db, user.id).close(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return dump(MonthStatusOut, row)


@app.get("/api/app/allocations")
def api_allocations(
    budget_id: int = Query(..., alias="budgetId"),
    year: Optional[int] = Query(default=None),
    month: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        period = resolve_month(year, month)
        return AllocationService(db, user.id).month_view(
            budget_id, period.year, period.month
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/app/allocations", dependencies=[api_limit])
def api_upsert_allocation(
    payload: AllocationIn,
    response: Response,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        allocation, created = AllocationService(db, user.id).upsert(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    response.status_code = 201 if created else 200
    return {
        "allocation": {
            "id": allocation.id,
            "categoryId": allocation.category_id,
            "year": allocation.year,
            "month": allocation.month,
            "allocated": allocation.allocated_cents,
            "carriedOver": allocation.carried_over_cents,
        },
        "created": created,
    }


@app.post("/api/app/allocations/copy", dependencies=[api_limit])
def api_copy_allocations(
    payload: CopyAllocationsIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        result = AllocationService(db, user.id).copy(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True, **result}


@app.post("/api/app/income-allocations", dependencies=[api_limit])
def api_upsert_income_allocation(
    payload: IncomeAllocationIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return AllocationService(db, user.id).upsert_income(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


# --- goals ---


def goal_payload(goal) -> dict:
    return {**dump(GoalOut, goal), **calculate_goal_metrics(goal)}


@app.get("/api/app/goals")
def api_goals(
    budget_id: int = Query(..., alias="budgetId"),
    include_archived: bool = Query(default=False, alias="includeArchived"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        goals = GoalService(db, user.id).list_goals(budget_id, include_archived)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"goals": [goal_payload(goal) for goal in goals]}


@app.post("/api/app/goals", status_code=201, dependencies=[api_limit])
def api_create_goal(
    payload: GoalIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        goal = GoalService(db, user.id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"goal": goal_payload(goal)}


@app.get("/api/app/goals/{goal_id}")
def api_goal(
    goal_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        goal = GoalService(db, user.id).get(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"goal": goal_payload(goal)}


@app.patch("/api/app/goals/{goal_id}", dependencies=[api_limit])
def api_update_goal(
    goal_id: int,
    payload: GoalUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        goal = GoalService(db, user.id).update(goal_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"goal": goal_payload(goal)}


@app.delete("/api/app/goals/{goal_id}", dependencies=[api_limit])
def api_delete_goal(
    goal_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        GoalService(db, user.id).archive(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


@app.post("/api/app/goals/{goal_id}/contributions", dependencies=[api_limit])
def api_contribute(
    goal_id: int,
    payload: ContributionIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        result = GoalService(db, user.id).contribute(goal_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "goal": goal_payload(result["goal"]),
        "contribution": dump(ContributionOut, result["contribution"]),
        "justCompleted": result["justCompleted"],
    }


@app.get("/api/app/goals/{goal_id}/contributions")
def api_contributions(
    goal_id: int,
    year: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        items = GoalService(db, user.id).contributions(goal_id, year)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"contributions": [dump(ContributionOut, c) for c in items]}


# --- invites ---


@app.post("/api/app/invites", status_code=201, dependencies=[api_limit])
def api_create_invite(
    payload: InviteIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        invite = InviteService(db, user.id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "invite": dump(InviteOut, invite),
        "inviteLink": InviteService.invite_link(invite),
    }


@app.get("/api/app/invites")
def api_invites(
    budget_id: int = Query(..., alias="budgetId"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        invites = InviteService(db, user.id).list_pending(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"invites": [dump(InviteOut, i) for i in invites]}


@app.post("/api/app/invites/accept", dependencies=[api_limit])
def api_accept_invite(
    payload: AcceptInviteIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        member = InviteService(db, user.id).accept(payload.token)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True, "budgetId": member.budget_id, "member": dump(MemberOut, member)}


@app.delete("/api/app/invites/{invite_id}", dependencies=[api_limit])
def api_cancel_invite(
    invite_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    try:
        InviteService(db, user.id).cancel(invite_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


@app.get("/api/public/invites/{token}", dependencies=[public_limit])
def api_public_invite(token: str, db: Session = Depends(get_db)):
    try:
        return InviteService(db).lookup(token)
    except ValueError as exc:
        raise http_error(exc) from exc


# --- access links, coupons, plans ---


@app.get("/api/access-link/{code}", dependencies=[public_limit])
def api_check_access_link(code: str, db: Session = Depends(get_db)):
    try:
        return AccessLinkService(db).check(code)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/app/access-link/redeem", dependencies=[api_limit])
def api_redeem_access_link(
    payload: RedeemCodeIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        updated = AccessLinkService(db, user.id).redeem(payload.code)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True, "user": dump(UserOut, updated)}


@app.post("/api/app/coupons/redeem", dependencies=[api_limit])
def api_redeem_coupon(
    payload: RedeemCodeIn,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        result = CouponService(db, user.id).redeem(payload.code)
    except ValueError as exc:
        raise http_error(exc) from exc
    plan = result["plan"]
    return {
        "success": True,
        "couponCount": result["couponCount"],
        "plan": dump(PlanOut, plan) if plan else None,
    }


@app.get("/api/plans", dependencies=[public_limit])
def api_public_plans(db: Session = Depends(get_db)):
    data = PlanService(db).public_plans()
    return {
        "plans": [
            {**dump(PlanOut, plan), "features": features}
            for plan, features in data["plans"]
        ],
        "trialDays": data["trial_days"],
    }


# --- dashboard ---


@app.get("/api/app/dashboard")
def api_dashboard(
    budget_id: int = Query(..., alias="budgetId"),
    year: Optional[int] = Query(default=None),
    month: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        period = resolve_month(year, month)
        return DashboardService(db, user.id).stats(budget_id, period.year, period.month)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/app/commitments")
def api_commitments(
    budget_id: int = Query(..., alias="budgetId"),
    days: int = Query(default=30, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        items = DashboardService(db, user.id).commitments(budget_id, days)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"commitments": items}


@app.get("/api/app/billing-cycle")
def api_billing_cycle(
    closing_day: int = Query(..., alias="closingDay", ge=1, le=31),
    year: Optional[int] = Query(default=None),
    month: Optional[int] = Query(default=None),
    txn_date: Optional[date] = Query(default=None, alias="date"),
    user: User = Depends(get_current_user),
):
    try:
        period = resolve_month(year, month)
    except ValueError as exc:
        raise http_error(exc) from exc
    start, end = get_billing_cycle_dates(closing_day, period.year, period.month)
    body = {"startDate": start.isoformat(), "endDate": end.isoformat()}
    if txn_date is not None:
        billing_year, billing_month = get_transaction_billing_month(txn_date, closing_day)
        body["billingMonth"] = {"year": billing_year, "month": billing_month}
    return body


# --- super admin ---


@app.get("/api/super-admin/access-links", dependencies=[admin_limit])
def api_admin_access_links(
    admin: User = Depends(require_super_admin), db: Session = Depends(get_db)
):
    data = AccessLinkService(db, admin.id).list_with_stats()
    return {
        "links": [dump(AccessLinkOut, link) for link in data["links"]],
        "stats": data["stats"],
    }


@app.post("/api/super-admin/access-links", status_code=201, dependencies=[admin_limit])
def api_admin_create_access_links(
    payload: AccessLinkIn,
    admin: User = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    links = AccessLinkService(db, admin.id).create(payload)
    return {"links": [dump(AccessLinkOut, link) for link in links]}


@app.patch("/api/super-admin/access-links/{link_id}", dependencies=[admin_limit])
def api_admin_update_access_link(
    link_id: int,
    payload: AccessLinkUpdate,
    admin: User = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    try:
        link = AccessLinkService(db, admin.id).update(link_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"link": dump(AccessLinkOut, link)}


@app.delete("/api/super-admin/access-links/{link_id}", dependencies=[admin_limit])
def api_admin_delete_access_link(
    link_id: int, admin: User = Depends(require_super_admin), db: Session = Depends(get_db)
):
    try:
        AccessLinkService(db, admin.id).delete(link_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


@app.get("/api/super-admin/coupons", dependencies=[admin_limit])
def api_admin_coupons(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    search: Optional[str] = Query(default=None),
    status: str = Query(default="all"),
    admin: User = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    try:
        data = CouponService(db, admin.id).list_coupons(page, limit, search, status)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {**data, "items": [dump(CouponOut, c) for c in data["items"]]}


@app.post("/api/super-admin/coupons", status_code=201, dependencies=[admin_limit])
def api_admin_generate_coupons(
    payload: CouponGenerateIn,
    admin: User = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    coupons = CouponService(db, admin.id).generate(payload.prefix, payload.count)
    return {"coupons": [dump(CouponOut, c) for c in coupons], "count": len(coupons)}


@app.post("/api/super-admin/coupons/{coupon_id}/expire", dependencies=[admin_limit])
def api_admin_expire_coupon(
    coupon_id: int, admin: User = Depends(require_super_admin), db: Session = Depends(get_db)
):
    try:
        coupon = CouponService(db, admin.id).expire(coupon_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"coupon": dump(CouponOut, coupon)}


@app.delete("/api/super-admin/coupons/{coupon_id}", dependencies=[admin_limit])
def api_admin_delete_coupon(
    coupon_id: int, admin: User = Depends(require_super_admin), db: Session = Depends(get_db)
):
    try:
        CouponService(db, admin.id).delete(coupon_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"success": True}


@app.get("/api/super-admin/plans", dependencies=[admin_limit])
def api_admin_plans(admin: User = Depends(require_super_admin), db: Session = Depends(get_db)):
    return {"plans": [dump(PlanOut, plan) for plan in PlanService(db, admin.id).list_all()]}


@app.post("/api/super-admin/plans", status_code=201, dependencies=[admin_limit])
def api_admin_create_plan(
    payload: PlanIn, admin: User = Depends(require_super_admin), db: Session = Depends(get_db)
):
    try:
        plan = PlanService(db, admin.id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"plan": dump(PlanOut, plan)}


@app.patch("/api/super-admin/plans/{plan_id}", dependencies=[admin_limit])
def api_admin_update_plan(
    plan_id: int,
    payload: PlanUpdate,
    admin: User = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    try:
        plan = PlanService(db, admin.id).update(plan_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"plan": dump(PlanOut, plan)}


@app.get("/api/super-admin/users", dependencies=[admin_limit])
def api_admin_users(
    search: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    admin: User = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    data = UserService(db, admin.id).list_users(search, page, limit)
    return {**data, "items": [dump(UserOut, u) for u in data["items"]]}


@app.patch("/api/super-admin/users/{user_id}/role", dependencies=[admin_limit])
def api_admin_update_role(
    user_id: int,
    payload: UserRoleIn,
    admin: User = Depends(require_super_admin),
    db: Session = Depends(get_db),
):
    try:
        updated = UserService(db, admin.id).update_role(user_id, payload.role)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"user": dump(UserOut, updated)}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
