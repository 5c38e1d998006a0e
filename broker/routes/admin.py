#  Generation Broker - Admin Routes
#
#  Admin-only endpoints: task approval, user management, balance
#  adjustments and top-ups, ledger listing and CSV export.
#
#  Depends on: container.py, models/schemas.py, middleware/auth.py,
#              services/accounting.py, services/accounts.py, services/ledger.py,
#              services/submission.py
#  Used by:    app.py

from datetime import datetime, timezone
from decimal import Decimal

from dependency_injector.wiring import inject, Provide
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from starlette.requests import Request

from broker.container import Container
from broker.middleware.auth import require_admin
from broker.models.enums import TransactionKind
from broker.models.records import Account
from broker.models.schemas import (
    AdminUserUpdate,
    BalanceAdjust,
    TaskOut,
    TopupRequest,
    TransactionListOut,
    TransactionOut,
    UserListOut,
    UserOut,
)
from broker.services.accounting import AccountingEngine, TransactionMeta
from broker.services.accounts import AccountFilter, AccountStore
from broker.services.ledger import LedgerService, TransactionFilter
from broker.services.submission import SubmissionService

router = APIRouter(prefix="/admin", tags=["admin"])


def _admin_meta(request: Request, admin: Account, kind: TransactionKind) -> TransactionMeta:
    return TransactionMeta(
        operator=admin.username,
        operator_id=admin.id,
        kind=kind,
        ip_address=request.client.host if request.client else "",
        device_info=request.headers.get("user-agent", ""),
    )


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@router.post("/tasks/{task_id}/approve")
@inject
async def approve_task(
    task_id: int,
    _admin: Account = Depends(require_admin),
    submission: SubmissionService = Depends(Provide[Container.submission]),
) -> TaskOut:
    """Release a PendingAudit task to the queue."""
    return TaskOut.from_task(await submission.approve(task_id))


# ---------------------------------------------------------------------------
# User Management
# ---------------------------------------------------------------------------

@router.get("/users")
@inject
async def list_users(
    is_active: bool | None = Query(default=None),
    created_after: float | None = Query(default=None),
    created_before: float | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    _admin: Account = Depends(require_admin),
    accounts: AccountStore = Depends(Provide[Container.accounts]),
) -> UserListOut:
    users, total = await accounts.find(AccountFilter(
        is_active=is_active,
        created_after=created_after,
        created_before=created_before,
        page=page,
        limit=limit,
    ))
    return UserListOut(
        items=[UserOut.from_account(u) for u in users], total=total, page=page, limit=limit,
    )


@router.patch("/users/{user_id}")
@inject
async def update_user(
    user_id: int,
    body: AdminUserUpdate,
    admin: Account = Depends(require_admin),
    accounts: AccountStore = Depends(Provide[Container.accounts]),
) -> UserOut:
    """Sparse profile update guarded by the caller's observed version."""
    patch = body.model_dump(exclude_unset=True, exclude={"version"})
    if not patch:
        raise HTTPException(400, "No fields to update")

    # Self-protection guards
    if user_id == admin.id:
        if patch.get("is_active") is False:
            raise HTTPException(400, "Cannot deactivate your own account")
        if "role" in patch and patch["role"] != admin.role:
            raise HTTPException(400, "Cannot change your own role")

    return UserOut.from_account(await accounts.apply_update(user_id, patch, body.version))


@router.delete("/users/{user_id}", status_code=204)
@inject
async def delete_user(
    user_id: int,
    admin: Account = Depends(require_admin),
    accounts: AccountStore = Depends(Provide[Container.accounts]),
):
    if user_id == admin.id:
        raise HTTPException(400, "Cannot delete your own account")
    await accounts.delete(user_id)


@router.post("/users/{user_id}/balance")
@inject
async def adjust_balance(
    request: Request,
    user_id: int,
    body: BalanceAdjust,
    admin: Account = Depends(require_admin),
    accounting: AccountingEngine = Depends(Provide[Container.accounting]),
) -> UserOut:
    """Signed admin adjustment, recorded as admin_adjustment."""
    meta = _admin_meta(request, admin, TransactionKind.ADMIN_ADJUSTMENT)
    return UserOut.from_account(await accounting.adjust(user_id, body.amount, body.reason, meta))


@router.post("/users/{user_id}/topup")
@inject
async def manual_topup(
    request: Request,
    user_id: int,
    body: TopupRequest,
    admin: Account = Depends(require_admin),
    accounting: AccountingEngine = Depends(Provide[Container.accounting]),
) -> UserOut:
    """Admin completion of a top-up order, recorded as manual_topup."""
    meta = _admin_meta(request, admin, TransactionKind.MANUAL_TOPUP)
    account = await accounting.topup(user_id, body.amount, body.reason, meta, manual=True)
    return UserOut.from_account(account)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def _transaction_filter(
    user_id: int | None = Query(default=None),
    kind: TransactionKind | None = Query(default=None),
    start_time: float | None = Query(default=None),
    end_time: float | None = Query(default=None),
    min_amount: Decimal | None = Query(default=None),
    max_amount: Decimal | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=500),
) -> TransactionFilter:
    return TransactionFilter(
        user_id=user_id,
        kind=kind,
        start_time=start_time,
        end_time=end_time,
        min_amount=min_amount,
        max_amount=max_amount,
        page=page,
        limit=limit,
    )


@router.get("/transactions")
@inject
async def list_transactions(
    flt: TransactionFilter = Depends(_transaction_filter),
    _admin: Account = Depends(require_admin),
    ledger: LedgerService = Depends(Provide[Container.ledger]),
) -> TransactionListOut:
    entries, total = await ledger.find(flt)
    return TransactionListOut(
        items=[TransactionOut.from_entry(e) for e in entries],
        total=total,
        page=flt.page,
        limit=flt.limit,
    )


@router.get("/transactions/export")
@inject
async def export_transactions(
    flt: TransactionFilter = Depends(_transaction_filter),
    _admin: Account = Depends(require_admin),
    ledger: LedgerService = Depends(Provide[Container.ledger]),
) -> Response:
    """All matching entries as CSV (pagination ignored)."""
    body = await ledger.export_csv(flt)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="transactions_{stamp}.csv"'},
    )
