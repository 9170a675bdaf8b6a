import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .backup import backup_filename, export_backup, import_backup, load_backup, save_backup
from .config import configure_logging, get_settings
from .models import (
    RequestKind,
    RequestStatus,
    UserProfile,
    Deposit,
    Withdrawal,
    CoinPurchase,
    Plan,
    UserPlan,
    SystemSettings,
    PublicSettings,
    RegisterRequest,
    LoginRequest,
    CreateDepositRequest,
    CreateWithdrawalRequest,
    CreateCoinPurchaseRequest,
    PlanCreateRequest,
    PlanUpdateRequest,
    BalanceAdjustmentRequest,
    SettingsUpdateRequest,
    TokenResponse,
    RequestResponse,
    AdminRequestItem,
    PurchaseResponse,
    AccrualReport,
    DailyRewardStatus,
    SpinStatus,
    RewardResponse,
    UserStats,
    AdminStats,
    AdminUserSummary,
    TransactionHistoryResponse,
)
from .scheduler import profit_accrual_loop, run_accrual_once
from .security import create_access_token, decode_access_token
from .service import (
    EarningsService,
    EarningsServiceError,
    AuthenticationError,
    NotFoundError,
    PreconditionError,
)

logger = logging.getLogger(__name__)
settings = get_settings()
security = HTTPBearer(auto_error=False)

earnings_service = EarningsService()


def get_service() -> EarningsService:
    return earnings_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    service = get_service()
    if settings.backup_path:
        load_backup(service.storage, settings.backup_path)
    task = asyncio.create_task(profit_accrual_loop(service, settings.accrual_interval_seconds))
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        if settings.backup_path:
            save_backup(service.storage, settings.backup_path)


app = FastAPI(
    title="RTR Earnings API",
    description="Deposits, coins, investment plans, daily rewards and referral commissions",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(e: EarningsServiceError) -> HTTPException:
    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, PreconditionError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, AuthenticationError):
        code = status.HTTP_401_UNAUTHORIZED
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(e))


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    service: EarningsService = Depends(get_service),
) -> UserProfile:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = decode_access_token(credentials.credentials)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return service.get_profile(user_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User no longer exists",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_current_admin(user: UserProfile = Depends(get_current_user)) -> UserProfile:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "rtr-earnings"}


# ---------- Auth ----------


@app.post("/auth/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED, tags=["Auth"])
def register(request: RegisterRequest, service: EarningsService = Depends(get_service)) -> TokenResponse:
    try:
        user = service.register(request)
    except EarningsServiceError as e:
        raise _http_error(e)
    return TokenResponse(access_token=create_access_token(user.id, user.email), user=user)


@app.post("/auth/login", response_model=TokenResponse, tags=["Auth"])
def login(request: LoginRequest, service: EarningsService = Depends(get_service)) -> TokenResponse:
    try:
        user = service.authenticate(request.email, request.password)
    except EarningsServiceError as e:
        raise _http_error(e)
    return TokenResponse(access_token=create_access_token(user.id, user.email), user=user)


@app.get("/me", response_model=UserProfile, tags=["Auth"])
def me(user: UserProfile = Depends(get_current_user)) -> UserProfile:
    return user


# ---------- User ----------


@app.get("/settings", response_model=PublicSettings, tags=["User"])
def public_settings(service: EarningsService = Depends(get_service)) -> PublicSettings:
    return service.get_public_settings()


@app.get("/me/stats", response_model=UserStats, tags=["User"])
def my_stats(
    user: UserProfile = Depends(get_current_user),
    service: EarningsService = Depends(get_service),
) -> UserStats:
    return service.user_stats(user.id)


@app.get("/me/transactions", response_model=TransactionHistoryResponse, tags=["User"])
def my_transactions(
    limit: int = 50,
    offset: int = 0,
    user: UserProfile = Depends(get_current_user),
    service: EarningsService = Depends(get_service),
) -> TransactionHistoryResponse:
    return service.get_transaction_history(user.id, limit, offset)


@app.get("/me/deposits", response_model=list[Deposit], tags=["User"])
def my_deposits(user: UserProfile = Depends(get_current_user), service: EarningsService = Depends(get_service)):
    return service.list_requests(RequestKind.DEPOSIT, user.id)


@app.post("/me/deposits", response_model=Deposit, status_code=status.HTTP_201_CREATED, tags=["User"])
def create_deposit(
    request: CreateDepositRequest,
    user: UserProfile = Depends(get_current_user),
    service: EarningsService = Depends(get_service),
) -> Deposit:
    try:
        return service.create_deposit(user.id, request)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/me/withdrawals", response_model=list[Withdrawal], tags=["User"])
def my_withdrawals(user: UserProfile = Depends(get_current_user), service: EarningsService = Depends(get_service)):
    return service.list_requests(RequestKind.WITHDRAWAL, user.id)


@app.post("/me/withdrawals", response_model=Withdrawal, status_code=status.HTTP_201_CREATED, tags=["User"])
def create_withdrawal(
    request: CreateWithdrawalRequest,
    user: UserProfile = Depends(get_current_user),
    service: EarningsService = Depends(get_service),
) -> Withdrawal:
    try:
        return service.create_withdrawal(user.id, request)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/me/coin-purchases", response_model=list[CoinPurchase], tags=["User"])
def my_coin_purchases(user: UserProfile = Depends(get_current_user), service: EarningsService = Depends(get_service)):
    return service.list_requests(RequestKind.COIN_PURCHASE, user.id)


@app.post("/me/coin-purchases", response_model=CoinPurchase, status_code=status.HTTP_201_CREATED, tags=["User"])
def create_coin_purchase(
    request: CreateCoinPurchaseRequest,
    user: UserProfile = Depends(get_current_user),
    service: EarningsService = Depends(get_service),
) -> CoinPurchase:
    try:
        return service.create_coin_purchase(user.id, request)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/plans", response_model=list[Plan], tags=["Plans"])
def list_plans(service: EarningsService = Depends(get_service)) -> list[Plan]:
    return service.list_plans()


@app.post("/plans/{plan_id}/purchase", response_model=PurchaseResponse, tags=["Plans"])
def purchase_plan(
    plan_id: int,
    user: UserProfile = Depends(get_current_user),
    service: EarningsService = Depends(get_service),
) -> PurchaseResponse:
    try:
        return service.purchase_plan(user.id, plan_id)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/me/plans", response_model=list[UserPlan], tags=["Plans"])
def my_plans(
    active_only: bool = False,
    user: UserProfile = Depends(get_current_user),
    service: EarningsService = Depends(get_service),
) -> list[UserPlan]:
    return service.list_subscriptions(user.id, active_only)


@app.get("/me/daily-reward", response_model=DailyRewardStatus, tags=["Rewards"])
def daily_reward_status(
    user: UserProfile = Depends(get_current_user),
    service: EarningsService = Depends(get_service),
) -> DailyRewardStatus:
    return service.daily_reward_status(user.id)


@app.post("/me/daily-reward", response_model=RewardResponse, tags=["Rewards"])
def claim_daily_reward(
    user: UserProfile = Depends(get_current_user),
    service: EarningsService = Depends(get_service),
) -> RewardResponse:
    try:
        return service.claim_daily_reward(user.id)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/me/spin", response_model=SpinStatus, tags=["Rewards"])
def spin_status(
    user: UserProfile = Depends(get_current_user),
    service: EarningsService = Depends(get_service),
) -> SpinStatus:
    return service.spin_status(user.id)


@app.post("/me/spin", response_model=RewardResponse, tags=["Rewards"])
def spin(
    user: UserProfile = Depends(get_current_user),
    service: EarningsService = Depends(get_service),
) -> RewardResponse:
    try:
        return service.spin(user.id)
    except EarningsServiceError as e:
        raise _http_error(e)


# ---------- Admin ----------


@app.get("/admin/requests", response_model=list[AdminRequestItem], tags=["Admin"])
def admin_requests(
    request_status: Optional[RequestStatus] = None,
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> list[AdminRequestItem]:
    return service.list_admin_requests(request_status)


@app.post("/admin/requests/{kind}/{request_id}/approve", response_model=RequestResponse, tags=["Admin"])
def approve_request(
    kind: RequestKind,
    request_id: int,
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> RequestResponse:
    try:
        return service.approve_request(kind, request_id)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.post("/admin/requests/{kind}/{request_id}/reject", response_model=RequestResponse, tags=["Admin"])
def reject_request(
    kind: RequestKind,
    request_id: int,
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> RequestResponse:
    try:
        return service.reject_request(kind, request_id)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/admin/users", response_model=list[AdminUserSummary], tags=["Admin"])
def admin_users(
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> list[AdminUserSummary]:
    return service.list_users()


@app.post("/admin/users/{user_id}/adjust", response_model=UserProfile, tags=["Admin"])
def adjust_balance(
    user_id: int,
    request: BalanceAdjustmentRequest,
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> UserProfile:
    try:
        return service.adjust_balance(user_id, request)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.delete("/admin/users/{user_id}", tags=["Admin"])
def delete_user(
    user_id: int,
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> dict[str, Any]:
    try:
        removed = service.delete_user(user_id)
    except EarningsServiceError as e:
        raise _http_error(e)
    return {"deleted": user_id, "removed": removed}


@app.get("/admin/plans", response_model=list[Plan], tags=["Admin"])
def admin_plans(
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> list[Plan]:
    return service.list_plans(include_inactive=True)


@app.post("/admin/plans", response_model=Plan, status_code=status.HTTP_201_CREATED, tags=["Admin"])
def create_plan(
    request: PlanCreateRequest,
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> Plan:
    return service.create_plan(request)


@app.patch("/admin/plans/{plan_id}", response_model=Plan, tags=["Admin"])
def update_plan(
    plan_id: int,
    request: PlanUpdateRequest,
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> Plan:
    try:
        return service.update_plan(plan_id, request)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.delete("/admin/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Admin"])
def delete_plan(
    plan_id: int,
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
):
    try:
        service.delete_plan(plan_id)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/admin/settings", response_model=SystemSettings, tags=["Admin"])
def admin_settings(
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> SystemSettings:
    return service.get_system_settings()


@app.patch("/admin/settings", response_model=SystemSettings, tags=["Admin"])
def update_settings(
    request: SettingsUpdateRequest,
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> SystemSettings:
    try:
        return service.update_settings(request)
    except EarningsServiceError as e:
        raise _http_error(e)


@app.get("/admin/stats", response_model=AdminStats, tags=["Admin"])
def admin_stats(
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> AdminStats:
    return service.admin_stats()


@app.post("/admin/accrual/run", response_model=AccrualReport, tags=["Admin"])
async def run_accrual(
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> AccrualReport:
    return await run_accrual_once(service)


@app.get("/admin/backup", tags=["Admin"])
def export_backup_file(
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> JSONResponse:
    return JSONResponse(
        content=export_backup(service.storage),
        headers={"Content-Disposition": f'attachment; filename="{backup_filename()}"'},
    )


@app.post("/admin/backup", tags=["Admin"])
def import_backup_file(
    document: dict[str, Any] = Body(...),
    admin: UserProfile = Depends(get_current_admin),
    service: EarningsService = Depends(get_service),
) -> dict[str, Any]:
    try:
        counts = import_backup(service.storage, document)
    except EarningsServiceError as e:
        raise _http_error(e)
    return {"imported": counts}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
