from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RequestKind(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    COIN_PURCHASE = "coin_purchase"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    COIN_PURCHASE = "coin_purchase"
    PLAN_PURCHASE = "plan_purchase"
    DAILY_REWARD = "daily_reward"
    SPIN_WHEEL = "spin_wheel"
    REFERRAL_COMMISSION = "referral_commission"
    PLAN_PROFIT = "plan_profit"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class CamelModel(BaseModel):
    """Base for records that travel to the browser and into backups with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------

class User(CamelModel):
    id: int
    email: str
    password_hash: str
    name: str
    is_admin: bool = False
    referral_code: str
    referred_by: Optional[str] = None
    pkr_balance: Decimal = Decimal("0.00")
    coin_balance: int = 0
    created_at: datetime


class UserProfile(CamelModel):
    id: int
    email: str
    name: str
    is_admin: bool
    referral_code: str
    referred_by: Optional[str] = None
    pkr_balance: Decimal
    coin_balance: int
    created_at: datetime


class Deposit(CamelModel):
    id: int
    user_id: int
    amount: Decimal
    method: str
    transaction_id: str
    screenshot: str = ""
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime
    processed_at: Optional[datetime] = None


class Withdrawal(CamelModel):
    id: int
    user_id: int
    amount: Decimal
    method: str
    account_details: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime
    processed_at: Optional[datetime] = None


class CoinPurchase(CamelModel):
    id: int
    user_id: int
    pkr_amount: Decimal
    coin_amount: int
    method: str
    transaction_id: str
    screenshot: str = ""
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime
    processed_at: Optional[datetime] = None


class Plan(CamelModel):
    id: int
    name: str
    description: str = ""
    price: Decimal
    coin_requirement: int = 0
    duration_days: int
    profit_rate: Decimal
    is_active: bool = True


class UserPlan(CamelModel):
    id: int
    user_id: int
    plan_id: int
    plan_name: str
    price: Decimal
    duration_days: int
    purchase_date: datetime
    expiry_date: datetime
    total_profit: Decimal
    profit_claimed: Decimal = Decimal("0.00")

    def is_active(self, now: datetime) -> bool:
        return now < self.expiry_date

    @property
    def remaining_profit(self) -> Decimal:
        return self.total_profit - self.profit_claimed


class DailyRewardClaim(CamelModel):
    id: int
    user_id: int
    amount: int
    claimed_at: datetime


class SpinResult(CamelModel):
    id: int
    user_id: int
    amount: int
    spun_at: datetime


class Transaction(CamelModel):
    id: int
    user_id: int
    type: TransactionType
    amount: Decimal
    description: str
    created_at: datetime


class DepositAccount(CamelModel):
    name: str
    number: str


class SystemSettings(CamelModel):
    id: int = 1
    coin_rate: Decimal = Decimal("10")
    referral_percentage: Decimal = Decimal("50")
    daily_reward_amount: int = 100
    daily_reward_enabled: bool = True
    spin_wheel_enabled: bool = True
    spin_wheel_values: list[int] = Field(
        default_factory=lambda: [50, 100, 150, 200, 250, 300, 500, 1000]
    )
    min_withdrawal: Decimal = Decimal("500")
    max_withdrawal: Decimal = Decimal("50000")
    deposit_accounts: dict[str, DepositAccount] = Field(
        default_factory=lambda: {
            "easypaisa": DepositAccount(name="Muhammad Rizwan Tariq", number="03325382626"),
            "sadapay": DepositAccount(name="Muhammad Rizwan Tariq", number="03325382626"),
        }
    )


class PublicSettings(CamelModel):
    coin_rate: Decimal
    daily_reward_amount: int
    daily_reward_enabled: bool
    spin_wheel_enabled: bool
    spin_wheel_values: list[int]
    min_withdrawal: Decimal
    max_withdrawal: Decimal
    deposit_accounts: dict[str, DepositAccount]


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class RegisterRequest(CamelModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=1)
    referral_code: Optional[str] = Field(default=None, description="Code from a ?ref= link")


class LoginRequest(CamelModel):
    email: str
    password: str


class CreateDepositRequest(CamelModel):
    amount: Decimal = Field(..., gt=0)
    method: str
    transaction_id: str = Field(..., min_length=1)
    screenshot: str = Field(default="", description="Payment proof as a data URL")


class CreateWithdrawalRequest(CamelModel):
    amount: Decimal = Field(..., gt=0)
    method: str
    account_details: str = Field(..., min_length=1)


class CreateCoinPurchaseRequest(CamelModel):
    pkr_amount: Decimal = Field(..., gt=0)
    method: str
    transaction_id: str = Field(..., min_length=1)
    screenshot: str = ""


class PlanCreateRequest(CamelModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: Decimal = Field(..., gt=0)
    coin_requirement: int = Field(default=0, ge=0)
    duration_days: int = Field(..., gt=0)
    profit_rate: Decimal = Field(..., ge=0)
    is_active: bool = True


class PlanUpdateRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, gt=0)
    coin_requirement: Optional[int] = Field(default=None, ge=0)
    duration_days: Optional[int] = Field(default=None, gt=0)
    profit_rate: Optional[Decimal] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class BalanceAdjustmentRequest(CamelModel):
    pkr_delta: Decimal = Decimal("0")
    coin_delta: int = 0


class SettingsUpdateRequest(CamelModel):
    coin_rate: Optional[Decimal] = None
    referral_percentage: Optional[Decimal] = None
    daily_reward_amount: Optional[int] = None
    daily_reward_enabled: Optional[bool] = None
    spin_wheel_enabled: Optional[bool] = None
    spin_wheel_values: Optional[list[int]] = None
    min_withdrawal: Optional[Decimal] = None
    max_withdrawal: Optional[Decimal] = None
    deposit_accounts: Optional[dict[str, DepositAccount]] = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class TokenResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"
    user: UserProfile


class RequestResponse(CamelModel):
    kind: RequestKind
    request: Deposit | Withdrawal | CoinPurchase
    applied: bool
    message: str


class AdminRequestItem(CamelModel):
    id: int
    kind: RequestKind
    user_id: int
    user_name: str
    amount: Decimal
    method: str
    details: str
    status: RequestStatus
    created_at: datetime


class PurchaseResponse(CamelModel):
    subscription: UserPlan
    user: UserProfile
    message: str


class AccrualEntry(CamelModel):
    subscription_id: int
    user_id: int
    amount: Decimal


class AccrualReport(CamelModel):
    ran_at: datetime
    processed: int
    credited: list[AccrualEntry] = Field(default_factory=list)

    @property
    def total_credited(self) -> Decimal:
        return sum((e.amount for e in self.credited), Decimal("0"))


class DailyRewardStatus(CamelModel):
    enabled: bool
    can_claim: bool
    amount: int
    last_claimed_at: Optional[datetime] = None
    next_claim_at: Optional[datetime] = None


class SpinStatus(CamelModel):
    enabled: bool
    can_spin: bool
    spins_today: int
    values: list[int]


class RewardResponse(CamelModel):
    amount: int
    coin_balance: int
    message: str


class UserStats(CamelModel):
    total_deposit: Decimal
    total_withdrawal: Decimal
    total_profit: Decimal
    total_invested: Decimal
    total_referrals: int
    total_referral_earnings: Decimal
    referral_link: str


class AdminStats(CamelModel):
    total_users: int
    total_deposits: Decimal
    total_withdrawals: Decimal
    admin_profit: Decimal
    total_referral_payouts: Decimal
    total_coins_bought: int
    total_coins_earned: int
    total_plans_sold: int
    total_user_profit: Decimal


class AdminUserSummary(UserProfile):
    total_deposit: Decimal
    total_withdrawal: Decimal
    referrals: int


class TransactionHistoryResponse(CamelModel):
    user_id: int
    entries: list[Transaction]
    total_count: int
    pkr_balance: Decimal
    coin_balance: int
