"""
Unit Tests for request approval

Tests cover:
1. Deposit approval and exactly-once crediting
2. Withdrawal limits and the balance re-check at approval time
3. Coin purchase conversion and approval
4. Referral commission on the first approved deposit only
5. Admin request listing
6. Approvals and listings running on several threads at once
"""

import threading

import pytest
from decimal import Decimal

from earnings.models import (
    CreateDepositRequest,
    CreateWithdrawalRequest,
    CreateCoinPurchaseRequest,
    BalanceAdjustmentRequest,
    SettingsUpdateRequest,
    RequestKind,
    RequestStatus,
    TransactionType,
)
from earnings.service import (
    InsufficientBalanceError,
    InvalidInputError,
    RequestNotFoundError,
    UserNotFoundError,
)


def deposit(service, user_id, amount):
    return service.create_deposit(user_id, CreateDepositRequest(
        amount=Decimal(amount), method="easypaisa", transaction_id=f"TX-{user_id}-{amount}",
    ))


def transactions_of(service, user_id, tx_type=None):
    entries = service.get_transaction_history(user_id, limit=1000).entries
    return [e for e in entries if tx_type is None or e.type == tx_type]


class TestDepositApproval:
    """Tests for the deposit approval flow."""

    def test_deposit_starts_pending(self, service, make_user):
        """A new deposit is pending and does not touch the balance."""
        user = make_user()
        created = deposit(service, user.id, 1500)

        assert created.status == RequestStatus.PENDING
        assert created.processed_at is None
        assert service.get_profile(user.id).pkr_balance == Decimal("0")
        assert transactions_of(service, user.id) == []

    def test_approve_credits_balance_and_records_transaction(self, service, make_user, clock):
        """Approving a deposit credits the user once and records it."""
        user = make_user()
        created = deposit(service, user.id, 1500)

        response = service.approve_deposit(created.id)

        assert response.applied is True
        assert response.request.status == RequestStatus.APPROVED
        assert response.request.processed_at == clock.now
        assert service.get_profile(user.id).pkr_balance == Decimal("1500")

        entries = transactions_of(service, user.id, TransactionType.DEPOSIT)
        assert len(entries) == 1
        assert entries[0].amount == Decimal("1500")
        assert entries[0].description == "Deposit via easypaisa"

    def test_double_approval_credits_once(self, service, make_user):
        """Approving the same deposit twice credits the balance exactly once."""
        user = make_user()
        created = deposit(service, user.id, 800)

        service.approve_deposit(created.id)
        second = service.approve_deposit(created.id)

        assert second.applied is False
        assert "already approved" in second.message
        assert service.get_profile(user.id).pkr_balance == Decimal("800")
        assert len(transactions_of(service, user.id, TransactionType.DEPOSIT)) == 1

    def test_reject_leaves_balance_untouched(self, service, make_user):
        """Rejecting a deposit changes only its status."""
        user = make_user()
        created = deposit(service, user.id, 800)

        response = service.reject_request(RequestKind.DEPOSIT, created.id)

        assert response.applied is True
        assert response.request.status == RequestStatus.REJECTED
        assert service.get_profile(user.id).pkr_balance == Decimal("0")
        assert transactions_of(service, user.id) == []

    def test_rejected_deposit_cannot_be_approved(self, service, make_user):
        """Status transitions are never reversed."""
        user = make_user()
        created = deposit(service, user.id, 800)
        service.reject_request(RequestKind.DEPOSIT, created.id)

        response = service.approve_deposit(created.id)

        assert response.applied is False
        assert response.request.status == RequestStatus.REJECTED
        assert service.get_profile(user.id).pkr_balance == Decimal("0")

    def test_approved_deposit_cannot_be_rejected(self, service, make_user):
        """Rejecting an approved deposit is a no-op."""
        user = make_user()
        created = deposit(service, user.id, 800)
        service.approve_deposit(created.id)

        response = service.reject_request(RequestKind.DEPOSIT, created.id)

        assert response.applied is False
        assert response.request.status == RequestStatus.APPROVED
        assert service.get_profile(user.id).pkr_balance == Decimal("800")

    def test_unknown_request_fails(self, service):
        """Approving a missing request is reported."""
        with pytest.raises(RequestNotFoundError):
            service.approve_deposit(999)

    def test_deposit_for_deleted_user_aborts(self, service, make_user):
        """Deposits of a deleted user are removed with the user."""
        user = make_user()
        created = deposit(service, user.id, 800)
        service.delete_user(user.id)

        with pytest.raises(RequestNotFoundError):
            service.approve_deposit(created.id)

    def test_orphaned_request_is_integrity_error(self, service, make_user):
        """A request whose owner vanished aborts without mutation."""
        user = make_user()
        created = deposit(service, user.id, 800)
        del service.storage.users[user.id]

        with pytest.raises(UserNotFoundError):
            service.approve_deposit(created.id)
        assert service.storage.deposits[created.id]["status"] == RequestStatus.PENDING


class TestWithdrawalApproval:
    """Tests for withdrawals."""

    def test_withdrawal_below_minimum_rejected(self, service, make_user):
        """Withdrawals below the configured minimum are validation errors."""
        user = make_user(pkr=10000)

        with pytest.raises(InvalidInputError, match="Minimum withdrawal"):
            service.create_withdrawal(user.id, CreateWithdrawalRequest(
                amount=Decimal("100"), method="sadapay", account_details="0300-0000000",
            ))

    def test_withdrawal_above_maximum_rejected(self, service, make_user):
        """Withdrawals above the configured maximum are validation errors."""
        user = make_user(pkr=100000)

        with pytest.raises(InvalidInputError, match="Maximum withdrawal"):
            service.create_withdrawal(user.id, CreateWithdrawalRequest(
                amount=Decimal("60000"), method="sadapay", account_details="0300-0000000",
            ))

    def test_withdrawal_exceeding_balance_rejected(self, service, make_user):
        """A withdrawal cannot be requested for more than the balance."""
        user = make_user(pkr=600)

        with pytest.raises(InsufficientBalanceError):
            service.create_withdrawal(user.id, CreateWithdrawalRequest(
                amount=Decimal("700"), method="sadapay", account_details="0300-0000000",
            ))
        assert service.list_requests(RequestKind.WITHDRAWAL, user.id) == []

    def test_approve_debits_balance(self, service, make_user):
        """Approving a withdrawal debits the balance and records it."""
        user = make_user(pkr=2000)
        request = service.create_withdrawal(user.id, CreateWithdrawalRequest(
            amount=Decimal("1500"), method="sadapay", account_details="0300-0000000",
        ))

        response = service.approve_withdrawal(request.id)

        assert response.applied is True
        assert service.get_profile(user.id).pkr_balance == Decimal("500")
        entries = transactions_of(service, user.id, TransactionType.WITHDRAWAL)
        assert [e.amount for e in entries] == [Decimal("1500")]

    def test_approval_rechecks_balance(self, service, make_user):
        """A balance that drifted below the amount leaves the withdrawal pending."""
        user = make_user(pkr=2000)
        request = service.create_withdrawal(user.id, CreateWithdrawalRequest(
            amount=Decimal("1500"), method="sadapay", account_details="0300-0000000",
        ))
        service.adjust_balance(user.id, BalanceAdjustmentRequest(pkr_delta=Decimal("-1000")))

        with pytest.raises(InsufficientBalanceError):
            service.approve_withdrawal(request.id)

        assert service.list_requests(RequestKind.WITHDRAWAL, user.id)[0].status == RequestStatus.PENDING
        assert service.get_profile(user.id).pkr_balance == Decimal("1000")
        assert transactions_of(service, user.id, TransactionType.WITHDRAWAL) == []

    def test_approval_can_be_retried_after_topup(self, service, make_user):
        """Insufficient balance at approval time is retryable."""
        user = make_user(pkr=2000)
        request = service.create_withdrawal(user.id, CreateWithdrawalRequest(
            amount=Decimal("1500"), method="sadapay", account_details="0300-0000000",
        ))
        service.adjust_balance(user.id, BalanceAdjustmentRequest(pkr_delta=Decimal("-1000")))
        with pytest.raises(InsufficientBalanceError):
            service.approve_withdrawal(request.id)

        service.adjust_balance(user.id, BalanceAdjustmentRequest(pkr_delta=Decimal("500")))
        response = service.approve_withdrawal(request.id)

        assert response.applied is True
        assert service.get_profile(user.id).pkr_balance == Decimal("0")

    def test_two_pending_withdrawals_cannot_overdraw(self, service, make_user):
        """Only as many withdrawals are approved as the balance covers."""
        user = make_user(pkr=1000)
        first = service.create_withdrawal(user.id, CreateWithdrawalRequest(
            amount=Decimal("800"), method="sadapay", account_details="a",
        ))
        second = service.create_withdrawal(user.id, CreateWithdrawalRequest(
            amount=Decimal("800"), method="sadapay", account_details="a",
        ))

        service.approve_withdrawal(first.id)
        with pytest.raises(InsufficientBalanceError):
            service.approve_withdrawal(second.id)

        assert service.get_profile(user.id).pkr_balance == Decimal("200")


class TestCoinPurchaseApproval:
    """Tests for coin purchases."""

    def test_coin_amount_uses_floor_of_rate(self, service, make_user):
        """Coins are pkr_amount / coin_rate rounded down."""
        user = make_user()

        purchase = service.create_coin_purchase(user.id, CreateCoinPurchaseRequest(
            pkr_amount=Decimal("255"), method="easypaisa", transaction_id="CP-1",
        ))

        assert purchase.coin_amount == 25

    def test_purchase_below_one_coin_rejected(self, service, make_user):
        """At least one coin must be bought."""
        user = make_user()

        with pytest.raises(InvalidInputError):
            service.create_coin_purchase(user.id, CreateCoinPurchaseRequest(
                pkr_amount=Decimal("5"), method="easypaisa", transaction_id="CP-1",
            ))

    def test_approve_credits_coins_once(self, service, make_user):
        """Approval credits coins exactly once and leaves PKR alone."""
        user = make_user()
        purchase = service.create_coin_purchase(user.id, CreateCoinPurchaseRequest(
            pkr_amount=Decimal("1000"), method="easypaisa", transaction_id="CP-1",
        ))

        service.approve_coin_purchase(purchase.id)
        service.approve_coin_purchase(purchase.id)

        profile = service.get_profile(user.id)
        assert profile.coin_balance == 100
        assert profile.pkr_balance == Decimal("0")
        entries = transactions_of(service, user.id, TransactionType.COIN_PURCHASE)
        assert len(entries) == 1
        assert entries[0].description == "Purchased 100 coins for ₨1,000"


class TestReferralCommission:
    """Tests for the one-time referral commission."""

    def test_first_deposit_pays_referrer(self, service, make_user):
        """The referrer earns referral_percentage of the first approved deposit."""
        referrer = make_user(name="Ali")
        referred = make_user(name="Sara", referral_code=referrer.referral_code)

        service.approve_deposit(deposit(service, referred.id, 1000).id)

        assert service.get_profile(referrer.id).pkr_balance == Decimal("500.00")
        assert service.get_profile(referred.id).pkr_balance == Decimal("1000")
        entries = transactions_of(service, referrer.id, TransactionType.REFERRAL_COMMISSION)
        assert len(entries) == 1
        assert entries[0].description == "Referral commission from Sara"

    def test_second_deposit_pays_nothing(self, service, make_user):
        """Commission is never paid on later deposits."""
        referrer = make_user()
        referred = make_user(referral_code=referrer.referral_code)

        service.approve_deposit(deposit(service, referred.id, 1000).id)
        service.approve_deposit(deposit(service, referred.id, 4000).id)

        assert service.get_profile(referrer.id).pkr_balance == Decimal("500.00")
        assert len(transactions_of(service, referrer.id, TransactionType.REFERRAL_COMMISSION)) == 1

    def test_rejected_first_deposit_keeps_commission_available(self, service, make_user):
        """Only approved deposits count as the first deposit."""
        referrer = make_user()
        referred = make_user(referral_code=referrer.referral_code)

        service.reject_request(RequestKind.DEPOSIT, deposit(service, referred.id, 1000).id)
        service.approve_deposit(deposit(service, referred.id, 2000).id)

        assert service.get_profile(referrer.id).pkr_balance == Decimal("1000.00")

    def test_pending_order_does_not_matter(self, service, make_user):
        """The first deposit to be approved earns the commission."""
        referrer = make_user()
        referred = make_user(referral_code=referrer.referral_code)
        early = deposit(service, referred.id, 1000)
        late = deposit(service, referred.id, 3000)

        service.approve_deposit(late.id)
        service.approve_deposit(early.id)

        assert service.get_profile(referrer.id).pkr_balance == Decimal("1500.00")

    def test_uses_configured_percentage(self, service, make_user):
        """The commission follows the referral percentage setting."""
        service.update_settings(SettingsUpdateRequest(referral_percentage=Decimal("10")))
        referrer = make_user()
        referred = make_user(referral_code=referrer.referral_code)

        service.approve_deposit(deposit(service, referred.id, 1234).id)

        assert service.get_profile(referrer.id).pkr_balance == Decimal("123.40")

    def test_missing_referrer_is_skipped(self, service, make_user):
        """A referral code that no longer resolves is silently ignored."""
        referrer = make_user()
        referred = make_user(referral_code=referrer.referral_code)
        service.delete_user(referrer.id)

        response = service.approve_deposit(deposit(service, referred.id, 1000).id)

        assert response.applied is True
        assert service.get_profile(referred.id).pkr_balance == Decimal("1000")
        assert service.admin_stats().total_referral_payouts == Decimal("0")

    def test_unreferred_user_pays_nothing(self, service, make_user):
        """Users without a referrer generate no commission."""
        user = make_user()

        service.approve_deposit(deposit(service, user.id, 1000).id)

        assert service.admin_stats().total_referral_payouts == Decimal("0")


class TestAdminRequestListing:
    """Tests for the admin review surface."""

    def test_lists_all_kinds_newest_first(self, service, make_user, clock):
        """Requests of every kind appear with the owner's name."""
        user = make_user(name="Hamza", pkr=5000)
        deposit(service, user.id, 1000)
        clock.advance(minutes=1)
        service.create_withdrawal(user.id, CreateWithdrawalRequest(
            amount=Decimal("600"), method="sadapay", account_details="0300-1111111",
        ))
        clock.advance(minutes=1)
        service.create_coin_purchase(user.id, CreateCoinPurchaseRequest(
            pkr_amount=Decimal("500"), method="easypaisa", transaction_id="CP-9",
        ))

        items = service.list_admin_requests()

        assert [i.kind for i in items] == [
            RequestKind.COIN_PURCHASE, RequestKind.WITHDRAWAL, RequestKind.DEPOSIT,
        ]
        assert all(i.user_name == "Hamza" for i in items)
        assert items[0].amount == Decimal("50")
        assert items[0].details == "₨500 for 50 coins | Transaction ID: CP-9"
        assert items[1].details == "0300-1111111"

    def test_filter_by_status(self, service, make_user):
        """Processed requests drop out of the pending view."""
        user = make_user()
        first = deposit(service, user.id, 1000)
        deposit(service, user.id, 2000)
        service.approve_deposit(first.id)

        pending = service.list_admin_requests(RequestStatus.PENDING)

        assert len(pending) == 1
        assert pending[0].amount == Decimal("2000")


class TestConcurrentAccess:
    """Tests for requests handled on several threads at once."""

    def test_simultaneous_approvals_credit_once(self, service, make_user, run_in_threads):
        """Racing approvals of one deposit apply it exactly once."""
        referrer = make_user()
        referred = make_user(referral_code=referrer.referral_code)
        created = deposit(service, referred.id, 1000)

        responses, errors = run_in_threads(lambda: service.approve_deposit(created.id), count=8)

        assert errors == []
        assert [r.applied for r in responses].count(True) == 1
        assert service.get_profile(referred.id).pkr_balance == Decimal("1000")
        assert service.get_profile(referrer.id).pkr_balance == Decimal("500")
        assert len(transactions_of(service, referred.id, TransactionType.DEPOSIT)) == 1

    def test_simultaneous_withdrawal_approvals_never_overdraw(self, service, make_user, run_in_threads):
        """Racing approvals of two withdrawals only debit what the balance covers."""
        user = make_user(pkr=1000)
        ids = [
            service.create_withdrawal(user.id, CreateWithdrawalRequest(
                amount=Decimal("800"), method="sadapay", account_details="a",
            )).id
            for _ in range(2)
        ]
        order = iter(ids * 4)

        responses, errors = run_in_threads(lambda: service.approve_withdrawal(next(order)), count=8)

        assert [r.applied for r in responses].count(True) == 1
        assert all(isinstance(e, InsufficientBalanceError) for e in errors)
        assert service.get_profile(user.id).pkr_balance == Decimal("200")

    def test_listings_while_requests_arrive(self, service, make_user):
        """Reading the admin and user views never fails while other threads write."""
        user = make_user(pkr=100000)
        stop = threading.Event()
        errors = []

        def submit():
            for _ in range(1000):
                if stop.is_set():
                    return
                try:
                    deposit(service, user.id, 100)
                    service.adjust_balance(user.id, BalanceAdjustmentRequest(coin_delta=1))
                except Exception as e:
                    errors.append(e)
                    return

        writer = threading.Thread(target=submit)
        writer.start()
        try:
            for _ in range(300):
                service.list_admin_requests(RequestStatus.PENDING)
                service.list_requests(RequestKind.DEPOSIT, user.id)
                service.get_transaction_history(user.id)
                service.admin_stats()
                service.list_users()
                service.storage.find_user_by_email(user.email)
        finally:
            stop.set()
            writer.join(timeout=30)

        assert errors == []
        history = service.get_transaction_history(user.id, limit=0)
        assert history.total_count == history.coin_balance + 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
