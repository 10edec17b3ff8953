"""
Tests for credit service - critical business logic.
"""
import threading

import pytest


class TestCreditService:
    """Tests for CreditService class."""

    def test_check_credits_with_sufficient_balance(self, mock_user):
        """User with enough credits should pass check."""
        from mediaflow.credits.service import CreditService

        service = CreditService()
        assert service.check_credits(mock_user, required=10) is True

    def test_check_credits_with_insufficient_balance(self, mock_user):
        """User with insufficient credits should fail check."""
        from mediaflow.credits.service import CreditService

        mock_user.credits = 5
        service = CreditService()
        assert service.check_credits(mock_user, required=10) is False

    def test_check_credits_unlimited_user(self, mock_unlimited_user):
        """Unlimited user should always pass credit check."""
        from mediaflow.credits.service import CreditService

        service = CreditService()
        assert service.check_credits(mock_unlimited_user, required=1000) is True

    def test_ensure_balance_raises_on_insufficient(self, mock_user):
        from mediaflow.credits.exceptions import InsufficientBalance
        from mediaflow.credits.service import CreditService

        mock_user.credits = 3
        service = CreditService()

        with pytest.raises(InsufficientBalance) as exc_info:
            service.ensure_balance(mock_user, required=17)

        assert exc_info.value.required == 17
        assert exc_info.value.available == 3
        assert exc_info.value.to_http_exception().status_code == 402

    def test_debit_updates_balance_and_ledger(self, mock_user):
        from mediaflow.credits.service import CreditService
        from mediaflow.persistence import get_ledger_repository

        service = CreditService()
        result = service.debit(mock_user.user_id, 17, related_job_id="job-1")

        assert result.success is True
        assert result.new_balance == 83
        entries = get_ledger_repository().entries_for_job("job-1")
        assert [e.delta for e in entries] == [-17]
        assert service.has_debit_for_job("job-1") is True
        assert service.has_debit_for_job("job-2") is False

    def test_debit_refused_when_balance_too_low(self, mock_user):
        from mediaflow.credits.service import CreditService

        service = CreditService()
        result = service.debit(mock_user.user_id, 101, related_job_id="job-1")

        assert result.success is False
        assert result.new_balance == 100
        assert service.has_debit_for_job("job-1") is False

    def test_unlimited_user_is_never_debited(self, mock_unlimited_user):
        from mediaflow.credits.service import UNLIMITED_BALANCE, CreditService

        service = CreditService()
        result = service.debit(mock_unlimited_user.user_id, 500)

        assert result.success is True
        assert result.new_balance == UNLIMITED_BALANCE

    def test_add_credits(self, mock_user):
        from mediaflow.credits.service import CreditService

        service = CreditService()
        user = service.add_credits(mock_user.user_id, 50)

        assert user.credits == 150
        assert service.get_balance(mock_user.user_id) == 150

    def test_add_credits_rejects_non_positive(self, mock_user):
        from mediaflow.credits.service import CreditService

        with pytest.raises(ValueError):
            CreditService().add_credits(mock_user.user_id, 0)

    def test_balance_of_unknown_user_is_zero(self):
        from mediaflow.credits.service import CreditService

        assert CreditService().get_balance("nobody") == 0


class TestCreditServiceAtomicity:
    """Tests for atomic credit operations."""

    def test_concurrent_debits_never_overdraw(self, mock_user):
        """Ten threads racing for 15 credits each: only six can win."""
        from mediaflow.credits.service import CreditService

        service = CreditService()
        results = []

        def worker(n):
            results.append(service.debit(mock_user.user_id, 15, related_job_id=f"job-{n}"))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r.success) == 6
        assert service.get_balance(mock_user.user_id) == 10
