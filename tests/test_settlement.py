"""Tests for marking participants paid/unpaid and settling pair balances."""

import logging
import threading
from unittest.mock import ANY, MagicMock, patch

import pytest

from split_ledger.auth import AllowAll
from split_ledger.db import Database
from split_ledger.exceptions import (
    AlreadyPaidError,
    LinkedTransferFailedError,
    NotAuthorizedError,
    NotFoundError,
    NothingToSettleError,
    NotPaidError,
    StoreUnavailableError,
)
from split_ledger.models import LinkedTransfer, ParticipantInput
from split_ledger.money import Money
from split_ledger.service import LedgerService

ACCOUNTS = LinkedTransfer(accounts={"alice": "acc-alice", "bob": "acc-bob"})


@pytest.fixture
def dinner(service, trip):
    """alice pays 90.00 for dinner split equally among all three members."""
    return service.create_expense(
        trip.id, "alice", Money.parse("90"), "Dinner", "alice"
    )


@pytest.fixture
def transfers():
    """Mock account transfer service."""
    client = MagicMock()
    client.transfer.return_value = "tx-1"
    return client


@pytest.fixture
def linked_service(settings, db, transfers):
    """LedgerService with a mock transfer service and notifier."""
    return LedgerService(settings, db, transfers=transfers, notifier=MagicMock())


def row(db, expense_id, user_id):
    return db.load_participant(expense_id, user_id)


class TestMarkParticipantPaid:
    """Test closing a single participant row."""

    def test_records_payment(self, service, db, trip, dinner):
        payment = service.mark_participant_paid(dinner.id, "bob", "bob")

        assert payment.from_user_id == "bob"
        assert payment.to_user_id == "alice"
        assert payment.amount == Money.parse("30")
        assert payment.expense_ids == [dinner.id]

        paid = row(db, dinner.id, "bob")
        assert paid.is_paid
        assert paid.paid_at is not None
        assert paid.linked_payment_id == payment.id
        assert db.load_group_payments(trip.id)[0].id == payment.id

    def test_balance_drops_by_paid_amount(self, service, trip, dinner):
        service.mark_participant_paid(dinner.id, "bob", "alice")

        ab = service.get_pair_balance(trip.id, "alice", "bob", "alice")
        assert ab.amount.is_zero()
        balance = service.get_pair_balance(trip.id, "alice", "carol", "alice")
        assert balance.amount == Money.parse("30")

    def test_second_call_is_rejected(self, service, db, trip, dinner):
        service.mark_participant_paid(dinner.id, "bob", "bob")

        with pytest.raises(AlreadyPaidError):
            service.mark_participant_paid(dinner.id, "bob", "bob")
        assert len(db.load_group_payments(trip.id)) == 1

    def test_payer_row_is_not_a_debt(self, service, dinner):
        with pytest.raises(AlreadyPaidError, match="payer"):
            service.mark_participant_paid(dinner.id, "alice", "alice")

    def test_unknown_rows(self, service, dinner):
        with pytest.raises(NotFoundError, match="Expense"):
            service.mark_participant_paid("missing", "bob", "bob")
        with pytest.raises(NotFoundError, match="Participant"):
            service.mark_participant_paid(dinner.id, "dave", "alice")

    def test_only_payer_or_debtor(self, service, db, dinner):
        with pytest.raises(NotAuthorizedError):
            service.mark_participant_paid(dinner.id, "bob", "carol")
        with pytest.raises(NotAuthorizedError):
            service.mark_participant_paid(dinner.id, "bob", "mallory")
        assert not row(db, dinner.id, "bob").is_paid

    def test_not_found_is_checked_before_authorization(self, service):
        with pytest.raises(NotFoundError):
            service.mark_participant_paid("missing", "bob", "mallory")

    def test_notifier_is_told(self, linked_service, dinner):
        payment = linked_service.mark_participant_paid(dinner.id, "bob", "bob")

        event = linked_service.engine.notifier.notify.call_args.args[0]
        assert event.event_type == "payment_recorded"
        assert event.payment_id == payment.id
        assert event.expense_ids == [dinner.id]

    def test_notifier_failure_does_not_fail_payment(self, linked_service, db, dinner):
        linked_service.engine.notifier.notify.side_effect = RuntimeError("smtp down")

        linked_service.mark_participant_paid(dinner.id, "bob", "bob")

        assert row(db, dinner.id, "bob").is_paid


class TestMarkParticipantUnpaid:
    """Test reverting a paid participant row."""

    def test_reverts_row_and_keeps_payment(self, service, db, trip, dinner):
        payment = service.mark_participant_paid(dinner.id, "bob", "bob")

        reverted = service.mark_participant_unpaid(dinner.id, "bob", "alice")

        assert not reverted.is_paid
        assert reverted.linked_payment_id is None
        assert not row(db, dinner.id, "bob").is_paid

        kept = db.load_payment(payment.id)
        assert kept is not None
        assert kept.amount == Money.parse("30")
        assert kept.expense_ids == []
        assert kept.is_fully_reversed
        reversals = [(r.user_id, r.reversed_by) for r in kept.reversals]
        assert reversals == [("bob", "alice")]

        balance = service.get_pair_balance(trip.id, "alice", "bob", "alice")
        assert balance.amount == Money.parse("30")

    def test_only_payer_may_revert(self, service, dinner):
        service.mark_participant_paid(dinner.id, "bob", "bob")

        with pytest.raises(NotAuthorizedError):
            service.mark_participant_unpaid(dinner.id, "bob", "bob")

    def test_row_must_be_paid(self, service, dinner):
        with pytest.raises(NotPaidError):
            service.mark_participant_unpaid(dinner.id, "bob", "alice")

    def test_paid_again_after_revert(self, service, db, trip, dinner):
        service.mark_participant_paid(dinner.id, "bob", "bob")
        service.mark_participant_unpaid(dinner.id, "bob", "alice")

        service.mark_participant_paid(dinner.id, "bob", "bob")

        assert row(db, dinner.id, "bob").is_paid
        assert len(db.load_group_payments(trip.id)) == 2

    def test_revert_one_expense_of_a_settlement(self, service, db, trip, dinner):
        """Only the reverted expense leaves the payment; the rest stay closed."""
        lunch = service.create_expense(
            trip.id, "bob", Money.parse("30"), "Lunch", "bob"
        )
        result = service.settle_all(trip.id, "alice", "bob", "alice")

        service.mark_participant_unpaid(dinner.id, "bob", "alice")

        kept = db.load_payment(result.payment.id)
        assert kept.expense_ids == [lunch.id]
        assert kept.amount == Money.parse("20")
        assert not kept.is_fully_reversed
        assert [(r.expense_id, r.user_id) for r in kept.reversals] == [
            (dinner.id, "bob")
        ]
        assert row(db, lunch.id, "alice").is_paid

        balance = service.get_pair_balance(trip.id, "alice", "bob", "alice")
        assert balance.amount == Money.parse("30")
        assert balance.debtor_id == "bob"


class TestSettleAll:
    """Test settling everything two members owe each other."""

    def test_ninety_dollar_scenario(self, service, db, trip, dinner):
        """bob settles with alice; carol still owes alice 30.00."""
        result = service.settle_all(trip.id, "bob", "alice", "bob")

        assert result.payment.from_user_id == "bob"
        assert result.payment.to_user_id == "alice"
        assert result.payment.amount == Money.parse("30")
        assert result.payment.expense_ids == [dinner.id]
        assert result.settled_participants == 1
        assert result.transfer_id is None

        ab = service.get_pair_balance(trip.id, "alice", "bob", "alice")
        ac = service.get_pair_balance(trip.id, "alice", "carol", "alice")
        assert ab.amount.is_zero()
        assert ab.total_paid == Money.parse("30")
        assert ac.amount == Money.parse("30")

    def test_nets_debts_in_both_directions(self, service, db, trip, dinner):
        lunch = service.create_expense(
            trip.id, "bob", Money.parse("30"), "Lunch", "bob"
        )

        result = service.settle_all(trip.id, "alice", "bob", "alice")

        assert result.payment.from_user_id == "bob"
        assert result.payment.amount == Money.parse("20")
        assert result.settled_participants == 2
        assert set(result.payment.expense_ids) == {dinner.id, lunch.id}
        assert row(db, lunch.id, "alice").is_paid
        assert row(db, dinner.id, "bob").is_paid
        assert not row(db, lunch.id, "carol").is_paid

    def test_idempotent(self, service, db, trip, dinner):
        service.settle_all(trip.id, "alice", "bob", "bob")

        with pytest.raises(NothingToSettleError):
            service.settle_all(trip.id, "alice", "bob", "bob")
        assert len(db.load_group_payments(trip.id)) == 1

    def test_concurrent_settlement_settles_once(self, service, db, trip, dinner):
        barrier = threading.Barrier(2)
        outcomes: list[object] = []

        def settle():
            barrier.wait()
            try:
                outcomes.append(service.settle_all(trip.id, "alice", "bob", "bob"))
            except NothingToSettleError as e:
                outcomes.append(e)

        threads = [threading.Thread(target=settle) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(outcomes) == 2
        assert sum(isinstance(o, NothingToSettleError) for o in outcomes) == 1
        assert len(db.load_group_payments(trip.id)) == 1

    def test_members_and_authorization(self, service, trip, dinner):
        with pytest.raises(NotFoundError, match="Member"):
            service.settle_all(trip.id, "alice", "mallory", "alice")
        with pytest.raises(NotAuthorizedError):
            service.settle_all(trip.id, "alice", "bob", "carol")
        with pytest.raises(NotFoundError, match="Group"):
            service.settle_all("missing", "alice", "bob", "alice")
        with pytest.raises(ValueError):
            service.settle_all(trip.id, "bob", "bob", "bob")

    def test_nothing_to_settle_between_strangers(self, service, trip, dinner):
        with pytest.raises(NothingToSettleError):
            service.settle_all(trip.id, "bob", "carol", "bob")


class TestLinkedTransfers:
    """Test transfers that move real money alongside the ledger change."""

    def test_transfer_is_linked(self, linked_service, db, transfers, dinner):
        payment = linked_service.mark_participant_paid(
            dinner.id, "bob", "bob", transfer=ACCOUNTS
        )

        transfers.transfer.assert_called_once_with(
            "acc-bob", "acc-alice", Money.parse("30"), payment.id
        )
        assert payment.linked_transfer_id == "tx-1"
        assert row(db, dinner.id, "bob").linked_transfer_id == "tx-1"

    def test_failed_transfer_writes_nothing(
        self, linked_service, db, trip, transfers, dinner
    ):
        transfers.transfer.side_effect = RuntimeError("insufficient funds")

        with pytest.raises(LinkedTransferFailedError, match="insufficient funds"):
            linked_service.settle_all(
                trip.id, "alice", "bob", "bob", transfer=ACCOUNTS
            )

        assert not row(db, dinner.id, "bob").is_paid
        assert db.load_group_payments(trip.id) == []
        transfers.reverse.assert_not_called()

    def test_transfer_without_service(self, service, db, dinner):
        with pytest.raises(LinkedTransferFailedError):
            service.mark_participant_paid(dinner.id, "bob", "bob", transfer=ACCOUNTS)
        assert not row(db, dinner.id, "bob").is_paid

    def test_transfer_reversed_when_ledger_write_fails(
        self, linked_service, db, trip, transfers, dinner
    ):
        with patch.object(
            db, "save_participant", side_effect=StoreUnavailableError("conflict")
        ):
            with pytest.raises(StoreUnavailableError):
                linked_service.mark_participant_paid(
                    dinner.id, "bob", "bob", transfer=ACCOUNTS
                )

        transfers.reverse.assert_called_once_with("tx-1", ANY)
        assert db.load_group_payments(trip.id) == []
        assert not row(db, dinner.id, "bob").is_paid

    def test_failed_reversal_is_logged(
        self, linked_service, db, transfers, dinner, caplog
    ):
        transfers.reverse.side_effect = RuntimeError("accounts API down")

        with patch.object(
            db, "append_payment", side_effect=StoreUnavailableError("disk full")
        ):
            with pytest.raises(StoreUnavailableError, match="disk full"):
                with caplog.at_level(logging.CRITICAL):
                    linked_service.settle_all(
                        dinner.group_id, "alice", "bob", "bob", transfer=ACCOUNTS
                    )

        assert "Manual reconciliation required" in caplog.text

    def test_settlement_transfer_runs_from_debtor(
        self, linked_service, trip, transfers
    ):
        """bob paid the hotel, so alice's account pays bob's whoever settles."""
        linked_service.create_expense(
            trip.id,
            "bob",
            Money.parse("50"),
            "Hotel",
            "bob",
            participants=[
                ParticipantInput(user_id="alice"),
                ParticipantInput(user_id="bob"),
            ],
        )

        result = linked_service.settle_all(
            trip.id, "bob", "alice", "bob", transfer=ACCOUNTS
        )

        assert result.payment.from_user_id == "alice"
        assert result.payment.to_user_id == "bob"
        transfers.transfer.assert_called_once_with(
            "acc-alice", "acc-bob", Money.parse("25"), result.payment.id
        )

    def test_missing_account_moves_nothing(
        self, linked_service, db, trip, transfers, dinner
    ):
        with pytest.raises(LinkedTransferFailedError, match="alice"):
            linked_service.settle_all(
                trip.id,
                "alice",
                "bob",
                "bob",
                transfer=LinkedTransfer(accounts={"bob": "acc-bob"}),
            )

        transfers.transfer.assert_not_called()
        assert db.load_group_payments(trip.id) == []
        assert not row(db, dinner.id, "bob").is_paid


class TestConcurrentAccess:
    """Test that a slow transfer only holds up its own pair of members."""

    @pytest.fixture
    def slow_transfer(self, transfers):
        """Transfer that blocks until released."""
        started = threading.Event()
        release = threading.Event()

        def transfer(*args):
            started.set()
            release.wait(timeout=5)
            return "tx-1"

        transfers.transfer.side_effect = transfer
        yield started, release
        release.set()

    def settle_in_background(self, service, trip):
        outcomes: list[object] = []

        def settle():
            try:
                result = service.settle_all(
                    trip.id, "alice", "bob", "bob", transfer=ACCOUNTS
                )
            except Exception as e:
                outcomes.append(e)
            else:
                outcomes.append(result)

        thread = threading.Thread(target=settle)
        thread.start()
        return thread, outcomes

    def test_reads_and_other_groups_proceed(
        self, settings, trip, dinner, transfers, slow_transfer
    ):
        store = Database(settings.database_path, timeout=0.3)
        slow = LedgerService(settings, store, transfers=transfers)
        flat = slow.create_group("Flat", "dave", ["erin"])

        started, release = slow_transfer
        thread, outcomes = self.settle_in_background(slow, trip)
        try:
            assert started.wait(timeout=5)

            assert slow.get_group_balances(flat.id, "dave") == []
            balance = slow.get_pair_balance(trip.id, "alice", "bob", "alice")
            assert balance.amount == Money.parse("30")
            rent = slow.create_expense(
                flat.id, "dave", Money.parse("20"), "Rent", "dave"
            )
            assert slow.get_expense(rent.id, "erin").total == Money.parse("20")
        finally:
            release.set()
            thread.join(timeout=5)
            store.close()

        (result,) = outcomes
        assert result.transfer_id == "tx-1"
        assert result.payment.amount == Money.parse("30")

    def test_balance_change_during_transfer_reverses_it(
        self, settings, db, trip, dinner, transfers, slow_transfer
    ):
        store = Database(settings.database_path, timeout=0.3)
        slow = LedgerService(settings, store, transfers=transfers)

        started, release = slow_transfer
        thread, outcomes = self.settle_in_background(slow, trip)
        try:
            assert started.wait(timeout=5)
            slow.create_expense(trip.id, "bob", Money.parse("10"), "Coffee", "bob")
        finally:
            release.set()
            thread.join(timeout=5)
            store.close()

        (error,) = outcomes
        assert isinstance(error, StoreUnavailableError)
        transfers.reverse.assert_called_once_with("tx-1", ANY)
        assert db.load_group_payments(trip.id) == []
        assert not row(db, dinner.id, "bob").is_paid


class TestStoreUnavailable:
    """Test bounded waits on a busy store."""

    def test_timeout_surfaces_as_store_unavailable(self, settings, trip, dinner):
        busy = Database(settings.database_path, timeout=0.2)
        slow = LedgerService(settings, busy, authorizer=AllowAll())
        holding = threading.Event()
        release = threading.Event()

        def hold():
            with busy.transaction("holder"):
                holding.set()
                release.wait(timeout=5)

        holder = threading.Thread(target=hold)
        holder.start()
        try:
            assert holding.wait(timeout=5)
            with pytest.raises(StoreUnavailableError):
                slow.mark_participant_paid(dinner.id, "bob", "bob")
        finally:
            release.set()
            holder.join(timeout=5)
            busy.close()

    def test_compare_and_swap_conflict(self, db, dinner):
        participant = db.load_participant(dinner.id, "bob")

        with pytest.raises(StoreUnavailableError, match="Concurrent update"):
            db.save_participant(
                participant.model_copy(update={"is_paid": False}),
                expected_is_paid=True,
            )
