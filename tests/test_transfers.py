"""
Tests for the transfer engine: accounts, balances, transfers and auditing
"""

import json
import logging
import threading
import time
from decimal import Decimal

import pytest

from internal_transfers.errors import (
    InvalidInputError, AccountNotFoundError, DuplicateAccountError,
    InsufficientFundsError, InvalidStateError, OperationTimeoutError, StorageFailureError
)
from internal_transfers.logging_config import setup_logging
from internal_transfers.storage import InMemoryLedgerStorage, TransferStatus, decimal_text
from internal_transfers.transfers import (
    TransferEngine, to_decimal, validate_account_id, ACCOUNT_NOT_FOUND, INSUFFICIENT_FUNDS
)


class TestDecimalParsing:
    """Monetary input conversion"""

    def test_accepts_exact_values(self):
        """Test strings, ints and Decimals"""
        assert to_decimal("100.50") == Decimal("100.50")
        assert to_decimal(" 7 ") == Decimal("7")
        assert to_decimal(42) == Decimal("42")
        assert to_decimal(Decimal("0.0000000001")) == Decimal("0.0000000001")
        assert to_decimal("99999999999999999999.9999999999") == Decimal("99999999999999999999.9999999999")

    def test_rejects_floats(self):
        """Test that binary floats are refused"""
        with pytest.raises(InvalidInputError):
            to_decimal(100.5)
        with pytest.raises(InvalidInputError):
            to_decimal(True)

    def test_rejects_malformed_values(self):
        """Test garbage, non-finite and out-of-range values"""
        for value in ("abc", "", "NaN", "Infinity", "1e20", "0.00000000001", None, [1]):
            with pytest.raises(InvalidInputError):
                to_decimal(value)

    def test_trailing_zeros_beyond_scale_are_exact(self):
        """Test that extra zero digits do not count as lost precision"""
        assert to_decimal("1.000000000000") == Decimal("1")

    def test_values_carry_ledger_scale(self):
        """Test that every value comes back with exactly ten fractional digits"""
        assert str(to_decimal("100.5")) == "100.5000000000"
        assert str(to_decimal(7)) == "7.0000000000"
        assert str(to_decimal("0.5000000000000000000000000")) == "0.5000000000"
        assert to_decimal("0E-100000").as_tuple().exponent == -10

    def test_negative_zero_becomes_zero(self):
        """Test that -0 loses its sign"""
        for value in ("-0", "-0.000", Decimal("-0E+5")):
            result = to_decimal(value)
            assert not result.is_signed()
            assert str(result) == "0E-10"

    def test_account_id_validation(self):
        """Test id type and range checks"""
        assert validate_account_id(-5) == -5
        assert validate_account_id(0, allow_zero=True) == 0
        for value in (0, True, "1", 1.0, 2 ** 63, -2 ** 63 - 1):
            with pytest.raises(InvalidInputError):
                validate_account_id(value)


class TestAccountOperations:
    """create_account and get_balance"""

    def test_create_and_read(self, engine):
        """Test creating an account and reading its balance"""
        account = engine.create_account(100, "1000.00")

        assert account.account_id == 100
        assert account.balance == Decimal("1000.00")
        assert engine.get_balance(100) == Decimal("1000.00")

    def test_zero_opening_balance(self, engine):
        """Test that an account may open empty"""
        engine.create_account(1, 0)
        assert engine.get_balance(1) == Decimal("0")

    def test_duplicate_account(self, engine):
        """Test that an id can only be used once"""
        engine.create_account(100, "1")

        with pytest.raises(DuplicateAccountError):
            engine.create_account(100, "2")
        assert engine.get_balance(100) == Decimal("1")

    def test_invalid_account_arguments(self, engine):
        """Test rejected ids and opening balances"""
        with pytest.raises(InvalidInputError):
            engine.create_account(0, "1")
        with pytest.raises(InvalidInputError):
            engine.create_account(1, "-0.01")
        with pytest.raises(InvalidInputError):
            engine.create_account(1, 10.5)
        with pytest.raises(InvalidInputError):
            engine.create_account(2 ** 63, "1")

        with pytest.raises(AccountNotFoundError):
            engine.get_balance(1)

    def test_get_balance_of_missing_account(self, engine):
        """Test that unknown ids, including zero, are not found"""
        with pytest.raises(AccountNotFoundError):
            engine.get_balance(999)
        with pytest.raises(AccountNotFoundError):
            engine.get_balance(0)

    def test_balances_are_stored_at_ledger_scale(self, engine):
        """Test that stored balances have the same scale on every backend"""
        engine.create_account(1, "0E-100000")
        engine.create_account(2, "1.00000000000000000000")
        engine.create_account(3, "-0")

        assert decimal_text(engine.get_balance(1)) == "0.0000000000"
        assert decimal_text(engine.get_balance(2)) == "1.0000000000"
        assert not engine.get_balance(3).is_signed()

        record = engine.transfer(2, 1, "0.5000000000000000000000000")
        assert decimal_text(record.amount) == "0.5000000000"
        assert decimal_text(engine.get_balance(1)) == "0.5000000000"
        assert decimal_text(engine.get_balance(2)) == "0.5000000000"
        assert decimal_text(engine.list_transactions(1)[0].amount) == "0.5000000000"

    def test_non_positive_timeout_rejected(self, engine):
        """Test that a timeout must be positive"""
        with pytest.raises(InvalidInputError):
            engine.create_account(1, "1", timeout=0)


class TestTransferScenarios:
    """End-to-end transfer behaviour"""

    def setup_accounts(self, engine):
        engine.create_account(100, "1000.00")
        engine.create_account(200, "500.00")

    def test_successful_transfer(self, engine):
        """Test moving 100.50 from account 100 to account 200"""
        self.setup_accounts(engine)

        record = engine.transfer(100, 200, "100.50")

        assert engine.get_balance(100) == Decimal("899.50")
        assert engine.get_balance(200) == Decimal("600.50")
        assert record.id is not None
        assert record.status == TransferStatus.SUCCEEDED
        assert record.amount == Decimal("100.50")
        assert record.error_message is None

    def test_insufficient_funds_is_audited(self, engine):
        """Test that a rejected transfer leaves balances alone and records the failure"""
        self.setup_accounts(engine)
        engine.transfer(100, 200, "100.50")

        with pytest.raises(InsufficientFundsError) as exc_info:
            engine.transfer(100, 200, "1000.00")

        assert exc_info.value.account_id == 100
        assert engine.get_balance(100) == Decimal("899.50")
        assert engine.get_balance(200) == Decimal("600.50")

        records = engine.list_transactions(100)
        assert len(records) == 2
        assert records[0].status == TransferStatus.FAILED
        assert records[0].error_message == INSUFFICIENT_FUNDS
        assert records[0].amount == Decimal("1000.00")
        assert records[1].status == TransferStatus.SUCCEEDED

    def test_missing_source_is_audited(self, engine):
        """Test a transfer out of an account that does not exist"""
        self.setup_accounts(engine)

        with pytest.raises(AccountNotFoundError):
            engine.transfer(999, 200, "10")

        assert engine.get_balance(200) == Decimal("500.00")
        records = engine.list_transactions(200)
        assert len(records) == 1
        assert records[0].source_account_id == 999
        assert records[0].destination_account_id == 200
        assert records[0].status == TransferStatus.FAILED
        assert records[0].error_message == ACCOUNT_NOT_FOUND

    def test_missing_destination_is_audited(self, engine):
        """Test a transfer into an account that does not exist"""
        self.setup_accounts(engine)

        with pytest.raises(AccountNotFoundError):
            engine.transfer(100, 999, "10")

        assert engine.get_balance(100) == Decimal("1000.00")
        assert engine.list_transactions(100)[0].error_message == ACCOUNT_NOT_FOUND

    def test_transfer_is_not_idempotent(self, engine):
        """Test that repeating a transfer moves the money twice"""
        self.setup_accounts(engine)

        first = engine.transfer(100, 200, "10")
        second = engine.transfer(100, 200, "10")

        assert first.id != second.id
        assert engine.get_balance(100) == Decimal("980.00")
        assert engine.get_balance(200) == Decimal("520.00")
        assert len(engine.list_transactions(100)) == 2

    def test_exact_decimal_arithmetic(self, engine):
        """Test that repeated tenths drain an account exactly to zero"""
        engine.create_account(1, "0.3")
        engine.create_account(2, "0")

        for _ in range(3):
            engine.transfer(1, 2, "0.1")

        assert engine.get_balance(1) == Decimal("0")
        assert engine.get_balance(2) == Decimal("0.3")
        with pytest.raises(InsufficientFundsError):
            engine.transfer(1, 2, "0.0000000001")

    def test_transfer_entire_balance(self, engine):
        """Test that a balance may reach exactly zero"""
        self.setup_accounts(engine)

        engine.transfer(200, 100, "500.00")

        assert engine.get_balance(200) == Decimal("0")
        assert engine.get_balance(100) == Decimal("1500.00")

    def test_self_transfer_is_noop(self, engine):
        """Test that a transfer to the same account touches nothing"""
        self.setup_accounts(engine)

        assert engine.transfer(100, 100, "50") is None
        assert engine.transfer(12345, 12345, "50") is None

        assert engine.get_balance(100) == Decimal("1000.00")
        assert engine.list_transactions(100) == []
        assert engine.list_transactions(12345) == []

    def test_invalid_transfers_are_not_audited(self, engine):
        """Test that malformed requests fail before touching storage"""
        self.setup_accounts(engine)

        for source, destination, amount in [
            (100, 200, "0"),
            (100, 200, "-1"),
            (100, 200, 1.5),
            (100, 200, "0.00000000001"),
            (0, 200, "1"),
            (100, 0, "1"),
            (100, 200, "ten"),
        ]:
            with pytest.raises(InvalidInputError):
                engine.transfer(source, destination, amount)

        with pytest.raises(InvalidInputError):
            engine.transfer(100, 200, "1", timeout=-1)

        assert engine.list_transactions(100) == []
        assert engine.list_transactions(200) == []
        assert engine.get_balance(100) == Decimal("1000.00")

    def test_money_is_conserved(self, engine):
        """Test that the total stays fixed across successes and failures"""
        engine.create_account(1, "100")
        engine.create_account(2, "50")
        engine.create_account(3, "0.25")
        attempts = [
            (1, 2, "30"), (2, 3, "79.75"), (3, 1, "500"), (3, 1, "80"),
            (1, 4, "1"), (2, 1, "0.01"), (1, 3, "70.01"), (3, 2, "70.01"),
        ]

        audited = 0
        for source, destination, amount in attempts:
            try:
                engine.transfer(source, destination, amount)
            except (InsufficientFundsError, AccountNotFoundError):
                pass
            audited += 1

        total = sum(engine.get_balance(account_id) for account_id in (1, 2, 3))
        assert total == Decimal("150.25")
        assert all(engine.get_balance(account_id) >= 0 for account_id in (1, 2, 3))

        ids = set()
        for account_id in (1, 2, 3, 4):
            ids.update(record.id for record in engine.list_transactions(account_id, limit=None))
        assert len(ids) == audited

    def test_list_transactions_limit(self, engine):
        """Test the audit listing limit"""
        self.setup_accounts(engine)
        for amount in ("1", "2", "3"):
            engine.transfer(100, 200, amount)

        records = engine.list_transactions(200, limit=2)
        assert [r.amount for r in records] == [Decimal("3"), Decimal("2")]

        with pytest.raises(InvalidInputError):
            engine.list_transactions(200, limit=0)


class TestTransferFailures:
    """Timeouts and storage faults roll back without an audit record"""

    def test_lock_wait_timeout(self, storage):
        """Test that a transfer blocked on a locked row times out cleanly"""
        engine = TransferEngine(storage)
        engine.create_account(1, "100")
        engine.create_account(2, "100")
        locked = threading.Event()
        release = threading.Event()

        def hold_lock():
            with storage.atomic():
                storage.read_balance_for_update(1)
                locked.set()
                release.wait(10)

        holder = threading.Thread(target=hold_lock)
        holder.start()
        try:
            assert locked.wait(5)
            with pytest.raises(OperationTimeoutError):
                engine.transfer(1, 2, "10", timeout=0.2)
        finally:
            release.set()
            holder.join(10)

        assert engine.get_balance(1) == Decimal("100")
        assert engine.get_balance(2) == Decimal("100")
        assert engine.list_transactions(1) == []
        assert not storage.in_transaction()

        # The engine recovers once the lock is released
        engine.transfer(1, 2, "10", timeout=5)
        assert engine.get_balance(2) == Decimal("110")

    def test_deadline_passed_before_commit(self):
        """Test that a transfer running past its deadline is rolled back"""

        class SlowStorage(InMemoryLedgerStorage):
            def write_balance(self, account_id, new_balance):
                time.sleep(0.2)
                super().write_balance(account_id, new_balance)

        storage = SlowStorage()
        engine = TransferEngine(storage)
        engine.create_account(1, "100")
        engine.create_account(2, "0")

        with pytest.raises(OperationTimeoutError):
            engine.transfer(1, 2, "10", timeout=0.1)

        assert engine.get_balance(1) == Decimal("100")
        assert engine.get_balance(2) == Decimal("0")
        assert engine.list_transactions(1) == []
        assert not storage.in_transaction()

    def test_storage_fault_is_wrapped(self):
        """Test that unexpected store errors surface as StorageFailureError"""

        class FlakyStorage(InMemoryLedgerStorage):
            def append_transaction_record(self, record):
                raise ConnectionError("connection reset by peer")

        storage = FlakyStorage()
        engine = TransferEngine(storage)
        engine.create_account(1, "100")
        engine.create_account(2, "0")

        with pytest.raises(StorageFailureError) as exc_info:
            engine.transfer(1, 2, "10")

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert engine.get_balance(1) == Decimal("100")
        assert engine.get_balance(2) == Decimal("0")
        assert not storage.in_transaction()

    def test_fault_while_auditing_a_rejection(self):
        """Test that a failed audit write reports the storage fault, not the rejection"""

        class FlakyStorage(InMemoryLedgerStorage):
            def append_transaction_record(self, record):
                raise OSError("disk full")

        storage = FlakyStorage()
        engine = TransferEngine(storage)
        engine.create_account(1, "1")
        engine.create_account(2, "0")

        with pytest.raises(StorageFailureError):
            engine.transfer(1, 2, "10")
        assert not storage.in_transaction()

    def test_store_constraint_violation_is_wrapped(self):
        """Test that a store-level InvalidStateError surfaces as StorageFailureError"""

        class RejectingStorage(InMemoryLedgerStorage):
            def write_balance(self, account_id, new_balance):
                raise InvalidStateError("CHECK constraint failed: balance >= 0")

        storage = RejectingStorage()
        engine = TransferEngine(storage)
        engine.create_account(1, "100")
        engine.create_account(2, "0")

        with pytest.raises(StorageFailureError) as exc_info:
            engine.transfer(1, 2, "10")

        assert isinstance(exc_info.value.__cause__, InvalidStateError)
        assert engine.get_balance(1) == Decimal("100")
        assert engine.list_transactions(1) == []
        assert not storage.in_transaction()

    def test_read_fault_is_wrapped(self):
        """Test that get_balance wraps unexpected errors"""

        class BrokenStorage(InMemoryLedgerStorage):
            def read_balance(self, account_id, timeout=None):
                raise RuntimeError("boom")

        engine = TransferEngine(BrokenStorage())
        with pytest.raises(StorageFailureError):
            engine.get_balance(1)


class TestTransferLogging:
    """Structured log output of the engine"""

    def teardown_method(self):
        logger = logging.getLogger("transfers")
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
        logger.propagate = True
        logger.setLevel(logging.NOTSET)

    def test_outcomes_are_logged(self, caplog):
        """Test that successes and rejections carry action and resource fields"""
        engine = TransferEngine(InMemoryLedgerStorage())
        engine.create_account(1, "10")
        engine.create_account(2, "0")

        with caplog.at_level(logging.INFO, logger="transfers"):
            engine.transfer(1, 2, "5")
            with pytest.raises(InsufficientFundsError):
                engine.transfer(1, 2, "50")

        transfer_logs = [r for r in caplog.records if getattr(r, "action", None) == "transfer"]
        assert [r.levelname for r in transfer_logs] == ["INFO", "WARNING"]
        assert transfer_logs[0].resource == "transfer:1->2"
        assert transfer_logs[0].extra["amount"] == "5.0000000000"

    def test_json_log_lines(self, capsys):
        """Test that setup_logging emits one JSON object per line"""
        setup_logging("INFO", fmt="json")
        engine = TransferEngine(InMemoryLedgerStorage())
        engine.create_account(1, "10")

        lines = [line for line in capsys.readouterr().err.splitlines() if line.strip()]
        entry = json.loads(lines[-1])
        assert entry["level"] == "INFO"
        assert entry["logger"] == "transfers.engine"
        assert entry["action"] == "create_account"
        assert entry["resource"] == "account:1"
        assert entry["extra"] == {"initial_balance": "10.0000000000"}


if __name__ == "__main__":
    pytest.main([__file__])
