"""
Transfer Engine Module

Account creation, balance lookup and the atomic transfer protocol on top of
a LedgerStorage backend. A transfer locks both account rows in ascending id
order, checks funds, writes both balances and appends one audit record, all
inside one storage transaction. Rejected transfers (missing account,
insufficient funds) are audited and committed before the error is raised;
timeouts and storage faults roll back and leave no record.
"""

from contextlib import contextmanager
from decimal import Decimal, Context, Inexact, InvalidOperation, localcontext
from typing import Any, List, Optional
import time

from .errors import (
    LedgerError, InvalidInputError, AccountNotFoundError, InsufficientFundsError,
    InvalidStateError, OperationTimeoutError, StorageFailureError
)
from .storage import LedgerStorage, Account, TransactionRecord, TransferStatus, decimal_text
from .logging_config import get_logger, log_action


MIN_ACCOUNT_ID = -2 ** 63
MAX_ACCOUNT_ID = 2 ** 63 - 1

# NUMERIC(30,10)
BALANCE_SCALE = 10
BALANCE_INTEGER_DIGITS = 20

ACCOUNT_NOT_FOUND = "account not found"
INSUFFICIENT_FUNDS = "insufficient funds"

# Enough precision for any NUMERIC(30,10) sum; rounding raises instead of losing money
EXACT_CONTEXT = Context(prec=BALANCE_SCALE + BALANCE_INTEGER_DIGITS + 2, traps=[Inexact, InvalidOperation])
_SCALE_UNIT = Decimal(1).scaleb(-BALANCE_SCALE)


def validate_account_id(account_id: Any, field: str = "account_id", allow_zero: bool = False) -> int:
    """Check that an account id is a signed 64-bit integer, non-zero unless allowed"""
    if isinstance(account_id, bool) or not isinstance(account_id, int):
        raise InvalidInputError(f"{field} must be an integer")
    if account_id == 0 and not allow_zero:
        raise InvalidInputError(f"{field} must be non-zero")
    if not MIN_ACCOUNT_ID <= account_id <= MAX_ACCOUNT_ID:
        raise InvalidInputError(f"{field} is out of range")
    return account_id


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """
    Convert a monetary value to an exact Decimal at the ledger's scale.

    Accepts Decimal, int and numeric strings. Floats are rejected because
    their binary representation is already rounded. The value must fit
    NUMERIC(30,10) without rounding; it is returned with exactly ten
    fractional digits, and negative zero becomes zero.
    """
    if isinstance(value, (bool, float)):
        raise InvalidInputError(f"{field} must be an exact decimal, not {type(value).__name__}")
    if isinstance(value, int):
        value = Decimal(value)
    elif isinstance(value, str):
        try:
            value = Decimal(value.strip())
        except InvalidOperation as e:
            raise InvalidInputError(f"{field} is not a valid decimal: {value!r}") from e
    elif not isinstance(value, Decimal):
        raise InvalidInputError(f"{field} must be a decimal, not {type(value).__name__}")

    if not value.is_finite():
        raise InvalidInputError(f"{field} must be finite")
    if value and value.adjusted() >= BALANCE_INTEGER_DIGITS:
        raise InvalidInputError(f"{field} exceeds {BALANCE_INTEGER_DIGITS} integer digits")
    try:
        value = value.quantize(_SCALE_UNIT, context=EXACT_CONTEXT)
    except (Inexact, InvalidOperation) as e:
        raise InvalidInputError(f"{field} has more than {BALANCE_SCALE} fractional digits") from e
    if not value:
        value = value.copy_abs()
    return value


class TransferEngine:
    """
    Enforces the ledger's business rules on top of a storage backend.

    Safe to call from many threads at once: all coordination happens in the
    storage backend's transactions and row locks.
    """

    def __init__(self, storage: LedgerStorage, default_timeout: Optional[float] = 5.0):
        self.storage = storage
        self.default_timeout = default_timeout
        self.logger = get_logger("transfers.engine")

    def _resolve_timeout(self, timeout: Optional[float]) -> Optional[float]:
        if timeout is None:
            timeout = self.default_timeout
        if timeout is not None and timeout <= 0:
            raise InvalidInputError("timeout must be positive")
        return timeout

    @contextmanager
    def _storage_errors(self, action: str):
        """Surface store contract breaches and non-ledger errors as StorageFailureError"""
        try:
            yield
        except InvalidStateError as e:
            log_action(
                self.logger, "error", f"Storage rejected {action}: {e}",
                action=action, exc_info=True
            )
            raise StorageFailureError(f"{action} failed") from e
        except LedgerError:
            raise
        except Exception as e:
            log_action(
                self.logger, "error", f"Unexpected storage fault during {action}: {e}",
                action=action, exc_info=True
            )
            raise StorageFailureError(f"{action} failed") from e

    def create_account(self, account_id: int, initial_balance: Any,
                       timeout: Optional[float] = None) -> Account:
        """
        Create an account with an opening balance.

        Raises:
            InvalidInputError: zero/out-of-range id, negative or inexact balance
            DuplicateAccountError: the id is already taken
            OperationTimeoutError, StorageFailureError
        """
        account_id = validate_account_id(account_id)
        initial_balance = to_decimal(initial_balance, "initial_balance")
        if initial_balance < 0:
            raise InvalidInputError("initial_balance must be >= 0")
        timeout = self._resolve_timeout(timeout)

        with self._storage_errors("create_account"):
            account = self.storage.insert_account(account_id, initial_balance, timeout=timeout)

        log_action(
            self.logger, "info", "Account created",
            action="create_account", resource=f"account:{account_id}",
            extra={"initial_balance": decimal_text(initial_balance)}
        )
        return account

    def get_balance(self, account_id: int, timeout: Optional[float] = None) -> Decimal:
        """Committed balance of an account; does not wait for in-flight transfers"""
        account_id = validate_account_id(account_id, allow_zero=True)
        timeout = self._resolve_timeout(timeout)
        with self._storage_errors("get_balance"):
            return self.storage.read_balance(account_id, timeout=timeout)

    def list_transactions(self, account_id: int, limit: Optional[int] = 50) -> List[TransactionRecord]:
        """Audit records where the account is source or destination, newest first"""
        account_id = validate_account_id(account_id, allow_zero=True)
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0):
            raise InvalidInputError("limit must be a positive integer")
        with self._storage_errors("list_transactions"):
            return self.storage.list_transaction_records(account_id, limit=limit)

    def transfer(self, source_id: int, destination_id: int, amount: Any,
                 timeout: Optional[float] = None) -> Optional[TransactionRecord]:
        """
        Move `amount` from one account to another atomically.

        Returns the stored `succeeded` audit record, or None when source and
        destination are the same account (a no-op that touches nothing).
        Not idempotent: every call that reaches the locking stage writes a
        new audit record and, on success, moves the money again.

        Raises:
            InvalidInputError: bad ids or a non-positive/inexact amount
            AccountNotFoundError: either account is missing (audited)
            InsufficientFundsError: source balance below amount (audited)
            OperationTimeoutError: lock wait or the whole call exceeded the timeout
            StorageFailureError: the store failed; nothing was written
        """
        source_id = validate_account_id(source_id, "source_account_id")
        destination_id = validate_account_id(destination_id, "destination_account_id")
        amount = to_decimal(amount, "amount")
        if amount <= 0:
            raise InvalidInputError("amount must be > 0")
        timeout = self._resolve_timeout(timeout)

        # Locking the same row twice would break the read-modify-write sequence
        if source_id == destination_id:
            self.logger.debug(f"Ignoring transfer from account {source_id} to itself")
            return None

        resource = f"transfer:{source_id}->{destination_id}"
        details = {"source": source_id, "destination": destination_id, "amount": decimal_text(amount)}
        try:
            with self._storage_errors("transfer"):
                record = self._execute_transfer(source_id, destination_id, amount, timeout)
        except (AccountNotFoundError, InsufficientFundsError) as e:
            log_action(
                self.logger, "warning", f"Transfer rejected: {e}",
                action="transfer", resource=resource, extra=details
            )
            raise
        except LedgerError as e:
            log_action(
                self.logger, "error", f"Transfer aborted: {type(e).__name__}: {e}",
                action="transfer", resource=resource, extra=details
            )
            raise

        log_action(
            self.logger, "info", "Transfer completed",
            action="transfer", resource=resource,
            extra=dict(details, transaction_id=record.id)
        )
        return record

    def _execute_transfer(self, source_id: int, destination_id: int, amount: Decimal,
                          timeout: Optional[float]) -> TransactionRecord:
        deadline = None if timeout is None else time.monotonic() + timeout
        self.storage.begin_transaction(timeout)
        try:
            # Ascending id order, never request order: keeps lock acquisition cycle-free
            balances = {}
            for account_id in sorted((source_id, destination_id)):
                try:
                    balances[account_id] = self.storage.read_balance_for_update(account_id)
                except AccountNotFoundError:
                    self._record_failure(source_id, destination_id, amount, ACCOUNT_NOT_FOUND, deadline)
                    raise

            source_balance = balances[source_id]
            if source_balance < amount:
                self._record_failure(source_id, destination_id, amount, INSUFFICIENT_FUNDS, deadline)
                raise InsufficientFundsError(source_id, source_balance, amount)

            with localcontext(EXACT_CONTEXT):
                new_source = source_balance - amount
                new_destination = balances[destination_id] + amount

            self.storage.write_balance(source_id, new_source)
            self.storage.write_balance(destination_id, new_destination)
            record = self.storage.append_transaction_record(TransactionRecord(
                source_account_id=source_id,
                destination_account_id=destination_id,
                amount=amount,
                status=TransferStatus.SUCCEEDED
            ))
            self._commit_before(deadline)
            return record
        except Exception:
            # No-op once committed
            self.storage.rollback()
            raise

    def _record_failure(self, source_id: int, destination_id: int, amount: Decimal,
                        reason: str, deadline: Optional[float]) -> None:
        """Append a failed audit record and commit it; no balance was written"""
        self.storage.append_transaction_record(TransactionRecord(
            source_account_id=source_id,
            destination_account_id=destination_id,
            amount=amount,
            status=TransferStatus.FAILED,
            error_message=reason
        ))
        self._commit_before(deadline)

    def _commit_before(self, deadline: Optional[float]) -> None:
        if deadline is not None and time.monotonic() > deadline:
            raise OperationTimeoutError("transaction did not complete within its timeout")
        self.storage.commit()
