"""
Ledger Error Taxonomy

Domain-specific exceptions raised by the storage adapters and the transfer
engine. Callers branch on the exception class, never on message text.
"""


class LedgerError(Exception):
    """Base class for every error raised by the ledger"""
    pass


class InvalidInputError(LedgerError):
    """
    Raised when domain arguments are malformed: zero or out-of-range account
    ids, non-positive transfer amounts, negative opening balances, floats
    where an exact decimal is required.
    """
    pass


class AccountNotFoundError(LedgerError):
    """Raised when an account id is missing from the store"""

    def __init__(self, account_id: int):
        super().__init__(f"account {account_id} not found")
        self.account_id = account_id


class DuplicateAccountError(LedgerError):
    """Raised when an account is created with an id that already exists"""

    def __init__(self, account_id: int):
        super().__init__(f"account {account_id} already exists")
        self.account_id = account_id


class InsufficientFundsError(LedgerError):
    """
    Raised when a transfer would drop the source balance below zero.
    """

    def __init__(self, account_id: int, balance, amount):
        super().__init__(
            f"insufficient funds in account {account_id}: "
            f"balance {balance}, requested {amount}"
        )
        self.account_id = account_id
        self.balance = balance
        self.amount = amount


class InvalidStateError(LedgerError):
    """
    Raised by a storage adapter when a primitive is used against its
    contract: negative balances, writes without the row lock, nested or
    missing transactions.
    """
    pass


class OperationTimeoutError(LedgerError):
    """Raised when an operation's transaction did not complete in time"""
    pass


class StorageFailureError(LedgerError):
    """Raised when the underlying store is unreachable or misbehaves"""
    pass
