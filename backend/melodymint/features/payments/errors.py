class SettlementError(Exception):
    """Base class for failures surfaced by the settlement API."""

    def __init__(self, message: str, *, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(SettlementError):
    pass


class PaymentNotFoundError(SettlementError):
    pass


class InsufficientBalanceError(SettlementError):
    pass


class WithdrawalConflictError(SettlementError):
    pass


class ReconciliationRequiredError(SettlementError):
    pass


class _TransferFailure(SettlementError):
    def __init__(
        self,
        message: str,
        *,
        signature: str | None = None,
        reconciliation_required: bool = False,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.signature = signature
        self.reconciliation_required = reconciliation_required
        self.payment_id: str | None = None


class TransferExecutionError(_TransferFailure):
    pass


class InsufficientFundingError(TransferExecutionError):
    pass


class ConfirmationTimeoutError(_TransferFailure):
    """The transfer was submitted but not seen confirmed in time; its outcome is unknown."""

    def __init__(self, message: str, *, signature: str, details: str | None = None) -> None:
        super().__init__(message, signature=signature, reconciliation_required=True, details=details)
