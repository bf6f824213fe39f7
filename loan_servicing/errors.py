"""
Error Taxonomy

Exceptions raised by the servicing core. Expected outcomes such as a duplicate
transaction reference or an already generated schedule are returned as typed
results and never raised.
"""


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors"""


class ValidationError(LoanServicingError, ValueError):
    """Bad input, rejected before any write"""


class NotFoundError(LoanServicingError):
    """A referenced entity does not exist"""


class ScheduleNotFoundError(NotFoundError):
    """No repayment schedule exists for the loan"""
    
    def __init__(self, loan_id: str):
        super().__init__(f"No repayment schedule found for loan {loan_id}")
        self.loan_id = loan_id


class TransactionNotFoundError(NotFoundError):
    """No payment transaction exists for the id or reference"""
    
    def __init__(self, key: str):
        super().__init__(f"Payment transaction {key} not found")
        self.key = key


class PersistenceError(LoanServicingError):
    """Storage engine failure; surfaced to the caller, never retried here"""


class CollaboratorError(LoanServicingError):
    """Audit or notification delivery failure; logged and never escalated"""
