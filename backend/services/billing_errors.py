"""Billing error taxonomy.

ValidationError and its subclasses are raised before any processor call and
are surfaced verbatim. ProcessorError wraps network, timeout and decline
failures from the payment processor. Demo mode is not an error; it is a
result variant of the orchestrator.
"""
from typing import Optional


class BillingError(Exception):
    """Base class carrying a stable error_code for API responses."""
    error_code = "BILLING_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(message)


class ValidationError(BillingError):
    error_code = "VALIDATION_ERROR"


class InvalidInstallmentCount(ValidationError):
    error_code = "INVALID_INSTALLMENT_COUNT"


class InvalidAmount(ValidationError):
    error_code = "INVALID_AMOUNT"


class PlanNotFoundError(BillingError):
    error_code = "PLAN_NOT_FOUND"


class CompanyNotFoundError(BillingError):
    error_code = "COMPANY_NOT_FOUND"

    def __init__(self, company_id):
        self.company_id = company_id
        super().__init__(f"Company {company_id} not found")


class ProcessorError(BillingError):
    """Payment processor failure. `code` is the processor's code when known."""
    error_code = "PROCESSOR_ERROR"

    def __init__(self, code: str, message: str):
        self.code = code
        super().__init__(message)


class ProcessorNotConfiguredError(ProcessorError):
    error_code = "PROCESSOR_NOT_CONFIGURED"

    def __init__(self, message: str = "Payment processor is not configured"):
        super().__init__("not_configured", message)


class IntentInProgressError(BillingError):
    """Another subscription intent for the company is still being created."""
    error_code = "INTENT_IN_PROGRESS"
