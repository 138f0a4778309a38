"""
MeSomb mobile-money collection (MTN / Orange, Cameroon)

Calls go through the pymesomb SDK (PaymentOperation), which signs each
request with the application's access/secret key pair.
"""
import os
import time
import uuid
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from pymesomb.exceptions import (
    InvalidClientRequestException,
    PermissionDeniedException,
    ServerException,
    ServiceNotFoundException,
)
from pymesomb.operations import PaymentOperation

logger = logging.getLogger(__name__)

MESOMB_APP_KEY = os.getenv("MESOMB_APP_KEY")
MESOMB_ACCESS_KEY = os.getenv("MESOMB_ACCESS_KEY")
MESOMB_SECRET_KEY = os.getenv("MESOMB_SECRET_KEY")
RETRY_ATTEMPTS = int(os.getenv("MESOMB_RETRY_ATTEMPTS", "2"))
RETRY_BACKOFF_SEC = float(os.getenv("MESOMB_RETRY_BACKOFF_SEC", "1.0"))

COUNTRY_CODE = "237"

SUPPORTED_SERVICES = [
    {"code": "MTN", "name": "MTN Mobile Money", "country": "CM"},
    {"code": "ORANGE", "name": "Orange Money", "country": "CM"},
]

TRANSIENT_ERRORS = (requests.ConnectionError, requests.Timeout, ConnectionError, TimeoutError)


class PaymentError(Exception):
    """Failure of a payment request.

    error_type is one of configuration, validation, payment_failed,
    gateway_error.
    """

    def __init__(self, message: str, error_type: str):
        super().__init__(message)
        self.message = message
        self.error_type = error_type


@dataclass
class CollectResult:
    success: bool
    message: Optional[str] = None
    transaction_id: Optional[str] = None
    reference: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def format_phone(number: str) -> str:
    """Normalise a Cameroon number to 237XXXXXXXXX."""
    number = (number or "").strip().replace(" ", "")
    if not number.startswith(COUNTRY_CODE) and not number.startswith("+" + COUNTRY_CODE):
        number = COUNTRY_CODE + number
    return number.replace("+", "")


def is_supported_service(service: str) -> bool:
    return any(s["code"] == service for s in SUPPORTED_SERVICES)


def with_retry(func, attempts: int = RETRY_ATTEMPTS, backoff: float = RETRY_BACKOFF_SEC, sleep=time.sleep):
    """Call func, retrying transient network errors with linear backoff."""
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except TRANSIENT_ERRORS as e:
            if attempt == attempts:
                raise
            logger.warning("MeSomb call failed (attempt %s/%s): %s", attempt, attempts, e)
            sleep(backoff * attempt)


class MeSombGateway:
    def __init__(self, app_key: Optional[str] = MESOMB_APP_KEY, access_key: Optional[str] = MESOMB_ACCESS_KEY,
                 secret_key: Optional[str] = MESOMB_SECRET_KEY, operation: Optional[PaymentOperation] = None):
        self.app_key = app_key
        self.access_key = access_key
        self.secret_key = secret_key
        self._operation = operation
        self.sleep = time.sleep

    @property
    def configured(self) -> bool:
        return bool(self.app_key and self.access_key and self.secret_key)

    @property
    def operation(self) -> PaymentOperation:
        if self._operation is None:
            self._operation = PaymentOperation(self.app_key, self.access_key, self.secret_key)
        return self._operation

    def _call(self, func):
        if not self.configured:
            raise PaymentError("Payment service not configured. Please contact support.", "configuration")
        try:
            return with_retry(func, sleep=self.sleep)
        except TRANSIENT_ERRORS as e:
            logger.error("MeSomb unreachable: %s", e)
            raise PaymentError("Payment service unavailable. Please try again.", "gateway_error")
        except InvalidClientRequestException as e:
            logger.warning("MeSomb rejected the request (%s): %s", e.code, e.detail)
            raise PaymentError(str(e.detail) or "Payment failed. Please try again.", "payment_failed")
        except PermissionDeniedException as e:
            logger.error("MeSomb refused our credentials (%s): %s", e.code, e.detail)
            raise PaymentError("Payment service not configured. Please contact support.", "configuration")
        except (ServerException, ServiceNotFoundException) as e:
            logger.error("MeSomb error (%s): %s", e.code, e.detail)
            raise PaymentError("Payment service unavailable. Please try again.", "gateway_error")

    def collect(self, amount: int, service: str, payer: str, customer: Dict[str, Any],
                line_items: List[Dict[str, Any]]) -> CollectResult:
        # one trxID for every attempt so a retried collect is not charged twice
        trx_id = uuid.uuid4().hex
        response = self._call(lambda: self.operation.make_collect(
            amount=amount,
            service=service,
            payer=payer,
            country="CM",
            currency="XAF",
            fees=False,
            customer=customer,
            line_items=line_items,
            trx_id=trx_id,
            mode="synchronous",
        ))
        success = response.is_operation_success() and response.is_transaction_success()
        return CollectResult(
            success=success,
            message=response.message,
            transaction_id=response.transaction.pk,
            reference=response.reference,
            raw=response.get_data(),
        )

    def status(self, transaction_id: str) -> Dict[str, Any]:
        transactions = self._call(lambda: self.operation.get_transactions([transaction_id]))
        if not transactions:
            return {"found": False, "status": None}
        return {"found": True, "status": transactions[0].status}


gateway = MeSombGateway()
