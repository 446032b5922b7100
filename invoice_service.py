"""
Invoice service: validation and error normalisation in front of the backends.
"""

import logging
import math
from typing import Any, Optional

import config
from errors import (
    BackendError,
    ConfigurationError,
    InvalidAmount,
    MissingParameter,
    NodeUnavailable,
)
from lightning import (
    LOOKUP_DEGRADED_MESSAGE,
    MOCK_HASH_PREFIX,
    Invoice,
    InvoiceStatus,
    LightningBackend,
    get_lightning_backend,
)

logger = logging.getLogger(__name__)


def parse_amount(amount: Any) -> int:
    """Whole sats from a JSON number or numeric string; InvalidAmount otherwise."""
    if amount is None or isinstance(amount, bool):
        raise InvalidAmount()
    if isinstance(amount, str):
        amount = amount.strip()
        if amount.isdigit():
            try:
                amount = int(amount)
            except ValueError:
                raise InvalidAmount()
    # whole numbers are used as is, never via float
    if isinstance(amount, int):
        if amount <= 0:
            raise InvalidAmount()
        return amount
    try:
        value = float(amount)
    except (TypeError, ValueError, OverflowError):
        raise InvalidAmount()
    if not math.isfinite(value) or value <= 0:
        raise InvalidAmount()
    sats = int(value)
    if sats <= 0:
        raise InvalidAmount()
    return sats


def _resolve_backend(use_mock: bool, backend: Optional[LightningBackend]) -> LightningBackend:
    return backend if backend is not None else get_lightning_backend(use_mock)


def request_invoice(
    amount: Any,
    memo: Optional[str] = None,
    use_mock: bool = True,
    backend: Optional[LightningBackend] = None,
) -> Invoice:
    """
    Create an invoice for a tip.

    Raises InvalidAmount before touching any backend, ConfigurationError when
    credentials are missing, NodeUnavailable when the node cannot be reached
    and BackendError for every other upstream failure.
    """
    amount_sats = parse_amount(amount)
    memo = ("" if memo is None else str(memo)).strip() or config.DEFAULT_MEMO

    backend = _resolve_backend(use_mock, backend)
    try:
        invoice = backend.create_invoice(amount_sats, memo)
    except (NodeUnavailable, ConfigurationError):
        raise
    except BackendError as e:
        logger.error(
            "Invoice creation failed (upstream %s): %s", e.upstream_status, e.upstream_detail
        )
        raise
    except Exception as e:
        logger.exception("Invoice creation failed: %s", e)
        raise BackendError(upstream_detail=str(e)) from e

    logger.info("Invoice created on %s: %s (%d sats)", backend.name, invoice.payment_hash[:24], amount_sats)
    return invoice


def check_invoice(
    payment_hash: Optional[str],
    simulate: bool = False,
    backend: Optional[LightningBackend] = None,
) -> InvoiceStatus:
    """
    Settlement status for payment_hash.

    The hash decides the backend, not the current mode: mock hashes go to the
    mock backend and everything else to the real one. Only a missing hash
    raises; anything else that goes wrong is reported as an unpaid status so
    the caller can simply poll again.
    """
    payment_hash = (payment_hash or "").strip()
    if not payment_hash:
        raise MissingParameter("Payment hash is required")

    is_mock = payment_hash.startswith(MOCK_HASH_PREFIX)
    # simulated payments only exist for mock invoices
    simulate = simulate and is_mock
    try:
        backend = _resolve_backend(is_mock, backend)
        return backend.lookup_invoice(payment_hash, simulate=simulate)
    except Exception as e:
        logger.warning("Error checking invoice status for %s: %s", payment_hash[:24], e)
        return InvoiceStatus(paid=False, preimage=None, error=LOOKUP_DEGRADED_MESSAGE)
