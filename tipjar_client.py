"""
Client side of the tip jar: HTTP client for the JSON API and the payment
lifecycle state machine (select amount -> pay invoice -> thank you).

The lifecycle polls for settlement on an APScheduler interval job. Every exit
path (settlement, cancel, reset, close) removes that job, so a finished or
abandoned session never leaves a recurring callback behind.
"""

import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Union

import requests
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

import config

logger = logging.getLogger(__name__)

INVALID_AMOUNT_MESSAGE = "Please enter a valid amount"
NODE_UNAVAILABLE_MESSAGE = "The Lightning Network node is currently unavailable. Please try again later."
GENERIC_FAILURE_MESSAGE = "Failed to generate invoice. Please try again."


class LifecycleState(str, Enum):
    SELECTING = "select"
    AWAITING_PAYMENT = "pay"
    SETTLED = "success"


class TipJarAPIError(Exception):
    """Invoice creation was refused by the server."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


class TipJarClient:
    """Thin requests wrapper around the tip jar HTTP API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or config.TIPJAR_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else config.BACKEND_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def create_invoice(self, amount: int, memo: str) -> dict:
        """Returns {paymentRequest, paymentHash}; raises TipJarAPIError."""
        try:
            r = self.session.post(
                f"{self.base_url}/api/invoice",
                json={"amount": amount, "memo": memo},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TipJarAPIError(GENERIC_FAILURE_MESSAGE) from e
        if not r.ok:
            raise TipJarAPIError(_error_message(r), status=r.status_code)
        return r.json()

    def check_invoice(self, payment_hash: str, simulate: bool = False) -> dict:
        params = {"paymentHash": payment_hash}
        if simulate:
            params["simulate"] = "true"
        r = self.session.get(f"{self.base_url}/api/invoice", params=params, timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def get_mode(self) -> bool:
        r = self.session.get(f"{self.base_url}/api/mode", timeout=self.timeout)
        r.raise_for_status()
        return bool(r.json().get("useMock"))

    def set_mode(self, use_mock: bool) -> bool:
        r = self.session.post(f"{self.base_url}/api/mode", json={"useMock": use_mock}, timeout=self.timeout)
        if not r.ok:
            raise TipJarAPIError(_error_message(r), status=r.status_code)
        return bool(r.json().get("useMock"))


def _error_message(r: requests.Response) -> str:
    try:
        message = r.json().get("error") or ""
    except (ValueError, AttributeError):
        message = ""
    if r.status_code in (503, 520) or "Unable to connect" in message:
        return NODE_UNAVAILABLE_MESSAGE
    return message or GENERIC_FAILURE_MESSAGE


AmountOption = Union[int, str]  # a preset amount or "custom"


class PaymentLifecycle:
    """State machine behind the tip jar UI."""

    def __init__(
        self,
        client: TipJarClient,
        poll_interval: Optional[float] = None,
        celebration_seconds: Optional[float] = None,
        scheduler: Optional[BackgroundScheduler] = None,
        on_change: Optional[Callable[["PaymentLifecycle"], None]] = None,
    ):
        self.client = client
        self.poll_interval = poll_interval if poll_interval is not None else config.POLL_INTERVAL_SECONDS
        self.celebration_seconds = (
            celebration_seconds if celebration_seconds is not None else config.CELEBRATION_SECONDS
        )
        self.on_change = on_change

        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or BackgroundScheduler()
        if self._owns_scheduler:
            self.scheduler.start()
        self._poll_job_id = f"tipjar-poll-{id(self):x}"
        self._celebration_job_id = f"tipjar-celebration-{id(self):x}"

        self._lock = threading.RLock()
        self._generating = False
        self._closed = False
        self._set_defaults()

    def _set_defaults(self) -> None:
        self.state = LifecycleState.SELECTING
        self.selected_amount: AmountOption = config.DEFAULT_AMOUNT
        self.custom_amount = ""
        self.memo = ""
        self.payment_request = ""
        self.payment_hash = ""
        self.preimage: Optional[str] = None
        self.error = ""
        self.celebrating = False

    # ------------------------------------------------------------------
    # Amount selection
    # ------------------------------------------------------------------
    def select_amount(self, option: AmountOption) -> None:
        if option != "custom" and option not in config.PRESET_AMOUNTS:
            raise ValueError(f"Unknown amount option: {option}")
        self.selected_amount = option
        if option != "custom":
            self.custom_amount = ""

    def set_custom_amount(self, value: str) -> bool:
        """Digits only; anything else is ignored like a rejected keystroke."""
        if value == "" or value.isdigit():
            self.custom_amount = value
            return True
        return False

    @property
    def amount(self) -> int:
        if self.selected_amount == "custom":
            return int(self.custom_amount) if self.custom_amount else 0
        return int(self.selected_amount)

    @property
    def is_generating(self) -> bool:
        return self._generating

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def generate_invoice(self, amount: Optional[int] = None, memo: Optional[str] = None) -> bool:
        """
        SELECTING -> AWAITING_PAYMENT. Returns True when an invoice was shown.

        Rejected without a network call when the amount is not positive, the
        state is wrong, or another generation is still in flight.
        """
        with self._lock:
            if self._closed or self.state is not LifecycleState.SELECTING or self._generating:
                return False
            amount = self.amount if amount is None else amount
            if memo is not None:
                self.memo = memo
            self.error = ""
            if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
                self.error = INVALID_AMOUNT_MESSAGE
                self._notify()
                return False
            self._generating = True
            memo_to_send = self.memo or config.DEFAULT_MEMO

        try:
            data = self.client.create_invoice(amount, memo_to_send)
        except TipJarAPIError as e:
            logger.error("Error generating invoice: %s", e.message)
            with self._lock:
                self.error = e.message
                self._generating = False
            self._notify()
            return False

        with self._lock:
            self._generating = False
            if self._closed or self.state is not LifecycleState.SELECTING:
                return False
            if amount != self.amount:
                # keep the displayed amount in step with what was requested
                self.selected_amount = "custom"
                self.custom_amount = str(amount)
            self.payment_request = data["paymentRequest"]
            self.payment_hash = data["paymentHash"]
            self.state = LifecycleState.AWAITING_PAYMENT
            self._start_polling()
        self._notify()
        return True

    def poll_once(self) -> bool:
        """One settlement check. Failures are silent; the job keeps running."""
        with self._lock:
            if self.state is not LifecycleState.AWAITING_PAYMENT:
                return False
            payment_hash = self.payment_hash
        try:
            status = self.client.check_invoice(payment_hash)
        except (requests.RequestException, ValueError) as e:
            logger.debug("Error checking payment status: %s", e)
            return False
        if status.get("paid"):
            return self._settle(payment_hash, status.get("preimage"))
        return False

    def simulate_payment(self) -> bool:
        """Development only: pay the mock invoice now instead of waiting for a tick."""
        with self._lock:
            if self.state is not LifecycleState.AWAITING_PAYMENT:
                return False
            payment_hash = self.payment_hash
        try:
            status = self.client.check_invoice(payment_hash, simulate=True)
        except (requests.RequestException, ValueError) as e:
            logger.error("Error simulating payment: %s", e)
            return False
        if status.get("paid"):
            return self._settle(payment_hash, status.get("preimage"))
        return False

    def cancel(self) -> None:
        """AWAITING_PAYMENT -> SELECTING, discarding the invoice."""
        logger.info("Tip cancelled")
        self.reset()

    def reset(self) -> None:
        """Any state -> SELECTING with the initial defaults."""
        with self._lock:
            self._stop_polling()
            self._remove_job(self._celebration_job_id)
            self._set_defaults()
        self._notify()

    def close(self) -> None:
        """Teardown: stop every job and the scheduler if we started it."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._stop_polling()
            self._remove_job(self._celebration_job_id)
        if self._owns_scheduler:
            self.scheduler.shutdown(wait=False)

    def __enter__(self) -> "PaymentLifecycle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _settle(self, payment_hash: str, preimage: Optional[str]) -> bool:
        with self._lock:
            # a late answer for a cancelled or replaced invoice is ignored
            if self.state is not LifecycleState.AWAITING_PAYMENT or payment_hash != self.payment_hash:
                return False
            self._stop_polling()
            self.state = LifecycleState.SETTLED
            self.preimage = preimage
            self.celebrating = True
            if not self._closed:
                self.scheduler.add_job(
                    self._end_celebration,
                    "date",
                    run_date=datetime.now() + timedelta(seconds=self.celebration_seconds),
                    id=self._celebration_job_id,
                    replace_existing=True,
                )
        logger.info("Payment received for %s", payment_hash[:24])
        self._notify()
        return True

    def _end_celebration(self) -> None:
        with self._lock:
            self.celebrating = False
        self._notify()

    def _start_polling(self) -> None:
        self._stop_polling()
        self.scheduler.add_job(
            self.poll_once,
            "interval",
            seconds=self.poll_interval,
            id=self._poll_job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.debug("Polling %s every %.1fs", self.payment_hash[:24], self.poll_interval)

    def _stop_polling(self) -> None:
        self._remove_job(self._poll_job_id)

    def _remove_job(self, job_id: str) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self)
        except Exception:
            logger.exception("on_change callback failed")
