"""
Lightning backend abstraction for the Tip Jar.

Supports:
- mock: Simulated invoices for development (no real Lightning node)
- lnbits: LNbits API for invoice creation and payment detection
- nwc: any Nostr Wallet Connect wallet (NIP-47 make_invoice / lookup_invoice)

Every backend exposes the same two operations. create_invoice raises from the
errors module; lookup_invoice never raises and reports trouble as "not paid"
so a polling client keeps going.
"""

import logging
import random
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import requests

import config
from errors import BackendError, ConfigurationError, NodeUnavailable
from nwc_client import NWCClient, NWCConnectionError, NWCError, NWCTimeout

logger = logging.getLogger(__name__)

LOOKUP_DEGRADED_MESSAGE = "Unable to verify payment status. Will try again."
# LNbits relays this when its funding node is down (the HTTP status is 520 on some versions)
NODE_UNAVAILABLE_MARKER = "Unable to connect"
NODE_UNAVAILABLE_STATUS = 520
# every mock payment hash starts with this; real wallets return hex
MOCK_HASH_PREFIX = "mock_"


@dataclass(frozen=True)
class Invoice:
    amount_sats: int
    memo: str
    payment_request: str
    payment_hash: str
    preimage: Optional[str] = None


@dataclass(frozen=True)
class InvoiceStatus:
    paid: bool
    preimage: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"paid": self.paid, "preimage": self.preimage}
        if self.error:
            data["error"] = self.error
        return data


class LightningBackend(ABC):
    """Abstract interface for Lightning operations."""

    name = "abstract"

    @abstractmethod
    def create_invoice(self, amount_sats: int, memo: str) -> Invoice:
        """Create a Lightning invoice. Raises NodeUnavailable / BackendError."""
        pass

    @abstractmethod
    def _fetch_status(self, payment_hash: str, simulate: bool = False) -> InvoiceStatus:
        """Backend-specific lookup; free to raise."""
        pass

    def lookup_invoice(self, payment_hash: str, simulate: bool = False) -> InvoiceStatus:
        """Settlement status for payment_hash. Always returns, never raises."""
        try:
            return self._fetch_status(payment_hash, simulate=simulate)
        except Exception as e:
            logger.warning("%s lookup_invoice failed for %s: %s", self.name, payment_hash[:16], e)
            return InvoiceStatus(paid=False, preimage=None, error=LOOKUP_DEGRADED_MESSAGE)


class MockLightningBackend(LightningBackend):
    """
    Mock Lightning backend for development and testing.

    Invoices are stored in memory. A lookup with simulate=True marks the
    invoice as paid. With random_settlement enabled (MOCK_RANDOM_SETTLEMENT)
    plain lookups settle at random; that is non-deterministic and only meant
    for clicking through the UI by hand.
    """

    name = "mock"

    def __init__(self, random_settlement: Optional[bool] = None, settle_probability: float = 0.2):
        self.random_settlement = (
            config.MOCK_RANDOM_SETTLEMENT if random_settlement is None else random_settlement
        )
        self.settle_probability = settle_probability
        self._invoices: dict[str, Invoice] = {}
        self._paid: set[str] = set()
        self._lock = threading.Lock()

    def create_invoice(self, amount_sats: int, memo: str) -> Invoice:
        payment_hash = f"{MOCK_HASH_PREFIX}{int(time.time() * 1000)}_{secrets.token_hex(8)}"
        payment_request = f"lnbc{amount_sats}n1mock{secrets.token_hex(24)}"
        invoice = Invoice(
            amount_sats=amount_sats,
            memo=memo,
            payment_request=payment_request,
            payment_hash=payment_hash,
        )
        with self._lock:
            self._invoices[payment_hash] = invoice
        logger.info("Mock invoice created: %s (%d sats)", payment_hash, amount_sats)
        return invoice

    def _fetch_status(self, payment_hash: str, simulate: bool = False) -> InvoiceStatus:
        with self._lock:
            if payment_hash not in self._invoices:
                return InvoiceStatus(paid=False)
            if simulate:
                self._paid.add(payment_hash)
            elif (
                self.random_settlement
                and payment_hash not in self._paid
                and random.random() < self.settle_probability
            ):
                self._paid.add(payment_hash)
            paid = payment_hash in self._paid
        return InvoiceStatus(paid=paid, preimage=self._preimage(payment_hash) if paid else None)

    @staticmethod
    def _preimage(payment_hash: str) -> str:
        return "mock_preimage_" + payment_hash[-16:]


class LNbitsLightningBackend(LightningBackend):
    """LNbits API backend for real Lightning operations."""

    name = "lnbits"

    def __init__(
        self,
        base_url: Optional[str] = None,
        invoice_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url if base_url is not None else config.LNBITS_URL).rstrip("/")
        self.invoice_key = invoice_key if invoice_key is not None else config.LNBITS_INVOICE_KEY
        if not self.base_url or not self.invoice_key:
            raise ConfigurationError("Missing LNbits URL or API key")
        self.timeout = timeout if timeout is not None else config.BACKEND_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    @property
    def headers(self) -> dict:
        return {"X-Api-Key": self.invoice_key, "Content-Type": "application/json"}

    def create_invoice(self, amount_sats: int, memo: str) -> Invoice:
        payload = {"out": False, "amount": amount_sats, "memo": memo, "unit": "sat"}
        try:
            r = self.session.post(
                f"{self.base_url}/api/v1/payments",
                json=payload,
                headers=self.headers,
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NodeUnavailable() from e
        except requests.RequestException as e:
            raise BackendError(upstream_detail=str(e)) from e

        # a successful response may echo the memo, so only inspect failures
        if r.status_code == NODE_UNAVAILABLE_STATUS or (not r.ok and NODE_UNAVAILABLE_MARKER in r.text):
            logger.error("LNbits reports node unavailable: %s", r.text[:200])
            raise NodeUnavailable()
        if not r.ok:
            detail = _lnbits_detail(r)
            logger.error("LNbits create invoice failed (%d): %s", r.status_code, detail)
            raise BackendError(upstream_status=r.status_code, upstream_detail=detail)

        try:
            data = r.json()
            payment_request = data.get("payment_request") or data["bolt11"]
            payment_hash = data["payment_hash"]
        except (ValueError, KeyError) as e:
            raise BackendError(upstream_status=r.status_code, upstream_detail="Malformed LNbits response") from e

        return Invoice(
            amount_sats=amount_sats,
            memo=memo,
            payment_request=payment_request,
            payment_hash=payment_hash,
        )

    def _fetch_status(self, payment_hash: str, simulate: bool = False) -> InvoiceStatus:
        r = self.session.get(
            f"{self.base_url}/api/v1/payments/{payment_hash}",
            headers=self.headers,
            timeout=self.timeout,
        )
        if r.status_code == 404:
            return InvoiceStatus(paid=False)
        r.raise_for_status()
        data = r.json()
        paid = bool(data.get("paid", False))
        preimage = data.get("preimage") or (data.get("details") or {}).get("preimage")
        return InvoiceStatus(paid=paid, preimage=preimage if paid else None)


def _lnbits_detail(r: requests.Response) -> str:
    try:
        data = r.json()
    except ValueError:
        return r.text[:200]
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("message") or data)
    return str(data)


class NWCLightningBackend(LightningBackend):
    """Nostr Wallet Connect backend; amounts go out in millisatoshis."""

    name = "nwc"

    def __init__(self, connection_uri: Optional[str] = None, client: Optional[NWCClient] = None):
        if client is None:
            uri = connection_uri if connection_uri is not None else config.NOSTR_WALLET_CONNECT_URL
            if not uri:
                raise ConfigurationError("Missing Nostr Wallet Connect URL")
            client = NWCClient(uri)
        self.client = client

    def create_invoice(self, amount_sats: int, memo: str) -> Invoice:
        try:
            result = self.client.make_invoice(amount_msats=amount_sats * 1000, description=memo)
        except (NWCConnectionError, NWCTimeout) as e:
            logger.error("Nostr Wallet Connect make_invoice error: %s", e)
            raise NodeUnavailable() from e
        except NWCError as e:
            logger.error("Nostr Wallet Connect make_invoice error: %s", e)
            raise BackendError(upstream_detail=str(e)) from e

        if not result.get("invoice") or not result.get("payment_hash"):
            raise BackendError(upstream_detail="Malformed make_invoice response")
        return Invoice(
            amount_sats=amount_sats,
            memo=memo,
            payment_request=result["invoice"],
            payment_hash=result["payment_hash"],
        )

    def _fetch_status(self, payment_hash: str, simulate: bool = False) -> InvoiceStatus:
        result = self.client.lookup_invoice(payment_hash)
        # settled once the wallet reports a settlement timestamp
        paid = bool(result.get("settled_at"))
        preimage = result.get("preimage") or None
        return InvoiceStatus(paid=paid, preimage=preimage if paid else None)


_backend_instances: dict[str, LightningBackend] = {}
_backend_lock = threading.Lock()


def get_lightning_backend(use_mock: bool) -> LightningBackend:
    """Factory for Lightning backend based on config (one instance per kind)."""
    kind = "mock" if use_mock else config.LIGHTNING_BACKEND
    with _backend_lock:
        backend = _backend_instances.get(kind)
        if backend is None:
            if kind == "mock":
                backend = MockLightningBackend()
            elif kind == "lnbits":
                backend = LNbitsLightningBackend()
            elif kind == "nwc":
                backend = NWCLightningBackend()
            else:
                raise ConfigurationError(f"Unknown LIGHTNING_BACKEND: {kind}")
            _backend_instances[kind] = backend
            logger.info("Lightning backend initialised: %s", kind)
    return backend

