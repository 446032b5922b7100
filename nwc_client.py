"""
Minimal Nostr Wallet Connect (NIP-47) client.

Sends Kind 23194 requests to the wallet service named in a
nostr+walletconnect:// URI and waits for the matching Kind 23195 response.
Payloads are NIP-04 encrypted with the connection secret.
"""

import json
import logging
import ssl
import time
from dataclasses import dataclass, field
from typing import Callable, Optional
from urllib.parse import parse_qs, urlparse

from nostr.event import Event
from nostr.filter import Filter, Filters
from nostr.key import PrivateKey
from nostr.message_type import ClientMessageType
from nostr.relay_manager import RelayManager

import config
from errors import ConfigurationError

logger = logging.getLogger(__name__)

URI_SCHEME = "nostr+walletconnect"
NWC_REQUEST_KIND = 23194
NWC_RESPONSE_KIND = 23195
RELAY_CONNECT_DELAY = 1.0  # python-nostr opens sockets in background threads
POLL_SLEEP = 0.1


class NWCError(Exception):
    """Wallet service answered with an error object."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class NWCConnectionError(Exception):
    """Relays could not be reached."""


class NWCTimeout(Exception):
    """No response arrived before the deadline."""


def _is_hex64(value: str) -> bool:
    return len(value) == 64 and all(c in "0123456789abcdef" for c in value.lower())


@dataclass(frozen=True)
class NWCConnection:
    wallet_pubkey: str
    secret: str
    relays: list = field(default_factory=list)


def parse_connection_uri(uri: str) -> NWCConnection:
    """Parse nostr+walletconnect://<pubkey>?relay=...&secret=...."""
    if not uri:
        raise ConfigurationError("Missing Nostr Wallet Connect URL")
    parsed = urlparse(uri.strip())
    if parsed.scheme != URI_SCHEME:
        raise ConfigurationError("Invalid Nostr Wallet Connect URL")

    # Some wallets emit nostr+walletconnect:<pubkey> without the slashes
    wallet_pubkey = (parsed.netloc or parsed.path).strip("/").lower()
    query = parse_qs(parsed.query)
    relays = [r for r in query.get("relay", []) if r]
    secret = (query.get("secret") or [""])[0].lower()

    if not _is_hex64(wallet_pubkey):
        raise ConfigurationError("Invalid wallet pubkey in Nostr Wallet Connect URL")
    if not _is_hex64(secret):
        raise ConfigurationError("Invalid secret in Nostr Wallet Connect URL")
    if not relays:
        raise ConfigurationError("No relay in Nostr Wallet Connect URL")

    return NWCConnection(wallet_pubkey=wallet_pubkey, secret=secret, relays=relays)


class NWCClient:
    """Request/response client for a single wallet connection."""

    def __init__(
        self,
        connection_uri: str,
        timeout: Optional[float] = None,
        relay_manager_factory: Callable[[], RelayManager] = RelayManager,
    ):
        self.connection = parse_connection_uri(connection_uri)
        self.timeout = timeout if timeout is not None else config.NWC_TIMEOUT_SECONDS
        self._key = PrivateKey(raw_secret=bytes.fromhex(self.connection.secret))
        self._relay_manager_factory = relay_manager_factory

    def make_invoice(self, amount_msats: int, description: str) -> dict:
        """Returns the NIP-47 transaction: {invoice, payment_hash, ...}."""
        return self.request("make_invoice", {"amount": amount_msats, "description": description})

    def lookup_invoice(self, payment_hash: str) -> dict:
        """Returns the NIP-47 transaction; settled_at is set once paid."""
        return self.request("lookup_invoice", {"payment_hash": payment_hash})

    def request(self, method: str, params: dict) -> dict:
        event = self._build_request_event(method, params)
        sub_id = f"nwc-{event['id'][:16]}"
        filters = Filters([
            Filter(
                kinds=[NWC_RESPONSE_KIND],
                authors=[self.connection.wallet_pubkey],
                event_refs=[event["id"]],
            )
        ])

        relay_manager = self._relay_manager_factory()
        for r in self.connection.relays:
            relay_manager.add_relay(r)
        relay_manager.add_subscription(sub_id, filters)
        try:
            relay_manager.open_connections({"cert_reqs": ssl.CERT_NONE})
        except Exception as e:
            raise NWCConnectionError(f"Could not connect to NWC relays: {e}") from e

        try:
            time.sleep(RELAY_CONNECT_DELAY)
            relay_manager.publish_message(
                json.dumps([ClientMessageType.REQUEST, sub_id, *filters.to_json_array()])
            )
            relay_manager.publish_message(json.dumps([ClientMessageType.EVENT, event]))
            logger.debug("NWC %s sent (%s)", method, event["id"][:16])
            payload = self._wait_for_response(relay_manager, event["id"])
        finally:
            relay_manager.close_connections()

        error = payload.get("error")
        if error:
            raise NWCError(error.get("code", "OTHER"), error.get("message", "Unknown error"))
        return payload.get("result") or {}

    def _build_request_event(self, method: str, params: dict) -> dict:
        """Create a signed Kind 23194 request event."""
        content = self._key.encrypt_message(
            json.dumps({"method": method, "params": params}),
            self.connection.wallet_pubkey,
        )
        ev = Event(
            public_key=self._key.public_key.hex(),
            content=content,
            created_at=int(time.time()),
            kind=NWC_REQUEST_KIND,
            tags=[["p", self.connection.wallet_pubkey]],
        )
        self._key.sign_event(ev)
        return {
            "id": ev.id,
            "pubkey": ev.public_key,
            "created_at": ev.created_at,
            "kind": NWC_REQUEST_KIND,
            "tags": ev.tags,
            "content": ev.content,
            "sig": ev.signature,
        }

    def _wait_for_response(self, relay_manager: RelayManager, request_id: str) -> dict:
        deadline = time.monotonic() + self.timeout
        while time.monotonic() < deadline:
            if not relay_manager.message_pool.has_events():
                time.sleep(POLL_SLEEP)
                continue
            event = relay_manager.message_pool.get_event().event
            if event.kind != NWC_RESPONSE_KIND:
                continue
            if event.public_key != self.connection.wallet_pubkey:
                continue
            if ["e", request_id] not in [list(t[:2]) for t in event.tags]:
                continue
            try:
                plain = self._key.decrypt_message(event.content, self.connection.wallet_pubkey)
                return json.loads(plain)
            except Exception as e:
                logger.warning("NWC response decrypt failed: %s", e)
        raise NWCTimeout(f"No NWC response within {self.timeout:.0f}s")
