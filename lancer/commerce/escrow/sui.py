"""Sui chain client for the lancer escrow Move package.

Talks to a Sui full node over JSON-RPC:

1. ``unsafe_moveCall`` builds an unsigned transaction for one of the
   ``escrow::create_escrow`` / ``release_escrow`` / ``cancel_escrow`` entry
   functions
2. The platform key signs the Blake2b-256 digest of the intent message
3. ``sui_executeTransactionBlock`` submits it and waits for local execution

Escrow creation also needs a USDC coin object holding exactly the escrow
amount; ``suix_getCoins`` lists the platform wallet's coins and
``unsafe_splitCoin`` carves out an exact-amount coin when needed.
"""

import base64
import hashlib
import logging
import re
from typing import Any, Dict, List, Optional

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from lancer.protocols import (
    ChainClientError,
    ChainReceipt,
    ChainTimeoutError,
    InsufficientFundsError,
    InvalidAddressError,
)

logger = logging.getLogger(__name__)

ED25519_FLAG = 0x00
# IntentScope::TransactionData, IntentVersion::V0, AppId::Sui
TRANSACTION_INTENT = bytes([0, 0, 0])

ESCROW_MODULE = "escrow"
ESCROW_CREATED_EVENT = "EscrowCreated"
LOCKED_PAYMENT_TYPE = "LockedPayment"

DEFAULT_GAS_BUDGET = 10_000_000
# Pages of EscrowCreated events scanned when looking up a reference key
MAX_EVENT_PAGES = 20
EVENT_PAGE_SIZE = 50

NETWORK_RPC_URLS = {
    "mainnet": "https://fullnode.mainnet.sui.io:443",
    "testnet": "https://fullnode.testnet.sui.io:443",
    "devnet": "https://fullnode.devnet.sui.io:443",
    "localnet": "http://127.0.0.1:9000",
}

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{1,64}$")

_INSUFFICIENT_MARKERS = ("insufficientcoinbalance", "insufficientgas", "insufficient balance")
_INVALID_ADDRESS_MARKERS = ("invalid sui address", "invalid address", "invalid params")


def is_valid_address(address: Optional[str]) -> bool:
    return bool(address) and bool(_ADDRESS_RE.match(address))


def load_private_key(encoded: str) -> Ed25519PrivateKey:
    """Load an Ed25519 key from base64 (32 raw bytes, or flag byte + 32 bytes)."""
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (ValueError, TypeError) as e:
        raise ChainClientError("Sui private key must be base64 encoded") from e
    if len(raw) == 33:
        if raw[0] != ED25519_FLAG:
            raise ChainClientError(f"Unsupported Sui key scheme flag: {raw[0]}")
        raw = raw[1:]
    if len(raw) != 32:
        raise ChainClientError(f"Sui private key must be 32 bytes, got {len(raw)}")
    return Ed25519PrivateKey.from_private_bytes(raw)


def _public_key_bytes(key: Ed25519PrivateKey) -> bytes:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def derive_address(key: Ed25519PrivateKey) -> str:
    """Sui address: Blake2b-256 of the scheme flag followed by the public key."""
    digest = hashlib.blake2b(bytes([ED25519_FLAG]) + _public_key_bytes(key), digest_size=32)
    return "0x" + digest.hexdigest()


def sign_transaction(key: Ed25519PrivateKey, tx_bytes_b64: str) -> str:
    """Return the serialized signature (flag || signature || public key), base64."""
    tx_bytes = base64.b64decode(tx_bytes_b64)
    digest = hashlib.blake2b(TRANSACTION_INTENT + tx_bytes, digest_size=32).digest()
    signature = key.sign(digest)
    return base64.b64encode(bytes([ED25519_FLAG]) + signature + _public_key_bytes(key)).decode()


class SuiChainClient:
    """ChainClient implementation backed by a Sui full node.

    The platform wallet signs every transaction: it holds the buyer's USDC
    after the payment provider settles and is the escrow's recorded payer.
    """

    def __init__(
        self,
        rpc_url: str,
        package_id: str,
        coin_type: str,
        private_key: str,
        gas_budget: int = DEFAULT_GAS_BUDGET,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not package_id:
            raise ChainClientError("Escrow package id is required")
        self.rpc_url = rpc_url
        self.package_id = package_id
        self.coin_type = coin_type
        self.gas_budget = gas_budget
        self.timeout = timeout
        self._transport = transport
        self._key = load_private_key(private_key)
        self.address = derive_address(self._key)
        self._request_id = 0

    # === JSON-RPC ===

    async def _rpc_call(self, method: str, params: list) -> Any:
        self._request_id += 1
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.rpc_url,
                    json={
                        "jsonrpc": "2.0",
                        "method": method,
                        "params": params,
                        "id": self._request_id,
                    },
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
                result = response.json()
        except httpx.TimeoutException as e:
            raise ChainTimeoutError(f"Sui RPC {method} timed out") from e
        except httpx.HTTPError as e:
            raise ChainClientError(f"Sui RPC {method} failed: {e}") from e

        if "error" in result:
            message = str(result["error"].get("message", result["error"]))
            lowered = message.lower()
            if any(m in lowered for m in _INSUFFICIENT_MARKERS):
                raise InsufficientFundsError(message)
            if any(m in lowered for m in _INVALID_ADDRESS_MARKERS):
                raise InvalidAddressError(message)
            raise ChainClientError(f"Sui RPC {method} error: {message}")
        return result.get("result")

    async def _execute(self, tx_bytes: str) -> Dict[str, Any]:
        """Sign and execute a transaction, raising unless it succeeded."""
        signature = sign_transaction(self._key, tx_bytes)
        result = await self._rpc_call(
            "sui_executeTransactionBlock",
            [
                tx_bytes,
                [signature],
                {"showEffects": True, "showObjectChanges": True, "showEvents": True},
                "WaitForLocalExecution",
            ],
        )
        status = (result.get("effects") or {}).get("status") or {}
        if status.get("status") != "success":
            error = status.get("error") or "unknown execution failure"
            if any(m in error.lower() for m in _INSUFFICIENT_MARKERS):
                raise InsufficientFundsError(error)
            raise ChainClientError(f"Transaction {result.get('digest')} failed: {error}")
        return result

    async def _move_call(self, function: str, type_args: List[str], args: List[Any]) -> str:
        result = await self._rpc_call(
            "unsafe_moveCall",
            [
                self.address,
                self.package_id,
                ESCROW_MODULE,
                function,
                type_args,
                args,
                None,
                str(self.gas_budget),
                None,
            ],
        )
        return result["txBytes"]

    # === Coins ===

    async def _select_coin(self, amount_base_units: int) -> str:
        """Return a coin object holding exactly ``amount_base_units``."""
        result = await self._rpc_call("suix_getCoins", [self.address, self.coin_type, None, None])
        coins = sorted(
            result.get("data", []), key=lambda c: int(c["balance"]), reverse=True
        )
        total = sum(int(c["balance"]) for c in coins)
        if total < amount_base_units:
            raise InsufficientFundsError(
                f"Platform wallet holds {total} base units, escrow needs {amount_base_units}"
            )

        for coin in coins:
            if int(coin["balance"]) == amount_base_units:
                return coin["coinObjectId"]

        source = coins[0]
        if int(source["balance"]) < amount_base_units:
            raise ChainClientError(
                "No single USDC coin covers the escrow amount; merge coins first"
            )
        logger.debug(f"Splitting {amount_base_units} from coin {source['coinObjectId']}")
        split = await self._rpc_call(
            "unsafe_splitCoin",
            [
                self.address,
                source["coinObjectId"],
                [str(amount_base_units)],
                None,
                str(self.gas_budget),
            ],
        )
        executed = await self._execute(split["txBytes"])
        new_coin = self._created_object_id(executed, "::coin::Coin")
        if not new_coin:
            raise ChainClientError(f"Split transaction {executed.get('digest')} created no coin")
        return new_coin

    @staticmethod
    def _created_object_id(result: Dict[str, Any], type_fragment: str) -> Optional[str]:
        for change in result.get("objectChanges") or []:
            if change.get("type") == "created" and type_fragment in change.get("objectType", ""):
                return change.get("objectId")
        return None

    # === Escrow operations ===

    async def submit_escrow_create(
        self,
        buyer_address: str,
        worker_address: str,
        amount_base_units: int,
        reference_key: str,
    ) -> ChainReceipt:
        for label, address in (("buyer", buyer_address), ("worker", worker_address)):
            if not is_valid_address(address):
                raise InvalidAddressError(f"Invalid {label} address: {address!r}")
        if amount_base_units <= 0:
            raise ChainClientError(f"Escrow amount must be positive, got {amount_base_units}")

        coin_id = await self._select_coin(amount_base_units)
        tx_bytes = await self._move_call(
            "create_escrow", [self.coin_type], [coin_id, worker_address, reference_key]
        )
        result = await self._execute(tx_bytes)
        object_id = self._created_object_id(result, f"::{ESCROW_MODULE}::{LOCKED_PAYMENT_TYPE}")
        if not object_id:
            raise ChainClientError(f"Escrow transaction {result.get('digest')} created no escrow")
        logger.info(f"Escrow {object_id} created for {reference_key} ({result['digest']})")
        return ChainReceipt(tx_digest=result["digest"], object_id=object_id)

    async def submit_escrow_release(self, escrow_object_id: str) -> ChainReceipt:
        tx_bytes = await self._move_call("release_escrow", [self.coin_type], [escrow_object_id])
        result = await self._execute(tx_bytes)
        logger.info(f"Escrow {escrow_object_id} released ({result['digest']})")
        return ChainReceipt(tx_digest=result["digest"], object_id=escrow_object_id)

    async def submit_escrow_cancel(self, escrow_object_id: str) -> ChainReceipt:
        tx_bytes = await self._move_call("cancel_escrow", [self.coin_type], [escrow_object_id])
        result = await self._execute(tx_bytes)
        logger.info(f"Escrow {escrow_object_id} cancelled ({result['digest']})")
        return ChainReceipt(tx_digest=result["digest"], object_id=escrow_object_id)

    async def find_escrow(self, reference_key: str) -> Optional[ChainReceipt]:
        """Look up an escrow created for ``reference_key`` via its EscrowCreated event."""
        event_type = f"{self.package_id}::{ESCROW_MODULE}::{ESCROW_CREATED_EVENT}"
        cursor = None
        for _ in range(MAX_EVENT_PAGES):
            page = await self._rpc_call(
                "suix_queryEvents",
                [{"MoveEventType": event_type}, cursor, EVENT_PAGE_SIZE, True],
            )
            for event in page.get("data", []):
                fields = event.get("parsedJson") or {}
                if fields.get("job_reference") == reference_key:
                    return ChainReceipt(
                        tx_digest=event["id"]["txDigest"],
                        object_id=fields.get("escrow_id"),
                    )
            if not page.get("hasNextPage"):
                return None
            cursor = page.get("nextCursor")
        logger.warning(
            f"Stopped scanning {event_type} after {MAX_EVENT_PAGES} pages looking for {reference_key}"
        )
        return None
