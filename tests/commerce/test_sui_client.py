"""Tests for the Sui chain client, against a mocked JSON-RPC node."""

import base64
import hashlib
import json

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from lancer.commerce.escrow.sui import (
    TRANSACTION_INTENT,
    SuiChainClient,
    derive_address,
    is_valid_address,
    load_private_key,
    sign_transaction,
)
from lancer.protocols import (
    ChainClientError,
    ChainTimeoutError,
    InsufficientFundsError,
    InvalidAddressError,
)
from tests.fakes import BUYER_WALLET, wallet

SEED = bytes(range(32))
PRIVATE_KEY_B64 = base64.b64encode(SEED).decode()
PACKAGE_ID = "0x" + "a" * 64
COIN_TYPE = f"{'0x' + 'c' * 64}::usdc::USDC"
WORKER_WALLET = wallet(2)
TX_BYTES = base64.b64encode(b"unsigned-transaction").decode()


class FakeSuiNode:
    """Answers JSON-RPC calls from a dict of method -> result (or callable)."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append((body["method"], body["params"]))
        answer = self.responses.get(body["method"])
        if callable(answer):
            answer = answer(body["params"])
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, dict) and "error" in answer:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], **answer})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": answer})

    def methods(self):
        return [method for method, _ in self.calls]


def _executed(digest, created_type=None, created_id=None, status="success", error=None):
    result = {
        "digest": digest,
        "effects": {"status": {"status": status}},
        "objectChanges": [],
    }
    if error:
        result["effects"]["status"]["error"] = error
    if created_type:
        result["objectChanges"].append(
            {"type": "created", "objectType": created_type, "objectId": created_id}
        )
    return result


def _client(node: FakeSuiNode) -> SuiChainClient:
    return SuiChainClient(
        rpc_url="https://sui.test",
        package_id=PACKAGE_ID,
        coin_type=COIN_TYPE,
        private_key=PRIVATE_KEY_B64,
        transport=httpx.MockTransport(node),
    )


ESCROW_TYPE = f"{PACKAGE_ID}::escrow::LockedPayment<{COIN_TYPE}>"


class TestKeys:
    def test_address_derivation(self):
        key = load_private_key(PRIVATE_KEY_B64)
        address = derive_address(key)

        assert is_valid_address(address)
        assert len(address) == 66
        assert derive_address(load_private_key(PRIVATE_KEY_B64)) == address

    def test_flagged_key_accepted(self):
        flagged = base64.b64encode(b"\x00" + SEED).decode()
        assert derive_address(load_private_key(flagged)) == derive_address(
            load_private_key(PRIVATE_KEY_B64)
        )

    def test_unsupported_scheme_flag(self):
        secp = base64.b64encode(b"\x01" + SEED).decode()
        with pytest.raises(ChainClientError, match="Unsupported"):
            load_private_key(secp)

    def test_wrong_length(self):
        with pytest.raises(ChainClientError, match="32 bytes"):
            load_private_key(base64.b64encode(b"short").decode())

    def test_not_base64(self):
        with pytest.raises(ChainClientError, match="base64"):
            load_private_key("suiprivkey1-not-base64!")

    def test_signature_layout_and_validity(self):
        key = load_private_key(PRIVATE_KEY_B64)
        serialized = base64.b64decode(sign_transaction(key, TX_BYTES))

        assert len(serialized) == 1 + 64 + 32
        assert serialized[0] == 0
        signature, public = serialized[1:65], serialized[65:]
        digest = hashlib.blake2b(
            TRANSACTION_INTENT + base64.b64decode(TX_BYTES), digest_size=32
        ).digest()
        # Raises InvalidSignature on mismatch
        Ed25519PublicKey.from_public_bytes(public).verify(signature, digest)

    @pytest.mark.parametrize(
        "address,valid",
        [
            (BUYER_WALLET, True),
            ("0x2", True),
            ("0x" + "g" * 64, False),
            ("0x" + "a" * 65, False),
            ("a" * 64, False),
            ("", False),
            (None, False),
        ],
    )
    def test_is_valid_address(self, address, valid):
        assert is_valid_address(address) == valid


class TestCreateEscrow:
    @pytest.mark.asyncio
    async def test_exact_coin_is_used(self):
        node = FakeSuiNode(
            {
                "suix_getCoins": {
                    "data": [
                        {"coinObjectId": "0xbig", "balance": "900000000"},
                        {"coinObjectId": "0xexact", "balance": "200000000"},
                    ]
                },
                "unsafe_moveCall": {"txBytes": TX_BYTES},
                "sui_executeTransactionBlock": _executed("tx-create", ESCROW_TYPE, "0xescrow"),
            }
        )
        client = _client(node)

        receipt = await client.submit_escrow_create(
            BUYER_WALLET, WORKER_WALLET, 200_000_000, "LN-20260101-AAAA0000"
        )

        assert receipt.tx_digest == "tx-create"
        assert receipt.object_id == "0xescrow"
        assert node.methods() == ["suix_getCoins", "unsafe_moveCall", "sui_executeTransactionBlock"]
        move_params = node.calls[1][1]
        assert move_params[0] == client.address
        assert move_params[2:6] == [
            "escrow",
            "create_escrow",
            [COIN_TYPE],
            ["0xexact", WORKER_WALLET, "LN-20260101-AAAA0000"],
        ]
        execute_params = node.calls[2][1]
        assert execute_params[0] == TX_BYTES
        assert execute_params[3] == "WaitForLocalExecution"

    @pytest.mark.asyncio
    async def test_coin_is_split_when_no_exact_match(self):
        executions = iter(
            [
                _executed("tx-split", f"0x2::coin::Coin<{COIN_TYPE}>", "0xsplit"),
                _executed("tx-create", ESCROW_TYPE, "0xescrow"),
            ]
        )
        node = FakeSuiNode(
            {
                "suix_getCoins": {"data": [{"coinObjectId": "0xbig", "balance": "900000000"}]},
                "unsafe_splitCoin": {"txBytes": TX_BYTES},
                "unsafe_moveCall": {"txBytes": TX_BYTES},
                "sui_executeTransactionBlock": lambda params: next(executions),
            }
        )
        client = _client(node)

        receipt = await client.submit_escrow_create(BUYER_WALLET, WORKER_WALLET, 5_000_000, "LN-1")

        assert receipt.object_id == "0xescrow"
        assert "unsafe_splitCoin" in node.methods()
        create_args = node.calls[3][1][5]
        assert create_args[0] == "0xsplit"

    @pytest.mark.asyncio
    async def test_insufficient_balance(self):
        node = FakeSuiNode(
            {"suix_getCoins": {"data": [{"coinObjectId": "0xsmall", "balance": "100"}]}}
        )
        with pytest.raises(InsufficientFundsError):
            await _client(node).submit_escrow_create(BUYER_WALLET, WORKER_WALLET, 1_000, "LN-1")

    @pytest.mark.asyncio
    async def test_fragmented_balance_needs_merge(self):
        node = FakeSuiNode(
            {
                "suix_getCoins": {
                    "data": [
                        {"coinObjectId": "0x1", "balance": "600"},
                        {"coinObjectId": "0x2", "balance": "600"},
                    ]
                }
            }
        )
        with pytest.raises(ChainClientError, match="merge"):
            await _client(node).submit_escrow_create(BUYER_WALLET, WORKER_WALLET, 1_000, "LN-1")

    @pytest.mark.asyncio
    async def test_invalid_worker_address_rejected_before_rpc(self):
        node = FakeSuiNode({})
        with pytest.raises(InvalidAddressError):
            await _client(node).submit_escrow_create(BUYER_WALLET, "not-an-address", 1_000, "LN-1")
        assert node.calls == []

    @pytest.mark.asyncio
    async def test_failed_execution(self):
        node = FakeSuiNode(
            {
                "suix_getCoins": {"data": [{"coinObjectId": "0xexact", "balance": "1000"}]},
                "unsafe_moveCall": {"txBytes": TX_BYTES},
                "sui_executeTransactionBlock": _executed(
                    "tx-bad", status="failure", error="MoveAbort in escrow"
                ),
            }
        )
        with pytest.raises(ChainClientError, match="MoveAbort"):
            await _client(node).submit_escrow_create(BUYER_WALLET, WORKER_WALLET, 1_000, "LN-1")


class TestRpcErrors:
    @pytest.mark.asyncio
    async def test_rpc_error_mapped_to_insufficient_funds(self):
        node = FakeSuiNode(
            {"unsafe_moveCall": {"error": {"code": -32002, "message": "InsufficientGas"}}}
        )
        with pytest.raises(InsufficientFundsError):
            await _client(node).submit_escrow_release("0xescrow")

    @pytest.mark.asyncio
    async def test_rpc_error_mapped_to_invalid_address(self):
        node = FakeSuiNode(
            {"unsafe_moveCall": {"error": {"code": -32602, "message": "Invalid params"}}}
        )
        with pytest.raises(InvalidAddressError):
            await _client(node).submit_escrow_cancel("0xescrow")

    @pytest.mark.asyncio
    async def test_timeout(self):
        node = FakeSuiNode({"unsafe_moveCall": httpx.ReadTimeout("slow node")})
        with pytest.raises(ChainTimeoutError):
            await _client(node).submit_escrow_release("0xescrow")

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        client = SuiChainClient(
            rpc_url="https://sui.test",
            package_id=PACKAGE_ID,
            coin_type=COIN_TYPE,
            private_key=PRIVATE_KEY_B64,
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(ChainClientError):
            await client.submit_escrow_release("0xescrow")

    def test_package_id_required(self):
        with pytest.raises(ChainClientError):
            SuiChainClient("https://sui.test", "", COIN_TYPE, PRIVATE_KEY_B64)


class TestReleaseAndCancel:
    @pytest.mark.asyncio
    async def test_release(self):
        node = FakeSuiNode(
            {
                "unsafe_moveCall": {"txBytes": TX_BYTES},
                "sui_executeTransactionBlock": _executed("tx-release"),
            }
        )
        receipt = await _client(node).submit_escrow_release("0xescrow")

        assert receipt.tx_digest == "tx-release"
        assert node.calls[0][1][3] == "release_escrow"
        assert node.calls[0][1][5] == ["0xescrow"]

    @pytest.mark.asyncio
    async def test_cancel(self):
        node = FakeSuiNode(
            {
                "unsafe_moveCall": {"txBytes": TX_BYTES},
                "sui_executeTransactionBlock": _executed("tx-cancel"),
            }
        )
        receipt = await _client(node).submit_escrow_cancel("0xescrow")
        assert receipt.tx_digest == "tx-cancel"
        assert node.calls[0][1][3] == "cancel_escrow"


class TestFindEscrow:
    @pytest.mark.asyncio
    async def test_found_on_second_page(self):
        pages = iter(
            [
                {
                    "data": [
                        {
                            "id": {"txDigest": "tx-other"},
                            "parsedJson": {"job_reference": "LN-OTHER", "escrow_id": "0x1"},
                        }
                    ],
                    "hasNextPage": True,
                    "nextCursor": {"txDigest": "tx-other", "eventSeq": "0"},
                },
                {
                    "data": [
                        {
                            "id": {"txDigest": "tx-mine"},
                            "parsedJson": {"job_reference": "LN-MINE", "escrow_id": "0x2"},
                        }
                    ],
                    "hasNextPage": False,
                },
            ]
        )
        node = FakeSuiNode({"suix_queryEvents": lambda params: next(pages)})

        receipt = await _client(node).find_escrow("LN-MINE")

        assert receipt.tx_digest == "tx-mine"
        assert receipt.object_id == "0x2"
        first_query = node.calls[0][1]
        assert first_query[0] == {"MoveEventType": f"{PACKAGE_ID}::escrow::EscrowCreated"}
        assert node.calls[1][1][1] == {"txDigest": "tx-other", "eventSeq": "0"}

    @pytest.mark.asyncio
    async def test_not_found(self):
        node = FakeSuiNode({"suix_queryEvents": {"data": [], "hasNextPage": False}})
        assert await _client(node).find_escrow("LN-NONE") is None
