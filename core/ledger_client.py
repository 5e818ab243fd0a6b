"""
Read-only ledger client.

Fetches the bonding-curve account for an asset over JSON-RPC and decodes
its reserves. Reads are idempotent so callers may retry freely.

The curve account of a mint is the program address derived from
``[b"bonding-curve", mint]`` under the curve program id.
"""

import base64
import hashlib
import logging
import struct
from functools import lru_cache
from typing import Callable, Optional, Protocol

import requests
from solders.pubkey import Pubkey

from core.exceptions import InvalidReserveData, LedgerReadError
from core.models import ReserveState

logger = logging.getLogger(__name__)

PUMP_PROGRAM_ID = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
CURVE_SEED = b"bonding-curve"
# Anchor account discriminator: first 8 bytes of sha256("account:<AccountName>")
CURVE_DISCRIMINATOR = hashlib.sha256(b"account:BondingCurve").digest()[:8]

# Curve account layout: 8-byte discriminator, five little-endian u64 fields, one u8 flag
_CURVE_U64_FIELDS = struct.Struct("<QQQQQ")
_CURVE_FIELDS_OFFSET = 8
_CURVE_COMPLETE_OFFSET = 48
CURVE_ACCOUNT_MIN_LENGTH = 49


class LedgerReader(Protocol):
    def read_reserves(self, asset: str) -> ReserveState:
        ...


def curve_account_resolver(program_id: str = PUMP_PROGRAM_ID) -> Callable[[str], str]:
    """
    Build a resolver mapping a mint address to its curve account address.

    Raises ValueError right away for a malformed ``program_id``; the returned
    callable raises ValueError for an asset that is not a valid mint address.
    """
    program = Pubkey.from_string(program_id)

    @lru_cache(maxsize=4096)
    def resolve(asset: str) -> str:
        mint = Pubkey.from_string(asset)
        address, _bump = Pubkey.find_program_address([CURVE_SEED, bytes(mint)], program)
        return str(address)

    return resolve


def decode_curve_account(
    asset: str,
    data: bytes,
    quote_decimals: int = 9,
    token_decimals: int = 6,
) -> ReserveState:
    """Decode raw curve account bytes into normalized reserve units."""
    if len(data) < CURVE_ACCOUNT_MIN_LENGTH:
        raise InvalidReserveData(asset, f"account data too short ({len(data)} bytes)")
    if data[:_CURVE_FIELDS_OFFSET] != CURVE_DISCRIMINATOR:
        raise InvalidReserveData(asset, f"unexpected account discriminator {data[:_CURVE_FIELDS_OFFSET].hex()}")

    (
        virtual_token,
        virtual_quote,
        real_token,
        real_quote,
        total_supply,
    ) = _CURVE_U64_FIELDS.unpack_from(data, _CURVE_FIELDS_OFFSET)
    complete = data[_CURVE_COMPLETE_OFFSET] == 1

    token_scale = 10 ** token_decimals
    quote_scale = 10 ** quote_decimals
    return ReserveState(
        base_reserves=virtual_token / token_scale,
        quote_reserves=virtual_quote / quote_scale,
        total_supply=total_supply / token_scale,
        is_finalized=complete,
        real_base_reserves=real_token / token_scale,
        real_quote_reserves=real_quote / quote_scale,
    )


class RpcLedgerReader:
    """
    JSON-RPC ``getAccountInfo`` reader.

    ``account_resolver`` maps an asset id to the curve account address; by
    default the asset is treated as a mint and its curve account is derived
    under ``program_id``.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        commitment: str = "confirmed",
        account_resolver: Optional[Callable[[str], str]] = None,
        program_id: str = PUMP_PROGRAM_ID,
        quote_decimals: int = 9,
        token_decimals: int = 6,
        session: Optional[requests.Session] = None,
    ):
        if not endpoint:
            raise ValueError("endpoint is required")
        self.endpoint = endpoint
        self.timeout = timeout
        self.commitment = commitment
        self.account_resolver = account_resolver or curve_account_resolver(program_id)
        self.quote_decimals = quote_decimals
        self.token_decimals = token_decimals
        self._session = session or requests.Session()
        self._request_id = 0

    def _rpc(self, method: str, params: list) -> dict:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }
        try:
            response = self._session.post(self.endpoint, json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise LedgerReadError(self.endpoint, e) from e

        if body.get("error"):
            raise LedgerReadError(self.endpoint, RuntimeError(str(body["error"])))
        return body.get("result") or {}

    def read_reserves(self, asset: str) -> ReserveState:
        try:
            address = self.account_resolver(asset)
        except ValueError as e:
            raise InvalidReserveData(asset, f"not a valid mint address: {e}") from e
        result = self._rpc(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        value = result.get("value")
        if not value or not value.get("data"):
            raise LedgerReadError(self.endpoint, LookupError(f"curve account not found for {asset}"))

        encoded = value["data"][0] if isinstance(value["data"], list) else value["data"]
        try:
            raw = base64.b64decode(encoded)
        except (TypeError, ValueError) as e:
            raise InvalidReserveData(asset, f"undecodable account data: {e}") from e

        return decode_curve_account(asset, raw, self.quote_decimals, self.token_decimals)
