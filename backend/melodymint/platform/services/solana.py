from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
import enum
import json
import logging
import struct
from typing import Any

import base58
from Crypto.Signature import eddsa
import httpx

from melodymint.platform.config import settings

logger = logging.getLogger(__name__)


SOL_DECIMALS = 9
LAMPORTS_PER_SOL = 10**SOL_DECIMALS

SYSTEM_PROGRAM_ID = bytes(32)
_SYSTEM_TRANSFER_INSTRUCTION = 2

_CONFIRMED_STATUSES = frozenset({"confirmed", "finalized"})


def sol_to_lamports(amount: Decimal) -> int:
    if amount.is_nan():
        raise ValueError("amount is NaN")
    if amount < 0:
        raise ValueError("amount must be non-negative")

    scale = Decimal(10) ** SOL_DECIMALS
    return int((amount * scale).quantize(Decimal("1"), rounding=ROUND_DOWN))


def lamports_to_sol(amount: int) -> Decimal:
    if amount < 0:
        raise ValueError("amount must be non-negative")

    scale = Decimal(10) ** SOL_DECIMALS
    return Decimal(amount) / scale


def decode_address(address: str) -> bytes:
    if not isinstance(address, str) or not address:
        raise ValueError("Invalid address")
    try:
        raw = base58.b58decode(address)
    except ValueError as exc:
        raise ValueError("Invalid address") from exc
    if len(raw) != 32:
        raise ValueError("Invalid address")
    return raw


def is_valid_address(address: str) -> bool:
    try:
        decode_address(address)
    except ValueError:
        return False
    return True


def explorer_url(signature: str, cluster: str | None = None) -> str:
    cluster = cluster or settings.solana_cluster
    if cluster == "mainnet-beta":
        return f"https://explorer.solana.com/tx/{signature}"
    return f"https://explorer.solana.com/tx/{signature}?cluster={cluster}"


class PlatformKeypair:
    """Ed25519 signing key of the platform funding account.

    Accepts the two formats Solana tooling emits: the JSON byte array written
    by ``solana-keygen`` (64 bytes, seed followed by public key) or the same
    bytes base58-encoded. A bare 32-byte seed is accepted as well.
    """

    def __init__(self, seed: bytes) -> None:
        if len(seed) != 32:
            raise ValueError("Ed25519 seed must be 32 bytes")
        self._key = eddsa.import_private_key(seed)
        self._public_key = self._key.public_key().export_key(format="raw")

    @classmethod
    def from_secret(cls, secret: str) -> "PlatformKeypair":
        value = (secret or "").strip()
        if not value:
            raise ValueError("Platform private key is empty")

        raw: bytes
        if value.startswith("["):
            try:
                raw = bytes(json.loads(value))
            except (ValueError, TypeError):
                raise ValueError("Platform private key is not a valid JSON byte array") from None
        else:
            try:
                raw = base58.b58decode(value)
            except ValueError:
                raise ValueError("Platform private key is not valid base58") from None

        if len(raw) == 32:
            return cls(raw)
        if len(raw) != 64:
            raise ValueError("Platform private key must be 32 or 64 bytes")

        keypair = cls(raw[:32])
        if keypair.public_key != raw[32:]:
            raise ValueError("Platform private key does not match its public key")
        return keypair

    @classmethod
    def from_settings(cls) -> "PlatformKeypair":
        if settings.solana_platform_private_key is None:
            raise RuntimeError("SOLANA_PLATFORM_PRIVATE_KEY not configured")
        return cls.from_secret(settings.solana_platform_private_key.get_secret_value())

    @property
    def public_key(self) -> bytes:
        return self._public_key

    @property
    def address(self) -> str:
        return base58.b58encode(self._public_key).decode("ascii")

    def sign(self, message: bytes) -> bytes:
        return eddsa.new(self._key, "rfc8032").sign(message)

    def __repr__(self) -> str:
        return f"PlatformKeypair(address={self.address!r})"


def _encode_length(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value == 0:
            out.append(byte)
            return bytes(out)
        out.append(byte | 0x80)


def compile_transfer_message(*, from_pubkey: bytes, to_pubkey: bytes, lamports: int, recent_blockhash: str) -> bytes:
    """Serialize a legacy transaction message holding one System Program transfer."""
    if lamports <= 0:
        raise ValueError("lamports must be positive")
    if from_pubkey == to_pubkey:
        raise ValueError("source and destination must differ")

    blockhash = base58.b58decode(recent_blockhash)
    if len(blockhash) != 32:
        raise ValueError("Invalid blockhash")

    # 1 required signature, 0 read-only signed, 1 read-only unsigned (system program).
    header = bytes([1, 0, 1])
    account_keys = [from_pubkey, to_pubkey, SYSTEM_PROGRAM_ID]
    data = struct.pack("<IQ", _SYSTEM_TRANSFER_INSTRUCTION, lamports)

    instruction = bytes([2]) + _encode_length(2) + bytes([0, 1]) + _encode_length(len(data)) + data

    return (
        header
        + _encode_length(len(account_keys))
        + b"".join(account_keys)
        + blockhash
        + _encode_length(1)
        + instruction
    )


@dataclass(frozen=True)
class SignedTransfer:
    signature: str
    wire: bytes


def build_signed_transfer(*, keypair: PlatformKeypair, to_address: str, lamports: int, recent_blockhash: str) -> SignedTransfer:
    message = compile_transfer_message(
        from_pubkey=keypair.public_key,
        to_pubkey=decode_address(to_address),
        lamports=lamports,
        recent_blockhash=recent_blockhash,
    )
    signature = keypair.sign(message)
    return SignedTransfer(
        signature=base58.b58encode(signature).decode("ascii"),
        wire=_encode_length(1) + signature + message,
    )


@dataclass(frozen=True)
class Checkpoint:
    blockhash: str
    last_valid_block_height: int


@dataclass(frozen=True)
class SignatureStatus:
    confirmation_status: str | None
    err: Any

    @property
    def is_confirmed(self) -> bool:
        return self.err is None and self.confirmation_status in _CONFIRMED_STATUSES


class ConfirmationOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass(frozen=True)
class ConfirmationResult:
    outcome: ConfirmationOutcome
    error: str | None = None


class SolanaRPCError(RuntimeError):
    def __init__(self, method: str, error: Any) -> None:
        self.method = method
        self.error = error
        super().__init__(f"Solana RPC error on {method}: {error}")


class SubmissionError(RuntimeError):
    """The signed transfer could not be handed to the network.

    ``may_have_landed`` is true when the request failed in transport, after
    the bytes may already have reached the node.
    """

    def __init__(self, message: str, *, signature: str, may_have_landed: bool) -> None:
        self.signature = signature
        self.may_have_landed = may_have_landed
        super().__init__(message)


@dataclass(frozen=True)
class SolanaConfig:
    rpc_url: str
    commitment: str = "confirmed"
    poll_interval_seconds: float = 0.5
    request_timeout_seconds: float = 10.0


class SolanaClient:
    def __init__(self, config: SolanaConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "SolanaClient":
        if not settings.solana_rpc_url:
            raise RuntimeError("Solana RPC not configured")

        return cls(
            SolanaConfig(
                rpc_url=settings.solana_rpc_url,
                poll_interval_seconds=settings.confirmation_poll_interval_seconds,
            )
        )

    @property
    def config(self) -> SolanaConfig:
        return self._config

    async def _rpc(self, method: str, params: list) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params,
        }

        async with httpx.AsyncClient(timeout=self._config.request_timeout_seconds, transport=self._transport) as client:
            resp = await client.post(self._config.rpc_url, json=payload)
            resp.raise_for_status()
            data = resp.json()

        if isinstance(data, dict) and data.get("error"):
            raise SolanaRPCError(method, data["error"])

        if not isinstance(data, dict) or "result" not in data:
            raise SolanaRPCError(method, "no result")

        return data["result"]

    async def get_recent_checkpoint(self) -> Checkpoint:
        result = await self._rpc("getLatestBlockhash", [{"commitment": self._config.commitment}])
        value = (result or {}).get("value") or {}
        blockhash = value.get("blockhash")
        if not isinstance(blockhash, str) or not blockhash:
            raise SolanaRPCError("getLatestBlockhash", "missing blockhash")

        return Checkpoint(blockhash=blockhash, last_valid_block_height=int(value.get("lastValidBlockHeight") or 0))

    async def get_balance(self, address: str) -> int:
        result = await self._rpc("getBalance", [address, {"commitment": self._config.commitment}])
        value = (result or {}).get("value")
        if not isinstance(value, int):
            raise SolanaRPCError("getBalance", f"invalid balance: {value!r}")
        return value

    async def send_signed_transfer(self, transfer: SignedTransfer) -> str:
        """Broadcast a transfer built by ``build_signed_transfer``. Returns its signature."""
        encoded = base64.b64encode(transfer.wire).decode("ascii")
        try:
            result = await self._rpc(
                "sendTransaction",
                [encoded, {"encoding": "base64", "skipPreflight": False, "preflightCommitment": self._config.commitment}],
            )
        except SolanaRPCError as exc:
            raise SubmissionError(str(exc), signature=transfer.signature, may_have_landed=False) from exc
        except httpx.HTTPError as exc:
            raise SubmissionError(
                f"Solana RPC transport failure on sendTransaction: {exc}",
                signature=transfer.signature,
                may_have_landed=True,
            ) from exc

        if isinstance(result, str) and result and result != transfer.signature:
            logger.warning("RPC returned signature %s, expected %s", result, transfer.signature)

        return transfer.signature

    async def get_signature_status(self, signature: str, *, search_history: bool = False) -> SignatureStatus | None:
        result = await self._rpc(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": search_history}],
        )
        values = (result or {}).get("value") or []
        entry = values[0] if values else None
        if not isinstance(entry, dict):
            return None

        return SignatureStatus(confirmation_status=entry.get("confirmationStatus"), err=entry.get("err"))

    async def await_confirmation(self, signature: str, timeout: float) -> ConfirmationResult:
        async def _poll() -> ConfirmationResult:
            while True:
                try:
                    status = await self.get_signature_status(signature)
                except (SolanaRPCError, httpx.HTTPError) as exc:
                    logger.warning("Polling status of %s failed: %s", signature, exc)
                    status = None

                if status is not None:
                    if status.err is not None:
                        return ConfirmationResult(ConfirmationOutcome.ERROR, error=json.dumps(status.err, default=str))
                    if status.is_confirmed:
                        return ConfirmationResult(ConfirmationOutcome.CONFIRMED)

                await asyncio.sleep(self._config.poll_interval_seconds)

        try:
            return await asyncio.wait_for(_poll(), timeout=timeout)
        except asyncio.TimeoutError:
            return ConfirmationResult(ConfirmationOutcome.TIMEOUT)
