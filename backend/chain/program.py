"""Account layouts, PDAs, and instruction encoding for the prediction market program."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from datetime import datetime, timezone

import base58
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from app.core.errors import DataIntegrityError
from app.domain import MarketState, OnChainMarket

MARKET_SEED = b"market"
GLOBAL_CONFIG_SEED = b"global-config"
MARKET_ID_BYTES = 32
_DISCRIMINATOR_LEN = 8


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:_DISCRIMINATOR_LEN]


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:_DISCRIMINATOR_LEN]


MARKET_ACCOUNT_DISCRIMINATOR = account_discriminator("MarketAccount")
GLOBAL_CONFIG_DISCRIMINATOR = account_discriminator("GlobalConfig")


def market_id_bytes(market_id: str) -> bytes:
    """Decode the hex market identifier used off chain into the 32-byte seed."""

    try:
        raw = bytes.fromhex(market_id)
    except ValueError as exc:
        raise DataIntegrityError(f"Market id {market_id!r} is not hex encoded") from exc
    if len(raw) != MARKET_ID_BYTES:
        raise DataIntegrityError(
            f"Market id {market_id!r} decodes to {len(raw)} bytes, expected {MARKET_ID_BYTES}"
        )
    return raw


def derive_market_address(program_id: Pubkey, market_id: str) -> Pubkey:
    address, _bump = Pubkey.find_program_address([MARKET_SEED, market_id_bytes(market_id)], program_id)
    return address


def derive_global_config_address(program_id: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address([GLOBAL_CONFIG_SEED], program_id)
    return address


def load_backend_keypair(secret: str | None) -> Keypair:
    if not secret:
        raise ValueError("BACKEND_AUTHORITY_PRIVATE_KEY is not configured")
    try:
        raw = base58.b58decode(secret.strip().strip("\"'"))
    except ValueError as exc:
        raise ValueError("BACKEND_AUTHORITY_PRIVATE_KEY is not valid base58") from exc
    if len(raw) != 64:
        raise ValueError(f"BACKEND_AUTHORITY_PRIVATE_KEY must decode to 64 bytes, got {len(raw)}")
    return Keypair.from_bytes(raw)


# ----------------------------------------------------------------------
# Instructions


def _encode_option_u32(value: int | None) -> bytes:
    if value is None:
        return b"\x00"
    if not 0 <= value <= 0xFFFFFFFF:
        raise DataIntegrityError(f"Vote count {value} does not fit in u32")
    return b"\x01" + struct.pack("<I", value)


def _authority_accounts(market: Pubkey, global_config: Pubkey, authority: Pubkey) -> list[AccountMeta]:
    return [
        AccountMeta(pubkey=market, is_signer=False, is_writable=True),
        AccountMeta(pubkey=global_config, is_signer=False, is_writable=False),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]


def build_approve_market_ix(
    program_id: Pubkey,
    market: Pubkey,
    authority: Pubkey,
    *,
    likes: int,
    dislikes: int,
) -> Instruction:
    """Record final proposal tallies; the program moves Proposed -> Approved when they pass."""

    if likes < 0 or dislikes < 0 or likes > 0xFFFFFFFF or dislikes > 0xFFFFFFFF:
        raise DataIntegrityError(f"Proposal tallies out of range: likes={likes} dislikes={dislikes}")
    data = instruction_discriminator("aggregate_proposal_votes") + struct.pack("<II", likes, dislikes)
    return Instruction(
        program_id,
        data,
        _authority_accounts(market, derive_global_config_address(program_id), authority),
    )


def build_finalize_market_ix(
    program_id: Pubkey,
    market: Pubkey,
    authority: Pubkey,
    *,
    dispute_agree: int | None = None,
    dispute_disagree: int | None = None,
) -> Instruction:
    data = (
        instruction_discriminator("finalize_market")
        + _encode_option_u32(dispute_agree)
        + _encode_option_u32(dispute_disagree)
    )
    global_config = derive_global_config_address(program_id)
    accounts = [
        AccountMeta(pubkey=global_config, is_signer=False, is_writable=False),
        AccountMeta(pubkey=market, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]
    return Instruction(program_id, data, accounts)


# ----------------------------------------------------------------------
# Account decoding


class _Cursor:
    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = data
        self._offset = offset

    def take(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise DataIntegrityError(
                f"Account data truncated: needed {end} bytes, have {len(self._data)}"
            )
        chunk = self._data[self._offset : end]
        self._offset = end
        return chunk

    def unpack(self, fmt: str):
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))

    def u8(self) -> int:
        return self.unpack("<B")[0]

    def u16(self) -> int:
        return self.unpack("<H")[0]

    def u32(self) -> int:
        return self.unpack("<I")[0]

    def i64(self) -> int:
        return self.unpack("<q")[0]

    def boolean(self) -> bool:
        return self.u8() != 0

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self.take(32))

    def option_bool(self) -> bool | None:
        return self.boolean() if self.u8() else None

    def option_i64(self) -> int | None:
        return self.i64() if self.u8() else None


def _timestamp(value: int) -> datetime | None:
    if value <= 0:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def decode_market_account(address: str, data: bytes) -> OnChainMarket:
    if data[:_DISCRIMINATOR_LEN] != MARKET_ACCOUNT_DISCRIMINATOR:
        raise DataIntegrityError(f"Account {address} is not a MarketAccount")

    cursor = _Cursor(data, _DISCRIMINATOR_LEN)
    market_id = cursor.take(MARKET_ID_BYTES).hex()
    cursor.pubkey()  # creator
    try:
        state = MarketState.from_chain(cursor.u8())
    except ValueError as exc:
        raise DataIntegrityError(f"Account {address}: {exc}") from exc
    cursor.unpack("<6Q")  # pricing and liquidity fields
    (
        _created_at,
        _approved_at,
        _activated_at,
        resolution_proposed_at,
        _resolved_at,
        finalized_at,
    ) = cursor.unpack("<6q")
    cursor.pubkey()  # resolver
    proposed_outcome = cursor.option_bool()
    final_outcome = cursor.option_bool()
    cursor.take(46)  # ipfs evidence hash
    dispute_initiated_at = cursor.i64()
    cursor.pubkey()  # dispute initiator
    cursor.unpack("<3Q")  # accumulated fees
    proposal_likes, proposal_dislikes, _proposal_total = cursor.unpack("<3I")
    cursor.unpack("<3I")  # resolution tallies
    dispute_agree, dispute_disagree, _dispute_total = cursor.unpack("<3I")
    was_disputed = cursor.boolean()
    is_cancelled = cursor.boolean()

    return OnChainMarket(
        address=address,
        market_id=market_id,
        state=state,
        proposed_outcome=proposed_outcome,
        final_outcome=final_outcome,
        resolution_proposed_at=_timestamp(resolution_proposed_at),
        dispute_initiated_at=_timestamp(dispute_initiated_at),
        finalized_at=_timestamp(finalized_at),
        proposal_likes=proposal_likes,
        proposal_dislikes=proposal_dislikes,
        dispute_agree=dispute_agree,
        dispute_disagree=dispute_disagree,
        was_disputed=was_disputed,
        is_cancelled=is_cancelled,
    )


@dataclass(slots=True)
class GlobalConfigAccount:
    admin: Pubkey
    backend_authority: Pubkey
    proposal_approval_threshold: int
    dispute_success_threshold: int
    dispute_period_seconds: int
    is_paused: bool


def decode_global_config(data: bytes) -> GlobalConfigAccount:
    if data[:_DISCRIMINATOR_LEN] != GLOBAL_CONFIG_DISCRIMINATOR:
        raise DataIntegrityError("Account is not the program GlobalConfig")

    cursor = _Cursor(data, _DISCRIMINATOR_LEN)
    admin = cursor.pubkey()
    backend_authority = cursor.pubkey()
    cursor.pubkey()  # protocol fee wallet
    cursor.unpack("<3H")  # fee bps
    proposal_threshold = cursor.u16()
    dispute_threshold = cursor.u16()
    cursor.i64()  # min resolution delay
    dispute_period = cursor.i64()
    cursor.u16()  # min resolver reputation
    is_paused = cursor.boolean()
    return GlobalConfigAccount(
        admin=admin,
        backend_authority=backend_authority,
        proposal_approval_threshold=proposal_threshold,
        dispute_success_threshold=dispute_threshold,
        dispute_period_seconds=dispute_period,
        is_paused=is_paused,
    )
