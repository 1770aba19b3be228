from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger
from solana.rpc.api import Client
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from app.core.config import Settings
from app.core.errors import TransientChainError
from app.domain import OnChainMarket

from .errors import classify_error
from .program import (
    GlobalConfigAccount,
    decode_global_config,
    decode_market_account,
    derive_global_config_address,
    derive_market_address,
)

_CONFIRMATION_RANKS = [
    TransactionConfirmationStatus.Processed,
    TransactionConfirmationStatus.Confirmed,
    TransactionConfirmationStatus.Finalized,
]
_COMMITMENT_RANKS = {"processed": 0, "confirmed": 1, "finalized": 2}


@dataclass(slots=True, frozen=True)
class BlockhashToken:
    blockhash: Hash
    last_valid_block_height: int


class SolanaChainClient:
    """Thin synchronous wrapper around the Solana JSON-RPC endpoints this service needs."""

    def __init__(
        self,
        settings: Settings,
        *,
        rpc: Client | None = None,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.program_id = Pubkey.from_string(settings.program_id)
        self.commitment = Commitment(settings.commitment)
        self.confirmation_timeout = settings.confirmation_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._required_rank = _COMMITMENT_RANKS[settings.commitment]
        self._rpc = rpc or Client(settings.solana_rpc_url, commitment=self.commitment)

    # ------------------------------------------------------------------
    # Reads

    def market_address(self, market_id: str) -> Pubkey:
        return derive_market_address(self.program_id, market_id)

    def fetch_market(self, market_id: str) -> OnChainMarket | None:
        address = self.market_address(market_id)
        response = self._rpc.get_account_info(address, commitment=self.commitment)
        if response.value is None:
            return None
        return decode_market_account(str(address), bytes(response.value.data))

    def fetch_global_config(self) -> GlobalConfigAccount | None:
        address = derive_global_config_address(self.program_id)
        response = self._rpc.get_account_info(address, commitment=self.commitment)
        if response.value is None:
            return None
        return decode_global_config(bytes(response.value.data))

    def latest_signature(self, address: Pubkey) -> str | None:
        response = self._rpc.get_signatures_for_address(address, limit=1, commitment=self.commitment)
        if not response.value:
            return None
        return str(response.value[0].signature)

    def get_slot(self) -> int:
        return self._rpc.get_slot(commitment=self.commitment).value

    def latest_blockhash(self) -> BlockhashToken:
        response = self._rpc.get_latest_blockhash(commitment=self.commitment)
        return BlockhashToken(
            blockhash=response.value.blockhash,
            last_valid_block_height=response.value.last_valid_block_height,
        )

    # ------------------------------------------------------------------
    # Writes

    def send_and_confirm(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        token: BlockhashToken,
    ) -> str:
        if not signers:
            raise ValueError("At least one signer is required to pay for the transaction")
        message = MessageV0.try_compile(
            payer=signers[0].pubkey(),
            instructions=list(instructions),
            address_lookup_table_accounts=[],
            recent_blockhash=token.blockhash,
        )
        transaction = VersionedTransaction(message, list(signers))
        response = self._rpc.send_transaction(
            transaction,
            opts=TxOpts(skip_preflight=False, preflight_commitment=self.commitment),
        )
        signature = response.value
        self._wait_for_confirmation(signature)
        return str(signature)

    def _wait_for_confirmation(self, signature) -> None:
        deadline = time.monotonic() + self.confirmation_timeout
        while True:
            status = self._rpc.get_signature_statuses([signature]).value[0]
            if status is not None:
                if status.err is not None:
                    raise classify_error(RPCException(f"Transaction {signature} failed: {status.err}"))
                confirmation = status.confirmation_status
                if confirmation is not None and _CONFIRMATION_RANKS.index(confirmation) >= self._required_rank:
                    return
            if time.monotonic() >= deadline:
                raise TransientChainError(
                    f"Transaction {signature} not confirmed within {self.confirmation_timeout:.0f}s"
                )
            time.sleep(self.poll_interval_seconds)

    def close(self) -> None:
        try:
            self._rpc._provider.session.close()
        except AttributeError:
            logger.debug("Solana RPC provider exposes no closable session")

    def __enter__(self) -> "SolanaChainClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
