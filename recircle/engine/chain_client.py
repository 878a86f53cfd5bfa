"""
ReCircle Rewards :: Rewards-pool chain client
=============================================

Submits one reward transfer to the rewards-pool contract and waits for its
receipt. Anything short of a mined receipt with ``status == 1`` inside the
timeout is a LegSubmissionError: an unconfirmed transfer is never success.

    distributeRewardWithProof(appId, recipient, amount, proofTypes, proofValues)

Signing uses eth_account with the distributor key; the key never leaves
this module and only the derived address is logged.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Optional, Protocol, Sequence

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted

from engine.errors import ConfigurationError, LegSubmissionError

logger = logging.getLogger("recircle.chain")

# ── Configuration ──────────────────────────────────────────────────────────────
RPC_URL           = os.getenv("REWARDS_RPC_URL", "")
CONTRACT_ADDRESS  = os.getenv("REWARDS_CONTRACT_ADDRESS", "")
APP_ID            = os.getenv("REWARDS_APP_ID", "")
DISTRIBUTOR_KEY   = os.getenv("DISTRIBUTOR_PRIVATE_KEY", "")
RPC_TIMEOUT_SEC   = int(os.getenv("REWARDS_RPC_TIMEOUT_SEC", "10"))
GAS_LIMIT         = int(os.getenv("REWARDS_GAS_LIMIT", "300000"))
DRY_RUN           = os.getenv("REWARDS_DRY_RUN", "false").lower() == "true"

REWARDS_POOL_ABI = [
    {
        "inputs": [
            {"internalType": "bytes32",  "name": "appId",       "type": "bytes32"},
            {"internalType": "address",  "name": "recipient",   "type": "address"},
            {"internalType": "uint256",  "name": "amount",      "type": "uint256"},
            {"internalType": "string[]", "name": "proofTypes",  "type": "string[]"},
            {"internalType": "string[]", "name": "proofValues", "type": "string[]"},
        ],
        "name": "distributeRewardWithProof",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]

Proof = Sequence[tuple]


class RewardsClient(Protocol):
    sender_address: str

    def submit_reward(self, recipient: str, amount: int, proof: Proof, timeout: float) -> str:
        ...


def _app_id_bytes(app_id: str) -> bytes:
    raw = app_id.strip().removeprefix("0x")
    if len(raw) != 64:
        raise ConfigurationError("REWARDS_APP_ID must be a 32-byte hex string")
    return bytes.fromhex(raw)


class Web3RewardsClient:

    def __init__(
        self,
        rpc_url:          str = RPC_URL,
        contract_address: str = CONTRACT_ADDRESS,
        app_id:           str = APP_ID,
        private_key_hex:  str = DISTRIBUTOR_KEY,
        rpc_timeout:      int = RPC_TIMEOUT_SEC,
    ):
        missing = [
            name for name, value in (
                ("REWARDS_RPC_URL", rpc_url),
                ("REWARDS_CONTRACT_ADDRESS", contract_address),
                ("REWARDS_APP_ID", app_id),
                ("DISTRIBUTOR_PRIVATE_KEY", private_key_hex),
            ) if not value
        ]
        if missing:
            raise ConfigurationError(f"Missing rewards chain configuration: {', '.join(missing)}")

        try:
            self._account = Account.from_key(private_key_hex.strip())
        except Exception as e:
            raise ConfigurationError(f"DISTRIBUTOR_PRIVATE_KEY is not a valid key: {e}") from e

        self.sender_address = self._account.address
        self._app_id = _app_id_bytes(app_id)
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": rpc_timeout}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=REWARDS_POOL_ABI,
        )
        logger.info(f"[CHAIN] Rewards client ready: sender={self.sender_address} pool={contract_address}")

    def submit_reward(self, recipient: str, amount: int, proof: Proof, timeout: float) -> str:
        proof_types  = [str(t) for t, _ in proof]
        proof_values = [str(v) for _, v in proof]
        tx_hash = None
        try:
            tx = self.contract.functions.distributeRewardWithProof(
                self._app_id,
                Web3.to_checksum_address(recipient),
                int(amount),
                proof_types,
                proof_values,
            ).build_transaction({
                "from":    self.sender_address,
                "nonce":   self.w3.eth.get_transaction_count(self.sender_address, "pending"),
                "gas":     GAS_LIMIT,
                "chainId": self.w3.eth.chain_id,
            })
            signed  = self._account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            ref = Web3.to_hex(tx_hash) if tx_hash else None
            raise LegSubmissionError(f"transaction not confirmed within {timeout}s", tx_ref=ref) from e
        except Exception as e:
            ref = Web3.to_hex(tx_hash) if tx_hash else None
            raise LegSubmissionError(f"reward submission failed: {e}", tx_ref=ref) from e

        ref = Web3.to_hex(tx_hash)
        if receipt.get("status") != 1:
            raise LegSubmissionError(f"transaction {ref} reverted", tx_ref=ref)
        return ref


class SimulatedRewardsClient:
    """Dry-run client for development: every transfer "confirms" instantly."""

    sender_address = "0x" + "00" * 20

    def __init__(self):
        self.submitted: list[dict] = []

    def submit_reward(self, recipient: str, amount: int, proof: Proof, timeout: float) -> str:
        ref = f"dryrun-{secrets.token_hex(16)}"
        self.submitted.append({"recipient": recipient, "amount": amount, "proof": list(proof), "tx_ref": ref})
        logger.info(f"[CHAIN] DRY RUN transfer {amount} → {recipient} ({ref})")
        return ref


def build_rewards_client(dry_run: Optional[bool] = None) -> Optional[RewardsClient]:
    """
    Client selected by configuration. Returns None when the chain is not
    configured, which the distributor reports as a ConfigurationError at
    call time instead of failing the whole process at import.
    """
    if DRY_RUN if dry_run is None else dry_run:
        logger.warning("[CHAIN] REWARDS_DRY_RUN enabled: no real transfers will be made")
        return SimulatedRewardsClient()
    try:
        return Web3RewardsClient()
    except ConfigurationError as e:
        logger.critical(f"[CHAIN] Rewards client unavailable: {e}")
        return None
