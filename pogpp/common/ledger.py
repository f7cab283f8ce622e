"""Badge contract client (one-time-claim ERC-721 on an EVM chain).

The contract is the ground truth for "has this address claimed this badge
category": `claimBadge` reverts with "Already claimed" for a second claim of
the same pair regardless of what the caller checked first.

Read calls retry on transport errors. `mint` never retries: a timeout after
broadcast is reported as `LedgerTimeout` and must be resolved by re-reading
claim state or the status of the held transaction.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone

from requests.exceptions import RequestException
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception, Web3RPCError
from web3.logs import DISCARD

from pogpp.common.config import settings
from pogpp.common.errors import LedgerUnavailable
from pogpp.common.logging import logger
from pogpp.common.metrics import ledger_call_seconds
from pogpp.common.retry import call_with_retry

BADGE_CONTRACT_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "uint256", "name": "badgeId", "type": "uint256"},
            {"internalType": "string", "name": "tokenURI", "type": "string"},
        ],
        "name": "claimBadge",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "address", "name": "user", "type": "address"},
            {"internalType": "uint256", "name": "badgeId", "type": "uint256"},
        ],
        "name": "claimed",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "from", "type": "address"},
            {"indexed": True, "internalType": "address", "name": "to", "type": "address"},
            {"indexed": True, "internalType": "uint256", "name": "tokenId", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "to", "type": "address"},
            {"indexed": True, "internalType": "uint256", "name": "badgeId", "type": "uint256"},
            {"indexed": False, "internalType": "uint256", "name": "tokenId", "type": "uint256"},
        ],
        "name": "BadgeClaimed",
        "type": "event",
    },
]

ALREADY_CLAIMED_MARKER = "already claimed"

# Node rejections after which the signed transaction may still be mined:
# it (or one with the same nonce) is already in the pool or on chain.
AMBIGUOUS_BROADCAST_MARKERS = (
    "already known",
    "known transaction",
    "nonce too low",
    "replacement transaction underpriced",
)

TX_MINED = "mined"
TX_REVERTED = "reverted"
TX_PENDING = "pending"
TX_DROPPED = "dropped"


class LedgerError(Exception):
    """Definite ledger failure: the mint did not happen."""


class AlreadyClaimedError(LedgerError):
    """The contract rejected the mint because the pair is already claimed."""


class LedgerTimeout(LedgerError):
    """Outcome unknown: the transaction may or may not have been mined."""

    def __init__(self, message: str, tx_ref: str | None = None) -> None:
        super().__init__(message)
        self.tx_ref = tx_ref


@dataclass(frozen=True)
class MintReceipt:
    token_id: str | None
    tx_ref: str | None
    contract_ref: str | None
    minted_at: datetime | None = None


class Web3BadgeLedger:
    """web3.py client for the badge contract."""

    def __init__(
        self,
        rpc_url: str | None = None,
        contract_address: str | None = None,
        private_key: str | None = None,
        chain_id: int | None = None,
    ) -> None:
        self.w3 = Web3(
            Web3.HTTPProvider(
                rpc_url or settings.ledger_rpc_url,
                request_kwargs={"timeout": settings.ledger_timeout_seconds},
            )
        )
        self.contract_address = Web3.to_checksum_address(contract_address or settings.ledger_contract_address)
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=BADGE_CONTRACT_ABI)
        self.private_key = private_key or settings.ledger_private_key
        self.chain_id = chain_id or settings.ledger_chain_id

    def _read(self, operation: str, fn):
        start = time.perf_counter()
        try:
            return call_with_retry(fn, dependency="ledger", retry_on=(RequestException,))
        except RequestException as exc:
            logger.error("ledger %s unreachable: %s", operation, exc)
            raise LedgerUnavailable(f"ledger {operation} unreachable: {exc}") from exc
        except (ContractLogicError, TransactionNotFound):
            raise
        except Web3RPCError as exc:
            logger.error("ledger %s rejected by node: %s", operation, exc)
            raise LedgerUnavailable(f"ledger {operation} failed: {exc}") from exc
        finally:
            ledger_call_seconds.labels(service=settings.service_name, operation=operation).observe(
                time.perf_counter() - start
            )

    def has_claimed(self, address: str, category_id: int) -> bool:
        owner = Web3.to_checksum_address(address)
        claimed = self._read("has_claimed", lambda: self.contract.functions.claimed(owner, category_id).call())
        logger.info("ledger claimed status address=%s category=%s claimed=%s", address, category_id, claimed)
        return bool(claimed)

    def find_claim(self, address: str, category_id: int) -> MintReceipt | None:
        """Locate the on-chain claim for a pair from `BadgeClaimed` logs."""

        owner = Web3.to_checksum_address(address)
        entries = self._read(
            "find_claim",
            lambda: self.contract.events.BadgeClaimed.get_logs(
                argument_filters={"to": owner, "badgeId": category_id},
                from_block=settings.ledger_from_block,
            ),
        )
        if not entries:
            return None
        entry = entries[-1]
        return MintReceipt(
            token_id=str(entry["args"]["tokenId"]),
            tx_ref=Web3.to_hex(entry["transactionHash"]),
            contract_ref=self.contract_address,
        )

    def owner_of(self, token_id: str) -> str | None:
        try:
            return self._read("owner_of", lambda: self.contract.functions.ownerOf(int(token_id)).call())
        except ContractLogicError:
            return None

    def transaction_status(self, tx_ref: str) -> str:
        """Where a previously broadcast transaction stands.

        `mined` and `reverted` come from the receipt; `pending` means the node
        still holds it; `dropped` means the node knows nothing about it.
        """

        try:
            receipt = self._read("transaction_status", lambda: self.w3.eth.get_transaction_receipt(tx_ref))
        except TransactionNotFound:
            try:
                self._read("transaction_status", lambda: self.w3.eth.get_transaction(tx_ref))
            except TransactionNotFound:
                return TX_DROPPED
            return TX_PENDING
        return TX_MINED if receipt["status"] == 1 else TX_REVERTED

    def _token_id_from_receipt(self, receipt) -> str | None:
        for event in self.contract.events.BadgeClaimed().process_receipt(receipt, errors=DISCARD):
            return str(event["args"]["tokenId"])
        for event in self.contract.events.Transfer().process_receipt(receipt, errors=DISCARD):
            return str(event["args"]["tokenId"])
        return None

    def mint(self, address: str, category_id: int, token_uri: str) -> MintReceipt:
        """Send `claimBadge` and wait for the receipt. Not retried."""

        to = Web3.to_checksum_address(address)
        account = self.w3.eth.account.from_key(self.private_key)
        start = time.perf_counter()
        try:
            try:
                tx = self.contract.functions.claimBadge(to, category_id, token_uri).build_transaction(
                    {
                        "from": account.address,
                        "nonce": self.w3.eth.get_transaction_count(account.address, "pending"),
                        "chainId": self.chain_id,
                    }
                )
            except ContractLogicError as exc:
                # Gas estimation simulates the call, so a revert shows up here.
                if ALREADY_CLAIMED_MARKER in str(exc).lower():
                    raise AlreadyClaimedError(str(exc)) from exc
                raise LedgerError(f"claimBadge reverted in simulation: {exc}") from exc
            except RequestException as exc:
                raise LedgerError(f"ledger unreachable before broadcast: {exc}") from exc
            except (Web3Exception, ValueError) as exc:
                raise LedgerError(f"claimBadge could not be prepared: {exc}") from exc

            signed = account.sign_transaction(tx)
            # The hash is known before broadcast, so ambiguous outcomes can be tracked.
            tx_ref = Web3.to_hex(signed.hash)
            try:
                self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except RequestException as exc:
                raise LedgerTimeout(f"broadcast outcome unknown: {exc}", tx_ref=tx_ref) from exc
            except (Web3Exception, ValueError) as exc:
                message = str(exc).lower()
                if any(marker in message for marker in AMBIGUOUS_BROADCAST_MARKERS):
                    raise LedgerTimeout(f"broadcast outcome unknown: {exc}", tx_ref=tx_ref) from exc
                raise LedgerError(f"broadcast rejected: {exc}") from exc
            logger.info("badge mint transaction sent tx=%s category=%s", tx_ref, category_id)

            try:
                receipt = self.w3.eth.wait_for_transaction_receipt(
                    signed.hash, timeout=settings.ledger_receipt_timeout_seconds
                )
            except (TimeExhausted, RequestException, Web3Exception) as exc:
                raise LedgerTimeout(f"receipt not available for {tx_ref}: {exc}", tx_ref=tx_ref) from exc

            if receipt["status"] != 1:
                try:
                    claimed = self.has_claimed(address, category_id)
                except LedgerUnavailable as exc:
                    raise LedgerTimeout(
                        f"claimBadge reverted, claim state unreadable tx={tx_ref}", tx_ref=tx_ref
                    ) from exc
                if claimed:
                    raise AlreadyClaimedError(f"claimBadge reverted, pair already claimed tx={tx_ref}")
                raise LedgerError(f"claimBadge reverted tx={tx_ref}")

            token_id = self._token_id_from_receipt(receipt)
            if token_id is None:
                raise LedgerTimeout(f"mined without a recognisable claim event tx={tx_ref}", tx_ref=tx_ref)
            return MintReceipt(
                token_id=token_id,
                tx_ref=tx_ref,
                contract_ref=self.contract_address,
                minted_at=datetime.now(timezone.utc),
            )
        finally:
            ledger_call_seconds.labels(service=settings.service_name, operation="mint").observe(
                time.perf_counter() - start
            )
