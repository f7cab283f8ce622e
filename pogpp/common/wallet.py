"""Wallet challenge messages and personal-message signature checks."""

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from pogpp.common.logging import logger

CHALLENGE_TITLE = "POGPP Authentication Challenge"


@dataclass(frozen=True)
class Challenge:
    address: str
    nonce: str
    issued_at: datetime
    message: str


def generate_challenge(
    address: str,
    nonce_source: Callable[[], str] = lambda: secrets.token_hex(16),
    now: datetime | None = None,
) -> Challenge:
    """Build a sign-in message bound to `address`, a timestamp and a fresh nonce."""

    issued_at = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    nonce = nonce_source()
    message = (
        f"{CHALLENGE_TITLE}\n\n"
        f"Wallet: {address}\n"
        f"Timestamp: {issued_at.isoformat()}\n"
        f"Nonce: {nonce}"
    )
    return Challenge(address=address, nonce=nonce, issued_at=issued_at, message=message)


def is_valid_address(address) -> bool:
    """True for a 20-byte hex address (checksummed or not)."""

    return isinstance(address, str) and Web3.is_address(address)


def recover_signer(message: str, signature: str) -> str:
    """Recover the EIP-191 personal_sign signer; raises on malformed input."""

    return Account.recover_message(encode_defunct(text=message), signature=signature)


def verify_signature(address: str, signature: str, message: str) -> bool:
    """Check that `signature` over `message` was produced by `address`."""

    if not is_valid_address(address) or not isinstance(message, str) or not signature:
        return False
    try:
        recovered = recover_signer(message, signature)
    except Exception as exc:
        # eth_account raises a mix of ValueError/TypeError/BadSignature subclasses.
        logger.info("signature recovery failed address=%s error=%s", address, exc)
        return False
    valid = recovered.lower() == address.lower()
    logger.info("signature verification address=%s valid=%s", address, valid)
    return valid
