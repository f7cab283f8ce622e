"""Wallet challenge issue and login."""

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from sqlalchemy import select
from web3 import Web3

from pogpp.common.errors import ChallengeExpired, InvalidSignature, InvalidWalletAddress
from pogpp.services.auth.models import User
from pogpp.services.auth.service import ChallengeStore, WalletAuthService

KEY = "0x" + "4c" * 32


def _sign(message: str, key: str = KEY) -> str:
    return Web3.to_hex(Account.sign_message(encode_defunct(text=message), private_key=key).signature)


@pytest.fixture()
def auth(session_factory, fake_redis, clock):
    return WalletAuthService(session_factory, ChallengeStore(fake_redis, ttl_seconds=300), clock=clock)


def test_login_creates_user_once(auth, session_factory, clock):
    address = Account.from_key(KEY).address
    challenge, expires_at = auth.issue_challenge(address)
    assert (expires_at - challenge.issued_at).total_seconds() == 300

    user, created = auth.login(address, challenge.nonce, _sign(challenge.message))
    assert created
    assert user.wallet_address == address.lower()

    again = auth.issue_challenge(address)[0]
    same, created = auth.login(address.lower(), again.nonce, _sign(again.message))
    assert not created
    assert same.user_id == user.user_id
    with session_factory() as db:
        assert len(db.execute(select(User)).scalars().all()) == 1


def test_challenge_is_single_use(auth):
    address = Account.from_key(KEY).address
    challenge, _ = auth.issue_challenge(address)
    signature = _sign(challenge.message)
    auth.login(address, challenge.nonce, signature)
    with pytest.raises(ChallengeExpired):
        auth.login(address, challenge.nonce, signature)


def test_challenge_is_stored_with_ttl(auth, fake_redis):
    address = Account.from_key(KEY).address
    challenge, _ = auth.issue_challenge(address)
    key = f"challenge:{address.lower()}:{challenge.nonce}"
    assert fake_redis.values[key] == challenge.message
    assert fake_redis.ttls[key] == 300


def test_wrong_signer_is_rejected_and_burns_challenge(auth):
    address = Account.from_key(KEY).address
    challenge, _ = auth.issue_challenge(address)
    with pytest.raises(InvalidSignature):
        auth.login(address, challenge.nonce, _sign(challenge.message, "0x" + "7a" * 32))
    with pytest.raises(ChallengeExpired):
        auth.login(address, challenge.nonce, _sign(challenge.message))


def test_unknown_nonce_and_bad_address(auth):
    address = Account.from_key(KEY).address
    with pytest.raises(ChallengeExpired):
        auth.login(address, "never-issued", "0x00")
    with pytest.raises(InvalidWalletAddress):
        auth.issue_challenge("0x1234")
