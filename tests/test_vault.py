import json
import logging
from dataclasses import dataclass
from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from furyadapp.events import EventsMap
from furyadapp.handler_base import ExecuteContractMsg, HandlerBase, HandlerError
from furyadapp.models import (
    NFT,
    Activity,
    ActivityKind,
    CancelListing,
    Collection,
    FuryaCollection,
    FuryaNFT,
    QuestCompletion,
    migrate_db,
    new_sqlite_engine,
)
from furyadapp.vault import VaultMixin, parse_amount

BLOCK_TIME = datetime(2023, 1, 1, 12, 0, 0)


@dataclass
class FakeNetwork:
    id: str = "furya-testnet"
    vault_contract_address: str = "vault"
    name_service_contract_address: str = "tns"
    social_feed_contract_address: str = "feed"
    dao_factory_contract_address: str = "factory"
    name_service_default_image: str = ""

    def collection_id(self, address):
        return f"fury-{address}"

    def user_id(self, address):
        return f"fury-{address}"

    def nft_id(self, mint_address, token_id):
        return f"fury-{mint_address}-{token_id}"

    def activity_id(self, tx_hash, msg_index):
        return f"fury-{tx_hash}-{msg_index}"


class VaultHandler(VaultMixin, HandlerBase):
    pass


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def session(tmp_path):
    engine = new_sqlite_engine(str(tmp_path / "index.db"))
    migrate_db(engine)
    with Session(engine) as db:
        yield db
    engine.dispose()


@pytest.fixture
def handler(session, network):
    config = SimpleNamespace(
        network=network,
        network_store=None,
        prices_client=None,
        minter_code_ids=[1],
        tendermint_client=None,
        block_time_cache=None,
    )
    return VaultHandler(session, config, logging.getLogger("test-vault"))


@pytest.fixture
def listed_nft(session, network):
    session.add(
        Collection(
            id=network.collection_id("minter"),
            network_id=network.id,
            name="Squad",
            image_uri="",
            max_supply=10,
            secondary_during_mint=False,
            paused=False,
            time=BLOCK_TIME,
            furya_collection=FuryaCollection(
                mint_contract_address="minter",
                nft_contract_address="nftcontract",
                creator_address="creator",
                price=0,
                denom="",
            ),
        )
    )
    nft_id = network.nft_id("minter", "7")
    session.add(
        NFT(
            id=nft_id,
            owner_id=network.user_id("vault"),
            name="Seven",
            image_uri="",
            collection_id=network.collection_id("minter"),
            is_listed=True,
            price_amount="10",
            price_denom="ufury",
            furya_nft=FuryaNFT(token_id="7"),
        )
    )
    session.flush()
    return nft_id


def make_message(events):
    return SimpleNamespace(
        events=EventsMap(events),
        tx_hash="ABC",
        msg_index=0,
        height=5,
        get_block_time=lambda: BLOCK_TIME,
    )


def exec_msg(contract, payload, sender="seller1"):
    return ExecuteContractMsg(sender=sender, contract=contract, msg=json.dumps(payload).encode())


def count(session, model):
    return session.scalar(select(func.count()).select_from(model))


def test_parse_amount_splits_amount_and_denom():
    assert parse_amount("1000000ufury") == ("1000000", "ufury")


def test_parse_amount_without_digits_raises():
    with pytest.raises(HandlerError, match="failed to unmarshal price"):
        parse_amount("ufury")


def test_withdraw_unlists_nft_and_records_cancelation(handler, session, network, listed_nft):
    message = make_message(
        {"execute._contract_address": ["vault", "nftcontract"], "wasm.token_id": ["7"]}
    )
    handler.handle_execute_withdraw(message, exec_msg("vault", {"withdraw": {}}))
    session.expire_all()

    nft = session.get(NFT, listed_nft)
    assert nft.is_listed is False
    assert nft.price_amount is None

    activity = session.scalars(select(Activity)).one()
    assert activity.id == network.activity_id("ABC", 0)
    assert ActivityKind(activity.kind) == ActivityKind.CANCEL_LISTING
    assert activity.nft_id == listed_nft
    cancelation = session.scalars(select(CancelListing)).one()
    assert cancelation.seller_id == network.user_id("seller1")


def test_withdraw_from_other_contract_is_ignored(handler, session, listed_nft):
    message = make_message(
        {"execute._contract_address": ["other", "nftcontract"], "wasm.token_id": ["7"]}
    )
    handler.handle_execute_withdraw(message, exec_msg("other", {"withdraw": {}}))
    session.expire_all()
    assert session.get(NFT, listed_nft).is_listed is True
    assert count(session, Activity) == 0


def test_withdraw_unknown_collection_is_ignored(handler, session, listed_nft):
    message = make_message(
        {"execute._contract_address": ["vault", "elsewhere"], "wasm.token_id": ["7"]}
    )
    handler.handle_execute_withdraw(message, exec_msg("vault", {"withdraw": {}}))
    assert count(session, Activity) == 0


def test_withdraw_needs_two_contract_addresses(handler, listed_nft):
    message = make_message({"execute._contract_address": ["vault"], "wasm.token_id": ["7"]})
    with pytest.raises(HandlerError, match="not enough contract addresses"):
        handler.handle_execute_withdraw(message, exec_msg("vault", {"withdraw": {}}))


def test_withdraw_needs_token_id(handler, listed_nft):
    message = make_message({"execute._contract_address": ["vault", "nftcontract"]})
    with pytest.raises(HandlerError, match="no token ids"):
        handler.handle_execute_withdraw(message, exec_msg("vault", {"withdraw": {}}))


def test_buy_needs_spender(handler, listed_nft):
    message = make_message(
        {"execute._contract_address": ["vault", "nftcontract"], "wasm.token_id": ["7"]}
    )
    with pytest.raises(HandlerError, match="not enough spenders"):
        handler.handle_execute_buy(message, exec_msg("vault", {"buy": {}}))


def test_buy_needs_receiver(handler, listed_nft):
    message = make_message(
        {
            "execute._contract_address": ["vault", "nftcontract"],
            "wasm.token_id": ["7"],
            "coin_spent.spender": ["buyer"],
        }
    )
    with pytest.raises(HandlerError, match="not enough receivers"):
        handler.handle_execute_buy(message, exec_msg("vault", {"buy": {}}))


def test_buy_rejects_bad_amount(handler, listed_nft):
    message = make_message(
        {
            "execute._contract_address": ["vault", "nftcontract"],
            "wasm.token_id": ["7"],
            "coin_spent.spender": ["buyer"],
            "coin_received.receiver": ["seller"],
            "coin_spent.amount": ["ufury"],
        }
    )
    with pytest.raises(HandlerError, match="failed to unmarshal price"):
        handler.handle_execute_buy(message, exec_msg("vault", {"buy": {}}))


def test_buy_on_unknown_collection_changes_nothing(handler, session, network, listed_nft):
    message = make_message(
        {
            "execute._contract_address": ["vault", "elsewhere"],
            "wasm.token_id": ["7"],
            "coin_spent.spender": ["buyer"],
            "coin_received.receiver": ["seller"],
            "coin_spent.amount": ["100ufury"],
        }
    )
    handler.handle_execute_buy(message, exec_msg("vault", {"buy": {}}, sender="buyer"))
    session.expire_all()
    assert session.get(NFT, listed_nft).owner_id == network.user_id("vault")
    assert count(session, Activity) == 0
    assert count(session, QuestCompletion) == 0


def test_send_to_vault_from_unknown_collection_is_ignored(handler, session, listed_nft):
    send_nft_msg = {
        "contract": "vault",
        "token_id": "7",
        "msg": b'{"deposit": {"amount": "5", "denom": "ufury"}}',
    }
    handler.handle_execute_send_nft_vault(
        make_message({}), exec_msg("unknown", {"send_nft": {}}), send_nft_msg
    )
    session.expire_all()
    assert session.get(NFT, listed_nft).price_amount == "10"
    assert count(session, Activity) == 0


def test_send_to_vault_with_bad_hook_message_raises(handler, listed_nft):
    send_nft_msg = {"contract": "vault", "token_id": "7", "msg": b"not json"}
    with pytest.raises(HandlerError, match="hook msg"):
        handler.handle_execute_send_nft_vault(
            make_message({}), exec_msg("nftcontract", {"send_nft": {}}), send_nft_msg
        )


def test_update_price_outside_vault_is_ignored(handler, session, listed_nft):
    payload = {"update_price": {"amount": "99", "denom": "ufury"}}
    handler.handle_execute_update_price(
        make_message({"wasm.token_id": ["7"]}), exec_msg("nftcontract", payload)
    )
    session.expire_all()
    assert session.get(NFT, listed_nft).price_amount == "10"