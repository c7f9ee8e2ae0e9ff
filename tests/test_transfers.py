import base64
import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from furyadapp.events import EventsMap, TendermintTxLog
from furyadapp.handler_base import (
    Config,
    ExecuteContractMsg,
    HandlerBase,
    HandlerError,
    Message,
    Network,
    NetworkStore,
)
from furyadapp.models import (
    NFT,
    Activity,
    ActivityKind,
    Collection,
    FuryaCollection,
    FuryaNFT,
    migrate_db,
    new_sqlite_engine,
)
from furyadapp.transfers import TransfersMixin

BLOCK_TIME = datetime(2023, 5, 1, 12, 0, tzinfo=timezone.utc)
NETWORK = Network(id="furya", id_prefix="fury", vault_contract_address="vault-contract")
MINTER = "minter-contract"
NFT_CONTRACT = "nft-contract"
NFT_ID = NETWORK.nft_id(MINTER, "1")
ACTIVITY_ID = NETWORK.activity_id("tx", 0)


class TransfersHandler(TransfersMixin, HandlerBase):
    def __init__(self, session, config):
        super().__init__(session, config)
        self.vault_calls = []

    def handle_execute_send_nft_vault(self, message, exec_msg, send_nft_msg):
        self.vault_calls.append(send_nft_msg)


@pytest.fixture
def handler():
    engine = new_sqlite_engine(":memory:")
    migrate_db(engine)
    with Session(engine) as session:
        session.add(
            Collection(
                id=NETWORK.collection_id(MINTER),
                network_id=NETWORK.id,
                name="Squad",
                furya_collection=FuryaCollection(
                    mint_contract_address=MINTER,
                    nft_contract_address=NFT_CONTRACT,
                    creator_address="creator",
                ),
            )
        )
        session.add(
            NFT(
                id=NFT_ID,
                owner_id=NETWORK.user_id("alice"),
                collection_id=NETWORK.collection_id(MINTER),
                furya_nft=FuryaNFT(token_id="1"),
            )
        )
        session.flush()
        config = Config(
            network=NETWORK,
            network_store=NetworkStore([NETWORK]),
            block_time_fetcher=lambda height: BLOCK_TIME,
        )
        yield TransfersHandler(session, config)


def make_message(events=None):
    return Message(
        msg=None,
        height=10,
        msg_index=0,
        msg_id="tx-0",
        tx_hash="tx",
        events=EventsMap(events or {}),
        log=TendermintTxLog(),
        block_time_source=lambda: BLOCK_TIME,
    )


def execute(payload, sender="alice", contract=NFT_CONTRACT):
    msg = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    return ExecuteContractMsg(sender=sender, contract=contract, msg=msg)


def fresh_nft(handler):
    handler.session.expire_all()
    return handler.session.get(NFT, NFT_ID)


def activity_count(handler):
    return handler.session.scalar(select(func.count()).select_from(Activity))


def test_transfer_nft_changes_owner_and_records_activity(handler):
    msg = {"transfer_nft": {"recipient": "bob", "token_id": "1"}}
    handler.handle_execute_transfer_nft(make_message(), execute(msg))
    assert fresh_nft(handler).owner_id == NETWORK.user_id("bob")
    activity = handler.session.get(Activity, ACTIVITY_ID)
    assert activity.kind == ActivityKind.TRANSFER_NFT
    assert activity.nft_id == NFT_ID
    assert activity.transfer_nft.sender == NETWORK.user_id("alice")
    assert activity.transfer_nft.receiver == NETWORK.user_id("bob")


def test_transfer_on_unknown_collection_is_ignored(handler):
    msg = {"transfer_nft": {"recipient": "bob", "token_id": "1"}}
    handler.handle_execute_transfer_nft(make_message(), execute(msg, contract="unknown"))
    assert activity_count(handler) == 0
    assert fresh_nft(handler).owner_id == NETWORK.user_id("alice")


def test_transfer_with_invalid_msg_raises(handler):
    with pytest.raises(HandlerError):
        handler.handle_execute_transfer_nft(make_message(), execute(b"not json"))


def test_burn_marks_nft_burnt(handler):
    message = make_message({"wasm.token_id": ["1"]})
    handler.handle_execute_burn(message, execute({"burn": {"token_id": "1"}}))
    assert fresh_nft(handler).burnt is True
    activity = handler.session.get(Activity, ACTIVITY_ID)
    assert activity.kind == ActivityKind.BURN
    assert activity.burn.burner_id == NETWORK.user_id("alice")


def test_burn_without_token_id_event_raises(handler):
    with pytest.raises(HandlerError, match="no token ids"):
        handler.handle_execute_burn(make_message(), execute({"burn": {"token_id": "1"}}))


def test_burn_on_unknown_collection_is_ignored(handler):
    message = make_message({"wasm.token_id": ["1"]})
    handler.handle_execute_burn(message, execute({"burn": {}}, contract="unknown"))
    assert fresh_nft(handler).burnt is False


def test_send_nft_moves_nft_to_receiving_contract(handler):
    msg = {"send_nft": {"contract": "staking", "token_id": "1", "msg": ""}}
    handler.handle_execute_send_nft(make_message(), execute(msg))
    assert fresh_nft(handler).owner_id == NETWORK.user_id("staking")
    activity = handler.session.get(Activity, ACTIVITY_ID)
    assert activity.kind == ActivityKind.SEND_NFT
    assert activity.send_nft.sender == NETWORK.user_id("alice")
    assert activity.send_nft.receiver == NETWORK.user_id("staking")
    assert handler.vault_calls == []


def test_send_nft_to_vault_is_delegated_with_decoded_hook(handler):
    hook = json.dumps({"deposit": {"amount": "10", "denom": "ufury"}}).encode()
    msg = {
        "send_nft": {
            "contract": NETWORK.vault_contract_address,
            "token_id": "1",
            "msg": base64.b64encode(hook).decode(),
        }
    }
    handler.handle_execute_send_nft(make_message(), execute(msg))
    assert handler.vault_calls == [
        {"contract": NETWORK.vault_contract_address, "token_id": "1", "msg": hook}
    ]
    assert activity_count(handler) == 0


def test_send_nft_with_bad_base64_raises(handler):
    msg = {"send_nft": {"contract": "staking", "token_id": "1", "msg": "!!"}}
    with pytest.raises(HandlerError):
        handler.handle_execute_send_nft(make_message(), execute(msg))