"""Indexing of vault listings, price updates, withdrawals and purchases."""

import json
import re
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from .handler_base import ExecuteContractMsg, HandlerError, Message
from .models import (
    NFT,
    Activity,
    ActivityKind,
    CancelListing,
    Collection,
    Listing,
    QuestCompletion,
    Trade,
    UpdateNFTPrice,
)

BUYER_SPENDER_INDEX = 0
PRICE_SPENT_AMOUNT_INDEX = 0

_AMOUNT_RE = re.compile(r"([0-9]+)(.+)")


def parse_amount(amount: str) -> Tuple[str, str]:
    """Split a coin string such as ``100ufury`` into its amount and denom."""
    match = _AMOUNT_RE.search(amount)
    if match is None:
        raise HandlerError("failed to unmarshal price")
    return match.group(1), match.group(2)


def _decode(raw: Any, what: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as err:
        raise HandlerError(f"failed to unmarshal {what}: {err}") from err
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise HandlerError(f"failed to unmarshal {what}: not a JSON object")
    return data


def _sub(obj: Dict[str, Any], key: str, what: str) -> Dict[str, Any]:
    value = obj.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise HandlerError(f"failed to unmarshal {what}: {key} is not an object")
    return value


def _text(obj: Dict[str, Any], key: str, what: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise HandlerError(f"failed to unmarshal {what}: {key} is not a string")
    return value


def _block_time(message: Message) -> datetime:
    try:
        return message.get_block_time()
    except Exception as err:
        raise HandlerError(f"failed to get block time: {err}") from err


def _first_token_id(message: Message) -> str:
    token_ids = message.events.get("wasm.token_id")
    if not token_ids:
        raise HandlerError("no token ids")
    return token_ids[0]


def _nft_contract_address(message: Message) -> str:
    addresses = message.events.get("execute._contract_address") or []
    if len(addresses) < 2:
        raise HandlerError("not enough contract addresses")
    return addresses[1]


class VaultMixin:
    """Handlers for the network's NFT vault contract.

    Meant to be combined with :class:`furyadapp.handler_base.HandlerBase`,
    which provides ``session``, ``config``, ``network``, ``logger``,
    ``usd_amount`` and ``find_collection_by_nft_contract``.
    """

    def _vault_flush(self, what: str) -> None:
        try:
            self.session.flush()
        except SQLAlchemyError as err:
            self.session.rollback()
            raise HandlerError(f"failed to {what}: {err}") from err

    def _vault_collection(self, address: str, action: str) -> Optional[Collection]:
        try:
            collection = self.find_collection_by_nft_contract(address)
        except SQLAlchemyError as err:
            raise HandlerError(f"failed to query for collection: {err}") from err
        if collection is None:
            self.logger.debug("ignored %s on unknown collection %s", action, address)
            return None
        if collection.furya_collection is None:
            raise HandlerError("no furya info on collection")
        return collection

    def _update_nft(self, nft_id: str, **values: Any) -> None:
        try:
            self.session.execute(update(NFT).where(NFT.id == nft_id).values(**values))
        except SQLAlchemyError as err:
            raise HandlerError(f"failed to update nft: {err}") from err

    def _usd(self, denom: str, price: str, t: datetime) -> float:
        try:
            return self.usd_amount(denom, price, t)
        except Exception as err:
            raise HandlerError(f"failed to derive usd amount: {err}") from err

    def _complete_quest(self, user_id: str, quest_id: str) -> None:
        self.session.merge(QuestCompletion(user_id=user_id, quest_id=quest_id, completed=True))
        self._vault_flush(f"save {quest_id} quest completion")

    def handle_execute_update_price(self, message: Message, exec_msg: ExecuteContractMsg) -> None:
        """Record a new asking price set through the vault."""
        if exec_msg.contract != self.network.vault_contract_address:
            return

        collection = self._vault_collection(exec_msg.contract, "update_price")
        if collection is None:
            return

        token_id = _first_token_id(message)

        what = "update price msg"
        data = _sub(_decode(exec_msg.msg, what), "update_price", what)
        price = _text(data, "amount", what)
        denom = _text(data, "denom", what)

        nft_id = self.network.nft_id(collection.furya_collection.mint_contract_address, token_id)
        self._update_nft(nft_id, price_amount=price, price_denom=denom)

        block_time = _block_time(message)
        usd_price = self._usd(denom, price, block_time)

        self.session.add(
            Activity(
                id=self.network.activity_id(message.tx_hash, message.msg_index),
                nft_id=nft_id,
                kind=ActivityKind.UPDATE_NFT_PRICE,
                time=block_time,
                update_nft_price=UpdateNFTPrice(
                    price=price,
                    price_denom=denom,
                    usd_price=usd_price,
                    seller_id=self.network.user_id(exec_msg.sender),
                ),
            )
        )
        self._vault_flush("create price update in db")
        self.logger.debug("updated nft price %s", nft_id)

    def handle_execute_withdraw(self, message: Message, exec_msg: ExecuteContractMsg) -> None:
        """Take an NFT off sale and record the cancelled listing."""
        if exec_msg.contract != self.network.vault_contract_address:
            return

        nft_contract_address = _nft_contract_address(message)
        token_id = _first_token_id(message)

        collection = self._vault_collection(nft_contract_address, "withdraw")
        if collection is None:
            return
        nft_id = self.network.nft_id(collection.furya_collection.mint_contract_address, token_id)

        self._update_nft(nft_id, price_amount=None, price_denom="", is_listed=False)

        block_time = _block_time(message)
        activity_id = self.network.activity_id(message.tx_hash, message.msg_index)
        self.session.add(
            Activity(
                id=activity_id,
                nft_id=nft_id,
                kind=ActivityKind.CANCEL_LISTING,
                time=block_time,
                cancel_listing=CancelListing(seller_id=self.network.user_id(exec_msg.sender)),
            )
        )
        self._vault_flush("create listing cancelation in db")
        self.logger.info("created listing cancelation %s", activity_id)

    def handle_execute_buy(self, message: Message, exec_msg: ExecuteContractMsg) -> None:
        """Give a bought NFT to its buyer and record the trade."""
        if exec_msg.contract != self.network.vault_contract_address:
            return

        nft_contract_address = _nft_contract_address(message)
        token_id = _first_token_id(message)

        spenders = message.events.get("coin_spent.spender") or []
        if len(spenders) < BUYER_SPENDER_INDEX + 1:
            raise HandlerError(
                f"not enough spenders, wanted {BUYER_SPENDER_INDEX + 1}, got {len(spenders)}"
            )
        buyer_id = self.network.user_id(spenders[BUYER_SPENDER_INDEX])

        # The seller is the last one to receive coins.
        receivers = message.events.get("coin_received.receiver") or []
        if not receivers:
            raise HandlerError(f"not enough receivers, wanted 1, got {len(receivers)}")
        seller_id = self.network.user_id(receivers[-1])

        spent_amounts = message.events.get("coin_spent.amount") or []
        if len(spent_amounts) < PRICE_SPENT_AMOUNT_INDEX + 1:
            raise HandlerError(
                f"not enough spent amounts, wanted {PRICE_SPENT_AMOUNT_INDEX + 1}, "
                f"got {len(spent_amounts)}"
            )
        price, denom = parse_amount(spent_amounts[PRICE_SPENT_AMOUNT_INDEX])

        collection = self._vault_collection(nft_contract_address, "buy")
        if collection is None:
            return
        nft_id = self.network.nft_id(collection.furya_collection.mint_contract_address, token_id)

        self._update_nft(
            nft_id, price_amount=None, price_denom="", is_listed=False, owner_id=buyer_id
        )

        block_time = _block_time(message)
        usd_price = self._usd(denom, price, block_time)

        activity_id = self.network.activity_id(message.tx_hash, message.msg_index)
        self.session.add(
            Activity(
                id=activity_id,
                nft_id=nft_id,
                kind=ActivityKind.TRADE,
                time=block_time,
                trade=Trade(
                    price=price,
                    price_denom=denom,
                    usd_price=usd_price,
                    buyer_id=buyer_id,
                    seller_id=seller_id,
                ),
            )
        )
        self._vault_flush("create trade in db")

        self._complete_quest(buyer_id, "buy_nft")
        self._complete_quest(seller_id, "sell_nft")
        self.logger.info("created trade %s", activity_id)

    def handle_execute_send_nft_vault(
        self,
        message: Message,
        exec_msg: ExecuteContractMsg,
        send_nft_msg: Dict[str, Any],
    ) -> None:
        """Put an NFT sent to the vault on sale and record the listing.

        ``send_nft_msg`` holds ``contract``, ``token_id`` and the hook
        message ``msg`` as bytes.
        """
        token_id = send_nft_msg["token_id"]
        seller_id = self.network.user_id(exec_msg.sender)

        what = "hook msg"
        deposit = _sub(_decode(send_nft_msg["msg"], what), "deposit", what)
        price = _text(deposit, "amount", what)
        denom = _text(deposit, "denom", what)

        collection = self._vault_collection(exec_msg.contract, "send_nft")
        if collection is None:
            return
        nft_id = self.network.nft_id(collection.furya_collection.mint_contract_address, token_id)

        self._update_nft(nft_id, price_amount=price, price_denom=denom, is_listed=True)

        block_time = _block_time(message)
        usd_price = self._usd(denom, price, block_time)

        activity_id = self.network.activity_id(message.tx_hash, message.msg_index)
        self.session.add(
            Activity(
                id=activity_id,
                nft_id=nft_id,
                kind=ActivityKind.LIST,
                time=block_time,
                listing=Listing(
                    price=price,
                    price_denom=denom,
                    usd_price=usd_price,
                    seller_id=seller_id,
                ),
            )
        )
        self._vault_flush("create listing in db")

        self._complete_quest(seller_id, "list_nft")
        self.logger.info("created listing %s", activity_id)