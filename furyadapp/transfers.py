"""Indexing of NFT sends, transfers and burns."""

import base64
import binascii
import json
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from .handler_base import ExecuteContractMsg, HandlerError, Message
from .models import NFT, Activity, ActivityKind, Burn, Collection, SendNFT, TransferNFT


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


def _binary(obj: Dict[str, Any], key: str, what: str) -> bytes:
    value = obj.get(key)
    if value is None:
        return b""
    if not isinstance(value, str):
        raise HandlerError(f"failed to unmarshal {what}: {key} is not a string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise HandlerError(f"failed to unmarshal {what}: {key} is not base64") from err


def _block_time(message: Message) -> datetime:
    try:
        return message.get_block_time()
    except Exception as err:
        raise HandlerError(f"failed to get block time: {err}") from err


class TransfersMixin:
    """Handlers for ``send_nft``, ``transfer_nft`` and ``burn`` on NFT contracts.

    Meant to be combined with :class:`furyadapp.handler_base.HandlerBase`,
    which provides ``session``, ``config``, ``network``, ``logger`` and
    ``find_collection_by_nft_contract``. Sends to the vault are delegated to
    ``handle_execute_send_nft_vault``.
    """

    def _transfers_flush(self, what: str) -> None:
        try:
            self.session.flush()
        except SQLAlchemyError as err:
            self.session.rollback()
            raise HandlerError(f"failed to {what}: {err}") from err

    def _known_collection(self, address: str, action: str) -> Optional[Collection]:
        try:
            collection = self.find_collection_by_nft_contract(address)
        except SQLAlchemyError as err:
            raise HandlerError(f"failed to query collections: {err}") from err
        if collection is None:
            self.logger.debug("ignored %s on unknown collection %s", action, address)
            return None
        if collection.furya_collection is None:
            raise HandlerError("no furya info on collection")
        return collection

    def _set_owner(self, nft_id: str, owner_id: str) -> None:
        try:
            self.session.execute(update(NFT).where(NFT.id == nft_id).values(owner_id=owner_id))
        except SQLAlchemyError as err:
            raise HandlerError(f"failed to update owner in db: {err}") from err

    def handle_execute_send_nft(self, message: Message, exec_msg: ExecuteContractMsg) -> None:
        """Index a ``send_nft``; sends to the vault are listings.

        The decoded ``send_nft`` payload handed on holds ``contract``,
        ``token_id`` and the hook message ``msg`` as bytes.
        """
        what = "nft execute msg"
        data = _sub(_decode(exec_msg.msg, what), "send_nft", what)
        send_nft_msg = {
            "contract": _text(data, "contract", what),
            "token_id": _text(data, "token_id", what),
            "msg": _binary(data, "msg", what),
        }

        if send_nft_msg["contract"] == self.network.vault_contract_address:
            self.handle_execute_send_nft_vault(message, exec_msg, send_nft_msg)
            return
        self.handle_execute_send_nft_fallback(message, exec_msg, send_nft_msg)

    def handle_execute_send_nft_fallback(
        self,
        message: Message,
        exec_msg: ExecuteContractMsg,
        send_nft_msg: Dict[str, Any],
    ) -> None:
        """Move an NFT to the receiving contract and record the send."""
        token_id = send_nft_msg["token_id"]
        collection = self._known_collection(exec_msg.contract, "send_nft")
        if collection is None:
            return
        nft_id = self.network.nft_id(
            collection.furya_collection.mint_contract_address, token_id
        )

        sender_id = self.network.user_id(exec_msg.sender)
        receiver_id = self.network.user_id(send_nft_msg["contract"])
        self._set_owner(nft_id, receiver_id)

        block_time = _block_time(message)
        self.session.add(
            Activity(
                id=self.network.activity_id(message.tx_hash, message.msg_index),
                kind=ActivityKind.SEND_NFT,
                time=block_time,
                send_nft=SendNFT(sender=sender_id, receiver=receiver_id),
                nft_id=nft_id,
            )
        )
        self._transfers_flush("create send activity")

    def handle_execute_burn(self, message: Message, exec_msg: ExecuteContractMsg) -> None:
        """Mark an NFT as burnt and record the burn."""
        collection = self._known_collection(exec_msg.contract, "burn")
        if collection is None:
            return

        token_ids = message.events.get("wasm.token_id")
        if not token_ids:
            raise HandlerError("no token ids")
        nft_id = self.network.nft_id(
            collection.furya_collection.mint_contract_address, token_ids[0]
        )

        try:
            self.session.execute(update(NFT).where(NFT.id == nft_id).values(burnt=True))
        except SQLAlchemyError as err:
            raise HandlerError(f"failed to burn nft: {err}") from err

        block_time = _block_time(message)
        self.session.add(
            Activity(
                id=self.network.activity_id(message.tx_hash, message.msg_index),
                kind=ActivityKind.BURN,
                time=block_time,
                burn=Burn(burner_id=self.network.user_id(exec_msg.sender)),
                nft_id=nft_id,
            )
        )
        self._transfers_flush("create burn activity")
        self.logger.debug("burnt nft %s", nft_id)

    def handle_execute_transfer_nft(
        self, message: Message, exec_msg: ExecuteContractMsg
    ) -> None:
        """Give an NFT to its recipient and record the transfer."""
        collection = self._known_collection(exec_msg.contract, "transfer_nft")
        if collection is None:
            return

        what = "transfer_nft msg"
        data = _sub(_decode(exec_msg.msg, what), "transfer_nft", what)
        recipient = _text(data, "recipient", what)
        token_id = _text(data, "token_id", what)

        receiver_id = self.network.user_id(recipient)
        nft_id = self.network.nft_id(
            collection.furya_collection.mint_contract_address, token_id
        )
        self._set_owner(nft_id, receiver_id)

        block_time = _block_time(message)
        self.session.add(
            Activity(
                id=self.network.activity_id(message.tx_hash, message.msg_index),
                kind=ActivityKind.TRANSFER_NFT,
                time=block_time,
                transfer_nft=TransferNFT(
                    sender=self.network.user_id(exec_msg.sender),
                    receiver=receiver_id,
                ),
                nft_id=nft_id,
            )
        )
        self._transfers_flush("create transfer activity")
        self.logger.debug("transferred nft %s", nft_id)