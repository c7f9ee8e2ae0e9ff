"""The transaction indexer: routes each contract message to its handler."""

import functools
import json
from typing import Any, Callable, Dict, Sequence

from .dao import DaoMixin
from .events import MissingEventError, TendermintTxLog, events_map_from_string_events
from .feed import FeedMixin
from .handler_base import (
    ExecuteContractMsg,
    HandlerBase,
    HandlerError,
    InstantiateContractMsg,
    Message,
)
from .minting import MintingMixin
from .transfers import TransfersMixin
from .vault import VaultMixin


class _TxMessage(Message):
    """A message of a transaction being indexed, sharing its block time lookup."""

    def __init__(
        self,
        *,
        msg: Any,
        height: int,
        msg_index: int,
        tx_hash: str,
        log: TendermintTxLog,
        block_time: Callable[[], Any],
    ) -> None:
        values = {
            "msg": msg,
            "height": height,
            "msg_index": msg_index,
            "msg_id": f"{tx_hash}-{msg_index}",
            "tx_hash": tx_hash,
            "log": log,
            "events": events_map_from_string_events(log.events),
            "_tx_block_time": block_time,
        }
        for name, value in values.items():
            object.__setattr__(self, name, value)

    def get_block_time(self):
        """Return the time of the block holding the transaction."""
        return self._tx_block_time()


class Handler(MintingMixin, FeedMixin, TransfersMixin, DaoMixin, VaultMixin, HandlerBase):
    """Indexes the contract messages of successful transactions into the database."""

    def handle_tx(
        self,
        height: int,
        tx_hash: str,
        messages: Sequence[Any],
        logs: Sequence[TendermintTxLog],
    ) -> None:
        """Index every message of a transaction, each with its own log."""
        if len(logs) != len(messages):
            raise HandlerError("messages and results count mismatch")

        # One block lookup per transaction, done only if a handler needs it.
        block_time = functools.cache(functools.partial(self.block_time, height))

        for index, (msg, log) in enumerate(zip(messages, logs)):
            message = _TxMessage(
                msg=msg,
                height=height,
                msg_index=index,
                tx_hash=tx_hash,
                log=log,
                block_time=block_time,
            )
            if isinstance(msg, InstantiateContractMsg):
                try:
                    self.handle_instantiate(message)
                except HandlerError as err:
                    raise HandlerError(f"failed to handle instantiate: {err}") from err
            elif isinstance(msg, ExecuteContractMsg):
                try:
                    self.handle_execute(message)
                except HandlerError as err:
                    raise HandlerError(f"failed to handle execute: {err}") from err

    def handle_instantiate(self, message: Message) -> None:
        """Index a contract instantiation from the name service or a known minter code."""
        instantiate_msg = message.msg
        try:
            contract_address = message.events.instantiate_contract_address()
        except MissingEventError as err:
            raise HandlerError(f"failed to get outer contract address: {err}") from err

        if contract_address == self.network.name_service_contract_address:
            try:
                self.handle_instantiate_tns(message, contract_address, instantiate_msg)
            except HandlerError as err:
                raise HandlerError(
                    f"failed to handle tns minter instantiation: {err}"
                ) from err
            return

        if instantiate_msg.code_id in self.config.minter_code_ids:
            try:
                self.handle_instantiate_bunker(message, contract_address, instantiate_msg)
            except HandlerError as err:
                raise HandlerError(f"failed to handle minter instantiation: {err}") from err
            return

        self.logger.debug("ignored instantiate with unknown code id %s", instantiate_msg.code_id)

    def _execute_handlers(self, exec_msg: ExecuteContractMsg) -> Dict[str, Callable[..., None]]:
        handlers: Dict[str, Callable[..., None]] = {
            "mint": self.handle_execute_mint,
            "buy": self.handle_execute_buy,
            "send_nft": self.handle_execute_send_nft,
            "withdraw": self.handle_execute_withdraw,
            "burn": self.handle_execute_burn,
            "update_price": self.handle_execute_update_price,
            "transfer_nft": self.handle_execute_transfer_nft,
            "update_metadata": self.handle_execute_update_tns_metadata,
            "set_admin_address": self.handle_execute_tns_set_admin_address,
            "update_config": self.handle_execute_bunker_update_config,
            "pause": self.handle_execute_bunker_pause,
            "unpause": self.handle_execute_bunker_unpause,
            "create_post": self.handle_execute_create_post,
            "instantiate_contract_with_self_admin": (
                self.handle_execute_instantiate_contract_with_self_admin
            ),
            "propose": self.handle_execute_dao_propose,
            "execute": self.handle_execute_dao_execute,
        }
        if exec_msg.contract == self.network.social_feed_contract_address:
            handlers.update(
                {
                    "create_post_by_bot": self.handle_execute_create_post_by_bot,
                    "tip_post": self.handle_execute_tip_post,
                    "react_post": self.handle_execute_react_post,
                    "delete_post": self.handle_execute_delete_post,
                }
            )
        return handlers

    def handle_execute(self, message: Message) -> None:
        """Route a contract execution to the handler for its single action."""
        exec_msg = message.msg
        try:
            payload = json.loads(exec_msg.msg)
        except (TypeError, ValueError) as err:
            self.logger.error("failed to unmarshal execute payload: %s", err)
            return
        if not isinstance(payload, dict):
            self.logger.error("failed to unmarshal execute payload: not a JSON object")
            return
        if len(payload) != 1:
            self.logger.error("unexpected execute keys count %s", len(payload))
            return
        action = next(iter(payload))

        self.logger.debug(
            "wasm action %s on %s at height %s", action, exec_msg.contract, message.height
        )

        handler = self._execute_handlers(exec_msg).get(action)
        if handler is None:
            return
        try:
            handler(message, exec_msg)
        except HandlerError as err:
            raise HandlerError(f"failed to handle {action}: {err}") from err