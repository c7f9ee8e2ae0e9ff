"""Indexing of DAO creation, proposals, proposal execution and membership changes."""

import base64
import binascii
import json
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeDecorator

from .events import MissingEventError
from .handler_base import ExecuteContractMsg, HandlerError, Message
from .models import DAO, DAOMember, DAOProposal

_MAX_UINT64 = 2**64 - 1

MAJORITY_THRESHOLD = "MAJORITY"


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


def _flag(obj: Dict[str, Any], key: str, what: str) -> bool:
    value = obj.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise HandlerError(f"failed to unmarshal {what}: {key} is not a bool")
    return value


def _uint(obj: Dict[str, Any], key: str, what: str) -> int:
    value = obj.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _MAX_UINT64:
        raise HandlerError(f"failed to unmarshal {what}: {key} is not an unsigned integer")
    return value


def _list(obj: Dict[str, Any], key: str, what: str) -> List[Any]:
    value = obj.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise HandlerError(f"failed to unmarshal {what}: {key} is not an array")
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


def _encode_msgs(value: Any) -> Any:
    """Shape proposal messages for the column that stores them."""
    column_type = DAOProposal.msgs.property.columns[0].type
    if isinstance(column_type, TypeDecorator):
        return value
    try:
        python_type = column_type.python_type
    except NotImplementedError:
        return value
    if value is None:
        return None
    if python_type is str:
        return json.dumps(value)
    if python_type is bytes:
        return json.dumps(value).encode()
    return value


def _decode_msgs(value: Any) -> List[Any]:
    if value is None:
        raise HandlerError("failed to unmarshal proposal msgs: no messages stored")
    if isinstance(value, (str, bytes, bytearray)):
        try:
            value = json.loads(value)
        except ValueError as err:
            raise HandlerError(f"failed to unmarshal proposal msgs: {err}") from err
    if value is None:
        return []
    if not isinstance(value, list):
        raise HandlerError("failed to unmarshal proposal msgs: not a JSON array")
    return value


class DaoMixin:
    """Handlers for DAO factory, proposal and group contracts.

    Meant to be combined with :class:`furyadapp.handler_base.HandlerBase` and
    with the mixins providing ``handle_execute_update_tns_metadata`` and
    ``handle_execute_create_post``, to which executed proposals are routed.
    """

    def _dao_flush(self, what: str) -> None:
        try:
            self.session.flush()
        except SQLAlchemyError as err:
            self.session.rollback()
            raise HandlerError(f"failed to {what}: {err}") from err

    def _find_dao(self, **criteria: str) -> Optional[DAO]:
        statement = select(DAO).where(DAO.network_id == self.network.id)
        for name, value in criteria.items():
            statement = statement.where(getattr(DAO, name) == value)
        try:
            return self.session.scalars(statement.limit(1)).first()
        except SQLAlchemyError as err:
            raise HandlerError(f"failed to query dao: {err}") from err

    def handle_execute_instantiate_contract_with_self_admin(
        self, message: Message, exec_msg: ExecuteContractMsg
    ) -> None:
        """Create a member-based or token-based DAO made by the network's factory."""
        if exec_msg.contract != self.network.dao_factory_contract_address:
            self.logger.debug(
                "ignored instantiate dao from unknown factory %s in tx %s",
                exec_msg.contract,
                message.tx_hash,
            )
            return

        addresses = {}
        for key, label in (
            ("wasm.proposal_module", "proposal module"),
            ("wasm.update_pre_propose_module", "pre-propose module"),
            ("wasm.group_contract_address", "group contract"),
        ):
            try:
                addresses[key] = message.events.first(key)
            except MissingEventError as err:
                self.logger.debug(
                    "ignored instantiate dao with no %s address in tx %s: %s",
                    label,
                    message.tx_hash,
                    err,
                )
                return

        what = "instantiate_contract_with_admin msg"
        outer = _sub(_decode(exec_msg.msg, what), "instantiate_contract_with_self_admin", what)
        what = "instantiate msg"
        instantiate = _decode(_binary(outer, "instantiate_msg", what), what)

        proposal_infos = _list(instantiate, "proposal_modules_instantiate_info", what)
        if not proposal_infos:
            raise HandlerError("no proposal module config")
        first_info = proposal_infos[0]
        if not isinstance(first_info, dict):
            raise HandlerError("failed to unmarshal proposal module config: not an object")
        what_prop = "proposal module config"
        proposal_config = _decode(_binary(first_info, "msg", what_prop), what_prop)

        what_voting = "voting module config"
        voting_info = _sub(instantiate, "voting_module_instantiate_info", what)
        voting_config = _decode(_binary(voting_info, "msg", what_voting), what_voting)

        contract_addresses = message.events.get("wasm._contract_address") or []
        if len(contract_addresses) < 2:
            raise HandlerError("not enough contract addresses")
        dao_address = contract_addresses[1]

        threshold_config = _sub(proposal_config, "threshold", what_prop)
        percent = _text(_sub(threshold_config, "threshold", what_prop), "percent", what_prop)
        quorum = _text(
            _sub(_sub(threshold_config, "threshold_quorum", what_prop), "quorum", what_prop),
            "percent",
            what_prop,
        )

        dao = DAO(
            network_id=self.network.id,
            contract_address=dao_address,
            admin=_text(instantiate, "admin", what),
            name=_text(instantiate, "name", what),
            description=_text(instantiate, "description", what),
            image_url=_text(instantiate, "image_url", what),
            automatically_add_cw20s=_flag(instantiate, "automatically_add_cw20s", what),
            automatically_add_cw721s=_flag(instantiate, "automatically_add_cw721s", what),
            quorum=quorum,
            threshold=percent or MAJORITY_THRESHOLD,
            group_contract_address=addresses["wasm.group_contract_address"],
            pre_propose_module_address=addresses["wasm.update_pre_propose_module"],
            proposal_module_address=addresses["wasm.proposal_module"],
        )

        members: List[DAOMember] = []
        token_info = voting_config.get("token_info")
        if token_info is not None:
            if not isinstance(token_info, dict):
                raise HandlerError(f"failed to unmarshal {what_voting}: token_info is not an object")
            new_token = _sub(token_info, "new", what_voting)
            dao.token_name = _text(new_token, "name", what_voting)
            dao.token_symbol = _text(new_token, "symbol", what_voting)
            dao.unstaking_duration = _uint(
                _sub(new_token, "unstaking_duration", what_voting), "time", what_voting
            )
        else:
            for member in _list(voting_config, "initial_members", what_voting):
                if not isinstance(member, dict):
                    raise HandlerError(f"failed to unmarshal {what_voting}: member is not an object")
                members.append(
                    DAOMember(
                        dao_network_id=self.network.id,
                        dao_contract_address=dao_address,
                        member_address=_text(member, "addr", what_voting),
                    )
                )

        self.session.add(dao)
        self._dao_flush("save dao")
        for member in members:
            self.session.merge(member)
        self._dao_flush("save dao")
        self.logger.info("created dao %s", dao_address)

    def handle_execute_dao_execute(
        self, message: Message, exec_msg: ExecuteContractMsg
    ) -> None:
        """Apply the supported messages of an executed proposal."""
        if "wasm.proposal_execution_failed" in message.events:
            self.logger.debug("ignored dao execute with failed execution in tx %s", message.tx_hash)
            return

        dao = self._find_dao(proposal_module_address=exec_msg.contract)
        if dao is None:
            self.logger.debug(
                "ignored dao execute for unknown dao in tx %s from %s",
                message.tx_hash,
                exec_msg.sender,
            )
            return

        what = "dao execute msg"
        proposal_id = _uint(_sub(_decode(exec_msg.msg, what), "execute", what), "proposal_id", what)

        try:
            proposal = self.session.scalars(
                select(DAOProposal)
                .where(
                    DAOProposal.dao_network_id == dao.network_id,
                    DAOProposal.dao_contract_address == dao.contract_address,
                    DAOProposal.proposal_id == proposal_id,
                )
                .limit(1)
            ).first()
        except SQLAlchemyError as err:
            raise HandlerError(f"failed to query dao: {err}") from err
        if proposal is None:
            self.logger.debug(
                "ignored dao execute for unknown proposal %s of dao %s in tx %s",
                proposal_id,
                dao.contract_address,
                message.tx_hash,
            )
            return

        for msg in _decode_msgs(proposal.msgs):
            if not isinstance(msg, dict):
                raise HandlerError("failed to unmarshal proposal msgs: message is not an object")
            wasm = msg.get("wasm")
            if wasm is None:
                self.logger.debug("ignored dao execute sub message with unknown type")
                continue
            if not isinstance(wasm, dict):
                raise HandlerError("failed to unmarshal sub exec message: not an object")
            execute = wasm.get("execute")
            if not isinstance(execute, dict):
                raise HandlerError("failed to unmarshal sub exec message: no execute")

            what_sub = "sub exec payload"
            sub_msg = _binary(execute, "msg", what_sub)
            payload = _decode(sub_msg, what_sub)
            action = next(iter(payload), "")
            if not action:
                return

            synthetic = ExecuteContractMsg(
                sender=dao.contract_address,
                contract=_text(execute, "contract_addr", what_sub),
                msg=sub_msg,
            )
            self.logger.debug(
                "dao wasm action %s on %s at height %s",
                action,
                synthetic.contract,
                message.height,
            )

            if action == "update_members":
                self.handle_execute_dao_update_members(message, synthetic)
                return
            if action == "update_metadata":
                self.handle_execute_update_tns_metadata(message, synthetic)
                return
            if action == "create_post":
                self.handle_execute_create_post(message, synthetic)
                return

            self.logger.debug(
                "ignored dao execute sub message with unknown action %s for proposal %s of dao %s",
                action,
                proposal_id,
                dao.contract_address,
            )

    def handle_execute_dao_update_members(
        self, message: Message, exec_msg: ExecuteContractMsg
    ) -> None:
        """Add and remove members of the DAO that owns the group contract."""
        dao = self._find_dao(group_contract_address=exec_msg.contract)
        if dao is None:
            self.logger.debug(
                "ignored update_members for unknown dao in tx %s from %s",
                message.tx_hash,
                exec_msg.sender,
            )
            return

        what = "update_members msg"
        payload = _sub(_decode(exec_msg.msg, what), "update_members", what)
        added = _list(payload, "add", what)
        removed = _list(payload, "remove", what)
        if not all(isinstance(address, str) for address in removed):
            raise HandlerError(f"failed to unmarshal {what}: remove holds a non-string")

        for member in added:
            if not isinstance(member, dict):
                raise HandlerError(f"failed to unmarshal {what}: member is not an object")
            self.session.merge(
                DAOMember(
                    dao_network_id=self.network.id,
                    dao_contract_address=dao.contract_address,
                    member_address=_text(member, "addr", what),
                )
            )
        if added:
            self._dao_flush("save dao members")

        if removed:
            try:
                result = self.session.execute(
                    delete(DAOMember).where(
                        DAOMember.dao_network_id == self.network.id,
                        DAOMember.dao_contract_address == dao.contract_address,
                        DAOMember.member_address.in_(removed),
                    )
                )
            except SQLAlchemyError as err:
                self.logger.error("failed to delete dao members: %s", err)
                return
            if result.rowcount != len(removed):
                self.logger.warning(
                    "deleted %s dao members, expected %s", result.rowcount, len(removed)
                )

    def handle_execute_dao_propose(
        self, message: Message, exec_msg: ExecuteContractMsg
    ) -> None:
        """Record a proposal made through a DAO's pre-propose module."""
        dao = self._find_dao(pre_propose_module_address=exec_msg.contract)
        if dao is None:
            self.logger.debug(
                "propose ignored for unknown dao %s in tx %s", exec_msg.contract, message.tx_hash
            )
            return

        what = "propose msg"
        propose = _sub(
            _sub(_sub(_decode(exec_msg.msg, what), "propose", what), "msg", what),
            "propose",
            what,
        )

        try:
            proposal_id_text = message.events.first("wasm.proposal_id")
        except MissingEventError as err:
            raise HandlerError(f"failed to get proposal id: {err}") from err
        if not proposal_id_text.isdigit() or int(proposal_id_text) > _MAX_UINT64:
            raise HandlerError(f"failed to parse proposal id {proposal_id_text!r}")

        proposal = DAOProposal(
            dao_network_id=self.network.id,
            dao_contract_address=dao.contract_address,
            proposal_id=int(proposal_id_text),
            proposer_id=self.network.user_id(exec_msg.sender),
            title=_text(propose, "title", what),
            description=_text(propose, "description", what),
            msgs=_encode_msgs(propose.get("msgs")),
        )
        self.session.add(proposal)
        self._dao_flush("create proposal")
        self.logger.info(
            "created dao proposal %s for %s", proposal.proposal_id, dao.contract_address
        )