"""Indexing of collection creation and minting for bunker minters and the name service."""

import json
import re
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from .events import fetch_ipfs_json
from .handler_base import (
    ExecuteContractMsg,
    HandlerError,
    InstantiateContractMsg,
    Message,
)
from .models import (
    NFT,
    Activity,
    ActivityKind,
    Collection,
    FuryaCollection,
    FuryaNFT,
    Mint,
    QuestCompletion,
)

_INT_RE = re.compile(r"[+-]?[0-9]+")


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


def _optional_text(obj: Dict[str, Any], key: str, what: str) -> Optional[str]:
    value = obj.get(key)
    if value is not None and not isinstance(value, str):
        raise HandlerError(f"failed to unmarshal {what}: {key} is not a string")
    return value


def _text(obj: Dict[str, Any], key: str, what: str) -> str:
    return _optional_text(obj, key, what) or ""


def _atoi(value: str) -> int:
    if not _INT_RE.fullmatch(value):
        raise ValueError(f"invalid integer {value!r}")
    return int(value)


def _block_time(message: Message) -> datetime:
    try:
        return message.get_block_time()
    except Exception as err:
        raise HandlerError(f"failed to get block time: {err}") from err


def _mint_extension(exec_msg: ExecuteContractMsg) -> Dict[str, Any]:
    payload = _decode(exec_msg.msg, "mint msg")
    mint = _sub(payload, "mint", "mint msg")
    if "extension" not in mint:
        raise HandlerError("failed to unmarshal metadata: missing extension")
    extension = mint["extension"]
    if extension is None:
        return {}
    if not isinstance(extension, dict):
        raise HandlerError("failed to unmarshal metadata: not a JSON object")
    return extension


class MintingMixin:
    """Handlers for minter instantiation, minting and minter configuration.

    Meant to be combined with :class:`furyadapp.handler_base.HandlerBase`,
    which provides ``session``, ``config``, ``network`` and ``logger``.
    """

    def _flush(self, what: str) -> None:
        try:
            self.session.flush()
        except SQLAlchemyError as err:
            raise HandlerError(f"failed to {what}: {err}") from err

    def _find_collection(self, collection_id: str) -> Optional[Collection]:
        statement = (
            select(Collection)
            .where(Collection.id == collection_id)
            .options(selectinload(Collection.furya_collection))
            .limit(1)
        )
        return self.session.scalars(statement).first()

    def _create_mint_activity(self, message: Message, nft_id: str, owner_id: str) -> None:
        block_time = _block_time(message)
        self.session.add(
            Activity(
                id=self.network.activity_id(message.tx_hash, message.msg_index),
                kind=ActivityKind.MINT,
                time=block_time,
                mint=Mint(buyer_id=owner_id),
                nft_id=nft_id,
            )
        )
        self._flush("create mint activity")

    # --- generic mint dispatch ---------------------------------------------------

    def handle_execute_mint(self, message: Message, exec_msg: ExecuteContractMsg) -> None:
        """Index a ``mint`` execution on a known minter contract."""
        contract_address = exec_msg.contract
        collection = self._find_collection(self.network.collection_id(contract_address))
        if collection is None:
            self.logger.debug("ignored mint from unknown collection %s", contract_address)
            return
        if collection.furya_collection is None:
            raise HandlerError("no furya info in collection")

        token_ids = message.events.get("wasm.token_id")
        if not token_ids:
            raise HandlerError("no token ids")
        token_id = token_ids[0]

        mint_address = collection.furya_collection.mint_contract_address
        if mint_address == self.network.name_service_contract_address:
            self.handle_execute_mint_tns(message, collection, token_id, exec_msg)
            return
        self.handle_execute_mint_bunker(message, collection, token_id, exec_msg)

    # --- bunker minter -----------------------------------------------------------

    def handle_instantiate_bunker(
        self,
        message: Message,
        contract_address: str,
        instantiate_msg: InstantiateContractMsg,
    ) -> None:
        """Create the collection of a newly instantiated bunker minter."""
        nft_addrs = message.events.get("wasm.nft_addr")
        if not nft_addrs:
            raise HandlerError("no nft contract address")
        nft_addr = nft_addrs[0]

        what = "minter instantiate msg"
        minter_msg = _decode(instantiate_msg.msg, what)
        metadata_uri = _text(minter_msg, "nft_base_uri", what)
        max_supply_text = _text(minter_msg, "nft_max_supply", what)
        price_text = _text(minter_msg, "nft_price_amount", what)
        name = _text(minter_msg, "nft_name", what)
        denom = _text(minter_msg, "price_denom", what)

        image_uri = ""
        try:
            metadata = fetch_ipfs_json(metadata_uri)
            if isinstance(metadata, dict) and isinstance(metadata.get("image"), str):
                image_uri = metadata["image"]
        except Exception as err:
            self.logger.error(
                "failed to fetch collection metadata %s: %s", metadata_uri, err
            )

        try:
            max_supply = _atoi(max_supply_text)
        except ValueError as err:
            self.logger.error("failed to parse nft max supply: %s", err)
            max_supply = -1

        try:
            price = _atoi(price_text)
        except ValueError as err:
            self.logger.error("failed to parse nft price: %s", err)
            price = -1

        secondary = minter_msg.get("secondary_during_mint")
        secondary_during_mint = secondary if isinstance(secondary, bool) else False

        collection_id = self.network.collection_id(contract_address)
        try:
            network, _ = self.config.network_store.parse_collection_id(collection_id)
        except (KeyError, ValueError) as err:
            raise HandlerError(f"failed to get network from collectionID: {err}") from err

        block_time = _block_time(message)

        self.session.add(
            Collection(
                id=collection_id,
                network_id=network.id,
                name=name,
                image_uri=image_uri,
                max_supply=max_supply,
                secondary_during_mint=secondary_during_mint,
                time=block_time,
                furya_collection=FuryaCollection(
                    mint_contract_address=contract_address,
                    nft_contract_address=nft_addr,
                    creator_address=instantiate_msg.sender,
                    price=price,
                    denom=denom,
                ),
            )
        )
        self._flush("create collection")
        self.logger.info("created collection %s at %s", collection_id, block_time)

    def handle_execute_mint_bunker(
        self,
        message: Message,
        collection: Collection,
        token_id: str,
        exec_msg: ExecuteContractMsg,
    ) -> None:
        """Index an NFT minted by a bunker minter."""
        recipients = message.events.get("wasm.recipient")
        if not recipients:
            raise HandlerError("no recipients")
        owner_id = self.network.user_id(recipients[0])
        nft_id = self.network.nft_id(
            collection.furya_collection.mint_contract_address, token_id
        )

        what = "metadata"
        metadata = _mint_extension(exec_msg)
        attributes = metadata.get("attributes")
        if attributes is None:
            attributes = []
        elif not isinstance(attributes, list):
            raise HandlerError("failed to unmarshal metadata: attributes is not an array")

        self.session.add(
            NFT(
                id=nft_id,
                owner_id=owner_id,
                name=_text(metadata, "name", what),
                image_uri=_text(metadata, "image", what),
                collection_id=collection.id,
                attributes=attributes,
                furya_nft=FuryaNFT(token_id=token_id),
            )
        )
        self._flush("create nft in db")

        self._create_mint_activity(message, nft_id, owner_id)
        self.logger.info("minted nft %s for %s", nft_id, owner_id)

    def handle_execute_bunker_update_config(
        self, message: Message, exec_msg: ExecuteContractMsg
    ) -> None:
        """Apply an ``update_config`` execution to the minter's collection."""
        what = "bunker update_config msg"
        payload = _sub(_decode(exec_msg.msg, what), "update_config", what)
        owner = _optional_text(payload, "owner", what)
        secondary = payload.get("secondary_during_mint")
        if secondary is not None and not isinstance(secondary, bool):
            raise HandlerError(f"failed to unmarshal {what}: secondary_during_mint is not a bool")

        collection_id = self.network.collection_id(exec_msg.contract)
        try:
            if owner is not None:
                self.session.execute(
                    update(FuryaCollection)
                    .where(FuryaCollection.collection_id == collection_id)
                    .values(creator_address=owner)
                )
            if secondary is not None:
                self.session.execute(
                    update(Collection)
                    .where(Collection.id == collection_id)
                    .values(secondary_during_mint=secondary)
                )
        except SQLAlchemyError as err:
            raise HandlerError(f"failed to update bunker config: {err}") from err
        if owner is not None or secondary is not None:
            self.logger.info("updated bunker config")

    def _set_paused(self, exec_msg: ExecuteContractMsg, paused: bool) -> None:
        try:
            self.session.execute(
                update(Collection)
                .where(Collection.id == self.network.collection_id(exec_msg.contract))
                .values(paused=paused)
            )
        except SQLAlchemyError as err:
            action = "pause" if paused else "unpause"
            raise HandlerError(f"failed to {action} bunker: {err}") from err

    def handle_execute_bunker_pause(self, message: Message, exec_msg: ExecuteContractMsg) -> None:
        """Mark the minter's collection as paused."""
        self._set_paused(exec_msg, True)
        self.logger.info("paused bunker")

    def handle_execute_bunker_unpause(
        self, message: Message, exec_msg: ExecuteContractMsg
    ) -> None:
        """Mark the minter's collection as not paused."""
        self._set_paused(exec_msg, False)
        self.logger.info("unpaused bunker")

    # --- name service ------------------------------------------------------------

    def handle_instantiate_tns(
        self,
        message: Message,
        contract_address: str,
        instantiate_msg: InstantiateContractMsg,
    ) -> None:
        """Create the collection of the name service contract."""
        what = "minter instantiate msg"
        tns_msg = _decode(instantiate_msg.msg, what)
        name = _text(tns_msg, "name", what)
        admin_address = _text(tns_msg, "admin_address", what)

        block_time = _block_time(message)

        collection_id = self.network.collection_id(contract_address)
        self.session.add(
            Collection(
                id=collection_id,
                network_id=self.network.id,
                name=name,
                image_uri=self.network.name_service_default_image,
                max_supply=-1,
                secondary_during_mint=True,
                time=block_time,
                furya_collection=FuryaCollection(
                    mint_contract_address=contract_address,
                    nft_contract_address=contract_address,
                    creator_address=admin_address,
                ),
            )
        )
        self._flush("create collection")
        self.logger.info("created tns collection %s", collection_id)

    def handle_execute_mint_tns(
        self,
        message: Message,
        collection: Collection,
        token_id: str,
        exec_msg: ExecuteContractMsg,
    ) -> None:
        """Index a name minted (or minted again) on the name service."""
        owner_id = self.network.user_id(exec_msg.sender)
        # The contract emits the token id without normalisation.
        token_id = token_id.lower()
        nft_id = self.network.nft_id(
            collection.furya_collection.mint_contract_address, token_id
        )

        metadata = _mint_extension(exec_msg)
        image_uri = _optional_text(metadata, "image", "metadata")

        count = self.session.scalar(
            select(func.count()).select_from(NFT).where(NFT.id == nft_id)
        )
        if not count:
            self.session.add(
                NFT(
                    id=nft_id,
                    owner_id=owner_id,
                    name=token_id,
                    image_uri=image_uri or "",
                    collection_id=collection.id,
                    furya_nft=FuryaNFT(token_id=token_id),
                )
            )
            self._flush("create nft in db")
            self.logger.info("created tns domain %s for %s", nft_id, owner_id)
        else:
            try:
                self.session.execute(
                    update(NFT)
                    .where(NFT.id == nft_id)
                    .values(burnt=False, owner_id=owner_id, image_uri=image_uri or "")
                )
            except SQLAlchemyError as err:
                raise HandlerError(f"failed to update nft in db: {err}") from err

        self.session.merge(
            QuestCompletion(user_id=owner_id, quest_id="book_tns", completed=True)
        )
        self._flush("save quest completion")

        self._create_mint_activity(message, nft_id, owner_id)

    def handle_execute_update_tns_metadata(
        self, message: Message, exec_msg: ExecuteContractMsg
    ) -> None:
        """Apply a name's new image from an ``update_metadata`` execution."""
        if exec_msg.contract != self.network.name_service_contract_address:
            return
        what = "tns update_metadata msg"
        payload = _sub(_decode(exec_msg.msg, what), "update_metadata", what)
        token_id = _text(payload, "token_id", what)
        image_uri = _optional_text(_sub(payload, "metadata", what), "image", what)
        self.logger.debug("tns update %s", payload)

        if image_uri is None:
            return
        try:
            self.session.execute(
                update(NFT)
                .where(NFT.id == self.network.nft_id(exec_msg.contract, token_id))
                .values(image_uri=image_uri)
            )
        except SQLAlchemyError as err:
            raise HandlerError(f"failed to update tns image uri: {err}") from err
        self.logger.info("updated tns image")

    def handle_execute_tns_set_admin_address(
        self, message: Message, exec_msg: ExecuteContractMsg
    ) -> None:
        """Record the name service's new admin as the collection creator."""
        if exec_msg.contract != self.network.name_service_contract_address:
            return
        what = "tns set_admin_address msg"
        payload = _sub(_decode(exec_msg.msg, what), "set_admin_address", what)
        admin_address = _text(payload, "admin_address", what)
        try:
            self.session.execute(
                update(FuryaCollection)
                .where(
                    FuryaCollection.collection_id
                    == self.network.collection_id(exec_msg.contract)
                )
                .values(creator_address=admin_address)
            )
        except SQLAlchemyError as err:
            raise HandlerError(f"failed to update tns creator: {err}") from err
        self.logger.info("updated tns creator")