"""Indexer database schema."""

import enum
import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    ForeignKeyConstraint,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Declarative base for all indexer tables."""


def _decode_json(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if not isinstance(value, str):
        raise ValueError("type assertion .([]byte) failed")
    return json.loads(value)


class ArrayJSONB(TypeDecorator):
    """A JSON array stored as text."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return "[]"
        return json.dumps(list(value))

    def process_result_value(self, value, dialect):
        decoded = _decode_json(value)
        if not isinstance(decoded, list):
            raise ValueError("type assertion failed")
        return decoded


class ObjectJSONB(TypeDecorator):
    """A JSON object stored as text."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return "{}"
        return json.dumps(dict(value))

    def process_result_value(self, value, dialect):
        decoded = _decode_json(value)
        if decoded is not None and not isinstance(decoded, dict):
            raise ValueError("json value is not an object")
        return decoded


class ActivityKind(str, enum.Enum):
    UNKNOWN = ""
    TRADE = "trade"
    LIST = "list"
    CANCEL_LISTING = "cancel-listing"
    MINT = "mint"
    BURN = "burn"
    SEND_NFT = "send-nft"
    TRANSFER_NFT = "transfer-nft"
    UPDATE_NFT_PRICE = "update-nft-price"


_ACTIVITY_KIND = Enum(
    ActivityKind,
    name="activity_kind",
    native_enum=False,
    values_callable=lambda kinds: [kind.value for kind in kinds],
    validate_strings=True,
    length=32,
)


def _string(**kwargs: Any):
    return mapped_column(String, default="", **kwargs)


def _bool(**kwargs: Any):
    return mapped_column(Boolean, default=False, **kwargs)


def _int(**kwargs: Any):
    return mapped_column(Integer, default=0, **kwargs)


def _bigint(**kwargs: Any):
    return mapped_column(BigInteger, default=0, **kwargs)


# --- app and users -----------------------------------------------------------


class App(Base):
    __tablename__ = "apps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    height: Mapped[int] = _bigint()
    chunked_height: Mapped[int] = _bigint()
    tx_hash: Mapped[Optional[str]] = _string()


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)


# --- collections ---------------------------------------------------------------


class Collection(Base):
    __tablename__ = "collections"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    network_id: Mapped[Optional[str]] = _string()
    name: Mapped[Optional[str]] = _string()
    image_uri: Mapped[Optional[str]] = _string()
    max_supply: Mapped[int] = _int(index=True)
    secondary_during_mint: Mapped[bool] = _bool()
    paused: Mapped[bool] = _bool(index=True)
    time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    furya_collection: Mapped[Optional["FuryaCollection"]] = relationship(
        back_populates="collection"
    )
    nfts: Mapped[list["NFT"]] = relationship(back_populates="collection")


class FuryaCollection(Base):
    __tablename__ = "furya_collections"

    collection_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("collections.id"), index=True
    )
    mint_contract_address: Mapped[str] = mapped_column(String, primary_key=True)
    nft_contract_address: Mapped[Optional[str]] = _string()
    creator_address: Mapped[Optional[str]] = _string()
    price: Mapped[int] = _bigint()
    denom: Mapped[Optional[str]] = _string()

    collection: Mapped[Optional[Collection]] = relationship(
        back_populates="furya_collection"
    )


# --- nfts ----------------------------------------------------------------------


class NFT(Base):
    __tablename__ = "nfts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[Optional[str]] = _string()
    image_uri: Mapped[Optional[str]] = _string()
    owner_id: Mapped[Optional[str]] = _string()
    is_listed: Mapped[bool] = _bool()
    price_amount: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    price_denom: Mapped[Optional[str]] = _string()
    locked_on: Mapped[Optional[str]] = _string()
    collection_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("collections.id"), index=True
    )
    attributes: Mapped[Optional[list]] = mapped_column(
        MutableList.as_mutable(ArrayJSONB), default=lambda: []
    )
    burnt: Mapped[bool] = _bool()

    collection: Mapped[Optional[Collection]] = relationship(back_populates="nfts")
    furya_nft: Mapped[Optional["FuryaNFT"]] = relationship(back_populates="nft")
    activities: Mapped[list["Activity"]] = relationship(back_populates="nft")


class FuryaNFT(Base):
    __tablename__ = "furya_nfts"

    nft_id: Mapped[str] = mapped_column(ForeignKey("nfts.id"), primary_key=True)
    token_id: Mapped[Optional[str]] = _string()

    nft: Mapped[Optional[NFT]] = relationship(back_populates="furya_nft")


# --- activity ------------------------------------------------------------------


class Activity(Base):
    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[ActivityKind] = mapped_column(
        _ACTIVITY_KIND, default=ActivityKind.UNKNOWN, index=True
    )
    time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    nft_id: Mapped[Optional[str]] = mapped_column(ForeignKey("nfts.id"), index=True)

    listing: Mapped[Optional["Listing"]] = relationship()
    cancel_listing: Mapped[Optional["CancelListing"]] = relationship()
    trade: Mapped[Optional["Trade"]] = relationship()
    mint: Mapped[Optional["Mint"]] = relationship()
    burn: Mapped[Optional["Burn"]] = relationship()
    send_nft: Mapped[Optional["SendNFT"]] = relationship()
    transfer_nft: Mapped[Optional["TransferNFT"]] = relationship()
    update_nft_price: Mapped[Optional["UpdateNFTPrice"]] = relationship()
    nft: Mapped[Optional[NFT]] = relationship(back_populates="activities")


def _activity_key():
    return mapped_column(ForeignKey("activities.id"), primary_key=True)


def _usd_price():
    return mapped_column(Float, default=0.0)


class Listing(Base):
    __tablename__ = "listings"

    activity_id: Mapped[str] = _activity_key()
    price: Mapped[Optional[str]] = _string()
    price_denom: Mapped[Optional[str]] = _string()
    usd_price: Mapped[float] = _usd_price()
    seller_id: Mapped[Optional[str]] = _string()


class CancelListing(Base):
    __tablename__ = "cancel_listings"

    activity_id: Mapped[str] = _activity_key()
    seller_id: Mapped[Optional[str]] = _string()


class UpdateNFTPrice(Base):
    __tablename__ = "update_nft_prices"

    activity_id: Mapped[str] = _activity_key()
    seller_id: Mapped[Optional[str]] = _string()
    price: Mapped[Optional[str]] = _string()
    price_denom: Mapped[Optional[str]] = _string()
    usd_price: Mapped[float] = _usd_price()


class Trade(Base):
    __tablename__ = "trades"

    activity_id: Mapped[str] = _activity_key()
    price: Mapped[Optional[str]] = _string()
    price_denom: Mapped[Optional[str]] = _string()
    usd_price: Mapped[float] = _usd_price()
    buyer_id: Mapped[Optional[str]] = _string()
    seller_id: Mapped[Optional[str]] = _string()


class Mint(Base):
    __tablename__ = "mints"

    activity_id: Mapped[str] = _activity_key()
    price: Mapped[Optional[str]] = _string()
    price_denom: Mapped[Optional[str]] = _string()
    usd_price: Mapped[float] = _usd_price()
    buyer_id: Mapped[Optional[str]] = _string()


class Burn(Base):
    __tablename__ = "burns"

    activity_id: Mapped[str] = _activity_key()
    burner_id: Mapped[Optional[str]] = _string()


class SendNFT(Base):
    __tablename__ = "send_nfts"

    activity_id: Mapped[str] = _activity_key()
    sender: Mapped[Optional[str]] = _string()
    receiver: Mapped[Optional[str]] = _string()


class TransferNFT(Base):
    __tablename__ = "transfer_nfts"

    activity_id: Mapped[str] = _activity_key()
    sender: Mapped[Optional[str]] = _string()
    receiver: Mapped[Optional[str]] = _string()


# --- quests --------------------------------------------------------------------


class Quest(Base):
    __tablename__ = "quests"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[Optional[str]] = _string()


class QuestCompletion(Base):
    __tablename__ = "quest_completions"

    quest_id: Mapped[str] = mapped_column(ForeignKey("quests.id"), primary_key=True)
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    completed: Mapped[bool] = _bool()

    quest: Mapped[Optional[Quest]] = relationship()


# --- p2e -----------------------------------------------------------------------


class P2eSquadStaking(Base):
    """An active squad staking; the row is deleted when the user unstakes."""

    __tablename__ = "p2e_squad_stakings"

    owner_id: Mapped[str] = mapped_column(String, primary_key=True)
    start_time: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    token_ids: Mapped[str] = mapped_column(String, primary_key=True)
    season_id: Mapped[Optional[str]] = _string(index=True)
    end_time: Mapped[int] = _bigint(index=True)


class P2eLeaderboard(Base):
    """Per-season leaderboard entry of a user."""

    __tablename__ = "p2e_leaderboards"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    season_id: Mapped[str] = mapped_column(String, primary_key=True)
    rank: Mapped[int] = _int(index=True)
    score: Mapped[int] = _bigint(index=True)
    in_progress_score: Mapped[int] = _bigint(index=True)
    snapshot_score: Mapped[int] = _bigint()
    snapshot_rank: Mapped[int] = _int()


# --- feed ----------------------------------------------------------------------


class Post(Base):
    __tablename__ = "posts"

    identifier: Mapped[str] = mapped_column(String, primary_key=True)
    parent_post_identifier: Mapped[Optional[str]] = _string(index=True)
    category: Mapped[int] = _int(index=True)
    is_bot: Mapped[bool] = _bool()
    post_metadata: Mapped[Optional[dict]] = mapped_column(
        "metadata", MutableDict.as_mutable(ObjectJSONB), default=lambda: {}
    )
    user_reactions: Mapped[Optional[dict]] = mapped_column(
        MutableDict.as_mutable(ObjectJSONB), default=lambda: {}
    )
    author_id: Mapped[Optional[str]] = _string(index=True)
    created_at: Mapped[int] = _bigint()
    is_deleted: Mapped[bool] = _bool()
    is_free: Mapped[bool] = _bool()
    tip_amount: Mapped[int] = _bigint()


# --- orgs ----------------------------------------------------------------------


class DAO(Base):
    __tablename__ = "daos"

    network_id: Mapped[str] = mapped_column(String, primary_key=True)
    contract_address: Mapped[str] = mapped_column(String, primary_key=True)
    admin: Mapped[Optional[str]] = _string()
    name: Mapped[Optional[str]] = _string()
    description: Mapped[Optional[str]] = _string()
    image_url: Mapped[Optional[str]] = _string()
    automatically_add_cw20s: Mapped[bool] = _bool()
    automatically_add_cw721s: Mapped[bool] = _bool()
    quorum: Mapped[Optional[str]] = _string()
    threshold: Mapped[Optional[str]] = _string()
    token_name: Mapped[Optional[str]] = _string()
    token_symbol: Mapped[Optional[str]] = _string()
    unstaking_duration: Mapped[int] = _bigint()
    pre_propose_module_address: Mapped[Optional[str]] = _string(index=True)
    group_contract_address: Mapped[Optional[str]] = _string(index=True)
    proposal_module_address: Mapped[Optional[str]] = _string(index=True)

    members: Mapped[list["DAOMember"]] = relationship(back_populates="dao")
    proposals: Mapped[list["DAOProposal"]] = relationship(back_populates="dao")


class DAOMember(Base):
    __tablename__ = "dao_members"
    __table_args__ = (
        ForeignKeyConstraint(
            ["dao_network_id", "dao_contract_address"],
            ["daos.network_id", "daos.contract_address"],
        ),
    )

    dao_network_id: Mapped[str] = mapped_column(String, primary_key=True)
    dao_contract_address: Mapped[str] = mapped_column(String, primary_key=True)
    member_address: Mapped[str] = mapped_column(String, primary_key=True)

    dao: Mapped[Optional[DAO]] = relationship(back_populates="members")


class DAOProposal(Base):
    __tablename__ = "dao_proposals"
    __table_args__ = (
        ForeignKeyConstraint(
            ["dao_network_id", "dao_contract_address"],
            ["daos.network_id", "daos.contract_address"],
        ),
    )

    dao_network_id: Mapped[str] = mapped_column(String, primary_key=True)
    dao_contract_address: Mapped[str] = mapped_column(String, primary_key=True)
    proposal_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    title: Mapped[Optional[str]] = _string()
    description: Mapped[Optional[str]] = _string()
    proposer_id: Mapped[Optional[str]] = _string()
    msgs: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    dao: Mapped[Optional[DAO]] = relationship(back_populates="proposals")


# --- names ---------------------------------------------------------------------


class Name(Base):
    __tablename__ = "names"

    value: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[Optional[str]] = _string()
    network_id: Mapped[Optional[str]] = _string()


# --- engines -------------------------------------------------------------------


def new_sqlite_engine(path: str) -> Engine:
    """Open a SQLite database file (``:memory:`` for an in-memory one)."""
    return create_engine(f"sqlite:///{path}")


def open_database(url: str) -> Engine:
    """Open a database from a URL; ``postgres://`` DSNs are accepted."""
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return create_engine(url)


def migrate_db(engine: Engine) -> None:
    """Create every indexer table that does not exist yet."""
    Base.metadata.create_all(engine)