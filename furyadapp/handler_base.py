"""Shared state and helpers of the chain indexer handler."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from cachetools import LRUCache
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .events import EventsMap, TendermintTxLog
from .models import Collection, FuryaCollection

VS_ID = "usd"


class HandlerError(Exception):
    """Raised when a chain message cannot be indexed."""


@dataclass(frozen=True)
class Coin:
    denom: str
    amount: int


@dataclass
class ExecuteContractMsg:
    sender: str
    contract: str
    msg: bytes
    funds: List[Coin] = field(default_factory=list)


@dataclass
class InstantiateContractMsg:
    sender: str
    code_id: int
    msg: bytes
    admin: str = ""
    label: str = ""
    funds: List[Coin] = field(default_factory=list)


@dataclass
class Message:
    """One message of a transaction, with its events and context."""

    msg: Any
    height: int
    msg_index: int
    msg_id: str
    tx_hash: str
    events: EventsMap
    log: TendermintTxLog
    block_time_source: Callable[[], datetime]

    def get_block_time(self) -> datetime:
        """Return the time of the block that holds this message."""
        return self.block_time_source()


@dataclass(frozen=True)
class NativeCurrency:
    denom: str
    decimals: int
    coingecko_id: str


@dataclass(frozen=True)
class Network:
    """A cosmos network and the contracts the indexer follows on it."""

    id: str
    id_prefix: str
    name_service_contract_address: str = ""
    name_service_default_image: str = ""
    riot_contract_address_gen1: str = ""
    riot_squad_staking_contract_address_v1: str = ""
    riot_squad_staking_contract_address_v2: str = ""
    social_feed_contract_address: str = ""
    vault_contract_address: str = ""
    dao_factory_contract_address: str = ""

    def collection_id(self, mint_contract_address: str) -> str:
        return f"{self.id_prefix}-{mint_contract_address}"

    def user_id(self, address: str) -> str:
        return f"{self.id_prefix}-{address}"

    def nft_id(self, mint_contract_address: str, token_id: str) -> str:
        return f"{self.id_prefix}-{mint_contract_address}-{token_id}"

    def activity_id(self, tx_hash: str, msg_index: int) -> str:
        return f"{self.id_prefix}-{tx_hash}-{msg_index}"


class NetworkStore:
    """Known networks and their native currencies."""

    def __init__(
        self,
        networks: Iterable[Network] = (),
        currencies: Optional[Mapping[str, Iterable[NativeCurrency]]] = None,
    ) -> None:
        self._networks: Dict[str, Network] = {n.id: n for n in networks}
        self._currencies: Dict[Tuple[str, str], NativeCurrency] = {}
        for network_id, items in (currencies or {}).items():
            for currency in items:
                self._currencies[(network_id, currency.denom)] = currency

    def get_network(self, network_id: str) -> Network:
        try:
            return self._networks[network_id]
        except KeyError:
            raise KeyError(f"network {network_id!r} not found") from None

    def get_native_currency(self, network_id: str, denom: str) -> NativeCurrency:
        try:
            return self._currencies[(network_id, denom)]
        except KeyError:
            raise KeyError(f"currency {denom!r} not found on network {network_id!r}") from None

    def parse_collection_id(self, collection_id: str) -> Tuple[Network, str]:
        """Split a collection id into its network and mint contract address."""
        prefix, sep, address = collection_id.partition("-")
        if not sep or not address:
            raise ValueError(f"invalid collection id {collection_id!r}")
        for network in self._networks.values():
            if network.id_prefix == prefix:
                return network, address
        raise ValueError(f"unknown network prefix {prefix!r}")


class PricesClient(Protocol):
    """Source of historical prices."""

    def prices(self, coin_id: str, vs_ids: Sequence[str], time: str) -> Mapping[str, float]:
        ...


def _default_block_time_cache() -> MutableMapping[int, datetime]:
    return LRUCache(maxsize=100_000)


@dataclass
class Config:
    network: Network
    network_store: NetworkStore
    minter_code_ids: Sequence[int] = ()
    block_time_fetcher: Optional[Callable[[int], datetime]] = None
    prices_client: Optional[PricesClient] = None
    block_time_cache: MutableMapping[int, datetime] = field(
        default_factory=_default_block_time_cache
    )


def _rfc3339(t: datetime) -> str:
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    text = t.replace(microsecond=0).isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


class HandlerBase:
    """Database session, configuration and lookups shared by all handlers."""

    def __init__(
        self,
        session: Session,
        config: Config,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if session is None:
            raise ValueError("nil db")
        self.session = session
        self.config = config
        self.logger = logger or logging.getLogger("furyadapp.handler")

    @property
    def network(self) -> Network:
        return self.config.network

    def block_time(self, height: int) -> datetime:
        """Return the time of the block at ``height``, fetching it once."""
        cache = self.config.block_time_cache
        cached = cache.get(height)
        if cached is not None:
            return cached
        fetcher = self.config.block_time_fetcher
        if fetcher is None:
            raise HandlerError("failed to fetch block: no block source configured")
        try:
            value = fetcher(height)
        except Exception as err:
            raise HandlerError(f"failed to fetch block: {err}") from err
        cache[height] = value
        return value

    def historical_price(self, denom: str, t: datetime) -> float:
        """Return the USD price of ``denom`` at time ``t``, 0 if unknown."""
        try:
            currency = self.config.network_store.get_native_currency(self.network.id, denom)
        except KeyError as err:
            raise HandlerError(f"failed to get native currency: {err}") from err
        if self.config.prices_client is None:
            raise HandlerError("failed to query price: no prices client configured")
        try:
            prices = self.config.prices_client.prices(
                currency.coingecko_id, [VS_ID], _rfc3339(t)
            )
        except Exception as err:
            raise HandlerError(f"failed to query price: {err}") from err
        return float(prices.get(VS_ID, 0.0))

    def usd_amount(self, denom: str, amount: str, t: datetime) -> float:
        """Convert an on-chain amount of ``denom`` to USD at time ``t``."""
        try:
            currency = self.config.network_store.get_native_currency(self.network.id, denom)
        except KeyError as err:
            raise HandlerError(f"failed to get native currency: {err}") from err
        try:
            value = Decimal(amount)
        except (InvalidOperation, TypeError) as err:
            raise HandlerError(f"failed to parse amount {amount!r}") from err
        if not value.is_finite():
            raise HandlerError(f"failed to parse amount {amount!r}")
        value = value.scaleb(-currency.decimals)
        price = self.historical_price(denom, t)
        return float(value * Decimal(repr(price)))

    def find_collection_by_nft_contract(self, address: str) -> Optional[Collection]:
        """Return the collection whose NFT contract is ``address``, if indexed."""
        statement = (
            select(Collection)
            .join(FuryaCollection, FuryaCollection.collection_id == Collection.id)
            .where(FuryaCollection.nft_contract_address == address)
            .options(selectinload(Collection.furya_collection))
            .limit(1)
        )
        return self.session.scalars(statement).first()