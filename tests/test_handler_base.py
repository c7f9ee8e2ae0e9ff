from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import Session

from furyadapp.events import EventsMap, TendermintTxLog
from furyadapp.handler_base import (
    Config,
    HandlerBase,
    HandlerError,
    Message,
    NativeCurrency,
    Network,
    NetworkStore,
)
from furyadapp.models import Collection, FuryaCollection, migrate_db, new_sqlite_engine

NETWORK = Network(id="furya", id_prefix="fury")
WHEN = datetime(2023, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakePrices:
    def __init__(self, prices):
        self._prices = prices
        self.calls = []

    def prices(self, coin_id, vs_ids, time):
        self.calls.append((coin_id, list(vs_ids), time))
        return self._prices


@pytest.fixture
def session():
    engine = new_sqlite_engine(":memory:")
    migrate_db(engine)
    with Session(engine) as s:
        yield s


def _store():
    return NetworkStore(
        [NETWORK],
        {"furya": [NativeCurrency(denom="ufury", decimals=6, coingecko_id="furya")]},
    )


def _handler(session, **kwargs):
    return HandlerBase(session, Config(network=NETWORK, network_store=_store(), **kwargs))


def test_requires_session():
    with pytest.raises(ValueError, match="nil db"):
        HandlerBase(None, Config(network=NETWORK, network_store=_store()))


def test_network_ids_round_trip():
    store = _store()
    assert NETWORK.nft_id("addr", "5") == "fury-addr-5"
    assert store.parse_collection_id(NETWORK.collection_id("addr1")) == (NETWORK, "addr1")
    assert NETWORK.activity_id("hash", 2).endswith("hash-2")


def test_parse_collection_id_unknown_prefix():
    with pytest.raises(ValueError):
        _store().parse_collection_id("eth-addr")


def test_block_time_is_cached(session):
    calls = []

    def fetch(height):
        calls.append(height)
        return WHEN

    handler = _handler(session, block_time_fetcher=fetch)
    assert handler.block_time(10) == WHEN
    assert handler.block_time(10) == WHEN
    assert calls == [10]


def test_block_time_failure(session):
    def fetch(height):
        raise ConnectionError("down")

    with pytest.raises(HandlerError, match="failed to fetch block"):
        _handler(session, block_time_fetcher=fetch).block_time(1)


def test_message_get_block_time():
    message = Message(
        msg=None,
        height=1,
        msg_index=0,
        msg_id="hash-0",
        tx_hash="hash",
        events=EventsMap(),
        log=TendermintTxLog(),
        block_time_source=lambda: WHEN,
    )
    assert message.get_block_time() == WHEN


def test_historical_price(session):
    prices = FakePrices({"usd": 2.0})
    handler = _handler(session, prices_client=prices)
    assert handler.historical_price("ufury", WHEN) == 2.0
    assert prices.calls == [("furya", ["usd"], "2023-05-01T12:00:00Z")]


def test_historical_price_missing_vs(session):
    handler = _handler(session, prices_client=FakePrices({}))
    assert handler.historical_price("ufury", WHEN) == 0.0


def test_historical_price_unknown_denom(session):
    handler = _handler(session, prices_client=FakePrices({"usd": 1.0}))
    with pytest.raises(HandlerError, match="native currency"):
        handler.historical_price("uatom", WHEN)


def test_usd_amount(session):
    handler = _handler(session, prices_client=FakePrices({"usd": 2.0}))
    assert handler.usd_amount("ufury", "1500000", WHEN) == pytest.approx(3.0)


def test_usd_amount_invalid(session):
    handler = _handler(session, prices_client=FakePrices({"usd": 2.0}))
    with pytest.raises(HandlerError, match="parse amount"):
        handler.usd_amount("ufury", "abc", WHEN)


def test_find_collection_by_nft_contract(session):
    session.add(
        Collection(
            id=NETWORK.collection_id("minter"),
            name="Bunker",
            furya_collection=FuryaCollection(
                mint_contract_address="minter", nft_contract_address="nftaddr"
            ),
        )
    )
    session.commit()
    handler = _handler(session)
    found = handler.find_collection_by_nft_contract("nftaddr")
    assert found.name == "Bunker"
    assert found.furya_collection.mint_contract_address == "minter"
    assert handler.find_collection_by_nft_contract("other") is None