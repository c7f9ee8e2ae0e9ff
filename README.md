# furyadapp

A library that indexes contract activity from chain transactions into a
relational database through SQLAlchemy. It covers NFT collections and mints,
the name service, vault listings and trades, NFT sends, transfers and burns,
social feed posts, and DAOs. It also provides a CoinGecko price client, a
background-refreshed collections cache and a few URL helpers.

## Installation

```
pip install furyadapp
```

To install the test dependencies and run the tests:

```
pip install "furyadapp[test]"
pytest
```

## Modules

- `furyadapp.models` holds the SQLAlchemy schema (`Base`). It has tables for
  apps and users, collections (`Collection`, `FuryaCollection`), NFTs (`NFT`,
  `FuryaNFT`), and activities (`Activity` with `Listing`, `CancelListing`,
  `Trade`, `UpdateNFTPrice`, `Mint`, `Burn`, `SendNFT`, `TransferNFT`). It also
  has quests (`Quest`, `QuestCompletion`), play-to-earn (`P2eSquadStaking`,
  `P2eLeaderboard`), feed posts (`Post`), DAOs (`DAO`, `DAOMember`,
  `DAOProposal`) and names (`Name`).
  - `ActivityKind` is a string enum of the activity kinds.
  - `ArrayJSONB` and `ObjectJSONB` store JSON arrays and objects as text.
  - A post's `metadata` column is mapped to the attribute `post_metadata`.
  - `new_sqlite_engine(path)` opens a SQLite file.
  - `open_database(url)` opens any SQLAlchemy URL and also accepts
    `postgres://`.
  - `migrate_db(engine)` creates the tables that are missing.
- `furyadapp.events` handles transaction logs.
  - `parse_tx_logs(raw)` turns the JSON log of a transaction into one
    `TendermintTxLog` per message.
  - `events_map_from_string_events(events)` builds an `EventsMap`. It maps
    `"<event type>.<attribute key>"` to every value, in order.
  - `EventsMap.first(key)`, `instantiate_contract_address()` and
    `outer_instantiate_code_id()` raise `MissingEventError` when the event is
    absent.
  - `fetch_ipfs_json(uri)` downloads a JSON document, rewriting `ipfs://`
    URIs to a gateway URL.
- `furyadapp.handler_base` holds the shared types and helpers.
  - It defines the message and network types (`Message`,
    `ExecuteContractMsg`, `InstantiateContractMsg`, `Coin`, `Network`,
    `NetworkStore`).
  - `Config` holds the handler's settings. `PricesClient` is the protocol a
    price source implements.
  - `HandlerError` is the exception the handlers raise.
  - `HandlerBase` provides `block_time(height)`, which is cached in
    `Config.block_time_cache`, and `historical_price(denom, t)`.
  - It also provides `usd_amount(denom, amount, t)` and
    `find_collection_by_nft_contract(address)`.
- `furyadapp.handler`: `Handler.handle_tx(height, tx_hash, messages, logs)`
  checks that there is one log per message, then routes each message.
  - Each `InstantiateContractMsg` goes to `handle_instantiate`. This creates
    the name-service collection, or a bunker minter collection when the code
    id is in `Config.minter_code_ids`.
  - Each `ExecuteContractMsg` goes to `handle_execute`, which dispatches on
    the single top-level key of the JSON payload.
  - The recognised keys are `mint`, `buy`, `send_nft`, `withdraw`, `burn`,
    `update_price`, `transfer_nft`, `update_metadata`, `set_admin_address`,
    `update_config`, `pause`, `unpause`, `create_post`,
    `instantiate_contract_with_self_admin`, `propose` and `execute`.
  - On the network's social feed contract it also handles
    `create_post_by_bot`, `tip_post`, `react_post` and `delete_post`.
  - The handlers themselves live in `furyadapp.minting`, `furyadapp.vault`,
    `furyadapp.transfers`, `furyadapp.feed` and `furyadapp.dao`.
- `furyadapp.coingecko`: `CoinGeckoPrices` provides `spot(coin_id)`,
  `historical(coin_id, t)` and `ohlc(coin_id, days)`. It raises `PriceError`
  on failure.
  - Spot prices are cached for 10 seconds.
  - Historical prices are cached per day. A time on the current UTC day
    returns the spot price.
- `furyadapp.collections_cache`: `CachedCollectionsProvider(fetch,
  refresh_delay=120)` keeps the result of `fetch()` in memory.
  - `start()` and `stop()` control a background refresh thread. It can also
    be used as a context manager.
  - `refresh()` fetches once and returns whether it succeeded. A failed
    fetch keeps the previous data.
  - `collections(limit, offset)` iterates over one page of the cached list.
- `furyadapp.ipfsutil.ipfs_uri_to_url`, and `furyadapp.urls` with
  `PostgreSQLConfig`, `postgresql_url` and `redact_password`, are the URL
  helpers.

## Example

```python
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from furyadapp.events import parse_tx_logs
from furyadapp.handler import Handler
from furyadapp.handler_base import Config, ExecuteContractMsg, Network, NetworkStore
from furyadapp.models import Post, migrate_db, new_sqlite_engine

network = Network(id="furya", id_prefix="fury", social_feed_contract_address="furya1feed")
config = Config(
    network=network,
    network_store=NetworkStore([network]),
    block_time_fetcher=lambda height: datetime.now(timezone.utc),
)

engine = new_sqlite_engine("indexer.db")
migrate_db(engine)

with Session(engine) as session:
    handler = Handler(session, config)
    msg = ExecuteContractMsg(
        sender="furya1alice",
        contract="furya1feed",
        msg=b'{"create_post": {"identifier": "post-1", "category": 2, "metadata": "{}"}}',
    )
    handler.handle_tx(100, "ABCDEF", [msg], parse_tx_logs('[{"events": []}]'))
    session.commit()
    print(session.get(Post, "post-1").author_id)  # fury-furya1alice
```

The handlers add rows and flush the session, but they never commit. The
caller decides when to commit or roll back.

Connection URLs carry credentials. Redact them before you log them:

```python
from furyadapp.urls import PostgreSQLConfig, postgresql_url, redact_password

password = "password"
url = postgresql_url(PostgreSQLConfig(user="user", password=password,
                                      host="localhost", port=5432,
                                      database_name="indexer"))
print(redact_password(url))  # postgres://user@localhost:5432/indexer
```

## What it does not do

- It does not connect to a chain node, follow blocks or decode raw
  transaction bytes. You pass it decoded `ExecuteContractMsg` and
  `InstantiateContractMsg` objects and parsed logs. Block times come from the
  `block_time_fetcher` callable you configure.
- It does not run a price service. `usd_amount` needs a `prices_client`
  that implements `PricesClient.prices`, and `CoinGeckoPrices` does not
  implement that method itself.
- It has no command line and no server, and it does not read configuration
  files. Networks and their currencies are built in code with `Network`,
  `NetworkStore` and `NativeCurrency`.
- The play-to-earn tables (`P2eSquadStaking`, `P2eLeaderboard`) exist in
  the schema, but no handler writes to them. The handler ignores `stake`
  executions. A `withdraw` on a squad staking contract is handled as a vault
  withdrawal, so it is indexed only when the contract is the vault.