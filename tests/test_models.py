import json
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, inspect, select
from sqlalchemy.orm import Session

from furyadapp.models import (
    DAO,
    NFT,
    Activity,
    ActivityKind,
    ArrayJSONB,
    Base,
    Collection,
    DAOMember,
    FuryaCollection,
    FuryaNFT,
    Listing,
    ObjectJSONB,
    Post,
    QuestCompletion,
    migrate_db,
    new_sqlite_engine,
    open_database,
)


@pytest.fixture
def engine(tmp_path):
    eng = new_sqlite_engine(str(tmp_path / "indexer.db"))
    migrate_db(eng)
    yield eng
    eng.dispose()


def test_migrate_creates_every_table(engine):
    names = set(inspect(engine).get_table_names())
    assert names == set(Base.metadata.tables)
    assert {"nfts", "furya_collections", "furya_nfts"} <= names


def test_open_database_with_sqlite_url(tmp_path):
    eng = open_database("sqlite:///" + str(tmp_path / "other.db"))
    migrate_db(eng)
    assert set(inspect(eng).get_table_names()) == set(Base.metadata.tables)
    eng.dispose()


def test_activity_kind_values():
    assert ActivityKind("cancel-listing") is ActivityKind.CANCEL_LISTING
    assert ActivityKind("update-nft-price") is ActivityKind.UPDATE_NFT_PRICE
    assert ActivityKind("") is ActivityKind.UNKNOWN


def test_array_jsonb_round_trip():
    column_type = ArrayJSONB()
    value = [{"trait_type": "eyes", "value": "blue"}, 3]
    bound = column_type.process_bind_param(value, None)
    assert column_type.process_result_value(bound, None) == value
    assert column_type.process_result_value(bound.encode(), None) == value


@pytest.mark.parametrize("raw", ['{"a": 1}', "null", "3"])
def test_array_jsonb_rejects_non_arrays(raw):
    with pytest.raises(ValueError):
        ArrayJSONB().process_result_value(raw, None)


def test_jsonb_rejects_non_text_source():
    with pytest.raises(ValueError):
        ArrayJSONB().process_result_value(42, None)
    with pytest.raises(ValueError):
        ObjectJSONB().process_result_value(None, None)


def test_object_jsonb_round_trip_and_errors():
    column_type = ObjectJSONB()
    value = {"like": ["fury-u1"], "n": 1}
    assert column_type.process_result_value(column_type.process_bind_param(value, None), None) == value
    assert json.loads(column_type.process_bind_param(None, None)) == {}
    with pytest.raises(ValueError):
        column_type.process_result_value("[1, 2]", None)


def test_collection_with_furya_info_round_trip(engine):
    with Session(engine) as session:
        session.add(
            Collection(
                id="fury-mint1",
                name="Rioters",
                max_supply=10,
                time=datetime(2023, 1, 1, tzinfo=timezone.utc),
                furya_collection=FuryaCollection(
                    mint_contract_address="mint1",
                    nft_contract_address="nft1",
                    creator_address="creator1",
                    price=5,
                    denom="ufury",
                ),
            )
        )
        session.commit()

    with Session(engine) as session:
        collection = session.get(Collection, "fury-mint1")
        assert collection.furya_collection.nft_contract_address == "nft1"
        assert collection.furya_collection.collection_id == "fury-mint1"
        assert collection.paused is False
        assert collection.secondary_during_mint is False
        assert collection.max_supply == 10


def test_nft_attributes_and_mutation(engine):
    with Session(engine) as session:
        session.add(Collection(id="c1"))
        session.add(NFT(id="n1", collection_id="c1", furya_nft=FuryaNFT(token_id="7")))
        session.add(NFT(id="n2", collection_id="c1", attributes=[{"trait_type": "a", "value": "b"}]))
        session.commit()

    with Session(engine) as session:
        first = session.get(NFT, "n1")
        assert first.attributes == []
        assert first.price_amount is None
        assert first.furya_nft.token_id == "7"
        first.attributes.append({"trait_type": "x", "value": "y"})
        session.commit()

    with Session(engine) as session:
        assert session.get(NFT, "n1").attributes == [{"trait_type": "x", "value": "y"}]
        assert session.get(NFT, "n2").attributes == [{"trait_type": "a", "value": "b"}]
        assert {nft.id for nft in session.get(Collection, "c1").nfts} == {"n1", "n2"}


def test_activity_with_listing(engine):
    with Session(engine) as session:
        session.add(NFT(id="n1"))
        session.add(
            Activity(
                id="fury-tx-0",
                kind=ActivityKind.LIST,
                nft_id="n1",
                listing=Listing(price="100", price_denom="ufury", usd_price=1.5, seller_id="s"),
            )
        )
        session.commit()

    with Session(engine) as session:
        activity = session.get(Activity, "fury-tx-0")
        assert activity.kind is ActivityKind.LIST
        assert activity.listing.activity_id == "fury-tx-0"
        assert activity.listing.usd_price == 1.5
        assert [a.id for a in session.get(NFT, "n1").activities] == ["fury-tx-0"]


def test_post_reactions_are_tracked(engine):
    with Session(engine) as session:
        session.add(Post(identifier="p1", post_metadata={"title": "hello"}, category=2))
        session.commit()

    with Session(engine) as session:
        post = session.get(Post, "p1")
        assert post.user_reactions == {}
        assert post.is_deleted is False
        post.user_reactions["fire"] = ["fury-u1"]
        session.commit()

    with Session(engine) as session:
        post = session.get(Post, "p1")
        assert post.user_reactions == {"fire": ["fury-u1"]}
        assert post.post_metadata == {"title": "hello"}


def test_dao_members_relationship(engine):
    with Session(engine) as session:
        session.add(
            DAO(
                network_id="furya",
                contract_address="dao1",
                members=[DAOMember(member_address="m1"), DAOMember(member_address="m2")],
            )
        )
        session.commit()

    with Session(engine) as session:
        dao = session.get(DAO, ("furya", "dao1"))
        assert sorted(m.member_address for m in dao.members) == ["m1", "m2"]
        assert all(m.dao_network_id == "furya" for m in dao.members)


def test_quest_completion_merge_is_upsert(engine):
    with Session(engine) as session:
        session.merge(QuestCompletion(quest_id="book_tns", user_id="u1", completed=False))
        session.commit()
        session.merge(QuestCompletion(quest_id="book_tns", user_id="u1", completed=True))
        session.commit()
        assert session.scalar(select(func.count()).select_from(QuestCompletion)) == 1
        assert session.get(QuestCompletion, ("book_tns", "u1")).completed is True