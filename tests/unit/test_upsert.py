"""Unit tests for external-key upserts."""

from sqlmodel import Session, select

from mafia_data_platform.models import Club, ClubMember, Player
from mafia_data_platform.storage.upsert import find_by_keys, get_by_gomafia_id, id_map, upsert


class TestUpsert:
    """Test upsert() insert and update paths."""

    def test_inserts_missing_row(self, engine):
        with Session(engine) as session:
            club = upsert(session, Club, {"gomafia_id": "42"}, {"name": "Red Square"})
            session.commit()

            assert club.id is not None
            assert session.exec(select(Club)).one().name == "Red Square"

    def test_updates_existing_row_in_place(self, engine):
        with Session(engine) as session:
            first = upsert(session, Club, {"gomafia_id": "42"}, {"name": "Red Square", "elo": 1500.0})
            second = upsert(session, Club, {"gomafia_id": "42"}, {"name": "Red Square II"})
            session.commit()

            rows = session.exec(select(Club)).all()
            assert len(rows) == 1
            assert second.id == first.id
            assert rows[0].name == "Red Square II"
            assert rows[0].elo == 1500.0

    def test_composite_keys(self, engine):
        with Session(engine) as session:
            club = upsert(session, Club, {"gomafia_id": "1"}, {"name": "A"})
            player = upsert(session, Player, {"gomafia_id": "7"}, {"name": "Alice"})

            upsert(session, ClubMember, {"club_id": club.id, "player_id": player.id}, {})
            upsert(session, ClubMember, {"club_id": club.id, "player_id": player.id}, {})
            session.commit()

            assert len(session.exec(select(ClubMember)).all()) == 1
            assert find_by_keys(session, ClubMember, {"club_id": club.id, "player_id": player.id})


class TestLookups:
    """Test lookup helpers."""

    def test_get_by_gomafia_id(self, engine):
        with Session(engine) as session:
            upsert(session, Player, {"gomafia_id": "7"}, {"name": "Alice"})

            assert get_by_gomafia_id(session, Player, "7").name == "Alice"
            assert get_by_gomafia_id(session, Player, "8") is None

    def test_id_map_skips_unknown_ids(self, engine):
        with Session(engine) as session:
            alice = upsert(session, Player, {"gomafia_id": "7"}, {"name": "Alice"})
            bob = upsert(session, Player, {"gomafia_id": "8"}, {"name": "Bob"})

            assert id_map(session, Player, ["7", "8", "9"]) == {"7": alice.id, "8": bob.id}
            assert id_map(session, Player, []) == {}
