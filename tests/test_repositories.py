"""Unit tests for the participant stores."""
import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import fakeredis
import pytest
import redis

from event_checkin.exceptions import DataAccessException, DataValidationException, StoreUnavailableException
from event_checkin.models import Participant
from event_checkin.repositories import (
    InMemoryParticipantRepository,
    build_participants,
    JSONParticipantRepository,
    RedisParticipantRepository,
    RepositoryFactory,
    load_json_file,
    summarize,
)


OBJECT_ID = "507f1f77bcf86cd799439011"
FIRST = datetime(2025, 10, 4, 9, 0, tzinfo=timezone.utc)
LATER = datetime(2025, 10, 4, 9, 5, tzinfo=timezone.utc)


def concurrent_check_ins(repository, identifier, workers=8):
    """Fire check-ins for one identifier from several threads at once."""
    barrier = threading.Barrier(workers)

    def attempt(offset):
        barrier.wait()
        return repository.find_and_mark_checked_in(identifier, FIRST + timedelta(seconds=offset))

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(attempt, range(workers)))


def fake_redis_store(participant_data):
    """Redis store on an in-process server, seeded with participants."""
    store = RedisParticipantRepository(fakeredis.FakeRedis(decode_responses=True), prefix="t:")
    for participant in build_participants(participant_data).values():
        store.add(participant)
    return store


@pytest.fixture(params=["memory", "json", "redis"])
def store(request, participant_data, tmp_path):
    """Each backend seeded with the same participants."""
    if request.param == "memory":
        return InMemoryParticipantRepository(participant_data)
    if request.param == "redis":
        return fake_redis_store(participant_data)
    path = tmp_path / "participants.json"
    path.write_text(json.dumps(participant_data), encoding="utf-8")
    return JSONParticipantRepository(str(path))


class TestStoreContract:
    """Contract tests shared by the memory, JSON and Redis stores."""

    @pytest.mark.parametrize("identifier", [OBJECT_ID, "KDYES2547", "kdyes2547", "AB12CD34", "ab12cd34"])
    def test_find_by_any_identifier(self, store, identifier):
        """Test every identifier resolves to the same participant."""
        participant = store.find(identifier)
        assert participant is not None
        assert participant.participant_id == OBJECT_ID

    def test_find_unknown(self, store):
        assert store.find("ffffffffffffffffffffffff") is None

    def test_first_check_in_marks_participant(self, store):
        """Test the first call sets the check-in fields."""
        outcome = store.find_and_mark_checked_in("KDYES2547", FIRST)
        assert outcome.found
        assert not outcome.was_already_checked_in
        assert outcome.checked_in_at == FIRST
        assert store.find(OBJECT_ID).checked_in_at == FIRST

    def test_second_check_in_keeps_original_time(self, store):
        """Test a repeat reports the first time and changes nothing."""
        store.find_and_mark_checked_in(OBJECT_ID, FIRST)
        outcome = store.find_and_mark_checked_in("AB12CD34", LATER)
        assert outcome.found
        assert outcome.was_already_checked_in
        assert outcome.checked_in_at == FIRST
        assert store.find(OBJECT_ID).checked_in_at == FIRST

    def test_check_in_unknown(self, store):
        outcome = store.find_and_mark_checked_in("NOPE1234", FIRST)
        assert not outcome.found
        assert outcome.participant is None

    def test_concurrent_check_ins_have_one_winner(self, store):
        """Test simultaneous check-ins produce exactly one first check-in."""
        outcomes = concurrent_check_ins(store, OBJECT_ID)
        firsts = [o for o in outcomes if not o.was_already_checked_in]
        assert len(firsts) == 1
        assert {o.checked_in_at for o in outcomes} == {firsts[0].checked_in_at}

    def test_stats(self, store):
        """Test totals and attendance rate."""
        store.find_and_mark_checked_in(OBJECT_ID, FIRST)
        stats = store.lookup_unrelated_stats(FIRST + timedelta(hours=1))
        assert stats["totalRegistered"] == 2
        assert stats["checkedIn"] == 1
        assert stats["attendanceRate"] == 50
        assert stats["todayCheckins"] == 1

    def test_recent_check_ins_newest_first(self, store):
        store.find_and_mark_checked_in(OBJECT_ID, FIRST)
        store.find_and_mark_checked_in("KDYES2512", LATER)
        recent = store.recent_check_ins(limit=10)
        assert [p.participant_code for p in recent] == ["KDYES2512", "KDYES2547"]
        assert [p.participant_code for p in store.recent_check_ins(limit=1, skip=1)] == ["KDYES2547"]

    def test_add_participant(self, store):
        store.add(Participant("abcdefabcdefabcdefabcdef", "New", "Person", "new@example.org",
                              access_code="NEWCODE1"))
        assert store.find("newcode1").first_name == "New"


class TestInMemoryRepository:
    """Memory-specific behavior."""

    def test_returned_participants_are_copies(self, repository):
        """Test callers cannot change stored records."""
        repository.find(OBJECT_ID).checked_in = True
        assert repository.find(OBJECT_ID).checked_in is False

    def test_invalid_seed_data(self):
        with pytest.raises(DataValidationException):
            InMemoryParticipantRepository({"x": {"first_name": "A"}})

    def test_clear(self, repository):
        repository.clear()
        assert repository.find(OBJECT_ID) is None


class TestJSONRepository:
    """File-specific behavior."""

    def test_check_in_is_persisted(self, participant_data, tmp_path):
        """Test a new store instance sees the check-in."""
        path = tmp_path / "participants.json"
        path.write_text(json.dumps(participant_data), encoding="utf-8")
        JSONParticipantRepository(str(path)).find_and_mark_checked_in(OBJECT_ID, FIRST)

        saved = json.loads(path.read_text(encoding="utf-8"))
        assert saved[OBJECT_ID]["checked_in"] is True
        assert saved[OBJECT_ID]["checked_in_at"] == "2025-10-04T09:00:00+00:00"
        assert JSONParticipantRepository(str(path)).find(OBJECT_ID).checked_in_at == FIRST

    def test_missing_file_is_empty(self, tmp_path):
        store = JSONParticipantRepository(str(tmp_path / "missing.json"))
        assert store.find(OBJECT_ID) is None
        assert store.lookup_unrelated_stats()["totalRegistered"] == 0

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "participants.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(DataAccessException):
            JSONParticipantRepository(str(path)).find(OBJECT_ID)

    def test_load_json_file(self, tmp_path):
        path = tmp_path / "staff.json"
        path.write_text('{"door1": "pw"}', encoding="utf-8")
        assert load_json_file(str(path)) == {"door1": "pw"}
        assert load_json_file(str(tmp_path / "nope.json")) == {}


@pytest.fixture
def redis_client():
    client = MagicMock(spec=redis.Redis)
    client.exists.return_value = 1
    return client


def stored_fields(checked_in_at=None):
    fields = {"first_name": "Mariama", "last_name": "Kamara", "email": "mariama@example.org",
              "age": "", "participant_code": "KDYES2547", "access_code": "AB12CD34"}
    if checked_in_at:
        fields["checked_in_at"] = checked_in_at.isoformat()
    return fields


class TestRedisRepository:
    """Redis store, with the client mocked."""

    def test_first_check_in_uses_hsetnx(self, redis_client):
        """Test the transition is a single HSETNX on the check-in field."""
        redis_client.hsetnx.return_value = 1
        redis_client.hgetall.return_value = stored_fields(FIRST)
        store = RedisParticipantRepository(redis_client, prefix="t:")

        outcome = store.find_and_mark_checked_in(OBJECT_ID, FIRST)

        redis_client.hsetnx.assert_called_once_with(
            f"t:participant:{OBJECT_ID}", "checked_in_at", "2025-10-04T09:00:00+00:00")
        redis_client.zadd.assert_called_once_with("t:checkins", {OBJECT_ID: FIRST.timestamp()}, nx=True)
        assert outcome.found and not outcome.was_already_checked_in
        assert outcome.checked_in_at == FIRST
        assert outcome.participant.age is None

    def test_duplicate_reports_stored_time(self, redis_client):
        """Test a lost HSETNX returns the time already stored."""
        redis_client.hsetnx.return_value = 0
        redis_client.hgetall.return_value = stored_fields(FIRST)
        store = RedisParticipantRepository(redis_client)

        outcome = store.find_and_mark_checked_in(OBJECT_ID, LATER)

        assert outcome.was_already_checked_in
        assert outcome.checked_in_at == FIRST
        redis_client.zadd.assert_called_once_with("checkin:checkins", {OBJECT_ID: FIRST.timestamp()}, nx=True)

    def test_alias_lookup_is_upper_cased(self, redis_client):
        redis_client.exists.return_value = 0
        redis_client.hget.return_value = OBJECT_ID
        redis_client.hgetall.return_value = stored_fields()
        store = RedisParticipantRepository(redis_client, prefix="t:")

        participant = store.find("kdyes2547")

        redis_client.hget.assert_called_once_with("t:alias", "KDYES2547")
        assert participant.participant_id == OBJECT_ID
        assert participant.checked_in is False

    def test_unknown_identifier_never_writes(self, redis_client):
        redis_client.exists.return_value = 0
        redis_client.hget.return_value = None
        store = RedisParticipantRepository(redis_client)

        assert not store.find_and_mark_checked_in("NOPE1234", FIRST).found
        redis_client.hsetnx.assert_not_called()

    def test_add_leaves_check_in_field_unset(self, redis_client):
        """Test a new participant has no checked_in_at field for HSETNX to find."""
        pipe = redis_client.pipeline.return_value
        store = RedisParticipantRepository(redis_client, prefix="t:")
        store.add(Participant(OBJECT_ID, "Mariama", "Kamara", "m@example.org", access_code="ab12cd34"))

        mapping = pipe.hset.call_args_list[0].kwargs["mapping"]
        assert "checked_in_at" not in mapping
        assert mapping["first_name"] == "Mariama"
        pipe.hset.assert_any_call("t:alias", "AB12CD34", OBJECT_ID)
        pipe.zadd.assert_not_called()
        pipe.execute.assert_called_once()

    def test_retry_after_failed_index_write(self, participant_data, monkeypatch):
        """Test a retry after a failed ZADD still indexes the check-in."""
        store = fake_redis_store(participant_data)
        real_zadd = store.client.zadd
        calls = []

        def zadd_failing_once(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise redis.ConnectionError("connection reset")
            return real_zadd(*args, **kwargs)

        monkeypatch.setattr(store.client, "zadd", zadd_failing_once)

        with pytest.raises(StoreUnavailableException):
            store.find_and_mark_checked_in(OBJECT_ID, FIRST)
        outcome = store.find_and_mark_checked_in(OBJECT_ID, LATER)

        assert outcome.was_already_checked_in
        assert outcome.checked_in_at == FIRST
        stats = store.lookup_unrelated_stats(FIRST)
        assert stats["checkedIn"] == 1
        assert stats["todayCheckins"] == 1
        assert [p.participant_id for p in store.recent_check_ins()] == [OBJECT_ID]

    def test_connection_error_is_transient(self, redis_client):
        """Test Redis errors surface as StoreUnavailableException."""
        redis_client.exists.side_effect = redis.ConnectionError("connection refused")
        store = RedisParticipantRepository(redis_client)
        with pytest.raises(StoreUnavailableException):
            store.find_and_mark_checked_in(OBJECT_ID, FIRST)

    def test_stats(self, redis_client):
        redis_client.scard.return_value = 4
        redis_client.zcard.return_value = 1
        redis_client.zcount.return_value = 1
        stats = RedisParticipantRepository(redis_client).lookup_unrelated_stats(FIRST)
        assert stats["totalRegistered"] == 4
        assert stats["attendanceRate"] == 25

    def test_ping_failure(self, redis_client):
        redis_client.ping.side_effect = redis.ConnectionError("down")
        assert RedisParticipantRepository(redis_client).ping() is False


class TestRepositoryFactory:
    """Test repository creation by type."""

    def test_memory(self, participant_data):
        store = RepositoryFactory.create_repository("memory", initial_data=participant_data)
        assert isinstance(store, InMemoryParticipantRepository)

    def test_json_requires_path(self):
        with pytest.raises(ValueError):
            RepositoryFactory.create_repository("json")

    def test_redis_with_client(self, redis_client):
        store = RepositoryFactory.create_repository("REDIS", client=redis_client, prefix="x:")
        assert isinstance(store, RedisParticipantRepository)
        assert store.prefix == "x:"

    def test_unsupported(self):
        with pytest.raises(ValueError):
            RepositoryFactory.create_repository("mongodb")


def test_summarize_empty():
    assert summarize([], FIRST)["attendanceRate"] == 0
