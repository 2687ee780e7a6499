"""
Participant Store for the Event Check-in Service

This module implements the Repository pattern for participant data. Every
backend exposes the same contract, and in particular one atomic
find-and-mark operation: the check-in fields are set only if the
participant was not checked in yet, inside a single store-level critical
section. Concurrent scans of the same badge are serialized by the store,
never by the caller.
"""

import json
import logging
import os
import sys
import tempfile
import threading
import time
from dataclasses import replace
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import redis

from .exceptions import DataAccessException, DataValidationException, StoreUnavailableException
from .models import CheckInOutcome, Participant, format_timestamp, utc_now

if sys.platform == "win32":
    fcntl = None
else:
    import fcntl

logger = logging.getLogger(__name__)


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def build_participants(data: Dict) -> Dict[str, Participant]:
    """
    Build participants from a mapping of id to participant fields

    Args:
        data: Dictionary keyed by participant id

    Returns:
        Dictionary of Participant instances keyed by id

    Raises:
        DataValidationException: If a record is malformed
    """
    participants = {}
    for participant_id, fields in data.items():
        try:
            participants[participant_id] = Participant.from_dict(participant_id, fields)
        except (KeyError, ValueError, TypeError) as e:
            raise DataValidationException(
                f"participant_{participant_id}",
                f"Invalid participant data: {str(e)}"
            )
    return participants


def summarize(participants: Iterable[Participant], now: Optional[datetime] = None) -> Dict:
    """
    Attendance figures for the scanner dashboard

    Args:
        participants: All stored participants
        now: Reference time, defaults to the current UTC time

    Returns:
        Dictionary with totals, attendance rate and today's check-ins
    """
    now = now or utc_now()
    day_start = start_of_day(now)
    total = 0
    checked_in = 0
    today = 0
    for participant in participants:
        total += 1
        if participant.checked_in:
            checked_in += 1
            if participant.checked_in_at and participant.checked_in_at >= day_start:
                today += 1
    return _stats(total, checked_in, today, now)


def _stats(total: int, checked_in: int, today: int, now: datetime) -> Dict:
    return {
        'totalRegistered': total,
        'checkedIn': checked_in,
        'attendanceRate': round(checked_in / total * 100) if total else 0,
        'todayCheckins': today,
        'lastUpdated': format_timestamp(now),
    }


class ParticipantRepository(ABC):
    """
    Abstract base class for participant stores

    Lookups accept the canonical participant id, the participant code or
    the legacy access code. Alternate codes match case-insensitively.
    """

    @abstractmethod
    def find(self, identifier: str) -> Optional[Participant]:
        """
        Find a participant without modifying it

        Args:
            identifier: Any identifier the participant is known by

        Returns:
            Participant or None if not found

        Raises:
            StoreUnavailableException: If the store cannot be reached
        """
        pass

    @abstractmethod
    def find_and_mark_checked_in(self, identifier: str,
                                 now: Optional[datetime] = None) -> CheckInOutcome:
        """
        Atomically check a participant in if not checked in yet

        Only the first call for a participant mutates it. Later calls
        report the original check-in time and leave the record untouched.

        Args:
            identifier: Any identifier the participant is known by
            now: Check-in time to record, defaults to the current UTC time

        Returns:
            CheckInOutcome describing what happened

        Raises:
            StoreUnavailableException: If the store cannot be reached
        """
        pass

    @abstractmethod
    def lookup_unrelated_stats(self, now: Optional[datetime] = None) -> Dict:
        """
        Attendance statistics for dashboard collaborators

        Returns:
            Dictionary as produced by summarize()
        """
        pass

    @abstractmethod
    def recent_check_ins(self, limit: int = 20, skip: int = 0) -> List[Participant]:
        """
        Checked-in participants, newest check-in first

        Args:
            limit: Maximum number of participants to return
            skip: Number of participants to skip

        Returns:
            List of participants
        """
        pass

    @abstractmethod
    def add(self, participant: Participant) -> None:
        """
        Store a participant (seeding and tests; registration is elsewhere)
        """
        pass

    def ping(self) -> bool:
        """
        Check that the store is reachable

        Returns:
            True if the store answers
        """
        return True


class InMemoryParticipantRepository(ParticipantRepository):
    """
    In-memory participant store

    Used for development and testing. A single lock guards the records and
    the alias index, which makes find-and-mark atomic across threads.
    """

    def __init__(self, initial_data: Optional[Dict] = None):
        """
        Initialize in-memory repository

        Args:
            initial_data: Optional mapping of participant id to fields
        """
        self._lock = threading.Lock()
        self._participants: Dict[str, Participant] = {}
        self._aliases: Dict[str, str] = {}
        for participant in build_participants(initial_data or {}).values():
            self.add(participant)

    def _resolve(self, identifier: str) -> Optional[Participant]:
        if identifier in self._participants:
            return self._participants[identifier]
        participant_id = self._aliases.get(identifier.upper())
        return self._participants.get(participant_id) if participant_id else None

    def add(self, participant: Participant) -> None:
        with self._lock:
            self._participants[participant.participant_id] = participant
            for key in participant.lookup_keys()[1:]:
                self._aliases[key] = participant.participant_id

    def find(self, identifier: str) -> Optional[Participant]:
        with self._lock:
            participant = self._resolve(identifier)
            return replace(participant) if participant else None

    def find_and_mark_checked_in(self, identifier: str,
                                 now: Optional[datetime] = None) -> CheckInOutcome:
        with self._lock:
            participant = self._resolve(identifier)
            if participant is None:
                return CheckInOutcome.not_found()
            if participant.checked_in:
                return CheckInOutcome(True, True, replace(participant), participant.checked_in_at)
            participant.checked_in = True
            participant.checked_in_at = now or utc_now()
            return CheckInOutcome(True, False, replace(participant), participant.checked_in_at)

    def lookup_unrelated_stats(self, now: Optional[datetime] = None) -> Dict:
        with self._lock:
            return summarize(list(self._participants.values()), now)

    def recent_check_ins(self, limit: int = 20, skip: int = 0) -> List[Participant]:
        with self._lock:
            checked = [replace(p) for p in self._participants.values() if p.checked_in_at]
        checked.sort(key=lambda p: p.checked_in_at, reverse=True)
        return checked[skip:skip + limit]

    def clear(self) -> None:
        """Clear all data from memory"""
        with self._lock:
            self._participants.clear()
            self._aliases.clear()


@contextmanager
def lock_file(file_path: str, timeout: float = 5.0):
    """
    Exclusive inter-process lock on a sidecar lock file

    Args:
        file_path: Path of the lock file (created if missing)
        timeout: Maximum seconds to wait for the lock

    Raises:
        StoreUnavailableException: If the lock is not acquired in time
    """
    start_time = time.time()
    if fcntl is None:
        # Windows: exclusive creation of the lock file
        while True:
            try:
                lock_fd = os.open(file_path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
                break
            except FileExistsError:
                if time.time() - start_time > timeout:
                    raise StoreUnavailableException("lock", f"Could not lock {file_path} within {timeout}s")
                time.sleep(0.05)
        try:
            yield
        finally:
            os.close(lock_fd)
            os.remove(file_path)
        return

    with open(file_path, "a") as lock_fd:
        while True:
            try:
                fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError:
                if time.time() - start_time > timeout:
                    raise StoreUnavailableException("lock", f"Could not lock {file_path} within {timeout}s")
                time.sleep(0.05)
        try:
            yield
        finally:
            fcntl.flock(lock_fd.fileno(), fcntl.LOCK_UN)


class JSONParticipantRepository(ParticipantRepository):
    """
    JSON file-based participant store

    The file maps participant id to participant fields. Every mutation
    runs load-modify-save under an exclusive file lock and replaces the
    file atomically, so several worker processes can share one file.
    """

    def __init__(self, file_path: str, lock_timeout: float = 5.0):
        """
        Initialize JSON repository

        Args:
            file_path: Path to the JSON file
            lock_timeout: Seconds to wait for the file lock
        """
        self.file_path = file_path
        self.lock_path = f"{file_path}.lock"
        self.lock_timeout = lock_timeout
        directory = os.path.dirname(file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def load_data(self) -> Dict:
        """
        Load raw participant data from the JSON file

        Returns:
            Dictionary keyed by participant id

        Raises:
            DataAccessException: If the file is corrupt
            StoreUnavailableException: If the file cannot be read
        """
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise DataAccessException("read", f"Invalid JSON in {self.file_path}: {str(e)}")
        except OSError as e:
            raise StoreUnavailableException("read", f"Cannot read {self.file_path}: {str(e)}")

    def save_data(self, data: Dict) -> None:
        """
        Atomically replace the JSON file

        Args:
            data: Dictionary keyed by participant id

        Raises:
            StoreUnavailableException: If the file cannot be written
        """
        directory = os.path.dirname(self.file_path) or "."
        temp_fd, temp_path = tempfile.mkstemp(dir=directory, prefix=".tmp_", suffix=".json")
        try:
            with os.fdopen(temp_fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.file_path)
        except OSError as e:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise StoreUnavailableException("write", f"Cannot write {self.file_path}: {str(e)}")

    def _load(self) -> Dict[str, Participant]:
        return build_participants(self.load_data())

    def _save(self, participants: Dict[str, Participant]) -> None:
        data = {}
        for participant_id, participant in participants.items():
            fields = participant.to_dict()
            del fields['participant_id']
            data[participant_id] = fields
        self.save_data(data)

    @staticmethod
    def _resolve(participants: Dict[str, Participant], identifier: str) -> Optional[Participant]:
        if identifier in participants:
            return participants[identifier]
        key = identifier.upper()
        for participant in participants.values():
            if key in participant.lookup_keys()[1:]:
                return participant
        return None

    def add(self, participant: Participant) -> None:
        with lock_file(self.lock_path, self.lock_timeout):
            participants = self._load()
            participants[participant.participant_id] = participant
            self._save(participants)

    def find(self, identifier: str) -> Optional[Participant]:
        return self._resolve(self._load(), identifier)

    def find_and_mark_checked_in(self, identifier: str,
                                 now: Optional[datetime] = None) -> CheckInOutcome:
        with lock_file(self.lock_path, self.lock_timeout):
            participants = self._load()
            participant = self._resolve(participants, identifier)
            if participant is None:
                return CheckInOutcome.not_found()
            if participant.checked_in:
                return CheckInOutcome(True, True, participant, participant.checked_in_at)
            participant.checked_in = True
            participant.checked_in_at = now or utc_now()
            self._save(participants)
            return CheckInOutcome(True, False, participant, participant.checked_in_at)

    def lookup_unrelated_stats(self, now: Optional[datetime] = None) -> Dict:
        return summarize(self._load().values(), now)

    def recent_check_ins(self, limit: int = 20, skip: int = 0) -> List[Participant]:
        checked = [p for p in self._load().values() if p.checked_in_at]
        checked.sort(key=lambda p: p.checked_in_at, reverse=True)
        return checked[skip:skip + limit]

    def ping(self) -> bool:
        return os.access(os.path.dirname(os.path.abspath(self.file_path)), os.W_OK)


class RedisParticipantRepository(ParticipantRepository):
    """
    Redis-backed participant store

    Layout (all keys under a configurable prefix):
        participant:<id>  hash of participant fields
        alias             hash of upper-cased alternate code -> id
        participants      set of all ids
        checkins          sorted set of id scored by check-in time

    The check-in transition is HSETNX on the checked_in_at field: Redis
    sets it for the first caller only, whichever worker that is. The
    checkins index is written with ZADD NX after it, scored by the stored
    time.
    """

    def __init__(self, client: redis.Redis, prefix: str = "checkin:"):
        """
        Initialize Redis repository

        Args:
            client: Redis client created with decode_responses=True
            prefix: Key prefix for every key this store touches
        """
        self.client = client
        self.prefix = prefix

    def _key(self, *parts: str) -> str:
        return self.prefix + ":".join(parts)

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except redis.RedisError as e:
            logger.error("Redis %s failed: %s", operation, e)
            raise StoreUnavailableException(operation, str(e))

    def _resolve_id(self, identifier: str) -> Optional[str]:
        if self.client.exists(self._key("participant", identifier)):
            return identifier
        return self.client.hget(self._key("alias"), identifier.upper())

    def _load(self, participant_id: str) -> Optional[Participant]:
        fields = self.client.hgetall(self._key("participant", participant_id))
        if not fields:
            return None
        return Participant.from_dict(participant_id, fields)

    def add(self, participant: Participant) -> None:
        fields = participant.to_dict()
        del fields['participant_id']
        del fields['checked_in']
        # checked_in_at must stay absent until check-in for HSETNX to work
        mapping = {k: str(v) for k, v in fields.items() if v is not None}
        with self._guard("add"):
            pipe = self.client.pipeline()
            key = self._key("participant", participant.participant_id)
            pipe.delete(key)
            pipe.hset(key, mapping=mapping)
            pipe.sadd(self._key("participants"), participant.participant_id)
            for alias in participant.lookup_keys()[1:]:
                pipe.hset(self._key("alias"), alias, participant.participant_id)
            if participant.checked_in_at:
                pipe.zadd(self._key("checkins"),
                          {participant.participant_id: participant.checked_in_at.timestamp()})
            pipe.execute()

    def find(self, identifier: str) -> Optional[Participant]:
        with self._guard("find"):
            participant_id = self._resolve_id(identifier)
            return self._load(participant_id) if participant_id else None

    def find_and_mark_checked_in(self, identifier: str,
                                 now: Optional[datetime] = None) -> CheckInOutcome:
        now = now or utc_now()
        with self._guard("check-in"):
            participant_id = self._resolve_id(identifier)
            if not participant_id:
                return CheckInOutcome.not_found()
            key = self._key("participant", participant_id)
            first = self.client.hsetnx(key, "checked_in_at", format_timestamp(now))
            participant = self._load(participant_id)
            if participant is None:
                return CheckInOutcome.not_found()
            # Indexed from the stored time on every call, so a retry after a
            # failed ZADD repairs the index instead of skipping it.
            self.client.zadd(self._key("checkins"),
                             {participant_id: participant.checked_in_at.timestamp()}, nx=True)
        return CheckInOutcome(True, not first, participant, participant.checked_in_at)

    def lookup_unrelated_stats(self, now: Optional[datetime] = None) -> Dict:
        now = now or utc_now()
        with self._guard("stats"):
            total = self.client.scard(self._key("participants"))
            checked_in = self.client.zcard(self._key("checkins"))
            today = self.client.zcount(self._key("checkins"), start_of_day(now).timestamp(), "+inf")
        return _stats(total, checked_in, today, now)

    def recent_check_ins(self, limit: int = 20, skip: int = 0) -> List[Participant]:
        if limit <= 0:
            return []
        with self._guard("recent"):
            ids = self.client.zrevrange(self._key("checkins"), skip, skip + limit - 1)
            participants = [self._load(participant_id) for participant_id in ids]
        return [p for p in participants if p is not None]

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False


class RepositoryFactory:
    """
    Factory class for creating participant stores from configuration
    """

    @staticmethod
    def create_memory_repository(initial_data: Optional[Dict] = None) -> InMemoryParticipantRepository:
        return InMemoryParticipantRepository(initial_data)

    @staticmethod
    def create_json_repository(file_path: str) -> JSONParticipantRepository:
        return JSONParticipantRepository(file_path)

    @staticmethod
    def create_redis_repository(host: str = "localhost", port: int = 6379, db: int = 0,
                                prefix: str = "checkin:",
                                client: Optional[redis.Redis] = None) -> RedisParticipantRepository:
        """
        Create a Redis repository

        Args:
            host: Redis host
            port: Redis port
            db: Redis database number
            prefix: Key prefix
            client: Existing client, used instead of host/port/db

        Returns:
            RedisParticipantRepository instance
        """
        if client is None:
            client = redis.Redis(host=host, port=port, db=db, decode_responses=True)
        return RedisParticipantRepository(client, prefix)

    @staticmethod
    def create_repository(repo_type: str, **kwargs) -> ParticipantRepository:
        """
        Create a repository based on type

        Args:
            repo_type: 'memory', 'json' or 'redis'
            **kwargs: Backend-specific arguments

        Returns:
            ParticipantRepository instance

        Raises:
            ValueError: If repository type is not supported
        """
        repo_type = repo_type.lower()
        if repo_type == 'memory':
            return RepositoryFactory.create_memory_repository(kwargs.get('initial_data'))

        elif repo_type == 'json':
            if 'file_path' not in kwargs:
                raise ValueError("file_path is required for JSON repository")
            return RepositoryFactory.create_json_repository(kwargs['file_path'])

        elif repo_type == 'redis':
            return RepositoryFactory.create_redis_repository(
                host=kwargs.get('host', 'localhost'),
                port=int(kwargs.get('port', 6379)),
                db=int(kwargs.get('db', 0)),
                prefix=kwargs.get('prefix', 'checkin:'),
                client=kwargs.get('client'),
            )

        else:
            raise ValueError(f"Unsupported repository type: {repo_type}")


def load_json_file(file_path: str) -> Dict:
    """
    Read a JSON seed file (participants or staff credentials)

    Args:
        file_path: Path to a JSON object file

    Returns:
        Parsed data, empty if the file does not exist
    """
    if not file_path or not os.path.exists(file_path):
        return {}
    return JSONParticipantRepository(file_path).load_data()

