"""
Business Logic Services for the Event Check-in Service

This module contains the service classes of the check-in flow: staff
authentication and the check-in coordinator that turns a scanned code
into a recorded, idempotent check-in.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .exceptions import (
    AuthenticationFailedException,
    DataValidationException,
    ParticipantNotFoundException,
    UnrecognizedFormatException,
)
from .models import CheckInResult, CheckInStatus, Participant, StaffMember, utc_now
from .normalizer import normalize_code
from .repositories import ParticipantRepository

logger = logging.getLogger(__name__)


class AuthenticationService:
    """
    Handles door staff authentication

    Staff credentials are a mapping of staff ID to password.
    """

    def __init__(self, staff_data: Dict[str, str]):
        """
        Initialize authentication service

        Args:
            staff_data: Mapping of staff ID to password

        Raises:
            DataValidationException: If the credentials are malformed
        """
        self._staff: Dict[str, StaffMember] = {}
        for staff_id, password in staff_data.items():
            if not isinstance(staff_id, str) or not isinstance(password, str):
                raise DataValidationException(
                    "staff_credentials",
                    f"Invalid staff credentials format for {staff_id}"
                )
            if not staff_id.strip() or not password.strip():
                raise DataValidationException(
                    "staff_credentials",
                    f"Empty staff ID or password for {staff_id}"
                )
            self._staff[staff_id] = StaffMember(staff_id, password)

    def authenticate(self, staff_id: str, password: str) -> StaffMember:
        """
        Authenticate staff credentials

        Args:
            staff_id: Staff member ID
            password: Password to verify

        Returns:
            The authenticated StaffMember

        Raises:
            AuthenticationFailedException: If authentication fails
        """
        if not staff_id or not password:
            raise AuthenticationFailedException()

        member = self._staff.get(staff_id)
        if member is None or not member.verify_password(password):
            logger.warning("Failed login for staff ID %s", staff_id)
            raise AuthenticationFailedException(staff_id)

        return member

    def is_valid_staff_id(self, staff_id: str) -> bool:
        return staff_id in self._staff


class CheckInService:
    """
    Coordinates a check-in: normalize, look up, transition, shape

    The transition itself is delegated to the store's atomic
    find_and_mark_checked_in; this class never reads a participant and
    then writes it back. Store failures (StoreUnavailableException)
    propagate to the caller, which may retry with the same identifier.
    """

    def __init__(self, repository: ParticipantRepository,
                 clock: Callable[[], datetime] = utc_now):
        """
        Initialize check-in service

        Args:
            repository: Participant store
            clock: Source of the check-in time
        """
        self.repository = repository
        self.clock = clock

    def scan(self, raw_code, operator_id: Optional[str] = None) -> CheckInResult:
        """
        Check in from a raw scanned (or typed) code

        Args:
            raw_code: Whatever the scanner produced
            operator_id: Staff member operating the scanner

        Returns:
            CheckInResult; UNRECOGNIZED_FORMAT if no code shape matched
        """
        try:
            registration_id = self.resolve_code(raw_code)
        except UnrecognizedFormatException as e:
            return CheckInResult(
                status=CheckInStatus.UNRECOGNIZED_FORMAT,
                registration_id=None,
                message=e.message,
            )
        return self.check_in(registration_id, operator_id)

    @staticmethod
    def resolve_code(raw_code) -> str:
        """
        Resolve a raw code to a registration identifier

        Raises:
            UnrecognizedFormatException: If no code shape matches
        """
        resolved = normalize_code(raw_code)
        if not resolved.is_recognized:
            logger.warning("Unrecognized QR code format: %r", raw_code)
            raise UnrecognizedFormatException("" if raw_code is None else str(raw_code))
        logger.debug("Resolved %s code to %s", resolved.code_format.value, resolved.registration_id)
        return resolved.registration_id

    def check_in(self, registration_id, operator_id: Optional[str] = None) -> CheckInResult:
        """
        Check a participant in by registration identifier

        Args:
            registration_id: Identifier, not necessarily of a valid shape
            operator_id: Staff member operating the scanner

        Returns:
            CheckInResult with SUCCESS, DUPLICATE or NOT_FOUND

        Raises:
            StoreUnavailableException: If the store cannot be reached
        """
        registration_id = str(registration_id if registration_id is not None else "").strip()
        if not registration_id:
            return self._not_found(registration_id)

        outcome = self.repository.find_and_mark_checked_in(registration_id, self.clock())
        if not outcome.found:
            return self._not_found(registration_id)

        participant = outcome.participant
        if outcome.was_already_checked_in:
            logger.info("Duplicate scan of %s (%s), first checked in at %s",
                        registration_id, participant.full_name, outcome.checked_in_at)
            return CheckInResult(
                status=CheckInStatus.DUPLICATE,
                registration_id=participant.participant_id,
                message=f"{participant.full_name} was already checked in",
                participant=participant,
                checked_in_at=outcome.checked_in_at,
            )

        logger.info("Participant checked in: %s (%s) by %s at %s",
                    participant.participant_id, participant.full_name,
                    operator_id or "unknown", outcome.checked_in_at)
        return CheckInResult(
            status=CheckInStatus.SUCCESS,
            registration_id=participant.participant_id,
            message=f"{participant.full_name} has been successfully checked in",
            participant=participant,
            checked_in_at=outcome.checked_in_at,
        )

    def verify(self, registration_id) -> Participant:
        """
        Look up a registration without checking it in

        Args:
            registration_id: Identifier to verify

        Returns:
            The matching Participant

        Raises:
            ParticipantNotFoundException: If nothing matches
            StoreUnavailableException: If the store cannot be reached
        """
        registration_id = str(registration_id if registration_id is not None else "").strip()
        participant = self.repository.find(registration_id) if registration_id else None
        if participant is None:
            raise ParticipantNotFoundException(registration_id)
        return participant

    def get_stats(self) -> Dict:
        """Attendance statistics for the scanner screen"""
        return self.repository.lookup_unrelated_stats(self.clock())

    def recent_check_ins(self, limit: int = 20, skip: int = 0) -> List[Participant]:
        """
        Most recent check-ins, newest first

        Args:
            limit: Maximum number of entries (1-100)
            skip: Entries to skip

        Returns:
            List of participants
        """
        limit = max(1, min(int(limit), 100))
        skip = max(0, int(skip))
        return self.repository.recent_check_ins(limit, skip)

    @staticmethod
    def _not_found(registration_id: str) -> CheckInResult:
        logger.warning("Registration not found: %r", registration_id)
        return CheckInResult(
            status=CheckInStatus.NOT_FOUND,
            registration_id=registration_id or None,
            message="Registration not found. Please check the QR code or registration ID.",
        )
