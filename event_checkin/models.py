"""
Data Models for the Event Check-in Service

This module contains the data model classes for the core entities of the
check-in flow. These classes use dataclasses for clean, type-safe data
representation.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


DISPLAY_FIELDS = (
    'first_name', 'last_name', 'email', 'phone', 'age',
    'gender', 'district', 'occupation', 'interest',
)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse a stored timestamp into an aware datetime

    Args:
        value: ISO 8601 string, datetime or None

    Returns:
        Aware datetime (UTC assumed for naive values) or None
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a timestamp as ISO 8601, or None"""
    return value.isoformat() if value else None


class CheckInStatus(Enum):
    """Outcome of a single check-in attempt"""
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    UNRECOGNIZED_FORMAT = "unrecognized_format"
    TRANSIENT_ERROR = "transient_error"


@dataclass
class Participant:
    """
    Data model for a registered participant

    The participant id is the canonical store identifier. The participant
    code and the legacy access code are alternate keys for the same record.
    """
    participant_id: str
    first_name: str
    last_name: str
    email: str
    phone: str = ""
    age: Optional[int] = None
    gender: str = ""
    district: str = ""
    occupation: str = ""
    interest: str = ""
    participant_code: Optional[str] = None
    access_code: Optional[str] = None
    checked_in: bool = False
    checked_in_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, participant_id: str, data: Dict) -> 'Participant':
        """
        Create Participant instance from dictionary data

        Args:
            participant_id: Canonical identifier of the participant
            data: Dictionary containing participant information

        Returns:
            Participant instance

        Raises:
            KeyError: If a required field is missing
            ValueError: If the check-in timestamp is malformed
        """
        checked_in_at = parse_timestamp(data.get('checked_in_at'))
        age = data.get('age')
        return cls(
            participant_id=participant_id,
            first_name=data['first_name'],
            last_name=data['last_name'],
            email=data['email'],
            phone=data.get('phone', ""),
            age=int(age) if age not in (None, "") else None,
            gender=data.get('gender', ""),
            district=data.get('district', ""),
            occupation=data.get('occupation', ""),
            interest=data.get('interest', ""),
            participant_code=data.get('participant_code') or None,
            access_code=data.get('access_code') or None,
            checked_in=bool(data.get('checked_in')) or checked_in_at is not None,
            checked_in_at=checked_in_at,
        )

    def to_dict(self) -> Dict:
        """
        Convert participant to dictionary for JSON serialization

        Returns:
            Dictionary representation of the participant
        """
        data = asdict(self)
        data['checked_in_at'] = format_timestamp(self.checked_in_at)
        return data

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def lookup_keys(self) -> List[str]:
        """
        Every identifier this participant can be resolved by

        Alternate codes are upper-cased; the canonical id is kept as-is.
        """
        keys = [self.participant_id]
        for code in (self.participant_code, self.access_code):
            if code:
                keys.append(code.upper())
        return keys

    def display_fields(self) -> Dict:
        """
        Fields shown on the scanner screen after a scan

        Returns:
            Dictionary keyed the way the scanner client expects
        """
        return {
            'firstName': self.first_name,
            'lastName': self.last_name,
            'email': self.email,
            'phone': self.phone,
            'age': self.age,
            'gender': self.gender,
            'district': self.district,
            'occupation': self.occupation,
            'interest': self.interest,
            'registrationId': self.participant_id,
            'participantCode': self.participant_code,
        }


@dataclass
class CheckInOutcome:
    """
    Result of the store's atomic find-and-mark operation

    When found is False the other fields carry no information.
    """
    found: bool
    was_already_checked_in: bool = False
    participant: Optional[Participant] = None
    checked_in_at: Optional[datetime] = None

    @classmethod
    def not_found(cls) -> 'CheckInOutcome':
        return cls(found=False)


@dataclass
class CheckInResult:
    """
    Shaped result returned to the scanner client
    """
    status: CheckInStatus
    registration_id: Optional[str]
    message: str
    participant: Optional[Participant] = None
    checked_in_at: Optional[datetime] = None

    @property
    def already_checked_in(self) -> bool:
        return self.status == CheckInStatus.DUPLICATE

    def to_dict(self) -> Dict:
        """
        Convert result to the camelCase payload the scanner consumes

        Returns:
            Dictionary representation of the result
        """
        return {
            'status': self.status.value,
            'registrationId': self.registration_id,
            'alreadyCheckedIn': self.already_checked_in,
            'participant': self.participant.display_fields() if self.participant else None,
            'checkedInAt': format_timestamp(self.checked_in_at),
            'message': self.message,
        }


@dataclass
class StaffMember:
    """
    Door staff member allowed to operate the scanner
    """
    staff_id: str
    password: str

    def verify_password(self, password: str) -> bool:
        """
        Verify staff member password

        Args:
            password: Password to verify

        Returns:
            True if password matches
        """
        return self.password == password

    def to_dict(self) -> Dict:
        """Dictionary with the staff ID only"""
        return {"staff_id": self.staff_id}


@dataclass
class ScanSession:
    """
    Scanner state for one logged-in staff member

    Held in the web session and passed explicitly to whatever needs it.
    """
    operator_id: str
    checked_in_count: int = 0
    recent_scans: List[Dict] = field(default_factory=list)
    max_recent: int = 10

    @classmethod
    def from_dict(cls, data: Dict, max_recent: int = 10) -> 'ScanSession':
        return cls(
            operator_id=data['operator_id'],
            checked_in_count=int(data.get('checked_in_count', 0)),
            recent_scans=list(data.get('recent_scans', [])),
            max_recent=max_recent,
        )

    def record(self, result: CheckInResult) -> None:
        """
        Record a check-in result in this session

        Only successful check-ins are counted and listed, like the
        recent-scans panel on the scanner screen.
        """
        if result.status != CheckInStatus.SUCCESS:
            return
        self.checked_in_count += 1
        self.recent_scans.insert(0, {
            'registrationId': result.registration_id,
            'name': result.participant.full_name if result.participant else None,
            'checkedInAt': format_timestamp(result.checked_in_at),
        })
        del self.recent_scans[self.max_recent:]

    def to_dict(self) -> Dict:
        return {
            'operator_id': self.operator_id,
            'checked_in_count': self.checked_in_count,
            'recent_scans': list(self.recent_scans),
        }
