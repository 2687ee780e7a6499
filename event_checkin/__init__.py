"""
Event Check-in Package

A door check-in service for registered event participants, built with
Flask. Staff scan a participant's QR badge (or type the code by hand) and
the service resolves the code and records the check-in exactly once.

Main Components:
- normalizer: resolves every historical badge code shape to an identifier
- models: Data models for participants, check-in results and scan sessions
- repositories: Participant stores (memory, JSON file, Redis)
- services: Staff authentication and the check-in coordinator
- exceptions: Custom exception classes for error handling
- app: Main Flask application class

Usage:
    from event_checkin import create_app

    app = create_app()
    app.run()
"""

__version__ = "1.0.0"

# Import main components for easy access
from .app import create_app, create_development_app, create_production_app
from .models import Participant, CheckInResult, CheckInStatus, ScanSession
from .normalizer import normalize_code, ResolvedCode, CodeFormat
from .services import AuthenticationService, CheckInService
from .repositories import RepositoryFactory
from .exceptions import (
    CheckInException,
    UnrecognizedFormatException,
    ParticipantNotFoundException,
    AuthenticationFailedException,
    DataValidationException,
    DataAccessException,
    StoreUnavailableException,
)

__all__ = [
    # App factory functions
    'create_app',
    'create_development_app',
    'create_production_app',

    # Data models
    'Participant',
    'CheckInResult',
    'CheckInStatus',
    'ScanSession',

    # Code normalization
    'normalize_code',
    'ResolvedCode',
    'CodeFormat',

    # Services
    'AuthenticationService',
    'CheckInService',

    # Repository factory
    'RepositoryFactory',

    # Exceptions
    'CheckInException',
    'UnrecognizedFormatException',
    'ParticipantNotFoundException',
    'AuthenticationFailedException',
    'DataValidationException',
    'DataAccessException',
    'StoreUnavailableException',
]
