"""
Main Application Module for the Event Check-in Service

This module contains the Flask application class that wires the
participant store and services together and exposes the scanner API
used by the door check-in screen.
"""

import logging
import time
from datetime import timedelta
from typing import Dict, Optional

from flask import Flask, jsonify, request, session

from .config import DEFAULT_CONFIG, load_config
from .exceptions import (
    AuthenticationFailedException,
    CheckInException,
    DataAccessException,
    ParticipantNotFoundException,
    StoreUnavailableException,
)
from .logging_config import configure_logging
from .models import CheckInResult, CheckInStatus, ScanSession, format_timestamp
from .repositories import ParticipantRepository, RepositoryFactory, load_json_file
from .services import AuthenticationService, CheckInService

logger = logging.getLogger(__name__)

STATUS_CODES = {
    CheckInStatus.SUCCESS: 200,
    CheckInStatus.DUPLICATE: 200,
    CheckInStatus.NOT_FOUND: 404,
    CheckInStatus.UNRECOGNIZED_FORMAT: 422,
    CheckInStatus.TRANSIENT_ERROR: 503,
}

ERROR_TYPES = {
    CheckInStatus.NOT_FOUND: "NOT_FOUND",
    CheckInStatus.UNRECOGNIZED_FORMAT: "UNRECOGNIZED_FORMAT",
    CheckInStatus.TRANSIENT_ERROR: "STORE_UNAVAILABLE",
}

SCAN_SESSION_KEY = "scan_session"


class EventCheckInApp:
    """
    Main Flask application class for the check-in service

    Repositories and credentials can be injected for tests; otherwise
    they are built from configuration.
    """

    def __init__(self, config: Optional[dict] = None,
                 repository: Optional[ParticipantRepository] = None,
                 staff_data: Optional[Dict[str, str]] = None):
        """
        Initialize the application

        Args:
            config: Optional configuration overrides
            repository: Optional participant store to use instead of the configured one
            staff_data: Optional staff credentials to use instead of STAFF_FILE
        """
        self.config = load_config(config)

        # Initialize Flask app
        self.app = Flask(__name__)
        self._configure_app()

        # Initialize store and services
        self.repository = repository if repository is not None else self._create_repository()
        if staff_data is None:
            staff_data = load_json_file(self.config['STAFF_FILE'])
        self.auth_service = AuthenticationService(staff_data)
        self.checkin_service = CheckInService(self.repository)

        self._register_routes()
        self._register_error_handlers()

    def _configure_app(self) -> None:
        """Apply configuration to the Flask application"""
        self.app.secret_key = self.config['SECRET_KEY']
        self.app.permanent_session_lifetime = timedelta(hours=self.config['SESSION_LIFETIME_HOURS'])
        self.app.config['DEBUG'] = self.config['DEBUG']
        self.app.config['SCANNER_AUTH_REQUIRED'] = self.config['SCANNER_AUTH_REQUIRED']

    def _create_repository(self) -> ParticipantRepository:
        """
        Create the participant store selected by STORE_BACKEND

        Returns:
            ParticipantRepository instance
        """
        backend = self.config['STORE_BACKEND']
        logger.info("Using %s participant store", backend)
        if backend == 'memory':
            return RepositoryFactory.create_memory_repository(
                load_json_file(self.config['PARTICIPANTS_FILE'])
            )
        return RepositoryFactory.create_repository(
            backend,
            file_path=self.config['PARTICIPANTS_FILE'],
            host=self.config['REDIS_HOST'],
            port=self.config['REDIS_PORT'],
            db=self.config['REDIS_DB'],
            prefix=self.config['REDIS_PREFIX'],
        )

    def _register_routes(self) -> None:
        """Register all Flask routes"""
        self.app.add_url_rule("/login", "login", self.login, methods=["POST"])
        self.app.add_url_rule("/logout", "logout", self.logout)
        self.app.add_url_rule("/health", "health", self.health)

        self.app.add_url_rule("/api/scanner/checkin", "checkin", self.checkin, methods=["POST"])
        self.app.add_url_rule("/api/scanner/scan", "scan", self.scan, methods=["POST"])
        self.app.add_url_rule("/api/scanner/verify", "verify", self.verify, methods=["POST"])
        self.app.add_url_rule("/api/scanner/stats", "stats", self.stats)
        self.app.add_url_rule("/api/scanner/checkins", "checkins", self.checkins)
        self.app.add_url_rule("/api/scanner/session", "scan_session", self.scan_session)

    def _register_error_handlers(self) -> None:
        """Register error handlers for custom exceptions"""

        @self.app.errorhandler(StoreUnavailableException)
        def handle_store_unavailable(e):
            logger.error("Participant store unavailable: %s", e)
            return jsonify({
                "success": False,
                "status": CheckInStatus.TRANSIENT_ERROR.value,
                "error": "The check-in service is temporarily unavailable. Please try again.",
                "errorType": e.error_code,
            }), 503

        @self.app.errorhandler(ParticipantNotFoundException)
        def handle_participant_not_found(e):
            return jsonify({
                "success": False,
                "status": CheckInStatus.NOT_FOUND.value,
                "error": "Registration not found",
                "errorType": e.error_code,
            }), 404

        @self.app.errorhandler(AuthenticationFailedException)
        def handle_auth_failed(e):
            return jsonify({
                "success": False,
                "error": "Authentication failed. Please check your credentials.",
                "errorType": e.error_code,
            }), 401

        @self.app.errorhandler(DataAccessException)
        def handle_data_access(e):
            logger.error("Data access error: %s", e)
            return jsonify({
                "success": False,
                "error": "Internal server error during check-in",
                "errorType": e.error_code,
            }), 500

        @self.app.errorhandler(CheckInException)
        def handle_checkin_exception(e):
            logger.error("Check-in error: %s", e)
            return jsonify({
                "success": False,
                "error": e.message,
                "errorType": e.error_code,
            }), 500

    @staticmethod
    def _payload() -> Dict:
        """Request body as JSON, falling back to form data"""
        data = request.get_json(silent=True)
        if isinstance(data, dict):
            return data
        return request.form.to_dict()

    def _scan_session(self) -> Optional[ScanSession]:
        """
        Scanner session of the current request

        Returns:
            ScanSession, or None when login is required and missing
        """
        auth_required = self.app.config['SCANNER_AUTH_REQUIRED']
        data = session.get(SCAN_SESSION_KEY)
        if data and (not auth_required or self.auth_service.is_valid_staff_id(data.get('operator_id'))):
            return ScanSession.from_dict(data, self.config['RECENT_SCANS_LIMIT'])
        if not auth_required:
            return ScanSession(operator_id="anonymous", max_recent=self.config['RECENT_SCANS_LIMIT'])
        return None

    @staticmethod
    def _save_scan_session(scan_session: ScanSession) -> None:
        session[SCAN_SESSION_KEY] = scan_session.to_dict()

    @staticmethod
    def _unauthorized():
        return jsonify({
            "success": False,
            "error": "Authentication required",
            "errorType": "AUTH_REQUIRED",
        }), 401

    @staticmethod
    def _meta(start_time: float) -> Dict:
        return {"responseTime": f"{round((time.monotonic() - start_time) * 1000)}ms"}

    def _result_response(self, result: CheckInResult, start_time: float):
        """Shape a CheckInResult into the scanner response envelope"""
        body = {
            "success": result.status in (CheckInStatus.SUCCESS, CheckInStatus.DUPLICATE),
            "status": result.status.value,
            "data": result.to_dict(),
            "meta": self._meta(start_time),
        }
        if not body["success"]:
            body["error"] = result.message
            body["errorType"] = ERROR_TYPES[result.status]
        return jsonify(body), STATUS_CODES[result.status]

    def login(self):
        """
        Staff login

        Returns:
            JSON with the staff ID, or 401 via the error handler
        """
        data = self._payload()
        staff_id = str(data.get("staffId", "")).strip()
        password = str(data.get("password", "")).strip()

        member = self.auth_service.authenticate(staff_id, password)
        session.permanent = True
        self._save_scan_session(ScanSession(member.staff_id, max_recent=self.config['RECENT_SCANS_LIMIT']))
        logger.info("Staff member %s logged in", member.staff_id)
        return jsonify({"success": True, "data": member.to_dict()})

    def logout(self):
        session.pop(SCAN_SESSION_KEY, None)
        return jsonify({"success": True})

    def health(self):
        healthy = self.repository.ping()
        return jsonify({"success": healthy, "store": "ok" if healthy else "unavailable"}), (200 if healthy else 503)

    def checkin(self):
        """
        Check in by registration identifier (manual entry or a scanner
        that already decoded the code)
        """
        start_time = time.monotonic()
        scan_session = self._scan_session()
        if scan_session is None:
            return self._unauthorized()

        registration_id = self._payload().get("registrationId")
        if registration_id is None or not str(registration_id).strip():
            return jsonify({"success": False, "error": "Registration ID is required"}), 400

        result = self.checkin_service.check_in(registration_id, scan_session.operator_id)
        scan_session.record(result)
        self._save_scan_session(scan_session)
        return self._result_response(result, start_time)

    def scan(self):
        """Check in from the raw text decoded off a QR code"""
        start_time = time.monotonic()
        scan_session = self._scan_session()
        if scan_session is None:
            return self._unauthorized()

        result = self.checkin_service.scan(self._payload().get("code"), scan_session.operator_id)
        scan_session.record(result)
        self._save_scan_session(scan_session)
        return self._result_response(result, start_time)

    def verify(self):
        """Verify a registration without checking it in"""
        start_time = time.monotonic()
        if self._scan_session() is None:
            return self._unauthorized()

        registration_id = self._payload().get("registrationId")
        if registration_id is None or not str(registration_id).strip():
            return jsonify({"success": False, "error": "Registration ID is required"}), 400

        participant = self.checkin_service.verify(registration_id)
        return jsonify({
            "success": True,
            "data": {
                "valid": True,
                "alreadyCheckedIn": participant.checked_in,
                "participant": participant.display_fields(),
                "checkedInAt": format_timestamp(participant.checked_in_at),
            },
            "meta": self._meta(start_time),
        })

    def stats(self):
        start_time = time.monotonic()
        if self._scan_session() is None:
            return self._unauthorized()
        return jsonify({
            "success": True,
            "data": self.checkin_service.get_stats(),
            "meta": self._meta(start_time),
        })

    def checkins(self):
        """Recent check-ins for the scanner screen"""
        start_time = time.monotonic()
        if self._scan_session() is None:
            return self._unauthorized()

        try:
            limit = int(request.args.get("limit", 20))
            skip = int(request.args.get("skip", 0))
        except ValueError:
            return jsonify({"success": False, "error": "limit and skip must be integers"}), 400

        participants = self.checkin_service.recent_check_ins(limit, skip)
        checkins = [
            {
                "id": participant.participant_id,
                "accessCode": participant.access_code,
                "participantCode": participant.participant_code,
                "checkedInAt": format_timestamp(participant.checked_in_at),
                "participant": participant.display_fields(),
            }
            for participant in participants
        ]
        return jsonify({
            "success": True,
            "data": {"checkins": checkins, "total": len(checkins)},
            "meta": self._meta(start_time),
        })

    def scan_session(self):
        scan_session = self._scan_session()
        if scan_session is None:
            return self._unauthorized()
        return jsonify({"success": True, "data": scan_session.to_dict()})

    def run(self, host: str = '127.0.0.1', port: int = 5000, debug: bool = None) -> None:
        """
        Run the Flask development server

        Args:
            host: Host address to bind to
            port: Port number to listen on
            debug: Debug mode (overrides config if provided)
        """
        if debug is not None:
            self.app.config['DEBUG'] = debug

        self.app.run(host=host, port=port, debug=self.app.config['DEBUG'])


def create_app(config: Optional[dict] = None, **kwargs) -> EventCheckInApp:
    """
    Factory function to create and configure the application

    Args:
        config: Optional configuration overrides
        **kwargs: repository / staff_data injection, see EventCheckInApp

    Returns:
        Configured EventCheckInApp instance
    """
    return EventCheckInApp(config, **kwargs)


def create_development_app() -> EventCheckInApp:
    """
    Create application configured for development

    Returns:
        EventCheckInApp with debug on and an in-memory store
    """
    dev_config = {
        'DEBUG': True,
        'STORE_BACKEND': 'memory',
    }
    app = create_app(dev_config)
    configure_logging("DEBUG", app.config['LOG_FILE'])
    return app


def create_production_app() -> EventCheckInApp:
    """
    Create application configured for production

    The secret key, store backend and credentials file come from the
    environment.

    Returns:
        EventCheckInApp with debug off
    """
    app = create_app({'DEBUG': False})
    configure_logging(app.config['LOG_LEVEL'], app.config['LOG_FILE'])
    if app.config['SECRET_KEY'] == DEFAULT_CONFIG['SECRET_KEY']:
        logger.warning("SECRET_KEY is not set; using the development default")
    return app


if __name__ == "__main__":
    application = create_development_app()
    application.run(debug=True)
