"""Passcode issuing, device registration and vehicle registration."""

from __future__ import annotations

import contextlib
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from http import HTTPStatus
from typing import Any, MutableMapping

from cachetools import TTLCache
from sqlalchemy.exc import SQLAlchemyError

from openprio_api.randutil import random_number, random_string
from openprio_api.store import Store

logger = logging.getLogger(__name__)

PASSCODE_KEY = "passcode"
PASSCODE_LENGTH = 6
PASSCODE_LIFETIME = timedelta(minutes=1)
DEVICE_TOKEN_LENGTH = 32
VEHICLE_TOKEN_LENGTH = 50


def _rfc3339(moment: datetime) -> str:
    text = moment.isoformat(timespec="seconds")
    if text.endswith("+00:00"):
        return text[: -len("+00:00")] + "Z"
    return text


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


class ApiError(Exception):
    """A failure reported to the client with an HTTP status code."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = int(status_code)

    def to_dict(self) -> dict[str, Any]:
        return {"error_message": self.message, "status_code": self.status_code}


@dataclass(frozen=True)
class Passcode:
    expire_time: str
    passcode: str

    def to_dict(self) -> dict[str, str]:
        return {"expire_time": self.expire_time, "passcode": self.passcode}


@dataclass(frozen=True)
class VehiclePreRegistration:
    data_owner_code: str
    vehicle_number: str
    token: str = ""
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "VehiclePreRegistration":
        """Build from a decoded JSON object; absent or null fields become empty."""
        if not isinstance(data, dict):
            raise ValueError("vehicle pre-registration must be a JSON object")
        values = {}
        for name in ("data_owner_code", "vehicle_number", "token", "created_at"):
            value = data.get(name)
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise ValueError(f"field {name} must be a string")
            values[name] = value
        return cls(**values)

    def to_dict(self) -> dict[str, str]:
        result = {
            "data_owner_code": self.data_owner_code,
            "vehicle_number": self.vehicle_number,
        }
        if self.token:
            result["token"] = self.token
        if self.created_at:
            result["created_at"] = self.created_at
        return result

    @property
    def key(self) -> str:
        return f"{self.data_owner_code}:{self.vehicle_number}"


@dataclass(frozen=True)
class DeviceCredentials:
    client_id: str
    username: str
    token: str

    def to_dict(self) -> dict[str, str]:
        return {"client_id": self.client_id, "username": self.username, "token": self.token}


class Service:
    """The API's operations on top of a store and a short-lived passcode cache."""

    def __init__(self, store: Store, cache: MutableMapping[str, str] | None = None) -> None:
        self.store = store
        if cache is None:
            cache = TTLCache(maxsize=16, ttl=PASSCODE_LIFETIME.total_seconds())
        self.cache = cache
        self._lock = threading.Lock()

    def generate_passcode(self) -> Passcode:
        """Issue a new one-minute passcode, replacing any earlier one."""
        code = random_number(PASSCODE_LENGTH)
        expire_time = _rfc3339(datetime.now().astimezone() + PASSCODE_LIFETIME)
        with self._lock:
            self.cache[PASSCODE_KEY] = code
        return Passcode(expire_time=expire_time, passcode=code)

    def register_device(self, payload: Any) -> DeviceCredentials:
        """Create MQTT credentials for a device presenting the current passcode."""
        fields = payload if isinstance(payload, dict) else {}
        device_id = _text(fields.get("device_id"))
        passcode = _text(fields.get("passcode"))
        if not device_id:
            raise ApiError("Required field device_id not specified.", HTTPStatus.BAD_REQUEST)

        with self._lock:
            current = self.cache.get(PASSCODE_KEY)
        if current is None or current != passcode:
            raise ApiError("Invalid or expired passcode.", HTTPStatus.FORBIDDEN)

        credentials = DeviceCredentials(
            client_id=device_id,
            username=device_id,
            token=random_string(DEVICE_TOKEN_LENGTH),
        )
        try:
            try:
                self.store.save_account(credentials.username, credentials.token)
            except SQLAlchemyError:
                logger.error("Something went wrong with storing mqtt_user")
                raise
            self.store.save_acl(credentials.username, True)
        except SQLAlchemyError:
            logger.exception("device registration failed")
            raise ApiError(
                "Something went wrong check server log.", HTTPStatus.INTERNAL_SERVER_ERROR
            ) from None
        with self._lock:
            self.cache.pop(PASSCODE_KEY, None)
        return credentials

    def generate_vehicle_pre_registrations(self, payload: Any) -> list[VehiclePreRegistration]:
        """Pre-register each distinct vehicle and return them with their one-time tokens."""
        if payload is None:
            payload = []
        if not isinstance(payload, list):
            raise ApiError("expected a JSON array of vehicle pre-registrations", HTTPStatus.BAD_REQUEST)
        try:
            requested = [VehiclePreRegistration.from_dict(item) for item in payload]
        except ValueError as err:
            raise ApiError(str(err), HTTPStatus.BAD_REQUEST) from None

        unique: dict[str, VehiclePreRegistration] = {}
        for registration in requested:
            if registration.key in unique:
                continue
            self._ensure_not_pre_registered(registration)
            unique[registration.key] = registration

        return [self._pre_register(registration) for registration in unique.values()]

    def _ensure_not_pre_registered(self, registration: VehiclePreRegistration) -> None:
        try:
            exists = self.store.is_vehicle_pre_registered(
                registration.data_owner_code, registration.vehicle_number
            )
        except SQLAlchemyError as err:
            raise ApiError(str(err), HTTPStatus.INTERNAL_SERVER_ERROR) from None
        if exists:
            raise ApiError(
                f"preregistration for data_owner_code: {registration.data_owner_code}, "
                f"vehicle_number: {registration.vehicle_number} already exists.",
                HTTPStatus.BAD_REQUEST,
            )

    def _pre_register(self, registration: VehiclePreRegistration) -> VehiclePreRegistration:
        created = datetime.now().astimezone()
        result = VehiclePreRegistration(
            data_owner_code=registration.data_owner_code,
            vehicle_number=registration.vehicle_number,
            token=random_string(VEHICLE_TOKEN_LENGTH),
            created_at=_rfc3339(created),
        )
        try:
            self.store.pre_register_vehicle(
                result.data_owner_code,
                result.vehicle_number,
                result.token,
                created.replace(tzinfo=None),
            )
        except SQLAlchemyError as err:
            raise ApiError(str(err), HTTPStatus.INTERNAL_SERVER_ERROR) from None
        return result

    def register_vehicle(self, payload: Any) -> DeviceCredentials:
        """Exchange a pre-registration token for MQTT credentials of the vehicle."""
        try:
            registration = VehiclePreRegistration.from_dict(payload)
        except ValueError:
            raise ApiError("Invalid vehiclePreRegistration.", HTTPStatus.BAD_REQUEST) from None
        for name in ("data_owner_code", "vehicle_number", "token"):
            if not getattr(registration, name):
                raise ApiError(f"Required field {name} not specified.", HTTPStatus.BAD_REQUEST)

        try:
            valid = self.store.check_token(
                registration.data_owner_code, registration.vehicle_number, registration.token
            )
        except SQLAlchemyError as err:
            raise ApiError(str(err), HTTPStatus.INTERNAL_SERVER_ERROR) from None
        if not valid:
            raise ApiError("Invalid vehiclePreRegistration.", HTTPStatus.FORBIDDEN)

        try:
            credentials = self._create_vehicle_account(registration)
        except SQLAlchemyError as err:
            raise ApiError(str(err), HTTPStatus.INTERNAL_SERVER_ERROR) from None

        with contextlib.suppress(SQLAlchemyError):
            self.store.set_pre_registration_used(
                registration.data_owner_code, registration.vehicle_number
            )
        return credentials

    def _create_vehicle_account(self, registration: VehiclePreRegistration) -> DeviceCredentials:
        client_id = f"vehicle:{registration.data_owner_code}:{registration.vehicle_number}"
        credentials = DeviceCredentials(
            client_id=client_id,
            username=client_id,
            token=random_string(VEHICLE_TOKEN_LENGTH),
        )
        try:
            self.store.delete_account(credentials.username)
        except SQLAlchemyError:
            logger.error("Something went wrong with deleting mqtt_user")
        try:
            self.store.save_account(credentials.username, credentials.token)
        except SQLAlchemyError:
            logger.error("Something went wrong with storing mqtt_user")
            raise
        self.store.save_acl(credentials.username, False)
        return credentials