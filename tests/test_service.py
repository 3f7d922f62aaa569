from datetime import datetime, timedelta, timezone

import pytest
from cachetools import TTLCache
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

from openprio_api.service import (
    ApiError,
    DeviceCredentials,
    Passcode,
    Service,
    VehiclePreRegistration,
)
from openprio_api.store import (
    PRIMARY_ACL,
    SECONDARY_FEED_ACL,
    Store,
    mqtt_acl,
    mqtt_user,
    verify_secret,
)


def _engine():
    return create_engine(
        "sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )


@pytest.fixture
def store():
    result = Store(_engine())
    result.create_schema()
    return result


@pytest.fixture
def service(store):
    return Service(store)


def _acl(store, username):
    with store.engine.connect() as conn:
        rows = conn.execute(
            select(mqtt_acl.c.action, mqtt_acl.c.topic).where(mqtt_acl.c.username == username)
        ).all()
    return [tuple(row) for row in rows]


def _users(store, username):
    with store.engine.connect() as conn:
        return conn.execute(
            select(mqtt_user.c.password_hash).where(mqtt_user.c.username == username)
        ).scalars().all()


def test_api_error_to_dict():
    err = ApiError("Invalid or expired passcode.", 403)
    assert err.to_dict() == {"error_message": "Invalid or expired passcode.", "status_code": 403}
    assert str(err) == "Invalid or expired passcode."


def test_passcode_and_credentials_to_dict():
    assert Passcode("t", "123456").to_dict() == {"expire_time": "t", "passcode": "123456"}
    creds = DeviceCredentials("c", "u", "token")
    assert creds.to_dict() == {"client_id": "c", "username": "u", "token": "token"}


def test_pre_registration_dict_omits_empty_fields():
    reg = VehiclePreRegistration.from_dict({"data_owner_code": "OP", "vehicle_number": "1"})
    assert reg.to_dict() == {"data_owner_code": "OP", "vehicle_number": "1"}
    full = VehiclePreRegistration("OP", "1", "token", "now")
    assert VehiclePreRegistration.from_dict(full.to_dict()) == full


@pytest.mark.parametrize("data", [[], "x", {"vehicle_number": 5}])
def test_pre_registration_from_dict_rejects_bad_input(data):
    with pytest.raises(ValueError):
        VehiclePreRegistration.from_dict(data)


def test_generate_passcode(service):
    passcode = service.generate_passcode()
    assert len(passcode.passcode) == 6 and passcode.passcode.isdigit()
    assert service.cache["passcode"] == passcode.passcode
    expires = datetime.fromisoformat(passcode.expire_time.replace("Z", "+00:00"))
    delta = expires - datetime.now(timezone.utc)
    assert timedelta(seconds=50) < delta <= timedelta(minutes=1)


def test_register_device_requires_device_id(service):
    service.generate_passcode()
    for payload in (None, {}, {"device_id": ""}):
        with pytest.raises(ApiError) as exc:
            service.register_device(payload)
        assert exc.value.status_code == 400
        assert exc.value.message == "Required field device_id not specified."


def test_register_device_wrong_passcode(service):
    code = service.generate_passcode().passcode
    wrong = "x" + code
    with pytest.raises(ApiError) as exc:
        service.register_device({"device_id": "dev-1", "passcode": wrong})
    assert exc.value.status_code == 403
    assert exc.value.message == "Invalid or expired passcode."


def test_register_device_success(service, store):
    code = service.generate_passcode().passcode
    creds = service.register_device({"device_id": "dev-1", "passcode": code})
    assert creds.client_id == "dev-1" and creds.username == "dev-1"
    assert len(creds.token) == 32 and creds.token.isalnum()
    assert "passcode" not in service.cache
    assert set(_acl(store, "dev-1")) == set(PRIMARY_ACL) | set(SECONDARY_FEED_ACL)
    (hashed,) = _users(store, "dev-1")
    assert verify_secret(creds.token, hashed)

    with pytest.raises(ApiError) as exc:
        service.register_device({"device_id": "dev-2", "passcode": code})
    assert exc.value.status_code == 403


def test_register_device_expired_passcode(store):
    now = [0.0]
    cache = TTLCache(maxsize=4, ttl=60, timer=lambda: now[0])
    service = Service(store, cache)
    code = service.generate_passcode().passcode
    now[0] = 61.0
    with pytest.raises(ApiError) as exc:
        service.register_device({"device_id": "dev-1", "passcode": code})
    assert exc.value.status_code == 403


def test_register_device_store_failure():
    broken = Service(Store(_engine()))
    code = broken.generate_passcode().passcode
    with pytest.raises(ApiError) as exc:
        broken.register_device({"device_id": "dev-1", "passcode": code})
    assert exc.value.status_code == 500
    assert exc.value.message == "Something went wrong check server log."
    assert broken.cache["passcode"] == code


def test_pre_registrations_are_deduplicated(service, store):
    payload = [
        {"data_owner_code": "OP", "vehicle_number": "1"},
        {"data_owner_code": "OP", "vehicle_number": "1"},
        {"data_owner_code": "OP", "vehicle_number": "2"},
    ]
    results = service.generate_vehicle_pre_registrations(payload)
    assert [(r.data_owner_code, r.vehicle_number) for r in results] == [("OP", "1"), ("OP", "2")]
    for result in results:
        assert len(result.token) == 50 and result.token.isalnum()
        assert result.created_at
        assert store.check_token("OP", result.vehicle_number, result.token)


def test_pre_registration_already_exists(service):
    service.generate_vehicle_pre_registrations([{"data_owner_code": "OP", "vehicle_number": "1"}])
    with pytest.raises(ApiError) as exc:
        service.generate_vehicle_pre_registrations(
            [{"data_owner_code": "OP", "vehicle_number": "1"}]
        )
    assert exc.value.status_code == 400
    assert exc.value.message == (
        "preregistration for data_owner_code: OP, vehicle_number: 1 already exists."
    )


def test_pre_registration_empty_and_invalid_payloads(service):
    assert service.generate_vehicle_pre_registrations(None) == []
    for payload in ({"data_owner_code": "OP"}, [1]):
        with pytest.raises(ApiError) as exc:
            service.generate_vehicle_pre_registrations(payload)
        assert exc.value.status_code == 400


def test_pre_registration_store_failure():
    broken = Service(Store(_engine()))
    with pytest.raises(ApiError) as exc:
        broken.generate_vehicle_pre_registrations(
            [{"data_owner_code": "OP", "vehicle_number": "1"}]
        )
    assert exc.value.status_code == 500


def test_register_vehicle_flow(service, store):
    (reg,) = service.generate_vehicle_pre_registrations(
        [{"data_owner_code": "OP", "vehicle_number": "1"}]
    )
    creds = service.register_vehicle(reg.to_dict())
    assert creds.client_id == "vehicle:OP:1" == creds.username
    assert len(creds.token) == 50
    assert set(_acl(store, "vehicle:OP:1")) == set(PRIMARY_ACL)
    assert not store.check_token("OP", "1", reg.token)

    with pytest.raises(ApiError) as exc:
        service.register_vehicle(reg.to_dict())
    assert exc.value.status_code == 403


def test_register_vehicle_replaces_existing_account(service, store):
    store.save_account("vehicle:OP:1", "token")
    (reg,) = service.generate_vehicle_pre_registrations(
        [{"data_owner_code": "OP", "vehicle_number": "1"}]
    )
    creds = service.register_vehicle(reg.to_dict())
    hashes = _users(store, "vehicle:OP:1")
    assert len(hashes) == 1
    assert verify_secret(creds.token, hashes[0])


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"vehicle_number": "1", "token": "token"}, "Required field data_owner_code not specified."),
        ({"data_owner_code": "OP", "token": "token"}, "Required field vehicle_number not specified."),
        ({"data_owner_code": "OP", "vehicle_number": "1"}, "Required field token not specified."),
        ([], "Invalid vehiclePreRegistration."),
    ],
)
def test_register_vehicle_bad_request(service, payload, message):
    with pytest.raises(ApiError) as exc:
        service.register_vehicle(payload)
    assert exc.value.status_code == 400
    assert exc.value.message == message


def test_register_vehicle_wrong_token(service):
    service.generate_vehicle_pre_registrations([{"data_owner_code": "OP", "vehicle_number": "1"}])
    with pytest.raises(ApiError) as exc:
        service.register_vehicle({"data_owner_code": "OP", "vehicle_number": "1", "token": "token"})
    assert exc.value.status_code == 403
    assert exc.value.message == "Invalid vehiclePreRegistration."